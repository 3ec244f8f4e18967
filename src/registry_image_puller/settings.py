"""Runtime settings loaded from the environment."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .core.types import RegistryConfig


@dataclass
class Settings:
    """Where archives and the log go, and which registry to talk to."""

    download_dir: Path = Path("downloads")
    log_file: Path = Path("download.log")
    registry: RegistryConfig = field(default_factory=RegistryConfig)


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build settings from ``PULLER_*`` environment variables.

    Args:
        environ: Mapping to read instead of ``os.environ`` (for tests)

    Returns:
        Settings with defaults for every variable that is not set
    """
    env = os.environ if environ is None else environ
    defaults = RegistryConfig()

    auth_url = env.get("PULLER_AUTH_URL", defaults.auth_url)
    registry = RegistryConfig(
        url=env.get("PULLER_REGISTRY_URL", defaults.url),
        auth_url=auth_url,
        service=env.get("PULLER_AUTH_SERVICE", defaults.service),
        timeout=int(env.get("PULLER_TIMEOUT", defaults.timeout)),
        blob_timeout=int(env.get("PULLER_BLOB_TIMEOUT", defaults.blob_timeout)),
        default_namespace=env.get("PULLER_DEFAULT_NAMESPACE", defaults.default_namespace),
    )

    return Settings(
        download_dir=Path(env.get("PULLER_DOWNLOAD_DIR", "downloads")),
        log_file=Path(env.get("PULLER_LOG_FILE", "download.log")),
        registry=registry,
    )
