"""Registry Image Puller - Async client that pulls registry images into `docker load` tar files."""

__version__ = "0.1.0"

from .core.progress import ProgressReporter, ProgressStore
from .core.registry_client import RegistryClient
from .core.types import ImageReference, RegistryConfig
from .exceptions import (
    ArchiveBuildError,
    AuthError,
    ConfigError,
    DownloadError,
    ManifestError,
    MissingDiffIdsError,
    NoLayersProducedError,
    NoMatchingPlatformError,
    PackagingError,
    RegistryError,
    TarReadError,
    ValidationError,
    WorkDirError,
)
from .operations.config import normalize_config
from .operations.manifests import resolve_manifest_list, select_platform
from .pull import ImagePuller, PullResult, PullStage, pull_image
from .tar.builder import build_docker_archive
from .tar.models import BuildResult, HashVerification, LayerResult

__all__ = [
    "RegistryClient",
    "RegistryConfig",
    "ImageReference",
    "ImagePuller",
    "PullResult",
    "PullStage",
    "pull_image",
    "ProgressReporter",
    "ProgressStore",
    "normalize_config",
    "select_platform",
    "resolve_manifest_list",
    "build_docker_archive",
    "BuildResult",
    "LayerResult",
    "HashVerification",
    "RegistryError",
    "ValidationError",
    "AuthError",
    "ManifestError",
    "NoMatchingPlatformError",
    "ConfigError",
    "DownloadError",
    "ArchiveBuildError",
    "MissingDiffIdsError",
    "NoLayersProducedError",
    "PackagingError",
    "TarReadError",
    "WorkDirError",
]
