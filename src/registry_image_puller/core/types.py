"""Core data types for registry access and image pulls."""

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from ..exceptions import ManifestError, ValidationError
from ..tar.tags import parse_repository_tag
from ..utils.digest import validate_digest

DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_V1 = "application/vnd.oci.image.index.v1+json"

MANIFEST_LIST_MEDIA_TYPES = (DOCKER_MANIFEST_LIST_V2, OCI_INDEX_V1)
SINGLE_MANIFEST_MEDIA_TYPES = (DOCKER_MANIFEST_V2, OCI_MANIFEST_V1)
ALL_MANIFEST_MEDIA_TYPES = (
    DOCKER_MANIFEST_V2,
    DOCKER_MANIFEST_LIST_V2,
    OCI_MANIFEST_V1,
    OCI_INDEX_V1,
)

SUPPORTED_ARCHITECTURES = ("amd64", "arm64", "arm")
DEFAULT_TAG = "latest"

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_-]", re.IGNORECASE)


@dataclass
class RegistryConfig:
    """Registry endpoints and request limits.

    Defaults point at Docker Hub. ``timeout`` applies to token, manifest and
    config requests, ``blob_timeout`` to layer downloads. An empty
    ``auth_url`` disables token authentication (plain registry:2).
    """

    url: str = "https://registry-1.docker.io"
    auth_url: str = "https://auth.docker.io/token"
    service: str = "registry.docker.io"
    timeout: int = 30
    blob_timeout: int = 600
    default_namespace: str = "library"

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")


@dataclass
class ImageReference:
    """Repository, tag and platform requested by the caller."""

    name: str
    tag: str = DEFAULT_TAG
    architecture: str = "amd64"
    os: str = "linux"
    namespace: str = "library"

    def __post_init__(self) -> None:
        self.name = (self.name or "").strip()
        self.tag = (self.tag or "").strip() or DEFAULT_TAG
        self.architecture = (self.architecture or "").strip()
        self.os = (self.os or "").strip() or "linux"

        if not self.name:
            raise ValidationError("Image name must not be empty")
        if self.architecture not in SUPPORTED_ARCHITECTURES:
            raise ValidationError(
                f"Unsupported architecture: {self.architecture!r} "
                f"(expected one of {', '.join(SUPPORTED_ARCHITECTURES)})"
            )

    @classmethod
    def parse(
        cls,
        image: str,
        tag: str | None = None,
        architecture: str = "amd64",
        os: str = "linux",
        namespace: str = "library",
    ) -> "ImageReference":
        """Build a reference from ``name[:tag]``; an explicit ``tag`` wins."""
        name, parsed_tag = parse_repository_tag((image or "").strip())
        return cls(
            name=name,
            tag=tag or parsed_tag,
            architecture=architecture,
            os=os,
            namespace=namespace,
        )

    @property
    def repository(self) -> str:
        """Registry path, e.g. ``library/alpine`` for ``alpine``."""
        if "/" not in self.name:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def safe_name(self) -> str:
        """Filesystem-safe ``name_tag_arch`` used for work dirs and archives."""
        return _UNSAFE_NAME_CHARS.sub(
            "_", f"{self.name}_{self.tag}_{self.architecture}"
        )

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag} ({self.os}/{self.architecture})"


@dataclass
class BlobInfo:
    """Descriptor of a blob referenced by a manifest."""

    digest: str
    size: int = 0
    media_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlobInfo":
        return cls(
            digest=data["digest"],
            size=int(data.get("size", 0) or 0),
            media_type=data.get("mediaType", ""),
        )


@dataclass
class ManifestInfo:
    """Single-platform manifest: one config blob and ordered layers."""

    config: BlobInfo
    layers: list[BlobInfo] = field(default_factory=list)
    media_type: str = DOCKER_MANIFEST_V2
    schema_version: int = 2
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestInfo":
        """Parse a manifest document.

        Raises:
            ManifestError: If the manifest has no ``config.digest``, its
                layers are malformed or a digest is not ``algorithm:hex``
        """
        config = data.get("config")
        if not isinstance(config, dict) or not config.get("digest"):
            raise ManifestError(
                f"Manifest has no config digest (keys: {sorted(data.keys())})"
            )

        try:
            layers = [BlobInfo.from_dict(layer) for layer in data.get("layers", [])]
        except (KeyError, TypeError, AttributeError) as e:
            raise ManifestError(f"Malformed layer descriptor: {e}") from e

        config_blob = BlobInfo.from_dict(config)
        for blob in (config_blob, *layers):
            if not validate_digest(blob.digest):
                raise ManifestError(f"Invalid digest in manifest: {blob.digest!r}")

        return cls(
            config=config_blob,
            layers=layers,
            media_type=data.get("mediaType", DOCKER_MANIFEST_V2),
            schema_version=int(data.get("schemaVersion", 2) or 2),
            raw=data,
        )


@dataclass
class ManifestEnvelope:
    """Manifest response classified as a list (index) or a single manifest."""

    kind: Literal["list", "single"]
    data: dict[str, Any]

    @property
    def is_list(self) -> bool:
        return self.kind == "list"

    @property
    def media_type(self) -> str:
        return self.data.get("mediaType", "unknown")
