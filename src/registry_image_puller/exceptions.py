"""Custom exceptions for the registry image puller."""


class RegistryError(Exception):
    """Base exception for all registry-related errors."""

    pass


class ValidationError(RegistryError):
    """Raised when user input or an archive fails validation."""

    pass


class AuthError(RegistryError):
    """Raised when the token service is unreachable or returns no token."""

    pass


class ManifestError(RegistryError):
    """Raised when manifest retrieval or resolution fails."""

    pass


class NoMatchingPlatformError(ManifestError):
    """Raised when a manifest list has no entry to fall back on."""

    pass


class ConfigError(RegistryError):
    """Raised when the image config cannot be fetched or is unusable."""

    pass


class DownloadError(RegistryError):
    """Raised when a blob transfer fails."""

    pass


class WorkDirError(RegistryError):
    """Raised when the working directory cannot be created."""

    pass


class ArchiveBuildError(RegistryError):
    """Base exception for failures while assembling the output tar."""

    pass


class MissingDiffIdsError(ArchiveBuildError):
    """Raised when the normalized config carries no rootfs.diff_ids."""

    pass


class NoLayersProducedError(ArchiveBuildError):
    """Raised when not a single layer could be decompressed."""

    pass


class PackagingError(ArchiveBuildError):
    """Raised when writing the output tar fails."""

    pass


class TarReadError(RegistryError):
    """Raised when unable to read or parse tar file."""

    pass
