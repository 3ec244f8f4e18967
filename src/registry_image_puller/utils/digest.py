"""Digest validation and blob naming utilities."""

import re

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, _ = digest.split(":", 1)
    return algorithm in ["sha256", "sha512", "sha1", "md5"]


def strip_digest_prefix(digest: str) -> str:
    """``sha256:abc...`` -> ``abc...``"""
    return digest.split(":", 1)[1] if ":" in digest else digest


def blob_filename(index: int, digest: str) -> str:
    """File name of a downloaded layer blob, ordered by its zero-padded index."""
    return f"{index:03d}_{digest.replace(':', '_')}.tar.gz"
