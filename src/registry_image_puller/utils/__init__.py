"""Utility functions for the registry image puller."""

from .digest import blob_filename, strip_digest_prefix, validate_digest

__all__ = ["blob_filename", "strip_digest_prefix", "validate_digest"]
