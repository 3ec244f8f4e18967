"""Manifest list resolution to a single-platform manifest."""

import logging
from typing import Any

from ..core.registry_client import RegistryClient
from ..core.types import ManifestEnvelope, ManifestInfo
from ..exceptions import ManifestError, NoMatchingPlatformError

logger = logging.getLogger(__name__)


def _platform_of(entry: dict[str, Any]) -> tuple[str, str]:
    platform = entry.get("platform") or {}
    return platform.get("os", "unknown"), platform.get("architecture", "unknown")


def select_platform(
    manifest_list: dict[str, Any], architecture: str, os: str = "linux"
) -> dict[str, Any]:
    """Pick the manifest list entry for a platform.

    The first entry matching both ``os`` and ``architecture`` wins. Without a
    match the first entry of the list is used instead of failing.

    Args:
        manifest_list: Manifest list / image index document
        architecture: Preferred architecture (e.g., arm64)
        os: Preferred operating system

    Returns:
        The selected list entry (digest pointer plus platform)

    Raises:
        NoMatchingPlatformError: If the list has no entries at all
    """
    manifests = manifest_list.get("manifests") or []
    logger.info("Manifest list contains %d platforms", len(manifests))

    for entry in manifests:
        entry_os, entry_arch = _platform_of(entry)
        logger.info("  available: %s/%s", entry_os, entry_arch)
        if entry_os == os and entry_arch == architecture:
            logger.info("Selected platform %s/%s", entry_os, entry_arch)
            return entry

    if not manifests:
        logger.error("Manifest list has no entries")
        raise NoMatchingPlatformError("Manifest list has no entries")

    entry_os, entry_arch = _platform_of(manifests[0])
    logger.warning(
        "No %s/%s manifest, falling back to %s/%s", os, architecture, entry_os, entry_arch
    )
    return manifests[0]


async def resolve_manifest_list(
    client: RegistryClient,
    repository: str,
    manifest_list: dict[str, Any],
    architecture: str,
    os: str = "linux",
) -> ManifestInfo:
    """Select a platform from a manifest list and fetch its manifest.

    Raises:
        NoMatchingPlatformError: If the list is empty
        ManifestError: If the entry has no digest, the fetch fails, or the
            fetched manifest has no config
    """
    entry = select_platform(manifest_list, architecture, os)
    digest = entry.get("digest")
    if not digest:
        raise ManifestError("Selected manifest list entry has no digest")

    logger.info("Fetching platform manifest %s", digest)
    data = await client.get_manifest_by_digest(repository, digest)
    manifest = ManifestInfo.from_dict(data)
    logger.info("Config present: %s", manifest.config.digest)
    return manifest


async def resolve_manifest(
    client: RegistryClient,
    repository: str,
    envelope: ManifestEnvelope,
    architecture: str,
    os: str = "linux",
) -> ManifestInfo:
    """Turn a fetched manifest envelope into a usable single manifest."""
    if envelope.is_list:
        logger.info("Resolving manifest list for architecture %s", architecture)
        return await resolve_manifest_list(
            client, repository, envelope.data, architecture, os
        )
    return ManifestInfo.from_dict(envelope.data)
