"""Structural validation of ``docker load`` tar archives."""

import hashlib
import json
import tarfile
from pathlib import Path
from typing import Any

from ..exceptions import ValidationError


def get_tar_members(tar: tarfile.TarFile) -> set[str]:
    """Extract member names from tar file."""
    return {member.name for member in tar.getmembers()}


def parse_manifest_json(manifest_content: str) -> list[dict[str, Any]] | None:
    """Parse manifest JSON content, None unless it is a non-empty array."""
    try:
        manifest_data = json.loads(manifest_content)
    except json.JSONDecodeError:
        return None
    if not isinstance(manifest_data, list) or len(manifest_data) == 0:
        return None
    return manifest_data


def is_config_content_addressed(tar: tarfile.TarFile, config_path: str) -> bool:
    """Check that ``<hash>.json`` really hashes to ``<hash>``."""
    member = tar.extractfile(config_path)
    if member is None:
        return False
    expected = config_path.rsplit("/", 1)[-1].removesuffix(".json")
    return hashlib.sha256(member.read()).hexdigest() == expected


def validate_manifest_entry(
    tar: tarfile.TarFile, manifest_entry: Any, tar_members: set[str]
) -> bool:
    """Validate a single manifest entry against the archive contents."""
    if not isinstance(manifest_entry, dict):
        return False
    if not all(field in manifest_entry for field in ("Config", "Layers")):
        return False

    config_path = manifest_entry["Config"]
    layers = manifest_entry["Layers"]
    if config_path not in tar_members or not isinstance(layers, list):
        return False
    if not all(layer in tar_members for layer in layers):
        return False

    return is_config_content_addressed(tar, config_path)


def validate_docker_tar(tar_path: Path) -> bool:
    """Check that a tar file is a loadable Docker image archive.

    The archive needs a ``manifest.json`` whose entries reference a config and
    layers that are all present, with the config named after its sha256.

    Args:
        tar_path: Path of the archive to check

    Returns:
        True if the archive is structurally valid

    Raises:
        ValidationError: If the file does not exist or cannot be read
    """
    tar_path = Path(tar_path)
    if not tar_path.exists():
        raise ValidationError(f"Tar file does not exist: {tar_path}")

    try:
        if not tarfile.is_tarfile(tar_path):
            return False

        with tarfile.open(tar_path, "r") as tar:
            tar_members = get_tar_members(tar)
            if "manifest.json" not in tar_members:
                return False

            manifest_member = tar.extractfile("manifest.json")
            if manifest_member is None:
                return False
            try:
                manifest_content = manifest_member.read().decode("utf-8")
            except UnicodeDecodeError:
                return False

            manifest_data = parse_manifest_json(manifest_content)
            if manifest_data is None:
                return False

            return all(
                validate_manifest_entry(tar, entry, tar_members) for entry in manifest_data
            )

    except (tarfile.TarError, OSError) as e:
        raise ValidationError(f"Error reading tar file: {e}") from e
