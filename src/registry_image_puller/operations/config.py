"""Image config normalization for the ``docker load`` archive format.

Configs that went through loosely typed tooling often carry ``[]`` where the
archive format expects ``{}`` (ExposedPorts, Volumes, Labels), or lack fields
strict loaders require. The config filename inside the archive is the sha256
of the serialized output, so everything here must be deterministic.
"""

import copy
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

CONTAINER_SECTIONS = ("config", "container_config")


def _erase_values(mapping: Any) -> Any:
    """Keep the keys of a port/volume set, replace every value with ``{}``."""
    if isinstance(mapping, dict):
        return {key: {} for key in mapping}
    if isinstance(mapping, list):
        # An empty mapping that was encoded as a list
        return {str(key): {} for key in mapping if isinstance(key, str)}
    return mapping


def normalize_config(config: dict[str, Any]) -> dict[str, Any]:
    """Rewrite a fetched image config into the shape strict loaders accept.

    For both ``config`` and ``container_config``: ExposedPorts and Volumes
    values become ``{}`` and empty Labels become ``{}``. Only ``config``
    receives a default ``Labels: {}`` and ``OnBuild: []``. Absent port and
    volume sets stay absent. The input is not modified.

    Args:
        config: Parsed image config JSON

    Returns:
        Normalized copy of the config
    """
    normalized = copy.deepcopy(config)

    for section_name in CONTAINER_SECTIONS:
        section = normalized.get(section_name)
        if not isinstance(section, dict):
            continue

        for field_name in ("ExposedPorts", "Volumes"):
            if section.get(field_name) is not None:
                section[field_name] = _erase_values(section[field_name])
                logger.debug(
                    "%s.%s normalized: %d entries",
                    section_name,
                    field_name,
                    len(section[field_name]) if isinstance(section[field_name], dict) else 0,
                )

        labels = section.get("Labels")
        if isinstance(labels, (list, dict)) and not labels:
            section["Labels"] = {}

    section = normalized.get("config")
    if section is None:
        section = normalized["config"] = {}
    if isinstance(section, dict):
        if "Labels" not in section or section["Labels"] is None:
            section["Labels"] = {}
        if section.get("OnBuild") is None:
            section["OnBuild"] = []

    return normalized


def serialize_config(config: dict[str, Any]) -> bytes:
    """Serialize a config to the exact bytes stored (and hashed) in the archive.

    Compact separators, key order as parsed, UTF-8 without ``\\u`` escapes.
    ``json.dumps`` never escapes forward slashes.
    """
    return json.dumps(config, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
