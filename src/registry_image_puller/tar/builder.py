"""Assembly of ``docker load`` compatible tar archives."""

import gzip
import hashlib
import json
import logging
import os
import re
import shutil
import tarfile
import uuid
import zlib
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence

from ..core.types import ManifestInfo
from ..exceptions import (
    ArchiveBuildError,
    MissingDiffIdsError,
    NoLayersProducedError,
    PackagingError,
    ValidationError,
)
from ..operations.config import normalize_config, serialize_config
from ..utils.digest import strip_digest_prefix
from ..utils.validator import validate_docker_tar
from .models import BuildResult, HashVerification, LayerResult

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
GZIP_MAGIC = b"\x1f\x8b"

_FRACTION = re.compile(r"\.(\d{6})\d+")


def _mib(size: int) -> float:
    return round(size / 1024 / 1024, 2)


def created_timestamp(config: dict[str, Any]) -> int:
    """Image creation time as a unix timestamp, 0 if absent or unparseable."""
    created = config.get("created")
    if not isinstance(created, str) or not created:
        return 0
    # Docker writes nanoseconds, fromisoformat accepts at most microseconds
    created = _FRACTION.sub(r".\1", created.replace("Z", "+00:00"))
    try:
        return int(datetime.fromisoformat(created).timestamp())
    except ValueError:
        return 0


def decompress_layer(source: Path, destination: Path) -> tuple[str, int]:
    """Stream-decompress a layer blob and hash the uncompressed bytes.

    Gzip blobs are detected by their magic bytes; anything else is taken to be
    an uncompressed tar and copied through.

    Returns:
        (sha256 hex digest, size) of the written ``destination``
    """
    with open(source, "rb") as head:
        compressed = head.read(2) == GZIP_MAGIC

    opener = gzip.open if compressed else open
    hasher = hashlib.sha256()
    size = 0
    with opener(source, "rb") as reader, open(destination, "wb") as writer:
        while chunk := reader.read(CHUNK_SIZE):
            hasher.update(chunk)
            writer.write(chunk)
            size += len(chunk)
    return hasher.hexdigest(), size


def _write(path: Path, data: bytes) -> None:
    try:
        path.write_bytes(data)
    except OSError as e:
        logger.error("Cannot write %s: %s", path, e)
        raise PackagingError(f"Cannot write {path.name} to {path.parent}: {e}") from e


def _member_filter(mtime: int):
    def normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uid = 0
        info.gid = 0
        info.uname = ""
        info.gname = ""
        info.mode = 0o644
        info.mtime = 0 if info.name == "manifest.json" else mtime
        return info

    return normalize


def _pack(work_dir: Path, members: list[str], output_path: Path, mtime: int) -> None:
    """Write the tar next to ``output_path`` and move it into place when valid.

    Each call packs into its own hidden ``.partial`` file; concurrent builds of
    the same image never share one.
    """
    partial = output_path.with_name(f".{output_path.name}.{uuid.uuid4().hex}.partial")
    member_filter = _member_filter(mtime)

    try:
        with tarfile.open(partial, "w") as tar:
            for name in members:
                logger.info("  packing: %s", name)
                tar.add(work_dir / name, arcname=name, recursive=False, filter=member_filter)

        if not validate_docker_tar(partial):
            raise PackagingError(f"Packed archive {partial} failed validation")

        os.replace(partial, output_path)
    except PackagingError:
        partial.unlink(missing_ok=True)
        raise
    except (tarfile.TarError, OSError, ValidationError) as e:
        partial.unlink(missing_ok=True)
        logger.error("Tar creation failed: %s", e)
        raise PackagingError(f"Failed to write {output_path}: {e}") from e


def build_docker_archive(
    work_dir: str | Path,
    output_path: str | Path,
    image_name: str,
    tag: str,
    manifest: ManifestInfo | None,
    config: dict[str, Any],
    layer_files: Sequence[str | Path] | None = None,
    keep_work_dir: bool = False,
) -> BuildResult:
    """Turn downloaded blobs into a tar archive ``docker load`` accepts.

    The config is normalized and stored as ``<sha256>.json``; each compressed
    layer ``i`` is decompressed to ``<diff_ids[i] hash>/layer.tar`` and checked
    against its diffID. A mismatching layer is kept and reported as
    ``HashVerification.MISMATCHED``. ``manifest.json`` lists the layers in
    manifest order.

    Args:
        work_dir: Working directory holding the compressed layers
        output_path: Final archive path, only written once packing succeeded
        image_name: Name used in RepoTags (e.g., alpine)
        tag: Tag used in RepoTags
        manifest: Resolved single-platform manifest, used for sanity logging
        config: Image config as fetched from the registry
        layer_files: Compressed layers in manifest order; when omitted the
            ``*.tar.gz`` files of ``work_dir`` are used in sorted order, which
            relies on their zero-padded index prefix
        keep_work_dir: Leave the working directory in place after success

    Returns:
        BuildResult describing the archive

    Raises:
        MissingDiffIdsError: If the config has no rootfs.diff_ids
        NoLayersProducedError: If no layer could be written
        PackagingError: If the tar or a working file cannot be written
        ArchiveBuildError: If a layer blob cannot be decompressed
    """
    work_dir = Path(work_dir)
    output_path = Path(output_path)
    logger.info("Building Docker tar archive %s", output_path)

    normalized = normalize_config(config)
    config_bytes = serialize_config(normalized)
    config_filename = f"{hashlib.sha256(config_bytes).hexdigest()}.json"
    _write(work_dir / config_filename, config_bytes)
    logger.info("Config file written: %s", config_filename)

    diff_ids = (normalized.get("rootfs") or {}).get("diff_ids") or []
    logger.info("Config contains %d diffIDs", len(diff_ids))
    if not diff_ids:
        logger.error("No diffIDs found in config")
        raise MissingDiffIdsError("Image config has no rootfs.diff_ids")

    if layer_files is None:
        layer_files = sorted(work_dir.glob("*.tar.gz"))
    layer_files = [Path(path) for path in layer_files]
    logger.info("Found %d compressed layers", len(layer_files))
    logger.info("Layer order: %s", ", ".join(path.name for path in layer_files))
    if manifest is not None and len(manifest.layers) != len(layer_files):
        logger.warning(
            "Manifest lists %d layers but %d blobs are present",
            len(manifest.layers),
            len(layer_files),
        )

    layers: list[LayerResult] = []
    for index, compressed in enumerate(layer_files):
        if index >= len(diff_ids):
            logger.warning("No diffID for layer %d, skipping", index)
            continue

        diff_id = diff_ids[index]
        diff_hash = strip_digest_prefix(diff_id)
        logger.info("Layer %d: diffID=%s... file=%s", index, diff_hash[:12], compressed.name)

        layer_dir = work_dir / diff_hash
        layer_tar = layer_dir / "layer.tar"

        logger.info("Decompressing layer %d...", index + 1)
        try:
            layer_dir.mkdir(parents=True, exist_ok=True)
            actual_hash, size = decompress_layer(compressed, layer_tar)
        except (OSError, EOFError, zlib.error) as e:
            logger.error("Cannot decompress %s: %s", compressed, e)
            raise ArchiveBuildError(
                f"Cannot decompress layer {index} ({compressed.name}): {e}"
            ) from e

        if actual_hash == diff_hash:
            verification = HashVerification.VERIFIED
            logger.info("Layer %d verified (%s MB)", index, _mib(size))
        else:
            verification = HashVerification.MISMATCHED
            logger.warning(
                "Layer %d hash mismatch: expected %s, got sha256:%s (using it anyway)",
                index,
                diff_id,
                actual_hash,
            )

        layers.append(
            LayerResult(
                index=index,
                diff_id=diff_id,
                path=f"{diff_hash}/layer.tar",
                size=size,
                verification=verification,
                actual_digest=f"sha256:{actual_hash}",
            )
        )

    if not layers:
        logger.error("No layer files were created")
        raise NoLayersProducedError("No layers could be decompressed")

    repo_tags = [f"{image_name}:{tag}"]
    archive_manifest = [
        {
            "Config": config_filename,
            "RepoTags": repo_tags,
            "Layers": [layer.path for layer in layers],
        }
    ]
    _write(
        work_dir / "manifest.json",
        json.dumps(archive_manifest, separators=(",", ":")).encode("utf-8"),
    )
    logger.info("Manifest written with %d layers", len(layers))

    # The same diffID may appear twice, its layer.tar is stored once
    members = list(
        dict.fromkeys([config_filename, "manifest.json", *(layer.path for layer in layers)])
    )
    logger.info("Creating tar with %d files", len(members))
    _pack(work_dir, members, output_path, created_timestamp(normalized))

    size = output_path.stat().st_size
    logger.info("Tar archive created: %s MB", _mib(size))

    if not keep_work_dir:
        shutil.rmtree(work_dir, ignore_errors=True)

    return BuildResult(
        output_path=output_path,
        config_filename=config_filename,
        repo_tags=repo_tags,
        layers=layers,
        size=size,
    )
