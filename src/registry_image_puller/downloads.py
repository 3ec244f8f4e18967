"""Listing and deletion of finished archives in the download directory."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .exceptions import TarReadError, ValidationError
from .tar.tags import extract_repo_tags_from_manifest

logger = logging.getLogger(__name__)


@dataclass
class DownloadedImage:
    name: str
    size: int
    modified: datetime
    repo_tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "size": self.size,
            "modified": self.modified.isoformat(timespec="seconds"),
            "repo_tags": self.repo_tags,
        }


def resolve_download_path(download_dir: str | Path, name: str) -> Path:
    """Map a user-supplied archive name to a file inside ``download_dir``.

    Only the basename of ``name`` is used, so paths cannot escape the directory.

    Raises:
        FileNotFoundError: If there is no regular file by that name
    """
    basename = Path(name).name
    path = Path(download_dir) / basename
    if not basename or not path.is_file():
        raise FileNotFoundError(f"No such archive: {basename or name!r}")
    return path


def list_downloaded_images(download_dir: str | Path) -> list[DownloadedImage]:
    """List ``*.tar`` archives, newest first, with the tags they carry."""
    download_dir = Path(download_dir)
    if not download_dir.is_dir():
        return []

    images = []
    for path in download_dir.glob("*.tar"):
        if not path.is_file():
            continue
        stat = path.stat()
        try:
            repo_tags = extract_repo_tags_from_manifest(str(path))
        except (TarReadError, ValidationError) as e:
            logger.debug("No tags readable from %s: %s", path.name, e)
            repo_tags = []
        images.append(
            DownloadedImage(
                name=path.name,
                size=stat.st_size,
                modified=datetime.fromtimestamp(stat.st_mtime),
                repo_tags=repo_tags,
            )
        )

    images.sort(key=lambda image: image.modified, reverse=True)
    return images


def delete_downloaded_image(download_dir: str | Path, name: str) -> Path:
    """Delete one archive from ``download_dir`` and return its path."""
    path = resolve_download_path(download_dir, name)
    path.unlink()
    logger.info("Image deleted: %s", path.name)
    return path
