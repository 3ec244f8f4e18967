"""Data models for archive assembly."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class HashVerification(str, Enum):
    """Outcome of comparing a decompressed layer with its diffID."""

    VERIFIED = "verified"
    MISMATCHED = "mismatched"


@dataclass
class LayerResult:
    """One decompressed layer written into the archive."""

    index: int
    diff_id: str
    path: str  # Path within the tar file (<diffIDHash>/layer.tar)
    size: int
    verification: HashVerification
    actual_digest: str = ""


@dataclass
class BuildResult:
    """A finished ``docker load`` archive."""

    output_path: Path
    config_filename: str
    repo_tags: list[str]
    layers: list[LayerResult] = field(default_factory=list)
    size: int = 0

    @property
    def layer_paths(self) -> list[str]:
        return [layer.path for layer in self.layers]

    @property
    def mismatched_layers(self) -> list[LayerResult]:
        return [
            layer
            for layer in self.layers
            if layer.verification is HashVerification.MISMATCHED
        ]
