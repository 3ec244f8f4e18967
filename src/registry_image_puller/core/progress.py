"""Download progress side channel.

The pipeline is the only writer for its key; readers (the progress endpoint)
poll without coordination and always see the last complete write.
"""

import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class ProgressStage(str, Enum):
    INIT = "init"
    DOWNLOAD = "download"
    TAR = "tar"


@dataclass
class ProgressState:
    active: bool = False
    current: int = 0
    total: int = 0
    percent: int = 0
    message: str = ""
    stage: ProgressStage = ProgressStage.INIT

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


IDLE_STATE = {"active": False, "message": "No active download"}


class ProgressStore:
    """In-memory progress records keyed by session id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, ProgressState] = {}

    def set(self, key: str, state: ProgressState) -> None:
        with self._lock:
            self._states[key] = state

    def get(self, key: str) -> dict[str, Any]:
        """Return the JSON-ready record for ``key``, or the idle record."""
        with self._lock:
            state = self._states.get(key)
        if state is None:
            return dict(IDLE_STATE)
        return state.to_dict()

    def clear(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._states


class ProgressReporter:
    """Writes coarse pipeline checkpoints for one session."""

    def __init__(self, store: ProgressStore, key: str) -> None:
        self.store = store
        self.key = key

    def start(self) -> None:
        self.store.set(
            self.key,
            ProgressState(active=True, message="Preparing...", stage=ProgressStage.INIT),
        )

    def layers_started(self, total: int) -> None:
        self.store.set(
            self.key,
            ProgressState(
                active=True,
                total=total,
                message=f"Starting download of {total} layers...",
                stage=ProgressStage.DOWNLOAD,
            ),
        )

    def layer(self, current: int, total: int) -> None:
        percent = round(current / total * 100) if total else 0
        self.store.set(
            self.key,
            ProgressState(
                active=True,
                current=current,
                total=total,
                percent=percent,
                message=f"Downloading layer {current} of {total}...",
                stage=ProgressStage.DOWNLOAD,
            ),
        )

    def packing(self, total: int) -> None:
        self.store.set(
            self.key,
            ProgressState(
                active=True,
                current=total,
                total=total,
                percent=100,
                message="Building tar archive...",
                stage=ProgressStage.TAR,
            ),
        )

    def clear(self) -> None:
        self.store.clear(self.key)


class NullProgressReporter(ProgressReporter):
    """Reporter for callers that do not poll progress."""

    def __init__(self) -> None:
        super().__init__(ProgressStore(), "null")
