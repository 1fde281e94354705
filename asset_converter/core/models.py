from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional
import time

from .errors import InvalidTransition


class JobType(str, Enum):
    cloud = "cloud"    # point clouds (LAS/LAZ)
    model = "model"    # OBJ meshes
    splat = "splat"    # gaussian splats
    ifc = "ifc"        # structural models


class JobState(str, Enum):
    queued = "QUEUED"
    processing = "PROCESSING"
    done = "DONE"
    error = "ERROR"

    @property
    def terminal(self) -> bool:
        return self in (JobState.done, JobState.error)


_TRANSITIONS = {
    JobState.queued: {JobState.processing},
    JobState.processing: {JobState.done, JobState.error},
    JobState.done: set(),
    JobState.error: set(),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    id: str
    type: JobType
    base_path: Path
    created_ms: int = field(default_factory=_now_ms)
    state: JobState = JobState.queued
    progress: float = 0.0
    error: Optional[str] = None

    # ---- derived paths (pure functions of construction-time values) ----
    def root(self) -> Path:
        return Path(self.base_path) / self.type.value / self.id

    def input_dir(self) -> Path:
        return self.root()

    def output_dir(self) -> Path:
        return self.root() / "out"

    def log_file(self) -> Path:
        return self.root() / f"{self.id}_{self.created_ms}_log.txt"

    # ---- state machine ----
    def transition(self, new: JobState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"cannot move job from {self.state.value} to {new.value}", job_id=self.id
            )
        self.state = new
        if new is JobState.done:
            self.progress = 100.0

    def progress_view(self) -> dict:
        if self.state is JobState.done:
            return {"progress": 100, "finished": True, "state": self.state.value}
        if self.state is JobState.error:
            return {
                "progress": -1,
                "finished": False,
                "state": self.state.value,
                "message": self.error or "Processing failed",
            }
        if self.state is JobState.queued:
            return {"progress": 0, "finished": False, "state": self.state.value}
        return {"progress": self.progress, "finished": False, "state": self.state.value}

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "state": self.state.value,
            "progress": self.progress,
            "created_ms": self.created_ms,
            "error": self.error,
        }
