from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"


@dataclass(slots=True)
class ReclaimedJob:
    job: str
    dead_worker: str


@dataclass(slots=True)
class BuildDurations:
    from_elected_master: float | None
    from_queue_ready: float | None

