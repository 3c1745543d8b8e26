from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from .app_logging import get_logger, log_with_fields

JOB_SPLIT_FAILED = "job_split_failed"
NO_TIMINGS_FOUND = "no_timings_found"
FAIL_FAST_TRIPPED = "fail_fast_tripped"
FLAKY_JOB_DETECTED = "flaky_job_detected"


class Telemetry(ABC):
    """Sink for events worth alerting on.

    Subclasses forward events to an external error tracker. Context carries
    everything needed to act on the event without querying the Store.
    """

    @abstractmethod
    def capture(self, event: str, level: int = logging.WARNING, **context: object) -> None:
        """Record ``event``; ``context`` is attached as structured fields."""


class LoggingTelemetry(Telemetry):
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or get_logger("telemetry")

    def capture(self, event: str, level: int = logging.WARNING, **context: object) -> None:
        log_with_fields(self.logger, level, event, **context)
