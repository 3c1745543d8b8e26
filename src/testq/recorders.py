from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .app_logging import log_with_fields
from .engine import ExecutionEngine
from .store import JobStore


class JobRecorder:
    """Observer attached to one job run; persists what the engine reports.

    Example failures are requeued while the job has retries left. Those are
    provisional and only kept as flaky failures; once the limit is reached the
    failure is recorded for good, with enough context to rerun it.
    """

    def __init__(
        self,
        store: JobStore,
        engine: ExecutionEngine,
        job: str,
        *,
        seed: int,
        max_requeues: int,
        heartbeat: Callable[[], None],
        logger: logging.Logger,
        requeue_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.engine = engine
        self.job = job
        self.seed = seed
        self.max_requeues = max_requeues
        self.heartbeat = heartbeat
        self.logger = logger
        self.requeue_delay = requeue_delay
        self.sleep = sleep
        self.load_error_recorded = False
        self.requeued: list[str] = []
        self.failed: list[str] = []

    def suite_finished(self, duration: float, example_count: int) -> None:
        if example_count > 0:
            self.store.increment_example_count(example_count)
        self.store.record_timing(self.job, duration)

    def example_finished(self) -> None:
        self.heartbeat()

    def example_failed(self, example_id: str, message: str, location: str | None) -> None:
        worker_id = self.store.worker_id
        if self.store.requeue(example_id, self.max_requeues, worker_id, location):
            self.requeued.append(example_id)
            self.store.record_flaky_failure(example_id, message)
            log_with_fields(
                self.logger,
                logging.INFO,
                "example_requeued",
                job=self.job,
                example=example_id,
                location=location,
            )
            # try to avoid picking up the job we just requeued; another
            # worker should get it
            self.sleep(self.requeue_delay)
            return

        self.failed.append(example_id)
        rerun = self.engine.rerun_command(location or example_id, self.seed)
        self.store.record_example_failure(
            example_id,
            f"{message.rstrip()}\n{rerun} # worker={worker_id} example={example_id}",
        )
        log_with_fields(
            self.logger,
            logging.WARNING,
            "example_failed",
            job=self.job,
            example=example_id,
            location=location,
            seed=self.seed,
        )

    def load_error(self, message: str) -> None:
        # Engines may report the same load error more than once; the first
        # carries the traceback.
        if self.load_error_recorded:
            return
        self.store.record_error(self.job, message)
        self.load_error_recorded = True
        log_with_fields(self.logger, logging.WARNING, "job_load_error", job=self.job)
