from __future__ import annotations

import logging
import random
import time
import traceback
from collections.abc import Callable
from multiprocessing.connection import Connection

from .app_logging import log_with_fields
from .config import WorkerConfig
from .engine import ExecutionEngine
from .recorders import JobRecorder
from .scheduler import Scheduler, collect_files
from .store import JobStore
from .telemetry import FAIL_FAST_TRIPPED, LoggingTelemetry, Telemetry

MAX_SEED = 0xFFFF


class Worker:
    """Pulls jobs off the build queue until it is exhausted.

    Each loop tick: honour a shutdown request, refresh the heartbeat, stop on
    fail-fast, give back one job of a dead worker, then reserve and run a job.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: JobStore,
        engine: ExecutionEngine,
        logger: logging.Logger,
        *,
        telemetry: Telemetry | None = None,
        shutdown: Connection | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.store = store
        self.engine = engine
        self.logger = logger
        self.telemetry = telemetry or LoggingTelemetry()
        self.shutdown = shutdown
        self.sleep = sleep
        self.clock = clock
        self.heartbeat_updated_at: float | None = None
        self.shutdown_seen = False
        self.fail_fast_reported = False
        self.jobs_executed = 0

    @property
    def worker_id(self) -> str:
        return self.store.worker_id

    @property
    def build_id(self) -> str:
        return self.store.build_id

    def work(self) -> int:
        log_with_fields(self.logger, logging.INFO, "worker_started", build=self.build_id, worker=self.worker_id)

        self.try_publish_queue()
        self.store.wait_until_published(self.config.queue_wait_timeout)

        while True:
            if self.shutdown_requested():
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "worker_shutdown",
                    worker=self.worker_id,
                    jobs_executed=self.jobs_executed,
                )
                return 0

            self.update_heartbeat()

            if self.store.build_failed_fast():
                self._report_fail_fast()
                if not self.config.keep_alive:
                    return 0
                self.sleep(self.config.poll_interval)
                continue

            lost = self.store.reclaim_lost_job(self.config.liveness_seconds)
            if lost is not None:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "lost_job_requeued",
                    job=lost.job,
                    dead_worker=lost.dead_worker,
                )
                continue

            job = self.store.reserve_next()
            if job is None:
                if self.store.exhausted():
                    if self.store.mark_finished():
                        log_with_fields(self.logger, logging.INFO, "build_finished", build=self.build_id)
                    if not self.config.keep_alive:
                        log_with_fields(
                            self.logger,
                            logging.INFO,
                            "worker_finished",
                            worker=self.worker_id,
                            jobs_executed=self.jobs_executed,
                        )
                        return 0
                self.sleep(self.config.poll_interval)
                continue

            self.execute(job)

    def shutdown_requested(self) -> bool:
        """True once the supervisor closed (or wrote to) the shutdown channel."""
        if self.shutdown_seen:
            return True
        if self.shutdown is None:
            return False
        try:
            if not self.shutdown.poll():
                return False
            self.shutdown.recv()
        except (EOFError, OSError):
            pass
        self.shutdown_seen = True
        return True

    def update_heartbeat(self) -> None:
        now = self.clock()
        if self.heartbeat_updated_at is None or now - self.heartbeat_updated_at >= self.config.heartbeat_interval:
            self.store.record_heartbeat()
            self.heartbeat_updated_at = now

    def try_publish_queue(self) -> bool:
        if not self.store.become_leader():
            return False
        log_with_fields(self.logger, logging.INFO, "elected_leader", build=self.build_id, worker=self.worker_id)
        if self.config.reproduction:
            files = list(self.config.files_or_dirs)
        else:
            files = collect_files(
                self.config.files_or_dirs,
                include_pattern=self.config.include_pattern,
                exclude_pattern=self.config.exclude_pattern,
            )
        scheduler = Scheduler(self.store, self.engine, self.config, self.logger, self.telemetry)
        scheduler.schedule(files)
        return True

    def next_seed(self) -> int:
        if self.config.seed is not None:
            return self.config.seed
        return random.randrange(MAX_SEED)

    def execute(self, job: str) -> None:
        seed = self.next_seed()
        self.store.save_worker_seed(seed)
        log_with_fields(self.logger, logging.INFO, "job_reserved", job=job, worker=self.worker_id, seed=seed)

        recorder = JobRecorder(
            self.store,
            self.engine,
            job,
            seed=seed,
            max_requeues=self.config.max_requeues,
            heartbeat=self.update_heartbeat,
            logger=self.logger,
            requeue_delay=self.config.requeue_delay,
            sleep=self.sleep,
        )
        try:
            self.engine.run(job, recorder, seed)
        except Exception as exc:
            # record engine crashes as job errors
            self.store.record_error(job, traceback.format_exc())
            log_with_fields(
                self.logger,
                logging.ERROR,
                "job_crashed",
                job=job,
                worker=self.worker_id,
                error=repr(exc),
            )

        self.store.acknowledge(job)
        self.jobs_executed += 1
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_acknowledged",
            job=job,
            worker=self.worker_id,
            requeued=recorder.requeued,
            failed=recorder.failed,
        )

    def _report_fail_fast(self) -> None:
        if self.fail_fast_reported:
            return
        self.fail_fast_reported = True
        self.store.mark_finished()
        log_with_fields(
            self.logger,
            logging.WARNING,
            "fail_fast_tripped",
            build=self.build_id,
            worker=self.worker_id,
            threshold=self.store.fail_fast(),
        )
        self.telemetry.capture(
            FAIL_FAST_TRIPPED,
            build=self.build_id,
            worker=self.worker_id,
            threshold=self.store.fail_fast(),
        )
