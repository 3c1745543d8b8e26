from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable
from typing import TextIO

from .app_logging import log_with_fields
from .config import ReporterConfig
from .store import JobStore
from .telemetry import FLAKY_JOB_DETECTED, LoggingTelemetry, Telemetry
from .utils import humanize_duration, job_file

POLL_INTERVAL_SECONDS = 1.0


class BuildTimeoutError(TimeoutError):
    pass


class Reporter:
    """Consolidates the results of all workers of a build.

    Failures are printed as soon as they show up; the summary is printed once
    the queue is exhausted (or the build failed fast). Reporters only read the
    queue, apart from stamping the finish time and the timing history.
    """

    def __init__(
        self,
        store: JobStore,
        config: ReporterConfig,
        logger: logging.Logger,
        *,
        telemetry: Telemetry | None = None,
        out: TextIO | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config
        self.logger = logger
        self.telemetry = telemetry or LoggingTelemetry()
        self.out = out or sys.stdout
        self.sleep = sleep
        self.clock = clock
        self.reported_failures: set[str] = set()
        self.failure_heading_printed = False

    def _print(self, text: str = "") -> None:
        print(text, file=self.out, flush=True)

    def report(self) -> int:
        self.store.wait_until_ready(self.config.queue_wait_timeout)

        deadline = self.clock() + self.config.timeout
        while True:
            self.print_new_failures()
            if self.store.exhausted() or self.store.build_failed_fast():
                break
            if self.clock() >= deadline:
                raise BuildTimeoutError(f"Build not finished after {self.config.timeout} seconds")
            self.sleep(POLL_INTERVAL_SECONDS)

        self.store.mark_finished()
        durations = self.store.elapsed_times()
        build_duration = durations.from_elected_master
        if build_duration is not None:
            self.store.record_build_time(build_duration)

        successful = self.store.build_successful()
        if self.config.update_timings and successful:
            if self.store.fold_global_timings():
                self._print(f"Updated global job timings @ {self.store.timings_key}")
            else:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "global_timings_not_updated",
                    build=self.store.build_id,
                    reason="timing set changed since scheduling",
                )

        flaky_jobs = self.store.flaky_jobs()
        self._print(self.summary(flaky_jobs))
        self.flaky_jobs_to_telemetry(flaky_jobs, build_duration)

        log_with_fields(
            self.logger,
            logging.INFO,
            "build_reported",
            build=self.store.build_id,
            successful=successful,
            flaky=len(flaky_jobs),
        )
        return 0 if successful else 1

    def print_new_failures(self) -> None:
        for job, output in self.store.example_failures().items():
            if job in self.reported_failures:
                continue
            if not self.failure_heading_printed:
                self._print("\nFailures:\n")
                self.failure_heading_printed = True
            self.reported_failures.add(job)
            self._print(failure_formatted(output))

    def summary(self, flaky_jobs: list[str]) -> str:
        failures = self.store.example_failures()
        errors = self.store.non_example_errors()
        withdrawn = self.store.workers_withdrawn()
        lost_jobs = self.store.lost_jobs_count()
        requeues = sum(self.store.requeued_jobs().values())

        lines: list[str] = []
        if self.store.build_failed_fast():
            lines += ["", "", f"The limit of {self.store.fail_fast()} failures has been reached", "Aborting..."]

        if failures:
            lines += ["", "Failed examples:", ""]
            lines += [f"  {message.splitlines()[-1]}" for message in failures.values() if message]

        lines += list(errors.values())

        totals = (
            f"  {self.store.example_count()} examples "
            f"({self.store.processed_jobs_count()} jobs), "
            f"{len(failures)} failures, "
            f"{len(errors)} errors, "
            f"{requeues} requeues"
        )
        if flaky_jobs:
            totals += f", {len(flaky_jobs)} flaky"
        if withdrawn:
            totals += f", {len(withdrawn)} withdrawals"
        if lost_jobs:
            totals += f", {lost_jobs} lost jobs (unique)"
        lines += ["", "Total results:", totals, "", ""]

        durations = self.store.elapsed_times()
        if durations.from_elected_master is not None:
            lines.append(f"Test time (from elected master)\t: {humanize_duration(durations.from_elected_master)}")
        if durations.from_queue_ready is not None:
            lines.append(f"Test time (from queue ready)\t: {humanize_duration(durations.from_queue_ready)}")
        lines.append(f"Worker total execution time\t: {humanize_duration(self.store.total_execution_time())}")

        if withdrawn:
            lines += ["", f"Workers withdrawn (count={len(withdrawn)}):"]
            lines += [f"  Worker {worker} withdrawn {count} times" for worker, count in withdrawn.items()]

        if flaky_jobs:
            lines += ["", "", f"Flaky jobs detected (count={len(flaky_jobs)}):"]
            for job in flaky_jobs:
                timing = self.store.job_build_timing(job)
                job_timing = humanize_duration(timing) if timing is not None else "---"
                location = self.store.job_location(job) or job
                lines.append(f"{location} @ {self.store.requeue_origin_worker(job)} timing={job_timing}")
                if not self.config.rerun_command_skip:
                    lines += [self.store.job_rerun_command(job), ""]
        return "\n".join(lines)

    def flaky_jobs_to_telemetry(self, jobs: list[str], build_duration: float | None) -> None:
        failures = self.store.flaky_failures()
        for job in jobs:
            self.telemetry.capture(
                FLAKY_JOB_DETECTED,
                build=self.store.build_id,
                build_timeout=self.config.timeout,
                build_duration=build_duration,
                job=job,
                file=job_file(job),
                location=self.store.job_location(job),
                worker=self.store.requeue_origin_worker(job),
                rerun_command=self.store.job_rerun_command(job),
                output=failures.get(job),
            )


def failure_formatted(output: str) -> str:
    """Failure output without its trailing rerun line (shown in the summary)."""
    return "\n".join(output.split("\n")[:-1])
