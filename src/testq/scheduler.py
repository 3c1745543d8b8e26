from __future__ import annotations

import logging
import random
import re
import statistics
from collections.abc import Iterable
from pathlib import Path

from .app_logging import log_with_fields
from .config import WorkerConfig
from .engine import EngineError, ExecutionEngine
from .store import JobStore
from .telemetry import JOB_SPLIT_FAILED, NO_TIMINGS_FOUND, Telemetry
from .utils import timings_signature

TEST_FILE_REGEX = re.compile(r"(^test_.*|.*_test)\.py$")


def _relative(path: Path, cwd: Path) -> str:
    try:
        return path.resolve().relative_to(cwd).as_posix()
    except ValueError:
        return path.as_posix()


def collect_files(
    paths: Iterable[str],
    include_pattern: str | None = None,
    exclude_pattern: str | None = None,
    cwd: Path | None = None,
) -> list[str]:
    """Expand directories into test files, relative to ``cwd``.

    Explicit files and node ids are kept as given. Include/exclude patterns
    only filter files found by walking directories.
    """
    cwd = (cwd or Path.cwd()).resolve()
    include = re.compile(include_pattern) if include_pattern else None
    exclude = re.compile(exclude_pattern) if exclude_pattern else None

    output: list[str] = []
    for item in paths:
        path = Path(item)
        if not path.is_absolute():
            path = cwd / path
        if not path.is_dir():
            output.append(item)
            continue
        found = sorted(
            candidate
            for candidate in path.rglob("*.py")
            if candidate.is_file() and TEST_FILE_REGEX.match(candidate.name)
        )
        for candidate in found:
            relative = _relative(candidate, cwd)
            if include and not include.search(relative):
                continue
            if exclude and exclude.search(relative):
                continue
            output.append(relative)
    return list(dict.fromkeys(output))


class Scheduler:
    """Orders the jobs of a build and publishes them. Runs on the leader only."""

    def __init__(
        self,
        store: JobStore,
        engine: ExecutionEngine,
        config: WorkerConfig,
        logger: logging.Logger,
        telemetry: Telemetry,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.config = config
        self.logger = logger
        self.telemetry = telemetry
        self.rng = rng or random.Random()

    def schedule(self, files: list[str]) -> list[str]:
        timings = self.store.global_timings()
        signature = timings_signature(timings)
        fail_fast = self.config.fail_fast

        if self.config.reproduction:
            self._publish(files, fail_fast, signature, reason="reproduction")
            return files

        if not timings:
            jobs = list(files)
            self.rng.shuffle(jobs)
            self._publish(jobs, fail_fast, signature, reason="no_timings")
            self.telemetry.capture(
                NO_TIMINGS_FOUND,
                build=self.store.build_id,
                worker=self.store.worker_id,
                queue_size=len(jobs),
            )
            return jobs

        threshold = self.config.file_split_threshold
        slow_files: list[str] = []
        if threshold is not None:
            slow_files = [f for f in files if f in timings and timings[f] >= threshold]
        if slow_files:
            log_with_fields(
                self.logger,
                logging.INFO,
                "slow_files_found",
                threshold=threshold,
                files=slow_files,
            )

        slow = set(slow_files)
        fast_jobs = [f for f in files if f not in slow]
        default_timing = statistics.median(timings.values())

        if self.config.early_release and slow_files:
            fast_sorted = self._sort(fast_jobs, timings, default_timing)
            self.store.publish(fast_sorted, fail_fast, mark_ready=False, timings_signature=signature)
            log_with_fields(self.logger, logging.INFO, "queue_early_release", size=len(fast_sorted))
            split_sorted = self._sort(self.split_files(slow_files), timings, default_timing)
            self._publish(split_sorted, fail_fast, signature, reason="timings")
            return fast_sorted + split_sorted

        jobs = self._sort(fast_jobs + self.split_files(slow_files), timings, default_timing)
        self._publish(jobs, fail_fast, signature, reason="timings")
        return jobs

    def split_files(self, files: list[str]) -> list[str]:
        """Turn files into per-example jobs; files that fail to load stay whole."""
        jobs: list[str] = []
        for path in files:
            try:
                examples = self.engine.list_examples(path)
            except EngineError as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "file_split_failed",
                    file=path,
                    error=str(exc),
                )
                self.telemetry.capture(
                    JOB_SPLIT_FAILED,
                    build=self.store.build_id,
                    worker=self.store.worker_id,
                    job=path,
                    error=str(exc),
                )
                examples = []
            jobs.extend(examples or [path])
        return jobs

    def _sort(self, jobs: list[str], timings: dict[str, float], default_timing: float) -> list[str]:
        assigned: dict[str, float] = {}
        for job in jobs:
            if job not in timings:
                # untimed jobs land in the middle of the queue
                log_with_fields(self.logger, logging.DEBUG, "untimed_job", job=job)
            assigned[job] = timings.get(job, default_timing)
        return sorted(assigned, key=lambda job: -assigned[job])

    def _publish(self, jobs: list[str], fail_fast: int, signature: str, *, reason: str) -> None:
        size = self.store.publish(jobs, fail_fast, mark_ready=True, timings_signature=signature)
        log_with_fields(
            self.logger,
            logging.WARNING if reason == "no_timings" else logging.INFO,
            "queue_published",
            size=size,
            order=reason,
        )
