from __future__ import annotations

import logging
import shlex
import time
from typing import Any

import redis
from redis.exceptions import NoScriptError, WatchError

from .app_logging import get_logger, log_with_fields
from .models import BuildDurations, BuildStatus, ReclaimedJob
from .scripts import (
    BECOME_LEADER_LUA,
    REMOVE_WORKER_LUA,
    REQUEUE_JOB_LUA,
    REQUEUE_LOST_JOB_LUA,
    RESERVE_JOB_LUA,
)
from .utils import job_file, timings_signature

DEFAULT_TIMINGS_KEY = "timings"
BUILD_TIMES_KEY = "build_times"
BUILD_TIMES_HISTORY = 100

_SCRIPTS = {
    "reserve_job": RESERVE_JOB_LUA,
    "requeue_lost_job": REQUEUE_LOST_JOB_LUA,
    "requeue_job": REQUEUE_JOB_LUA,
    "remove_worker": REMOVE_WORKER_LUA,
    "become_leader": BECOME_LEADER_LUA,
}


class QueueNotReadyError(TimeoutError):
    pass


def connect(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


class JobStore:
    """Typed operations over the Redis keys of one build.

    Every operation that decides ownership of a job (reserve, requeue, lost
    job reclaim, leader election, worker removal) is one server-side script.
    Multi-key writes that only need to land together go through MULTI.
    """

    def __init__(
        self,
        client: redis.Redis,
        build_id: str,
        worker_id: str,
        *,
        timings_key: str = DEFAULT_TIMINGS_KEY,
        logger: logging.Logger | None = None,
    ) -> None:
        self.redis = client
        self.build_id = build_id
        self.worker_id = worker_id
        self.timings_key = timings_key
        self.logger = logger or get_logger("store")
        self._script_shas: dict[str, str] = {}
        self._fail_fast: int | None = None

    @classmethod
    def from_url(cls, url: str, build_id: str, worker_id: str, **kwargs: Any) -> JobStore:
        return cls(connect(url), build_id, worker_id, **kwargs)

    def close(self) -> None:
        self.redis.close()

    # -- keys -------------------------------------------------------------

    def key(self, *parts: str) -> str:
        return ":".join([self.build_id, *parts])

    @property
    def key_queue_status(self) -> str:
        return self.key("queue", "status")

    @property
    def key_queue_config(self) -> str:
        return self.key("queue", "config")

    @property
    def key_queue_unprocessed(self) -> str:
        return self.key("queue", "unprocessed")

    @property
    def key_queue_running(self) -> str:
        return self.key("queue", "running")

    @property
    def key_queue_processed(self) -> str:
        return self.key("queue", "processed")

    @property
    def key_queue_lost(self) -> str:
        return self.key("queue", "lost")

    def key_jobs_per_worker(self, worker_id: str) -> str:
        return self.key("queue", "jobs_per_worker", worker_id)

    @property
    def key_failures(self) -> str:
        return self.key("example_failures")

    @property
    def key_flaky_failures(self) -> str:
        return self.key("flaky_failures")

    # Errors raised outside of examples, e.g. while importing a test module.
    @property
    def key_errors(self) -> str:
        return self.key("errors")

    @property
    def key_requeues(self) -> str:
        return self.key("requeues")

    @property
    def key_example_count(self) -> str:
        return self.key("example_count")

    @property
    def key_worker_heartbeats(self) -> str:
        return self.key("worker_heartbeats")

    @property
    def key_workers_withdrawn(self) -> str:
        return self.key("workers_withdrawn")

    @property
    def key_build_timings(self) -> str:
        return self.key("timings")

    # -- scripts ----------------------------------------------------------

    def _load_script(self, name: str) -> str:
        sha = self.redis.script_load(_SCRIPTS[name])
        self._script_shas[name] = sha
        return sha

    def _run_script(self, name: str, keys: list[str], args: list[object]) -> Any:
        sha = self._script_shas.get(name) or self._load_script(name)
        try:
            return self.redis.evalsha(sha, len(keys), *keys, *args)
        except NoScriptError:
            log_with_fields(self.logger, logging.DEBUG, "script_reloaded", script=name)
            sha = self._load_script(name)
            return self.redis.evalsha(sha, len(keys), *keys, *args)

    def current_time(self) -> float:
        # The Store's clock is shared by every worker; local clocks are not.
        seconds, microseconds = self.redis.time()
        return seconds + microseconds / 1_000_000

    # -- atomic job operations --------------------------------------------

    def reserve_next(self) -> str | None:
        return self._run_script(
            "reserve_job",
            [self.key_queue_unprocessed, self.key_queue_running],
            [self.worker_id],
        )

    def reclaim_lost_job(self, liveness_seconds: float, now: float | None = None) -> ReclaimedJob | None:
        if now is None:
            now = self.current_time()
        result = self._run_script(
            "requeue_lost_job",
            [
                self.key_worker_heartbeats,
                self.key_queue_running,
                self.key_queue_unprocessed,
                self.key_queue_lost,
            ],
            [repr(float(now)), repr(float(liveness_seconds))],
        )
        if not result:
            return None
        job, dead_worker = result
        return ReclaimedJob(job=job, dead_worker=dead_worker)

    def requeue(self, job: str, max_requeues: int, origin_worker: str, location: str | None = None) -> bool:
        """Put a failed job back at the head of the queue.

        Returns False when the job already hit ``max_requeues``, in which case
        the failure is final.
        """
        if max_requeues <= 0:
            return False
        result = self._run_script(
            "requeue_job",
            [
                self.key_queue_unprocessed,
                self.key_requeues,
                self.key("requeued_job_original_worker"),
                self.key("job_location"),
            ],
            [job, max_requeues, origin_worker, location or ""],
        )
        return bool(result)

    # The same job may be acknowledged more than once when it was requeued.
    def acknowledge(self, job: str) -> None:
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self.key_queue_running, self.worker_id)
            pipe.sadd(self.key_queue_processed, job)
            pipe.rpush(self.key_jobs_per_worker(self.worker_id), job)
            pipe.execute()

    def remove_worker(self, worker_id: str) -> bool:
        result = self._run_script(
            "remove_worker",
            [
                self.key_queue_unprocessed,
                self.key_worker_heartbeats,
                self.key_queue_running,
                self.key_workers_withdrawn,
            ],
            [worker_id],
        )
        return bool(result)

    def become_leader(self) -> bool:
        result = self._run_script(
            "become_leader",
            [self.key_queue_status, self.key("elected_master_at")],
            [BuildStatus.INITIALIZING.value, repr(self.current_time())],
        )
        return bool(result)

    def publish(
        self,
        jobs: list[str],
        fail_fast: int = 0,
        *,
        mark_ready: bool = True,
        timings_signature: str | None = None,
    ) -> int:
        """Append jobs to the queue; jobs at the head are served first.

        May be called several times; only a call with ``mark_ready`` flips the
        build to ready. Returns the queue length after the append.
        """
        now = self.current_time() if mark_ready else None
        config: dict[str, object] = {"fail_fast": int(fail_fast)}
        if timings_signature is not None:
            config["timings_signature"] = timings_signature

        with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.key_queue_config, mapping=config)
            if jobs:
                pipe.rpush(self.key_queue_unprocessed, *jobs)
            else:
                pipe.llen(self.key_queue_unprocessed)
            if mark_ready:
                pipe.set(self.key("ready_at"), repr(now), nx=True)
                pipe.set(self.key_queue_status, BuildStatus.READY.value)
            results = pipe.execute()
        return int(results[1])

    # -- bookkeeping ------------------------------------------------------

    def record_heartbeat(self, now: float | None = None) -> None:
        if now is None:
            now = self.current_time()
        self.redis.zadd(self.key_worker_heartbeats, {self.worker_id: now})

    def record_example_failure(self, example_id: str, message: str) -> None:
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.key_failures, example_id, message)
            pipe.hset(self.key("failed_job_worker"), example_id, self.worker_id)
            pipe.execute()

    def record_flaky_failure(self, example_id: str, message: str) -> None:
        self.redis.hset(self.key_flaky_failures, example_id, message)

    def record_error(self, job: str, message: str) -> None:
        self.redis.hset(self.key_errors, job, message)

    def record_timing(self, job: str, duration: float) -> None:
        self.redis.zadd(self.key_build_timings, {job: float(duration)})

    def increment_example_count(self, count: int) -> None:
        self.redis.incrby(self.key_example_count, count)

    def save_worker_seed(self, seed: int) -> None:
        self.redis.hset(self.key("worker_seed"), self.worker_id, seed)

    def record_build_time(self, duration: float) -> None:
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.lpush(BUILD_TIMES_KEY, float(duration))
            pipe.ltrim(BUILD_TIMES_KEY, 0, BUILD_TIMES_HISTORY - 1)
            pipe.execute()

    def build_times(self) -> list[float]:
        return [float(value) for value in self.redis.lrange(BUILD_TIMES_KEY, 0, -1)]

    def mark_finished(self) -> bool:
        """Stamp ``finished_at``; only the first caller succeeds."""
        return bool(self.redis.set(self.key("finished_at"), repr(self.current_time()), nx=True))

    # -- status -----------------------------------------------------------

    def status(self) -> BuildStatus | None:
        value = self.redis.get(self.key_queue_status)
        return BuildStatus(value) if value else None

    def is_ready(self) -> bool:
        return self.status() == BuildStatus.READY

    def is_published(self) -> bool:
        """True once the build is ready or the leader released a first batch."""
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.get(self.key_queue_status)
            pipe.llen(self.key_queue_unprocessed)
            status, queued = pipe.execute()
        return status == BuildStatus.READY.value or int(queued) > 0

    def wait_until_published(self, timeout: float = 30, interval: float = 0.1) -> None:
        self._wait_for(self.is_published, timeout, interval)

    def wait_until_ready(self, timeout: float = 30, interval: float = 0.1) -> None:
        self._wait_for(self.is_ready, timeout, interval)

    def _wait_for(self, predicate: Any, timeout: float, interval: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            if predicate():
                return
            if time.monotonic() >= deadline:
                raise QueueNotReadyError(f"Queue not yet published after {timeout} seconds")
            time.sleep(interval)

    def exhausted(self) -> bool:
        """True if no job is queued or running. Always False before ready."""
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.get(self.key_queue_status)
            pipe.llen(self.key_queue_unprocessed)
            pipe.hlen(self.key_queue_running)
            status, queued, running = pipe.execute()
        if status != BuildStatus.READY.value:
            return False
        return int(queued) + int(running) == 0

    def fail_fast(self) -> int | None:
        """Failure threshold of the build; 0 when disabled, None before ready."""
        if self._fail_fast is not None:
            return self._fail_fast
        if not self.is_ready():
            return None
        self._fail_fast = int(self.redis.hget(self.key_queue_config, "fail_fast") or 0)
        return self._fail_fast

    def build_failed_fast(self) -> bool:
        threshold = self.fail_fast()
        if not threshold:
            return False
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.hlen(self.key_failures)
            pipe.hlen(self.key_errors)
            failures, errors = pipe.execute()
        return int(failures) + int(errors) >= threshold

    def build_successful(self) -> bool:
        return self.exhausted() and not self.example_failures() and not self.non_example_errors()

    # -- reads ------------------------------------------------------------

    def unprocessed_jobs(self) -> list[str]:
        return self.redis.lrange(self.key_queue_unprocessed, 0, -1)

    def running_jobs(self) -> dict[str, str]:
        return self.redis.hgetall(self.key_queue_running)

    def processed_jobs(self) -> set[str]:
        return self.redis.smembers(self.key_queue_processed)

    def processed_jobs_count(self) -> int:
        return int(self.redis.scard(self.key_queue_processed))

    def jobs_per_worker(self, worker_id: str) -> list[str]:
        return self.redis.lrange(self.key_jobs_per_worker(worker_id), 0, -1)

    def example_count(self) -> int:
        return int(self.redis.get(self.key_example_count) or 0)

    def example_failures(self) -> dict[str, str]:
        return self.redis.hgetall(self.key_failures)

    def flaky_failures(self) -> dict[str, str]:
        return self.redis.hgetall(self.key_flaky_failures)

    def non_example_errors(self) -> dict[str, str]:
        return self.redis.hgetall(self.key_errors)

    def requeued_jobs(self) -> dict[str, int]:
        return {job: int(count) for job, count in self.redis.hgetall(self.key_requeues).items()}

    def workers_withdrawn(self) -> dict[str, int]:
        return {worker: int(count) for worker, count in self.redis.hgetall(self.key_workers_withdrawn).items()}

    def lost_jobs_count(self) -> int:
        return int(self.redis.zcard(self.key_queue_lost))

    def worker_heartbeats(self) -> dict[str, float]:
        return dict(self.redis.zrange(self.key_worker_heartbeats, 0, -1, withscores=True))

    def job_location(self, job: str) -> str | None:
        return self.redis.hget(self.key("job_location"), job)

    def requeue_origin_worker(self, job: str) -> str | None:
        """Worker whose failure first sent ``job`` back to the queue."""
        return self.redis.hget(self.key("requeued_job_original_worker"), job)

    def final_failure_worker(self, job: str) -> str | None:
        return self.redis.hget(self.key("failed_job_worker"), job)

    def job_build_timing(self, job: str) -> float | None:
        return self.redis.zscore(self.key_build_timings, job)

    def total_execution_time(self) -> float:
        return sum(score for _, score in self.redis.zrange(self.key_build_timings, 0, -1, withscores=True))

    def flaky_jobs(self) -> list[str]:
        """Jobs that were requeued at least once but did not fail for good."""
        if not self.exhausted() and not self.build_failed_fast():
            raise RuntimeError("Queue is not yet exhausted")
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.hkeys(self.key_requeues)
            pipe.hkeys(self.key_failures)
            requeued, failed = pipe.execute()
        failed_set = set(failed)
        return [job for job in requeued if job not in failed_set]

    def elapsed_times(self) -> BuildDurations:
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.get(self.key("elected_master_at"))
            pipe.get(self.key("ready_at"))
            pipe.get(self.key("finished_at"))
            elected_at, ready_at, finished_at = pipe.execute()
        if finished_at is None:
            return BuildDurations(from_elected_master=None, from_queue_ready=None)
        finished = float(finished_at)
        return BuildDurations(
            from_elected_master=finished - float(elected_at) if elected_at else None,
            from_queue_ready=finished - float(ready_at) if ready_at else None,
        )

    def job_rerun_command(self, job: str, program: str = "testq") -> str:
        """Command reproducing the run of the worker that first failed ``job``."""
        worker = self.requeue_origin_worker(job) or self.final_failure_worker(job)
        if worker is None:
            raise KeyError(f"no worker recorded for job {job}")
        jobs = self.jobs_per_worker(worker)
        if job in jobs:
            index = jobs.index(job)
        elif job_file(job) in jobs:
            index = jobs.index(job_file(job))
        else:
            index = len(jobs) - 1
        seed = self.redis.hget(self.key("worker_seed"), worker)
        return (
            f"{program} --build {shlex.quote(self.build_id + '-rerun')} --worker {shlex.quote(worker)} work "
            f"--seed {seed} --max-requeues 0 --fail-fast 1 "
            f"--reproduction {shlex.join(jobs[: index + 1])}"
        )

    def summary_counts(self) -> dict[str, int]:
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.llen(self.key_queue_unprocessed)
            pipe.hlen(self.key_queue_running)
            pipe.scard(self.key_queue_processed)
            pipe.hlen(self.key_failures)
            pipe.hlen(self.key_errors)
            pipe.hlen(self.key_requeues)
            pipe.zcard(self.key_worker_heartbeats)
            values = pipe.execute()
        names = ["unprocessed", "running", "processed", "failures", "errors", "requeued", "workers"]
        return {name: int(value) for name, value in zip(names, values)}

    # -- timings ----------------------------------------------------------

    def global_timings(self) -> dict[str, float]:
        """Timings shared among builds, slowest first."""
        return dict(self.redis.zrevrange(self.timings_key, 0, -1, withscores=True))

    def build_timings(self) -> dict[str, float]:
        return dict(self.redis.zrevrange(self.key_build_timings, 0, -1, withscores=True))

    def global_timings_signature(self) -> str:
        return timings_signature(self.redis.zrange(self.timings_key, 0, -1))

    def fold_global_timings(self) -> bool:
        """Merge this build's timings into the global set.

        Rejected (False) when the global set changed since the leader captured
        its signature while scheduling this build.
        """
        expected = self.redis.hget(self.key_queue_config, "timings_signature")
        if expected is None:
            return False
        with self.redis.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(self.timings_key)
                current = timings_signature(pipe.zrange(self.timings_key, 0, -1))
                if current != expected:
                    pipe.unwatch()
                    return False
                timings = dict(pipe.zrange(self.key_build_timings, 0, -1, withscores=True))
                if not timings:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.zadd(self.timings_key, timings)
                pipe.execute()
            except WatchError:
                return False
        log_with_fields(
            self.logger,
            logging.INFO,
            "global_timings_folded",
            build=self.build_id,
            timings_key=self.timings_key,
            jobs=len(timings),
        )
        return True
