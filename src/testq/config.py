from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_REDIS_URL = "redis://127.0.0.1:6379/0"
DEFAULT_MAX_REQUEUES = 3
DEFAULT_QUEUE_WAIT_TIMEOUT = 30
DEFAULT_REPORT_TIMEOUT = 3600
DEFAULT_FAIL_FAST = 0
# A worker that has not refreshed its heartbeat for this long is considered
# dead and its reserved job goes back to the queue.
DEFAULT_WORKER_LIVENESS_SECONDS = 60.0
DEFAULT_GRACEFUL_SHUTDOWN_TIMEOUT = 30.0


@dataclass(slots=True)
class RedisConfig:
    url: str = DEFAULT_REDIS_URL
    timings_key: str = "timings"


@dataclass(slots=True)
class WorkerConfig:
    worker_id: str | None = None
    files_or_dirs: list[str] = field(default_factory=list)
    include_pattern: str | None = None
    exclude_pattern: str | None = None
    max_requeues: int = DEFAULT_MAX_REQUEUES
    fail_fast: int = DEFAULT_FAIL_FAST
    file_split_threshold: float | None = None
    early_release: bool = False
    reproduction: bool = False
    seed: int | None = None
    liveness_seconds: float = DEFAULT_WORKER_LIVENESS_SECONDS
    queue_wait_timeout: float = DEFAULT_QUEUE_WAIT_TIMEOUT
    keep_alive: bool = False
    poll_interval: float = 0.5
    requeue_delay: float = 0.5
    graceful_shutdown_timeout: float = DEFAULT_GRACEFUL_SHUTDOWN_TIMEOUT
    pytest_args: list[str] = field(default_factory=list)
    # pytest -m expression selecting the examples to run
    tag: str | None = None

    @property
    def heartbeat_interval(self) -> float:
        return self.liveness_seconds / 6


@dataclass(slots=True)
class ReporterConfig:
    timeout: float = DEFAULT_REPORT_TIMEOUT
    queue_wait_timeout: float = DEFAULT_QUEUE_WAIT_TIMEOUT
    update_timings: bool = False
    rerun_command_skip: bool = False


@dataclass(slots=True)
class AppConfig:
    build_id: str | None = None
    redis: RedisConfig = field(default_factory=RedisConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    reporter: ReporterConfig = field(default_factory=ReporterConfig)
    log: Path | None = None


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _optional_float(value: object) -> float | None:
    return None if value is None else float(value)


def _string_list(value: object, name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if not isinstance(value, list):
        raise ValueError(f"`{name}` must be a list")
    return [str(item) for item in value]


def parse_config(raw: dict, base_dir: Path | None = None) -> AppConfig:
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    redis_raw = _section(raw, "redis")
    worker_raw = _section(raw, "worker")
    reporter_raw = _section(raw, "reporter")

    redis_config = RedisConfig(
        url=str(redis_raw.get("url", DEFAULT_REDIS_URL)),
        timings_key=str(redis_raw.get("timings_key", "timings")),
    )

    worker = WorkerConfig(
        worker_id=str(worker_raw["id"]) if worker_raw.get("id") is not None else None,
        files_or_dirs=_string_list(worker_raw.get("files_or_dirs"), "worker.files_or_dirs"),
        include_pattern=worker_raw.get("include_pattern"),
        exclude_pattern=worker_raw.get("exclude_pattern"),
        max_requeues=int(worker_raw.get("max_requeues", DEFAULT_MAX_REQUEUES)),
        fail_fast=int(worker_raw.get("fail_fast", DEFAULT_FAIL_FAST)),
        file_split_threshold=_optional_float(worker_raw.get("file_split_threshold")),
        early_release=bool(worker_raw.get("early_release", False)),
        reproduction=bool(worker_raw.get("reproduction", False)),
        seed=int(worker_raw["seed"]) if worker_raw.get("seed") is not None else None,
        liveness_seconds=float(worker_raw.get("liveness_seconds", DEFAULT_WORKER_LIVENESS_SECONDS)),
        queue_wait_timeout=float(worker_raw.get("queue_wait_timeout", DEFAULT_QUEUE_WAIT_TIMEOUT)),
        keep_alive=bool(worker_raw.get("keep_alive", False)),
        poll_interval=float(worker_raw.get("poll_interval", 0.5)),
        requeue_delay=float(worker_raw.get("requeue_delay", 0.5)),
        graceful_shutdown_timeout=float(
            worker_raw.get("graceful_shutdown_timeout", DEFAULT_GRACEFUL_SHUTDOWN_TIMEOUT)
        ),
        pytest_args=_string_list(worker_raw.get("pytest_args"), "worker.pytest_args"),
        tag=str(worker_raw["tag"]) if worker_raw.get("tag") is not None else None,
    )

    reporter = ReporterConfig(
        timeout=float(reporter_raw.get("timeout", DEFAULT_REPORT_TIMEOUT)),
        queue_wait_timeout=float(reporter_raw.get("queue_wait_timeout", DEFAULT_QUEUE_WAIT_TIMEOUT)),
        update_timings=bool(reporter_raw.get("update_timings", False)),
        rerun_command_skip=bool(reporter_raw.get("rerun_command_skip", False)),
    )

    log_path: Path | None = None
    if raw.get("log") is not None:
        log_path = Path(str(raw["log"])).expanduser()
        if not log_path.is_absolute() and base_dir is not None:
            log_path = base_dir / log_path

    config = AppConfig(
        build_id=str(raw["build"]) if raw.get("build") is not None else None,
        redis=redis_config,
        worker=worker,
        reporter=reporter,
        log=log_path,
    )
    validate_config(config)
    return config


def load_config(path: str | Path | None = None) -> AppConfig:
    if path is None:
        return AppConfig()
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    return parse_config(raw, base_dir=config_path.parent)


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    if environ.get("TESTQ_BUILD"):
        config.build_id = environ["TESTQ_BUILD"]
    if environ.get("TESTQ_WORKER"):
        config.worker.worker_id = environ["TESTQ_WORKER"]
    if environ.get("TESTQ_REDIS_URL"):
        config.redis.url = environ["TESTQ_REDIS_URL"]
    if environ.get("TESTQ_MAX_REQUEUES"):
        config.worker.max_requeues = int(environ["TESTQ_MAX_REQUEUES"])
    if environ.get("TESTQ_FAIL_FAST"):
        config.worker.fail_fast = int(environ["TESTQ_FAIL_FAST"])
    if environ.get("TESTQ_REPORT_TIMEOUT"):
        config.reporter.timeout = float(environ["TESTQ_REPORT_TIMEOUT"])
    if environ.get("TESTQ_SEED"):
        config.worker.seed = int(environ["TESTQ_SEED"])
    if environ.get("TESTQ_TAG"):
        config.worker.tag = environ["TESTQ_TAG"]
    if environ.get("TESTQ_QUEUE_WAIT_TIMEOUT"):
        timeout = float(environ["TESTQ_QUEUE_WAIT_TIMEOUT"])
        config.worker.queue_wait_timeout = timeout
        config.reporter.queue_wait_timeout = timeout
    if environ.get("TESTQ_UPDATE_TIMINGS"):
        config.reporter.update_timings = _env_flag(environ["TESTQ_UPDATE_TIMINGS"])
    validate_config(config)
    return config


def validate_config(config: AppConfig) -> None:
    worker = config.worker
    if worker.max_requeues < 0:
        raise ValueError("`worker.max_requeues` must be >= 0")
    if worker.fail_fast < 0:
        raise ValueError("`worker.fail_fast` must be >= 0")
    if worker.liveness_seconds <= 0:
        raise ValueError("`worker.liveness_seconds` must be > 0")
    if worker.queue_wait_timeout <= 0:
        raise ValueError("`worker.queue_wait_timeout` must be > 0")
    if worker.graceful_shutdown_timeout < 0:
        raise ValueError("`worker.graceful_shutdown_timeout` must be >= 0")
    if worker.file_split_threshold is not None and worker.file_split_threshold <= 0:
        raise ValueError("`worker.file_split_threshold` must be > 0")
    if config.reporter.timeout <= 0:
        raise ValueError("`reporter.timeout` must be > 0")
    if config.reporter.queue_wait_timeout <= 0:
        raise ValueError("`reporter.queue_wait_timeout` must be > 0")
