from __future__ import annotations

import argparse
import logging
import os
from functools import partial
from multiprocessing.connection import Connection

from .app_logging import get_logger, log_with_fields, setup_logger
from .config import AppConfig, apply_env_overrides, load_config, validate_config
from .engine import PytestEngine
from .reporter import BuildTimeoutError, Reporter
from .store import JobStore, QueueNotReadyError
from .supervisor import Supervisor
from .worker import Worker

REPORTER_ID = "reporter"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testq",
        description="Optimally distribute and run a test suite among parallel workers",
    )
    parser.add_argument("--config", help="Path to testq YAML config")
    parser.add_argument(
        "-b",
        "--build",
        help="A unique identifier for the build, shared by every worker of the build",
    )
    parser.add_argument(
        "-w",
        "--worker",
        help="An identifier for the worker; distinct among workers of the same build",
    )
    parser.add_argument("--redis-url", help="Redis URL, e.g. redis://127.0.0.1:6379/0")
    parser.add_argument("--timings-key", help="Redis key holding the global job timings")
    subparsers = parser.add_subparsers(dest="command", required=True)

    work = subparsers.add_parser("work", help="Pull jobs off the build queue and run them")
    work.add_argument("files_or_dirs", nargs="*", help="Test files or directories to schedule")
    work.add_argument("--seed", type=int, help="Seed passed to every job run")
    work.add_argument("--max-requeues", type=int, help="Retry failed examples up to N times")
    work.add_argument("--fail-fast", type=int, help="Stop the build after N failures")
    work.add_argument(
        "--file-split-threshold",
        type=float,
        help="Split files slower than N seconds into per-example jobs",
    )
    work.add_argument("--include-pattern", help="Only schedule files matching this regex")
    work.add_argument("--exclude-pattern", help="Skip files matching this regex")
    work.add_argument(
        "--reproduction",
        action="store_true",
        help="Run the given jobs in exactly the given order",
    )
    work.add_argument(
        "--keep-alive",
        action="store_true",
        help="Stay idle after the build finished instead of exiting",
    )
    work.add_argument(
        "--early-release",
        action="store_true",
        help="Publish already known jobs before splitting slow files",
    )
    work.add_argument("--tag", help="Only run examples matching this pytest marker expression (-m)")
    work.add_argument(
        "--pytest-arg",
        dest="pytest_args",
        action="append",
        help="Extra argument passed to pytest, e.g. --pytest-arg=-x; repeatable",
    )
    work.add_argument("--queue-wait-timeout", type=float, help="Seconds to wait for the queue to be published")

    report = subparsers.add_parser("report", help="Print build progress and summary")
    report.add_argument("--timeout", type=float, help="Fail if the build is not finished after N seconds")
    report.add_argument(
        "--update-timings",
        action="store_true",
        help="Fold this build's job timings into the global timings",
    )
    report.add_argument("--queue-wait-timeout", type=float, help="Seconds to wait for the queue to be ready")

    subparsers.add_parser("status", help="Show queue counters of a build")
    return parser


def resolve_config(args: argparse.Namespace) -> AppConfig:
    config = apply_env_overrides(load_config(args.config), os.environ)
    if args.build:
        config.build_id = args.build
    if args.worker:
        config.worker.worker_id = args.worker
    if args.redis_url:
        config.redis.url = args.redis_url
    if args.timings_key:
        config.redis.timings_key = args.timings_key

    if args.command == "work":
        worker = config.worker
        if args.files_or_dirs:
            worker.files_or_dirs = list(args.files_or_dirs)
        overrides = (
            "seed",
            "max_requeues",
            "fail_fast",
            "file_split_threshold",
            "include_pattern",
            "exclude_pattern",
            "tag",
            "queue_wait_timeout",
        )
        for name in overrides:
            value = getattr(args, name)
            if value is not None:
                setattr(worker, name, value)
        if args.pytest_args:
            worker.pytest_args = [*worker.pytest_args, *args.pytest_args]
        worker.reproduction = worker.reproduction or args.reproduction
        worker.keep_alive = worker.keep_alive or args.keep_alive
        worker.early_release = worker.early_release or args.early_release
    elif args.command == "report":
        if args.timeout is not None:
            config.reporter.timeout = args.timeout
        if args.queue_wait_timeout is not None:
            config.reporter.queue_wait_timeout = args.queue_wait_timeout
        config.reporter.update_timings = config.reporter.update_timings or args.update_timings

    validate_config(config)
    if not config.build_id:
        raise ValueError("missing build id (--build or TESTQ_BUILD)")
    if args.command == "work" and not config.worker.worker_id:
        raise ValueError("missing worker id (--worker or TESTQ_WORKER)")
    return config


def _open_store(config: AppConfig, worker_id: str) -> JobStore:
    if not config.build_id:
        raise ValueError("missing build id (--build or TESTQ_BUILD)")
    return JobStore.from_url(
        config.redis.url,
        config.build_id,
        worker_id,
        timings_key=config.redis.timings_key,
    )


def run_worker(config: AppConfig, shutdown: Connection) -> int:
    """Worker process body; runs inside the supervised child."""
    logger = get_logger()
    store = _open_store(config, str(config.worker.worker_id))
    engine = PytestEngine(config.worker.pytest_args, marker=config.worker.tag)
    try:
        return Worker(config.worker, store, engine, logger, shutdown=shutdown).work()
    except QueueNotReadyError as exc:
        log_with_fields(logger, logging.ERROR, "queue_not_ready", error=str(exc))
        return 1
    finally:
        store.close()


def cmd_work(config: AppConfig) -> int:
    logger = get_logger()
    store = _open_store(config, str(config.worker.worker_id))
    try:
        supervisor = Supervisor(
            partial(run_worker, config),
            store,
            logger,
            graceful_shutdown_timeout=config.worker.graceful_shutdown_timeout,
        )
        return supervisor.run()
    finally:
        store.close()


def cmd_report(config: AppConfig) -> int:
    logger = get_logger()
    store = _open_store(config, REPORTER_ID)
    try:
        return Reporter(store, config.reporter, logger).report()
    except (QueueNotReadyError, BuildTimeoutError) as exc:
        log_with_fields(logger, logging.ERROR, "report_failed", build=config.build_id, error=str(exc))
        return 1
    finally:
        store.close()


def cmd_status(config: AppConfig) -> int:
    store = _open_store(config, REPORTER_ID)
    try:
        status = store.status()
        print(f"Build {config.build_id}: {status.value if status else 'not started'}")
        counts = store.summary_counts()
        print("Jobs:")
        for name in ["unprocessed", "running", "processed", "failures", "errors", "requeued"]:
            print(f"  {name:12} {counts[name]}")

        print("\nWorkers:")
        running = store.running_jobs()
        heartbeats = store.worker_heartbeats()
        if not heartbeats:
            print("  (no worker heartbeats)")
        for worker, seen_at in sorted(heartbeats.items()):
            print(f"  {worker}: job={running.get(worker)} heartbeat={seen_at:.0f}")
        return 0
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = resolve_config(args)
    except ValueError as exc:
        parser.error(str(exc))
    setup_logger(config.log)

    if args.command == "work":
        return cmd_work(config)
    if args.command == "report":
        return cmd_report(config)
    if args.command == "status":
        return cmd_status(config)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
