from __future__ import annotations

import logging

import fakeredis

from testq.engine import EngineError, ExecutionEngine, JobObserver
from testq.store import JobStore
from testq.telemetry import Telemetry
from testq.utils import job_file


def quiet_logger(name: str = "test_testq") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def new_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


def new_store(server: fakeredis.FakeServer, worker_id: str, build_id: str = "build-1") -> JobStore:
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    return JobStore(client, build_id, worker_id, logger=quiet_logger())


class RecordingTelemetry(Telemetry):
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []

    def capture(self, event: str, level: int = logging.WARNING, **context: object) -> None:
        self.events.append((event, context))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


class FakeEngine(ExecutionEngine):
    """Runs jobs from a script instead of executing tests.

    ``examples`` maps a job to the example ids it contains (a job contains
    only itself by default). ``flaky`` maps an example to the number of runs
    it fails before passing.
    """

    def __init__(
        self,
        *,
        examples: dict[str, list[str]] | None = None,
        failing: set[str] | None = None,
        flaky: dict[str, int] | None = None,
        load_errors: set[str] | None = None,
        split: dict[str, list[str]] | None = None,
        split_errors: set[str] | None = None,
        durations: dict[str, float] | None = None,
    ) -> None:
        self.examples = examples or {}
        self.failing = failing or set()
        self.flaky = dict(flaky or {})
        self.load_errors = load_errors or set()
        self.split = split or {}
        self.split_errors = split_errors or set()
        self.durations = durations or {}
        self.runs: list[str] = []
        self.seeds: list[int] = []
        self.listed: list[str] = []

    def run(self, job: str, observer: JobObserver, seed: int) -> int:
        self.runs.append(job)
        self.seeds.append(seed)
        if job in self.load_errors:
            observer.load_error(f"ImportError while loading {job}")
            observer.load_error("Interrupted: 1 error during collection")
            observer.suite_finished(0.01, 0)
            return 2

        examples = self.examples.get(job, [job])
        any_failed = False
        for example in examples:
            failed = example in self.failing
            if self.flaky.get(example, 0) > 0:
                self.flaky[example] -= 1
                failed = True
            if failed:
                any_failed = True
                observer.example_failed(
                    example,
                    f"AssertionError in {example}\n    assert False",
                    f"{job_file(example)}:3",
                )
            observer.example_finished()
        observer.suite_finished(self.durations.get(job, 0.1), len(examples))
        return 1 if any_failed else 0

    def list_examples(self, path: str) -> list[str]:
        self.listed.append(path)
        if path in self.split_errors:
            raise EngineError(f"collect {path} failed: SyntaxError")
        return list(self.split.get(path, []))
