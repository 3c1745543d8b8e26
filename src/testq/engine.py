from __future__ import annotations

import contextlib
import io
import random
import shlex
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import pytest

COLLECT_TIMEOUT_SECONDS = 600
# pytest gave up before running the job, e.g. a broken conftest.py or a
# path that does not exist.
ABORTED_EXIT_CODES = (
    pytest.ExitCode.INTERRUPTED,
    pytest.ExitCode.INTERNAL_ERROR,
    pytest.ExitCode.USAGE_ERROR,
)


class EngineError(RuntimeError):
    pass


class JobObserver(Protocol):
    """Events an engine reports while running one job."""

    def suite_finished(self, duration: float, example_count: int) -> None: ...

    def example_finished(self) -> None: ...

    def example_failed(self, example_id: str, message: str, location: str | None) -> None: ...

    # Fired for failures outside of any example, before examples of the job ran.
    def load_error(self, message: str) -> None: ...


class ExecutionEngine(ABC):
    @abstractmethod
    def run(self, job: str, observer: JobObserver, seed: int) -> int:
        """Run ``job`` to completion, reporting through ``observer``."""

    @abstractmethod
    def list_examples(self, path: str) -> list[str]:
        """Return the example ids of a file; raise EngineError if it cannot be loaded."""

    def rerun_command(self, location: str, seed: int) -> str:
        return f"{location} --seed {seed}"


def _report_location(report: Any) -> str | None:
    location = getattr(report, "location", None)
    if not location:
        return None
    path, lineno, _ = location
    if lineno is None:
        return str(path)
    return f"{path}:{lineno + 1}"


class ObserverPlugin:
    """pytest plugin translating test hooks into JobObserver callbacks."""

    def __init__(self, observer: JobObserver) -> None:
        self.observer = observer
        self.started_at = time.monotonic()
        self.example_count = 0
        self.failed_nodeids: set[str] = set()
        self.load_errors = 0

    def pytest_sessionstart(self, session: Any) -> None:
        self.started_at = time.monotonic()

    def pytest_collectreport(self, report: Any) -> None:
        if report.failed:
            self.load_errors += 1
            self.observer.load_error(report.longreprtext)

    def pytest_runtest_logreport(self, report: Any) -> None:
        # setup, call and teardown may each fail; one failure per example
        if not report.failed or report.nodeid in self.failed_nodeids:
            return
        self.failed_nodeids.add(report.nodeid)
        self.observer.example_failed(report.nodeid, report.longreprtext, _report_location(report))

    def pytest_runtest_logfinish(self, nodeid: str, location: Any) -> None:
        self.example_count += 1
        self.observer.example_finished()

    def pytest_sessionfinish(self, session: Any, exitstatus: int) -> None:
        self.observer.suite_finished(time.monotonic() - self.started_at, self.example_count)

    @property
    def reported(self) -> bool:
        return bool(self.example_count or self.failed_nodeids or self.load_errors)


class PytestEngine(ExecutionEngine):
    """Runs jobs in-process with pytest; jobs are file paths or node ids.

    ``marker`` is a pytest ``-m`` expression applied both when running jobs
    and when listing the examples of a file.
    """

    def __init__(
        self,
        pytest_args: Sequence[str] = (),
        *,
        marker: str | None = None,
        python: str = sys.executable,
        cwd: Path | None = None,
    ) -> None:
        self.pytest_args = list(pytest_args)
        self.marker = marker
        self.python = python
        self.cwd = cwd

    @property
    def selection_args(self) -> list[str]:
        return ["-m", self.marker] if self.marker else []

    def run(self, job: str, observer: JobObserver, seed: int) -> int:
        random.seed(seed)
        plugin = ObserverPlugin(observer)
        args = [*self.pytest_args, *self.selection_args, "-p", "no:cacheprovider", job]
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            exit_code = pytest.main(args, plugins=[plugin])
        output = stderr.getvalue()
        sys.stderr.write(output)

        if exit_code in ABORTED_EXIT_CODES and not plugin.reported:
            reason = output.strip() or f"pytest exited with {pytest.ExitCode(exit_code).name}"
            observer.load_error(f"{job}: {reason}")
        return int(exit_code)

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            cwd=self.cwd,
            timeout=COLLECT_TIMEOUT_SECONDS,
        )

    def _require_ok(self, process: subprocess.CompletedProcess[str], context: str) -> None:
        if process.returncode != 0:
            stderr = process.stderr.strip()
            stdout = process.stdout.strip()
            output = stdout if stdout else stderr
            raise EngineError(f"{context} failed: {output or 'exit code ' + str(process.returncode)}")

    def list_examples(self, path: str) -> list[str]:
        cmd = [
            self.python,
            "-m",
            "pytest",
            "--collect-only",
            "-q",
            "-p",
            "no:cacheprovider",
            *self.selection_args,
            path,
        ]
        try:
            process = self._run(cmd)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise EngineError(f"collect {path} failed: {exc}") from exc
        self._require_ok(process, f"collect {path}")
        lines = [line.strip() for line in process.stdout.splitlines()]
        return [line for line in lines if "::" in line and not line.startswith(("=", "-"))]

    def rerun_command(self, location: str, seed: int) -> str:
        parts = [self.python, "-m", "pytest", *self.pytest_args, *self.selection_args, location]
        return shlex.join(parts) + f"  # seed={seed}"
