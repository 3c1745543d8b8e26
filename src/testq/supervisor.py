from __future__ import annotations

import logging
import multiprocessing
import signal
import time
from collections.abc import Callable
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from types import FrameType

from .app_logging import log_with_fields
from .store import JobStore

FORCE_KILLED_EXIT_CODE = 137
MONITOR_INTERVAL_SECONDS = 0.5

WorkerTarget = Callable[[Connection], int]


def _worker_entry(target: WorkerTarget, reader: Connection, writer: Connection, shutdown_signal: int) -> None:
    writer.close()
    signal.signal(shutdown_signal, signal.SIG_DFL)
    # Ctrl-C reaches the whole process group; only the supervisor reacts to it.
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    raise SystemExit(target(reader))


class Supervisor:
    """Runs one worker in a child process and shuts it down safely.

    The worker executes arbitrary test code, so it cannot be trusted with
    signal handling. Signals are handled here and relayed over a pipe: closing
    our end asks the worker to finish its current job and stop. If it is still
    alive ``graceful_shutdown_timeout`` seconds later it is killed.
    """

    def __init__(
        self,
        target: WorkerTarget,
        store: JobStore,
        logger: logging.Logger,
        *,
        graceful_shutdown_timeout: float = 30.0,
        graceful_shutdown_signal: int = signal.SIGTERM,
        monitor_interval: float = MONITOR_INTERVAL_SECONDS,
        start_method: str = "fork",
    ) -> None:
        self.target = target
        self.store = store
        self.logger = logger
        self.graceful_shutdown_timeout = graceful_shutdown_timeout
        self.graceful_shutdown_signal = graceful_shutdown_signal
        self.monitor_interval = monitor_interval
        self.context = multiprocessing.get_context(start_method)

        self.shutdown_initiated_at: float | None = None
        self.shutdown_reason: str | None = None
        self.channel_closed_at: float | None = None
        self.graceful_shutdown_sent = False
        self.kill_sent = False
        self.previous_handlers: dict[int, object] = {}
        self.reader, self.writer = self.context.Pipe(duplex=False)

    @property
    def worker_id(self) -> str:
        return self.store.worker_id

    def register_signal_handlers(self) -> None:
        for signum in (self.graceful_shutdown_signal, signal.SIGINT):
            self.previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self.previous_handlers.items():
            signal.signal(signum, handler)
        self.previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        self.initiate_shutdown(signal.Signals(signum).name)

    # Called from signal handlers: record only, the monitor loop does the rest.
    def initiate_shutdown(self, reason: str) -> None:
        if self.shutdown_initiated_at is None:
            self.shutdown_initiated_at = time.monotonic()
            self.shutdown_reason = reason

    def graceful_shutdown_timeout_reached(self) -> bool:
        return (
            self.channel_closed_at is not None
            and time.monotonic() - self.channel_closed_at > self.graceful_shutdown_timeout
        )

    def run(self) -> int:
        process = self.context.Process(
            target=_worker_entry,
            args=(self.target, self.reader, self.writer, self.graceful_shutdown_signal),
            name=f"testq-worker-{self.worker_id}",
        )
        # registered before the fork; _worker_entry resets them in the child
        self.register_signal_handlers()
        try:
            process.start()
            self.reader.close()
            exit_code = self._monitor(process)
        finally:
            self.restore_signal_handlers()
        if exit_code != 0:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "worker_process_exited",
                worker=self.worker_id,
                exit_code=exit_code,
            )
        if not self.writer.closed:
            self.writer.close()

        if self.store.remove_worker(self.worker_id):
            log_with_fields(
                self.logger,
                logging.WARNING,
                "worker_withdrawn",
                worker=self.worker_id,
                reason="removed while holding a reserved job",
            )

        if self.kill_sent:
            return FORCE_KILLED_EXIT_CODE
        if exit_code < 0:
            # terminated by a signal we did not send
            return 128 - exit_code
        return exit_code

    def _monitor(self, process: BaseProcess) -> int:
        log_with_fields(self.logger, logging.INFO, "worker_process_started", worker=self.worker_id, pid=process.pid)
        while True:
            if self.shutdown_initiated_at is not None and not self.graceful_shutdown_sent:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "graceful_shutdown_sent",
                    worker=self.worker_id,
                    reason=self.shutdown_reason,
                    timeout=self.graceful_shutdown_timeout,
                )
                self.writer.close()
                self.channel_closed_at = time.monotonic()
                self.graceful_shutdown_sent = True

            if self.graceful_shutdown_timeout_reached() and not self.kill_sent:
                log_with_fields(self.logger, logging.ERROR, "worker_killed", worker=self.worker_id, pid=process.pid)
                process.kill()
                self.kill_sent = True

            # join doubles as the poll interval; it returns early on exit
            process.join(self.monitor_interval)
            if process.exitcode is not None:
                return process.exitcode
