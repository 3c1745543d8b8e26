from __future__ import annotations

import signal
import time
import unittest
from multiprocessing.connection import Connection

from fakes import new_server, new_store, quiet_logger
from testq.supervisor import FORCE_KILLED_EXIT_CODE, Supervisor


def exit_with_three(shutdown: Connection) -> int:
    return 3


def wait_for_shutdown(shutdown: Connection) -> int:
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        if shutdown.poll(0.05):
            return 0
    return 1


def ignore_shutdown(shutdown: Connection) -> int:
    time.sleep(30)
    return 0


def finish_slowly_after_shutdown(shutdown: Connection) -> int:
    if wait_for_shutdown(shutdown) != 0:
        return 1
    time.sleep(0.5)
    return 0


def report_signal_dispositions(shutdown: Connection) -> int:
    if signal.getsignal(signal.SIGTERM) is not signal.SIG_DFL:
        return 1
    if signal.getsignal(signal.SIGINT) is not signal.SIG_IGN:
        return 2
    return 0


class SupervisorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = new_store(new_server(), "worker-a")

    def _supervisor(self, target, **kwargs: object) -> Supervisor:
        kwargs.setdefault("monitor_interval", 0.05)
        return Supervisor(target, self.store, quiet_logger(), **kwargs)

    def test_returns_worker_exit_code(self) -> None:
        self.assertEqual(self._supervisor(exit_with_three).run(), 3)
        self.assertEqual(self.store.workers_withdrawn(), {})

    def test_graceful_shutdown_closes_channel(self) -> None:
        supervisor = self._supervisor(wait_for_shutdown, graceful_shutdown_timeout=10)
        supervisor.initiate_shutdown("SIGTERM")

        self.assertEqual(supervisor.run(), 0)
        self.assertTrue(supervisor.graceful_shutdown_sent)
        self.assertFalse(supervisor.kill_sent)

    def test_worker_is_killed_after_timeout(self) -> None:
        supervisor = self._supervisor(ignore_shutdown, graceful_shutdown_timeout=0.2)
        supervisor.initiate_shutdown("SIGTERM")

        started = time.monotonic()
        self.assertEqual(supervisor.run(), FORCE_KILLED_EXIT_CODE)
        self.assertLess(time.monotonic() - started, 10)

    def test_kill_deadline_starts_when_channel_closes(self) -> None:
        supervisor = self._supervisor(finish_slowly_after_shutdown, graceful_shutdown_timeout=5)
        supervisor.initiate_shutdown("SIGTERM")
        supervisor.shutdown_initiated_at = time.monotonic() - 60

        self.assertEqual(supervisor.run(), 0)
        self.assertFalse(supervisor.kill_sent)
        self.assertIsNotNone(supervisor.channel_closed_at)

    def test_worker_gets_default_shutdown_signal_handling(self) -> None:
        previous = signal.getsignal(signal.SIGTERM)

        self.assertEqual(self._supervisor(report_signal_dispositions).run(), 0)
        self.assertIs(signal.getsignal(signal.SIGTERM), previous)

    def test_first_shutdown_reason_wins(self) -> None:
        supervisor = self._supervisor(exit_with_three)
        supervisor.initiate_shutdown("SIGTERM")
        supervisor.initiate_shutdown("SIGINT")
        self.assertEqual(supervisor.shutdown_reason, "SIGTERM")

    def test_worker_holding_a_job_is_withdrawn(self) -> None:
        self.store.publish(["a.py", "b.py"])
        self.store.record_heartbeat(now=1.0)
        self.store.reserve_next()

        self._supervisor(exit_with_three).run()

        self.assertEqual(self.store.workers_withdrawn(), {"worker-a": 1})
        self.assertEqual(self.store.unprocessed_jobs(), ["a.py", "b.py"])
        self.assertEqual(self.store.worker_heartbeats(), {})


if __name__ == "__main__":
    unittest.main()
