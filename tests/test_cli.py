import unittest
from unittest import mock

from testq.cli import _open_store, build_parser, main, resolve_config
from testq.config import AppConfig


class CliTest(unittest.TestCase):
    def test_work_flags(self) -> None:
        parser = build_parser()
        args = parser.parse_args(
            [
                "--build",
                "b1",
                "--worker",
                "w1",
                "work",
                "tests",
                "--max-requeues",
                "0",
                "--fail-fast",
                "1",
                "--reproduction",
            ]
        )
        self.assertEqual(args.command, "work")
        self.assertEqual(args.files_or_dirs, ["tests"])
        self.assertEqual(args.max_requeues, 0)
        self.assertTrue(args.reproduction)

    def test_flags_override_config(self) -> None:
        parser = build_parser()
        args = parser.parse_args(
            ["-b", "b1", "-w", "w1", "work", "a.py", "b.py", "--seed", "9", "--file-split-threshold", "12.5"]
        )
        with mock.patch.dict("os.environ", {"TESTQ_BUILD": "from-env"}, clear=True):
            config = resolve_config(args)
        self.assertEqual(config.build_id, "b1")
        self.assertEqual(config.worker.worker_id, "w1")
        self.assertEqual(config.worker.files_or_dirs, ["a.py", "b.py"])
        self.assertEqual(config.worker.seed, 9)
        self.assertEqual(config.worker.file_split_threshold, 12.5)

    def test_build_from_env(self) -> None:
        args = build_parser().parse_args(["report", "--timeout", "60", "--update-timings"])
        with mock.patch.dict("os.environ", {"TESTQ_BUILD": "from-env"}, clear=True):
            config = resolve_config(args)
        self.assertEqual(config.build_id, "from-env")
        self.assertEqual(config.reporter.timeout, 60.0)
        self.assertTrue(config.reporter.update_timings)

    def test_work_requires_worker_id(self) -> None:
        args = build_parser().parse_args(["--build", "b1", "work"])
        with mock.patch.dict("os.environ", {}, clear=True):
            with self.assertRaisesRegex(ValueError, "missing worker id"):
                resolve_config(args)

    def test_selection_and_passthrough_flags(self) -> None:
        args = build_parser().parse_args(
            [
                "-b",
                "b1",
                "-w",
                "w1",
                "work",
                "--tag",
                "not slow",
                "--pytest-arg=-x",
                "--pytest-arg=--tb=short",
                "--queue-wait-timeout",
                "90",
            ]
        )
        with mock.patch.dict("os.environ", {}, clear=True):
            config = resolve_config(args)
        self.assertEqual(config.worker.tag, "not slow")
        self.assertEqual(config.worker.pytest_args, ["-x", "--tb=short"])
        self.assertEqual(config.worker.queue_wait_timeout, 90.0)

    def test_open_store_requires_build_id(self) -> None:
        with self.assertRaisesRegex(ValueError, "missing build id"):
            _open_store(AppConfig(), "w1")

    def test_main_exits_on_missing_build(self) -> None:
        with mock.patch.dict("os.environ", {}, clear=True):
            with self.assertRaises(SystemExit) as ctx:
                main(["status"])
        self.assertEqual(ctx.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
