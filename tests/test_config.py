from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from testq.config import AppConfig, apply_env_overrides, load_config, parse_config


class ConfigTest(unittest.TestCase):
    def test_load_config(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config_path = root / "testq.yaml"
            config_path.write_text(
                """
build: build-42
log: "./logs/testq.log"
redis:
  url: redis://queue.internal:6379/2
  timings_key: timings:main
worker:
  id: worker-a
  files_or_dirs:
    - tests
  max_requeues: 1
  fail_fast: 5
  file_split_threshold: 30
  pytest_args: "-x --tb=short"
  tag: smoke
reporter:
  timeout: 900
  update_timings: true
""".strip(),
                encoding="utf-8",
            )
            config = load_config(config_path)

            self.assertEqual(config.build_id, "build-42")
            self.assertEqual(config.redis.url, "redis://queue.internal:6379/2")
            self.assertEqual(config.redis.timings_key, "timings:main")
            self.assertEqual(config.worker.worker_id, "worker-a")
            self.assertEqual(config.worker.files_or_dirs, ["tests"])
            self.assertEqual(config.worker.max_requeues, 1)
            self.assertEqual(config.worker.fail_fast, 5)
            self.assertEqual(config.worker.file_split_threshold, 30.0)
            self.assertEqual(config.worker.pytest_args, ["-x", "--tb=short"])
            self.assertEqual(config.worker.tag, "smoke")
            self.assertEqual(config.worker.liveness_seconds, 60.0)
            self.assertEqual(config.reporter.timeout, 900.0)
            self.assertTrue(config.reporter.update_timings)
            self.assertEqual(config.log.resolve(), (root / "logs" / "testq.log").resolve())

    def test_defaults_without_file(self) -> None:
        config = load_config(None)
        self.assertIsNone(config.build_id)
        self.assertEqual(config.worker.max_requeues, 3)
        self.assertEqual(config.worker.fail_fast, 0)
        self.assertEqual(config.worker.heartbeat_interval, 10.0)

    def test_env_overrides(self) -> None:
        config = apply_env_overrides(
            AppConfig(),
            {
                "TESTQ_BUILD": "ci-7",
                "TESTQ_WORKER": "w3",
                "TESTQ_REDIS_URL": "redis://other:6379/0",
                "TESTQ_MAX_REQUEUES": "0",
                "TESTQ_FAIL_FAST": "2",
            },
        )
        self.assertEqual(config.build_id, "ci-7")
        self.assertEqual(config.worker.worker_id, "w3")
        self.assertEqual(config.redis.url, "redis://other:6379/0")
        self.assertEqual(config.worker.max_requeues, 0)
        self.assertEqual(config.worker.fail_fast, 2)

    def test_env_overrides_for_selection_and_reporting(self) -> None:
        config = apply_env_overrides(
            AppConfig(),
            {
                "TESTQ_SEED": "1234",
                "TESTQ_TAG": "smoke",
                "TESTQ_QUEUE_WAIT_TIMEOUT": "45",
                "TESTQ_UPDATE_TIMINGS": "true",
            },
        )
        self.assertEqual(config.worker.seed, 1234)
        self.assertEqual(config.worker.tag, "smoke")
        self.assertEqual(config.worker.queue_wait_timeout, 45.0)
        self.assertEqual(config.reporter.queue_wait_timeout, 45.0)
        self.assertTrue(config.reporter.update_timings)

    def test_invalid_values_are_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, "worker.max_requeues"):
            parse_config({"worker": {"max_requeues": -1}})
        with self.assertRaisesRegex(ValueError, "worker.file_split_threshold"):
            parse_config({"worker": {"file_split_threshold": 0}})
        with self.assertRaisesRegex(ValueError, "`redis` must be a mapping"):
            parse_config({"redis": "redis://localhost"})


if __name__ == "__main__":
    unittest.main()
