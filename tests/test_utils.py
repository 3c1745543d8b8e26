import logging
import unittest

from testq.app_logging import FieldsFormatter, log_with_fields
from testq.utils import humanize_duration, job_file, timings_signature


class UtilsTest(unittest.TestCase):
    def test_job_file(self) -> None:
        self.assertEqual(job_file("tests/test_a.py"), "tests/test_a.py")
        self.assertEqual(job_file("tests/test_a.py::TestX::test_y"), "tests/test_a.py")
        self.assertEqual(job_file("tests/test_a.py::test_y[1-2]"), "tests/test_a.py")
        self.assertEqual(job_file("tests/test_b.py[1:2]"), "tests/test_b.py")

    def test_timings_signature_ignores_order_and_duplicates(self) -> None:
        self.assertEqual(timings_signature(["b", "a"]), timings_signature(["a", "b", "a"]))
        self.assertNotEqual(timings_signature(["a"]), timings_signature(["a", "b"]))

    def test_humanize_duration(self) -> None:
        self.assertEqual(humanize_duration(0), "0:00")
        self.assertEqual(humanize_duration(65.9), "1:05")
        self.assertEqual(humanize_duration(3600), "60:00")

    def test_fields_formatter_appends_fields(self) -> None:
        records: list[logging.LogRecord] = []

        class ListHandler(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                records.append(record)

        logger = logging.getLogger("testq.tests.utils")
        logger.propagate = False
        logger.setLevel(logging.INFO)
        logger.addHandler(ListHandler())

        log_with_fields(logger, logging.INFO, "job_reserved", job="a.py", seed=3)

        line = FieldsFormatter("%(message)s").format(records[0])
        self.assertEqual(line, "job_reserved job=a.py seed=3")


if __name__ == "__main__":
    unittest.main()
