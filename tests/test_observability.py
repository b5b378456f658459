from __future__ import annotations

import io
import json
import logging
import unittest

import structlog

from food_review import observability


class ObservabilityTestCase(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        self._root_handlers = list(root.handlers)
        self._root_level = root.level
        self._httpx_level = logging.getLogger("httpx").level
        self._configured = observability._LOGGING_CONFIGURED
        observability._LOGGING_CONFIGURED = False
        structlog.contextvars.clear_contextvars()

    def tearDown(self):
        structlog.contextvars.clear_contextvars()
        root = logging.getLogger()
        root.handlers[:] = self._root_handlers
        root.setLevel(self._root_level)
        logging.getLogger("httpx").setLevel(self._httpx_level)
        observability._LOGGING_CONFIGURED = self._configured

    def test_bind_review_run_sets_context(self):
        observability.bind_review_run("run-42")

        self.assertEqual(structlog.contextvars.get_contextvars()[observability.RUN_CONTEXT_KEY], "run-42")

    def test_stdlib_records_carry_review_run_id(self):
        stream = io.StringIO()
        observability.configure_logging(json_logs=True, stream=stream)
        observability.bind_review_run("run-42")

        logging.getLogger("food_review.services.review_runs").info("Checkpoint stored rows=%s", 3)

        record = json.loads(stream.getvalue().strip().splitlines()[-1])
        self.assertEqual(record["review_run_id"], "run-42")
        self.assertEqual(record["event"], "Checkpoint stored rows=3")
        self.assertEqual(record["level"], "info")

    def test_client_libraries_are_quieted(self):
        observability.configure_logging(json_logs=True, level="DEBUG", stream=io.StringIO())

        self.assertGreaterEqual(logging.getLogger("httpx").level, logging.WARNING)

    def test_configure_logging_only_applies_once(self):
        first, second = io.StringIO(), io.StringIO()
        observability.configure_logging(json_logs=True, stream=first)
        observability.configure_logging(json_logs=False, stream=second)

        logging.getLogger("food_review").warning("only once")

        self.assertIn("only once", first.getvalue())
        self.assertEqual(second.getvalue(), "")


if __name__ == "__main__":
    unittest.main()
