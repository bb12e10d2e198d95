"""Tests for the logging context and formatters."""

import json
import logging
import threading

from imageflow.core.logging import (
    RunContextFilter, StructuredFormatter, current_logging_context, logging_context
)


def make_record(message="hello"):
    return logging.LogRecord("imageflow.test", logging.INFO, __file__, 10, message, None, None)


class TestLoggingContext:
    """Test cases for logging_context."""

    def test_nested_blocks_extend_and_restore(self):
        with logging_context(run_id="run-1"):
            with logging_context(request_id="req-9"):
                assert current_logging_context() == {"run_id": "run-1", "request_id": "req-9"}
            assert current_logging_context() == {"run_id": "run-1"}
        assert current_logging_context() == {}

    def test_context_is_per_thread(self):
        seen = {}

        def worker():
            seen["worker"] = current_logging_context()

        with logging_context(run_id="main-run"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()

        assert seen["worker"] == {}

    def test_filter_stamps_run_id(self):
        record = make_record()
        context_filter = RunContextFilter()

        with logging_context(run_id="run-7", route="GET /api/v1/runs"):
            assert context_filter.filter(record) is True

        assert record.run_id == "run-7"
        assert record.context_fields == {"run_id": "run-7", "route": "GET /api/v1/runs"}

    def test_filter_outside_a_run(self):
        record = make_record()

        RunContextFilter().filter(record)

        assert record.run_id == "-"


class TestStructuredFormatter:
    """Test cases for JSON log lines."""

    def test_context_and_extra_fields(self):
        record = make_record("step done")
        with logging_context(run_id="run-3"):
            RunContextFilter().filter(record)
        record.extra_fields = {"attempt": 2}

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "step done"
        assert entry["level"] == "INFO"
        assert entry["run_id"] == "run-3"
        assert entry["attempt"] == 2
