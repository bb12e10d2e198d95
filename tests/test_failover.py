"""Tests for failover across backends."""

import pytest

from imageflow.core.exceptions import (
    ConfigurationError, FatalBackendError, QuotaError, RATE_LIMIT_HELP_URL, WorkflowCancelledError
)
from imageflow.core.failover import FailoverExecutor

from conftest import QUOTA_MESSAGE, FakeBackend, RecordingCancellationToken, make_client


@pytest.fixture
def executor():
    return FailoverExecutor(failover_pause=0.25)


class TestFailoverExecutor:
    """Test cases for FailoverExecutor.run."""

    def test_first_backend_success(self, executor, token):
        primary = FakeBackend("primary")
        secondary = FakeBackend("secondary")

        result = executor.run(b"img", "image/png", "p", [make_client(primary), make_client(secondary)], token)

        assert result.data == b"img|p"
        assert len(primary.calls) == 1
        assert secondary.calls == []

    def test_fails_over_on_quota_exhaustion(self, executor, token):
        primary = FakeBackend("primary", always=Exception(QUOTA_MESSAGE))
        secondary = FakeBackend("secondary")

        result = executor.run(b"img", "image/png", "p", [make_client(primary), make_client(secondary)], token)

        assert result.data == b"img|p"
        assert len(primary.calls) == 4
        assert len(secondary.calls) == 1
        assert token.sleeps == [1.0, 2.0, 4.0, 0.25]

    def test_all_backends_exhausted(self, executor, token):
        primary = FakeBackend("primary", always=Exception(QUOTA_MESSAGE))
        secondary = FakeBackend("secondary", always=Exception(QUOTA_MESSAGE))
        retry_events = []

        with pytest.raises(QuotaError) as exc_info:
            executor.run(b"img", "image/png", "p", [make_client(primary), make_client(secondary)],
                         token, on_retry=retry_events.append)

        error = exc_info.value
        assert len(primary.calls) == 4
        assert len(secondary.calls) == 4
        assert [event.backend for event in retry_events] == ["primary"] * 3 + ["secondary"] * 3
        assert [failure.backend for failure in error.failures] == ["primary", "secondary"]
        assert "primary" in error.message and "secondary" in error.message
        assert error.help_url == RATE_LIMIT_HELP_URL
        assert RATE_LIMIT_HELP_URL in error.message
        assert token.sleeps == [1.0, 2.0, 4.0, 0.25, 1.0, 2.0, 4.0]

    def test_other_errors_do_not_fail_over(self, executor, token):
        primary = FakeBackend("primary", script=[Exception("500 Internal error: something broke")])
        secondary = FakeBackend("secondary")

        with pytest.raises(FatalBackendError):
            executor.run(b"img", "image/png", "p", [make_client(primary), make_client(secondary)], token)
        assert secondary.calls == []

    def test_cancelled_during_failover_pause(self, executor):
        token = RecordingCancellationToken(cancel_on_sleep=4)
        primary = FakeBackend("primary", always=Exception(QUOTA_MESSAGE))
        secondary = FakeBackend("secondary")

        with pytest.raises(WorkflowCancelledError):
            executor.run(b"img", "image/png", "p", [make_client(primary), make_client(secondary)], token)
        assert secondary.calls == []

    def test_empty_backend_list(self, executor, token):
        with pytest.raises(ConfigurationError):
            executor.run(b"img", "image/png", "p", [], token)
