"""Tests for provider error classification and the retry policy."""

import pytest

from imageflow.config import get_testing_config
from imageflow.core.error_recovery import (
    ErrorKind, RetryPolicy, classify_provider_error, execute_with_retry, parse_suggested_delay, with_retry
)
from imageflow.core.exceptions import StorageError, WorkflowCancelledError


class TestClassifyProviderError:
    """Test cases for classify_provider_error."""

    @pytest.mark.parametrize("message", [
        "429 Too Many Requests",
        "RESOURCE_EXHAUSTED: generate_content_free_tier_requests",
        "You exceeded your current Quota, please check your plan",
        "Rate limit reached for model",
    ])
    def test_quota_markers(self, message):
        assert classify_provider_error(Exception(message)) == ErrorKind.QUOTA

    @pytest.mark.parametrize("message", [
        "Request blocked by safety settings",
        "finishReason: PROHIBITED_CONTENT",
    ])
    def test_rejection_markers(self, message):
        assert classify_provider_error(Exception(message)) == ErrorKind.REJECTED

    def test_unmatched_errors_are_fatal(self):
        assert classify_provider_error(Exception("401 Unauthorized: API key not valid")) == ErrorKind.FATAL
        assert classify_provider_error(ConnectionError("connection reset by peer")) == ErrorKind.FATAL

    def test_429_must_be_a_whole_number(self):
        assert classify_provider_error(Exception("request id 14290 failed")) == ErrorKind.FATAL


class TestParseSuggestedDelay:
    """Test cases for server-suggested delays."""

    def test_retry_in_phrase(self):
        assert parse_suggested_delay("Quota exceeded. Please retry in 12.5s.") == 12.5

    def test_retry_delay_field(self):
        body = '{"error": {"details": [{"@type": "RetryInfo", "retryDelay": "17s"}]}}'
        assert parse_suggested_delay(body) == 17.0

    def test_no_suggestion(self):
        assert parse_suggested_delay("429 Too Many Requests") is None
        assert parse_suggested_delay("") is None


class TestRetryPolicy:
    """Test cases for RetryPolicy."""

    def test_exponential_delays(self):
        policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0)

        assert [policy.get_delay(attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_capped(self):
        policy = RetryPolicy(max_retries=10, base_delay=1.0, max_delay=30.0)

        assert policy.get_delay(6) == 30.0

    def test_suggested_delay_wins(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)

        assert policy.get_delay(1, "429 RESOURCE_EXHAUSTED, retry in 7s") == 7.0

    def test_suggested_delay_not_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)

        assert policy.get_delay(1, "Quota exceeded. Please retry in 45s.") == 45.0

    def test_attempt_budget(self):
        policy = RetryPolicy(max_retries=3)

        assert policy.max_attempts == 4
        assert [policy.should_retry(used) for used in range(5)] == [True, True, True, False, False]

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=-0.5)

    def test_from_config_converts_milliseconds(self):
        config = get_testing_config().model_copy(update={
            "max_retries": 2, "initial_backoff_ms": 500, "max_backoff_ms": 4000
        })

        policy = RetryPolicy.from_config(config)

        assert policy.max_retries == 2
        assert policy.base_delay == 0.5
        assert policy.max_delay == 4.0


class TestWithRetry:
    """Test cases for the storage retry decorator."""

    def test_retries_then_succeeds(self):
        calls = []

        @with_retry(RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StorageError("database is locked")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_budget(self):
        calls = []

        @with_retry(RetryPolicy(max_retries=1, base_delay=0.0, max_delay=0.0))
        def broken():
            calls.append(1)
            raise StorageError("disk full")

        with pytest.raises(StorageError):
            broken()
        assert len(calls) == 2

    def test_other_errors_not_retried(self):
        calls = []

        @with_retry(RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0))
        def wrong():
            calls.append(1)
            raise KeyError("nope")

        with pytest.raises(KeyError):
            wrong()
        assert len(calls) == 1

    def test_custom_sleep_receives_delays(self):
        sleeps = []
        calls = []

        @with_retry(RetryPolicy(max_retries=2, base_delay=0.5, max_delay=10.0, delay_parser=None),
                    sleep=sleeps.append)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StorageError("database is locked")
            return "ok"

        assert flaky() == "ok"
        assert sleeps == [0.5, 1.0]


class TestExecuteWithRetry:
    """Test cases for the shared retry loop."""

    def failing(self, errors, result="done"):
        """Callable raising each of ``errors`` in turn, then returning ``result``."""
        errors = list(errors)
        calls = []

        def attempt():
            calls.append(1)
            if errors:
                raise errors.pop(0)
            return result
        return attempt, calls

    def test_hooks_see_each_retry(self):
        attempt, calls = self.failing([ValueError("first"), ValueError("second")])
        sleeps, retries, checks = [], [], []

        result = execute_with_retry(
            attempt,
            RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0),
            (ValueError,),
            sleep=sleeps.append,
            before_attempt=lambda: checks.append(1),
            on_retry=lambda retry, delay, error: retries.append((retry, delay, str(error)))
        )

        assert result == "done"
        assert len(calls) == 3
        assert len(checks) == 3
        assert sleeps == [1.0, 2.0]
        assert retries == [(1, 1.0, "first"), (2, 2.0, "second")]

    def test_reraises_last_error_when_budget_spent(self):
        attempt, calls = self.failing([ValueError("a"), ValueError("b"), ValueError("c")])
        sleeps = []

        with pytest.raises(ValueError, match="b"):
            execute_with_retry(attempt, RetryPolicy(max_retries=1, base_delay=1.0), (ValueError,),
                               sleep=sleeps.append)

        assert len(calls) == 2
        assert sleeps == [1.0]

    def test_non_retryable_error_propagates_at_once(self):
        attempt, calls = self.failing([KeyError("missing")])
        sleeps = []

        with pytest.raises(KeyError):
            execute_with_retry(attempt, RetryPolicy(max_retries=3), (ValueError,), sleep=sleeps.append)

        assert len(calls) == 1
        assert sleeps == []

    def test_raising_sleep_aborts_the_loop(self):
        attempt, calls = self.failing([ValueError("busy")] * 3)

        def cancelled_sleep(seconds):
            raise WorkflowCancelledError("stop")

        with pytest.raises(WorkflowCancelledError):
            execute_with_retry(attempt, RetryPolicy(max_retries=3), (ValueError,), sleep=cancelled_sleep)

        assert len(calls) == 1

    def test_before_attempt_can_stop_first_call(self):
        attempt, calls = self.failing([])

        def already_cancelled():
            raise WorkflowCancelledError("stop")

        with pytest.raises(WorkflowCancelledError):
            execute_with_retry(attempt, RetryPolicy(), (ValueError,), before_attempt=already_cancelled)

        assert calls == []
