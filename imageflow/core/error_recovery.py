"""Retry policy, provider error classification and health checks."""

import asyncio
import re
import time
from enum import Enum
from typing import Callable, Any, Optional, Dict, Tuple, Type, List
from functools import wraps
from datetime import datetime

from .exceptions import StorageError
from .logging import get_logger, RetryLogger


logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Outcome kinds a provider error can be classified into."""
    QUOTA = "quota"
    REJECTED = "rejected"
    FATAL = "fatal"


# The only place where provider error text is matched. Checked in order;
# the first pattern that matches decides the kind. Anything unmatched is FATAL.
ERROR_PATTERNS: List[Tuple[re.Pattern, ErrorKind]] = [
    (re.compile(r"\b429\b"), ErrorKind.QUOTA),
    (re.compile(r"RESOURCE_EXHAUSTED"), ErrorKind.QUOTA),
    (re.compile(r"quota", re.IGNORECASE), ErrorKind.QUOTA),
    (re.compile(r"too many requests", re.IGNORECASE), ErrorKind.QUOTA),
    (re.compile(r"rate[ _-]?limit", re.IGNORECASE), ErrorKind.QUOTA),
    (re.compile(r"blocked by safety", re.IGNORECASE), ErrorKind.REJECTED),
    (re.compile(r"PROHIBITED_CONTENT|BLOCKLIST|SAFETY"), ErrorKind.REJECTED),
]

_RETRY_IN_PATTERN = re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_RETRY_DELAY_FIELD_PATTERN = re.compile(
    r"[\"']?retryDelay[\"']?\s*[:=]\s*[\"']?(\d+(?:\.\d+)?)s", re.IGNORECASE
)


def classify_provider_error(error: Any) -> ErrorKind:
    """
    Classify a provider/transport error by its text.

    Args:
        error: Exception (or message) raised by a backend call

    Returns:
        ErrorKind for the first matching pattern, FATAL when nothing matches
    """
    text = str(error)
    for pattern, kind in ERROR_PATTERNS:
        if pattern.search(text):
            return kind
    logger.warning(f"Unmatched provider error treated as fatal: {text[:200]}")
    return ErrorKind.FATAL


def parse_suggested_delay(error_text: str) -> Optional[float]:
    """
    Extract a server-suggested retry delay in seconds.

    Understands "retry in 12.5s" phrases and structured ``retryDelay``
    fields such as ``"retryDelay": "17s"``.
    """
    for pattern in (_RETRY_DELAY_FIELD_PATTERN, _RETRY_IN_PATTERN):
        match = pattern.search(error_text or "")
        if match:
            return float(match.group(1))
    return None


class RetryPolicy:
    """Retry behaviour shared by every retrying call site.

    ``max_retries`` counts retries, so a call gets ``max_retries + 1``
    attempts in total. Delays are in seconds. A delay suggested by the
    server (found by ``delay_parser`` in the error text) is used as is;
    otherwise the delay grows exponentially from ``base_delay`` and is
    capped at ``max_delay``.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        delay_parser: Optional[Callable[[str], Optional[float]]] = parse_suggested_delay
    ):
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("Retry delays cannot be negative")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.delay_parser = delay_parser

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        """Build a policy from an AppConfig."""
        return cls(
            max_retries=config.max_retries,
            base_delay=config.initial_backoff_ms / 1000.0,
            max_delay=config.max_backoff_ms / 1000.0,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, attempt: int) -> bool:
        """Whether another retry is allowed after ``attempt`` retries were used."""
        return attempt < self.max_retries

    def get_delay(self, attempt: int, error_text: str = "") -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.delay_parser is not None:
            suggested = self.delay_parser(error_text)
            if suggested is not None:
                return suggested

        return min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)


RetryHook = Callable[[int, float, Exception], None]


def execute_with_retry(
    func: Callable[[], Any],
    policy: RetryPolicy,
    retryable_exceptions: Tuple[Type[Exception], ...],
    sleep: Optional[Callable[[float], None]] = None,
    before_attempt: Optional[Callable[[], None]] = None,
    on_retry: Optional[RetryHook] = None,
    name: Optional[str] = None,
    retry_logger: Optional[RetryLogger] = None
) -> Any:
    """
    Call ``func`` until it succeeds or ``policy`` runs out of retries.

    Only ``retryable_exceptions`` are retried; anything else propagates
    from the failing attempt. Once the budget is spent the last retryable
    error is re-raised.

    Args:
        func: Zero-argument callable performing one attempt
        policy: Attempt budget and delay schedule
        retryable_exceptions: Exception types worth another attempt
        sleep: Waits between attempts (``time.sleep`` by default). Raising
            from it aborts the loop, which is how a cancellable sleep stops
            a retry sequence.
        before_attempt: Called before every attempt (e.g. a cancellation check)
        on_retry: Called with (retry number, delay, error) before each sleep
        name: Label for log messages; defaults to the function name
        retry_logger: Logger for retry activity

    Returns:
        Whatever ``func`` returns on its first successful attempt
    """
    name = name or getattr(func, "__name__", "call")
    retry_logger = retry_logger or RetryLogger(name)
    sleep = sleep or time.sleep
    retries = 0

    while True:
        if before_attempt is not None:
            before_attempt()

        try:
            result = func()
        except retryable_exceptions as e:
            if not policy.should_retry(retries):
                retry_logger.log_recovery_failure(name, e, retries + 1)
                raise

            retries += 1
            delay = policy.get_delay(retries, str(e))
            retry_logger.log_retry(name, e, retries, policy.max_retries, delay)
            if on_retry is not None:
                on_retry(retries, delay, e)
            sleep(delay)
            continue

        if retries:
            retry_logger.log_recovery_success(name, retries + 1)
        return result


def with_retry(policy: Optional[RetryPolicy] = None,
               retryable_exceptions: Tuple[Type[Exception], ...] = (StorageError,),
               sleep: Optional[Callable[[float], None]] = None):
    """Decorator running the wrapped function through ``execute_with_retry``."""
    if policy is None:
        policy = RetryPolicy(max_retries=2, base_delay=0.1, max_delay=2.0, delay_parser=None)

    def decorator(func: Callable) -> Callable:
        retry_logger = RetryLogger(func.__name__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            return execute_with_retry(
                lambda: func(*args, **kwargs),
                policy,
                retryable_exceptions,
                sleep=sleep,
                name=func.__name__,
                retry_logger=retry_logger
            )
        return wrapper

    return decorator


class HealthChecker:
    """Health checker for system components."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("health_checker")

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a health check function."""
        self.checks[name] = {
            "func": check_func,
            "timeout": timeout
        }
        self.logger.info(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run a specific health check."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }

        check_info = self.checks[name]
        start_time = time.time()

        try:
            if asyncio.iscoroutinefunction(check_info["func"]):
                result = await asyncio.wait_for(
                    check_info["func"](),
                    timeout=check_info["timeout"]
                )
            else:
                result = check_info["func"]()

            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
            if isinstance(result, dict):
                check_result.update(result)

        except asyncio.TimeoutError:
            check_result = {
                "status": "timeout",
                "message": f"Health check timed out after {check_info['timeout']}s",
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }
        except Exception as e:
            check_result = {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
                "timestamp": datetime.utcnow().isoformat()
            }

        self.last_results[name] = check_result
        return check_result

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run all registered health checks."""
        results = {}
        overall_status = "healthy"

        for name in self.checks:
            result = await self.run_check(name)
            results[name] = result
            if result["status"] != "healthy":
                overall_status = "unhealthy"

        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }
