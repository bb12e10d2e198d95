"""Exception hierarchy of the image workflow engine.

Every error carries a severity, a category and free-form context; the API
renders them with ``create_error_response``.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


RATE_LIMIT_HELP_URL = "https://ai.google.dev/gemini-api/docs/rate-limits"


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    BACKEND = "backend"
    POLICY = "policy"
    QUOTA = "quota"
    CONFIGURATION = "configuration"
    CANCELLATION = "cancellation"


class WorkflowEngineError(Exception):
    """Base exception for all image workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow graph is not a single well-formed pipeline."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class WorkflowCancelledError(WorkflowEngineError):
    """Raised at a suspension point once the run's cancellation token is signaled."""

    def __init__(self, message: str = "Workflow cancelled by user.", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CANCELLATION,
            **kwargs
        )


class BackendError(WorkflowEngineError):
    """Base class for errors produced while talking to an image backend."""

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        category: ErrorCategory = ErrorCategory.BACKEND,
        **kwargs
    ):
        super().__init__(message, severity=severity, category=category, **kwargs)
        self.backend = backend
        if backend:
            self.add_context(backend=backend)


class RejectedError(BackendError):
    """A backend refused the (image, prompt) pair on policy grounds. Never retried."""

    def __init__(self, reason: str, backend: Optional[str] = None, **kwargs):
        super().__init__(
            f"Request blocked by safety policy: {reason}. Please adjust the image or prompt.",
            backend=backend,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.POLICY,
            **kwargs
        )
        self.reason = reason
        self.add_details(reason=reason)


class EmptyResponseError(BackendError):
    """A backend answered successfully but without any image data."""

    def __init__(
        self,
        message: str = "API returned an empty response. No image was generated.",
        backend: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, backend=backend, **kwargs)


class FatalBackendError(BackendError):
    """Transport, auth or programming fault. Aborts the run with the original text."""

    def __init__(self, message: str, backend: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            backend=backend,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class RateLimitedError(BackendError):
    """One attempt hit a quota or rate limit. Retried by the backend client."""

    def __init__(self, message: str, backend: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            backend=backend,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.QUOTA,
            recoverable=True,
            **kwargs
        )


class QuotaError(BackendError):
    """Every configured backend exhausted its retries on rate-limit errors."""

    def __init__(self, failures: List[Any], help_url: str = RATE_LIMIT_HELP_URL, **kwargs):
        names = ", ".join(failure.backend for failure in failures) or "none"
        super().__init__(
            f"Quota or rate limit exhausted on all backends ({names}). "
            f"Please check your billing and API quotas: {help_url}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.QUOTA,
            recoverable=True,
            **kwargs
        )
        self.failures = list(failures)
        self.help_url = help_url
        self.add_details(
            backends={failure.backend: failure.reason for failure in failures},
            help_url=help_url
        )


class StepExecutionError(WorkflowEngineError):
    """Raised by the runner when a step fails for an image; halts the batch."""

    def __init__(
        self,
        message: str,
        step_name: Optional[str] = None,
        image_name: Optional[str] = None,
        run_id: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        if isinstance(cause, WorkflowEngineError):
            kwargs.setdefault("severity", cause.severity)
            kwargs.setdefault("category", cause.category)
        super().__init__(message, **kwargs)
        self.step_name = step_name
        self.image_name = image_name
        self.cause = cause
        if step_name:
            self.add_context(step_name=step_name)
        if image_name:
            self.add_context(image_name=image_name)
        if run_id:
            self.add_context(run_id=run_id)
        if cause is not None:
            self.add_details(cause_type=type(cause).__name__)


class RunNotFoundError(WorkflowEngineError):
    """A stored run was looked up or updated but does not exist. Never retried."""

    def __init__(self, run_id: str, **kwargs):
        super().__init__(
            f"Run {run_id} not found",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        self.run_id = run_id
        self.add_context(run_id=run_id)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when a run cannot be started or looked up."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)


class StorageError(WorkflowEngineError):
    """The run store failed; retried by ``with_retry`` before it surfaces."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(WorkflowEngineError):
    """Backends or settings are missing or unusable."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
