"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    WorkflowCancelledError,
    BackendError,
    RejectedError,
    EmptyResponseError,
    FatalBackendError,
    QuotaError,
    RateLimitedError,
    StepExecutionError,
    RunNotFoundError,
    ExecutionEngineError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .cancellation import CancellationToken
from .error_recovery import ErrorKind, RetryPolicy, classify_provider_error
from .graph_manager import GraphManager

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "WorkflowCancelledError",
    "BackendError",
    "RejectedError",
    "EmptyResponseError",
    "FatalBackendError",
    "QuotaError",
    "RateLimitedError",
    "StepExecutionError",
    "RunNotFoundError",
    "ExecutionEngineError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "CancellationToken",
    "ErrorKind",
    "RetryPolicy",
    "classify_provider_error",
    "GraphManager",
]
