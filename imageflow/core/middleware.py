"""HTTP middleware: error rendering, request ids and slow-request warnings."""

import time
import uuid
from datetime import datetime
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    ExecutionEngineError,
    GraphValidationError,
    QuotaError,
    WorkflowEngineError,
    create_error_response,
)
from .logging import get_logger, logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def status_code_for_error(error: WorkflowEngineError) -> int:
    """Map an engine error onto an HTTP status code."""
    if isinstance(error, GraphValidationError):
        return 400
    if isinstance(error, QuotaError):
        return 429
    if "not found" in error.message.lower():
        return 404
    if isinstance(error, ExecutionEngineError):
        return 400
    # StorageError, ConfigurationError and anything unexpected
    return 500


def _internal_error_body(error: Exception, request_id: str) -> dict:
    return {
        "error": "InternalServerError",
        "message": "An unexpected error occurred",
        "details": {
            "error_type": type(error).__name__,
            "timestamp": datetime.utcnow().isoformat()
        },
        "request_id": request_id
    }


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Renders errors that escape the endpoints as JSON.

    Every request runs inside a logging context carrying its request id;
    a client-supplied ``X-Request-ID`` is reused, otherwise one is generated.
    The id is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        with logging_context(request_id=request_id, route=route):
            try:
                response = await call_next(request)
            except WorkflowEngineError as e:
                logger.warning(f"{route} failed with {e.error_code}: {e.message}")
                response = JSONResponse(status_code=status_code_for_error(e), content=create_error_response(e))
            except Exception as e:
                logger.error(f"{route} raised {type(e).__name__}: {e}", exc_info=True)
                response = JSONResponse(status_code=500, content=_internal_error_body(e, request_id))

            logger.info(f"{route} -> {response.status_code} in {time.perf_counter() - started:.3f}s")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Adds an ``X-Response-Time`` header and warns about slow requests."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
