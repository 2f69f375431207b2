import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from jobs_engine.config.logging import add_request_context, get_logger

logger = get_logger(__name__)


class JobsEngineException(Exception):
    """Base exception for the jobs engine."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(JobsEngineException):
    """Raised when a job or schedule definition is malformed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(JobsEngineException):
    """Raised when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(JobsEngineException):
    """Raised when a unique resource already exists."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class PersistenceError(JobsEngineException):
    """Raised when the ledger cannot be read or written."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class JobExecutionError(JobsEngineException):
    """Base class for failures of a single job attempt.

    ``retryable`` tells the retry governor whether the attempt may be
    repeated; ``error_type`` is what ends up in the failure history.
    """

    retryable: bool = True
    error_type: str = "ProcessorError"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        stack: str | None = None,
    ):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR, details)
        self.stack = stack


class UnknownJobTypeError(JobExecutionError):
    """No processor is registered for the job type."""

    retryable = False
    error_type = "UnknownJobType"


class ProcessorError(JobExecutionError):
    """The processor raised."""

    error_type = "ProcessorError"


class JobTimeoutError(JobExecutionError):
    """The processor did not finish before its deadline."""

    error_type = "TimeoutError"


class LeaseLostError(JobExecutionError):
    """The worker no longer holds the job (lease reaped, job cancelled)."""

    error_type = "LeaseLost"


REQUEST_ID_HEADER = "X-Request-ID"


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Body of every failed API call: ``{"ok": false, "error": {...}}``."""
    return {
        "ok": False,
        "error": {"message": message, "code": status_code, "details": details or {}},
        "request_id": request_id,
        "timestamp": _timestamp(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": _timestamp(),
    }


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_json(
    request_id: str,
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(status_code, message, details, request_id),
        headers={REQUEST_ID_HEADER: request_id},
    )


async def jobs_engine_exception_handler(
    request: Request, exc: JobsEngineException
) -> JSONResponse:
    request_id = _request_id(request)
    # Client mistakes (4xx) are expected traffic; 5xx means the engine is unwell
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        error=type(exc).__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )
    return _error_json(request_id, exc.status_code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = _request_id(request)
    logger.warning("HTTP error", status_code=exc.status_code, detail=exc.detail)
    return _error_json(request_id, exc.status_code, str(exc.detail))


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.error("Unhandled exception", error=type(exc).__name__, exc_info=exc)
    return _error_json(
        request_id, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, reusing the caller's ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        add_request_context(
            request_id=request_id, method=request.method, path=request.url.path
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
