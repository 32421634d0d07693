"""
Uniform error handling helpers.

This module provides:
    - ErrorCode: standard error codes
    - ServiceError: exception carrying a code and structured context
    - Pipeline exceptions (template, output validation, job lifecycle)
    - is_retryable_error(): transient-failure classification for job retries
    - api_error() / handle_service_error(): sanitized HTTPException builders
    - @log_and_continue: decorator for best-effort calls
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar

import structlog
from fastapi import HTTPException

_logger = structlog.get_logger()
T = TypeVar("T")


# =============================================================================
# STANDARD ERROR CODES
# =============================================================================

class ErrorCode:
    """Error codes shared by logs, job records and HTTP responses."""

    # External services
    DATABASE_ERROR = "DATABASE_ERROR"
    LLM_ERROR = "LLM_ERROR"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Pipeline
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    OUTPUT_REJECTED = "OUTPUT_REJECTED"
    JOB_FAILED = "JOB_FAILED"

    # Operations
    OPERATION_FAILED = "OPERATION_FAILED"
    TIMEOUT = "TIMEOUT"


# Substrings that mark an error as transient. Matched case-insensitively
# against the error message.
RETRYABLE_MARKERS = (
    "rate limit",
    "rate_limit",
    "rate-limit",
    "timeout",
    "timed out",
    "connection",
    "temporary",
)


# =============================================================================
# DOMAIN EXCEPTIONS
# =============================================================================

@dataclass
class ServiceError(Exception):
    """
    Service error with code and structured context.

    Used to translate external exceptions into domain errors.
    """
    code: str
    message: str
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context or {},
        }


class LLMError(ServiceError):
    """Model service call failed or returned an unusable payload."""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(ErrorCode.LLM_ERROR, message, context)


class PostgresError(ServiceError):
    """PostgreSQL operation failed."""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(ErrorCode.DATABASE_ERROR, message, context)


class TemplateNotFoundError(ServiceError):
    """No template (or template content) matches the request."""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(ErrorCode.TEMPLATE_NOT_FOUND, message, context)


class OutputValidationError(ServiceError):
    """Model output was rejected by the quality gate."""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(ErrorCode.OUTPUT_REJECTED, message, context)


class JobValidationError(ServiceError):
    """Malformed job submission."""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, context)


class JobNotFoundError(ServiceError):
    def __init__(self, job_id: str):
        super().__init__(ErrorCode.NOT_FOUND, f"Job not found: {job_id}", {"job_id": job_id})


class JobTimeoutError(ServiceError):
    """Job exceeded the pool's wall-clock ceiling."""
    def __init__(self, job_id: str, timeout: float):
        super().__init__(
            ErrorCode.TIMEOUT,
            f"Job {job_id} exceeded hard limit of {timeout:g}s",
            {"job_id": job_id, "timeout": timeout},
        )


class FatalJobError(ServiceError):
    """Error outside the per-type loop that aborts the whole job."""
    def __init__(self, message: str, context: Optional[Dict] = None):
        super().__init__(ErrorCode.JOB_FAILED, message, context)


def is_retryable_error(exc: BaseException) -> bool:
    """
    Classify an error as transient.

    Only the message is inspected: an error is retryable iff it mentions a
    rate limit, a timeout, a connection problem or a temporary condition.
    The job timeout enforced by the pool is always fatal.
    """
    if isinstance(exc, JobTimeoutError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


# =============================================================================
# HTTP HELPERS
# =============================================================================

def api_error(
    status_code: int,
    code: str,
    message: str,
    exc: Optional[Exception] = None,
    log_level: str = "error",
) -> HTTPException:
    """
    Build an HTTPException without exposing internals.

    The original exception is logged, never returned to the client.
    """
    log_fn = getattr(_logger, log_level, _logger.error)

    log_data = {
        "status": status_code,
        "code": code,
        "message": message,
    }
    if exc:
        log_data["error_type"] = type(exc).__name__
        log_data["error_detail"] = str(exc)

    log_fn("api.error", **log_data, exc_info=bool(exc))

    return HTTPException(
        status_code=status_code,
        detail={
            "code": code,
            "message": message,
        },
    )


def handle_service_error(exc: Exception, operation: str = "operation") -> HTTPException:
    """
    Translate pipeline exceptions into an HTTPException.

    Mapping:
        - JobValidationError → 422
        - JobNotFoundError → 404
        - LLMError / PostgresError → 503
        - TimeoutError / JobTimeoutError → 504
        - ServiceError → 500
        - Exception → 500
    """
    if isinstance(exc, JobValidationError):
        return api_error(422, exc.code, exc.message, exc, log_level="warning")

    elif isinstance(exc, JobNotFoundError):
        return api_error(404, exc.code, exc.message, exc, log_level="info")

    elif isinstance(exc, LLMError):
        return api_error(503, ErrorCode.LLM_ERROR,
                         f"Model service unavailable during {operation}", exc)

    elif isinstance(exc, PostgresError):
        return api_error(503, ErrorCode.DATABASE_ERROR,
                         f"Database unavailable during {operation}", exc)

    elif isinstance(exc, (TimeoutError, JobTimeoutError)):
        return api_error(504, ErrorCode.TIMEOUT,
                         f"The {operation} took too long", exc)

    elif isinstance(exc, ServiceError):
        return api_error(500, exc.code, exc.message, exc)

    else:
        return api_error(500, ErrorCode.OPERATION_FAILED,
                         f"Unexpected error during {operation}", exc)


# =============================================================================
# DECORATORS
# =============================================================================

def log_and_continue(service: str, default: Any = None):
    """
    Log errors and return `default` instead of raising.

    For best-effort operations that must not block the pipeline.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _logger.warning(
                    f"{service}.error_ignored",
                    func=func.__name__,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return default
        return wrapper
    return decorator
