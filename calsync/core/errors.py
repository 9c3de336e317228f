"""Sync layer exceptions and error classification for user-facing notifications."""

from enum import Enum
from typing import Literal

import httpx
from pydantic import BaseModel

from calsync.core.config import Constants


class SyncError(Exception):
    """Base class for every error raised by the sync layer."""


class RemoteStoreError(SyncError):
    """A remote operation failed (network, timeout, or an error response)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TaskValidationError(SyncError):
    """A payload was rejected before any optimistic application or network call."""


class TaskNotFoundError(SyncError, KeyError):
    """The task is not present in the cache."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Task not found"


class ConflictResolutionError(SyncError):
    """A conflict could not be resolved as requested."""


class OfflineError(SyncError):
    """A write was attempted while the client is offline (read-only mode)."""


class ErrorCategory(Enum):
    """Categories of errors surfaced by the sync layer."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION_FAILED = "validation_failed"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode:
    """Error codes for specific error conditions."""

    ERR_NETWORK_ERROR = "ERR_NETWORK_ERROR"
    ERR_TIMEOUT = "ERR_TIMEOUT"
    ERR_PERMISSION_DENIED = "ERR_PERMISSION_DENIED"
    ERR_VALIDATION_FAILED = "ERR_VALIDATION_FAILED"
    ERR_TASK_NOT_FOUND = "ERR_TASK_NOT_FOUND"
    ERR_CONFLICT = "ERR_CONFLICT"
    ERR_OFFLINE = "ERR_OFFLINE"
    ERR_UNKNOWN = "ERR_UNKNOWN"


class ErrorResponse(BaseModel):
    """Structured error response with user-friendly messaging."""

    code: str
    category: ErrorCategory
    message: str
    suggestion: str
    severity: ErrorSeverity
    retryable: bool = True


_ERROR_PATTERNS: dict[Literal["timeout", "network", "permission"], dict[str, list[str] | set[str]]] = {
    "timeout": {
        "phrases": ["timeout", "timed out"],
        "exception_types": {"TimeoutError", "TimeoutException", "ReadTimeout", "ConnectTimeout", "PoolTimeout"},
    },
    "network": {
        "phrases": ["connection", "network", "unreachable", "502", "503", "504"],
        "exception_types": {"ConnectionError", "ConnectError", "NetworkError", "RemoteProtocolError"},
    },
    "permission": {
        "phrases": ["permission denied", "forbidden", "403"],
        "exception_types": {"PermissionError"},
    },
}


def _match_error_pattern(
    *,
    error_str: str,
    exception_type: str,
    pattern_type: Literal["timeout", "network", "permission"],
) -> bool:
    """Return True if the error matches the configured pattern type."""
    patterns = _ERROR_PATTERNS[pattern_type]
    return any(phrase in error_str for phrase in patterns["phrases"]) or exception_type in patterns["exception_types"]


def _status_code_of(exception: Exception) -> int | None:
    if isinstance(exception, RemoteStoreError):
        return exception.status_code
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code
    return None


def classify_error(exception: Exception) -> ErrorResponse:  # noqa: PLR0911
    """Classify an error and return a structured response for a notification.

    Permission errors are reported as non-retryable warnings; everything else
    carries a retry hint.

    Args:
        exception: The exception raised by a sync operation

    Returns:
        ErrorResponse with code, category, message, suggestion, and severity
    """
    error_str = str(exception).lower()
    exception_type = type(exception).__name__
    status_code = _status_code_of(exception)

    if isinstance(exception, OfflineError):
        return ErrorResponse(
            code=ErrorCode.ERR_OFFLINE,
            category=ErrorCategory.OFFLINE,
            message="You are offline.",
            suggestion="Changes are disabled until the connection is restored.",
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
        )

    if isinstance(exception, TaskValidationError):
        return ErrorResponse(
            code=ErrorCode.ERR_VALIDATION_FAILED,
            category=ErrorCategory.VALIDATION_FAILED,
            message=str(exception) or "The task is invalid.",
            suggestion="Check the highlighted fields and try again.",
            severity=ErrorSeverity.LOW,
            retryable=False,
        )

    if isinstance(exception, TaskNotFoundError) or status_code == Constants.HTTP_NOT_FOUND:
        return ErrorResponse(
            code=ErrorCode.ERR_TASK_NOT_FOUND,
            category=ErrorCategory.NOT_FOUND,
            message="That task no longer exists.",
            suggestion="Refresh the calendar to load the latest tasks.",
            severity=ErrorSeverity.LOW,
            retryable=False,
        )

    if status_code == Constants.HTTP_FORBIDDEN or _match_error_pattern(
        error_str=error_str, exception_type=exception_type, pattern_type="permission"
    ):
        return ErrorResponse(
            code=ErrorCode.ERR_PERMISSION_DENIED,
            category=ErrorCategory.PERMISSION_DENIED,
            message="You don't have permission for this action.",
            suggestion="Contact an administrator if you think this is an error.",
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
        )

    if status_code == Constants.HTTP_CONFLICT or isinstance(exception, ConflictResolutionError):
        return ErrorResponse(
            code=ErrorCode.ERR_CONFLICT,
            category=ErrorCategory.CONFLICT,
            message="This change collides with a newer version on the server.",
            suggestion="Open the conflicts view to choose which version to keep.",
            severity=ErrorSeverity.HIGH,
        )

    if _match_error_pattern(error_str=error_str, exception_type=exception_type, pattern_type="timeout"):
        return ErrorResponse(
            code=ErrorCode.ERR_TIMEOUT,
            category=ErrorCategory.TIMEOUT,
            message="The server took too long to respond.",
            suggestion="Please try again in a moment.",
            severity=ErrorSeverity.MEDIUM,
        )

    if _match_error_pattern(error_str=error_str, exception_type=exception_type, pattern_type="network"):
        return ErrorResponse(
            code=ErrorCode.ERR_NETWORK_ERROR,
            category=ErrorCategory.NETWORK_ERROR,
            message="Network error occurred.",
            suggestion="Please check your connection and try again.",
            severity=ErrorSeverity.MEDIUM,
        )

    return ErrorResponse(
        code=ErrorCode.ERR_UNKNOWN,
        category=ErrorCategory.UNKNOWN,
        message="An unexpected error occurred.",
        suggestion="Please try again later. If the problem persists, contact support.",
        severity=ErrorSeverity.MEDIUM,
    )
