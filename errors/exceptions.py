"""
Exception classes for the session repository.

This module provides the AppException base class, the two concrete
failures the repository surfaces (StoreUnavailable and CorruptRecord),
and convenience factory functions for creating them with proper error
codes.
"""

from typing import Any, Optional

from errors.codes import ErrorCode, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all session-layer errors.

    This exception provides structured error information including:
    - error_code: A standardized error code from the ErrorCode enum
    - message: A human-readable error message
    - status_code: The HTTP status code a web layer should return
    - details: Optional additional context (e.g., the session id)

    Example:
        raise AppException(
            error_code=ErrorCode.INVALID_SESSION_STATE,
            message="Session id cannot be empty",
            details={"field": "session_id"}
        )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        """
        Initialize an AppException.

        Args:
            error_code: The error code from the ErrorCode enum
            message: A human-readable error message
            status_code: The HTTP status code (defaults to the error code's default)
            details: Optional dictionary with additional error context
        """
        self.error_code = error_code
        self.message = message
        self.status_code = status_code or get_default_status_code(error_code)
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for JSON serialization.

        Returns:
            Dictionary containing error_code, message, and details
        """
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


class StoreUnavailable(AppException):
    """
    The backing store could not be reached or did not answer in time.

    Transient: callers may retry the same operation. Raised by store
    backends for connection errors and timeouts, and propagated unchanged
    by the repository.
    """

    def __init__(
        self,
        message: str = "Session store unavailable",
        details: Optional[dict[str, Any]] = None
    ):
        super().__init__(
            error_code=ErrorCode.SESSION_STORE_UNAVAILABLE,
            message=message,
            details=details
        )


class CorruptRecord(AppException):
    """
    A stored session record could not be decoded.

    The repository treats the session as absent on read rather than
    failing the caller.
    """

    def __init__(
        self,
        session_id: str,
        message: str = "Stored session record is corrupt",
        details: Optional[dict[str, Any]] = None
    ):
        self.session_id = session_id
        merged = {"session_id": session_id}
        if details:
            merged.update(details)
        super().__init__(
            error_code=ErrorCode.CORRUPT_SESSION_RECORD,
            message=message,
            details=merged
        )


# Convenience factory functions for common error types

def invalid_session_state(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an invalid session state exception."""
    return AppException(
        error_code=ErrorCode.INVALID_SESSION_STATE,
        message=message,
        details=details
    )


def session_store_unavailable(
    message: str = "Session store unavailable",
    details: Optional[dict[str, Any]] = None
) -> StoreUnavailable:
    """Create a session store unavailable exception."""
    return StoreUnavailable(message=message, details=details)


def corrupt_record(
    session_id: str,
    reason: str,
) -> CorruptRecord:
    """Create a corrupt record exception for the given session."""
    return CorruptRecord(session_id=session_id, details={"reason": reason})


def internal_error(
    message: str = "An unexpected error occurred",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an internal error exception."""
    return AppException(
        error_code=ErrorCode.INTERNAL_ERROR,
        message=message,
        details=details
    )
