"""
Error code catalog for the session repository.

This module defines all error codes raised by the session layer, covering
store connectivity failures, corrupt stored records, invalid session
state and configuration problems.

The HTTP status mapping is provided for the web layer that embeds the
repository; the repository itself never speaks HTTP.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used by the session layer.

    Each error code maps to a default HTTP status code so that a consuming
    web framework can translate exceptions without a second lookup table:
    - Client errors (4xx): invalid use of the session API
    - Store errors (5xx): dependency failures and corrupt data
    - Internal errors (5xx): server-side issues
    """

    # Client errors (4xx)
    INVALID_SESSION_STATE = "INVALID_SESSION_STATE"
    """Operation not allowed for the session's current state (HTTP 400)"""

    # Store errors (5xx)
    SESSION_STORE_UNAVAILABLE = "SESSION_STORE_UNAVAILABLE"
    """Redis unreachable or timed out (HTTP 503)"""

    CORRUPT_SESSION_RECORD = "CORRUPT_SESSION_RECORD"
    """Stored session record could not be decoded (HTTP 500)"""

    # Internal errors (5xx)
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Invalid or missing configuration (HTTP 500)"""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.INVALID_SESSION_STATE: 400,
    ErrorCode.SESSION_STORE_UNAVAILABLE: 503,
    ErrorCode.CORRUPT_SESSION_RECORD: 500,
    ErrorCode.CONFIGURATION_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
