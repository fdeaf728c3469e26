"""
Error handling module for the session repository.

This module provides structured error handling with:
- ErrorCode enum for standardized error codes
- AppException base class for session-layer exceptions
- StoreUnavailable and CorruptRecord, the failures the repository surfaces
"""

from errors.codes import ErrorCode
from errors.exceptions import (
    AppException,
    CorruptRecord,
    StoreUnavailable,
    corrupt_record,
    session_store_unavailable,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "CorruptRecord",
    "StoreUnavailable",
    "corrupt_record",
    "session_store_unavailable",
]
