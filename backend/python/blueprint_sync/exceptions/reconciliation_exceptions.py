from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes carried in structured failure results"""

    VALIDATION_REQUIRED = "VALIDATION_REQUIRED"
    VALIDATION_INVALID_VALUE = "VALIDATION_INVALID_VALUE"

    NOT_FOUND_SOURCE = "NOT_FOUND_SOURCE"
    NOT_FOUND_EMBED = "NOT_FOUND_EMBED"
    NOT_FOUND_VERSION = "NOT_FOUND_VERSION"
    NOT_FOUND_BACKUP = "NOT_FOUND_BACKUP"

    STORAGE_READ_FAILED = "STORAGE_READ_FAILED"
    STORAGE_WRITE_FAILED = "STORAGE_WRITE_FAILED"

    OPERATION_NOT_ALLOWED = "OPERATION_NOT_ALLOWED"
    RESTORE_CONFLICT = "RESTORE_CONFLICT"
    NOT_RECOVERABLE = "NOT_RECOVERABLE"

    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_response(code: ErrorCode, message: str, **details: Any) -> Dict[str, Any]:
    """Build the structured failure result returned by public operations."""
    return {
        "success": False,
        "error": message,
        "errorCode": code.value,
        **details,
    }


class ReconciliationError(Exception):
    """Base exception for reconciliation errors"""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        details: Optional[dict] = None,
        code: Optional[ErrorCode] = None,
    ) -> None:
        self.message = message
        self.entity_id = entity_id
        self.details = details or {}
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        extra = dict(self.details)
        if self.entity_id is not None:
            extra.setdefault("entityId", self.entity_id)
        return error_response(self.code, self.message, **extra)


class StorageWriteError(ReconciliationError):
    """Raised when the key-value store rejects a write that must not be skipped"""

    code = ErrorCode.STORAGE_WRITE_FAILED

    def __init__(
        self,
        message: str = "Failed to write to storage",
        key: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        super().__init__(message, key, details)
        self.key = key
