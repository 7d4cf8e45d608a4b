"""Centralized exception definitions and error taxonomy."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Describes severity for surfaced errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categorization used for error routing and HTTP status mapping."""
    VALIDATION = "validation"
    PAYLOAD = "payload"
    NOT_FOUND = "not_found"
    INTEGRITY = "integrity"
    STORAGE = "storage"
    SYSTEM = "system"


class UploaderException(Exception):
    """Base exception type for the upload service."""

    def __init__(
        self,
        message: str,
        error_code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        self.message = message
        self.error_code = error_code
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception metadata into a dict."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "type": self.__class__.__name__
        }


# Request validation
class ValidationException(UploaderException):
    """Raised when request fields are missing, malformed or inconsistent."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        validation_details = details or {}
        if field:
            validation_details["field"] = field
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details=validation_details
        )


class PayloadTooLargeException(UploaderException):
    """Raised when a request body or declared upload exceeds the configured ceiling."""

    def __init__(self, message: str, limit: int, details: Optional[Dict[str, Any]] = None):
        payload_details = details or {}
        payload_details["limit"] = limit
        super().__init__(
            message=message,
            error_code="PAYLOAD_TOO_LARGE",
            category=ErrorCategory.PAYLOAD,
            severity=ErrorSeverity.LOW,
            details=payload_details
        )


class SessionNotFoundException(UploaderException):
    """Raised when an upload session identifier is unknown."""

    def __init__(self, upload_id: str):
        super().__init__(
            message=f"Upload session not found: {upload_id}",
            error_code="SESSION_NOT_FOUND",
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            details={"upload_id": upload_id}
        )


# Storage exceptions
class StorageException(UploaderException):
    """Raised for staging or output storage failures."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        error_code: str = "STORAGE_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        storage_details = details or {}
        if operation:
            storage_details["operation"] = operation
        super().__init__(
            message=message,
            error_code=error_code,
            category=ErrorCategory.STORAGE,
            severity=severity,
            details=storage_details,
            original_error=original_error
        )


class TransferCancelledException(StorageException):
    """Raised when a byte transfer is aborted through its cancellation token."""

    def __init__(self, bytes_copied: int, reason: str = "cancelled"):
        super().__init__(
            message=f"Transfer {reason} after {bytes_copied} bytes",
            operation="copy",
            error_code="TRANSFER_CANCELLED",
            severity=ErrorSeverity.MEDIUM,
            details={"bytes_copied": bytes_copied, "reason": reason}
        )


class ShortWriteException(StorageException):
    """Raised when the destination accepted fewer bytes than were read."""

    def __init__(self, expected: int, written: int, bytes_copied: int):
        super().__init__(
            message=f"Short write: {written} of {expected} bytes accepted",
            operation="copy",
            error_code="SHORT_WRITE",
            details={"expected": expected, "written": written, "bytes_copied": bytes_copied}
        )


class ChunkWriteException(StorageException):
    """Raised when persisting a chunk fails; the client is expected to resend it."""

    def __init__(
        self,
        upload_id: str,
        chunk_index: int,
        reason: str,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=f"Failed to write chunk {chunk_index} of {upload_id}: {reason}",
            operation="write_chunk",
            error_code="CHUNK_WRITE_ERROR",
            details={"upload_id": upload_id, "chunk_index": chunk_index},
            original_error=original_error
        )


class FinalizeException(StorageException):
    """Raised when moving a reassembled artifact into the output directory fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            operation="finalize",
            error_code="FINALIZE_ERROR",
            severity=ErrorSeverity.CRITICAL,
            details=details,
            original_error=original_error
        )


# Integrity exceptions
class IntegrityException(UploaderException):
    """Base class for reassembly-time integrity failures."""

    def __init__(self, message: str, error_code: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code=error_code,
            category=ErrorCategory.INTEGRITY,
            severity=ErrorSeverity.HIGH,
            details=details
        )


class MissingChunkException(IntegrityException):
    """Raised when a chunk file is absent during reassembly."""

    def __init__(self, upload_id: str, chunk_index: int):
        self.chunk_index = chunk_index
        super().__init__(
            message=f"Chunk {chunk_index} of {upload_id} is missing",
            error_code="MISSING_CHUNK",
            details={"upload_id": upload_id, "chunk_index": chunk_index}
        )


class SizeMismatchException(IntegrityException):
    """Raised when the reassembled artifact size differs from the declared total."""

    def __init__(self, upload_id: str, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message=f"Combined file size mismatch for {upload_id}: expected {expected}, got {actual}",
            error_code="SIZE_MISMATCH",
            details={"upload_id": upload_id, "expected": expected, "actual": actual}
        )


# System exceptions
class ConfigurationException(UploaderException):
    """Raised for configuration/initialization failures."""

    def __init__(self, message: str, config_key: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        config_details = details or {}
        if config_key:
            config_details["config_key"] = config_key
        super().__init__(
            message=message,
            error_code="CONFIG_ERROR",
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.CRITICAL,
            details=config_details
        )
