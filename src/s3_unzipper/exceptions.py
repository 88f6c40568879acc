# src/s3_unzipper/exceptions.py

"""
Shared custom exceptions for the S3 Unzipper service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- S3UnzipperError (base)
  - RetryableError (transient, may be retried)
    - S3ThrottlingError
    - S3TimeoutError
    - OperationTimeoutError
  - NonRetryableError (never retried)
    - S3AccessDeniedError
    - ValidationError
      - ArchiveTooLargeError
      - UnsafePathError
    - CorruptInputError
      - CorruptArchiveError
      - UnsupportedEntryError
      - CsvTransformError
    - ResourceLimitExceededError (aborts the whole archive)
      - EntryCountExceededError
      - CompressionRatioExceededError
      - TotalSizeExceededError
      - MemoryLimitExceededError
    - ConfigurationError
  - S3ObjectNotFoundError
  - RetryExhaustedError
  - EntryProcessingError
  - ArchiveBatchError
"""

from typing import Any, Dict, Optional


class S3UnzipperError(Exception):
    """Base exception for all S3 Unzipper service errors."""

    severity = "medium"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "severity": self.severity,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(S3UnzipperError):
    """Base class for errors that can be retried."""

    pass


class NonRetryableError(S3UnzipperError):
    """Base class for errors that should not be retried."""

    pass


# === S3-Related Errors ===


class S3Error(S3UnzipperError):
    """Base class for S3-related errors."""

    pass


class S3ObjectNotFoundError(S3Error):
    """
    Raised when a requested S3 object does not exist.

    Deliberately not marked non-retryable: right after an upload notification
    the storage retry policy may treat it as eventual consistency.
    """

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"S3 object not found: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_OBJECT_NOT_FOUND", context=context, **kwargs)


class S3AccessDeniedError(S3Error, NonRetryableError):
    """Raised when access is denied to an S3 object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to S3 object: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="S3_ACCESS_DENIED", context=context, **kwargs)


class S3ThrottlingError(S3Error, RetryableError):
    """Raised when S3 operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        message = f"S3 operation throttled: {operation}"
        context = dict(kwargs.pop("context", None) or {})
        context["operation"] = operation
        kwargs.setdefault("error_code", "S3_THROTTLING")
        super().__init__(message, context=context, **kwargs)


class S3TimeoutError(S3Error, RetryableError):
    """Raised when S3 operations time out or the endpoint is unreachable."""

    def __init__(self, operation: str, timeout_seconds: Optional[float] = None, **kwargs):
        if timeout_seconds is None:
            message = f"S3 operation timed out: {operation}"
        else:
            message = f"S3 operation timed out after {timeout_seconds}s: {operation}"
        context = dict(kwargs.pop("context", None) or {})
        context.update({"operation": operation, "timeout_seconds": timeout_seconds})
        kwargs.setdefault("error_code", "S3_TIMEOUT")
        super().__init__(message, context=context, **kwargs)


class OperationTimeoutError(RetryableError):
    """Raised when a single attempt exceeds the retry policy's per-attempt timeout."""

    def __init__(self, operation: str, timeout_seconds: float, **kwargs):
        message = f"Operation '{operation}' timed out after {timeout_seconds}s"
        context = {"operation": operation, "timeout_seconds": timeout_seconds}
        super().__init__(message, error_code="OPERATION_TIMEOUT", context=context, **kwargs)


# === Validation Errors ===


class ValidationError(NonRetryableError):
    """Base class for validation errors."""

    pass


class ArchiveTooLargeError(ValidationError):
    """Raised when an archive exceeds the configured size ceiling before download."""

    def __init__(self, size_bytes: int, limit_bytes: int, **kwargs):
        message = f"Archive size {size_bytes} bytes exceeds limit of {limit_bytes} bytes"
        context = {"size_bytes": size_bytes, "limit_bytes": limit_bytes}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="ARCHIVE_TOO_LARGE", context=context, **kwargs)


class UnsafePathError(ValidationError):
    """Raised when an object key or archive entry path is unsafe to publish."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "UNSAFE_PATH")
        super().__init__(message, **kwargs)


# === Corrupt Input Errors ===


class CorruptInputError(NonRetryableError):
    """Base class for inputs that cannot be decoded."""

    pass


class CorruptArchiveError(CorruptInputError):
    """Raised when the zip structure or an entry's data is invalid."""

    def __init__(self, reason: str, **kwargs):
        message = f"Corrupt archive: {reason}"
        context = {"reason": reason}
        context.update(kwargs.pop("context", None) or {})
        kwargs.setdefault("error_code", "CORRUPT_ARCHIVE")
        super().__init__(message, context=context, **kwargs)


class UnsupportedEntryError(CorruptInputError):
    """Raised for entries that are encrypted or use an unsupported compression method."""

    def __init__(self, entry_name: str, reason: str, **kwargs):
        message = f"Unsupported archive entry {entry_name}: {reason}"
        context = {"entry_name": entry_name, "reason": reason}
        super().__init__(message, error_code="UNSUPPORTED_ENTRY", context=context, **kwargs)


class CsvTransformError(CorruptInputError):
    """Raised when a CSV entry cannot be parsed and malformed input is not skipped."""

    def __init__(self, filename: str, reason: str, **kwargs):
        message = f"CSV transform failed for {filename}: {reason}"
        context = {"filename": filename, "reason": reason}
        super().__init__(message, error_code="CSV_TRANSFORM_FAILED", context=context, **kwargs)


# === Resource Limit Errors ===


class ResourceLimitExceededError(NonRetryableError):
    """Base class for hard limits. Aborts the entire archive, never retried."""

    severity = "high"


class EntryCountExceededError(ResourceLimitExceededError):
    """Raised when an archive holds more entries than allowed."""

    def __init__(self, entry_count: int, limit: int, **kwargs):
        message = f"Archive entry count limit of {limit} reached after {entry_count} entries"
        context = {"entry_count": entry_count, "limit": limit}
        super().__init__(message, error_code="ENTRY_COUNT_EXCEEDED", context=context, **kwargs)


class CompressionRatioExceededError(ResourceLimitExceededError):
    """Raised when an entry looks like a decompression bomb."""

    def __init__(self, entry_name: str, ratio: float, limit: float, **kwargs):
        message = (
            f"Suspected decompression bomb: entry {entry_name} has compression "
            f"ratio {ratio:.1f}:1 (limit {limit}:1)"
        )
        context = {"entry_name": entry_name, "ratio": ratio, "limit": limit}
        super().__init__(
            message, error_code="COMPRESSION_RATIO_EXCEEDED", context=context, **kwargs
        )


class TotalSizeExceededError(ResourceLimitExceededError):
    """Raised when admitting an entry would push the uncompressed total over the limit."""

    def __init__(self, entry_name: str, projected_bytes: int, limit_bytes: int, **kwargs):
        message = (
            f"Total uncompressed size would reach {projected_bytes} bytes with entry "
            f"{entry_name} (limit {limit_bytes} bytes)"
        )
        context = {
            "entry_name": entry_name,
            "projected_bytes": projected_bytes,
            "limit_bytes": limit_bytes,
        }
        super().__init__(message, error_code="TOTAL_SIZE_EXCEEDED", context=context, **kwargs)


class MemoryLimitExceededError(ResourceLimitExceededError):
    """Raised when the memory circuit breaker refuses further work."""

    def __init__(self, operation: str, **kwargs):
        message = f"Memory circuit breaker open during: {operation}"
        context = {"operation": operation}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(message, error_code="MEMORY_LIMIT_EXCEEDED", context=context, **kwargs)


# === Processing Errors ===


class RetryExhaustedError(S3UnzipperError):
    """Raised when an operation fails permanently inside the retry executor."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException, **kwargs):
        message = f"Operation '{operation}' failed after {attempts} attempts: {last_error}"
        context = {
            "operation": operation,
            "attempts": attempts,
            "last_error_type": type(last_error).__name__,
        }
        super().__init__(message, error_code="RETRY_EXHAUSTED", context=context, **kwargs)
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class EntryProcessingError(S3UnzipperError):
    """Raised when one archive entry fails; the rest of the archive continues."""

    def __init__(self, entry_name: str, reason: str, **kwargs):
        message = f"Failed to process entry {entry_name}: {reason}"
        context = {"entry_name": entry_name}
        super().__init__(message, error_code="ENTRY_FAILED", context=context, **kwargs)


class ArchiveBatchError(S3UnzipperError):
    """Raised when no archive in an invocation could be processed."""

    def __init__(self, error_summary: str, **kwargs):
        message = f"Processing failed with errors: {error_summary}"
        super().__init__(message, error_code="BATCH_FAILED", **kwargs)


# === Configuration Errors ===


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is classified as transient."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """
    Extract error context for logging.

    The keys are safe to pass as ``extra``: none collides with a LogRecord
    attribute such as ``message``.
    """
    if isinstance(error, S3UnzipperError):
        return {
            "error_type": error.__class__.__name__,
            "error_code": error.error_code,
            "error": error.message,
            "error_context": error.context,
            "severity": error.severity,
            "retryable": is_retryable_error(error),
        }
    return {
        "error_type": error.__class__.__name__,
        "error": str(error),
        "retryable": False,
    }
