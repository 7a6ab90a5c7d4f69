# src/s3_archiver/exceptions.py

"""
Shared custom exceptions for the S3 Archiver service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Every failure aborts the whole archive operation. The hierarchy mirrors the
pipeline stage that failed, so callers can tell *where* it broke:

Exception Hierarchy:
- ArchiverError (base)
  - RetryableError (can be retried by the caller)
  - NonRetryableError (should not be retried)
  - EnumerationError            listing a page failed
  - EntryReadError              a source entry could not be opened or read
    - S3ObjectNotFoundError     (non-retryable)
    - S3AccessDeniedError       (non-retryable)
    - S3ThrottlingError         (retryable)
    - S3TimeoutError            (retryable)
    - EntryStreamInterruptedError (retryable)
  - ArchiveEncodeError          the container rejected an append or finalize
    - InvalidEntryNameError     (non-retryable)
  - UploadError                 the sink rejected or never committed the upload
  - ArchiveCreationError        unexpected failure inside the pipeline
  - ConfigurationError          (non-retryable)
  - ValidationError             (non-retryable)
    - InvalidArchiveEventError
"""

from typing import Any, Dict, Optional

# AWS error codes that indicate a transient condition on the service side.
TRANSIENT_AWS_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "SlowDown",
        "RequestTimeout",
        "RequestTimeoutException",
        "InternalError",
        "ServiceUnavailable",
    }
)


class ArchiverError(Exception):
    """Base exception for all S3 Archiver errors."""

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
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
        self.correlation_id = correlation_id

    @property
    def retryable(self) -> bool:
        if isinstance(self, NonRetryableError):
            return False
        if isinstance(self, RetryableError):
            return True
        return self.context.get("aws_error_code") in TRANSIENT_AWS_ERROR_CODES

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": self.retryable,
        }


class RetryableError(ArchiverError):
    """Base class for errors that can be retried."""
    pass


class NonRetryableError(ArchiverError):
    """Base class for errors that should not be retried."""
    pass


# === Enumeration Errors ===

class EnumerationError(ArchiverError):
    """Raised when listing the source prefix fails on any page."""

    def __init__(self, bucket: str, prefix: str, page: int, reason: str, **kwargs):
        message = f"Listing s3://{bucket}/{prefix} failed on page {page}: {reason}"
        context = {"bucket": bucket, "prefix": prefix, "page": page}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        kwargs.setdefault("error_code", "ENUMERATION_FAILED")
        super().__init__(message, context=context, **kwargs)


# === Entry Read Errors ===

class EntryReadError(ArchiverError):
    """Base class for failures opening or reading a source entry."""

    def __init__(self, bucket: str, key: str, reason: str, **kwargs):
        message = f"Failed to read s3://{bucket}/{key}: {reason}"
        context = {"bucket": bucket, "key": key}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        kwargs.setdefault("error_code", "ENTRY_READ_FAILED")
        super().__init__(message, context=context, **kwargs)


class S3ObjectNotFoundError(EntryReadError, NonRetryableError):
    """Raised when a requested S3 object does not exist."""

    def __init__(self, bucket: str, key: str, **kwargs):
        super().__init__(
            bucket, key, "object not found", error_code="S3_OBJECT_NOT_FOUND", **kwargs
        )


class S3AccessDeniedError(EntryReadError, NonRetryableError):
    """Raised when access is denied to an S3 object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        super().__init__(
            bucket, key, "access denied", error_code="S3_ACCESS_DENIED", **kwargs
        )


class S3ThrottlingError(EntryReadError, RetryableError):
    """Raised when reading an S3 object is throttled."""

    def __init__(self, bucket: str, key: str, **kwargs):
        super().__init__(
            bucket, key, "request throttled", error_code="S3_THROTTLING", **kwargs
        )


class S3TimeoutError(EntryReadError, RetryableError):
    """Raised when opening an S3 object times out or cannot connect."""

    def __init__(self, bucket: str, key: str, **kwargs):
        super().__init__(
            bucket, key, "request timed out", error_code="S3_TIMEOUT", **kwargs
        )


class EntryStreamInterruptedError(EntryReadError, RetryableError):
    """Raised when an object body stream breaks part-way through."""

    def __init__(self, bucket: str, key: str, bytes_read: int, **kwargs):
        context = {"bytes_read": bytes_read}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            bucket,
            key,
            f"stream interrupted after {bytes_read} bytes",
            error_code="ENTRY_STREAM_INTERRUPTED",
            context=context,
            **kwargs,
        )


# === Encoding Errors ===

class ArchiveEncodeError(ArchiverError):
    """Raised when the archive container rejects an append or finalize."""

    def __init__(self, reason: str, **kwargs):
        message = f"Archive encoding failed: {reason}"
        context = {"reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        kwargs.setdefault("error_code", "ARCHIVE_ENCODE_FAILED")
        super().__init__(message, context=context, **kwargs)


class InvalidEntryNameError(ArchiveEncodeError, NonRetryableError):
    """Raised when the naming policy yields an empty or non-string entry name."""

    def __init__(self, key: str, name: Any, **kwargs):
        super().__init__(
            f"entry name for {key!r} is empty or not a string",
            error_code="INVALID_ENTRY_NAME",
            context={"key": key, "name": repr(name)},
            **kwargs,
        )


# === Upload Errors ===

class UploadError(ArchiverError):
    """Raised when the archive upload is rejected or never committed."""

    def __init__(self, bucket: str, key: str, reason: str, **kwargs):
        message = f"Upload to s3://{bucket}/{key} failed: {reason}"
        context = {"bucket": bucket, "key": key}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        kwargs.setdefault("error_code", "UPLOAD_FAILED")
        super().__init__(message, context=context, **kwargs)


# === Pipeline Errors ===

class ArchiveCreationError(ArchiverError):
    """Raised for unexpected failures while building the archive."""

    def __init__(self, reason: str, **kwargs):
        message = f"Archive creation failed: {reason}"
        context = {"reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="ARCHIVE_CREATION_FAILED", context=context, **kwargs
        )


# === Configuration & Validation Errors ===

class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


class ValidationError(NonRetryableError):
    """Base class for validation errors."""
    pass


class InvalidArchiveEventError(ValidationError):
    """Raised when an incoming archive event is malformed."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "INVALID_ARCHIVE_EVENT"
        super().__init__(message, **kwargs)


# === Utility Functions ===

def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, ArchiverError) and error.retryable


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, ArchiverError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False  # Unknown errors default to non-retryable
        }
