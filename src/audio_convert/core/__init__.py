"""Core utilities - errors, retry policy and filename handling."""

from audio_convert.core.errors import (
    BackpressureError,
    CodecUnavailableError,
    ConversionServiceError,
    DecodeError,
    EncodeError,
    InvalidInputError,
    InvalidTransitionError,
    JobCancelledError,
    NotFoundError,
    NotReadyError,
    TranscodeTimeoutError,
    UnsupportedFormatError,
    format_error,
)
from audio_convert.core.filename import output_name, resolve_conflict, sanitize
from audio_convert.core.retry import (
    RetryConfig,
    is_retryable_error,
)

__all__ = [
    "BackpressureError",
    "CodecUnavailableError",
    "ConversionServiceError",
    "DecodeError",
    "EncodeError",
    "InvalidInputError",
    "InvalidTransitionError",
    "JobCancelledError",
    "NotFoundError",
    "NotReadyError",
    "RetryConfig",
    "TranscodeTimeoutError",
    "UnsupportedFormatError",
    "format_error",
    "is_retryable_error",
    "output_name",
    "resolve_conflict",
    "sanitize",
]
