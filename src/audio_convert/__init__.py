"""Job-based audio conversion service with a command-line client."""

from audio_convert.config import ServiceConfig
from audio_convert.core import (
    BackpressureError,
    ConversionServiceError,
    DecodeError,
    EncodeError,
    InvalidInputError,
    NotFoundError,
    NotReadyError,
    TranscodeTimeoutError,
    UnsupportedFormatError,
)
from audio_convert.service import ConversionService, FetchResult, StatusReport

__version__ = "0.1.0"
__metadata__ = {
    "name": "audio-convert",
    "version": __version__,
    "license": "MIT",
    "python": ">=3.12",
}
__all__ = [
    "BackpressureError",
    "ConversionService",
    "ConversionServiceError",
    "DecodeError",
    "EncodeError",
    "FetchResult",
    "InvalidInputError",
    "NotFoundError",
    "NotReadyError",
    "ServiceConfig",
    "StatusReport",
    "TranscodeTimeoutError",
    "UnsupportedFormatError",
    "__metadata__",
    "__version__",
]
