"""Custom exceptions and error formatting for audio-convert."""

from __future__ import annotations


class ConversionServiceError(Exception):
    """Base class for every error raised by the conversion service.

    Attributes:
        code: Stable machine-readable error code.
        message: Human-readable description.
    """

    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        """Initialize ConversionServiceError.

        Args:
            message: Description of the error.
        """
        self.message = message
        super().__init__(message)


class UnsupportedFormatError(ConversionServiceError):
    """Raised when a format tag is not in the registry."""

    code = "UNSUPPORTED_FORMAT"

    def __init__(self, tag: str) -> None:
        """Initialize UnsupportedFormatError.

        Args:
            tag: The format tag that could not be resolved.
        """
        self.tag = tag
        super().__init__(f"Unsupported format: {tag!r}")


class InvalidInputError(ConversionServiceError):
    """Raised when source bytes or encoding options are malformed."""

    code = "INVALID_INPUT"


class BackpressureError(ConversionServiceError):
    """Raised when the job queue is full."""

    code = "BACKPRESSURE"

    def __init__(self, depth: int) -> None:
        """Initialize BackpressureError.

        Args:
            depth: The queue depth bound that was reached.
        """
        self.depth = depth
        super().__init__(f"Queue is full ({depth} jobs waiting), retry later")


class NotFoundError(ConversionServiceError):
    """Raised when a job or artifact is unknown or has expired."""

    code = "NOT_FOUND"

    def __init__(self, job_id: str, message: str = "") -> None:
        """Initialize NotFoundError.

        Args:
            job_id: The job identifier that was looked up.
            message: Optional detail appended to the default message.
        """
        self.job_id = job_id
        detail = f"No such job or artifact: {job_id}"
        super().__init__(f"{detail} ({message})" if message else detail)


class NotReadyError(ConversionServiceError):
    """Raised when fetching an artifact before the job has succeeded."""

    code = "NOT_READY"

    def __init__(self, job_id: str, state: str) -> None:
        """Initialize NotReadyError.

        Args:
            job_id: The job identifier.
            state: Current state of the job.
        """
        self.job_id = job_id
        self.state = state
        super().__init__(f"Job {job_id} is not finished yet (state: {state})")


class TranscodeTimeoutError(ConversionServiceError):
    """Raised when a pipeline chunk exceeds its time budget."""

    code = "TIMEOUT"

    def __init__(self, stage: str, budget: float) -> None:
        """Initialize TranscodeTimeoutError.

        Args:
            stage: Pipeline stage that overran.
            budget: The time budget in seconds.
        """
        self.stage = stage
        self.budget = budget
        super().__init__(f"{stage} exceeded its {budget:g}s time budget")


class DecodeError(ConversionServiceError):
    """Raised when source audio cannot be decoded."""

    code = "DECODE_ERROR"


class EncodeError(ConversionServiceError):
    """Raised when target audio cannot be encoded."""

    code = "ENCODE_ERROR"


class CodecUnavailableError(ConversionServiceError):
    """Raised when the external codec binary is not installed."""

    code = "CODEC_UNAVAILABLE"

    def __init__(self, binary: str = "ffmpeg") -> None:
        """Initialize CodecUnavailableError.

        Args:
            binary: Name of the missing executable.
        """
        self.binary = binary
        super().__init__(
            f"{binary} not found. Install FFmpeg: https://ffmpeg.org/download.html"
        )


class JobCancelledError(ConversionServiceError):
    """Raised inside the pipeline when the job's cancel flag is observed."""

    code = "CANCELLED"

    def __init__(self, job_id: str) -> None:
        """Initialize JobCancelledError.

        Args:
            job_id: The cancelled job.
        """
        self.job_id = job_id
        super().__init__(f"Job {job_id} was cancelled")


class InvalidTransitionError(ConversionServiceError):
    """Raised when a job state change would leave a terminal state."""

    code = "INVALID_TRANSITION"

    def __init__(self, job_id: str, current: str, target: str) -> None:
        """Initialize InvalidTransitionError.

        Args:
            job_id: The job identifier.
            current: Current state name.
            target: Requested state name.
        """
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


def format_error(error: Exception) -> str:
    """Format error for user display with actionable suggestion.

    Args:
        error: The exception to format.

    Returns:
        Human-readable error message with suggestion.
    """
    if isinstance(error, UnsupportedFormatError):
        return f"{error.message}. Run 'audio-convert formats' to list supported formats."

    if isinstance(error, InvalidInputError):
        return f"Invalid input: {error.message}. Check that the file matches its format."

    if isinstance(error, BackpressureError):
        return f"Service busy: {error.message}."

    if isinstance(error, TranscodeTimeoutError):
        return f"Conversion timed out: {error.message}. Try a larger --chunk-timeout."

    if isinstance(error, DecodeError | EncodeError):
        return f"Conversion failed: {error.message}. The file may be corrupt."

    if isinstance(error, CodecUnavailableError):
        return str(error)

    if isinstance(error, ConversionServiceError):
        return error.message

    if isinstance(error, FileNotFoundError):
        return f"File not found: {error}. Check that the path exists."

    if isinstance(error, PermissionError):
        return f"Permission denied: {error}. Check file permissions."

    if isinstance(error, OSError):
        if "No space left" in str(error):
            return "Insufficient disk space. Free up space and retry."
        return f"System error: {error}"

    return f"Unexpected error: {error}"
