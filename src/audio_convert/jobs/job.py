"""Conversion job entity and its state machine."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from audio_convert.core import InvalidTransitionError
from audio_convert.formats import AudioStreamDescriptor, EncodingOptions

# Progress ceiling while a job is still running
MAX_RUNNING_PROGRESS = 0.99


class JobState(Enum):
    """Lifecycle state of a conversion job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are allowed."""
        return self in _TERMINAL


_TERMINAL = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})

_ALLOWED = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.CANCELLED}),
    JobState.RUNNING: _TERMINAL,
}


@dataclass(frozen=True)
class JobError:
    """Failure recorded on a job.

    Attributes:
        code: Stable error code (see ``audio_convert.core.errors``).
        message: Human-readable cause.
    """

    code: str
    message: str


@dataclass
class ConversionJob:
    """Single conversion request and its runtime state.

    Attributes:
        job_id: Opaque unique identifier.
        sequence: Submission order, used for FIFO claims.
        source: Source bytes.
        source_format: Declared source format tag.
        target_format: Requested target format tag.
        options: Requested encoding options.
        stream: Descriptor probed from the source.
        state: Current lifecycle state.
        progress: Fraction complete in [0, 1].
        created_at: Wall-clock submission time.
        completed_at: Wall-clock time a terminal state was reached.
        error: Failure detail, only set when FAILED.
        worker_id: Worker that owns the job while RUNNING.
    """

    job_id: str
    sequence: int
    source: bytes = field(repr=False)
    source_format: str
    target_format: str
    options: EncodingOptions
    stream: AudioStreamDescriptor

    state: JobState = field(default=JobState.QUEUED)
    progress: float = 0.0
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    error: JobError | None = None
    worker_id: int | None = None
    cancel_requested: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )

    def _transition(self, target: JobState) -> None:
        if target not in _ALLOWED.get(self.state, frozenset()):
            raise InvalidTransitionError(self.job_id, self.state.value, target.value)
        self.state = target
        if target.is_terminal:
            self.completed_at = time.time()
            # Source bytes are not needed once the job is finished
            self.source = b""

    def mark_running(self, worker_id: int) -> None:
        """Mark job as claimed by a worker."""
        self._transition(JobState.RUNNING)
        self.worker_id = worker_id
        self.progress = 0.0

    def mark_succeeded(self) -> None:
        """Mark job as successfully completed."""
        self._transition(JobState.SUCCEEDED)
        self.progress = 1.0
        self.error = None

    def mark_failed(self, code: str, message: str) -> None:
        """Mark job as failed with a human-readable cause."""
        self._transition(JobState.FAILED)
        self.error = JobError(code=code, message=message or code)

    def mark_cancelled(self) -> None:
        """Mark job as cancelled."""
        self._transition(JobState.CANCELLED)

    def update_progress(self, fraction: float) -> None:
        """Record progress, clamped below completion while running."""
        if self.state is JobState.RUNNING:
            self.progress = max(self.progress, min(MAX_RUNNING_PROGRESS, max(0.0, fraction)))

    def snapshot(self) -> JobSnapshot:
        """Return an immutable copy safe to hand to callers."""
        return JobSnapshot(
            job_id=self.job_id,
            source_format=self.source_format,
            target_format=self.target_format,
            options=self.options,
            stream=self.stream,
            state=self.state,
            progress=self.progress,
            created_at=self.created_at,
            completed_at=self.completed_at,
            error=self.error,
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Point-in-time view of a job.

    Immutable so it can cross thread boundaries freely.
    """

    job_id: str
    source_format: str
    target_format: str
    options: EncodingOptions
    stream: AudioStreamDescriptor
    state: JobState
    progress: float
    created_at: float
    completed_at: float | None = None
    error: JobError | None = None
