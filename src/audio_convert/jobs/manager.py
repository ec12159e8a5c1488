"""Job manager - admission, job table and FIFO hand-off to workers.

The job table is the only shared mutable state in the service. One lock
guards it; workers never touch a job directly and go through a
:class:`JobHandle`, which only the claiming worker holds. ``cancel`` on a
running job just sets the job's cancellation event, which the owning
worker polls at chunk boundaries.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from collections import Counter, deque

from audio_convert.config import ServiceConfig
from audio_convert.core import (
    BackpressureError,
    InvalidTransitionError,
    NotFoundError,
    NotReadyError,
)
from audio_convert.formats import (
    AudioStreamDescriptor,
    EncodingOptions,
    FormatDescriptor,
    probe,
    resolve,
)
from audio_convert.jobs.job import ConversionJob, JobSnapshot, JobState
from audio_convert.store import Artifact, ResultStore

logger = logging.getLogger(__name__)


class JobHandle:
    """Controlled access to a running job for the worker that claimed it."""

    def __init__(self, manager: JobManager, job: ConversionJob, worker_id: int) -> None:
        self._manager = manager
        self._job = job
        self.worker_id = worker_id
        self.job_id = job.job_id
        self.source = job.source
        self.source_format: FormatDescriptor = resolve(job.source_format)
        self.target_format: FormatDescriptor = resolve(job.target_format)
        self.options: EncodingOptions = job.options
        self.stream: AudioStreamDescriptor = job.stream

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._job.cancel_requested.is_set()

    def report_progress(self, fraction: float) -> None:
        """Record progress; clamped to [0, 0.99] until the job succeeds."""
        with self._manager._lock:
            self._check_owner()
            self._job.update_progress(fraction)

    def succeed(self, artifact: Artifact) -> bool:
        """Publish the artifact and mark the job succeeded.

        If cancellation arrived after the last chunk, the artifact is
        dropped and the job is cancelled instead.

        Returns:
            True if the job succeeded, False if it was cancelled.
        """
        with self._manager._lock:
            self._check_owner()
            if self.cancelled:
                self._job.mark_cancelled()
                published = False
            else:
                self._manager.store.put(self.job_id, artifact)
                self._job.mark_succeeded()
                published = True
        if not published:
            artifact.path.unlink(missing_ok=True)
            logger.info("Job %s cancelled before publishing", self.job_id)
        else:
            logger.info("Job %s succeeded (%d bytes)", self.job_id, artifact.size)
        return published

    def fail(self, code: str, message: str) -> None:
        """Mark the job failed with a human-readable cause."""
        with self._manager._lock:
            self._check_owner()
            self._job.mark_failed(code, message)
        logger.warning("Job %s failed: [%s] %s", self.job_id, code, message)

    def cancel(self) -> None:
        """Acknowledge a cancellation observed by the worker."""
        with self._manager._lock:
            self._check_owner()
            self._job.mark_cancelled()
        logger.info("Job %s cancelled while running", self.job_id)

    def _check_owner(self) -> None:
        job = self._job
        if job.state is not JobState.RUNNING or job.worker_id != self.worker_id:
            raise InvalidTransitionError(
                job.job_id, job.state.value, f"update by worker {self.worker_id}"
            )


class JobManager:
    """Accepts conversion requests and tracks them until they expire.

    Args:
        store: Result store that receives finished artifacts.
        config: Service configuration (queue bound, retention).
    """

    def __init__(self, store: ResultStore, config: ServiceConfig | None = None) -> None:
        self.store = store
        self.config = config or ServiceConfig()
        self._jobs: dict[str, ConversionJob] = {}
        self._queue: deque[str] = deque()
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._available = threading.Condition(self._lock)
        self._closed = False

    @property
    def queue_depth(self) -> int:
        """Number of jobs waiting for a worker."""
        with self._lock:
            return len(self._queue)

    def submit(
        self,
        source: bytes,
        source_format: str,
        target_format: str,
        options: EncodingOptions | None = None,
    ) -> str:
        """Validate a request and queue it.

        Args:
            source: Source audio bytes.
            source_format: Declared source format tag.
            target_format: Requested target format tag.
            options: Optional encoding parameters.

        Returns:
            The new job's identifier.

        Raises:
            UnsupportedFormatError: If either format is unknown.
            InvalidInputError: If the options or the source header are invalid.
            BackpressureError: If the queue is full.
        """
        source_descriptor = resolve(source_format)
        target_descriptor = resolve(target_format)
        options = options or EncodingOptions()
        target_descriptor.validate_options(options)
        data = bytes(source)
        stream = probe(data, source_descriptor.tag)

        with self._available:
            if self._closed:
                raise RuntimeError("JobManager is closed")
            if len(self._queue) >= self.config.max_queue_depth:
                raise BackpressureError(self.config.max_queue_depth)
            job = ConversionJob(
                job_id=uuid.uuid4().hex,
                sequence=next(self._sequence),
                source=data,
                source_format=source_descriptor.tag,
                target_format=target_descriptor.tag,
                options=options,
                stream=stream,
            )
            self._jobs[job.job_id] = job
            self._queue.append(job.job_id)
            self._available.notify()

        logger.info(
            "Queued job %s: %s -> %s (%d bytes, %.1fs)",
            job.job_id,
            job.source_format,
            job.target_format,
            len(data),
            stream.duration,
        )
        return job.job_id

    def _get(self, job_id: str) -> ConversionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def status(self, job_id: str) -> JobSnapshot:
        """Return a snapshot of a job.

        Raises:
            NotFoundError: If the job is unknown or its record expired.
        """
        with self._lock:
            return self._get(job_id).snapshot()

    def cancel(self, job_id: str) -> JobSnapshot:
        """Request cancellation of a job.

        Queued jobs are cancelled at once. Running jobs are flagged and
        stop at the worker's next chunk boundary. Finished jobs are left
        as they are.

        Returns:
            Snapshot taken after the request was applied.

        Raises:
            NotFoundError: If the job is unknown.
        """
        with self._lock:
            job = self._get(job_id)
            job.cancel_requested.set()
            if job.state is JobState.QUEUED:
                self._queue.remove(job_id)
                job.mark_cancelled()
                logger.info("Job %s cancelled while queued", job_id)
            elif job.state is JobState.RUNNING:
                logger.info("Cancellation requested for running job %s", job_id)
            return job.snapshot()

    def fetch(self, job_id: str) -> Artifact:
        """Return the artifact of a succeeded job.

        Raises:
            NotReadyError: If the job is still queued or running.
            NotFoundError: If the job is unknown, did not succeed, or its
                artifact has been evicted.
        """
        with self._lock:
            job = self._get(job_id)
            state = job.state
            error = job.error
        if state in (JobState.QUEUED, JobState.RUNNING):
            raise NotReadyError(job_id, state.value)
        if state is JobState.FAILED:
            cause = error.message if error else "unknown error"
            raise NotFoundError(job_id, f"job failed: {cause}")
        if state is JobState.CANCELLED:
            raise NotFoundError(job_id, "job was cancelled")
        return self.store.get(job_id)

    def claim_next(self, worker_id: int, timeout: float) -> JobHandle | None:
        """Hand the oldest queued job to a worker.

        Args:
            worker_id: Worker claiming the job.
            timeout: Seconds to wait for a job to arrive.

        Returns:
            A handle on the now-running job, or None on timeout or close.
        """
        with self._available:
            if not self._available.wait_for(
                lambda: self._queue or self._closed, timeout=timeout
            ):
                return None
            if self._closed:
                return None
            job = self._jobs[self._queue.popleft()]
            job.mark_running(worker_id)
        logger.info("Worker %d started job %s", worker_id, job.job_id)
        return JobHandle(self, job, worker_id)

    def counts(self) -> dict[JobState, int]:
        """Number of known jobs per state."""
        with self._lock:
            counter = Counter(job.state for job in self._jobs.values())
        return {state: counter.get(state, 0) for state in JobState}

    def purge_expired(self, now: float | None = None) -> list[str]:
        """Forget terminal jobs older than the configured retention.

        Returns:
            IDs of the purged jobs.
        """
        now = time.time() if now is None else now
        retention = self.config.job_retention
        with self._lock:
            expired = [
                job.job_id
                for job in self._jobs.values()
                if job.completed_at is not None and now - job.completed_at >= retention
            ]
            for job_id in expired:
                del self._jobs[job_id]
        for job_id in expired:
            self.store.evict(job_id)
        if expired:
            logger.info("Purged %d expired job record(s)", len(expired))
        return expired

    def close(self) -> None:
        """Stop handing out work, cancelling queued and running jobs."""
        with self._available:
            self._closed = True
            for job_id in self._queue:
                self._jobs[job_id].mark_cancelled()
            self._queue.clear()
            for job in self._jobs.values():
                if job.state is JobState.RUNNING:
                    job.cancel_requested.set()
            self._available.notify_all()
