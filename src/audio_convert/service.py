"""Client-facing API - submit, status, cancel and fetch.

:class:`ConversionService` is the only surface a presentation layer needs.
It owns the result store, job manager and worker pool and wires them
together from a :class:`~audio_convert.config.ServiceConfig`.

Example:
    >>> with ConversionService(ServiceConfig(workers=2)) as service:
    ...     job_id = service.submit(data, "mp3", "wav")
    ...     service.wait(job_id)
    ...     result = service.fetch(job_id)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from audio_convert.config import ServiceConfig
from audio_convert.formats import FORMATS, EncodingOptions, FormatDescriptor
from audio_convert.jobs import JobError, JobManager, JobSnapshot, JobState
from audio_convert.store import ResultStore
from audio_convert.workers import TranscodeWorkerPool, WorkerState
from audio_convert.workers.pool import Runner
from audio_convert.workers.transcode import run_transcode

logger = logging.getLogger(__name__)

# Default poll interval for wait()
DEFAULT_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class StatusReport:
    """Status as seen by a client.

    Attributes:
        job_id: Job identifier.
        state: Current state.
        progress: Fraction complete in [0, 1].
        error: Failure detail, only present when FAILED.
    """

    job_id: str
    state: JobState
    progress: float
    error: JobError | None = None

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot) -> StatusReport:
        """Build a report from a job snapshot."""
        return cls(
            job_id=snapshot.job_id,
            state=snapshot.state,
            progress=snapshot.progress,
            error=snapshot.error if snapshot.state is JobState.FAILED else None,
        )

    @property
    def done(self) -> bool:
        """Whether the job reached a terminal state."""
        return self.state.is_terminal


@dataclass(frozen=True)
class FetchResult:
    """Artifact content returned to a client.

    Attributes:
        job_id: Job identifier.
        format: Target format tag.
        mime_type: MIME type of the content.
        data: The converted audio.
    """

    job_id: str
    format: str
    mime_type: str
    data: bytes


class ConversionService:
    """Audio conversion service facade.

    Use as a context manager, or call :meth:`start` and :meth:`stop`.

    Args:
        config: Service configuration.
        runner: Pipeline runner for workers (overridable in tests).
    """

    def __init__(
        self, config: ServiceConfig | None = None, runner: Runner = run_transcode
    ) -> None:
        self.config = config or ServiceConfig()
        self.store = ResultStore(
            directory=self.config.store_dir,
            ttl=self.config.artifact_ttl,
            sweep_interval=self.config.sweep_interval,
        )
        self.manager = JobManager(self.store, self.config)
        self.pool = TranscodeWorkerPool(self.manager, self.store, self.config, runner)
        self.store.add_sweep_hook(self.manager.purge_expired)

    def __enter__(self) -> ConversionService:
        self.start()
        return self

    def __exit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        self.stop()

    def start(self) -> None:
        """Start workers and the background eviction sweep."""
        self.store.start()
        self.pool.start()
        logger.info(
            "Conversion service started (%d workers, queue bound %d)",
            self.config.workers,
            self.config.max_queue_depth,
        )

    def stop(self) -> None:
        """Cancel outstanding work, stop workers and drop artifacts."""
        self.manager.close()
        self.pool.shutdown(wait=True)
        self.store.close()
        logger.info("Conversion service stopped")

    def submit(
        self,
        source: bytes,
        source_format: str,
        target_format: str,
        bitrate: int | None = None,
        sample_rate: int | None = None,
        channels: int | None = None,
    ) -> str:
        """Queue a conversion.

        Args:
            source: Source audio bytes.
            source_format: Declared source format tag.
            target_format: Requested target format tag.
            bitrate: Optional target bitrate in kbps.
            sample_rate: Optional target sample rate in Hz.
            channels: Optional target channel count.

        Returns:
            Opaque job identifier.

        Raises:
            UnsupportedFormatError: Unknown source or target format.
            InvalidInputError: Malformed source header or bad options.
            BackpressureError: Queue full; retry after backoff.
        """
        options = EncodingOptions(bitrate=bitrate, sample_rate=sample_rate, channels=channels)
        return self.manager.submit(source, source_format, target_format, options)

    def status(self, job_id: str) -> StatusReport:
        """Return state, progress and error of a job.

        Raises:
            NotFoundError: Unknown or expired job.
        """
        return StatusReport.from_snapshot(self.manager.status(job_id))

    def cancel(self, job_id: str) -> StatusReport:
        """Request cancellation and acknowledge with the resulting status.

        Raises:
            NotFoundError: Unknown or expired job.
        """
        return StatusReport.from_snapshot(self.manager.cancel(job_id))

    def fetch(self, job_id: str) -> FetchResult:
        """Return the converted audio of a succeeded job.

        Raises:
            NotReadyError: The job has not finished.
            NotFoundError: Unknown job, job did not succeed, or the
                artifact was evicted.
        """
        artifact = self.manager.fetch(job_id)
        data = artifact.read()
        if self.config.evict_on_fetch:
            self.store.evict(job_id)
        return FetchResult(
            job_id=job_id,
            format=artifact.format,
            mime_type=artifact.mime_type,
            data=data,
        )

    def wait(
        self,
        job_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float | None = None,
    ) -> StatusReport:
        """Poll until a job reaches a terminal state.

        Args:
            job_id: Job to wait for.
            poll_interval: Seconds between status polls.
            timeout: Give up after this many seconds (None waits forever).

        Returns:
            The last status seen (terminal unless the timeout expired).

        Raises:
            NotFoundError: Unknown or expired job.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            report = self.status(job_id)
            if report.done:
                return report
            if deadline is not None and time.monotonic() >= deadline:
                return report
            time.sleep(poll_interval)

    def formats(self) -> list[FormatDescriptor]:
        """Return every registered format, sorted by tag."""
        return [FORMATS[tag] for tag in sorted(FORMATS)]

    def active_workers(self) -> list[WorkerState]:
        """Workers currently running a job."""
        return self.pool.get_active_workers()
