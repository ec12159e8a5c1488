"""Fixed-size worker pool running transcode jobs."""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from audio_convert.config import ServiceConfig
from audio_convert.core import InvalidTransitionError
from audio_convert.jobs import JobHandle, JobManager
from audio_convert.store import ResultStore
from audio_convert.workers.transcode import run_transcode

logger = logging.getLogger(__name__)

# Seconds an idle worker waits for a job before re-checking for shutdown
CLAIM_POLL_INTERVAL = 0.25

Runner = Callable[[JobHandle, ResultStore, ServiceConfig], None]


@dataclass
class WorkerState:
    """Current state of a transcode worker.

    Attributes:
        worker_id: Unique identifier for this worker.
        job_id: Job currently being processed, or None if idle.
    """

    worker_id: int
    job_id: str | None = None

    @property
    def is_idle(self) -> bool:
        """Check if worker is idle (not processing a job)."""
        return self.job_id is None

    @property
    def display_line(self) -> str:
        """Get a single-line status display for this worker."""
        if self.is_idle:
            return f"[{self.worker_id}] Idle"
        return f"[{self.worker_id}] {self.job_id}"


class TranscodeWorkerPool:
    """Thread pool whose workers repeatedly claim and run queued jobs.

    Args:
        manager: Job manager to claim work from.
        store: Result store receiving artifacts.
        config: Service configuration; ``workers`` sets the pool size.
        runner: Function processing one claimed job.
    """

    def __init__(
        self,
        manager: JobManager,
        store: ResultStore,
        config: ServiceConfig,
        runner: Runner = run_transcode,
    ) -> None:
        self.manager = manager
        self.store = store
        self.config = config
        self.runner = runner
        self.worker_states = {
            i: WorkerState(worker_id=i) for i in range(config.workers)
        }
        self._executor: ThreadPoolExecutor | None = None
        self._futures: list[Future[None]] = []
        self._stop = threading.Event()

    def __enter__(self) -> TranscodeWorkerPool:
        """Enter context manager - start the workers."""
        self.start()
        return self

    def __exit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        """Exit context manager - stop the workers."""
        self.shutdown()

    @property
    def running(self) -> bool:
        """Whether the workers have been started and not stopped."""
        return self._executor is not None

    def start(self) -> None:
        """Start one long-lived loop per worker."""
        if self._executor is not None:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="transcode"
        )
        self._futures = [
            self._executor.submit(self._worker_loop, worker_id)
            for worker_id in self.worker_states
        ]
        logger.debug("Started %d transcode workers", self.config.workers)

    def _worker_loop(self, worker_id: int) -> None:
        state = self.worker_states[worker_id]
        while not self._stop.is_set():
            handle = self.manager.claim_next(worker_id, timeout=CLAIM_POLL_INTERVAL)
            if handle is None:
                continue
            state.job_id = handle.job_id
            try:
                self.runner(handle, self.store, self.config)
            except Exception as e:
                logger.exception("Worker %d crashed on job %s", worker_id, handle.job_id)
                with contextlib.suppress(InvalidTransitionError):
                    handle.fail("INTERNAL_ERROR", f"{type(e).__name__}: {e}")
            finally:
                state.job_id = None

    def get_active_workers(self) -> list[WorkerState]:
        """Get list of workers currently processing jobs."""
        return [ws for ws in self.worker_states.values() if not ws.is_idle]

    def shutdown(self, wait: bool = True) -> None:
        """Stop claiming new jobs and wait for running ones to finish."""
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=True)
            self._executor = None
        self._futures = []
