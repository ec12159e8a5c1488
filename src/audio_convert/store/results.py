"""Result store - holds finished artifacts until fetched or expired."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from audio_convert.core import NotFoundError

logger = logging.getLogger(__name__)

# Read size when streaming an artifact back
READ_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class Artifact:
    """A finished conversion result.

    Attributes:
        job_id: Job that produced the artifact.
        format: Target format tag.
        mime_type: MIME type of the content.
        path: File holding the bytes.
        size: Size in bytes.
        stored_at: Wall-clock time the artifact was committed.
    """

    job_id: str
    format: str
    mime_type: str
    path: Path
    size: int
    stored_at: float

    def iter_chunks(self, chunk_size: int = READ_CHUNK_SIZE) -> Iterator[bytes]:
        """Stream the artifact content.

        Raises:
            NotFoundError: If the artifact has been evicted.
        """
        try:
            with self.path.open("rb") as handle:
                while chunk := handle.read(chunk_size):
                    yield chunk
        except FileNotFoundError as e:
            raise NotFoundError(self.job_id, "artifact evicted") from e

    def read(self) -> bytes:
        """Return the complete artifact content.

        Raises:
            NotFoundError: If the artifact has been evicted.
        """
        return b"".join(self.iter_chunks())


@dataclass
class ArtifactWriter:
    """Staging file an artifact is written into incrementally.

    Content stays in a hidden ``.part`` file until :meth:`commit` renames
    it into place, so a half-written artifact is never visible. The writer
    is a seekable binary sink, so encoders that finalize headers after the
    last sample (libsndfile's WAV writer) can rewrite them in place.
    """

    job_id: str
    format: str
    mime_type: str
    directory: Path
    _handle: IO[bytes] | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._handle = self.part_path.open("w+b")

    @property
    def part_path(self) -> Path:
        """Path of the staging file."""
        return self.directory / f".{self.job_id}.{self.format}.part"

    @property
    def final_path(self) -> Path:
        """Path the artifact is committed to."""
        return self.directory / f"{self.job_id}.{self.format}"

    @property
    def size(self) -> int:
        """Bytes written so far."""
        handle = self._require_open()
        handle.flush()
        return os.fstat(handle.fileno()).st_size

    def _require_open(self) -> IO[bytes]:
        if self._handle is None:
            raise ValueError(f"writer for job {self.job_id} is closed")
        return self._handle

    def write(self, data: bytes) -> int:
        """Write bytes at the current position (the end, unless sought)."""
        return self._require_open().write(data)

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        """Move the write position."""
        return self._require_open().seek(offset, whence)

    def tell(self) -> int:
        """Return the write position."""
        return self._require_open().tell()

    def read(self, size: int = -1) -> bytes:
        """Read back staged bytes from the current position."""
        return self._require_open().read(size)

    def commit(self) -> Artifact:
        """Close the staging file and move it into place."""
        size = self.size
        handle = self._require_open()
        handle.close()
        self._handle = None
        self.part_path.replace(self.final_path)
        return Artifact(
            job_id=self.job_id,
            format=self.format,
            mime_type=self.mime_type,
            path=self.final_path,
            size=size,
            stored_at=time.time(),
        )

    def discard(self) -> None:
        """Drop everything written so far. Safe to call more than once."""
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        with contextlib.suppress(OSError):
            self.part_path.unlink(missing_ok=True)


class ResultStore:
    """Artifacts keyed by job id, evicted after a TTL.

    Args:
        directory: Where artifact files live. A private temporary
            directory is created (and removed on close) when None.
        ttl: Seconds an artifact is retained after commit.
        sweep_interval: Seconds between background sweeps.
    """

    def __init__(
        self,
        directory: Path | None = None,
        ttl: float = 3600.0,
        sweep_interval: float = 30.0,
    ) -> None:
        self._owns_directory = directory is None
        if directory is None:
            directory = Path(tempfile.mkdtemp(prefix="audio-convert-"))
        directory.mkdir(parents=True, exist_ok=True)
        self.directory = directory
        self.ttl = ttl
        self.sweep_interval = sweep_interval

        self._artifacts: dict[str, Artifact] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        self._hooks: list[Callable[[float], None]] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._artifacts

    def open_writer(self, job_id: str, format: str, mime_type: str) -> ArtifactWriter:
        """Start a staging file for a job's output."""
        return ArtifactWriter(
            job_id=job_id, format=format, mime_type=mime_type, directory=self.directory
        )

    def put(self, job_id: str, artifact: Artifact) -> None:
        """Register a committed artifact, replacing any previous one."""
        with self._lock:
            previous = self._artifacts.get(job_id)
            self._artifacts[job_id] = artifact
        if previous is not None and previous.path != artifact.path:
            self._delete(previous)
        logger.debug("Stored artifact for %s (%d bytes)", job_id, artifact.size)

    def get(self, job_id: str) -> Artifact:
        """Return the artifact for a job.

        Raises:
            NotFoundError: If there is none (never stored or evicted).
        """
        with self._lock:
            artifact = self._artifacts.get(job_id)
        if artifact is None:
            raise NotFoundError(job_id, "no artifact")
        return artifact

    def evict(self, job_id: str) -> bool:
        """Remove a job's artifact and its file.

        Returns:
            True if an artifact was removed.
        """
        with self._lock:
            artifact = self._artifacts.pop(job_id, None)
        if artifact is None:
            return False
        self._delete(artifact)
        logger.info("Evicted artifact for job %s", job_id)
        return True

    def sweep(self, now: float | None = None) -> list[str]:
        """Evict every artifact older than the TTL.

        Args:
            now: Current wall-clock time; defaults to ``time.time()``.

        Returns:
            IDs of the jobs whose artifacts were evicted.
        """
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                job_id
                for job_id, artifact in self._artifacts.items()
                if now - artifact.stored_at >= self.ttl
            ]
        return [job_id for job_id in expired if self.evict(job_id)]

    def add_sweep_hook(self, hook: Callable[[float], None]) -> None:
        """Run ``hook(now)`` after every background sweep."""
        self._hooks.append(hook)

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            now = time.time()
            try:
                self.sweep(now)
                for hook in self._hooks:
                    hook(now)
            except Exception:
                logger.exception("Result store sweep failed")

    def start(self) -> None:
        """Start the background sweeper thread."""
        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="result-store-sweeper", daemon=True
        )
        self._sweeper.start()

    def close(self) -> None:
        """Stop the sweeper and drop every artifact."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join()
            self._sweeper = None
        with self._lock:
            artifacts = list(self._artifacts.values())
            self._artifacts.clear()
        for artifact in artifacts:
            self._delete(artifact)
        if self._owns_directory:
            shutil.rmtree(self.directory, ignore_errors=True)

    @staticmethod
    def _delete(artifact: Artifact) -> None:
        with contextlib.suppress(OSError):
            artifact.path.unlink(missing_ok=True)
