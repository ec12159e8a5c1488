"""Service configuration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

# Default retention for finished artifacts (1 hour)
DEFAULT_ARTIFACT_TTL = 3600.0

# Default retention for terminal job records (24 hours)
DEFAULT_JOB_RETENTION = 86400.0


@dataclass
class ServiceConfig:
    """Tunables for the conversion service.

    Attributes:
        workers: Number of concurrent transcodes.
        max_queue_depth: Queued jobs allowed before submissions are rejected.
        chunk_frames: PCM frames processed per pipeline step.
        chunk_timeout: Time budget in seconds for a single chunk step.
        artifact_ttl: Seconds a finished artifact is kept.
        job_retention: Seconds a terminal job record is kept.
        sweep_interval: Seconds between background eviction sweeps.
        evict_on_fetch: Drop an artifact as soon as it has been fetched.
        store_dir: Directory for artifacts; a temporary one when None.
        ffmpeg_path: Executable used for compressed codecs.
    """

    workers: int = 2
    max_queue_depth: int = 32
    chunk_frames: int = 16384
    chunk_timeout: float = 10.0
    artifact_ttl: float = DEFAULT_ARTIFACT_TTL
    job_retention: float = DEFAULT_JOB_RETENTION
    sweep_interval: float = 30.0
    evict_on_fetch: bool = False
    store_dir: Path | None = None
    ffmpeg_path: str = "ffmpeg"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.workers > 16:
            raise ValueError(f"workers must be <= 16, got {self.workers}")
        if self.max_queue_depth < 1:
            raise ValueError(
                f"max_queue_depth must be >= 1, got {self.max_queue_depth}"
            )
        if self.chunk_frames < 256:
            raise ValueError(f"chunk_frames must be >= 256, got {self.chunk_frames}")
        if self.chunk_timeout <= 0:
            raise ValueError(f"chunk_timeout must be > 0, got {self.chunk_timeout}")
        if self.artifact_ttl <= 0:
            raise ValueError(f"artifact_ttl must be > 0, got {self.artifact_ttl}")
        if self.job_retention < self.artifact_ttl:
            raise ValueError(
                f"job_retention ({self.job_retention}) must be >= "
                f"artifact_ttl ({self.artifact_ttl})"
            )
        if self.sweep_interval <= 0:
            raise ValueError(f"sweep_interval must be > 0, got {self.sweep_interval}")
        if self.store_dir is not None:
            self.store_dir = Path(self.store_dir)
