"""Jobs feature - conversion job entity and the job manager."""

from audio_convert.jobs.job import (
    ConversionJob,
    JobError,
    JobSnapshot,
    JobState,
)
from audio_convert.jobs.manager import JobHandle, JobManager

__all__ = [
    "ConversionJob",
    "JobError",
    "JobHandle",
    "JobManager",
    "JobSnapshot",
    "JobState",
]
