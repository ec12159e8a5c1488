"""Workers feature - transcode pipeline runner and worker pool."""

from audio_convert.workers.pool import TranscodeWorkerPool, WorkerState
from audio_convert.workers.transcode import OutputPlan, plan_output, run_transcode

__all__ = [
    "OutputPlan",
    "TranscodeWorkerPool",
    "WorkerState",
    "plan_output",
    "run_transcode",
]
