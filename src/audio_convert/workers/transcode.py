"""Transcode pipeline runner.

Drives one claimed job through decode -> remix -> resample -> encode,
chunk by chunk, with the encoder writing into a result store staging
file. The runner always leaves the job in a terminal state and never
raises.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from audio_convert.config import ServiceConfig
from audio_convert.core import (
    ConversionServiceError,
    JobCancelledError,
    TranscodeTimeoutError,
)
from audio_convert.formats import AudioStreamDescriptor, EncodingOptions, FormatDescriptor
from audio_convert.jobs import JobHandle
from audio_convert.pipeline import (
    Decoder,
    Encoder,
    Resampler,
    open_decoder,
    open_encoder,
    remix,
)
from audio_convert.store import ArtifactWriter, ResultStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutputPlan:
    """Resolved output stream parameters for a job.

    Attributes:
        sample_rate: Output sample rate.
        channels: Output channel count.
        bitrate: Output bitrate in kbps (None for lossless).
    """

    sample_rate: int
    channels: int
    bitrate: int | None


def plan_output(
    pcm: AudioStreamDescriptor, target: FormatDescriptor, options: EncodingOptions
) -> OutputPlan:
    """Decide output parameters from the source stream and requested options.

    Explicit options win. Otherwise the source rate is kept when the
    target supports it (else the nearest supported rate is used) and the
    channel count is capped at the target's maximum.
    """
    return OutputPlan(
        sample_rate=options.sample_rate or target.nearest_sample_rate(pcm.sample_rate),
        channels=options.channels or min(pcm.channels, target.max_channels),
        bitrate=(options.bitrate or target.default_bitrate) if target.lossy else None,
    )


def _check_cancel(handle: JobHandle) -> None:
    if handle.cancelled:
        raise JobCancelledError(handle.job_id)


def _check_budget(stage: str, started: float, budget: float) -> None:
    if time.monotonic() - started > budget:
        raise TranscodeTimeoutError(stage, budget)


def _pump(
    handle: JobHandle,
    decoder: Decoder,
    encoder: Encoder,
    plan: OutputPlan,
    config: ServiceConfig,
) -> None:
    pcm = decoder.output
    remixing = pcm.channels != plan.channels
    resampler = Resampler(pcm.sample_rate, plan.sample_rate, plan.channels)
    total = max(1, len(handle.source))
    chunks = decoder.chunks()

    while True:
        _check_cancel(handle)
        started = time.monotonic()
        samples = next(chunks, None)
        if samples is None:
            break
        if remixing:
            samples = remix(samples, plan.channels)
        encoder.encode(resampler.process(samples))
        _check_budget("chunk", started, config.chunk_timeout)
        handle.report_progress(decoder.bytes_processed / total)
        logger.debug("Job %s: %d/%d source bytes", handle.job_id, decoder.bytes_processed, total)

    tail = resampler.flush()
    if tail.size:
        encoder.encode(tail)


def run_transcode(handle: JobHandle, store: ResultStore, config: ServiceConfig) -> None:
    """Process a claimed job to completion, failure or cancellation.

    Args:
        handle: Handle on the running job.
        store: Store receiving the artifact.
        config: Service configuration (chunk size, time budget, FFmpeg).
    """
    target = handle.target_format
    decoder: Decoder | None = None
    encoder: Encoder | None = None
    writer: ArtifactWriter | None = None

    try:
        _check_cancel(handle)
        decoder = open_decoder(
            handle.source,
            handle.source_format,
            handle.stream,
            config.chunk_frames,
            config.chunk_timeout,
            config.ffmpeg_path,
        )
        plan = plan_output(decoder.output, target, handle.options)
        writer = store.open_writer(handle.job_id, target.tag, target.mime_type)
        encoder = open_encoder(
            target,
            writer,
            plan.sample_rate,
            plan.channels,
            plan.bitrate,
            config.chunk_timeout,
            config.ffmpeg_path,
        )

        _pump(handle, decoder, encoder, plan, config)

        _check_cancel(handle)
        started = time.monotonic()
        encoder.finish()
        _check_budget("finalize", started, config.chunk_timeout)

        _check_cancel(handle)
        artifact = writer.commit()
        writer = None
        handle.succeed(artifact)

    except JobCancelledError:
        handle.cancel()
    except ConversionServiceError as e:
        handle.fail(e.code, e.message)
    except Exception as e:
        logger.exception("Unexpected error in job %s", handle.job_id)
        handle.fail("INTERNAL_ERROR", f"{type(e).__name__}: {e}")
    finally:
        # Encoders may still hold the staging file open
        if encoder is not None:
            encoder.close()
        if writer is not None:
            writer.discard()
        if decoder is not None:
            decoder.close()
