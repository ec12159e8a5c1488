"""Pipeline feature - PCM stages, codecs and the FFmpeg process layer."""

from audio_convert.pipeline.codecs import (
    Decoder,
    Encoder,
    FFmpegDecoder,
    FFmpegEncoder,
    Sink,
    WavDecoder,
    WavEncoder,
    open_decoder,
    open_encoder,
)
from audio_convert.pipeline.ffmpeg import check_ffmpeg
from audio_convert.pipeline.stages import (
    Resampler,
    pcm_to_samples,
    remix,
    samples_to_pcm,
)

__all__ = [
    "Decoder",
    "Encoder",
    "FFmpegDecoder",
    "FFmpegEncoder",
    "Resampler",
    "Sink",
    "WavDecoder",
    "WavEncoder",
    "check_ffmpeg",
    "open_decoder",
    "open_encoder",
    "pcm_to_samples",
    "remix",
    "samples_to_pcm",
]
