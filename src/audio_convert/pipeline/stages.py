"""PCM pipeline stages.

Sample conversion and channel remixing are pure functions of their inputs,
tested with golden input/output pairs. Resampling has to remember filter
history across chunk boundaries, so it is a small stateful object around a
soxr stream. The pipeline runner composes them in a plain sequence:

    samples = remix(samples, target_channels)
    samples = resampler.process(samples)
    ...
    tail = resampler.flush()
"""

from __future__ import annotations

import numpy as np
import soxr

from audio_convert.core import DecodeError, EncodeError

SUPPORTED_BIT_DEPTHS = (8, 16, 24, 32)

# Sample type handed between decoders, stages and encoders
SAMPLE_DTYPE = "float32"

# soxr quality preset ("HQ" is also librosa's default)
RESAMPLE_QUALITY = "HQ"


def _check_depth(bit_depth: int, error: type[DecodeError | EncodeError]) -> None:
    if bit_depth not in SUPPORTED_BIT_DEPTHS:
        raise error(f"unsupported PCM bit depth: {bit_depth}")


def pcm_to_samples(chunk: bytes, bit_depth: int, channels: int) -> np.ndarray:
    """Convert little-endian interleaved PCM into float samples.

    Args:
        chunk: Raw PCM bytes holding whole frames.
        bit_depth: Bits per sample (8 is unsigned, the rest signed).
        channels: Interleaved channel count.

    Returns:
        Array of shape (frames, channels) with values in [-1.0, 1.0).

    Raises:
        DecodeError: If the depth is unsupported or the chunk holds a
            partial frame.
    """
    _check_depth(bit_depth, DecodeError)
    width = bit_depth // 8
    if len(chunk) % (width * channels):
        raise DecodeError(
            f"PCM chunk of {len(chunk)} bytes is not a whole number of "
            f"{channels}x{bit_depth}-bit frames"
        )

    if bit_depth == 8:
        raw = np.frombuffer(chunk, dtype=np.uint8).astype(np.float64)
        samples = (raw - 128.0) / 128.0
    elif bit_depth == 16:
        samples = np.frombuffer(chunk, dtype="<i2") / 32768.0
    elif bit_depth == 24:
        triplets = np.frombuffer(chunk, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        packed = triplets[:, 0] | (triplets[:, 1] << 8) | (triplets[:, 2] << 16)
        # Sign-extend from 24 bits
        samples = ((packed << 8) >> 8) / 8388608.0
    else:
        samples = np.frombuffer(chunk, dtype="<i4") / 2147483648.0

    return samples.reshape(-1, channels)


def samples_to_pcm(samples: np.ndarray, bit_depth: int = 16) -> bytes:
    """Convert float samples into little-endian interleaved PCM.

    Values outside [-1.0, 1.0) are clipped.

    Args:
        samples: Array of shape (frames, channels).
        bit_depth: Output bits per sample.

    Returns:
        Raw PCM bytes.

    Raises:
        EncodeError: If the depth is unsupported.
    """
    _check_depth(bit_depth, EncodeError)
    flat = np.asarray(samples, dtype=np.float64).reshape(-1)

    if bit_depth == 8:
        return (np.clip(np.round(flat * 128.0) + 128.0, 0, 255)).astype(np.uint8).tobytes()

    scale = float(1 << (bit_depth - 1))
    ints = np.clip(np.round(flat * scale), -scale, scale - 1).astype(np.int64)
    if bit_depth == 16:
        return ints.astype("<i2").tobytes()
    if bit_depth == 32:
        return ints.astype("<i4").tobytes()

    as_u32 = ints.astype("<i4").view("<u4")
    triplets = np.stack(
        [as_u32 & 0xFF, (as_u32 >> 8) & 0xFF, (as_u32 >> 16) & 0xFF], axis=1
    )
    return triplets.astype(np.uint8).tobytes()


def remix(samples: np.ndarray, channels: int) -> np.ndarray:
    """Change the channel count of a block of frames.

    Downmixing averages every input channel into output channel
    ``index % channels``; upmixing repeats input channels cyclically.
    Mono to stereo therefore duplicates, and stereo to mono averages.

    Args:
        samples: Array of shape (frames, in_channels).
        channels: Desired channel count.

    Returns:
        Array of shape (frames, channels).
    """
    source_channels = samples.shape[1]
    if channels == source_channels:
        return samples
    if channels > source_channels:
        return samples[:, [i % source_channels for i in range(channels)]]

    out = np.zeros((samples.shape[0], channels), dtype=np.float64)
    counts = np.zeros(channels)
    for index in range(source_channels):
        out[:, index % channels] += samples[:, index]
        counts[index % channels] += 1
    return out / counts


class Resampler:
    """Band-limited sample-rate conversion across chunk boundaries.

    Wraps :class:`soxr.ResampleStream`, which keeps its filter history
    between calls, so feeding a stream chunk by chunk gives the same
    output as resampling it in one piece. When the rates match, blocks
    pass through unchanged.

    Args:
        src_rate: Input sample rate.
        dst_rate: Output sample rate.
        channels: Channel count of every block.
        quality: soxr quality preset.
    """

    def __init__(
        self, src_rate: int, dst_rate: int, channels: int, quality: str = RESAMPLE_QUALITY
    ) -> None:
        self.src_rate = src_rate
        self.dst_rate = dst_rate
        self.channels = channels
        self._stream: soxr.ResampleStream | None = None
        if src_rate != dst_rate:
            self._stream = soxr.ResampleStream(
                src_rate, dst_rate, channels, dtype=SAMPLE_DTYPE, quality=quality
            )

    @property
    def active(self) -> bool:
        """Whether blocks are actually resampled."""
        return self._stream is not None

    def process(self, samples: np.ndarray) -> np.ndarray:
        """Resample one block of shape (frames, channels)."""
        if self._stream is None:
            return samples
        block = np.ascontiguousarray(samples, dtype=SAMPLE_DTYPE)
        return self._stream.resample_chunk(block)

    def flush(self) -> np.ndarray:
        """Return the frames still held in the filter at end of stream."""
        empty = np.zeros((0, self.channels), dtype=SAMPLE_DTYPE)
        if self._stream is None:
            return empty
        return self._stream.resample_chunk(empty, last=True)
