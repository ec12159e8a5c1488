"""Decoders and encoders used by the transcode pipeline.

WAV is read and written in-process through libsndfile. Every other format
goes through FFmpeg, with raw 16-bit PCM exchanged over pipes. Decoders
yield float sample blocks of shape (frames, channels); encoders take the
same blocks and write their output straight into a seekable sink.
"""

from __future__ import annotations

import logging
import os
import subprocess  # nosec B404
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol

import numpy as np
import soundfile as sf

from audio_convert.core import (
    DecodeError,
    EncodeError,
    InvalidInputError,
    TranscodeTimeoutError,
)
from audio_convert.formats import AudioStreamDescriptor, FormatDescriptor
from audio_convert.formats.probe import open_wav, wav_bit_depth
from audio_convert.pipeline import ffmpeg
from audio_convert.pipeline.stages import SAMPLE_DTYPE, pcm_to_samples, samples_to_pcm

logger = logging.getLogger(__name__)

# PCM depth exchanged with FFmpeg
PIPE_BIT_DEPTH = 16

# libsndfile subtype of WAV output
WAV_OUTPUT_SUBTYPE = "PCM_16"


class Sink(Protocol):
    """Seekable binary output an encoder writes into."""

    def write(self, data: bytes) -> int: ...

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int: ...

    def tell(self) -> int: ...


class Decoder(Protocol):
    """Source of float sample blocks."""

    @property
    def output(self) -> AudioStreamDescriptor:
        """Layout of the stream produced by :meth:`chunks`."""
        ...

    @property
    def bytes_processed(self) -> int:
        """Source bytes consumed so far (may be an estimate)."""
        ...

    def chunks(self) -> Iterator[np.ndarray]:
        """Yield blocks of shape (frames, channels) until the source is exhausted."""
        ...

    def close(self) -> None:
        """Release processes, files and temporary files."""
        ...


class Encoder(Protocol):
    """Sink turning float sample blocks into target-format bytes."""

    def encode(self, samples: np.ndarray) -> None:
        """Consume a block, writing any output produced so far."""
        ...

    def finish(self) -> None:
        """Flush remaining output and finalize headers."""
        ...

    def close(self) -> None:
        """Release processes and files. Safe after :meth:`finish`."""
        ...


class WavDecoder:
    """Read a WAV file block by block through libsndfile."""

    def __init__(self, data: bytes, chunk_frames: int) -> None:
        try:
            self._file = open_wav(data)
        except InvalidInputError as e:
            raise DecodeError(e.message) from e

        bit_depth = wav_bit_depth(self._file.subtype)
        if bit_depth is None:
            subtype = self._file.subtype
            self._file.close()
            raise DecodeError(f"unsupported WAV encoding: {subtype}")

        self._total = len(data)
        self._chunk_frames = chunk_frames
        self._output = AudioStreamDescriptor(
            sample_rate=self._file.samplerate,
            channels=self._file.channels,
            bit_depth=bit_depth,
            duration=self._file.frames / self._file.samplerate,
        )

    @property
    def output(self) -> AudioStreamDescriptor:
        return self._output

    @property
    def bytes_processed(self) -> int:
        if self._file.closed or self._file.frames == 0:
            return self._total
        return self._total * self._file.tell() // self._file.frames

    def chunks(self) -> Iterator[np.ndarray]:
        try:
            yield from self._file.blocks(
                self._chunk_frames, dtype=SAMPLE_DTYPE, always_2d=True
            )
        except sf.SoundFileError as e:
            raise DecodeError(str(e)) from e

    def close(self) -> None:
        self._file.close()


class FFmpegDecoder:
    """Decode any FFmpeg-readable source to 16-bit PCM.

    The source is written to a temporary file because several containers
    (MP4 with a trailing ``moov`` box, for one) cannot be demuxed from a
    pipe. PCM is read back from stdout one chunk at a time, each read
    bounded by ``chunk_timeout``.

    When the probe could not tell the duration, progress falls back to
    the duration FFmpeg reports for its input.
    """

    def __init__(
        self,
        data: bytes,
        source: FormatDescriptor,
        stream: AudioStreamDescriptor,
        chunk_frames: int,
        chunk_timeout: float,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        self._total = len(data)
        self._timeout = chunk_timeout
        self._output = AudioStreamDescriptor(
            sample_rate=stream.sample_rate,
            channels=stream.channels,
            bit_depth=PIPE_BIT_DEPTH,
            duration=stream.duration,
        )
        self._chunk_bytes = chunk_frames * self._output.frame_size
        self._frames = 0

        fd, name = tempfile.mkstemp(prefix="audio-convert-", suffix=f".{source.tag}")
        self._input_path = Path(name)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)

        cmd = ffmpeg.build_decode_command(
            ffmpeg_path, self._input_path, stream.sample_rate, stream.channels
        )
        try:
            self._process = ffmpeg.spawn(cmd, with_stdin=False)
        except Exception:
            self._input_path.unlink(missing_ok=True)
            raise
        assert self._process.stdout is not None  # nosec B101
        assert self._process.stderr is not None  # nosec B101
        self._stdout = ffmpeg.PipeReader(
            self._process.stdout, self._chunk_bytes, stage="decode"
        )
        self._stderr = ffmpeg.StderrTail(self._process.stderr)

    @property
    def output(self) -> AudioStreamDescriptor:
        return self._output

    @property
    def expected_frames(self) -> int:
        """Frames the source should decode to (0 when unknown)."""
        expected = self._output.estimated_frames
        if expected <= 0 and self._stderr.duration:
            expected = round(self._stderr.duration * self._output.sample_rate)
        return expected

    @property
    def bytes_processed(self) -> int:
        expected = self.expected_frames
        if expected <= 0:
            return 0
        return min(self._total, self._total * self._frames // expected)

    def chunks(self) -> Iterator[np.ndarray]:
        channels = self._output.channels
        frame_size = self._output.frame_size
        pending = b""
        while True:
            data = self._stdout.read(self._timeout)
            if not data:
                break
            data = pending + data
            whole = len(data) - len(data) % frame_size
            pending = data[whole:]
            if whole:
                self._frames += whole // frame_size
                yield pcm_to_samples(data[:whole], PIPE_BIT_DEPTH, channels)

        try:
            returncode = self._process.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            raise TranscodeTimeoutError("decode", self._timeout) from None
        if returncode != 0:
            raise DecodeError(self._stderr.text() or f"ffmpeg exited with {returncode}")

    def close(self) -> None:
        self._stdout.stop()
        ffmpeg.terminate(self._process, self._timeout)
        self._input_path.unlink(missing_ok=True)


class WavEncoder:
    """Write 16-bit PCM WAV into a sink through libsndfile.

    libsndfile fills in the RIFF sizes when :meth:`finish` closes the file.
    """

    def __init__(self, sink: Sink, sample_rate: int, channels: int) -> None:
        try:
            self._file = sf.SoundFile(
                sink,
                mode="w",
                samplerate=sample_rate,
                channels=channels,
                format="WAV",
                subtype=WAV_OUTPUT_SUBTYPE,
            )
        except sf.SoundFileError as e:
            raise EncodeError(f"cannot start WAV output: {e}") from e

    def encode(self, samples: np.ndarray) -> None:
        # libsndfile wraps around instead of clipping out-of-range floats
        block = np.clip(samples, -1.0, 1.0).astype(SAMPLE_DTYPE, copy=False)
        try:
            self._file.write(block)
        except sf.SoundFileError as e:
            raise EncodeError(str(e)) from e

    def finish(self) -> None:
        try:
            self._file.close()
        except sf.SoundFileError as e:
            raise EncodeError(str(e)) from e

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


class FFmpegEncoder:
    """Encode to a compressed format through FFmpeg pipes."""

    def __init__(
        self,
        sink: Sink,
        target: FormatDescriptor,
        sample_rate: int,
        channels: int,
        bitrate: int | None,
        chunk_timeout: float,
        ffmpeg_path: str = "ffmpeg",
    ) -> None:
        self._sink = sink
        self._timeout = chunk_timeout
        cmd = ffmpeg.build_encode_command(
            ffmpeg_path, target, sample_rate, channels, bitrate
        )
        self._process = ffmpeg.spawn(cmd, with_stdin=True)
        assert self._process.stdin is not None  # nosec B101
        assert self._process.stdout is not None  # nosec B101
        assert self._process.stderr is not None  # nosec B101
        self._stdin = ffmpeg.PipeWriter(self._process.stdin, stage="encode")
        self._stdout = ffmpeg.PipeReader(
            self._process.stdout, ffmpeg.OUTPUT_READ_SIZE, partial=True, stage="encode"
        )
        self._stderr = ffmpeg.StderrTail(self._process.stderr)

    def _failure(self, error: OSError) -> EncodeError:
        detail = self._stderr.text() or str(error)
        return EncodeError(detail)

    def encode(self, samples: np.ndarray) -> None:
        pcm = samples_to_pcm(samples, PIPE_BIT_DEPTH)
        try:
            self._stdin.write(pcm, self._timeout)
            output = self._stdout.drain()
        except OSError as e:
            raise self._failure(e) from e
        self._sink.write(output)

    def finish(self) -> None:
        try:
            self._stdin.close(self._timeout)
            while True:
                data = self._stdout.read(self._timeout)
                if not data:
                    break
                self._sink.write(data)
        except OSError as e:
            raise self._failure(e) from e

        try:
            returncode = self._process.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            raise TranscodeTimeoutError("encode", self._timeout) from None
        if returncode != 0:
            raise EncodeError(self._stderr.text() or f"ffmpeg exited with {returncode}")

    def close(self) -> None:
        self._stdout.stop()
        ffmpeg.terminate(self._process, self._timeout)


def open_decoder(
    data: bytes,
    source: FormatDescriptor,
    stream: AudioStreamDescriptor,
    chunk_frames: int,
    chunk_timeout: float,
    ffmpeg_path: str = "ffmpeg",
) -> Decoder:
    """Create the decoder for a source format."""
    if source.builtin:
        return WavDecoder(data, chunk_frames)
    return FFmpegDecoder(data, source, stream, chunk_frames, chunk_timeout, ffmpeg_path)


def open_encoder(
    target: FormatDescriptor,
    sink: Sink,
    sample_rate: int,
    channels: int,
    bitrate: int | None,
    chunk_timeout: float,
    ffmpeg_path: str = "ffmpeg",
) -> Encoder:
    """Create the encoder for a target format, writing into ``sink``."""
    if target.builtin:
        return WavEncoder(sink, sample_rate, channels)
    return FFmpegEncoder(
        sink, target, sample_rate, channels, bitrate, chunk_timeout, ffmpeg_path
    )
