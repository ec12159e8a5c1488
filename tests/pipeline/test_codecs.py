"""Unit tests for decoders and encoders."""

from __future__ import annotations

import io
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import soundfile as sf

from audio_convert.core import DecodeError, EncodeError
from audio_convert.formats import AudioStreamDescriptor, resolve
from audio_convert.pipeline import (
    FFmpegDecoder,
    FFmpegEncoder,
    WavDecoder,
    WavEncoder,
    open_decoder,
    open_encoder,
)


class CapturingSink(io.BytesIO):
    """Byte sink that remembers its content when closed."""

    captured = b""

    def close(self) -> None:
        self.captured = self.getvalue()
        super().close()


def fake_process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> MagicMock:
    """Build a Popen stand-in with real byte streams."""
    process = MagicMock()
    process.stdin = CapturingSink()
    process.stdout = io.BufferedReader(io.BytesIO(stdout))
    process.stderr = io.BytesIO(stderr)
    process.wait.return_value = returncode
    process.poll.return_value = returncode
    return process


def int16_samples(values: np.ndarray, channels: int) -> np.ndarray:
    """Scale 16-bit integers to the float blocks decoders yield."""
    return (values.astype(np.float64) / 32768.0).reshape(-1, channels)


class TestWavDecoder:
    """Tests for WavDecoder."""

    def test_blocks_follow_chunk_frames(self, make_wav: Callable[..., bytes]) -> None:
        """Test the stream is read in chunk_frames blocks."""
        data = make_wav(frames=2500, channels=2)
        decoder = WavDecoder(data, chunk_frames=1000)
        shapes = [block.shape for block in decoder.chunks()]
        assert shapes == [(1000, 2), (1000, 2), (500, 2)]
        assert decoder.bytes_processed == len(data)
        decoder.close()

    def test_output_descriptor(self, make_wav: Callable[..., bytes]) -> None:
        """Test output layout follows the header."""
        decoder = WavDecoder(make_wav(frames=4000, sample_rate=8000, sample_width=1), 512)
        assert decoder.output == AudioStreamDescriptor(
            sample_rate=8000, channels=1, bit_depth=8, duration=0.5
        )
        decoder.close()

    def test_samples_match_pcm(self, make_wav: Callable[..., bytes]) -> None:
        """Test decoded floats equal the stored 16-bit samples."""
        data = make_wav(frames=300)
        decoder = WavDecoder(data, chunk_frames=256)
        blocks = list(decoder.chunks())
        decoder.close()
        assert all(block.dtype == np.float32 for block in blocks)
        expected = int16_samples(np.frombuffer(data[44:], dtype="<i2"), 1)
        np.testing.assert_allclose(np.concatenate(blocks), expected, atol=1e-6)

    def test_progress_advances(self, make_wav: Callable[..., bytes]) -> None:
        """Test bytes_processed grows with each block."""
        data = make_wav(frames=4000)
        decoder = WavDecoder(data, chunk_frames=1000)
        blocks = decoder.chunks()
        next(blocks)
        assert 0 < decoder.bytes_processed < len(data)
        decoder.close()

    def test_truncated_body_yields_present_frames(
        self, make_wav: Callable[..., bytes]
    ) -> None:
        """Test a body cut short decodes the frames it still holds."""
        decoder = WavDecoder(make_wav(frames=8000)[:1000], 1024)
        frames = sum(block.shape[0] for block in decoder.chunks())
        decoder.close()
        assert 0 < frames < 8000

    def test_non_pcm_encoding(self, make_alaw_wav: Callable[..., bytes]) -> None:
        """Test A-law WAV is rejected."""
        with pytest.raises(DecodeError, match="unsupported WAV encoding: ALAW"):
            WavDecoder(make_alaw_wav(), 1024)

    def test_malformed_header(self) -> None:
        """Test header errors surface as decode errors."""
        with pytest.raises(DecodeError, match="malformed WAV header"):
            WavDecoder(b"garbage", 1024)


class TestWavEncoder:
    """Tests for WavEncoder."""

    def test_output_is_valid_wav(self, wav_reader: Callable[[bytes], Any]) -> None:
        """Test the finished output parses with the standard library."""
        samples = int16_samples(np.arange(-200, 200, dtype="<i2"), 2)
        sink = io.BytesIO()
        encoder = WavEncoder(sink, 22050, 2)
        encoder.encode(samples[:100])
        encoder.encode(samples[100:])
        encoder.finish()
        encoder.close()

        params, _ = wav_reader(sink.getvalue())
        assert params.nchannels == 2
        assert params.framerate == 22050
        assert params.sampwidth == 2
        assert params.nframes == 200

    def test_samples_round_trip(self) -> None:
        """Test written samples read back within 16-bit precision."""
        samples = np.linspace(-0.9, 0.9, 500)[:, None]
        sink = io.BytesIO()
        encoder = WavEncoder(sink, 8000, 1)
        encoder.encode(samples)
        encoder.finish()

        decoded, rate = sf.read(io.BytesIO(sink.getvalue()), always_2d=True)
        assert rate == 8000
        np.testing.assert_allclose(decoded, samples, atol=1e-4)

    def test_out_of_range_values_clip(self) -> None:
        """Test samples beyond full scale saturate instead of wrapping."""
        sink = io.BytesIO()
        encoder = WavEncoder(sink, 8000, 1)
        encoder.encode(np.array([[1.5], [-2.0]]))
        encoder.finish()

        decoded, _ = sf.read(io.BytesIO(sink.getvalue()))
        assert decoded[0] > 0.99
        assert decoded[1] == pytest.approx(-1.0, abs=1e-4)

    def test_empty_stream(self, wav_reader: Callable[[bytes], Any]) -> None:
        """Test finishing without samples still writes a header."""
        sink = io.BytesIO()
        encoder = WavEncoder(sink, 8000, 1)
        encoder.finish()
        params, frames = wav_reader(sink.getvalue())
        assert params.nframes == 0
        assert frames == b""

    def test_close_after_finish(self) -> None:
        """Test close is safe once the file is finished."""
        encoder = WavEncoder(io.BytesIO(), 8000, 1)
        encoder.finish()
        encoder.close()

    def test_invalid_layout(self) -> None:
        """Test libsndfile refusals become encode errors."""
        with pytest.raises(EncodeError, match="cannot start WAV output"):
            WavEncoder(io.BytesIO(), 8000, 0)


class TestFFmpegEncoder:
    """Tests for FFmpegEncoder with a mocked FFmpeg process."""

    def test_pipes_pcm_and_fills_sink(self) -> None:
        """Test PCM reaches stdin and stdout lands in the sink."""
        process = fake_process(stdout=b"encoded-bytes")
        sink = io.BytesIO()
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=process) as spawn:
            encoder = FFmpegEncoder(sink, resolve("mp3"), 44100, 2, 192, chunk_timeout=2.0)
            encoder.encode(np.full((4, 2), 1 / 32768))
            encoder.finish()
            encoder.close()

        assert sink.getvalue() == b"encoded-bytes"
        assert process.stdin.captured == b"\x01\x00" * 8
        cmd = spawn.call_args[0][0]
        assert cmd[cmd.index("-b:a") + 1] == "192k"
        assert spawn.call_args[1]["with_stdin"] is True

    def test_nonzero_exit(self) -> None:
        """Test FFmpeg failure is reported with its stderr."""
        process = fake_process(stderr=b"Unknown encoder 'libmp3lame'\n", returncode=1)
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=process):
            encoder = FFmpegEncoder(
                io.BytesIO(), resolve("mp3"), 44100, 2, None, chunk_timeout=2.0
            )
            encoder.encode(np.zeros((1, 2)))
            with pytest.raises(EncodeError, match="Unknown encoder"):
                encoder.finish()
            encoder.close()

    def test_broken_pipe(self) -> None:
        """Test a dead FFmpeg surfaces as an encode error."""
        process = fake_process(stderr=b"crashed\n")
        process.stdin = MagicMock()
        process.stdin.write.side_effect = BrokenPipeError("broken pipe")
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=process):
            encoder = FFmpegEncoder(
                io.BytesIO(), resolve("ogg"), 44100, 2, None, chunk_timeout=2.0
            )
            with pytest.raises(EncodeError, match="crashed"):
                encoder.encode(np.zeros((1, 2)))
            encoder.close()


class TestFFmpegDecoder:
    """Tests for FFmpegDecoder with a mocked FFmpeg process."""

    STREAM = AudioStreamDescriptor(sample_rate=44100, channels=2, duration=3000 / 44100)

    def test_reads_pcm_from_stdout(self) -> None:
        """Test decoded PCM is yielded as float blocks."""
        values = np.arange(6000, dtype="<i2")
        process = fake_process(stdout=values.tobytes())
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=process) as spawn:
            decoder = FFmpegDecoder(
                b"ID3-source", resolve("mp3"), self.STREAM, 1024, chunk_timeout=2.0
            )
            cmd = spawn.call_args[0][0]
            input_path = Path(cmd[cmd.index("-i") + 1])
            assert input_path.read_bytes() == b"ID3-source"

            blocks = list(decoder.chunks())
            decoder.close()

        assert all(block.shape[1] == 2 for block in blocks)
        np.testing.assert_allclose(np.concatenate(blocks), int16_samples(values, 2))
        assert decoder.bytes_processed == len(b"ID3-source")
        assert not input_path.exists()

    def test_output_is_sixteen_bit(self) -> None:
        """Test decoded PCM is always 16-bit at the probed layout."""
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=fake_process()):
            decoder = FFmpegDecoder(b"x", resolve("flac"), self.STREAM, 1024, 2.0)
            decoder.close()
        assert decoder.output.bit_depth == 16
        assert decoder.output.sample_rate == 44100

    def test_duration_from_stderr(self) -> None:
        """Test progress uses FFmpeg's reported duration when the header has none."""
        stream = AudioStreamDescriptor(sample_rate=8000, channels=1)
        process = fake_process(
            stdout=bytes(16000),
            stderr=b"[info]   Duration: 00:00:02.00, start: 0.000000, bitrate: 64 kb/s\n",
        )
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=process):
            decoder = FFmpegDecoder(b"x" * 100, resolve("aac"), stream, 1000, 2.0)
            frames = sum(block.shape[0] for block in decoder.chunks())
            decoder._stderr.text()
            decoder.close()

        assert frames == 8000
        assert decoder.expected_frames == 16000
        assert decoder.bytes_processed == 50

    def test_unknown_duration_reports_no_progress(self) -> None:
        """Test progress stays at zero with no duration from either side."""
        stream = AudioStreamDescriptor(sample_rate=44100, channels=2)
        process = fake_process(stdout=bytes(4096))
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=process):
            decoder = FFmpegDecoder(b"x", resolve("aac"), stream, 256, 2.0)
            list(decoder.chunks())
            decoder._stderr.text()
            decoder.close()
        assert decoder.bytes_processed == 0

    def test_nonzero_exit(self) -> None:
        """Test a failing FFmpeg raises DecodeError with its stderr."""
        process = fake_process(
            stderr=b"[error] Invalid data found when processing input\n", returncode=1
        )
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=process):
            decoder = FFmpegDecoder(b"x", resolve("mp3"), self.STREAM, 1024, 2.0)
            with pytest.raises(DecodeError, match="Invalid data"):
                list(decoder.chunks())
            decoder.close()


class TestFactories:
    """Tests for open_decoder() and open_encoder()."""

    def test_wav_uses_builtin_codecs(self, make_wav: Callable[..., bytes]) -> None:
        """Test WAV never spawns FFmpeg."""
        data = make_wav()
        stream = AudioStreamDescriptor(sample_rate=8000, channels=1)
        with patch("audio_convert.pipeline.ffmpeg.spawn") as spawn:
            decoder = open_decoder(data, resolve("wav"), stream, 1024, 2.0)
            encoder = open_encoder(resolve("wav"), io.BytesIO(), 8000, 1, None, 2.0)
        assert isinstance(decoder, WavDecoder)
        assert isinstance(encoder, WavEncoder)
        spawn.assert_not_called()
        encoder.close()
        decoder.close()

    def test_compressed_uses_ffmpeg(self) -> None:
        """Test compressed targets go through FFmpeg."""
        with patch("audio_convert.pipeline.ffmpeg.spawn", return_value=fake_process()):
            encoder = open_encoder(resolve("flac"), io.BytesIO(), 44100, 2, None, 2.0)
            encoder.close()
        assert isinstance(encoder, FFmpegEncoder)
