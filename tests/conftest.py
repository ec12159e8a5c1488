"""Shared pytest fixtures for audio-convert tests."""

from __future__ import annotations

import io
import struct
import tempfile
import wave
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest
import soundfile as sf

from audio_convert.config import ServiceConfig
from audio_convert.store import ResultStore

if TYPE_CHECKING:
    from collections.abc import Generator

# MPEG-1 Layer III, 128 kbps, 44100 Hz, no CRC
MP3_STEREO_HEADER = bytes([0xFF, 0xFB, 0x90, 0x00])
MP3_MONO_HEADER = bytes([0xFF, 0xFB, 0x90, 0xC0])
MP3_FRAME_LENGTH = 417


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_wav() -> Callable[..., bytes]:
    """Build PCM WAV files with the standard library writer.

    The returned builder writes a sine tone of ``frames`` frames.
    """

    def build(
        frames: int = 8000,
        sample_rate: int = 8000,
        channels: int = 1,
        sample_width: int = 2,
        frequency: float = 440.0,
    ) -> bytes:
        t = np.arange(frames) / sample_rate
        tone = 0.5 * np.sin(2 * np.pi * frequency * t)
        samples = np.repeat(tone[:, None], channels, axis=1).reshape(-1)
        if sample_width == 1:
            raw = np.round(samples * 127 + 128).astype(np.uint8).tobytes()
        elif sample_width == 2:
            raw = np.round(samples * 32767).astype("<i2").tobytes()
        else:
            raw = np.round(samples * 2147483647).astype("<i4").tobytes()

        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as writer:
            writer.setnchannels(channels)
            writer.setsampwidth(sample_width)
            writer.setframerate(sample_rate)
            writer.writeframes(raw)
        return buffer.getvalue()

    return build


@pytest.fixture
def make_alaw_wav() -> Callable[..., bytes]:
    """Build an A-law WAV, an encoding the WAV decoder rejects."""

    def build(frames: int = 4000, sample_rate: int = 8000) -> bytes:
        t = np.arange(frames) / sample_rate
        buffer = io.BytesIO()
        sf.write(
            buffer,
            0.5 * np.sin(2 * np.pi * 440.0 * t),
            sample_rate,
            format="WAV",
            subtype="ALAW",
        )
        return buffer.getvalue()

    return build


@pytest.fixture
def make_mp3() -> Callable[..., bytes]:
    """Build a stream of silent MPEG-1 Layer III frames.

    Args of the builder:
        frames: Number of frames.
        mono: Use single-channel frame headers.
        id3: Prefix an empty ID3v2 tag.
        xing_frames: Write a Xing header declaring this frame count.
    """

    def build(
        frames: int = 10,
        mono: bool = False,
        id3: bool = False,
        xing_frames: int | None = None,
    ) -> bytes:
        header = MP3_MONO_HEADER if mono else MP3_STEREO_HEADER
        side_info = 17 if mono else 32
        body = bytearray()
        for index in range(frames):
            frame = bytearray(header + bytes(MP3_FRAME_LENGTH - 4))
            if index == 0 and xing_frames is not None:
                at = 4 + side_info
                frame[at : at + 12] = b"Xing" + struct.pack(">II", 1, xing_frames)
            body.extend(frame)
        if id3:
            # ID3v2.4 header with a 16-byte (synchsafe) body
            body[0:0] = b"ID3\x04\x00\x00\x00\x00\x00\x10" + bytes(16)
        return bytes(body)

    return build


@pytest.fixture
def make_flac() -> Callable[..., bytes]:
    """Build a FLAC stream header with a STREAMINFO block."""

    def build(
        sample_rate: int = 44100,
        channels: int = 2,
        bit_depth: int = 16,
        total_samples: int = 44100,
    ) -> bytes:
        packed = (
            (sample_rate << 44)
            | ((channels - 1) << 41)
            | ((bit_depth - 1) << 36)
            | total_samples
        )
        streaminfo = (
            struct.pack(">HH", 4096, 4096)
            + bytes(6)
            + packed.to_bytes(8, "big")
            + bytes(16)
        )
        return b"fLaC" + bytes([0x80]) + len(streaminfo).to_bytes(3, "big") + streaminfo

    return build


@pytest.fixture
def service_config(temp_dir: Path) -> ServiceConfig:
    """Small-chunk configuration writing artifacts into ``temp_dir``."""
    return ServiceConfig(
        workers=1,
        max_queue_depth=4,
        chunk_frames=1024,
        chunk_timeout=5.0,
        store_dir=temp_dir / "artifacts",
    )


@pytest.fixture
def store(temp_dir: Path) -> Generator[ResultStore, None, None]:
    """Result store in a temporary directory, closed after the test."""
    result_store = ResultStore(directory=temp_dir / "store", ttl=60.0)
    yield result_store
    result_store.close()


def read_wav(data: bytes) -> tuple[Any, bytes]:
    """Parse WAV bytes with the standard library reader."""
    with wave.open(io.BytesIO(data), "rb") as reader:
        return reader.getparams(), reader.readframes(reader.getnframes())


@pytest.fixture
def wav_reader() -> Callable[[bytes], tuple[Any, bytes]]:
    """Return a function parsing WAV bytes into (params, frames)."""
    return read_wav
