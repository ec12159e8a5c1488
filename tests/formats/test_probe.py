"""Unit tests for stream header probing."""

from __future__ import annotations

import io
import struct
from collections.abc import Callable

import numpy as np
import pytest
import soundfile as sf

from audio_convert.core import InvalidInputError, UnsupportedFormatError
from audio_convert.formats import AudioStreamDescriptor, probe
from audio_convert.formats.probe import open_wav, parse_mpeg_header, wav_bit_depth

ASF_HEADER_GUID = bytes.fromhex("3026b2758e66cf11a6d900aa0062ce6c")
ASF_AUDIO_MEDIA_GUID = bytes.fromhex("409e69f84d5bcf11a8fd00805f5c442b")


def adts_frame(length: int = 100, rate_index: int = 4, channels: int = 2) -> bytes:
    """Build an AAC-LC ADTS frame of ``length`` bytes."""
    header = bytes(
        [
            0xFF,
            0xF1,
            (1 << 6) | (rate_index << 2) | (channels >> 2),
            ((channels & 0x3) << 6) | ((length >> 11) & 0x3),
            (length >> 3) & 0xFF,
            ((length & 0x7) << 5) | 0x1F,
            0xFC,
        ]
    )
    return header + bytes(max(0, length - 7))


def ogg_page(packet: bytes, granule: int = 0) -> bytes:
    """Build a single-segment Ogg page."""
    return (
        b"OggS"
        + bytes([0, 2])
        + struct.pack("<qIII", granule, 1, 0, 0)
        + bytes([1, len(packet)])
        + packet
    )


VORBIS_ID = b"\x01vorbis" + struct.pack("<IBI", 0, 2, 44100) + bytes(14)
OPUS_HEAD = b"OpusHead" + bytes([1, 2]) + struct.pack("<HIhB", 312, 48000, 0, 0)


def sound_bytes(samples: np.ndarray, rate: int, container: str, subtype: str) -> bytes:
    """Write samples into an in-memory file through libsndfile."""
    buffer = io.BytesIO()
    sf.write(buffer, samples, rate, format=container, subtype=subtype)
    return buffer.getvalue()


class TestProbeWav:
    """Tests for WAV header probing."""

    def test_valid_header(self, make_wav: Callable[..., bytes]) -> None:
        """Test fields are read from the fmt chunk."""
        data = make_wav(frames=16000, sample_rate=16000, channels=2)
        stream = probe(data, "wav")
        assert stream == AudioStreamDescriptor(
            sample_rate=16000, channels=2, bit_depth=16, duration=1.0
        )

    def test_eight_bit(self, make_wav: Callable[..., bytes]) -> None:
        """Test bit depth follows the header."""
        assert probe(make_wav(sample_width=1), "wav").bit_depth == 8

    def test_truncated_header(self, make_wav: Callable[..., bytes]) -> None:
        """Test a header cut mid-chunk is rejected."""
        with pytest.raises(InvalidInputError):
            probe(make_wav()[:20], "wav")

    def test_not_riff(self) -> None:
        """Test missing RIFF magic is rejected."""
        with pytest.raises(InvalidInputError, match="malformed WAV header"):
            probe(b"not a wave file at all", "wav")

    def test_missing_data_chunk(self, make_wav: Callable[..., bytes]) -> None:
        """Test a header with no data chunk is rejected."""
        with pytest.raises(InvalidInputError):
            probe(make_wav()[:36], "wav")

    def test_data_before_fmt(self) -> None:
        """Test chunk order is enforced."""
        data = b"RIFF" + struct.pack("<I", 12) + b"WAVE" + b"data" + struct.pack("<I", 0)
        with pytest.raises(InvalidInputError):
            probe(data, "wav")

    def test_truncated_body_accepted(self, make_wav: Callable[..., bytes]) -> None:
        """Test a cut body probes as the frames actually present."""
        stream = probe(make_wav(frames=8000)[:1000], "wav")
        assert 0.0 < stream.duration < 1.0

    def test_twenty_four_bit(self) -> None:
        """Test 24-bit PCM reports its stored depth."""
        data = sound_bytes(np.zeros((800, 2)), 8000, "WAV", "PCM_24")
        stream = probe(data, "wav")
        assert (stream.bit_depth, stream.channels) == (24, 2)
        assert stream.duration == pytest.approx(0.1)

    def test_float_depth(self) -> None:
        """Test 32-bit float WAV reports 32 bits."""
        assert probe(sound_bytes(np.zeros(80), 8000, "WAV", "FLOAT"), "wav").bit_depth == 32

    def test_non_pcm_encoding_falls_back(self, make_alaw_wav: Callable[..., bytes]) -> None:
        """Test A-law WAV probes with the decoded depth."""
        stream = probe(make_alaw_wav(frames=4000), "wav")
        assert stream.bit_depth == 16
        assert stream.duration == pytest.approx(0.5)

    def test_other_container_rejected(self) -> None:
        """Test FLAC bytes declared as WAV are rejected."""
        data = sound_bytes(np.zeros(800), 8000, "FLAC", "PCM_16")
        with pytest.raises(InvalidInputError, match="found FLAC"):
            probe(data, "wav")

    def test_open_wav_reads_frames(self, make_wav: Callable[..., bytes]) -> None:
        """Test the returned handle is positioned at the first frame."""
        with open_wav(make_wav(frames=100, channels=2)) as handle:
            assert handle.frames == 100
            assert handle.read(dtype="float32").shape == (100, 2)

    def test_wav_bit_depth(self) -> None:
        """Test subtype to depth mapping."""
        assert wav_bit_depth("PCM_U8") == 8
        assert wav_bit_depth("PCM_16") == 16
        assert wav_bit_depth("ULAW") is None


class TestProbeMp3:
    """Tests for MPEG Layer III probing."""

    def test_stereo_frames(self, make_mp3: Callable[..., bytes]) -> None:
        """Test sample rate and channels come from the frame header."""
        stream = probe(make_mp3(frames=10), "mp3")
        assert stream.sample_rate == 44100
        assert stream.channels == 2
        assert stream.bit_depth == 16
        assert stream.duration == pytest.approx(10 * 417 * 8 / 128000)

    def test_mono(self, make_mp3: Callable[..., bytes]) -> None:
        """Test single-channel mode is detected."""
        assert probe(make_mp3(mono=True), "mp3").channels == 1

    def test_id3_tag_skipped(self, make_mp3: Callable[..., bytes]) -> None:
        """Test a leading ID3v2 tag does not hide the first frame."""
        assert probe(make_mp3(id3=True), "mp3").sample_rate == 44100

    def test_xing_frame_count(self, make_mp3: Callable[..., bytes]) -> None:
        """Test duration comes from the Xing header when present."""
        stream = probe(make_mp3(frames=5, xing_frames=100), "mp3")
        assert stream.duration == pytest.approx(100 * 1152 / 44100)

    def test_no_frames(self) -> None:
        """Test bytes without a frame sync are rejected."""
        with pytest.raises(InvalidInputError, match="no MPEG"):
            probe(bytes(2048), "mp3")

    def test_truncated_header(self) -> None:
        """Test a partial frame header is rejected."""
        with pytest.raises(InvalidInputError):
            probe(b"\xff\xfb", "mp3")

    def test_parse_header_rejects_reserved_fields(self) -> None:
        """Test free-format and reserved sample rate headers are ignored."""
        assert parse_mpeg_header(bytes([0xFF, 0xFB, 0x00, 0x00])) is None
        assert parse_mpeg_header(bytes([0xFF, 0xFB, 0x9C, 0x00])) is None
        assert parse_mpeg_header(bytes([0xFF, 0xFB, 0x90, 0x00])) is not None


class TestProbeFlac:
    """Tests for FLAC STREAMINFO probing."""

    def test_streaminfo(self, make_flac: Callable[..., bytes]) -> None:
        """Test fields are unpacked from STREAMINFO."""
        data = make_flac(sample_rate=48000, channels=6, bit_depth=24, total_samples=96000)
        stream = probe(data, "flac")
        assert stream == AudioStreamDescriptor(
            sample_rate=48000, channels=6, bit_depth=24, duration=2.0
        )

    def test_missing_marker(self, make_flac: Callable[..., bytes]) -> None:
        """Test the fLaC marker is required."""
        with pytest.raises(InvalidInputError, match="fLaC"):
            probe(b"OggS" + make_flac()[4:], "flac")

    def test_truncated(self, make_flac: Callable[..., bytes]) -> None:
        """Test a cut STREAMINFO block is rejected."""
        with pytest.raises(InvalidInputError, match="truncated"):
            probe(make_flac()[:20], "flac")

    def test_first_block_not_streaminfo(self, make_flac: Callable[..., bytes]) -> None:
        """Test the first metadata block must be STREAMINFO."""
        data = bytearray(make_flac())
        data[4] = 0x84
        with pytest.raises(InvalidInputError, match="STREAMINFO"):
            probe(bytes(data), "flac")


class TestProbeAac:
    """Tests for ADTS probing."""

    def test_frames_counted(self) -> None:
        """Test duration counts whole ADTS frames."""
        stream = probe(adts_frame() * 3, "aac")
        assert stream.sample_rate == 44100
        assert stream.channels == 2
        assert stream.duration == pytest.approx(3 * 1024 / 44100)

    def test_missing_sync(self) -> None:
        """Test bytes without an ADTS sync word are rejected."""
        with pytest.raises(InvalidInputError, match="ADTS sync"):
            probe(bytes(64), "aac")

    def test_invalid_frame_length(self) -> None:
        """Test a frame shorter than its header is rejected."""
        with pytest.raises(InvalidInputError, match="frame length"):
            probe(adts_frame(length=4) + bytes(8), "aac")


class TestProbeOgg:
    """Tests for Ogg Vorbis and Opus probing."""

    def test_vorbis(self) -> None:
        """Test the Vorbis identification header is read."""
        data = ogg_page(VORBIS_ID) + ogg_page(bytes(8), granule=88200)
        stream = probe(data, "ogg")
        assert stream.sample_rate == 44100
        assert stream.channels == 2
        assert stream.duration == pytest.approx(2.0)

    def test_opus_in_ogg(self) -> None:
        """Test Opus streams are accepted as ogg too."""
        data = ogg_page(OPUS_HEAD) + ogg_page(bytes(8), granule=48000 + 312)
        stream = probe(data, "ogg")
        assert stream.sample_rate == 48000
        assert stream.duration == pytest.approx(1.0)

    def test_opus_requires_opus_head(self) -> None:
        """Test a Vorbis stream is not accepted as opus."""
        with pytest.raises(InvalidInputError, match="Opus header"):
            probe(ogg_page(VORBIS_ID), "opus")

    def test_opus(self) -> None:
        """Test OpusHead channel count is read."""
        assert probe(ogg_page(OPUS_HEAD), "opus").channels == 2

    def test_missing_capture_pattern(self) -> None:
        """Test non-Ogg data is rejected."""
        with pytest.raises(InvalidInputError, match="OggS"):
            probe(bytes(64), "ogg")


class TestProbeM4a:
    """Tests for MP4 audio probing."""

    FTYP = struct.pack(">I4s4sI4s", 20, b"ftyp", b"M4A ", 0, b"isom")

    def test_sample_entry_and_duration(self) -> None:
        """Test mp4a and mvhd boxes are read when present."""
        mvhd = b"mvhd" + bytes(12) + struct.pack(">II", 1000, 2500) + bytes(16)
        mp4a = b"mp4a" + bytes(16) + struct.pack(">HHHHI", 1, 16, 0, 0, 22050 << 16)
        stream = probe(self.FTYP + mvhd + mp4a, "m4a")
        assert stream.sample_rate == 22050
        assert stream.channels == 1
        assert stream.duration == pytest.approx(2.5)

    def test_defaults_without_sample_entry(self) -> None:
        """Test a bare ftyp box falls back to CD layout."""
        stream = probe(self.FTYP, "m4a")
        assert (stream.sample_rate, stream.channels) == (44100, 2)

    def test_non_audio_brand(self) -> None:
        """Test QuickTime-only brands are rejected."""
        data = struct.pack(">I4s4sI4s", 20, b"ftyp", b"qt  ", 0, b"qt  ")
        with pytest.raises(InvalidInputError, match="brand"):
            probe(data, "m4a")

    def test_missing_ftyp(self) -> None:
        """Test files without ftyp are rejected."""
        with pytest.raises(InvalidInputError, match="ftyp"):
            probe(bytes(32), "m4a")


class TestProbeWma:
    """Tests for ASF probing."""

    def test_audio_stream_properties(self) -> None:
        """Test channels and rate come from the audio stream object."""
        data = ASF_HEADER_GUID + bytes(14) + ASF_AUDIO_MEDIA_GUID + bytes(40)
        data += struct.pack("<HI", 1, 22050)
        stream = probe(data, "wma")
        assert (stream.sample_rate, stream.channels) == (22050, 1)

    def test_missing_header_object(self) -> None:
        """Test non-ASF data is rejected."""
        with pytest.raises(InvalidInputError, match="ASF"):
            probe(bytes(64), "wma")


class TestProbe:
    """Tests for probe() dispatch."""

    def test_unsupported_tag(self) -> None:
        """Test unknown tags raise UnsupportedFormatError."""
        with pytest.raises(UnsupportedFormatError):
            probe(b"data", "xyz")

    def test_empty_source(self) -> None:
        """Test empty input is rejected for every format."""
        with pytest.raises(InvalidInputError, match="empty"):
            probe(b"", "mp3")

    def test_declared_format_mismatch(self, make_wav: Callable[..., bytes]) -> None:
        """Test WAV bytes declared as FLAC are rejected."""
        with pytest.raises(InvalidInputError):
            probe(make_wav(), "flac")

    def test_descriptor_helpers(self) -> None:
        """Test frame size and frame estimate."""
        stream = AudioStreamDescriptor(sample_rate=8000, channels=2, bit_depth=24, duration=0.5)
        assert stream.frame_size == 6
        assert stream.estimated_frames == 4000
