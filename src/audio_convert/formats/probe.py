"""Stream header probing.

Each supported container is checked for a well-formed header before a job
is admitted, and the header fields are turned into an
:class:`AudioStreamDescriptor`. Only headers are parsed here; frame
payloads are left to the decoders, so a file with a valid header and a
corrupt body is accepted at submit time and fails later in the pipeline.
"""

from __future__ import annotations

import io
import struct
from collections.abc import Callable
from dataclasses import dataclass

import soundfile as sf

from audio_convert.core import InvalidInputError
from audio_convert.formats.registry import resolve

# Bit depth reported for lossy codecs (the depth they are decoded to)
DECODED_BIT_DEPTH = 16

# How far into the stream to look for the first MPEG/ADTS sync word
MAX_SYNC_SEARCH = 64 * 1024

# libsndfile container names accepted as WAV
WAV_CONTAINERS = frozenset({"WAV", "WAVEX"})

# Bits per sample of the WAV encodings the pipeline decodes
WAV_SUBTYPE_DEPTHS = {"PCM_U8": 8, "PCM_16": 16, "PCM_24": 24, "PCM_32": 32, "FLOAT": 32}

_MPEG1_L3_BITRATES = (0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320)
_MPEG2_L3_BITRATES = (0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160)
_MPEG_SAMPLE_RATES = {
    3: (44100, 48000, 32000),  # MPEG-1
    2: (22050, 24000, 16000),  # MPEG-2
    0: (11025, 12000, 8000),  # MPEG-2.5
}

_ADTS_SAMPLE_RATES = (
    96000, 88200, 64000, 48000, 44100, 32000,
    24000, 22050, 16000, 12000, 11025, 8000, 7350,
)  # fmt: skip

_MP4_BRANDS = frozenset(
    {b"M4A ", b"M4B ", b"M4P ", b"mp41", b"mp42", b"isom", b"iso2", b"iso5", b"dash"}
)

_ASF_HEADER_GUID = bytes.fromhex("3026b2758e66cf11a6d900aa0062ce6c")
_ASF_FILE_PROPERTIES_GUID = bytes.fromhex("a1dcab8c47a9cf118ee400c00c205365")
_ASF_AUDIO_MEDIA_GUID = bytes.fromhex("409e69f84d5bcf11a8fd00805f5c442b")


@dataclass(frozen=True)
class AudioStreamDescriptor:
    """Immutable description of a PCM stream.

    Attributes:
        sample_rate: Samples per second per channel.
        channels: Number of interleaved channels.
        bit_depth: Bits per sample.
        duration: Estimated duration in seconds (0.0 when unknown).
    """

    sample_rate: int
    channels: int
    bit_depth: int = DECODED_BIT_DEPTH
    duration: float = 0.0

    @property
    def frame_size(self) -> int:
        """Bytes per interleaved frame."""
        return self.channels * (self.bit_depth // 8)

    @property
    def estimated_frames(self) -> int:
        """Frames the stream is expected to contain."""
        return round(self.duration * self.sample_rate)


def open_wav(data: bytes) -> sf.SoundFile:
    """Open WAV bytes for reading through libsndfile.

    Args:
        data: Complete file bytes.

    Returns:
        An open SoundFile; the caller closes it.

    Raises:
        InvalidInputError: If libsndfile rejects the header or the bytes
            hold another container.
    """
    try:
        handle = sf.SoundFile(io.BytesIO(data))
    except sf.SoundFileError as e:
        raise InvalidInputError(f"malformed WAV header: {e}") from e
    if handle.format not in WAV_CONTAINERS:
        handle.close()
        raise InvalidInputError(f"expected a RIFF/WAVE header, found {handle.format}")
    return handle


def wav_bit_depth(subtype: str) -> int | None:
    """Bits per sample of a WAV subtype, or None for non-PCM encodings."""
    return WAV_SUBTYPE_DEPTHS.get(subtype)


def _probe_wav(data: bytes) -> AudioStreamDescriptor:
    with open_wav(data) as handle:
        return AudioStreamDescriptor(
            sample_rate=handle.samplerate,
            channels=handle.channels,
            bit_depth=wav_bit_depth(handle.subtype) or DECODED_BIT_DEPTH,
            duration=handle.frames / handle.samplerate,
        )


def _skip_id3(data: bytes) -> int:
    """Return the offset just past a leading ID3v2 tag (0 when absent)."""
    if len(data) < 10 or data[:3] != b"ID3":
        return 0
    size = 0
    for byte in data[6:10]:
        if byte & 0x80:
            raise InvalidInputError("malformed ID3v2 tag size")
        size = (size << 7) | byte
    footer = 10 if data[5] & 0x10 else 0
    return 10 + size + footer


@dataclass(frozen=True)
class MpegFrameHeader:
    """Decoded MPEG audio Layer III frame header."""

    version: int
    bitrate: int
    sample_rate: int
    channels: int
    padding: int

    @property
    def samples_per_frame(self) -> int:
        """PCM samples per channel carried by one frame."""
        return 1152 if self.version == 3 else 576

    @property
    def frame_length(self) -> int:
        """Frame size in bytes including the header."""
        factor = 144 if self.version == 3 else 72
        return factor * self.bitrate * 1000 // self.sample_rate + self.padding

    @property
    def side_info_size(self) -> int:
        """Bytes of side information following the header."""
        if self.version == 3:
            return 17 if self.channels == 1 else 32
        return 9 if self.channels == 1 else 17


def parse_mpeg_header(raw: bytes) -> MpegFrameHeader | None:
    """Decode a 4-byte MPEG Layer III header, or return None if invalid."""
    if len(raw) < 4:
        return None
    header = int.from_bytes(raw[:4], "big")
    if (header >> 21) & 0x7FF != 0x7FF:
        return None

    version = (header >> 19) & 0x3
    layer = (header >> 17) & 0x3
    bitrate_index = (header >> 12) & 0xF
    rate_index = (header >> 10) & 0x3
    if version == 1 or layer != 1 or bitrate_index in (0, 15) or rate_index == 3:
        return None

    table = _MPEG1_L3_BITRATES if version == 3 else _MPEG2_L3_BITRATES
    return MpegFrameHeader(
        version=version,
        bitrate=table[bitrate_index],
        sample_rate=_MPEG_SAMPLE_RATES[version][rate_index],
        channels=1 if (header >> 6) & 0x3 == 3 else 2,
        padding=(header >> 9) & 0x1,
    )


def _probe_mp3(data: bytes) -> AudioStreamDescriptor:
    start = _skip_id3(data)
    if start >= len(data):
        raise InvalidInputError("no audio after ID3 tag")

    limit = min(len(data) - 4, start + MAX_SYNC_SEARCH)
    for offset in range(start, limit + 1):
        header = parse_mpeg_header(data[offset : offset + 4])
        if header is None:
            continue
        following = offset + header.frame_length
        # Require the next frame to line up when the stream is long enough
        if following + 4 <= len(data) and parse_mpeg_header(
            data[following : following + 4]
        ) is None:
            continue
        break
    else:
        raise InvalidInputError("no MPEG Layer III frame header found")

    duration = (len(data) - offset) * 8 / (header.bitrate * 1000)
    tag_at = offset + 4 + header.side_info_size
    if data[tag_at : tag_at + 4] in (b"Xing", b"Info"):
        (flags,) = struct.unpack_from(">I", data, tag_at + 4)
        if flags & 0x1 and tag_at + 12 <= len(data):
            (frames,) = struct.unpack_from(">I", data, tag_at + 8)
            duration = frames * header.samples_per_frame / header.sample_rate

    return AudioStreamDescriptor(
        sample_rate=header.sample_rate,
        channels=header.channels,
        duration=duration,
    )


def _probe_flac(data: bytes) -> AudioStreamDescriptor:
    if data[:4] != b"fLaC":
        raise InvalidInputError("missing fLaC marker")
    if len(data) < 42:
        raise InvalidInputError("truncated STREAMINFO block")
    block_type = data[4] & 0x7F
    block_length = int.from_bytes(data[5:8], "big")
    if block_type != 0 or block_length != 34:
        raise InvalidInputError("first metadata block is not STREAMINFO")

    packed = int.from_bytes(data[18:26], "big")
    sample_rate = packed >> 44
    channels = ((packed >> 41) & 0x7) + 1
    bit_depth = ((packed >> 36) & 0x1F) + 1
    total_samples = packed & ((1 << 36) - 1)
    if sample_rate == 0:
        raise InvalidInputError("STREAMINFO sample rate is zero")
    return AudioStreamDescriptor(
        sample_rate=sample_rate,
        channels=channels,
        bit_depth=bit_depth,
        duration=total_samples / sample_rate,
    )


def _probe_aac(data: bytes) -> AudioStreamDescriptor:
    start = _skip_id3(data)
    if len(data) < start + 7:
        raise InvalidInputError("truncated ADTS header")
    head = data[start : start + 7]
    if head[0] != 0xFF or head[1] & 0xF6 != 0xF0:
        raise InvalidInputError("missing ADTS sync word")

    rate_index = (head[2] >> 2) & 0xF
    if rate_index >= len(_ADTS_SAMPLE_RATES):
        raise InvalidInputError(f"invalid ADTS sampling index {rate_index}")
    sample_rate = _ADTS_SAMPLE_RATES[rate_index]
    channels = ((head[2] & 0x1) << 2) | (head[3] >> 6)

    frames = 0
    offset = start
    while offset + 7 <= len(data) and data[offset] == 0xFF and data[offset + 1] & 0xF6 == 0xF0:
        length = ((data[offset + 3] & 0x3) << 11) | (data[offset + 4] << 3) | (data[offset + 5] >> 5)
        if length < 7:
            if frames == 0:
                raise InvalidInputError(f"invalid ADTS frame length {length}")
            break
        frames += 1
        offset += length

    return AudioStreamDescriptor(
        sample_rate=sample_rate,
        # Channel configuration 0 means "defined in-band"; assume stereo
        channels=channels or 2,
        duration=frames * 1024 / sample_rate,
    )


def _probe_ogg(data: bytes, require_opus: bool = False) -> AudioStreamDescriptor:
    if len(data) < 28 or data[:4] != b"OggS" or data[4] != 0:
        raise InvalidInputError("missing OggS capture pattern")
    segments = data[26]
    packet = data[27 + segments : 27 + segments + 64]

    if packet.startswith(b"OpusHead") and len(packet) >= 16:
        channels = packet[9]
        (pre_skip,) = struct.unpack_from("<H", packet, 10)
        sample_rate = 48000
    elif packet.startswith(b"\x01vorbis") and len(packet) >= 16 and not require_opus:
        channels = packet[11]
        (sample_rate,) = struct.unpack_from("<I", packet, 12)
        pre_skip = 0
    else:
        expected = "Opus" if require_opus else "Vorbis or Opus"
        raise InvalidInputError(f"first Ogg packet is not a {expected} header")

    if channels == 0 or sample_rate == 0:
        raise InvalidInputError("identification header has zero-valued fields")

    duration = 0.0
    last_page = data.rfind(b"OggS")
    if last_page > 0 and last_page + 14 <= len(data):
        (granule,) = struct.unpack_from("<q", data, last_page + 6)
        if granule > pre_skip:
            duration = (granule - pre_skip) / sample_rate

    return AudioStreamDescriptor(
        sample_rate=sample_rate, channels=channels, duration=duration
    )


def _probe_opus(data: bytes) -> AudioStreamDescriptor:
    return _probe_ogg(data, require_opus=True)


def _probe_m4a(data: bytes) -> AudioStreamDescriptor:
    if len(data) < 16 or data[4:8] != b"ftyp":
        raise InvalidInputError("missing ftyp box")
    box_size = int.from_bytes(data[:4], "big")
    brands = {data[8:12]}
    brands.update(data[i : i + 4] for i in range(16, min(box_size, len(data)) - 3, 4))
    if not brands & _MP4_BRANDS:
        raise InvalidInputError(f"ftyp brand {data[8:12]!r} is not an MP4 audio brand")

    sample_rate, channels, duration = 44100, 2, 0.0
    entry = data.find(b"mp4a")
    if entry != -1 and entry + 30 <= len(data):
        (channels,) = struct.unpack_from(">H", data, entry + 20)
        (sample_rate,) = struct.unpack_from(">H", data, entry + 28)
    header = data.find(b"mvhd")
    if header != -1 and header + 32 <= len(data):
        if data[header + 4] == 1:
            timescale, length = struct.unpack_from(">IQ", data, header + 24)
        else:
            timescale, length = struct.unpack_from(">II", data, header + 16)
        if timescale:
            duration = length / timescale

    return AudioStreamDescriptor(
        sample_rate=sample_rate or 44100, channels=channels or 2, duration=duration
    )


def _probe_wma(data: bytes) -> AudioStreamDescriptor:
    if len(data) < 30 or data[:16] != _ASF_HEADER_GUID:
        raise InvalidInputError("missing ASF header object")

    sample_rate, channels, duration = 44100, 2, 0.0
    props = data.find(_ASF_FILE_PROPERTIES_GUID)
    if props != -1 and props + 88 <= len(data):
        (play_duration,) = struct.unpack_from("<Q", data, props + 64)
        (preroll,) = struct.unpack_from("<Q", data, props + 80)
        duration = max(0.0, play_duration / 10_000_000 - preroll / 1000)
    stream = data.find(_ASF_AUDIO_MEDIA_GUID)
    if stream != -1 and stream + 62 <= len(data):
        channels, sample_rate = struct.unpack_from("<HI", data, stream + 56)

    return AudioStreamDescriptor(
        sample_rate=sample_rate or 44100, channels=channels or 2, duration=duration
    )


_PROBES: dict[str, Callable[[bytes], AudioStreamDescriptor]] = {
    "wav": _probe_wav,
    "mp3": _probe_mp3,
    "flac": _probe_flac,
    "aac": _probe_aac,
    "ogg": _probe_ogg,
    "opus": _probe_opus,
    "m4a": _probe_m4a,
    "wma": _probe_wma,
}


def probe(data: bytes, tag: str) -> AudioStreamDescriptor:
    """Validate the stream header and describe the stream.

    Args:
        data: Source bytes.
        tag: Declared source format tag.

    Returns:
        Descriptor of the source stream.

    Raises:
        UnsupportedFormatError: If the tag is not registered.
        InvalidInputError: If the bytes are not a well-formed stream of
            the declared format.
    """
    descriptor = resolve(tag)
    if not data:
        raise InvalidInputError("source is empty")
    try:
        return _PROBES[descriptor.tag](data)
    except (struct.error, IndexError) as e:
        raise InvalidInputError(f"truncated {descriptor.tag} header: {e}") from e
