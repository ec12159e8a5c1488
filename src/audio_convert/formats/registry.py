"""Format registry - supported codecs and their encoding constraints."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from types import MappingProxyType

from audio_convert.core import InvalidInputError, UnsupportedFormatError

# Standard sample rates, low to high
_MPEG_RATES = (8000, 11025, 12000, 16000, 22050, 24000, 32000, 44100, 48000)
_AAC_RATES = (*_MPEG_RATES, 64000, 88200, 96000)
_HIRES_RATES = (*_MPEG_RATES, 88200, 96000, 176400, 192000)
_OPUS_RATES = (8000, 12000, 16000, 24000, 48000)


@dataclass(frozen=True)
class EncodingOptions:
    """Optional encoding parameters requested by the client.

    Attributes:
        bitrate: Target bitrate in kbps, lossy formats only.
        sample_rate: Target sample rate in Hz.
        channels: Target channel count.
    """

    bitrate: int | None = None
    sample_rate: int | None = None
    channels: int | None = None

    def __post_init__(self) -> None:
        """Reject values that can never be valid for any format."""
        for name in ("bitrate", "sample_rate", "channels"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise InvalidInputError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class FormatDescriptor:
    """Capabilities of a single audio format.

    Attributes:
        tag: Canonical format tag (also the file extension).
        codec: FFmpeg encoder name.
        container: FFmpeg muxer/demuxer name (used with -f).
        mime_type: MIME type of produced artifacts.
        lossy: Whether the codec discards information.
        sample_rates: Sample rates the encoder accepts.
        max_channels: Largest channel count the encoder accepts.
        bitrate_range: Inclusive (min, max) kbps for lossy codecs.
        default_bitrate: Bitrate used when none is requested.
        builtin: Decoded and encoded without external tools.
        muxer_args: Extra FFmpeg output arguments for pipe-friendly muxing.
    """

    tag: str
    codec: str
    container: str
    mime_type: str
    lossy: bool
    sample_rates: tuple[int, ...]
    max_channels: int
    bitrate_range: tuple[int, int] | None = None
    default_bitrate: int | None = None
    builtin: bool = False
    muxer_args: tuple[str, ...] = ()

    def available(self, ffmpeg_path: str = "ffmpeg") -> bool:
        """Check whether this format can be processed on this host.

        Args:
            ffmpeg_path: FFmpeg executable to look for.

        Returns:
            True if the codec is built in or FFmpeg is on PATH.
        """
        return self.builtin or shutil.which(ffmpeg_path) is not None

    def nearest_sample_rate(self, rate: int) -> int:
        """Pick the supported sample rate closest to ``rate``.

        Ties go to the higher rate so that no bandwidth is lost.
        """
        if rate in self.sample_rates:
            return rate
        return min(self.sample_rates, key=lambda r: (abs(r - rate), -r))

    def validate_options(self, options: EncodingOptions) -> None:
        """Check requested encoding options against this format.

        Args:
            options: Options supplied at submit time.

        Raises:
            InvalidInputError: If an option is out of range for this format.
        """
        if options.bitrate is not None:
            if not self.lossy or self.bitrate_range is None:
                raise InvalidInputError(
                    f"{self.tag} is lossless and does not take a bitrate"
                )
            low, high = self.bitrate_range
            if not low <= options.bitrate <= high:
                raise InvalidInputError(
                    f"bitrate {options.bitrate}k out of range for {self.tag} "
                    f"({low}-{high}k)"
                )
        if options.sample_rate is not None and options.sample_rate not in self.sample_rates:
            rates = ", ".join(str(r) for r in self.sample_rates)
            raise InvalidInputError(
                f"sample rate {options.sample_rate} not supported by {self.tag} "
                f"(supported: {rates})"
            )
        if options.channels is not None and options.channels > self.max_channels:
            raise InvalidInputError(
                f"{self.tag} supports at most {self.max_channels} channels, "
                f"got {options.channels}"
            )


_FORMATS = {
    "wav": FormatDescriptor(
        tag="wav",
        codec="pcm_s16le",
        container="wav",
        mime_type="audio/wav",
        lossy=False,
        sample_rates=_HIRES_RATES,
        max_channels=8,
        builtin=True,
    ),
    "flac": FormatDescriptor(
        tag="flac",
        codec="flac",
        container="flac",
        mime_type="audio/flac",
        lossy=False,
        sample_rates=_HIRES_RATES,
        max_channels=8,
    ),
    "mp3": FormatDescriptor(
        tag="mp3",
        codec="libmp3lame",
        container="mp3",
        mime_type="audio/mpeg",
        lossy=True,
        sample_rates=_MPEG_RATES,
        max_channels=2,
        bitrate_range=(32, 320),
        default_bitrate=192,
    ),
    "aac": FormatDescriptor(
        tag="aac",
        codec="aac",
        container="adts",
        mime_type="audio/aac",
        lossy=True,
        sample_rates=_AAC_RATES,
        max_channels=8,
        bitrate_range=(32, 512),
        default_bitrate=192,
    ),
    "m4a": FormatDescriptor(
        tag="m4a",
        codec="aac",
        container="ipod",
        mime_type="audio/mp4",
        lossy=True,
        sample_rates=_AAC_RATES,
        max_channels=8,
        bitrate_range=(32, 512),
        default_bitrate=192,
        muxer_args=("-movflags", "frag_keyframe+empty_moov"),
    ),
    "ogg": FormatDescriptor(
        tag="ogg",
        codec="libvorbis",
        container="ogg",
        mime_type="audio/ogg",
        lossy=True,
        sample_rates=_HIRES_RATES,
        max_channels=8,
        bitrate_range=(45, 500),
        default_bitrate=160,
    ),
    "opus": FormatDescriptor(
        tag="opus",
        codec="libopus",
        container="opus",
        mime_type="audio/opus",
        lossy=True,
        sample_rates=_OPUS_RATES,
        max_channels=2,
        bitrate_range=(6, 510),
        default_bitrate=128,
    ),
    "wma": FormatDescriptor(
        tag="wma",
        codec="wmav2",
        container="asf",
        mime_type="audio/x-ms-wma",
        lossy=True,
        sample_rates=_MPEG_RATES,
        max_channels=2,
        bitrate_range=(32, 320),
        default_bitrate=128,
    ),
}

FORMATS = MappingProxyType(_FORMATS)


def normalize_tag(tag: str) -> str:
    """Normalize a format tag or file extension (``".MP3"`` -> ``"mp3"``)."""
    return tag.strip().lower().lstrip(".")


def resolve(tag: str) -> FormatDescriptor:
    """Look up the descriptor for a format tag.

    Args:
        tag: Format tag or file extension, case-insensitive.

    Returns:
        The matching FormatDescriptor.

    Raises:
        UnsupportedFormatError: If the tag is not registered.
    """
    descriptor = FORMATS.get(normalize_tag(tag))
    if descriptor is None:
        raise UnsupportedFormatError(tag)
    return descriptor


def supported_tags() -> list[str]:
    """Return all registered format tags, sorted."""
    return sorted(FORMATS)
