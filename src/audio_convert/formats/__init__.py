"""Formats feature - registry of supported codecs and header probing."""

from audio_convert.formats.probe import AudioStreamDescriptor, probe
from audio_convert.formats.registry import (
    FORMATS,
    EncodingOptions,
    FormatDescriptor,
    normalize_tag,
    resolve,
    supported_tags,
)

__all__ = [
    "FORMATS",
    "AudioStreamDescriptor",
    "EncodingOptions",
    "FormatDescriptor",
    "normalize_tag",
    "probe",
    "resolve",
    "supported_tags",
]
