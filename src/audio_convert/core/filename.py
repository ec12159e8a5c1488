"""Output filename derivation and conflict resolution for audio-convert."""

from __future__ import annotations

import re
import time
from pathlib import Path

# Characters invalid on any OS (Windows is most restrictive)
INVALID_CHARS = r'[\\/:*?"<>|]'

# Maximum filename length (leaving room for extension)
MAX_FILENAME_LENGTH = 200


def sanitize(name: str, fallback: str = "audio") -> str:
    """Sanitize a file stem for cross-platform filesystem compatibility.

    Rules:
    1. Replace invalid characters with underscore
    2. Collapse runs of underscores and whitespace to a single underscore
    3. Strip leading/trailing whitespace and underscores
    4. Truncate to MAX_FILENAME_LENGTH characters
    5. If empty after sanitization, use fallback

    Args:
        name: The stem to sanitize.
        fallback: Fallback name if the stem becomes empty.

    Returns:
        A filesystem-safe filename (without extension).
    """
    if not name:
        return fallback

    sanitized = re.sub(INVALID_CHARS, "_", name)
    sanitized = re.sub(r"[\x00-\x1f\x7f]", "", sanitized)
    sanitized = re.sub(r"[_\s]+", "_", sanitized)
    sanitized = sanitized.strip(" _")

    if len(sanitized) > MAX_FILENAME_LENGTH:
        sanitized = sanitized[:MAX_FILENAME_LENGTH].rstrip(" _")

    if not sanitized:
        return fallback

    return sanitized


def output_name(source: Path, target_format: str) -> str:
    """Build the output filename for a converted source file.

    The original stem is kept and only the extension changes, so
    ``song.final.mp3`` converted to wav becomes ``song.final.wav``.

    Args:
        source: Path of the file that was converted.
        target_format: Target format tag (used as the extension).

    Returns:
        Filename with the target extension.
    """
    return f"{sanitize(source.stem)}.{target_format.lower().lstrip('.')}"


def resolve_conflict(path: Path) -> Path:
    """Append numeric suffix if file exists. Returns unique path.

    If file.wav exists, tries file (1).wav, file (2).wav, etc.
    Falls back to timestamp-based name if limit exceeded.

    Args:
        path: The desired output path.

    Returns:
        A unique path that doesn't exist yet.
    """
    if not path.exists():
        return path

    stem = path.stem
    suffix = path.suffix
    parent = path.parent

    max_attempts = 9999

    for counter in range(1, max_attempts + 1):
        new_path = parent / f"{stem} ({counter}){suffix}"
        if not new_path.exists():
            return new_path

    timestamp = int(time.time() * 1000)
    return parent / f"{stem}_{timestamp}{suffix}"
