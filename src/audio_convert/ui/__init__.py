"""UI feature - Rich progress display and console output."""

from audio_convert.ui.progress import (
    console,
    create_conversion_progress,
    formats_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

__all__ = [
    "console",
    "create_conversion_progress",
    "formats_table",
    "print_error",
    "print_info",
    "print_success",
    "print_warning",
]
