"""Rich progress display for audio-convert."""

from __future__ import annotations

from collections.abc import Iterable

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from audio_convert.formats import FormatDescriptor

# Global console instance for consistent output
console = Console()

_TASK_DESCRIPTION_FORMAT = "[bold blue]{task.description}"


def create_conversion_progress() -> Progress:
    """Create Rich progress display for a conversion job.

    Displays: spinner, description, progress bar, percentage complete
    and elapsed time. Progress is tracked as a fraction of 1.0.

    Returns:
        Configured Progress instance.
    """
    return Progress(
        SpinnerColumn(),
        TextColumn(_TASK_DESCRIPTION_FORMAT),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


def formats_table(formats: Iterable[FormatDescriptor], ffmpeg_path: str = "ffmpeg") -> Table:
    """Build a table describing supported formats.

    Args:
        formats: Descriptors to list.
        ffmpeg_path: FFmpeg executable used to check availability.

    Returns:
        Rich table ready to print.
    """
    table = Table(title="Supported formats")
    table.add_column("Format", style="bold")
    table.add_column("Codec")
    table.add_column("Type")
    table.add_column("Bitrate (kbps)")
    table.add_column("Max channels", justify="right")
    table.add_column("Available")

    for descriptor in formats:
        if descriptor.bitrate_range:
            low, high = descriptor.bitrate_range
            bitrate = f"{low}-{high} (default {descriptor.default_bitrate})"
        else:
            bitrate = "-"
        available = descriptor.available(ffmpeg_path)
        table.add_row(
            descriptor.tag,
            descriptor.codec,
            "lossy" if descriptor.lossy else "lossless",
            bitrate,
            str(descriptor.max_channels),
            "[green]yes[/green]" if available else "[red]needs ffmpeg[/red]",
        )
    return table


def print_success(message: str) -> None:
    """Print a success message.

    Args:
        message: The message to print.
    """
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    """Print an error message.

    Args:
        message: The message to print.
    """
    console.print(f"[red]✗[/red] {message}", style="red")


def print_warning(message: str) -> None:
    """Print a warning message.

    Args:
        message: The message to print.
    """
    console.print(f"[yellow]![/yellow] {message}", style="yellow")


def print_info(message: str) -> None:
    """Print an info message.

    Args:
        message: The message to print.
    """
    console.print(f"[blue]→[/blue] {message}")
