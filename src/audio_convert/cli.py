"""CLI implementation for audio-convert."""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import typer
from rich.logging import RichHandler
from rich.markup import escape

from audio_convert import __version__
from audio_convert.config import ServiceConfig
from audio_convert.core import (
    BackpressureError,
    CodecUnavailableError,
    ConversionServiceError,
    RetryConfig,
    format_error,
    is_retryable_error,
    output_name,
    resolve_conflict,
)
from audio_convert.formats import normalize_tag, resolve, supported_tags
from audio_convert.jobs import JobState
from audio_convert.pipeline import check_ffmpeg
from audio_convert.service import ConversionService, StatusReport
from audio_convert.ui import (
    console,
    create_conversion_progress,
    formats_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

logger = logging.getLogger(__name__)

# Seconds between status polls
POLL_INTERVAL = 0.1

# Exit code after Ctrl-C
EXIT_INTERRUPTED = 130

app = typer.Typer(
    name="audio-convert",
    help="Convert audio files between formats.",
    add_completion=False,
    no_args_is_help=True,
)


@dataclass
class PendingConversion:
    """A submitted file waiting for its job to finish."""

    source: Path
    job_id: str


def validate_format(value: str | None) -> str | None:
    """Validate and normalize a format tag.

    Args:
        value: The format string to validate.

    Returns:
        Normalized format tag, or None when not given.

    Raises:
        typer.BadParameter: If the format is not supported.
    """
    if value is None:
        return None
    normalized = normalize_tag(value)
    if normalized not in supported_tags():
        raise typer.BadParameter(
            f"Invalid format '{value}'. Valid formats: {', '.join(supported_tags())}"
        )
    return normalized


def configure_logging(verbose: bool) -> None:
    """Route log records through Rich; DEBUG when verbose, else WARNING."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def submit_with_retry(
    service: ConversionService,
    retry: RetryConfig,
    source: bytes,
    source_format: str,
    target_format: str,
    bitrate: int | None = None,
    sample_rate: int | None = None,
    channels: int | None = None,
) -> str:
    """Submit a job, backing off while the queue is full.

    Raises:
        ConversionServiceError: If submission fails permanently or
            retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return service.submit(
                source,
                source_format,
                target_format,
                bitrate=bitrate,
                sample_rate=sample_rate,
                channels=channels,
            )
        except BackpressureError as e:
            if not is_retryable_error(e) or not retry.should_retry(attempt):
                raise
            delay = retry.delay_for_attempt(attempt)
            logger.debug("Queue full, retrying in %.2fs", delay)
            time.sleep(delay)
            attempt += 1


def wait_with_progress(
    service: ConversionService, pending: list[PendingConversion]
) -> dict[str, StatusReport]:
    """Poll every job until it is terminal, rendering one bar per job.

    Returns:
        Final status per job id.
    """
    reports: dict[str, StatusReport] = {}
    busy: list[str] = []
    with create_conversion_progress() as progress:
        tasks = {
            item.job_id: progress.add_task(f"{item.source.name}", total=1.0)
            for item in pending
        }
        while len(reports) < len(pending):
            for item in pending:
                if item.job_id in reports:
                    continue
                report = service.status(item.job_id)
                progress.update(tasks[item.job_id], completed=report.progress)
                if report.done:
                    reports[item.job_id] = report
            workers = [state.display_line for state in service.active_workers()]
            if workers != busy:
                logger.debug("Workers: %s", ", ".join(workers) or "all idle")
                busy = workers
            time.sleep(POLL_INTERVAL)
    return reports


def save_result(
    service: ConversionService, item: PendingConversion, output_dir: Path
) -> Path:
    """Fetch a finished job and write it next to other outputs.

    The artifact is written to a hidden temporary file first and renamed
    into place, so a failed write never leaves a partial output.
    """
    result = service.fetch(item.job_id)
    final_path = resolve_conflict(output_dir / output_name(item.source, result.format))
    temp_path = output_dir / f".{final_path.name}.tmp"
    try:
        temp_path.write_bytes(result.data)
        temp_path.replace(final_path)
    finally:
        if temp_path.exists():
            with contextlib.suppress(OSError):
                temp_path.unlink()
    return final_path


def _report_failure(item: PendingConversion, report: StatusReport) -> None:
    if report.state is JobState.CANCELLED:
        print_warning(f"{item.source.name}: cancelled")
    elif report.error is not None:
        error = report.error
        print_error(escape(f"{item.source.name}: [{error.code}] {error.message}"))
    else:
        print_error(f"{item.source.name}: conversion failed")


def process_files(
    sources: list[Path],
    target_format: str,
    source_format: str | None,
    output_dir: Path,
    config: ServiceConfig,
    bitrate: int | None = None,
    sample_rate: int | None = None,
    channels: int | None = None,
) -> int:
    """Convert files through a local conversion service.

    Args:
        sources: Files to convert.
        target_format: Target format tag.
        source_format: Source format tag; each file's extension when None.
        output_dir: Directory for converted files.
        config: Service configuration.
        bitrate: Optional target bitrate in kbps.
        sample_rate: Optional target sample rate in Hz.
        channels: Optional target channel count.

    Returns:
        Exit code (0 = all success, 1 = some failures).
    """
    retry = RetryConfig()
    pending: list[PendingConversion] = []
    failed = 0

    with ConversionService(config) as service:
        for source in sources:
            declared = source_format or normalize_tag(source.suffix)
            try:
                job_id = submit_with_retry(
                    service,
                    retry,
                    source.read_bytes(),
                    declared,
                    target_format,
                    bitrate=bitrate,
                    sample_rate=sample_rate,
                    channels=channels,
                )
            except (ConversionServiceError, OSError) as e:
                print_error(escape(f"{source.name}: {format_error(e)}"))
                failed += 1
                continue
            pending.append(PendingConversion(source, job_id))

        try:
            reports = wait_with_progress(service, pending)
        except KeyboardInterrupt:
            for item in pending:
                service.cancel(item.job_id)
            print_warning("Interrupted, cancelled pending conversions")
            return EXIT_INTERRUPTED

        succeeded = 0
        for item in pending:
            report = reports[item.job_id]
            if report.state is not JobState.SUCCEEDED:
                _report_failure(item, report)
                failed += 1
                continue
            try:
                path = save_result(service, item, output_dir)
            except (ConversionServiceError, OSError) as e:
                print_error(escape(f"{item.source.name}: {format_error(e)}"))
                failed += 1
                continue
            print_success(f"Saved: {path}")
            succeeded += 1

    if len(sources) > 1:
        print_info(f"Completed: {succeeded} succeeded, {failed} failed")
    return 0 if failed == 0 else 1


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        print(f"audio-convert version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[  # noqa: ARG001
        bool,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
) -> None:
    """Convert audio files between formats."""


@app.command()
def convert(
    sources: Annotated[
        list[Path],
        typer.Argument(
            help="One or more audio files to convert.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            show_default=False,
        ),
    ],
    to: Annotated[
        str,
        typer.Option(
            "--to",
            "-t",
            help=f"Target format: {', '.join(supported_tags())}",
            callback=validate_format,
        ),
    ] = "mp3",
    from_format: Annotated[
        str | None,
        typer.Option(
            "--from",
            "-f",
            help="Source format (defaults to each file's extension).",
            callback=validate_format,
        ),
    ] = None,
    output: Annotated[
        Path,
        typer.Option(
            "--output",
            "-o",
            help="Output directory for converted files.",
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
        ),
    ] = Path(),
    bitrate: Annotated[
        int | None,
        typer.Option("--bitrate", "-b", help="Target bitrate in kbps.", min=6, max=512),
    ] = None,
    sample_rate: Annotated[
        int | None,
        typer.Option("--sample-rate", "-r", help="Target sample rate in Hz.", min=8000),
    ] = None,
    channels: Annotated[
        int | None,
        typer.Option("--channels", "-c", help="Target channel count.", min=1, max=8),
    ] = None,
    workers: Annotated[
        int,
        typer.Option("--workers", "-w", help="Concurrent conversions.", min=1, max=16),
    ] = 2,
    chunk_timeout: Annotated[
        float,
        typer.Option("--chunk-timeout", help="Seconds allowed per audio chunk.", min=0.1),
    ] = 10.0,
    ffmpeg: Annotated[
        str,
        typer.Option("--ffmpeg", help="FFmpeg executable for compressed formats."),
    ] = "ffmpeg",
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Show debug logging."),
    ] = False,
) -> None:
    """Convert audio files and save them with the target extension."""
    configure_logging(verbose)

    declared = {from_format or normalize_tag(path.suffix) for path in sources}
    try:
        descriptors = [resolve(tag) for tag in declared | {to}]
    except ConversionServiceError as e:
        print_error(format_error(e))
        raise typer.Exit(code=2) from e

    if not all(d.builtin for d in descriptors) and not check_ffmpeg(ffmpeg):
        print_error(format_error(CodecUnavailableError(ffmpeg)))
        raise typer.Exit(code=2)

    config = ServiceConfig(
        workers=workers,
        chunk_timeout=chunk_timeout,
        max_queue_depth=max(len(sources), ServiceConfig.max_queue_depth),
        ffmpeg_path=ffmpeg,
    )
    exit_code = process_files(
        sources=sources,
        target_format=to,
        source_format=from_format,
        output_dir=output,
        config=config,
        bitrate=bitrate,
        sample_rate=sample_rate,
        channels=channels,
    )
    raise typer.Exit(code=exit_code)


@app.command()
def formats(
    ffmpeg: Annotated[
        str,
        typer.Option("--ffmpeg", help="FFmpeg executable to check for."),
    ] = "ffmpeg",
) -> None:
    """List supported formats and whether they can run on this machine."""
    service_formats = [resolve(tag) for tag in supported_tags()]
    console.print(formats_table(service_formats, ffmpeg))


if __name__ == "__main__":
    app()
