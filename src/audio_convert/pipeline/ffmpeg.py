"""FFmpeg subprocess wrapper for streaming decode and encode.

FFmpeg is run with raw PCM on one side of a pipe. Pipe I/O happens on
helper threads so that every read or write the pipeline waits on can be
bounded by a timeout; a stalled FFmpeg never hangs a worker.
"""

from __future__ import annotations

import logging
import queue
import re
import shutil
import subprocess  # nosec B404
import threading
from pathlib import Path
from typing import IO

from audio_convert.core import CodecUnavailableError, TranscodeTimeoutError
from audio_convert.formats import FormatDescriptor

logger = logging.getLogger(__name__)

# Raw PCM layout exchanged with FFmpeg
PCM_FORMAT = "s16le"
PCM_CODEC = "pcm_s16le"

# Bytes of stderr kept for error messages
STDERR_TAIL = 4096

# Read size for encoder output
OUTPUT_READ_SIZE = 64 * 1024

_EOF = b""

# Input summary line, e.g. "  Duration: 00:03:25.47, start: 0.000000"
_DURATION_RE = re.compile(rb"Duration: (\d+):(\d{2}):(\d{2}(?:\.\d+)?)")

_INFO_TAG = b"[info] "


def check_ffmpeg(ffmpeg_path: str = "ffmpeg") -> bool:
    """Check if FFmpeg is available on PATH.

    Returns:
        True if FFmpeg is available, False otherwise.
    """
    return shutil.which(ffmpeg_path) is not None


def build_decode_command(
    ffmpeg_path: str,
    input_path: Path,
    sample_rate: int,
    channels: int,
) -> list[str]:
    """Build FFmpeg command decoding a file to raw PCM on stdout.

    Logs at info level with level tags so that the input summary (and
    its duration) can be read from stderr while only warnings and errors
    are kept for failure messages.
    """
    return [
        ffmpeg_path,
        "-hide_banner",
        "-nostats",
        "-loglevel",
        "level+info",
        "-nostdin",
        "-i",
        str(input_path),
        "-vn",
        "-f",
        PCM_FORMAT,
        "-c:a",
        PCM_CODEC,
        "-ac",
        str(channels),
        "-ar",
        str(sample_rate),
        "pipe:1",
    ]


def build_encode_command(
    ffmpeg_path: str,
    target: FormatDescriptor,
    sample_rate: int,
    channels: int,
    bitrate: int | None,
) -> list[str]:
    """Build FFmpeg command encoding raw PCM from stdin to stdout."""
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        PCM_FORMAT,
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-i",
        "pipe:0",
        "-c:a",
        target.codec,
    ]

    if bitrate and target.lossy:
        cmd.extend(["-b:a", f"{bitrate}k"])

    cmd.extend(target.muxer_args)
    cmd.extend(["-f", target.container, "pipe:1"])
    return cmd


def spawn(cmd: list[str], with_stdin: bool) -> subprocess.Popen[bytes]:
    """Start FFmpeg with binary pipes.

    Raises:
        CodecUnavailableError: If the executable cannot be found.
    """
    if not check_ffmpeg(cmd[0]):
        raise CodecUnavailableError(cmd[0])
    logger.debug("Starting %s", " ".join(cmd))
    try:
        return subprocess.Popen(  # nosec B603
            cmd,
            stdin=subprocess.PIPE if with_stdin else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise CodecUnavailableError(cmd[0]) from e


def terminate(process: subprocess.Popen[bytes], timeout: float) -> None:
    """Stop a process, killing it if it does not exit within ``timeout``."""
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("FFmpeg (pid %s) ignored SIGTERM, killing", process.pid)
        process.kill()
        process.wait()


class StderrTail:
    """Drain a stderr pipe on a thread, keeping only the last few KiB.

    Informational lines (tagged ``[info]`` when FFmpeg logs with level
    tags) are left out of the tail. The first ``Duration:`` line seen is
    parsed into :attr:`duration`.
    """

    def __init__(self, stream: IO[bytes]) -> None:
        self._tail = bytearray()
        self.duration: float | None = None
        self._thread = threading.Thread(
            target=self._run, args=(stream,), name="ffmpeg-stderr", daemon=True
        )
        self._thread.start()

    def _run(self, stream: IO[bytes]) -> None:
        for line in stream:
            if self.duration is None and (match := _DURATION_RE.search(line)):
                hours, minutes, seconds = match.groups()
                self.duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
            if _INFO_TAG in line:
                continue
            self._tail.extend(line)
            del self._tail[:-STDERR_TAIL]

    def text(self, timeout: float = 1.0) -> str:
        """Return collected stderr text once the stream has closed."""
        self._thread.join(timeout)
        return self._tail.decode("utf-8", errors="replace").strip()


class PipeReader:
    """Read a pipe on a background thread, handing chunks over a queue.

    Args:
        stream: Binary stream to read.
        chunk_size: Bytes per read.
        partial: Return whatever is available (``read1``) instead of
            waiting for full ``chunk_size`` reads.
        stage: Stage name used in timeout errors.
    """

    def __init__(
        self,
        stream: IO[bytes],
        chunk_size: int,
        partial: bool = False,
        stage: str = "read",
    ) -> None:
        self._stream = stream
        self._chunk_size = chunk_size
        self._partial = partial
        self._stage = stage
        self._queue: queue.Queue[bytes | BaseException] = queue.Queue(maxsize=8)
        self._stopped = threading.Event()
        self._eof = False
        self._thread = threading.Thread(
            target=self._run, name=f"ffmpeg-{stage}", daemon=True
        )
        self._thread.start()

    def _put(self, item: bytes | BaseException) -> bool:
        while not self._stopped.is_set():
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _run(self) -> None:
        read = self._stream.read1 if self._partial else self._stream.read  # type: ignore[attr-defined]
        try:
            while True:
                data = read(self._chunk_size)
                if not self._put(data) or not data:
                    return
        except (OSError, ValueError) as e:
            self._put(e)

    @property
    def at_eof(self) -> bool:
        """True once the end of the stream has been handed out."""
        return self._eof

    def read(self, timeout: float) -> bytes:
        """Return the next chunk, or ``b""`` at end of stream.

        Raises:
            TranscodeTimeoutError: If nothing arrives within ``timeout``.
            OSError: If the underlying read failed.
        """
        if self._eof:
            return _EOF
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TranscodeTimeoutError(self._stage, timeout) from None
        if isinstance(item, BaseException):
            raise item
        if not item:
            self._eof = True
        return item

    def drain(self) -> bytes:
        """Return everything queued right now without waiting."""
        parts: list[bytes] = []
        while not self._eof:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, BaseException):
                raise item
            if not item:
                self._eof = True
            parts.append(item)
        return b"".join(parts)

    def stop(self) -> None:
        """Stop handing over data; the thread exits on its next read."""
        self._stopped.set()


class PipeWriter:
    """Write to a pipe on a background thread with a per-write deadline.

    Args:
        stream: Binary stream to write.
        stage: Stage name used in timeout errors.
    """

    def __init__(self, stream: IO[bytes], stage: str = "write") -> None:
        self._stream = stream
        self._stage = stage
        self._queue: queue.Queue[bytes | None] = queue.Queue(maxsize=1)
        self._done = threading.Semaphore(0)
        self._error: OSError | None = None
        self._thread = threading.Thread(
            target=self._run, name=f"ffmpeg-{stage}", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    self._stream.close()
                    return
                self._stream.write(item)
                self._stream.flush()
            except OSError as e:
                self._error = e
            finally:
                self._done.release()
            if self._error is not None:
                return

    def _submit(self, item: bytes | None, timeout: float) -> None:
        if self._error is not None:
            raise self._error
        try:
            self._queue.put(item, timeout=timeout)
        except queue.Full:
            raise TranscodeTimeoutError(self._stage, timeout) from None
        if not self._done.acquire(timeout=timeout):
            raise TranscodeTimeoutError(self._stage, timeout)
        if self._error is not None:
            raise self._error

    def write(self, data: bytes, timeout: float) -> None:
        """Write ``data``, failing if it is not accepted within ``timeout``.

        Raises:
            TranscodeTimeoutError: If the pipe stays blocked.
            OSError: If the pipe is broken.
        """
        self._submit(data, timeout)

    def close(self, timeout: float) -> None:
        """Close the pipe so the reader sees end of input."""
        self._submit(None, timeout)
