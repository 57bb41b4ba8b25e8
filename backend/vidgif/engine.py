"""Async wrapper around the ffmpeg executable.

Spawns ffmpeg, captures its output and, for long transcodes, turns the
``-progress`` telemetry on stdout into ``EngineProgress`` blocks.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import settings
from .exceptions import EngineExecutionError, EngineUnavailable
from .models import EngineProcessResult

logger = logging.getLogger(__name__)

PROGRESS_ARGS = ("-progress", "pipe:1", "-nostats")

# Some builds report microseconds under ``out_time_ms``. Above this value a
# "millisecond" reading would mean a clip longer than ~16.7 hours, so it is
# treated as microseconds. True milliseconds past that point are misread.
MICROSECONDS_THRESHOLD = 60_000_000


@dataclass
class EngineProgress:
    out_time_ms: Optional[int]
    fields: Dict[str, str] = field(default_factory=dict)


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


async def _terminate(process: asyncio.subprocess.Process):
    """Kill a still-running child and reap it."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


def command_line(args: List[str]) -> str:
    """Shell-safe rendering of an ffmpeg invocation, for error messages."""
    return shlex.join([settings.FFMPEG_BIN, *args])


def _failure(args: List[str], result: EngineProcessResult) -> EngineExecutionError:
    output = (result.stderr.strip() or result.stdout.strip())
    return EngineExecutionError(command_line(args), output, returncode=result.code)


async def run_process(cmd: str, args: List[str]) -> EngineProcessResult:
    """Run ``cmd`` to completion and capture both output streams.

    Raises ``OSError`` (e.g. ``FileNotFoundError``) only when the process
    cannot be started.
    """
    process = await asyncio.create_subprocess_exec(
        cmd,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        await _terminate(process)
        raise
    return EngineProcessResult(code=process.returncode or 0, stdout=_decode(stdout), stderr=_decode(stderr))


async def ensure_engine_available():
    try:
        result = await run_process(settings.FFMPEG_BIN, ["-version"])
    except OSError as e:
        raise EngineUnavailable(str(e)) from e
    if result.code != 0:
        raise EngineUnavailable(result.stderr.strip() or f"ffmpeg exited with code {result.code}")


async def run_process_checked(args: List[str]) -> EngineProcessResult:
    logger.debug("Running %s", command_line(args))
    result = await run_process(settings.FFMPEG_BIN, args)
    if result.code != 0:
        raise _failure(args, result)
    return result


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(value)
    except ValueError:
        return None
    return number if number >= 0 else None


def _parse_clock(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    parts = value.split(":")
    if len(parts) != 3:
        return None
    try:
        seconds = (int(parts[0]) * 60 + int(parts[1])) * 60 + float(parts[2])
    except ValueError:
        return None
    return int(seconds * 1000) if seconds >= 0 else None


def out_time_ms_from_fields(fields: Dict[str, str]) -> Optional[int]:
    us = _parse_int(fields.get("out_time_us"))
    if us is not None:
        return us // 1000
    ms = _parse_int(fields.get("out_time_ms"))
    if ms is not None:
        return ms // 1000 if ms > MICROSECONDS_THRESHOLD else ms
    return _parse_clock(fields.get("out_time"))


class ProgressParser:
    """Groups ``key=value`` lines into blocks.

    A block ends at a blank line or at a ``progress=`` line (ffmpeg writes
    ``progress=continue`` after every block and ``progress=end`` after the last).
    """

    def __init__(self):
        self._fields: Dict[str, str] = {}

    def feed(self, line: str) -> Optional[EngineProgress]:
        line = line.strip()
        if not line:
            return self._complete() if self._fields else None
        key, sep, value = line.partition("=")
        if not sep:
            return None
        key = key.strip()
        self._fields[key] = value.strip()
        if key == "progress":
            return self._complete()
        return None

    def _complete(self) -> EngineProgress:
        fields, self._fields = self._fields, {}
        return EngineProgress(out_time_ms=out_time_ms_from_fields(fields), fields=fields)


async def run_process_with_progress(
    args: List[str], on_progress: Callable[[EngineProgress], None]
) -> EngineProcessResult:
    full_args = [*PROGRESS_ARGS, *args]
    logger.debug("Running %s", command_line(full_args))
    process = await asyncio.create_subprocess_exec(
        settings.FFMPEG_BIN,
        *full_args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    parser = ProgressParser()
    stdout_lines: List[str] = []

    async def read_stdout():
        async for raw in process.stdout:
            line = _decode(raw)
            stdout_lines.append(line)
            block = parser.feed(line)
            if block is not None:
                on_progress(block)

    try:
        _, stderr = await asyncio.gather(read_stdout(), process.stderr.read())
        await process.wait()
    finally:
        await _terminate(process)

    result = EngineProcessResult(
        code=process.returncode or 0, stdout="".join(stdout_lines), stderr=_decode(stderr)
    )
    if result.code != 0:
        raise _failure(full_args, result)
    return result
