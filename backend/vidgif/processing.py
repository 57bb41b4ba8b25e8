import asyncio
import contextlib
import logging
import math
import os
import tempfile
import time
import uuid
from enum import Enum
from typing import Callable, Iterator, List, Optional

from .engine import EngineProgress, ensure_engine_available, run_process_checked, run_process_with_progress
from .exceptions import InputNotFound, OutputExists
from .models import ConversionRequest, ProgressEvent
from .timerange import resolve_duration_ms

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

# ffmpeg reports nothing while building the palette; that pass owns 0-10%.
PALETTE_DONE_PERCENT = 10


class PipelineState(str, Enum):
    IDLE = "idle"
    VALIDATING_INPUTS = "validating_inputs"
    GENERATING_PALETTE = "generating_palette"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


def make_palette_path() -> str:
    name = f"vidgif-palette-{os.getpid()}-{time.time_ns()}-{uuid.uuid4().hex[:8]}.png"
    return os.path.join(tempfile.gettempdir(), name)


@contextlib.contextmanager
def scratch_file(path: str) -> Iterator[str]:
    """Yield ``path`` and remove whatever is there on exit."""
    try:
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not remove scratch file %s", path, exc_info=True)


def base_filters(request: ConversionRequest) -> str:
    return f"fps={request.fps},scale='min({request.width},iw)':-1:flags=lanczos"


def trim_args(request: ConversionRequest) -> List[str]:
    args: List[str] = []
    if request.start:
        args += ["-ss", request.start]
    if request.duration:
        args += ["-t", request.duration]
    return args


def encode_percent(out_time_ms: Optional[int], duration_ms: Optional[int]) -> int:
    if not duration_ms or out_time_ms is None:
        return PALETTE_DONE_PERCENT
    fraction = max(0.0, min(1.0, out_time_ms / duration_ms))
    # halves round up
    return math.floor(PALETTE_DONE_PERCENT + fraction * (100 - PALETTE_DONE_PERCENT) + 0.5)


class ConversionPipeline:
    """Two ffmpeg passes: build a palette from the clip, then encode with it.

    Both passes must see the same ``-ss``/``-t`` window, otherwise the palette
    is sampled from different frames than the ones being encoded.
    """

    def __init__(self, request: ConversionRequest, on_progress: Optional[ProgressCallback] = None):
        self.request = request
        self.state = PipelineState.IDLE
        self._on_progress = on_progress
        self._last_percent = 0

    def _transition(self, state: PipelineState):
        logger.debug("%s: %s -> %s", self.request.input, self.state.value, state.value)
        self.state = state

    def _emit(self, phase: str, percent: int, **extra):
        percent = max(percent, self._last_percent)
        self._last_percent = percent
        if self._on_progress is None:
            return
        try:
            self._on_progress(ProgressEvent(phase=phase, percent=percent, **extra))
        except Exception:
            logger.exception("Progress observer failed")

    async def run(self) -> str:
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("pipeline already ran")
        started = time.monotonic()
        try:
            self._transition(PipelineState.VALIDATING_INPUTS)
            await self._validate()
            trim = trim_args(self.request)
            with scratch_file(make_palette_path()) as palette:
                self._transition(PipelineState.GENERATING_PALETTE)
                await self._generate_palette(palette, trim)
                self._transition(PipelineState.ENCODING)
                await self._encode(palette, trim)
        except (Exception, asyncio.CancelledError):
            self._transition(PipelineState.FAILED)
            raise
        self._transition(PipelineState.DONE)
        self._emit("done", 100)
        logger.info("Converted %s -> %s in %.1fs", self.request.input, self.request.output, time.monotonic() - started)
        return self.request.output

    async def _validate(self):
        await ensure_engine_available()
        request = self.request
        if not os.path.exists(request.input):
            raise InputNotFound(request.input)
        out_dir = os.path.dirname(request.output)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        if not request.overwrite and os.path.exists(request.output):
            raise OutputExists(request.output)

    async def _generate_palette(self, palette: str, trim: List[str]):
        self._emit("palette", 0)
        await run_process_checked([
            "-y", "-v", "error",
            *trim,
            "-i", self.request.input,
            "-an",
            "-vf", f"{base_filters(self.request)},palettegen=stats_mode=diff",
            palette,
        ])
        self._emit("palette", PALETTE_DONE_PERCENT)

    async def _encode(self, palette: str, trim: List[str]):
        request = self.request
        duration_ms = await resolve_duration_ms(request)

        def on_block(block: EngineProgress):
            self._emit(
                "encode",
                encode_percent(block.out_time_ms, duration_ms),
                out_time_ms=block.out_time_ms,
                duration_ms=duration_ms,
            )

        await run_process_with_progress([
            "-y" if request.overwrite else "-n", "-v", "error",
            *trim,
            "-i", request.input,
            "-i", palette,
            "-an",
            "-lavfi", f"{base_filters(request)}[x];[x][1:v]paletteuse=dither=sierra2_4a",
            "-loop", str(request.loop),
            request.output,
        ], on_block)


async def convert_video_to_gif(request: ConversionRequest, on_progress: Optional[ProgressCallback] = None) -> str:
    return await ConversionPipeline(request, on_progress).run()
