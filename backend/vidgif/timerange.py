import logging
import math
import re
from decimal import Decimal
from typing import Optional

from .config import settings
from .engine import run_process
from .models import ConversionRequest

logger = logging.getLogger(__name__)

SECONDS_RE = re.compile(r"^\d+(\.\d+)?$", re.ASCII)
CLOCK_RE = re.compile(r"^(\d+):([0-5]?\d):([0-5]?\d)(\.\d+)?$", re.ASCII)


async def probe_duration_ms(path: str) -> Optional[int]:
    """Total media duration in milliseconds, or None when it can't be probed.

    Only used for progress percentages, so every failure degrades to None.
    """
    try:
        result = await run_process(settings.FFPROBE_BIN, [
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            path,
        ])
    except OSError as e:
        logger.debug("ffprobe unavailable: %s", e)
        return None
    if result.code != 0:
        return None
    try:
        seconds = float(result.stdout.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return math.floor(seconds * 1000)


def parse_time_spec_ms(spec: Optional[str]) -> Optional[int]:
    """Parse ``SS[.fff]`` or ``HH:MM:SS[.fff]`` into milliseconds (floored)."""
    if spec is None:
        return None
    value = spec.strip()
    if not value:
        return None

    if SECONDS_RE.match(value):
        return int(Decimal(value) * 1000)

    m = CLOCK_RE.match(value)
    if not m:
        return None
    hours, minutes = int(m.group(1)), int(m.group(2))
    seconds = Decimal(m.group(3) + (m.group(4) or ""))
    return int(((hours * 60 + minutes) * 60 + seconds) * 1000)


def compute_effective_duration_ms(
    full_ms: Optional[int], start_ms: Optional[int], explicit_ms: Optional[int]
) -> Optional[int]:
    if explicit_ms is not None:
        return explicit_ms
    if full_ms is None:
        return None
    if start_ms is None:
        return full_ms
    return max(0, full_ms - start_ms)


async def resolve_duration_ms(request: ConversionRequest) -> Optional[int]:
    """Denominator for encode-phase progress of ``request``."""
    return compute_effective_duration_ms(
        await probe_duration_ms(request.input),
        parse_time_spec_ms(request.start),
        parse_time_spec_ms(request.duration),
    )
