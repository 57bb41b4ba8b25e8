import os
import re
import uuid
from typing import Iterable, Literal, Optional


def safe_filename(filename: str) -> str:
    name = os.path.basename(filename)
    name = re.sub(r'[^A-Za-z0-9._-]', '_', name)
    return name


def make_unique_filename(filename: str, prefix: str = "upload") -> str:
    ext = os.path.splitext(safe_filename(filename))[1] or ".bin"
    return f"{prefix}-{uuid.uuid4().hex}{ext}"


def allowed_file(filename: str, allowed_ext: Iterable[str]) -> bool:
    ext = os.path.splitext(filename)[1].lower().lstrip(".")
    return ext in {e.lower() for e in allowed_ext}


def default_output_path(input_path: str) -> str:
    """``clips/input.mp4`` -> ``clips/input.gif``"""
    base, _ = os.path.splitext(input_path)
    return base + ".gif"


# Lenient parsing for HTML form fields: bad values fall back to defaults.

def parse_positive_int(value: Optional[str], fallback: int) -> int:
    if value is None:
        return fallback
    try:
        number = int(value.strip())
    except ValueError:
        return fallback
    return number if number > 0 else fallback


def parse_time_field(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_loop(value: Optional[str]) -> Literal[0, 1]:
    return 1 if value == "1" else 0
