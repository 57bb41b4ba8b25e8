import argparse
import asyncio
import sys
from typing import List, Optional

from .config import configure_logging, settings
from .exceptions import VidgifError
from .models import ConversionRequest, ProgressEvent
from .processing import convert_video_to_gif
from .utils import default_output_path

EXAMPLES = """\
examples:
  vidgif input.mp4
  vidgif input.mp4 out.gif --width 640 --fps 20
  vidgif input.mp4 --start 00:00:05 --duration 3
"""


class UsageError(Exception):
    pass


class ArgumentParser(argparse.ArgumentParser):
    # argparse exits with status 2 on bad usage; this CLI uses 1 for every failure
    def error(self, message):
        raise UsageError(message)


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        number = 0
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be an integer > 0, got {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog="vidgif",
        description="Convert a video into an animated GIF with ffmpeg.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("input", help="input video file")
    parser.add_argument("output", nargs="?", help="output GIF (default: <input name>.gif)")
    parser.add_argument("--width", type=positive_int, default=settings.DEFAULT_WIDTH,
                        help=f"GIF width in pixels (default: {settings.DEFAULT_WIDTH})")
    parser.add_argument("--fps", type=positive_int, default=settings.DEFAULT_FPS,
                        help=f"GIF frame rate (default: {settings.DEFAULT_FPS})")
    parser.add_argument("--start", help="start offset, e.g. 00:00:02 or 2.5")
    parser.add_argument("--duration", help="clip length, e.g. 3 or 00:00:03")
    parser.add_argument("--loop", type=int, choices=(0, 1), default=0,
                        help="0 = loop forever, 1 = play once (default: 0)")
    parser.add_argument("--overwrite", action="store_true", help="replace the output file if it exists")
    parser.add_argument("-q", "--quiet", action="store_true", help="don't print progress")
    return parser


def parse_args(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)
    request = ConversionRequest(
        input=args.input,
        output=args.output or default_output_path(args.input),
        width=args.width,
        fps=args.fps,
        start=args.start,
        duration=args.duration,
        overwrite=args.overwrite,
        loop=args.loop,
    )
    return request, args.quiet


def print_progress(event: ProgressEvent):
    print(f"\r{event.phase:<8} {event.percent:3d}%", end="", file=sys.stderr, flush=True)
    if event.phase == "done":
        print(file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging("WARNING")
    try:
        request, quiet = parse_args(argv)
        asyncio.run(convert_video_to_gif(request, None if quiet else print_progress))
    except SystemExit as e:
        # -h/--help
        return e.code or 0
    except (UsageError, VidgifError, OSError) as e:
        print(e, file=sys.stderr)
        print("\nUse --help to see options.", file=sys.stderr)
        return 1
    print(f"GIF written: {request.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
