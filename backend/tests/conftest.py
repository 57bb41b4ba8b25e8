import json
import sys
from pathlib import Path

import pytest

# Ensure the project root (backend/) is on sys.path so tests can import the `vidgif` package.
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from vidgif.config import settings  # noqa: E402

# Stands in for both ffmpeg and ffprobe. Behaviour is steered through env vars.
FAKE_ENGINE = r'''
import json, os, sys

args = sys.argv[1:]
log = os.environ.get("FAKE_ENGINE_LOG")
if log:
    with open(log, "a") as f:
        f.write(json.dumps(args) + "\n")

if "-version" in args:
    print("ffmpeg version 0.0-fake")
    sys.exit(0)

if "-show_entries" in args:
    duration = os.environ.get("FAKE_PROBE_DURATION", "2.0")
    if duration == "fail":
        sys.stderr.write("probe failed\n")
        sys.exit(1)
    print(duration)
    sys.exit(0)

fail = os.environ.get("FAKE_ENGINE_FAIL", "")
output = args[-1]

if any("palettegen" in a for a in args):
    if fail == "palette":
        sys.stderr.write("palette pass exploded\n")
        sys.exit(1)
    with open(output, "wb") as f:
        f.write(b"PALETTE")
    sys.exit(0)

if "-n" in args and os.path.exists(output):
    sys.stderr.write("File '%s' already exists. Exiting.\n" % output)
    sys.exit(1)
if fail == "encode":
    sys.stderr.write("encode pass exploded\n")
    sys.exit(1)
if "-progress" in args:
    for us in (0, 500000, 1000000, 2000000):
        sys.stdout.write("frame=1\nout_time_us=%d\nout_time_ms=%d\nprogress=continue\n" % (us, us))
        sys.stdout.flush()
    sys.stdout.write("progress=end\n")
with open(output, "wb") as f:
    f.write(b"GIF89a fake")
'''


class FakeEngine:
    def __init__(self, path: Path, log: Path):
        self.path = path
        self.log = log

    def calls(self):
        if not self.log.exists():
            return []
        return [json.loads(line) for line in self.log.read_text().splitlines()]

    def transcodes(self):
        return [c for c in self.calls() if "-version" not in c and "-show_entries" not in c]


@pytest.fixture
def fake_engine(tmp_path, monkeypatch):
    script = tmp_path / "fake-ffmpeg"
    script.write_text(f"#!{sys.executable}\n{FAKE_ENGINE}")
    script.chmod(0o755)
    log = tmp_path / "engine.log"
    monkeypatch.setattr(settings, "FFMPEG_BIN", str(script))
    monkeypatch.setattr(settings, "FFPROBE_BIN", str(script))
    monkeypatch.setenv("FAKE_ENGINE_LOG", str(log))
    monkeypatch.delenv("FAKE_ENGINE_FAIL", raising=False)
    monkeypatch.delenv("FAKE_PROBE_DURATION", raising=False)
    return FakeEngine(script, log)


@pytest.fixture
def input_video(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"not really a video")
    return path
