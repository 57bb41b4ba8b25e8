import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from vidgif.config import settings
from vidgif.jobs import JobRegistry
from vidgif.main import app, save_upload_file
from vidgif.models import ProgressEvent


async def fake_converter(request, on_progress):
    on_progress(ProgressEvent(phase="palette", percent=0))
    on_progress(ProgressEvent(phase="palette", percent=10))
    if request.width == 13:
        raise RuntimeError("unlucky width")
    with open(request.output, "wb") as f:
        f.write(b"GIF89a api")
    on_progress(ProgressEvent(phase="done", percent=100))


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    with TestClient(app) as c:
        app.state.registry = JobRegistry(60, converter=fake_converter)
        yield c


def submit(client, filename="clip.mp4", **form):
    return client.post("/convert", files={"video": (filename, b"video bytes", "video/mp4")}, data=form)


def wait_for(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/status/{job_id}").json()
        if status["status"] != "running":
            return status
        time.sleep(0.01)
    raise AssertionError("job did not finish")


def read_events(client, job_id):
    names = []
    with client.stream("GET", f"/progress/{job_id}") as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        for line in resp.iter_lines():
            if line.startswith("event: "):
                names.append(line[len("event: "):])
    return names


def test_convert_and_download(client):
    resp = submit(client, width="320", fps="10", start=" 1 ", duration="", loop="1")
    assert resp.status_code == 200
    job_id = resp.json()["job_id"]
    assert resp.json()["status"] == "running"

    assert wait_for(client, job_id)["status"] == "done"
    request = app.state.registry.get(job_id).request
    assert (request.width, request.fps, request.start, request.duration, request.loop) == (320, 10, "1", None, 1)
    assert request.overwrite is True

    events = read_events(client, job_id)
    assert events[0] == "status"
    assert events[-1] == "done"

    result = client.get(f"/result/{job_id}")
    assert result.status_code == 200
    assert result.headers["content-type"] == "image/gif"
    assert "attachment" in result.headers["content-disposition"]
    assert result.content == b"GIF89a api"


def test_form_defaults(client):
    job_id = submit(client, width="-3", fps="abc", loop="yes").json()["job_id"]
    wait_for(client, job_id)
    request = app.state.registry.get(job_id).request
    assert (request.width, request.fps, request.loop) == (settings.DEFAULT_WIDTH, settings.DEFAULT_FPS, 0)


def test_failed_job(client):
    job_id = submit(client, width="13").json()["job_id"]
    status = wait_for(client, job_id)
    assert status["status"] == "error"
    assert status["error"] == "unlucky width"
    assert read_events(client, job_id)[-1] == "joberror"
    resp = client.get(f"/result/{job_id}")
    assert resp.status_code == 409
    assert resp.json()["detail"] == "unlucky width"


def test_unknown_job(client):
    assert client.get("/progress/nope").status_code == 404
    assert client.get("/status/nope").status_code == 404
    assert client.get("/result/nope").status_code == 404


def test_missing_file(client):
    resp = client.post("/convert", data={"width": "100"})
    assert resp.status_code == 400


def test_unsupported_extension(client):
    resp = submit(client, filename="notes.txt")
    assert resp.status_code == 400


def test_upload_too_large(client, monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "MAX_UPLOAD_MB", 0)
    resp = submit(client)
    assert resp.status_code == 400
    assert list((tmp_path / "uploads").iterdir()) == []


def test_health(client, fake_engine, tmp_path, monkeypatch):
    assert client.get("/health").status_code == 200
    monkeypatch.setattr(settings, "FFMPEG_BIN", str(tmp_path / "missing"))
    assert client.get("/health").status_code == 503


class BrokenUpload:
    """Yields one chunk, then fails like a dropped connection."""

    def __init__(self):
        self.reads = 0
        self.closed = False

    async def read(self, size):
        self.reads += 1
        if self.reads == 1:
            return b"0123456789"
        raise OSError("connection reset")

    async def close(self):
        self.closed = True


def test_interrupted_upload_is_removed(tmp_path):
    destination = tmp_path / "partial.mp4"
    upload = BrokenUpload()
    with pytest.raises(OSError):
        asyncio.run(save_upload_file(upload, str(destination), 1024))
    assert not destination.exists()
    assert upload.closed
