import contextlib
import json
import logging
import os
import uuid
from typing import Optional

import aiofiles
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse

from .config import configure_logging, settings
from .engine import ensure_engine_available
from .exceptions import EngineUnavailable, JobFailed, JobNotFound, JobNotReady
from .jobs import JobEvent, JobRegistry
from .models import ConversionRequest, StatusResponse, SubmitResponse
from .utils import allowed_file, make_unique_filename, parse_loop, parse_positive_int, parse_time_field

logger = logging.getLogger(__name__)

app = FastAPI(title="Video to GIF Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

CHUNK_SIZE = 1024 * 1024


@app.on_event("startup")
async def startup_event():
    configure_logging()
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    app.state.registry = JobRegistry(settings.JOB_TTL_SECONDS, max_concurrent=settings.MAX_CONCURRENT_JOBS)


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.registry.shutdown()


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


async def save_upload_file(upload_file: UploadFile, destination: str, max_bytes: int):
    written = 0
    saved = False
    try:
        async with aiofiles.open(destination, "wb") as out_file:
            while True:
                chunk = await upload_file.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise HTTPException(
                        status_code=400,
                        detail=f"File too large. Max {settings.MAX_UPLOAD_MB} MB",
                    )
                await out_file.write(chunk)
        saved = True
    finally:
        # no job owns a partial upload, so nothing else would remove it
        if not saved:
            with contextlib.suppress(FileNotFoundError):
                os.remove(destination)
        await upload_file.close()


def format_sse(event: JobEvent) -> str:
    return f"event: {event.event}\ndata: {json.dumps(event.data)}\n\n"


@app.post("/convert", response_model=SubmitResponse)
async def convert(
    video: Optional[UploadFile] = File(None),
    width: Optional[str] = Form(None),
    fps: Optional[str] = Form(None),
    start: Optional[str] = Form(None),
    duration: Optional[str] = Form(None),
    loop: Optional[str] = Form(None),
    registry: JobRegistry = Depends(get_registry),
):
    if video is None:
        raise HTTPException(status_code=400, detail="Send a file in the 'video' field.")
    if not allowed_file(video.filename or "", settings.ALLOWED_EXT):
        raise HTTPException(status_code=400, detail="Unsupported file type")

    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    input_path = os.path.join(settings.UPLOAD_DIR, make_unique_filename(video.filename or ""))
    await save_upload_file(video, input_path, settings.MAX_UPLOAD_MB * 1024 * 1024)

    request = ConversionRequest(
        input=input_path,
        output=os.path.join(settings.UPLOAD_DIR, f"vidgif-{uuid.uuid4().hex}.gif"),
        width=parse_positive_int(width, settings.DEFAULT_WIDTH),
        fps=parse_positive_int(fps, settings.DEFAULT_FPS),
        start=parse_time_field(start),
        duration=parse_time_field(duration),
        overwrite=True,
        loop=parse_loop(loop),
    )
    job_id = registry.submit(request, input_is_scratch=True)
    return SubmitResponse(job_id=job_id)


@app.get("/progress/{job_id}")
async def progress(job_id: str, registry: JobRegistry = Depends(get_registry)):
    try:
        events = registry.subscribe(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")

    async def event_stream():
        async with contextlib.aclosing(events):
            async for event in events:
                yield format_sse(event)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/status/{job_id}", response_model=StatusResponse)
async def get_status(job_id: str, registry: JobRegistry = Depends(get_registry)):
    try:
        return registry.snapshot(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@app.get("/result/{job_id}")
async def download_result(job_id: str, registry: JobRegistry = Depends(get_registry)):
    try:
        path = registry.fetch_result(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobNotReady:
        raise HTTPException(status_code=409, detail="GIF not ready yet")
    except JobFailed as e:
        raise HTTPException(status_code=409, detail=e.message)
    return FileResponse(path, media_type="image/gif", filename="output.gif")


@app.get("/health")
async def health():
    try:
        await ensure_engine_available()
    except EngineUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "ok"}


def run():
    import uvicorn

    uvicorn.run("vidgif.main:app", host=settings.HOST, port=settings.PORT)
