import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from .exceptions import JobFailed, JobNotFound, JobNotReady
from .models import ConversionRequest, JobStatus, ProgressEvent
from .processing import ProgressCallback, convert_video_to_gif

logger = logging.getLogger(__name__)

Converter = Callable[[ConversionRequest, Optional[ProgressCallback]], Awaitable[Any]]

TERMINAL_EVENTS = ("done", "joberror")


@dataclass
class JobEvent:
    event: str  # status | progress | done | joberror
    data: Dict[str, Any]


class Broadcaster:
    """Fan-out of one producer's events to any number of subscriber queues."""

    def __init__(self):
        self._subscribers: Set[asyncio.Queue] = set()
        self.closed = False

    def attach(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def detach(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)

    def publish(self, item: JobEvent):
        for queue in list(self._subscribers):
            queue.put_nowait(item)

    def close(self, final_item: JobEvent):
        self.publish(final_item)
        self.closed = True
        self._subscribers.clear()

    def __len__(self):
        return len(self._subscribers)


def _remove(path: Optional[str]):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Could not remove %s", path, exc_info=True)


@dataclass
class Job:
    id: str
    request: ConversionRequest
    status: JobStatus = "running"
    created_at: float = field(default_factory=time.monotonic)
    last_event: Optional[ProgressEvent] = None
    error: Optional[str] = None
    input_path: Optional[str] = None
    channel: Broadcaster = field(default_factory=Broadcaster)
    task: Optional[asyncio.Task] = None

    @property
    def output_path(self) -> str:
        return self.request.output

    def snapshot(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "status": self.status,
            "progress": self.last_event.model_dump() if self.last_event else None,
            "error": self.error,
        }

    def terminal_event(self) -> JobEvent:
        if self.status == "done":
            return JobEvent("done", {"job_id": self.id, "percent": 100})
        return JobEvent("joberror", {"job_id": self.id, "message": self.error})


class JobRegistry:
    """In-memory registry of background conversions.

    Each job has exactly one writer (its own task), so no locking is needed.
    Records and artifacts are reclaimed ``ttl_seconds`` after creation.
    """

    def __init__(self, ttl_seconds: float, converter: Converter = convert_video_to_gif, max_concurrent: int = 0):
        self.ttl_seconds = ttl_seconds
        self._converter = converter
        self._jobs: Dict[str, Job] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._slots = asyncio.Semaphore(max_concurrent) if max_concurrent > 0 else None

    def __len__(self):
        return len(self._jobs)

    def __contains__(self, job_id: str):
        return job_id in self._jobs

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def snapshot(self, job_id: str) -> Dict[str, Any]:
        return self.get(job_id).snapshot()

    def submit(self, request: ConversionRequest, input_is_scratch: bool = False) -> str:
        """Start converting ``request`` in the background and return its job id."""
        loop = asyncio.get_running_loop()
        job = Job(id=uuid.uuid4().hex, request=request, input_path=request.input if input_is_scratch else None)
        self._jobs[job.id] = job
        job.task = loop.create_task(self._run(job))
        self._timers[job.id] = loop.call_later(self.ttl_seconds, self._expire, job.id)
        logger.info("Job %s submitted (%s)", job.id, request.input)
        return job.id

    def _on_progress(self, job: Job, event: ProgressEvent):
        job.last_event = event
        job.channel.publish(JobEvent("progress", event.model_dump()))

    async def _run(self, job: Job):
        try:
            if self._slots is None:
                await self._converter(job.request, lambda e: self._on_progress(job, e))
            else:
                async with self._slots:
                    await self._converter(job.request, lambda e: self._on_progress(job, e))
        except asyncio.CancelledError:
            job.status = "error"
            job.error = "conversion cancelled"
            raise
        except Exception as e:
            logger.exception("Job %s failed", job.id)
            job.status = "error"
            job.error = str(e)
        else:
            job.status = "done"
            logger.info("Job %s done", job.id)
        finally:
            _remove(job.input_path)
            job.channel.close(job.terminal_event())
            if job.id not in self._jobs:
                # reclaimed while still converting
                _remove(job.output_path)

    def subscribe(self, job_id: str) -> AsyncIterator[JobEvent]:
        """Stream of a status snapshot, later progress, then one terminal event.

        Raises ``JobNotFound`` immediately. Closing the iterator detaches only
        this subscriber.
        """
        job = self.get(job_id)
        if job.channel.closed:
            queue: asyncio.Queue = asyncio.Queue()
            queue.put_nowait(JobEvent("status", job.snapshot()))
            queue.put_nowait(job.terminal_event())
        else:
            queue = job.channel.attach()
            queue.put_nowait(JobEvent("status", job.snapshot()))
        return self._stream(job, queue)

    async def _stream(self, job: Job, queue: asyncio.Queue) -> AsyncIterator[JobEvent]:
        try:
            while True:
                item = await queue.get()
                yield item
                if item.event in TERMINAL_EVENTS:
                    return
        finally:
            job.channel.detach(queue)

    def fetch_result(self, job_id: str) -> Path:
        job = self.get(job_id)
        if job.status == "error":
            raise JobFailed(job_id, job.error)
        if job.status != "done":
            raise JobNotReady(job_id)
        path = Path(job.output_path)
        if not path.exists():
            raise JobNotFound(job_id)
        return path

    def _expire(self, job_id: str):
        self._timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None:
            return
        if time.monotonic() - job.created_at < self.ttl_seconds:
            self._timers[job_id] = asyncio.get_running_loop().call_later(
                self.ttl_seconds - (time.monotonic() - job.created_at), self._expire, job_id
            )
            return
        del self._jobs[job_id]
        _remove(job.output_path)
        logger.info("Job %s expired (status=%s)", job_id, job.status)

    async def shutdown(self):
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        tasks = [job.task for job in self._jobs.values() if job.task and not job.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in list(self._jobs.values()):
            _remove(job.output_path)
        self._jobs.clear()
