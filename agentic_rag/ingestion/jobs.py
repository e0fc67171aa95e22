"""
In-memory registry of background ingest jobs.

Workers (plain threads) emit IngestProgressEvents; HTTP handlers (asyncio)
consume them through stream().  Each job keeps only its most recent event,
so a late subscriber gets that event replayed and then follows live until a
done event arrives.  Events cross from worker threads into the event loop
with loop.call_soon_threadsafe, never by touching an asyncio.Queue directly.
"""
from __future__ import annotations

import asyncio
import threading
import uuid
from typing import AsyncIterator, Optional

from loguru import logger

from agentic_rag.schemas import IngestProgressEvent


class _Job:
    __slots__ = ("last", "done", "listeners")

    def __init__(self) -> None:
        self.last: Optional[IngestProgressEvent] = None
        self.done = False
        self.listeners: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []


class IngestionJobRegistry:
    def __init__(self) -> None:
        self._jobs: dict[str, _Job] = {}
        self._lock = threading.Lock()

    def new_job(self) -> str:
        job_id = str(uuid.uuid4())
        with self._lock:
            self._jobs[job_id] = _Job()
        logger.debug(f"[Jobs] New ingest job {job_id}")
        return job_id

    def emit(self, event: IngestProgressEvent) -> None:
        """Record event as the job's latest and push it to live subscribers."""
        with self._lock:
            job = self._jobs.setdefault(event.job_id, _Job())
            if job.done:
                logger.debug(f"[Jobs] {event.job_id} already finished, dropping {event.stage!r}")
                return
            job.last = event
            job.done = event.done
            listeners = list(job.listeners)
            if job.done:
                job.listeners.clear()

        for loop, queue in listeners:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                # Subscriber's loop already closed
                logger.debug(f"[Jobs] dropped event for closed loop on {event.job_id}")

    def last_event(self, job_id: str) -> Optional[IngestProgressEvent]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.last if job else None

    def is_done(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            return bool(job and job.done)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    async def stream(self, job_id: str) -> AsyncIterator[IngestProgressEvent]:
        """
        Yield the job's last event (if any), then live events until done.

        An unknown job id yields nothing.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        listener = (loop, queue)

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            last = job.last
            if not job.done:
                job.listeners.append(listener)

        try:
            if last is not None:
                yield last
                if last.done:
                    return
            while True:
                event = await queue.get()
                yield event
                if event.done:
                    return
        finally:
            with self._lock:
                if listener in job.listeners:
                    job.listeners.remove(listener)
