"""In-process job queue backed by asyncio.Queue."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

from core.errors import DispatcherClosed
from dispatch.base import JobDispatcher
from scheduler.models import JobDescriptor


class InMemoryDispatcher(JobDispatcher):
    """Single-process queue for local runs and tests.

    Every enqueued job is also kept in :attr:`sent` so callers can inspect
    what was dispatched without draining the queue.
    """

    name = "memory"

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[str, JobDescriptor]] = asyncio.Queue()
        self.sent: list[tuple[str, JobDescriptor]] = []
        self.batches: list[list[str]] = []
        self.closed = False

    async def init(self) -> None:
        self.closed = False

    async def enqueue_one(self, job: JobDescriptor) -> str:
        return (await self._put([job]))[0]

    async def enqueue_batch(self, jobs: list[JobDescriptor]) -> list[str]:
        ids = await self._put(jobs)
        self.batches.append(ids)
        return ids

    async def get(self) -> tuple[str, JobDescriptor]:
        """Wait for the next job: the consumer side of the queue."""
        return await self._queue.get()

    async def close(self) -> None:
        self.closed = True

    async def _put(self, jobs: list[JobDescriptor]) -> list[str]:
        if self.closed:
            raise DispatcherClosed("In-memory dispatcher is closed")
        now = datetime.now(timezone.utc)
        ids = []
        for job in jobs:
            message_id = str(uuid.uuid4())
            stamped = job.model_copy(update={"enqueued_at": now})
            await self._queue.put((message_id, stamped))
            self.sent.append((message_id, stamped))
            ids.append(message_id)
        return ids
