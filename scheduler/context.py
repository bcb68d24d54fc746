"""Per-process wiring of stores, dispatcher, lease and scheduler loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from core.config import Settings
from dispatch.base import JobDispatcher
from dispatch.memory import InMemoryDispatcher
from dispatch.sql_queue import SqlJobQueue
from scheduler.coordinator import SchedulerLoop
from scheduler.lease_lock import LeaseLock
from store.lock_store import LockStore
from store.work_store import WorkStore

logger = logging.getLogger(__name__)


@dataclass
class SchedulerContext:
    """Everything one process needs; built by the entry point and passed down."""

    settings: Settings
    work_store: WorkStore
    lock_store: LockStore
    dispatcher: JobDispatcher
    lease: LeaseLock
    scheduler: SchedulerLoop

    async def init(self) -> None:
        """Prepare the stores and dispatcher so manual runs and status work, loop or no loop."""
        await self.work_store.init()
        await self.lock_store.init()
        await self.dispatcher.init()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.dispatcher.close()
        await self.work_store.close()
        await self.lock_store.close()


def build_dispatcher(settings: Settings) -> JobDispatcher:
    if settings.dispatcher_backend == "memory":
        return InMemoryDispatcher()
    return SqlJobQueue(settings.effective_queue_url)


def build_context(settings: Settings | None = None) -> SchedulerContext:
    settings = settings or Settings()
    work_store = WorkStore(settings.database_url)
    lock_store = LockStore(settings.database_url)
    dispatcher = build_dispatcher(settings)
    lease = LeaseLock(
        lock_store,
        lease_duration_seconds=settings.lease_duration_seconds,
        fail_open=settings.lease_fail_open,
    )
    scheduler = SchedulerLoop(
        work_store,
        dispatcher,
        lease,
        enabled=settings.scheduler_enabled,
        poll_interval_seconds=settings.poll_interval_seconds,
        batch_limit=settings.dispatch_batch_limit,
        error_threshold=settings.error_threshold,
        stop_timeout_seconds=settings.stop_timeout_seconds,
    )
    logger.debug(
        "Scheduler context built",
        extra={"instance_id": lease.instance_id, "dispatcher": dispatcher.name},
    )
    return SchedulerContext(
        settings=settings,
        work_store=work_store,
        lock_store=lock_store,
        dispatcher=dispatcher,
        lease=lease,
        scheduler=scheduler,
    )
