"""SchedulerLoop: polls for due work items and dispatches them under the lease."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from core.config import DISPATCH_BATCH_LIMIT, ERROR_THRESHOLD
from core.errors import InitializationError, ItemNotFound
from core.logging_config import trace_scope
from scheduler.models import (
    JobDescriptor,
    SchedulerPhase,
    SchedulerStatus,
    ScheduleType,
    WorkItem,
    utcnow,
)

if TYPE_CHECKING:
    from dispatch.base import JobDispatcher
    from scheduler.lease_lock import LeaseLock
    from store.work_store import WorkStore

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Tick-driven dispatcher of recurring work items.

    Lifecycle: ``stopped → starting → running → stopping → stopped``, plus
    ``disabled`` once ``error_threshold`` ticks in a row have failed. A
    disabled loop stays down until ``start()`` is called again.

    One dedicated asyncio task owns the timer; ticks never overlap within a
    process. Across processes only the lease holder dispatches.
    """

    def __init__(
        self,
        work_store: WorkStore,
        dispatcher: JobDispatcher,
        lease: LeaseLock,
        *,
        enabled: bool = True,
        poll_interval_seconds: float = 300,
        batch_limit: int = DISPATCH_BATCH_LIMIT,
        error_threshold: int = ERROR_THRESHOLD,
        stop_timeout_seconds: float = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.work_store = work_store
        self.dispatcher = dispatcher
        self.lease = lease
        self.enabled = enabled
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_limit = batch_limit
        self.error_threshold = error_threshold
        self.stop_timeout_seconds = stop_timeout_seconds
        self._clock = clock

        self.phase = SchedulerPhase.STOPPED
        self.is_running = False
        self.consecutive_error_count = 0
        self.last_tick_time: datetime | None = None

        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initialise collaborators, tick once, then keep ticking every poll interval.

        Raises InitializationError if the stores, dispatcher or lease can't be set up.
        """
        if self.is_running:
            logger.warning("Scheduler is already running")
            return
        if not self.enabled:
            logger.info("Scheduling is disabled by configuration; not starting")
            return

        self.phase = SchedulerPhase.STARTING
        logger.info("Starting job scheduler")
        try:
            await self.work_store.init()
            await self.dispatcher.init()
            await self.lease.init()
        except Exception as e:
            self.phase = SchedulerPhase.STOPPED
            logger.error("Failed to start scheduler", extra={"error": str(e)})
            raise InitializationError(f"Scheduler initialization failed: {e}") from e

        self.consecutive_error_count = 0
        self._stop_event = asyncio.Event()
        self.is_running = True
        self.phase = SchedulerPhase.RUNNING

        await self.tick()

        # The first tick may already have tripped the error threshold
        if self.is_running:
            self._task = asyncio.create_task(self._loop(self._stop_event), name="scheduler-loop")
            logger.info(
                "Job scheduler started",
                extra={"poll_interval_minutes": self.poll_interval_seconds / 60},
            )

    async def stop(self) -> None:
        """Stop ticking, wait for an in-flight tick, then release the lease and close the dispatcher."""
        if not self.is_running:
            return

        logger.info("Stopping job scheduler")
        self.phase = SchedulerPhase.STOPPING
        self.is_running = False
        if self._stop_event is not None:
            self._stop_event.set()

        await self._join_loop()
        await self._release_lease()
        try:
            await self.dispatcher.close()
        except Exception as e:
            logger.warning("Failed to close dispatcher", extra={"error": str(e)})

        self.phase = SchedulerPhase.STOPPED
        logger.info("Job scheduler stopped")

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
                return
            except asyncio.TimeoutError:
                pass
            await self.tick()

    async def _join_loop(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.stop_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "In-flight tick did not finish in time, cancelling",
                    extra={"timeout_seconds": self.stop_timeout_seconds},
                )
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        # A tick started outside the loop task (e.g. the initial one) holds the lock too
        try:
            await asyncio.wait_for(self._tick_lock.acquire(), timeout=self.stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Gave up waiting for in-flight tick")
        else:
            self._tick_lock.release()

    async def _release_lease(self) -> None:
        try:
            await self.lease.release()
        except Exception as e:
            logger.warning("Failed to release scheduler lease", extra={"error": str(e)})

    # ── Tick ─────────────────────────────────────────────────────────────────

    async def tick(self) -> None:
        """Run one discovery-and-dispatch cycle. Errors are counted, never raised."""
        if not self.is_running:
            return

        async with self._tick_lock:
            if not self.is_running:
                return
            with trace_scope("tick"):
                try:
                    await self._run_tick()
                except Exception as e:
                    self.consecutive_error_count += 1
                    logger.error(
                        "Scheduler tick error",
                        extra={
                            "error": str(e),
                            "consecutive_errors": self.consecutive_error_count,
                            "threshold": self.error_threshold,
                        },
                        exc_info=True,
                    )
                    if self.consecutive_error_count >= self.error_threshold:
                        await self._disable()

    async def _run_tick(self) -> None:
        if not await self.lease.acquire():
            logger.info("Scheduler lease held by another instance; skipping tick")
            return
        if self._stop_requested():
            return

        logger.info("Scheduler tick: checking for due items")
        due = await self.work_store.get_due_items(self.batch_limit, now=self._clock())
        if not due:
            logger.info("No due items found")
            await self._finish_tick()
            return
        if self._stop_requested():
            return

        logger.info("Found due items", extra={"count": len(due)})
        jobs = [
            JobDescriptor(item_id=item.id, owner_id=item.owner_id, schedule_type=ScheduleType.SCHEDULED)
            for item in due
        ]
        message_ids = await self.dispatcher.enqueue_batch(jobs)

        # Dispatched: advance every item even if a stop arrives meanwhile
        now = self._clock()
        await asyncio.gather(*(self._advance(item, now) for item in due))

        logger.info(
            "Scheduler tick completed",
            extra={"enqueued": len(message_ids), "updated": len(due)},
        )
        await self._finish_tick()

    async def _advance(self, item: WorkItem, now: datetime) -> None:
        next_run = now + timedelta(hours=item.schedule.interval_hours)
        await self.work_store.update_item(
            item.id,
            item.owner_id,
            {"schedule.next_run": next_run, "last_run_at": now},
        )

    async def _finish_tick(self) -> None:
        self.consecutive_error_count = 0
        self.last_tick_time = self._clock()
        await self.lease.renew()

    def _stop_requested(self) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            logger.info("Stop requested; abandoning tick before dispatch")
            return True
        return False

    async def _disable(self) -> None:
        logger.error(
            "Scheduler disabled after consecutive tick errors",
            extra={"consecutive_errors": self.consecutive_error_count},
        )
        self.is_running = False
        self.phase = SchedulerPhase.DISABLED
        if self._stop_event is not None:
            self._stop_event.set()
        await self._release_lease()

    # ── Manual trigger ───────────────────────────────────────────────────────

    async def trigger_manual_run(self, item_id: str, owner_id: str) -> str:
        """Dispatch one item right now, bypassing the lease and the tick cycle.

        Works whether or not the loop is running: a dispatcher closed by
        :meth:`stop` is reopened first. The item's schedule is left
        untouched. Errors propagate to the caller.
        """
        with trace_scope("manual"):
            try:
                item = await self.work_store.get_item(item_id, owner_id)
                if item is None:
                    raise ItemNotFound(item_id, owner_id)
                if self.dispatcher.closed:
                    await self.dispatcher.init()
                message_id = await self.dispatcher.enqueue_one(
                    JobDescriptor(item_id=item_id, owner_id=owner_id, schedule_type=ScheduleType.MANUAL)
                )
            except Exception as e:
                logger.error(
                    "Failed to trigger manual run",
                    extra={"item_id": item_id, "owner_id": owner_id, "error": str(e)},
                )
                raise

            logger.info(
                "Manual run triggered",
                extra={"item_id": item_id, "owner_id": owner_id, "message_id": message_id},
            )
            return message_id

    # ── Monitoring ───────────────────────────────────────────────────────────

    async def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            phase=self.phase,
            is_running=self.is_running,
            scheduler_enabled=self.enabled,
            last_tick_time=self.last_tick_time,
            consecutive_error_count=self.consecutive_error_count,
            error_threshold=self.error_threshold,
            poll_interval_seconds=self.poll_interval_seconds,
            lease=await self.lease.status(),
        )
