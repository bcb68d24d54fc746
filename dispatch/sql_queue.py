"""SqlJobQueue: durable job messages in a SQL table for an external worker."""

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from core.errors import DispatcherClosed
from dispatch.base import JobDispatcher
from scheduler.models import JobDescriptor

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_messages = sa.Table(
    "job_messages",
    _metadata,
    sa.Column("message_id",    sa.String, primary_key=True),
    sa.Column("item_id",       sa.String, nullable=False, index=True),
    sa.Column("owner_id",      sa.String, nullable=False),
    sa.Column("schedule_type", sa.String, nullable=False),
    sa.Column("body_json",     sa.Text,   nullable=False),
    sa.Column("status",        sa.String, nullable=False, index=True),   # pending | done
    sa.Column("enqueued_at",   sa.String, nullable=False),
)


# ── Dispatcher ───────────────────────────────────────────────────────────────

class SqlJobQueue(JobDispatcher):
    """Append job messages to ``job_messages``; a batch is one transaction."""

    name = "sql"

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)
        self.closed = False

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)
        self.closed = False

    async def enqueue_one(self, job: JobDescriptor) -> str:
        return (await self.enqueue_batch([job]))[0]

    async def enqueue_batch(self, jobs: list[JobDescriptor]) -> list[str]:
        if self.closed:
            raise DispatcherClosed("SQL job queue is closed")
        if not jobs:
            return []
        now = datetime.now(timezone.utc)
        rows = []
        for job in jobs:
            stamped = job.model_copy(update={"enqueued_at": now})
            rows.append({
                "message_id":    str(uuid.uuid4()),
                "item_id":       job.item_id,
                "owner_id":      job.owner_id,
                "schedule_type": job.schedule_type.value,
                "body_json":     stamped.model_dump_json(),
                "status":        "pending",
                "enqueued_at":   now.isoformat(),
            })
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_messages), rows)
        return [r["message_id"] for r in rows]

    async def list_pending(self, limit: int = 100) -> list[tuple[str, JobDescriptor]]:
        """Oldest pending messages first: what a consumer would pick up next."""
        query = (
            sa.select(_messages.c.message_id, _messages.c.body_json)
            .where(_messages.c.status == "pending")
            .order_by(_messages.c.enqueued_at.asc(), _messages.c.message_id.asc())
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [(r.message_id, JobDescriptor.model_validate_json(r.body_json)) for r in rows]

    async def mark_done(self, message_id: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_messages)
                .where(_messages.c.message_id == message_id)
                .values(status="done")
            )

    async def close(self) -> None:
        self.closed = True
        await self._engine.dispose()
