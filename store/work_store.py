"""WorkStore: SQLite-backed persistence for recurring WorkItems."""

from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from core.errors import DocumentNotFound
from scheduler.models import WorkItem

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_items = sa.Table(
    "work_items",
    _metadata,
    sa.Column("item_id",    sa.String,  primary_key=True),
    sa.Column("owner_id",   sa.String,  nullable=False, index=True),
    sa.Column("enabled",    sa.Boolean, nullable=False),
    sa.Column("next_run",   sa.String,  nullable=False, index=True),   # sortable UTC stamp
    sa.Column("state_json", sa.Text,    nullable=False),
    sa.Column("updated_at", sa.String,  nullable=False),
)


def _ts(value: datetime) -> str:
    """Fixed-width UTC stamp, so string order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _apply_patch(data: dict, patch: dict[str, Any]) -> None:
    """Apply ``{"schedule.next_run": ...}``-style dotted keys to a nested dict."""
    for path, value in patch.items():
        *parents, leaf = path.split(".")
        target = data
        for part in parents:
            child = target.get(part)
            if not isinstance(child, dict):
                raise ValueError(f"Cannot patch '{path}': '{part}' is not an object")
            target = child
        target[leaf] = value


# ── Store ────────────────────────────────────────────────────────────────────

class WorkStore:
    """Persist, query and patch WorkItem objects via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def save(self, item: WorkItem) -> None:
        """Insert or update a work item (upsert)."""
        row = self._row(item)
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_items)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["item_id"],
                    set_={k: row[k] for k in ("owner_id", "enabled", "next_run", "state_json", "updated_at")},
                )
            )

    async def get_item(self, item_id: str, owner_id: str) -> WorkItem | None:
        """Return the item if it exists and belongs to *owner_id*, else None."""
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_items.c.state_json)
                .where(_items.c.item_id == item_id, _items.c.owner_id == owner_id)
            )).fetchone()
        if row is None:
            return None
        return WorkItem.model_validate_json(row.state_json)

    async def get_due_items(self, limit: int, now: datetime | None = None) -> list[WorkItem]:
        """Enabled items whose next_run has arrived, most overdue first."""
        cutoff = _ts(now or datetime.now(timezone.utc))
        query = (
            sa.select(_items.c.state_json)
            .where(_items.c.enabled.is_(True), _items.c.next_run <= cutoff)
            .order_by(_items.c.next_run.asc())
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [WorkItem.model_validate_json(r.state_json) for r in rows]

    async def update_item(self, item_id: str, owner_id: str, patch: dict[str, Any]) -> WorkItem:
        """Partially update an item. Raises DocumentNotFound on missing item or owner mismatch."""
        async with self._engine.begin() as conn:
            row = (await conn.execute(
                sa.select(_items.c.state_json)
                .where(_items.c.item_id == item_id, _items.c.owner_id == owner_id)
            )).fetchone()
            if row is None:
                raise DocumentNotFound(f"Work item '{item_id}' not found for owner '{owner_id}'")

            data = WorkItem.model_validate_json(row.state_json).model_dump()
            _apply_patch(data, patch)
            item = WorkItem.model_validate(data)

            values = self._row(item)
            del values["item_id"]
            await conn.execute(
                sa.update(_items).where(_items.c.item_id == item_id).values(**values)
            )
        return item

    async def list_items(self, owner_id: str | None = None) -> list[WorkItem]:
        query = sa.select(_items.c.state_json).order_by(_items.c.next_run.asc())
        if owner_id:
            query = query.where(_items.c.owner_id == owner_id)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [WorkItem.model_validate_json(r.state_json) for r in rows]

    @staticmethod
    def _row(item: WorkItem) -> dict:
        return {
            "item_id":    item.id,
            "owner_id":   item.owner_id,
            "enabled":    item.schedule.enabled,
            "next_run":   _ts(item.schedule.next_run),
            "state_json": item.model_dump_json(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
