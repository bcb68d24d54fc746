"""LockStore: lease documents with etag-based optimistic concurrency."""

import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine

from core.errors import DocumentNotFound, PreconditionFailed, StoreUnavailable
from scheduler.models import LeaseRecord

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_leases = sa.Table(
    "lease_documents",
    _metadata,
    sa.Column("doc_id",        sa.String, primary_key=True),
    sa.Column("partition_key", sa.String, primary_key=True),
    sa.Column("etag",          sa.String, nullable=False),
    sa.Column("body_json",     sa.Text,   nullable=False),   # full Pydantic JSON
    sa.Column("updated_at",    sa.String, nullable=False),
)


def _new_etag() -> str:
    return uuid.uuid4().hex


def _key_clause(key: str, partition: str):
    return sa.and_(_leases.c.doc_id == key, _leases.c.partition_key == partition)


# ── Store ────────────────────────────────────────────────────────────────────

class LockStore:
    """Read and conditionally write lease documents.

    Every write assigns a new etag. Writes that pass ``if_match`` only succeed
    when the stored etag still equals it, otherwise ``PreconditionFailed`` is
    raised; ``create`` fails the same way when the document already exists.
    Driver-level failures surface as ``StoreUnavailable``.
    """

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(_metadata.create_all)
        except DBAPIError as e:
            raise StoreUnavailable(f"Lock store unreachable: {e}") from e

    async def close(self) -> None:
        await self._engine.dispose()

    # ── Reads ────────────────────────────────────────────────────────────────

    async def read(self, key: str, partition: str) -> LeaseRecord:
        """Load a lease document. Raises DocumentNotFound if it doesn't exist."""
        try:
            async with self._engine.connect() as conn:
                row = (await conn.execute(
                    sa.select(_leases.c.etag, _leases.c.body_json).where(_key_clause(key, partition))
                )).fetchone()
        except DBAPIError as e:
            raise StoreUnavailable(f"Lock store unreachable: {e}") from e
        if row is None:
            raise DocumentNotFound(f"Lease document '{key}' in partition '{partition}' not found")
        record = LeaseRecord.model_validate_json(row.body_json)
        record.etag = row.etag
        return record

    # ── Writes ───────────────────────────────────────────────────────────────

    async def create(self, record: LeaseRecord) -> LeaseRecord:
        """Insert a new document; PreconditionFailed if one already exists."""
        etag = _new_etag()
        try:
            async with self._engine.begin() as conn:
                await conn.execute(sa.insert(_leases).values(**self._row(record, etag)))
        except IntegrityError as e:
            raise PreconditionFailed(f"Lease document '{record.id}' already exists") from e
        except DBAPIError as e:
            raise StoreUnavailable(f"Lock store unreachable: {e}") from e
        return record.model_copy(update={"etag": etag})

    async def upsert(self, record: LeaseRecord, if_match: str | None = None) -> LeaseRecord:
        """Write a document, replacing any existing one.

        With ``if_match`` the replace only happens when the stored etag is
        unchanged; a missing document also fails the precondition.
        """
        etag = _new_etag()
        row = self._row(record, etag)
        try:
            async with self._engine.begin() as conn:
                if if_match is None:
                    await conn.execute(
                        sqlite_insert(_leases)
                        .values(**row)
                        .on_conflict_do_update(
                            index_elements=["doc_id", "partition_key"],
                            set_={k: row[k] for k in ("etag", "body_json", "updated_at")},
                        )
                    )
                else:
                    result = await conn.execute(
                        sa.update(_leases)
                        .where(_key_clause(record.id, record.partition_key))
                        .where(_leases.c.etag == if_match)
                        .values(etag=etag, body_json=row["body_json"], updated_at=row["updated_at"])
                    )
                    if result.rowcount == 0:
                        raise PreconditionFailed(
                            f"Lease document '{record.id}' changed since etag {if_match}"
                        )
        except DBAPIError as e:
            raise StoreUnavailable(f"Lock store unreachable: {e}") from e
        return record.model_copy(update={"etag": etag})

    async def delete(self, key: str, partition: str, if_match: str | None = None) -> None:
        """Delete a document. With ``if_match``, only if its etag is unchanged."""
        query = sa.delete(_leases).where(_key_clause(key, partition))
        if if_match is not None:
            query = query.where(_leases.c.etag == if_match)
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(query)
        except DBAPIError as e:
            raise StoreUnavailable(f"Lock store unreachable: {e}") from e
        if if_match is not None and result.rowcount == 0:
            raise PreconditionFailed(f"Lease document '{key}' changed since etag {if_match}")

    @staticmethod
    def _row(record: LeaseRecord, etag: str) -> dict:
        return {
            "doc_id":        record.id,
            "partition_key": record.partition_key,
            "etag":          etag,
            "body_json":     record.model_dump_json(),
            "updated_at":    datetime.now(timezone.utc).isoformat(),
        }
