"""Tests for the SQLite-backed work store, lock store and job queue."""

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import DispatcherClosed, DocumentNotFound, PreconditionFailed, StoreUnavailable
from dispatch.sql_queue import SqlJobQueue
from scheduler.models import ItemSchedule, JobDescriptor, LeaseRecord, ScheduleType, WorkItem
from store.lock_store import LockStore
from store.work_store import WorkStore

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def item(item_id: str, owner: str = "user-1", *, due_in_minutes: int = -5,
         enabled: bool = True, interval: int = 6) -> WorkItem:
    return WorkItem(
        id=item_id,
        owner_id=owner,
        name=f"search {item_id}",
        schedule=ItemSchedule(
            enabled=enabled,
            interval_hours=interval,
            next_run=NOW + timedelta(minutes=due_in_minutes),
        ),
    )


def lease(holder: str = "instance-a") -> LeaseRecord:
    return LeaseRecord(
        id="scheduler-lock",
        partition_key="scheduler",
        lease_holder=holder,
        lease_expires_at=NOW + timedelta(seconds=360),
        last_renewed=NOW,
        created_at=NOW,
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
async def work_store(tmp_path):
    s = WorkStore(f"sqlite+aiosqlite:///{tmp_path}/work.db")
    await s.init()
    yield s
    await s.close()


@pytest.fixture
async def lock_store(tmp_path):
    s = LockStore(f"sqlite+aiosqlite:///{tmp_path}/lock.db")
    await s.init()
    yield s
    await s.close()


@pytest.fixture
async def queue(tmp_path):
    q = SqlJobQueue(f"sqlite+aiosqlite:///{tmp_path}/queue.db")
    await q.init()
    yield q
    await q.close()


# ── WorkStore ────────────────────────────────────────────────────────────────

async def test_due_items_filtered_and_ordered(work_store):
    await work_store.save(item("late", due_in_minutes=-5))
    await work_store.save(item("oldest", due_in_minutes=-120))
    await work_store.save(item("future", due_in_minutes=30))
    await work_store.save(item("off", due_in_minutes=-60, enabled=False))
    await work_store.save(item("exact", due_in_minutes=0))

    due = await work_store.get_due_items(50, now=NOW)
    assert [i.id for i in due] == ["oldest", "late", "exact"]


async def test_due_items_respect_limit(work_store):
    for n in range(5):
        await work_store.save(item(f"s{n}", due_in_minutes=-10 * (n + 1)))

    due = await work_store.get_due_items(2, now=NOW)
    assert [i.id for i in due] == ["s4", "s3"]


async def test_due_items_compare_across_timezones(work_store):
    tokyo = timezone(timedelta(hours=9))
    await work_store.save(
        WorkItem(
            id="tz",
            owner_id="user-1",
            schedule=ItemSchedule(next_run=datetime(2026, 10, 17, 20, 30, tzinfo=tokyo)),  # 11:30 UTC
        )
    )
    assert [i.id for i in await work_store.get_due_items(10, now=NOW)] == ["tz"]


async def test_get_item_checks_owner(work_store):
    await work_store.save(item("s1", owner="alice"))
    assert (await work_store.get_item("s1", "alice")).name == "search s1"
    assert await work_store.get_item("s1", "bob") is None
    assert await work_store.get_item("missing", "alice") is None


async def test_update_item_applies_dotted_patch(work_store):
    await work_store.save(item("s1"))
    next_run = NOW + timedelta(hours=6)

    updated = await work_store.update_item("s1", "user-1", {
        "schedule.next_run": next_run,
        "last_run_at": NOW,
    })
    assert updated.schedule.next_run == next_run
    assert updated.schedule.interval_hours == 6
    assert updated.last_run_at == NOW

    reloaded = await work_store.get_item("s1", "user-1")
    assert reloaded.schedule.next_run == next_run
    assert await work_store.get_due_items(10, now=NOW) == []


async def test_update_item_owner_mismatch(work_store):
    await work_store.save(item("s1", owner="alice"))
    with pytest.raises(DocumentNotFound):
        await work_store.update_item("s1", "bob", {"last_run_at": NOW})
    with pytest.raises(DocumentNotFound):
        await work_store.update_item("nope", "alice", {"last_run_at": NOW})


async def test_list_items_by_owner(work_store):
    await work_store.save(item("a1", owner="alice"))
    await work_store.save(item("b1", owner="bob"))
    assert [i.id for i in await work_store.list_items(owner_id="alice")] == ["a1"]
    assert len(await work_store.list_items()) == 2


# ── LockStore ────────────────────────────────────────────────────────────────

async def test_lock_store_read_missing(lock_store):
    with pytest.raises(DocumentNotFound):
        await lock_store.read("scheduler-lock", "scheduler")


async def test_lock_store_create_is_exclusive(lock_store):
    created = await lock_store.create(lease("instance-a"))
    assert created.etag

    with pytest.raises(PreconditionFailed):
        await lock_store.create(lease("instance-b"))

    record = await lock_store.read("scheduler-lock", "scheduler")
    assert record.lease_holder == "instance-a"
    assert record.etag == created.etag


async def test_lock_store_conditional_upsert(lock_store):
    first = await lock_store.create(lease("instance-a"))
    second = await lock_store.upsert(lease("instance-b"), if_match=first.etag)
    assert second.etag != first.etag

    with pytest.raises(PreconditionFailed):
        await lock_store.upsert(lease("instance-c"), if_match=first.etag)
    assert (await lock_store.read("scheduler-lock", "scheduler")).lease_holder == "instance-b"


async def test_lock_store_conditional_upsert_on_missing(lock_store):
    with pytest.raises(PreconditionFailed):
        await lock_store.upsert(lease(), if_match="deadbeef")


async def test_lock_store_unconditional_upsert(lock_store):
    await lock_store.upsert(lease("instance-a"))
    await lock_store.upsert(lease("instance-b"))
    assert (await lock_store.read("scheduler-lock", "scheduler")).lease_holder == "instance-b"


async def test_lock_store_conditional_delete(lock_store):
    created = await lock_store.create(lease())
    with pytest.raises(PreconditionFailed):
        await lock_store.delete("scheduler-lock", "scheduler", if_match="stale")

    await lock_store.delete("scheduler-lock", "scheduler", if_match=created.etag)
    with pytest.raises(DocumentNotFound):
        await lock_store.read("scheduler-lock", "scheduler")


async def test_lock_store_unreachable(tmp_path):
    store = LockStore(f"sqlite+aiosqlite:///{tmp_path}/no-such-dir/lock.db")
    with pytest.raises(StoreUnavailable):
        await store.read("scheduler-lock", "scheduler")
    await store.close()


# ── SqlJobQueue ──────────────────────────────────────────────────────────────

async def test_queue_batch_preserves_order(queue):
    jobs = [
        JobDescriptor(item_id=f"s{n}", owner_id="user-1", schedule_type=ScheduleType.SCHEDULED)
        for n in range(3)
    ]
    ids = await queue.enqueue_batch(jobs)
    assert len(ids) == len(set(ids)) == 3

    pending = dict(await queue.list_pending())
    assert [pending[i].item_id for i in ids] == ["s0", "s1", "s2"]
    assert all(job.enqueued_at is not None for job in pending.values())


async def test_queue_enqueue_one_and_mark_done(queue):
    message_id = await queue.enqueue_one(
        JobDescriptor(item_id="s1", owner_id="user-1", schedule_type=ScheduleType.MANUAL)
    )
    [(pending_id, job)] = await queue.list_pending()
    assert pending_id == message_id
    assert job.schedule_type == ScheduleType.MANUAL

    await queue.mark_done(message_id)
    assert await queue.list_pending() == []


async def test_queue_empty_batch(queue):
    assert await queue.enqueue_batch([]) == []


async def test_queue_rejects_after_close(tmp_path):
    q = SqlJobQueue(f"sqlite+aiosqlite:///{tmp_path}/queue.db")
    await q.init()
    await q.close()
    with pytest.raises(DispatcherClosed):
        await q.enqueue_one(
            JobDescriptor(item_id="s1", owner_id="user-1", schedule_type=ScheduleType.MANUAL)
        )
