"""Tests for the lease lock: acquisition, renewal, release and fail-open."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from core.errors import DocumentNotFound, StoreUnavailable
from scheduler.lease_lock import LOCK_KEY, LOCK_PARTITION, LeaseLock, make_instance_id
from store.lock_store import LockStore

T0 = datetime(2026, 10, 17, 10, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class UnreachableLockStore(LockStore):
    """Lock store whose reads fail as if the database were down."""

    async def read(self, key, partition):
        raise StoreUnavailable("connection refused")


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
async def store(tmp_path):
    s = LockStore(f"sqlite+aiosqlite:///{tmp_path}/lock.db")
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def lock_a(store, clock):
    return LeaseLock(store, instance_id="instance-a", clock=clock)


@pytest.fixture
def lock_b(store, clock):
    return LeaseLock(store, instance_id="instance-b", clock=clock)


async def read_lease(store):
    return await store.read(LOCK_KEY, LOCK_PARTITION)


# ── Acquire ──────────────────────────────────────────────────────────────────

async def test_acquire_absent_lease(lock_a, store):
    assert await lock_a.acquire() is True
    assert lock_a.is_held

    record = await read_lease(store)
    assert record.lease_holder == "instance-a"
    assert record.lease_expires_at == T0 + timedelta(seconds=360)
    assert record.last_renewed == T0
    assert record.created_at == T0


async def test_acquire_expired_lease_takes_over(lock_a, lock_b, store, clock):
    assert await lock_b.acquire()
    clock.advance(seconds=360)   # expiry == now counts as free

    assert await lock_a.acquire() is True
    record = await read_lease(store)
    assert record.lease_holder == "instance-a"
    assert record.lease_expires_at == clock.now + timedelta(seconds=360)
    assert record.created_at == T0   # preserved across holders


async def test_reacquire_by_holder_is_idempotent(lock_a, store, clock):
    await lock_a.acquire()
    clock.advance(seconds=60)

    assert await lock_a.acquire() is True
    record = await read_lease(store)
    assert record.lease_expires_at == T0 + timedelta(seconds=360)


async def test_acquire_denied_while_other_holds(lock_a, lock_b, store, clock):
    await lock_a.acquire()
    clock.advance(seconds=359)

    assert await lock_b.acquire() is False
    assert not lock_b.is_held
    assert (await read_lease(store)).lease_holder == "instance-a"


async def test_simultaneous_first_acquisition_has_one_winner(lock_a, lock_b, store):
    # Both instances saw "no lease"; only the first create may succeed
    assert await lock_a.acquire() is True
    with patch.object(store, "read", AsyncMock(side_effect=DocumentNotFound("stale"))):
        assert await lock_b.acquire() is False
    assert (await read_lease(store)).lease_holder == "instance-a"


async def test_expired_takeover_race_has_one_winner(lock_a, lock_b, store, clock):
    other = LeaseLock(store, instance_id="instance-c", clock=clock)
    await other.acquire()
    clock.advance(seconds=400)
    stale = await read_lease(store)

    assert await lock_a.acquire() is True
    # lock_b still acts on the snapshot it read before lock_a wrote
    with patch.object(store, "read", AsyncMock(return_value=stale)):
        assert await lock_b.acquire() is False
    assert (await read_lease(store)).lease_holder == "instance-a"


async def test_acquire_fails_open_when_store_unreachable(tmp_path, clock):
    lock = LeaseLock(UnreachableLockStore(f"sqlite+aiosqlite:///{tmp_path}/x.db"), clock=clock)
    assert await lock.acquire() is True
    assert not lock.is_held


async def test_fail_open_can_be_disabled(tmp_path, clock):
    lock = LeaseLock(
        UnreachableLockStore(f"sqlite+aiosqlite:///{tmp_path}/x.db"),
        fail_open=False,
        clock=clock,
    )
    assert await lock.acquire() is False


async def test_write_failure_means_not_acquired(lock_a, store):
    with patch.object(store, "create", AsyncMock(side_effect=StoreUnavailable("write timeout"))):
        assert await lock_a.acquire() is False
    assert not lock_a.is_held


# ── Renew ────────────────────────────────────────────────────────────────────

async def test_renew_extends_expiry(lock_a, store, clock):
    await lock_a.acquire()
    clock.advance(seconds=300)
    await lock_a.renew()

    record = await read_lease(store)
    assert record.lease_expires_at == T0 + timedelta(seconds=660)
    assert record.last_renewed == clock.now
    assert lock_a.is_held


async def test_renew_by_non_holder_is_noop(lock_a, lock_b, store, clock):
    await lock_a.acquire()
    before = await read_lease(store)
    clock.advance(seconds=100)

    await lock_b.renew()
    after = await read_lease(store)
    assert after.lease_expires_at == before.lease_expires_at
    assert after.etag == before.etag


async def test_renew_does_not_resurrect_missing_lease(lock_a, store):
    await lock_a.acquire()
    await store.delete(LOCK_KEY, LOCK_PARTITION)

    await lock_a.renew()
    assert not lock_a.is_held
    with pytest.raises(DocumentNotFound):
        await read_lease(store)


async def test_renew_after_losing_lease(lock_a, lock_b, store, clock):
    await lock_a.acquire()
    clock.advance(seconds=400)
    await lock_b.acquire()

    await lock_a.renew()
    assert not lock_a.is_held
    assert (await read_lease(store)).lease_holder == "instance-b"


# ── Release ──────────────────────────────────────────────────────────────────

async def test_acquire_renew_release_leaves_no_record(lock_a, store, clock):
    await lock_a.acquire()
    for _ in range(3):
        clock.advance(seconds=300)
        await lock_a.renew()
    await lock_a.release()

    assert not lock_a.is_held
    with pytest.raises(DocumentNotFound):
        await read_lease(store)


async def test_release_twice_is_safe(lock_a, lock_b, store):
    await lock_a.acquire()
    await lock_a.release()
    await lock_b.acquire()

    await lock_a.release()
    assert (await read_lease(store)).lease_holder == "instance-b"


async def test_release_leaves_other_holders_lease(lock_a, lock_b, store, clock):
    await lock_a.acquire()
    clock.advance(seconds=400)
    await lock_b.acquire()

    await lock_a.release()
    assert not lock_a.is_held
    assert (await read_lease(store)).lease_holder == "instance-b"


# ── Status ───────────────────────────────────────────────────────────────────

async def test_status_available_without_lease(lock_a):
    status = await lock_a.status()
    assert status.state == "available"
    assert status.instance_id == "instance-a"
    assert status.holder is None


async def test_status_reports_holder(lock_a, lock_b, clock):
    await lock_a.acquire()
    clock.advance(seconds=60)

    mine = await lock_a.status()
    assert mine.state == "active"
    assert mine.is_holder is True
    assert mine.seconds_until_expiry == 300

    theirs = await lock_b.status()
    assert theirs.holder == "instance-a"
    assert theirs.is_holder is False


async def test_status_unknown_when_store_unreachable(tmp_path):
    lock = LeaseLock(UnreachableLockStore(f"sqlite+aiosqlite:///{tmp_path}/x.db"))
    status = await lock.status()
    assert status.state == "unknown"
    assert "connection refused" in status.error


def test_instance_ids_are_unique():
    ids = {make_instance_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("instance-") for i in ids)
