"""Lease-based mutual exclusion between scheduler instances.

Only the instance holding the lease runs scheduled ticks. The lease is a
single document in the lock store::

    {
      "id": "scheduler-lock",
      "partition_key": "scheduler",
      "lease_holder": "instance-1760695200000-k3j9x0a1b",
      "lease_expires_at": "2026-10-17T10:06:00Z",
      "last_renewed": "2026-10-17T10:00:00Z",
      "created_at": "2026-10-16T08:00:00Z"
    }

A lease whose ``lease_expires_at`` has passed is free, whoever is named in it.
Every write carries the etag from the preceding read, so two instances racing
for an expired lease cannot both win.
"""

from __future__ import annotations

import logging
import random
import string
import time
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from core.config import LEASE_DURATION_SECONDS
from core.errors import DocumentNotFound, PreconditionFailed
from scheduler.models import LeaseRecord, LeaseStatus, utcnow

if TYPE_CHECKING:
    from store.lock_store import LockStore

logger = logging.getLogger(__name__)

LOCK_KEY = "scheduler-lock"
LOCK_PARTITION = "scheduler"

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def make_instance_id() -> str:
    """Process-unique holder id: start time in millis plus a random suffix."""
    suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=9))
    return f"instance-{int(time.time() * 1000)}-{suffix}"


class LeaseLock:
    def __init__(
        self,
        store: LockStore,
        *,
        instance_id: str | None = None,
        lease_duration_seconds: int = LEASE_DURATION_SECONDS,
        fail_open: bool = True,
        clock: Callable[[], datetime] = utcnow,
        key: str = LOCK_KEY,
        partition: str = LOCK_PARTITION,
    ):
        self._store = store
        self.instance_id = instance_id or make_instance_id()
        self.lease_duration = timedelta(seconds=lease_duration_seconds)
        self.fail_open = fail_open
        self.key = key
        self.partition = partition
        self._clock = clock
        self._held = False

    @property
    def is_held(self) -> bool:
        """Whether this instance currently believes it holds the lease."""
        return self._held

    async def init(self) -> None:
        await self._store.init()
        logger.info(
            "Lease lock initialized",
            extra={
                "instance_id": self.instance_id,
                "lease_duration_seconds": int(self.lease_duration.total_seconds()),
                "fail_open": self.fail_open,
            },
        )

    # ── Acquire / renew / release ────────────────────────────────────────────

    async def acquire(self) -> bool:
        """Try to take the lease. Never raises.

        Returns True when this instance holds the lease afterwards, or when
        the store could not be read and ``fail_open`` is set.
        """
        now = self._clock()
        try:
            current: LeaseRecord | None = await self._store.read(self.key, self.partition)
        except DocumentNotFound:
            current = None
        except Exception as e:
            if self.fail_open:
                logger.error(
                    "Lock store unreachable, failing open",
                    extra={"instance_id": self.instance_id, "error": str(e)},
                )
                return True
            logger.error(
                "Lock store unreachable, not acquiring",
                extra={"instance_id": self.instance_id, "error": str(e)},
            )
            self._held = False
            return False

        if current is not None and not current.is_expired(now):
            if current.lease_holder == self.instance_id:
                logger.debug("Lease already held by this instance", extra={"instance_id": self.instance_id})
                self._held = True
                return True
            logger.debug(
                "Lease held by another instance",
                extra={"holder": current.lease_holder, "instance_id": self.instance_id},
            )
            self._held = False
            return False

        record = LeaseRecord(
            id=self.key,
            partition_key=self.partition,
            lease_holder=self.instance_id,
            lease_expires_at=now + self.lease_duration,
            last_renewed=now,
            created_at=current.created_at if current is not None else now,
        )
        try:
            if current is None:
                await self._store.create(record)
            else:
                await self._store.upsert(record, if_match=current.etag)
        except PreconditionFailed:
            logger.info("Lost lease acquisition race", extra={"instance_id": self.instance_id})
            self._held = False
            return False
        except Exception as e:
            logger.warning("Failed to acquire lease", extra={"instance_id": self.instance_id, "error": str(e)})
            self._held = False
            return False

        logger.info(
            "Scheduler lease acquired",
            extra={"instance_id": self.instance_id, "expires_at": record.lease_expires_at.isoformat()},
        )
        self._held = True
        return True

    async def renew(self) -> None:
        """Extend the lease if this instance still holds it; never recreates it."""
        if not self._held:
            return

        now = self._clock()
        try:
            current = await self._store.read(self.key, self.partition)
        except DocumentNotFound:
            logger.warning("Lease document disappeared, giving up the lease", extra={"instance_id": self.instance_id})
            self._held = False
            return
        except Exception as e:
            logger.warning("Failed to renew lease", extra={"instance_id": self.instance_id, "error": str(e)})
            self._held = False
            return

        if current.lease_holder != self.instance_id:
            logger.warning(
                "Lost scheduler lease to another instance",
                extra={"instance_id": self.instance_id, "holder": current.lease_holder},
            )
            self._held = False
            return

        renewed = current.model_copy(
            update={"lease_expires_at": now + self.lease_duration, "last_renewed": now}
        )
        try:
            await self._store.upsert(renewed, if_match=current.etag)
        except Exception as e:
            logger.warning("Failed to renew lease", extra={"instance_id": self.instance_id, "error": str(e)})
            self._held = False
            return

        logger.debug(
            "Scheduler lease renewed",
            extra={"instance_id": self.instance_id, "expires_at": renewed.lease_expires_at.isoformat()},
        )

    async def release(self) -> None:
        """Delete the lease document if this instance still holds it."""
        if not self._held:
            return

        try:
            current = await self._store.read(self.key, self.partition)
            if current.lease_holder == self.instance_id:
                await self._store.delete(self.key, self.partition, if_match=current.etag)
                logger.info("Scheduler lease released", extra={"instance_id": self.instance_id})
            self._held = False
        except (DocumentNotFound, PreconditionFailed):
            # Someone else already took or removed it
            self._held = False
        except Exception as e:
            logger.warning("Failed to release lease", extra={"instance_id": self.instance_id, "error": str(e)})

    # ── Monitoring ───────────────────────────────────────────────────────────

    async def status(self) -> LeaseStatus:
        try:
            current = await self._store.read(self.key, self.partition)
        except DocumentNotFound:
            return LeaseStatus(state="available", instance_id=self.instance_id)
        except Exception as e:
            return LeaseStatus(state="unknown", instance_id=self.instance_id, error=str(e))

        now = self._clock()
        return LeaseStatus(
            state="available" if current.is_expired(now) else "active",
            instance_id=self.instance_id,
            holder=current.lease_holder,
            is_holder=current.lease_holder == self.instance_id,
            lease_expires_at=current.lease_expires_at,
            seconds_until_expiry=round((current.lease_expires_at - now).total_seconds()),
            last_renewed=current.last_renewed,
        )
