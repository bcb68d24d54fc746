"""Scheduler data models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class SchedulerPhase(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    DISABLED = "disabled"   # error threshold reached; start() again to leave


# ── Lease ────────────────────────────────────────────────────────────────────

class LeaseRecord(BaseModel):
    """The singleton document whose holder owns the scheduling privilege."""

    id: str
    partition_key: str
    lease_holder: str
    lease_expires_at: datetime
    last_renewed: datetime
    created_at: datetime
    # Assigned by the lock store on every write; never part of the stored body
    etag: str | None = Field(default=None, exclude=True)

    def is_expired(self, now: datetime) -> bool:
        return self.lease_expires_at <= now


class LeaseStatus(BaseModel):
    state: str                       # active | available | unknown
    instance_id: str
    holder: str | None = None
    is_holder: bool = False
    lease_expires_at: datetime | None = None
    seconds_until_expiry: int | None = None
    last_renewed: datetime | None = None
    error: str | None = None


# ── Work items ───────────────────────────────────────────────────────────────

class ItemSchedule(BaseModel):
    enabled: bool = True
    interval_hours: int = Field(default=6, ge=1, le=168)
    next_run: datetime = Field(default_factory=utcnow)


class WorkItem(BaseModel):
    """A recurring job definition owned by a user (a saved search)."""

    id: str = Field(default_factory=lambda: f"search_{uuid.uuid4().hex[:16]}")
    owner_id: str
    name: str = ""
    schedule: ItemSchedule = Field(default_factory=ItemSchedule)
    last_run_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    attributes: dict[str, Any] = {}


class JobDescriptor(BaseModel):
    """What the downstream worker receives for one run of one item."""

    item_id: str
    owner_id: str
    schedule_type: ScheduleType
    enqueued_at: datetime | None = None


# ── Monitoring ───────────────────────────────────────────────────────────────

class SchedulerStatus(BaseModel):
    phase: SchedulerPhase
    is_running: bool
    scheduler_enabled: bool
    last_tick_time: datetime | None = None
    consecutive_error_count: int = 0
    error_threshold: int
    poll_interval_seconds: float
    lease: LeaseStatus
