"""Database models for the waiting room.

We use SQLModel to define the schema.  A center owns one or more waiting
queues; a queue holds entries, one per patient visit.  Entry status moves
through the small state machine in ``ALLOWED_TRANSITIONS`` and nowhere
else.  Queue logs are an append-only audit trail of what happened when.

Patients, appointments and notification preferences belong to the wider
clinic application; they are declared here only so that the default
collaborators have somewhere to read and write their narrow fields.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class QueueStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    paused = "paused"


class EntryStatus(str, Enum):
    """Possible statuses for a queue entry."""

    waiting = "waiting"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"
    delayed = "delayed"


ALLOWED_TRANSITIONS: Dict[EntryStatus, FrozenSet[EntryStatus]] = {
    EntryStatus.waiting: frozenset(
        {EntryStatus.in_progress, EntryStatus.cancelled, EntryStatus.no_show, EntryStatus.delayed}
    ),
    EntryStatus.delayed: frozenset(
        {EntryStatus.waiting, EntryStatus.in_progress, EntryStatus.cancelled, EntryStatus.no_show}
    ),
    EntryStatus.in_progress: frozenset({EntryStatus.completed}),
    EntryStatus.completed: frozenset(),
    EntryStatus.cancelled: frozenset(),
    EntryStatus.no_show: frozenset(),
}

# Entries still "in line"; only these carry a position.
ACTIVE_STATUSES: FrozenSet[EntryStatus] = frozenset({EntryStatus.waiting, EntryStatus.delayed})
TERMINAL_STATUSES: FrozenSet[EntryStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)
OPEN_STATUSES: FrozenSet[EntryStatus] = frozenset(EntryStatus) - TERMINAL_STATUSES


def can_transition(current: EntryStatus, target: EntryStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class NotificationIntent(str, Enum):
    soon = "soon"
    now = "now"
    delay = "delay"


class EventType(str, Enum):
    entry_created = "entry_created"
    status_changed = "status_changed"
    notified = "notified"
    notification_failed = "notification_failed"
    appointment_sync_failed = "appointment_sync_failed"
    queue_created = "queue_created"
    queue_updated = "queue_updated"
    queue_status_changed = "queue_status_changed"


class WaitingQueue(SQLModel, table=True):
    __tablename__ = "waiting_queues"

    id: Optional[int] = Field(default=None, primary_key=True)
    center_id: str = Field(index=True)
    name: str
    description: Optional[str] = None
    average_wait_time: int = Field(default=15, ge=0)  # minutes, set by the center
    status: QueueStatus = Field(default=QueueStatus.active)
    revision: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


_OPEN_ENTRY_CLAUSE = "status IN ('waiting', 'delayed', 'in_progress')"


class QueueEntry(SQLModel, table=True):
    __tablename__ = "queue_entries"
    __table_args__ = (
        # At most one open visit per patient and queue.
        Index(
            "uq_queue_entries_open_patient",
            "queue_id",
            "patient_id",
            unique=True,
            sqlite_where=text(_OPEN_ENTRY_CLAUSE),
            postgresql_where=text(_OPEN_ENTRY_CLAUSE),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    queue_id: int = Field(foreign_key="waiting_queues.id", index=True)
    patient_id: str = Field(index=True)
    practitioner_id: Optional[str] = None
    appointment_id: Optional[str] = None
    status: EntryStatus = Field(default=EntryStatus.waiting, index=True)
    position: Optional[int] = None
    estimated_wait_time: Optional[int] = None
    arrival_time: datetime = Field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    delay_request_at: Optional[datetime] = None
    delay_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class QueueLog(SQLModel, table=True):
    __tablename__ = "queue_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    queue_id: int = Field(foreign_key="waiting_queues.id", index=True)
    entry_id: Optional[int] = Field(default=None, foreign_key="queue_entries.id")
    event_type: EventType
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    event_time: datetime = Field(default_factory=utcnow)


class NotificationLog(SQLModel, table=True):
    __tablename__ = "notification_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: Optional[int] = Field(default=None, foreign_key="queue_entries.id", index=True)
    appointment_id: Optional[str] = None
    notification_type: str
    status: str  # sent, failed
    recipient: str
    content: Optional[str] = None
    error: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)


class Patient(SQLModel, table=True):
    __tablename__ = "patients"

    id: str = Field(default_factory=new_id, primary_key=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = Field(default=None, index=True)
    is_temporary: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"

    id: str = Field(default_factory=new_id, primary_key=True)
    center_id: str = Field(index=True)
    patient_id: str = Field(index=True)
    practitioner_id: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    status: str = Field(default="scheduled")
    updated_at: datetime = Field(default_factory=utcnow)


class NotificationPreference(SQLModel, table=True):
    __tablename__ = "notification_preferences"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, unique=True)
    email_enabled: bool = Field(default=True)
    sms_enabled: bool = Field(default=False)
    whatsapp_enabled: bool = Field(default=False)
    phone_number: Optional[str] = None
