"""Queue engine: admission, status transitions, positions and notifications.

All state lives in the database; the engine holds no queue state of its
own.  Every mutation follows the same path:

1. take the per-queue lock and lock the queue row,
2. apply a conditional single-row update to the entry,
3. recompute positions and ETAs over the queue's active set,
4. bump the queue revision and commit,
5. append the audit log entry (best effort) and publish a feed event.

Positions are derived only by ``recompute_positions_and_etas``.  Views
read them; they never compute them.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, time
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from sqlalchemy import exc, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from collaborators import AppointmentCollaborator, PatientDirectory
from config import DEFAULT_AVERAGE_WAIT_MINUTES
from database import get_session
from errors import (
    CollaboratorSyncFailed,
    DuplicateActiveEntry,
    EntryNotFound,
    InvalidTransition,
    NotificationDeliveryFailed,
    PatientNotFound,
    QueueNotFound,
    QueueNotFoundOrInactive,
    StoreUnavailable,
)
from feed import ChangeFeed, QueueChanged
from models import (
    ACTIVE_STATUSES,
    OPEN_STATUSES,
    EntryStatus,
    EventType,
    NotificationIntent,
    NotificationLog,
    QueueEntry,
    QueueLog,
    QueueStatus,
    WaitingQueue,
    can_transition,
    utcnow,
)
from notifications import NotificationDispatcher, appointment_message_kind, notification_content

logger = logging.getLogger(__name__)

BOARD_STATUSES = [s.value for s in EntryStatus]


def recompute_positions_and_etas(session: Session, queue: WaitingQueue) -> Tuple[List[QueueEntry], bool]:
    """Dense FIFO ranking of the active set, written back to the entries.

    Returns the active entries in order and whether anything changed.
    Safe to run any number of times.
    """
    avg_wait = queue.average_wait_time or 0
    active = session.exec(
        select(QueueEntry)
        .where(QueueEntry.queue_id == queue.id, col(QueueEntry.status).in_(list(ACTIVE_STATUSES)))
        .order_by(col(QueueEntry.arrival_time), col(QueueEntry.id))
    ).all()

    changed = False
    for idx, entry in enumerate(active, start=1):
        eta = (idx - 1) * avg_wait
        if entry.position != idx or entry.estimated_wait_time != eta:
            entry.position = idx
            entry.estimated_wait_time = eta
            session.add(entry)
            changed = True

    # Entries that left the line keep no rank.
    stale = session.exec(
        select(QueueEntry).where(
            QueueEntry.queue_id == queue.id,
            col(QueueEntry.status).not_in(list(ACTIVE_STATUSES)),
            col(QueueEntry.position).is_not(None),
        )
    ).all()
    for entry in stale:
        entry.position = None
        entry.estimated_wait_time = None
        session.add(entry)
        changed = True

    if changed:
        session.flush()
    return list(active), changed


def _coerce_status(value: Union[str, EntryStatus]) -> EntryStatus:
    try:
        return EntryStatus(value)
    except ValueError:
        raise InvalidTransition(f"Unknown entry status: {value!r}") from None


class QueueEngine:
    def __init__(
        self,
        db: Engine,
        feed: ChangeFeed,
        dispatcher: NotificationDispatcher,
        patients: PatientDirectory,
        appointments: AppointmentCollaborator,
    ) -> None:
        self.db = db
        self.feed = feed
        self.dispatcher = dispatcher
        self.patients = patients
        self.appointments = appointments
        # Locks live only while some call holds them.
        self._locks: weakref.WeakValueDictionary[int, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ----- plumbing -----

    @contextmanager
    def _store_errors(self) -> Iterator[None]:
        try:
            yield
        except exc.IntegrityError:
            raise
        except (exc.OperationalError, exc.DBAPIError) as e:
            raise StoreUnavailable(f"Queue store unavailable: {e.__class__.__name__}") from e

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._store_errors():
            with get_session(self.db) as session:
                yield session

    def _queue_lock(self, queue_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(queue_id)
            if lock is None:
                lock = self._locks[queue_id] = threading.Lock()
            return lock

    @staticmethod
    def _lock_queue_row(session: Session, queue_id: int) -> Optional[WaitingQueue]:
        return session.exec(select(WaitingQueue).where(WaitingQueue.id == queue_id).with_for_update()).first()

    @staticmethod
    def _bump_revision(session: Session, queue: WaitingQueue) -> int:
        queue.revision = (queue.revision or 0) + 1
        queue.updated_at = utcnow()
        session.add(queue)
        return queue.revision

    def _record(
        self,
        queue_id: int,
        entry_id: Optional[int],
        event_type: EventType,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append to the audit log.  A failed write never undoes the mutation."""
        try:
            with get_session(self.db) as session:
                session.add(QueueLog(queue_id=queue_id, entry_id=entry_id, event_type=event_type, details=details))
                session.commit()
        except exc.SQLAlchemyError as e:
            logger.warning("Queue log write failed (%s, queue %s): %s", event_type.value, queue_id, e)

    def _publish(self, queue_id: int, revision: int, reason: str, entry_id: Optional[int] = None) -> None:
        self.feed.publish(QueueChanged(queue_id=queue_id, revision=revision, reason=reason, entry_id=entry_id))

    def _entry_queue_id(self, entry_id: int) -> int:
        with self._session() as session:
            entry = session.get(QueueEntry, entry_id)
        if entry is None:
            raise EntryNotFound(f"Entry {entry_id} not found")
        return entry.queue_id

    # ----- admission -----

    def admit(
        self,
        queue_id: int,
        patient_id: str,
        practitioner_id: Optional[str] = None,
        appointment_id: Optional[str] = None,
    ) -> QueueEntry:
        """Put a patient at the back of an active queue."""
        if not patient_id:
            raise PatientNotFound("A patient is required")
        with self._store_errors():
            if not self.patients.exists(patient_id):
                raise PatientNotFound(f"Patient {patient_id} not found")

        with self._queue_lock(queue_id):
            with self._session() as session:
                queue = self._lock_queue_row(session, queue_id)
                if queue is None or queue.status != QueueStatus.active:
                    raise QueueNotFoundOrInactive(f"Queue {queue_id} is missing or not active")

                existing = session.exec(
                    select(QueueEntry.id).where(
                        QueueEntry.queue_id == queue_id,
                        QueueEntry.patient_id == patient_id,
                        col(QueueEntry.status).in_(list(OPEN_STATUSES)),
                    )
                ).first()
                if existing is not None:
                    raise DuplicateActiveEntry(f"Patient {patient_id} already has entry {existing} in queue {queue_id}")

                now = utcnow()
                entry = QueueEntry(
                    queue_id=queue_id,
                    patient_id=patient_id,
                    practitioner_id=practitioner_id,
                    appointment_id=appointment_id,
                    status=EntryStatus.waiting,
                    arrival_time=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(entry)
                try:
                    session.flush()
                    recompute_positions_and_etas(session, queue)
                    revision = self._bump_revision(session, queue)
                    session.commit()
                except exc.IntegrityError as e:
                    # Lost the race to another device of the same patient.
                    session.rollback()
                    raise DuplicateActiveEntry(f"Patient {patient_id} already has an open entry in queue {queue_id}") from e

            logger.info("Admitted patient %s to queue %s as entry %s (position %s)", patient_id, queue_id, entry.id, entry.position)
            self._record(
                queue_id,
                entry.id,
                EventType.entry_created,
                {"patient_id": patient_id, "appointment_id": appointment_id, "position": entry.position},
            )
            self._publish(queue_id, revision, EventType.entry_created.value, entry.id)
        return entry

    # ----- transitions -----

    def transition(
        self,
        entry_id: int,
        new_status: Union[str, EntryStatus],
        notes: Optional[str] = None,
    ) -> QueueEntry:
        """Move an entry along one edge of the status state machine."""
        target = _coerce_status(new_status)
        queue_id = self._entry_queue_id(entry_id)

        with self._queue_lock(queue_id):
            with self._session() as session:
                queue = self._lock_queue_row(session, queue_id)
                entry = session.get(QueueEntry, entry_id)
                if entry is None or queue is None:
                    raise EntryNotFound(f"Entry {entry_id} not found")
                previous = entry.status
                if not can_transition(previous, target):
                    raise InvalidTransition(f"Cannot move entry {entry_id} from {previous.value} to {target.value}")

                now = utcnow()
                values: Dict[str, Any] = {"status": target, "updated_at": now}
                if target == EntryStatus.in_progress:
                    values["start_time"] = now
                elif target == EntryStatus.completed:
                    values["end_time"] = now
                elif target == EntryStatus.delayed:
                    values["delay_request_at"] = now
                    if notes is not None:
                        values["delay_notes"] = notes
                elif target == EntryStatus.waiting:
                    values["delay_request_at"] = None
                    values["delay_notes"] = None

                result = session.connection().execute(
                    update(QueueEntry)
                    .where(col(QueueEntry.id) == entry_id, col(QueueEntry.status) == previous)
                    .values(**values)
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise InvalidTransition(f"Entry {entry_id} was changed by someone else; reload and retry")
                session.refresh(entry)

                recompute_positions_and_etas(session, queue)
                revision = self._bump_revision(session, queue)
                session.commit()

            logger.info("Entry %s in queue %s: %s -> %s", entry_id, queue_id, previous.value, target.value)
            details: Dict[str, Any] = {"old_status": previous.value, "new_status": target.value}
            if notes:
                details["notes"] = notes
            self._record(queue_id, entry_id, EventType.status_changed, details)
            self._publish(queue_id, revision, EventType.status_changed.value, entry_id)

        if entry.appointment_id and target in (EntryStatus.in_progress, EntryStatus.completed):
            self._sync_appointment(entry, target.value)
        return entry

    def request_delay(self, entry_id: int, notes: str) -> QueueEntry:
        """Patient-side report of running late."""
        return self.transition(entry_id, EntryStatus.delayed, notes=notes)

    def _sync_appointment(self, entry: QueueEntry, status: str) -> None:
        try:
            with self._store_errors():
                self.appointments.set_appointment_status(entry.appointment_id, status)
        except (CollaboratorSyncFailed, StoreUnavailable) as e:
            logger.warning("Appointment %s not synced to %s for entry %s: %s", entry.appointment_id, status, entry.id, e)
            self._record(
                entry.queue_id,
                entry.id,
                EventType.appointment_sync_failed,
                {"appointment_id": entry.appointment_id, "status": status, "error": str(e)},
            )

    # ----- notifications -----

    def notify(self, entry_id: int, intent: Union[str, NotificationIntent]) -> bool:
        """Tell the patient about their turn.

        With a linked appointment (``soon``/``now``) the appointment channel
        owns the message, and ``notified_at`` is set only once it accepts
        it.  Otherwise the engine is the notifier: every call writes a
        notification log row and stamps ``notified_at`` the first time,
        while the dispatcher hand-off stays best effort.  Returns False
        when delivery failed.
        """
        intent = NotificationIntent(intent)
        with self._session() as session:
            entry = session.get(QueueEntry, entry_id)
            if entry is None:
                raise EntryNotFound(f"Entry {entry_id} not found")
            queue = session.get(WaitingQueue, entry.queue_id)
        with self._store_errors():
            prefs = self.patients.notification_preferences(entry.patient_id)

        via_appointment = bool(entry.appointment_id) and intent != NotificationIntent.delay
        if via_appointment:
            kind = appointment_message_kind(intent)
            content = None
        else:
            kind = f"queue_{intent.value}"
            content = notification_content(intent, queue.name if queue else None)

        handed_off = False
        transport_failed = False
        error: Optional[str] = None
        per_channel: Dict[str, bool] = {}
        try:
            result = self.dispatcher.dispatch(
                entry.patient_id,
                prefs,
                kind,
                content,
                appointment_id=entry.appointment_id if via_appointment else None,
            )
            handed_off = result.success
            per_channel = result.per_channel_results
            if not handed_off:
                error = "No notification channel accepted the message"
        except NotificationDeliveryFailed as e:
            transport_failed = True
            error = e.message
        if error:
            logger.warning("Notification %s for entry %s not delivered: %s", kind, entry_id, error)

        success = handed_off if via_appointment else not transport_failed
        queue_id = entry.queue_id
        revision: Optional[int] = None
        with self._queue_lock(queue_id):
            with self._session() as session:
                locked_queue = self._lock_queue_row(session, queue_id)
                if not via_appointment:
                    session.add(
                        NotificationLog(
                            entry_id=entry_id,
                            appointment_id=entry.appointment_id,
                            notification_type=kind,
                            status="sent" if handed_off else "failed",
                            recipient=prefs.email or entry.patient_id,
                            content=content,
                            error=error,
                        )
                    )
                if success or not via_appointment:
                    now = utcnow()
                    # Only the first notice is kept.
                    session.connection().execute(
                        update(QueueEntry)
                        .where(col(QueueEntry.id) == entry_id, col(QueueEntry.notified_at).is_(None))
                        .values(notified_at=now, updated_at=now)
                    )
                    if locked_queue is not None:
                        revision = self._bump_revision(session, locked_queue)
                session.commit()

            details: Dict[str, Any] = {"intent": intent.value, "kind": kind, "channels": per_channel}
            if error:
                details["error"] = error
            self._record(queue_id, entry_id, EventType.notified if success else EventType.notification_failed, details)
            if revision is not None:
                self._publish(queue_id, revision, EventType.notified.value, entry_id)
        return success

    # ----- queue administration -----

    def create_queue(
        self,
        center_id: str,
        name: str,
        description: Optional[str] = None,
        average_wait_time: Optional[int] = None,
    ) -> WaitingQueue:
        queue = WaitingQueue(
            center_id=center_id,
            name=name,
            description=description,
            average_wait_time=DEFAULT_AVERAGE_WAIT_MINUTES if average_wait_time is None else average_wait_time,
        )
        with self._session() as session:
            session.add(queue)
            session.commit()
            session.refresh(queue)
        logger.info("Created queue %s (%s) for center %s", queue.id, name, center_id)
        self._record(queue.id, None, EventType.queue_created, {"name": name, "center_id": center_id})
        return queue

    def get_queue(self, queue_id: int) -> WaitingQueue:
        with self._session() as session:
            queue = session.get(WaitingQueue, queue_id)
        if queue is None:
            raise QueueNotFound(f"Queue {queue_id} not found")
        return queue

    def list_queues(self, center_id: Optional[str] = None) -> List[WaitingQueue]:
        stmt = select(WaitingQueue).order_by(col(WaitingQueue.created_at), col(WaitingQueue.id))
        if center_id:
            stmt = stmt.where(WaitingQueue.center_id == center_id)
        with self._session() as session:
            return list(session.exec(stmt).all())

    def update_queue(
        self,
        queue_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        average_wait_time: Optional[int] = None,
    ) -> WaitingQueue:
        changes: Dict[str, Any] = {}
        with self._queue_lock(queue_id):
            with self._session() as session:
                queue = self._lock_queue_row(session, queue_id)
                if queue is None:
                    raise QueueNotFound(f"Queue {queue_id} not found")
                if name is not None and name != queue.name:
                    changes["name"] = name
                    queue.name = name
                if description is not None and description != queue.description:
                    changes["description"] = description
                    queue.description = description
                if average_wait_time is not None and average_wait_time != queue.average_wait_time:
                    changes["average_wait_time"] = average_wait_time
                    queue.average_wait_time = average_wait_time
                    recompute_positions_and_etas(session, queue)
                if not changes:
                    return queue
                revision = self._bump_revision(session, queue)
                session.commit()
            self._record(queue_id, None, EventType.queue_updated, changes)
            self._publish(queue_id, revision, EventType.queue_updated.value)
        return queue

    def set_queue_status(self, queue_id: int, status: Union[str, QueueStatus]) -> WaitingQueue:
        """Pause, deactivate or reopen a queue.  Queues are never deleted."""
        status = QueueStatus(status)
        with self._queue_lock(queue_id):
            with self._session() as session:
                queue = self._lock_queue_row(session, queue_id)
                if queue is None:
                    raise QueueNotFound(f"Queue {queue_id} not found")
                previous = queue.status
                if previous == status:
                    return queue
                queue.status = status
                revision = self._bump_revision(session, queue)
                session.commit()
            logger.info("Queue %s: %s -> %s", queue_id, previous.value, status.value)
            self._record(
                queue_id, None, EventType.queue_status_changed, {"old_status": previous.value, "new_status": status.value}
            )
            self._publish(queue_id, revision, EventType.queue_status_changed.value)
        return queue

    def recompute(self, queue_id: int) -> List[QueueEntry]:
        """Repair pass over one queue; publishes only if something moved."""
        with self._queue_lock(queue_id):
            with self._session() as session:
                queue = self._lock_queue_row(session, queue_id)
                if queue is None:
                    raise QueueNotFound(f"Queue {queue_id} not found")
                active, changed = recompute_positions_and_etas(session, queue)
                revision = self._bump_revision(session, queue) if changed else None
                session.commit()
            if revision is not None:
                logger.info("Recomputed positions for queue %s", queue_id)
                self._publish(queue_id, revision, "recomputed")
        return active

    def recompute_all(self) -> None:
        for queue in self.list_queues():
            self.recompute(queue.id)

    # ----- reads -----

    def get_entry(self, entry_id: int) -> QueueEntry:
        with self._session() as session:
            entry = session.get(QueueEntry, entry_id)
        if entry is None:
            raise EntryNotFound(f"Entry {entry_id} not found")
        return entry

    def list_entries(self, queue_id: int, statuses: Optional[Iterable[Union[str, EntryStatus]]] = None) -> List[QueueEntry]:
        stmt = select(QueueEntry).where(QueueEntry.queue_id == queue_id)
        if statuses is not None:
            stmt = stmt.where(col(QueueEntry.status).in_([_coerce_status(s) for s in statuses]))
        stmt = stmt.order_by(col(QueueEntry.position).is_(None), col(QueueEntry.position), col(QueueEntry.arrival_time), col(QueueEntry.id))
        with self._session() as session:
            return list(session.exec(stmt).all())

    def board(self, queue_id: int) -> Dict[str, List[QueueEntry]]:
        """Today's entries grouped by status, plus anything still open."""
        self.get_queue(queue_id)
        start_of_day = datetime.combine(utcnow().date(), time.min)
        stmt = (
            select(QueueEntry)
            .where(
                QueueEntry.queue_id == queue_id,
                or_(col(QueueEntry.status).in_(list(OPEN_STATUSES)), col(QueueEntry.arrival_time) >= start_of_day),
            )
            .order_by(col(QueueEntry.position).is_(None), col(QueueEntry.position), col(QueueEntry.arrival_time), col(QueueEntry.id))
        )
        board: Dict[str, List[QueueEntry]] = {s: [] for s in BOARD_STATUSES}
        with self._session() as session:
            for entry in session.exec(stmt).all():
                board[entry.status.value].append(entry)
        return board

    def patient_entries(self, patient_id: str) -> List[QueueEntry]:
        stmt = (
            select(QueueEntry)
            .where(QueueEntry.patient_id == patient_id, col(QueueEntry.status).in_(list(OPEN_STATUSES)))
            .order_by(col(QueueEntry.arrival_time), col(QueueEntry.id))
        )
        with self._session() as session:
            return list(session.exec(stmt).all())

    def queue_logs(self, queue_id: int, limit: int = 50) -> List[QueueLog]:
        stmt = (
            select(QueueLog)
            .where(QueueLog.queue_id == queue_id)
            .order_by(col(QueueLog.event_time).desc(), col(QueueLog.id).desc())
            .limit(limit)
        )
        with self._session() as session:
            return list(session.exec(stmt).all())

    def queue_metrics(self, queue_id: int) -> Dict[str, Any]:
        """Live counters for the staff dashboard.

        ``observed_consultation_minutes`` is informational; ETAs always use
        the queue's configured ``average_wait_time``.
        """
        queue = self.get_queue(queue_id)
        start_of_day = datetime.combine(utcnow().date(), time.min)
        entries = self.list_entries(queue_id)

        waiting = [e for e in entries if e.status in ACTIVE_STATUSES]
        in_progress = [e for e in entries if e.status == EntryStatus.in_progress]
        today = [e for e in entries if e.arrival_time >= start_of_day]
        completed_today = [e for e in today if e.status == EntryStatus.completed]
        durations = [
            (e.end_time - e.start_time).total_seconds() / 60
            for e in completed_today
            if e.start_time is not None and e.end_time is not None
        ]

        return {
            "queue_id": queue_id,
            "status": queue.status.value,
            "queue_length": len(waiting),
            "delayed": sum(1 for e in waiting if e.status == EntryStatus.delayed),
            "in_progress": len(in_progress),
            "today_total": len(today),
            "today_completed": len(completed_today),
            "today_no_show": sum(1 for e in today if e.status == EntryStatus.no_show),
            "average_wait_time": queue.average_wait_time,
            "observed_consultation_minutes": round(sum(durations) / len(durations), 1) if durations else None,
            "estimated_wait_for_new_patient": len(waiting) * queue.average_wait_time,
            "last_updated": utcnow().isoformat(),
        }
