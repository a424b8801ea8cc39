import os

os.environ.pop("REDIS_URL", None)

import sqlite3  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import event  # noqa: E402

from collaborators import AppointmentCollaborator, PatientDirectory  # noqa: E402
from database import build_engine, get_session, init_db  # noqa: E402
from errors import NotificationDeliveryFailed  # noqa: E402
from feed import InMemoryChangeFeed  # noqa: E402
from models import ACTIVE_STATUSES, Appointment, Patient, utcnow  # noqa: E402
from notifications import ChannelPreferences, DispatchResult, NotificationDispatcher  # noqa: E402
from services import QueueEngine  # noqa: E402


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self) -> None:
        self.calls = []
        self.fail = False

    def dispatch(
        self,
        recipient_patient_id: str,
        channel_preferences: ChannelPreferences,
        message_kind: str,
        content: Optional[str],
        appointment_id: Optional[str] = None,
    ) -> DispatchResult:
        self.calls.append(
            {
                "patient_id": recipient_patient_id,
                "channels": channel_preferences.enabled_channels(),
                "kind": message_kind,
                "content": content,
                "appointment_id": appointment_id,
            }
        )
        if self.fail:
            raise NotificationDeliveryFailed("provider unreachable")
        return DispatchResult(success=True, per_channel_results={"email": True})


class StoreOutage:
    """Refuses new database connections while `down` is set."""

    def __init__(self, db) -> None:
        self.db = db
        self.down = False
        event.listen(db, "do_connect", self._connect)

    def _connect(self, dialect, connection_record, cargs, cparams):
        if self.down:
            raise sqlite3.OperationalError("unable to open database file")

    def start(self) -> None:
        self.down = True
        self.db.dispose()

    def stop(self) -> None:
        self.down = False


def _make_engine(db, feed, dispatcher):
    return QueueEngine(
        db=db,
        feed=feed,
        dispatcher=dispatcher,
        patients=PatientDirectory(db),
        appointments=AppointmentCollaborator(db),
    )


@pytest.fixture
def db():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def queue_engine(db, feed, dispatcher):
    return _make_engine(db, feed, dispatcher)


@pytest.fixture
def make_queue_engine(feed, dispatcher):
    """Engine over an arbitrary database, for tests needing a file-backed store."""

    def factory(db):
        return _make_engine(db, feed, dispatcher)

    return factory


@pytest.fixture
def make_patient(db):
    def factory(first_name="Test", last_name="Patient", email=None):
        patient = Patient(first_name=first_name, last_name=last_name, email=email or f"{first_name.lower()}@example.com")
        with get_session(db) as session:
            session.add(patient)
            session.commit()
            session.refresh(patient)
        return patient

    return factory


@pytest.fixture
def make_appointment(db):
    def factory(patient_id, center_id="center-1", start_time=None, status="scheduled"):
        appointment = Appointment(
            center_id=center_id,
            patient_id=patient_id,
            start_time=start_time or utcnow(),
            status=status,
        )
        with get_session(db) as session:
            session.add(appointment)
            session.commit()
            session.refresh(appointment)
        return appointment

    return factory


@pytest.fixture
def queue(queue_engine):
    return queue_engine.create_queue("center-1", "General practice", average_wait_time=15)


def assert_dense_fifo(engine, queue_id):
    active = [e for e in engine.list_entries(queue_id) if e.status in ACTIVE_STATUSES]
    active.sort(key=lambda e: (e.arrival_time, e.id))
    assert [e.position for e in active] == list(range(1, len(active) + 1))


@pytest.fixture
def file_db(tmp_path):
    db = build_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    init_db(db)
    yield db
    db.dispose()


@pytest.fixture
def outage(file_db):
    return StoreOutage(file_db)
