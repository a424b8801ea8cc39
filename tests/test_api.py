import pytest
from fastapi.testclient import TestClient

from main import create_app
from models import utcnow


@pytest.fixture
def client(queue_engine):
    return TestClient(create_app(queue_engine))


@pytest.fixture
def queue_id(client):
    response = client.post("/queues", json={"center_id": "center-1", "name": "General practice", "average_wait_time": 15})
    assert response.status_code == 201
    return response.json()["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_admit_and_transition_over_http(client, queue_id, make_patient):
    a, b = make_patient("Ann"), make_patient("Bob")

    first = client.post(f"/queues/{queue_id}/entries", json={"patient_id": a.id})
    second = client.post(f"/queues/{queue_id}/entries", json={"patient_id": b.id})
    assert first.status_code == 201
    assert first.json()["position"] == 1
    assert second.json()["estimated_wait_time"] == 15

    started = client.post(f"/entries/{first.json()['id']}/transition", json={"status": "in_progress"})
    assert started.status_code == 200
    assert started.json()["status"] == "in_progress"
    assert started.json()["start_time"] is not None

    entry = client.get(f"/entries/{second.json()['id']}").json()
    assert entry["position"] == 1

    board = client.get(f"/queues/{queue_id}/board").json()["tickets"]
    assert len(board["in_progress"]) == 1
    assert len(board["waiting"]) == 1


def test_error_kinds_map_to_statuses(client, queue_id, make_patient):
    patient = make_patient()
    entry = client.post(f"/queues/{queue_id}/entries", json={"patient_id": patient.id}).json()

    duplicate = client.post(f"/queues/{queue_id}/entries", json={"patient_id": patient.id})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "duplicate_active_entry"

    invalid = client.post(f"/entries/{entry['id']}/transition", json={"status": "completed"})
    assert invalid.status_code == 409
    assert invalid.json()["error"] == "invalid_transition"

    missing = client.post("/entries/999/transition", json={"status": "in_progress"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "entry_not_found"

    unknown_patient = client.post(f"/queues/{queue_id}/entries", json={"patient_id": "ghost"})
    assert unknown_patient.status_code == 404
    assert unknown_patient.json()["error"] == "patient_not_found"


def test_paused_queue_rejects_check_in(client, queue_id, make_patient):
    paused = client.post(f"/queues/{queue_id}/status", json={"status": "paused"})
    assert paused.json()["status"] == "paused"

    response = client.post(f"/queues/{queue_id}/check-in", json={"patient_id": make_patient().id})
    assert response.status_code == 404
    assert response.json()["error"] == "queue_not_found_or_inactive"


def test_walk_in_creates_temporary_patient(client, queue_id):
    response = client.post(f"/queues/{queue_id}/walk-ins", json={"email": "walkin@example.com"})
    assert response.status_code == 201
    patient_id = response.json()["patient_id"]

    found = client.get("/patients", params={"q": "walkin"}).json()
    assert [p["id"] for p in found] == [patient_id]
    assert found[0]["is_temporary"] is True

    again = client.post(f"/queues/{queue_id}/walk-ins", json={"email": "walkin@example.com"})
    assert again.status_code == 409


def test_delay_and_notify_over_http(client, queue_id, make_patient):
    patient = make_patient()
    entry = client.post(f"/queues/{queue_id}/check-in", json={"patient_id": patient.id}).json()

    delayed = client.post(f"/entries/{entry['id']}/delay", json={"notes": "stuck in traffic"})
    assert delayed.json()["status"] == "delayed"
    assert delayed.json()["delay_notes"] == "stuck in traffic"
    assert client.post(f"/entries/{entry['id']}/delay", json={"notes": ""}).status_code == 422

    notified = client.post(f"/entries/{entry['id']}/notify", json={"intent": "now"}).json()
    assert notified["success"] is True
    assert notified["entry"]["notified_at"] is not None

    view = client.get(f"/patients/{patient.id}/entries").json()
    assert view["entries"][0]["status"] == "delayed"
    assert view["entries"][0]["notified"] is True


def test_queue_admin_endpoints(client, queue_id, make_patient):
    client.post(f"/queues/{queue_id}/entries", json={"patient_id": make_patient("A").id})
    second = client.post(f"/queues/{queue_id}/entries", json={"patient_id": make_patient("B").id}).json()

    updated = client.patch(f"/queues/{queue_id}", json={"average_wait_time": 10})
    assert updated.json()["average_wait_time"] == 10
    assert client.get(f"/entries/{second['id']}").json()["estimated_wait_time"] == 10

    assert [q["id"] for q in client.get("/queues", params={"center_id": "center-1"}).json()] == [queue_id]
    assert client.get("/queues/999").status_code == 404

    metrics = client.get(f"/queues/{queue_id}/metrics").json()
    assert metrics["queue_length"] == 2

    waiting = client.get(f"/queues/{queue_id}/entries", params={"status": "waiting"}).json()
    assert [e["position"] for e in waiting] == [1, 2]

    logs = client.get(f"/queues/{queue_id}/logs").json()
    assert {"entry_created", "queue_updated", "queue_created"} <= {log["event_type"] for log in logs}


def test_todays_appointments(client, make_patient, make_appointment):
    patient = make_patient()
    appointment = make_appointment(patient.id, center_id="center-9")
    make_appointment(patient.id, center_id="center-9", status="cancelled")

    response = client.get("/centers/center-9/appointments/today", params={"date": utcnow().date().isoformat()})
    assert [a["id"] for a in response.json()] == [appointment.id]


def test_store_outage_returns_503(file_db, outage, make_queue_engine):
    engine = make_queue_engine(file_db)
    client = TestClient(create_app(engine))
    queue = engine.create_queue("center-1", "Walk-ins")

    outage.start()
    response = client.get(f"/queues/{queue.id}/board")
    outage.stop()

    assert response.status_code == 503
    assert response.json()["error"] == "store_unavailable"
    assert client.get(f"/queues/{queue.id}/board").status_code == 200
