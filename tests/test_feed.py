import pytest

from errors import InvalidTransition
from feed import InMemoryChangeFeed, QueueChanged, channel_name
from views import QueueViewClient, patient_view, staff_dashboard


def _drain(subscription):
    events = []
    while True:
        event = subscription.get(timeout=0.01)
        if event is None:
            return events
        events.append(event)


def test_in_memory_feed_fans_out_per_queue():
    feed = InMemoryChangeFeed()
    first = feed.subscribe(1)
    second = feed.subscribe(1)
    other = feed.subscribe(2)

    feed.publish(QueueChanged(queue_id=1, revision=1, reason="entry_created", entry_id=10))

    assert [e.entry_id for e in _drain(first)] == [10]
    assert [e.entry_id for e in _drain(second)] == [10]
    assert _drain(other) == []


def test_closed_subscription_stops_receiving():
    feed = InMemoryChangeFeed()
    with feed.subscribe(1) as sub:
        assert feed.subscriber_count(1) == 1
    assert feed.subscriber_count(1) == 0

    feed.publish(QueueChanged(queue_id=1, revision=1, reason="status_changed"))
    assert sub.get(timeout=0.01) is None


def test_event_json_round_trip_and_channel():
    event = QueueChanged(queue_id=3, revision=7, reason="notified", entry_id=5)
    assert QueueChanged.from_json(event.to_json()) == event
    assert channel_name(3) == "waiting_queue:3:updates"


def test_engine_publishes_in_commit_order(queue_engine, feed, queue, make_patient):
    sub = feed.subscribe(queue.id)
    a = queue_engine.admit(queue.id, make_patient("A").id)
    b = queue_engine.admit(queue.id, make_patient("B").id)
    queue_engine.transition(a.id, "in_progress")
    queue_engine.request_delay(b.id, "traffic")
    queue_engine.notify(b.id, "delay")

    events = _drain(sub)
    assert [e.reason for e in events] == [
        "entry_created",
        "entry_created",
        "status_changed",
        "status_changed",
        "notified",
    ]
    revisions = [e.revision for e in events]
    assert revisions == sorted(revisions)
    assert len(set(revisions)) == len(revisions)
    assert events[-1].revision == queue_engine.get_queue(queue.id).revision


def test_rejected_operations_publish_nothing(queue_engine, feed, queue, make_patient):
    entry = queue_engine.admit(queue.id, make_patient().id)
    sub = feed.subscribe(queue.id)

    with pytest.raises(InvalidTransition):
        queue_engine.transition(entry.id, "completed")
    assert _drain(sub) == []


def test_other_queues_are_not_notified(queue_engine, feed, queue, make_patient):
    other = queue_engine.create_queue("center-1", "Radiology")
    sub = feed.subscribe(other.id)
    queue_engine.admit(queue.id, make_patient().id)
    assert _drain(sub) == []


def test_staff_view_client_refreshes_on_change(queue_engine, feed, queue, make_patient):
    with QueueViewClient(queue_engine, feed, queue.id) as client:
        initial = client.open()
        assert initial["type"] == "staff_dashboard"
        assert initial["tickets"]["waiting"] == []

        entry = queue_engine.admit(queue.id, make_patient().id)
        view = client.next_view(timeout=1)
        assert [t["id"] for t in view["tickets"]["waiting"]] == [entry.id]
        assert view["tickets"]["waiting"][0]["position"] == 1
        assert view["revision"] == queue_engine.get_queue(queue.id).revision

        assert client.next_view(timeout=0.01) is None


def test_view_client_skips_events_it_already_rendered(queue_engine, feed, queue, make_patient):
    client = QueueViewClient(queue_engine, feed, queue.id)
    client.open()
    queue_engine.admit(queue.id, make_patient().id)
    # A late subscriber snapshot already includes the admission.
    client.snapshot()
    assert client.next_view(timeout=0.01) is None
    client.close()


def test_patient_view_reflects_own_entry(queue_engine, feed, queue, make_patient):
    ann, bob = make_patient("Ann"), make_patient("Bob")
    queue_engine.admit(queue.id, ann.id)
    entry = queue_engine.admit(queue.id, bob.id)

    with QueueViewClient(queue_engine, feed, queue.id, patient_id=bob.id) as client:
        view = client.open()
        assert view["type"] == "patient_view"
        assert [e["entry_id"] for e in view["entries"]] == [entry.id]
        assert view["entries"][0]["position"] == 2
        assert view["entries"][0]["can_report_delay"] is True

        queue_engine.request_delay(entry.id, "traffic")
        view = client.next_view(timeout=1)
        assert view["entries"][0]["status"] == "delayed"
        assert view["entries"][0]["can_report_delay"] is False


def test_plain_reads_recover_missed_events(queue_engine, queue, make_patient):
    entry = queue_engine.admit(queue.id, make_patient().id)
    queue_engine.transition(entry.id, "delayed", notes="late")

    board = staff_dashboard(queue_engine, queue.id)
    assert [t["id"] for t in board["tickets"]["delayed"]] == [entry.id]
    assert patient_view(queue_engine, entry.patient_id)["entries"][0]["position"] == 1
