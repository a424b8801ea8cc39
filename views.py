"""Per-actor views of a queue, kept fresh by the change feed.

A view never computes positions or ETAs itself; it re-reads what the
engine wrote after every feed event.  Two views exist: the staff
dashboard (the whole board) and the patient self-view (only that
patient's open entries, with their rank and estimated wait).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional

from feed import ChangeFeed
from models import EntryStatus, QueueEntry, utcnow
from services import QueueEngine

logger = logging.getLogger(__name__)


def entry_to_dict(entry: QueueEntry) -> Dict[str, Any]:
    return entry.model_dump(mode="json")


def staff_dashboard(engine: QueueEngine, queue_id: int) -> Dict[str, Any]:
    queue = engine.get_queue(queue_id)
    board = engine.board(queue_id)
    return {
        "type": "staff_dashboard",
        "queue": queue.model_dump(mode="json"),
        "tickets": {status: [entry_to_dict(e) for e in entries] for status, entries in board.items()},
        "generated_at": utcnow().isoformat(),
    }


def patient_view(engine: QueueEngine, patient_id: str, queue_id: Optional[int] = None) -> Dict[str, Any]:
    entries: List[Dict[str, Any]] = []
    for entry in engine.patient_entries(patient_id):
        if queue_id is not None and entry.queue_id != queue_id:
            continue
        queue = engine.get_queue(entry.queue_id)
        entries.append(
            {
                "entry_id": entry.id,
                "queue_id": entry.queue_id,
                "queue_name": queue.name,
                "status": entry.status.value,
                "position": entry.position,
                "estimated_wait_time": entry.estimated_wait_time,
                "can_report_delay": entry.status == EntryStatus.waiting,
                "notified": entry.notified_at is not None,
                "delay_notes": entry.delay_notes,
            }
        )
    return {
        "type": "patient_view",
        "patient_id": patient_id,
        "entries": entries,
        "generated_at": utcnow().isoformat(),
    }


class QueueViewClient:
    """Follows one queue and yields a fresh view after every change.

    ``patient_id`` switches from the staff dashboard to the patient
    self-view.  Events with a revision already rendered are skipped.
    """

    def __init__(self, engine: QueueEngine, feed: ChangeFeed, queue_id: int, patient_id: Optional[str] = None) -> None:
        self.engine = engine
        self.feed = feed
        self.queue_id = queue_id
        self.patient_id = patient_id
        self.last_revision = -1
        self._subscription = None

    def snapshot(self) -> Dict[str, Any]:
        # Revision first: the view read after it is at least that fresh.
        revision = self.engine.get_queue(self.queue_id).revision
        if self.patient_id is not None:
            view = patient_view(self.engine, self.patient_id, self.queue_id)
        else:
            view = staff_dashboard(self.engine, self.queue_id)
        view["revision"] = revision
        self.last_revision = max(self.last_revision, revision)
        return view

    def open(self) -> Dict[str, Any]:
        """Subscribe, then take the first snapshot so nothing falls in between."""
        if self._subscription is None:
            self._subscription = self.feed.subscribe(self.queue_id)
        return self.snapshot()

    def next_view(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block for the next change; None on timeout or on a stale event."""
        if self._subscription is None:
            self.open()
        event = self._subscription.get(timeout=timeout)
        if event is None or event.revision <= self.last_revision:
            return None
        logger.debug("Queue %s changed (%s, revision %s)", self.queue_id, event.reason, event.revision)
        return self.snapshot()

    def follow(self, timeout: Optional[float] = None) -> Iterator[Optional[Dict[str, Any]]]:
        """Initial snapshot, then one view per change; None marks an idle timeout."""
        yield self.open()
        while True:
            yield self.next_view(timeout=timeout)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def __enter__(self) -> "QueueViewClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
