"""FastAPI application for the waiting-room queue.

The app exposes the queue engine to the staff dashboard, the front-desk
registration form and the patient self-service pages.  Configuration is
read from environment variables (see ``config.py``).  Redis is optional
and used for the change feed, notification jobs and rate limiting.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from cache import check_rate_limit
from collaborators import AppointmentCollaborator, PatientDirectory
from config import FEED_HEARTBEAT_SECONDS, configure_logging
from database import build_engine, init_db
from errors import QueueError, RateLimited
from feed import build_change_feed
from models import EntryStatus
from notifications import RedisNotificationDispatcher
from schemas import (
    AdmitRequest,
    DelayRequest,
    NotifyRequest,
    QueueCreate,
    QueueStatusRequest,
    QueueUpdate,
    TransitionRequest,
    WalkInRequest,
)
from services import QueueEngine
from views import QueueViewClient, patient_view

logger = logging.getLogger(__name__)


def build_queue_engine() -> QueueEngine:
    """Wire the engine from environment configuration."""
    db = build_engine()
    init_db(db)
    return QueueEngine(
        db=db,
        feed=build_change_feed(),
        dispatcher=RedisNotificationDispatcher(),
        patients=PatientDirectory(db),
        appointments=AppointmentCollaborator(db),
    )


def get_queue_engine(request: Request) -> QueueEngine:
    return request.app.state.queue_engine


def _throttle(subject: str, action: str) -> None:
    if not check_rate_limit(subject, action):
        raise RateLimited("Too many requests. Please wait a few minutes before trying again.")


def create_app(queue_engine: Optional[QueueEngine] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "queue_engine", None) is None:
            configure_logging()
            logger.info("Starting waiting-room queue service")
            app.state.queue_engine = build_queue_engine()
        app.state.queue_engine.recompute_all()
        yield
        logger.info("Shutting down")

    app = FastAPI(
        title="Waiting Room Queue",
        description="Walk-in and scheduled patient queues for health centers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.queue_engine = queue_engine

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, error: QueueError) -> JSONResponse:
        return JSONResponse(status_code=error.http_status, content={"error": error.code, "detail": error.message})

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    # ----- queues -----

    @app.post("/queues", status_code=201)
    def create_queue(body: QueueCreate, engine: QueueEngine = Depends(get_queue_engine)):
        return engine.create_queue(body.center_id, body.name, body.description, body.average_wait_time)

    @app.get("/queues")
    def list_queues(center_id: Optional[str] = None, engine: QueueEngine = Depends(get_queue_engine)):
        return engine.list_queues(center_id)

    @app.get("/queues/{queue_id}")
    def get_queue(queue_id: int, engine: QueueEngine = Depends(get_queue_engine)):
        return engine.get_queue(queue_id)

    @app.patch("/queues/{queue_id}")
    def update_queue(queue_id: int, body: QueueUpdate, engine: QueueEngine = Depends(get_queue_engine)):
        return engine.update_queue(queue_id, body.name, body.description, body.average_wait_time)

    @app.post("/queues/{queue_id}/status")
    def set_queue_status(queue_id: int, body: QueueStatusRequest, engine: QueueEngine = Depends(get_queue_engine)):
        return engine.set_queue_status(queue_id, body.status)

    @app.get("/queues/{queue_id}/board")
    def queue_board(queue_id: int, engine: QueueEngine = Depends(get_queue_engine)) -> Dict[str, Any]:
        return {"queue_id": queue_id, "tickets": engine.board(queue_id)}

    @app.get("/queues/{queue_id}/entries")
    def queue_entries(
        queue_id: int,
        status: Optional[List[EntryStatus]] = Query(default=None),
        engine: QueueEngine = Depends(get_queue_engine),
    ):
        engine.get_queue(queue_id)
        return engine.list_entries(queue_id, status)

    @app.get("/queues/{queue_id}/logs")
    def queue_logs(queue_id: int, limit: int = Query(default=50, ge=1, le=500), engine: QueueEngine = Depends(get_queue_engine)):
        engine.get_queue(queue_id)
        return engine.queue_logs(queue_id, limit)

    @app.get("/queues/{queue_id}/metrics")
    def queue_metrics(queue_id: int, engine: QueueEngine = Depends(get_queue_engine)) -> Dict[str, Any]:
        return engine.queue_metrics(queue_id)

    @app.get("/queues/{queue_id}/events")
    async def queue_events(
        queue_id: int,
        request: Request,
        patient_id: Optional[str] = None,
        engine: QueueEngine = Depends(get_queue_engine),
    ):
        """Server-Sent Events: a full view now, then one per change."""
        await run_in_threadpool(engine.get_queue, queue_id)
        client = QueueViewClient(engine, engine.feed, queue_id, patient_id)

        async def event_stream():
            try:
                view = await run_in_threadpool(client.open)
                yield f"data: {json.dumps(view)}\n\n"
                while not await request.is_disconnected():
                    view = await run_in_threadpool(client.next_view, FEED_HEARTBEAT_SECONDS)
                    if view is None:
                        yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                    else:
                        yield f"data: {json.dumps(view)}\n\n"
            finally:
                client.close()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    # ----- admission -----

    @app.post("/queues/{queue_id}/entries", status_code=201)
    def admit_patient(queue_id: int, body: AdmitRequest, engine: QueueEngine = Depends(get_queue_engine)):
        """Front desk registers an arrival (walk-in or scheduled)."""
        return engine.admit(queue_id, body.patient_id, body.practitioner_id, body.appointment_id)

    @app.post("/queues/{queue_id}/walk-ins", status_code=201)
    def admit_walk_in(queue_id: int, body: WalkInRequest, engine: QueueEngine = Depends(get_queue_engine)):
        """Walk-in without an account: create a temporary patient, then admit."""
        patient = engine.patients.create_temporary(
            body.email,
            first_name=body.first_name or "Patient",
            last_name=body.last_name or "Temporary",
        )
        return engine.admit(queue_id, patient.id, body.practitioner_id)

    @app.post("/queues/{queue_id}/check-in", status_code=201)
    def self_check_in(queue_id: int, body: AdmitRequest, engine: QueueEngine = Depends(get_queue_engine)):
        """Patient checks themselves in from their phone."""
        _throttle(body.patient_id, "check_in")
        return engine.admit(queue_id, body.patient_id, body.practitioner_id, body.appointment_id)

    # ----- entries -----

    @app.get("/entries/{entry_id}")
    def get_entry(entry_id: int, engine: QueueEngine = Depends(get_queue_engine)):
        return engine.get_entry(entry_id)

    @app.post("/entries/{entry_id}/transition")
    def transition_entry(entry_id: int, body: TransitionRequest, engine: QueueEngine = Depends(get_queue_engine)):
        return engine.transition(entry_id, body.status, body.notes)

    @app.post("/entries/{entry_id}/delay")
    def report_delay(entry_id: int, body: DelayRequest, engine: QueueEngine = Depends(get_queue_engine)):
        entry = engine.get_entry(entry_id)
        _throttle(entry.patient_id, "delay")
        return engine.request_delay(entry_id, body.notes)

    @app.post("/entries/{entry_id}/notify")
    def notify_entry(entry_id: int, body: NotifyRequest, engine: QueueEngine = Depends(get_queue_engine)) -> Dict[str, Any]:
        success = engine.notify(entry_id, body.intent)
        return {"success": success, "entry": engine.get_entry(entry_id)}

    # ----- patients and appointments -----

    @app.get("/patients")
    def search_patients(q: str = Query(default=""), engine: QueueEngine = Depends(get_queue_engine)):
        return engine.patients.search(q)

    @app.get("/patients/{patient_id}/entries")
    def patient_entries(patient_id: str, engine: QueueEngine = Depends(get_queue_engine)) -> Dict[str, Any]:
        return patient_view(engine, patient_id)

    @app.get("/centers/{center_id}/appointments/today")
    def todays_appointments(center_id: str, day: Optional[date] = Query(default=None, alias="date"), engine: QueueEngine = Depends(get_queue_engine)):
        return engine.appointments.get_todays_scheduled_appointments(center_id, day)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
