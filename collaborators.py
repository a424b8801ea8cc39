"""Default collaborators backed by the clinic database.

The queue engine only needs a handful of narrow operations on patients
and appointments.  These classes implement them against the shared
tables; a deployment where patients and appointments live in another
service swaps them for clients of that service.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import exc, or_
from sqlalchemy.engine import Engine
from sqlmodel import col, select

from database import get_session
from errors import CollaboratorSyncFailed
from models import Appointment, NotificationPreference, Patient, utcnow
from notifications import ChannelPreferences

logger = logging.getLogger(__name__)


class PatientDirectory:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, patient_id: str) -> Optional[Patient]:
        with get_session(self.engine) as session:
            return session.get(Patient, patient_id)

    def exists(self, patient_id: str) -> bool:
        return self.get(patient_id) is not None

    def search(self, query: str, limit: int = 5) -> List[Patient]:
        """Match first name, last name or email; queries under 3 characters return nothing."""
        query = (query or "").strip()
        if len(query) < 3:
            return []
        pattern = f"%{query.lower()}%"
        stmt = (
            select(Patient)
            .where(
                or_(
                    col(Patient.first_name).ilike(pattern),
                    col(Patient.last_name).ilike(pattern),
                    col(Patient.email).ilike(pattern),
                )
            )
            .limit(limit)
        )
        with get_session(self.engine) as session:
            return list(session.exec(stmt).all())

    def create_temporary(self, email: str, first_name: str = "Patient", last_name: str = "Temporary") -> Patient:
        """Create a minimal record for a walk-in without an account.

        An existing record with the same email is reused.
        """
        with get_session(self.engine) as session:
            existing = session.exec(select(Patient).where(Patient.email == email)).first()
            if existing is not None:
                return existing
            patient = Patient(email=email, first_name=first_name, last_name=last_name, is_temporary=True)
            session.add(patient)
            session.commit()
            session.refresh(patient)
        logger.info("Created temporary patient %s", patient.id)
        return patient

    def notification_preferences(self, patient_id: str) -> ChannelPreferences:
        with get_session(self.engine) as session:
            patient = session.get(Patient, patient_id)
            prefs = session.exec(
                select(NotificationPreference).where(NotificationPreference.user_id == patient_id)
            ).first()
        email = patient.email if patient else None
        if prefs is None:
            return ChannelPreferences(email=email)
        return ChannelPreferences(
            email_enabled=prefs.email_enabled,
            sms_enabled=prefs.sms_enabled,
            whatsapp_enabled=prefs.whatsapp_enabled,
            phone_number=prefs.phone_number,
            email=email,
        )


class AppointmentCollaborator:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def set_appointment_status(self, appointment_id: str, status: str) -> None:
        try:
            with get_session(self.engine) as session:
                appointment = session.get(Appointment, appointment_id)
                if appointment is None:
                    raise CollaboratorSyncFailed(f"Appointment {appointment_id} not found")
                appointment.status = status
                appointment.updated_at = utcnow()
                session.add(appointment)
                session.commit()
        except exc.SQLAlchemyError as e:
            raise CollaboratorSyncFailed(f"Could not update appointment {appointment_id}: {e}") from e
        logger.info("Appointment %s set to %s", appointment_id, status)

    def get_todays_scheduled_appointments(self, center_id: str, day: Optional[date] = None) -> List[Appointment]:
        day = day or utcnow().date()
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        stmt = (
            select(Appointment)
            .where(
                Appointment.center_id == center_id,
                Appointment.status == "scheduled",
                col(Appointment.start_time) >= start,
                col(Appointment.start_time) < end,
            )
            .order_by(col(Appointment.start_time))
        )
        with get_session(self.engine) as session:
            return list(session.exec(stmt).all())
