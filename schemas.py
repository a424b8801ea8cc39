"""Pydantic schemas for request bodies.

Responses are the SQLModel rows themselves, or plain dicts for the
aggregated views.
"""
from typing import Optional

from pydantic import BaseModel, Field

from models import EntryStatus, NotificationIntent, QueueStatus


class QueueCreate(BaseModel):
    center_id: str
    name: str
    description: Optional[str] = None
    average_wait_time: Optional[int] = Field(default=None, ge=0)


class QueueUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    average_wait_time: Optional[int] = Field(default=None, ge=0)


class QueueStatusRequest(BaseModel):
    status: QueueStatus


class AdmitRequest(BaseModel):
    patient_id: str
    practitioner_id: Optional[str] = None
    appointment_id: Optional[str] = None


class WalkInRequest(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    practitioner_id: Optional[str] = None


class TransitionRequest(BaseModel):
    status: EntryStatus
    notes: Optional[str] = None


class DelayRequest(BaseModel):
    notes: str = Field(min_length=1)


class NotifyRequest(BaseModel):
    intent: NotificationIntent
