"""Notification dispatch contract.

The engine decides *that* a patient should be told something and *what*
to say when no richer template exists.  Delivery through email, SMS or
WhatsApp is somebody else's job: the default dispatcher pushes one JSON
job per enabled channel onto a Redis list for an external worker to
drain.  Without Redis it runs in simulation mode and only logs the job.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import redis

from cache import get_redis
from config import NOTIFICATION_QUEUE_KEY
from errors import NotificationDeliveryFailed
from models import NotificationIntent, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ChannelPreferences:
    email_enabled: bool = True
    sms_enabled: bool = False
    whatsapp_enabled: bool = False
    phone_number: Optional[str] = None
    email: Optional[str] = None

    def enabled_channels(self) -> List[str]:
        channels = []
        if self.email_enabled:
            channels.append("email")
        if self.phone_number:
            if self.sms_enabled:
                channels.append("sms")
            if self.whatsapp_enabled:
                channels.append("whatsapp")
        return channels


@dataclass
class DispatchResult:
    success: bool
    per_channel_results: Dict[str, bool] = field(default_factory=dict)


class NotificationDispatcher:
    def dispatch(
        self,
        recipient_patient_id: str,
        channel_preferences: ChannelPreferences,
        message_kind: str,
        content: Optional[str],
        appointment_id: Optional[str] = None,
    ) -> DispatchResult:
        """Hand a message to the delivery channels.

        ``content`` may be None when ``appointment_id`` is given: the
        delivery side then renders its own reminder/confirmation template.
        Transport failures raise ``NotificationDeliveryFailed``.
        """
        raise NotImplementedError


class RedisNotificationDispatcher(NotificationDispatcher):
    def __init__(self, client: Optional[redis.Redis] = None, list_key: str = NOTIFICATION_QUEUE_KEY) -> None:
        self.client = client
        self.list_key = list_key

    def dispatch(
        self,
        recipient_patient_id: str,
        channel_preferences: ChannelPreferences,
        message_kind: str,
        content: Optional[str],
        appointment_id: Optional[str] = None,
    ) -> DispatchResult:
        channels = channel_preferences.enabled_channels()
        if not channels:
            logger.info("Patient %s has no notification channel enabled", recipient_patient_id)
            return DispatchResult(success=False)

        client = self.client if self.client is not None else get_redis()
        results: Dict[str, bool] = {}
        for channel in channels:
            job = {
                "patient_id": recipient_patient_id,
                "channel": channel,
                "to": channel_preferences.email if channel == "email" else channel_preferences.phone_number,
                "type": message_kind,
                "appointment_id": appointment_id,
                "message": content,
                "timestamp": utcnow().isoformat(),
            }
            if client is None:
                logger.info("[SIMULATION] %s notification to patient %s: %s", channel, recipient_patient_id, message_kind)
                results[channel] = True
                continue
            try:
                client.lpush(self.list_key, json.dumps(job))
            except redis.RedisError as e:
                raise NotificationDeliveryFailed(f"Failed to queue {channel} notification: {e}") from e
            logger.info("Queued %s notification for patient %s: %s", channel, recipient_patient_id, message_kind)
            results[channel] = True

        return DispatchResult(success=all(results.values()), per_channel_results=results)


def notification_content(intent: NotificationIntent, queue_name: Optional[str]) -> str:
    """Text sent for a queue notification when no appointment template applies."""
    name = queue_name or "the waiting room"
    if intent == NotificationIntent.soon:
        return f"Your turn is approaching in {name}. Please get ready."
    if intent == NotificationIntent.now:
        return f"It is your turn! Please come in for your consultation in {name}."
    return f"A patient reported a delay in {name}. This may affect the waiting time."


def appointment_message_kind(intent: NotificationIntent) -> str:
    return "reminder" if intent == NotificationIntent.soon else "confirmation"
