"""Error kinds raised by the queue engine.

Every kind is recoverable: the HTTP layer turns it into a status code and
a ``{"error": code, "detail": message}`` body that the front end renders
as a toast.
"""

from __future__ import annotations


class QueueError(Exception):
    code = "queue_error"
    http_status = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class QueueNotFoundOrInactive(QueueError):
    code = "queue_not_found_or_inactive"
    http_status = 404


class QueueNotFound(QueueNotFoundOrInactive):
    """Administrative lookups of a queue id that does not exist."""


class DuplicateActiveEntry(QueueError):
    code = "duplicate_active_entry"
    http_status = 409


class EntryNotFound(QueueError):
    code = "entry_not_found"
    http_status = 404


class PatientNotFound(QueueError):
    code = "patient_not_found"
    http_status = 404


class InvalidTransition(QueueError):
    code = "invalid_transition"
    http_status = 409


class NotificationDeliveryFailed(QueueError):
    code = "notification_delivery_failed"
    http_status = 502


class CollaboratorSyncFailed(QueueError):
    code = "collaborator_sync_failed"
    http_status = 502


class StoreUnavailable(QueueError):
    code = "store_unavailable"
    http_status = 503


class RateLimited(QueueError):
    code = "rate_limited"
    http_status = 429
