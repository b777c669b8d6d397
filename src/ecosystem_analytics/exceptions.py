"""Error taxonomy for the analytics engine.

Only ClientValidationError and PersistenceError ever cross the HTTP boundary.
TransientDeliveryFailure stays inside the client emitter, which absorbs it into
the durable queue.
"""
from __future__ import annotations


class EcosystemAnalyticsError(Exception):
    pass


class ClientValidationError(EcosystemAnalyticsError):
    """Malformed event or illegal request (missing field, self-referral)."""

    def __init__(self, reason: str, event_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.event_id = event_id


class PersistenceError(EcosystemAnalyticsError):
    """The datastore rejected or failed a write; safe for the client to retry."""


class TransientDeliveryFailure(EcosystemAnalyticsError):
    """Network error, timeout or non-success response while delivering events."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
