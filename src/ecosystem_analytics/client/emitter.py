"""Client-side event emitter embedded in product CLIs and SDKs.

Tracking never raises into the host operation: any delivery failure is absorbed into
the durable queue, and the queue is replayed through the batch endpoint after the
next successful delivery.

The configured timeouts are passed straight to `requests`, which applies them to the
connect and to each socket read separately. They bound a stalled server, not the total
transfer time: a server that trickles its response can keep a call open longer.
"""
from __future__ import annotations
import json
import logging
import platform
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict
import requests
from ecosystem_analytics.client.identity import resolve_participant_hash
from ecosystem_analytics.client.queue import DurableEventQueue
from ecosystem_analytics.config import Settings, get_settings
from ecosystem_analytics.exceptions import TransientDeliveryFailure
from ecosystem_analytics.models.events import EventType
from ecosystem_analytics.security.hmac import sign_body

logger = logging.getLogger(__name__)

QUEUE_FILE = "analytics-queue.json"
CLIENT_VERSION = "0.1.0"


class EventEmitter:
    def __init__(
        self,
        settings: Settings | None = None,
        http: requests.Session | None = None,
        queue: DurableEventQueue | None = None,
        participant_hash: str | None = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self.enabled = s.analytics_enabled
        self.api_url = s.analytics_api_url.rstrip("/")
        self.product = s.analytics_product
        self.source = s.analytics_source
        state_dir = Path(s.analytics_state_dir).expanduser()
        self.http = http or requests.Session()
        self.queue = queue or DurableEventQueue(state_dir / QUEUE_FILE, s.analytics_queue_max_events)
        self.participant_hash = participant_hash or resolve_participant_hash(state_dir)
        self.session_id = str(uuid.uuid4())

    def build_event(self, event_type: str, metadata: Dict[str, Any] | None = None) -> Dict[str, Any]:
        return {
            "event_id": str(uuid.uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "product": self.product,
            "event_type": event_type,
            "participant_hash": self.participant_hash,
            "session_id": self.session_id,
            "metadata": dict(metadata or {}),
        }

    def track(self, event_type: str, metadata: Dict[str, Any] | None = None) -> Dict[str, Any] | None:
        """Deliver one event; on failure keep it in the queue. Returns the event sent (or queued)."""
        if not self.enabled:
            return None
        event = self.build_event(event_type, metadata)
        try:
            self._post("/events", event, self.settings.analytics_timeout_seconds)
        except TransientDeliveryFailure as e:
            logger.debug("analytics delivery failed (%s); queueing %s", e, event["event_id"])
            self._enqueue(event)
            return event
        self.flush()
        return event

    def track_install(self, catalog_item_id: str, **metadata: Any):
        return self.track(EventType.INSTALL.value, {
            "catalog_item_id": catalog_item_id,
            "platform": platform.system().lower(),
            "python_version": platform.python_version(),
            "client_version": CLIENT_VERSION,
            "installation_method": "cli",
            "success": True,
            **metadata,
        })

    def track_discovery(self, search_query: str, result_count: int, **metadata: Any):
        return self.track(EventType.DISCOVERY.value, {"search_query": search_query, "result_count": result_count, **metadata})

    def track_referral(self, destination: str, **metadata: Any):
        return self.track(EventType.REFERRAL.value, {"referral_destination": destination, "source": self.source, **metadata})

    def track_usage(self, action: str, **metadata: Any):
        return self.track(EventType.USAGE.value, {"action": action, **metadata})

    def flush(self) -> bool:
        """Send every queued event in one batch. True when the queue was drained."""
        if not self.enabled:
            return False
        try:
            pending = self.queue.load()
        except OSError as e:
            logger.warning("could not read analytics queue: %s", e)
            return False
        if not pending:
            return True
        try:
            self._post("/events/batch", {"events": pending}, self.settings.analytics_batch_timeout_seconds)
        except TransientDeliveryFailure as e:
            logger.debug("analytics batch sync failed (%s); keeping %d queued", e, len(pending))
            return False
        try:
            self.queue.remove({e.get("event_id") for e in pending})
        except OSError as e:
            logger.warning("could not update analytics queue: %s", e)
            return False
        return True

    def _enqueue(self, event: Dict[str, Any]) -> None:
        try:
            self.queue.append(event)
        except OSError as e:
            logger.warning("could not persist analytics event %s: %s", event["event_id"], e)

    def _headers(self, body: bytes) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Ecosystem-Source": self.source,
            "X-Client-Version": CLIENT_VERSION,
        }
        if self.settings.ingest_secret:
            headers["X-Signature"] = sign_body(body, self.settings.ingest_secret)
        return headers

    def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        try:
            resp = self.http.post(f"{self.api_url}{path}", data=body, headers=self._headers(body), timeout=timeout)
        except requests.RequestException as e:
            raise TransientDeliveryFailure(str(e)) from e
        if not 200 <= resp.status_code < 300:
            raise TransientDeliveryFailure(f"{path} returned {resp.status_code}", status_code=resp.status_code)


_default_emitter: EventEmitter | None = None


def get_emitter() -> EventEmitter:
    global _default_emitter
    if _default_emitter is None:
        _default_emitter = EventEmitter()
    return _default_emitter
