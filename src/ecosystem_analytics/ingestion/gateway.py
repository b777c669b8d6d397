"""Event ingestion gateway.

Each event is its own unit of work: the raw insert and the three aggregator updates
commit together or not at all. The raw insert uses ON CONFLICT DO NOTHING on event_id,
so a redelivered event is acknowledged without touching any aggregate.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Iterable
from prometheus_client import Counter, Histogram
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from ecosystem_analytics.aggregators import discovery, journeys, velocity
from ecosystem_analytics.config import Settings, get_settings, parse_event_types
from ecosystem_analytics.exceptions import ClientValidationError, PersistenceError
from ecosystem_analytics.infrastructure.db import upsert
from ecosystem_analytics.infrastructure.metrics import registry
from ecosystem_analytics.models.events import EcosystemEventData, EventType, utcnow
from ecosystem_analytics.models.tables import EcosystemEvent
from ecosystem_analytics.reporting.cache import QueryCache
from ecosystem_analytics.validation.events import validate_event

logger = logging.getLogger(__name__)

EVENTS_RECEIVED = Counter('ingest_events_received_total', 'Events received before validation', registry=registry)
EVENTS_ACCEPTED = Counter('ingest_events_accepted_total', 'New events persisted and aggregated', ['product', 'event_type'], registry=registry)
EVENTS_DUPLICATE = Counter('ingest_events_duplicate_total', 'Redelivered events acknowledged without reprocessing', registry=registry)
EVENTS_REJECTED = Counter('ingest_events_rejected_total', 'Events rejected', ['reason'], registry=registry)
INGEST_LATENCY = Histogram('ingest_event_latency_seconds', 'Latency to persist and aggregate one event', buckets=(0.005,0.01,0.05,0.1,0.25,0.5,1,2), registry=registry)


@dataclass
class IngestResult:
    event_id: str
    accepted: bool
    duplicate: bool = False


@dataclass
class BatchIngestResult:
    accepted_count: int = 0
    duplicate_count: int = 0
    persistence_failures: int = 0
    rejected: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def apply_aggregates(session: Session, event: EcosystemEventData, settings: Settings | None = None) -> None:
    """Fan one event out to the journey, velocity and discovery aggregators.

    Every call is a per-key atomic statement, which also makes this safe to run from
    the reconciliation task for rows that were never aggregated.
    """
    settings = settings or get_settings()
    participant = event.participant_hash
    if participant:
        journeys.record_touchpoint(session, participant, event.product, event.timestamp)
    if event.event_type in parse_event_types(settings.velocity_event_types):
        velocity.increment(session, event.product, event.timestamp, participant)
    if event.event_type == EventType.REFERRAL.value:
        discovery.record_referral(
            session,
            event.product,
            event.referral_destination,
            participant_hash=participant,
            timestamp=event.timestamp,
            referral_event_id=event.event_id,
        )
    if event.event_type in parse_event_types(settings.conversion_event_types):
        discovery.record_conversion(
            session,
            event.product,
            participant,
            event.timestamp,
            event_id=event.event_id,
            window_hours=settings.attribution_window_hours,
        )


class IngestionGateway:
    def __init__(self, session_factory: Callable[[], Session], settings: Settings | None = None, cache: QueryCache | None = None):
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self.cache = cache

    def ingest(self, payload: Any) -> IngestResult:
        """Validate, persist and aggregate one event.

        Raises ClientValidationError for malformed payloads (nothing persisted) and
        PersistenceError when the datastore fails.
        """
        result = self._ingest_one(payload)
        if result.accepted and not result.duplicate and self.cache:
            self.cache.invalidate()
        return result

    def ingest_batch(self, payloads: Iterable[Any]) -> BatchIngestResult:
        items = list(payloads)
        if len(items) > self.settings.max_batch_size:
            raise ClientValidationError(f"batch_too_large:{len(items)}>{self.settings.max_batch_size}")
        out = BatchIngestResult()
        new_events = 0
        for index, payload in enumerate(items):
            try:
                res = self._ingest_one(payload)
            except ClientValidationError as e:
                out.rejected.append({"index": index, "event_id": e.event_id, "reason": e.reason})
                continue
            except PersistenceError as e:
                out.persistence_failures += 1
                out.rejected.append({"index": index, "event_id": _payload_event_id(payload), "reason": f"persistence_error:{e}"})
                continue
            out.accepted_count += 1
            if res.duplicate:
                out.duplicate_count += 1
            else:
                new_events += 1
        if new_events and self.cache:
            self.cache.invalidate()
        logger.info(
            "batch ingested: accepted=%d duplicates=%d rejected=%d",
            out.accepted_count, out.duplicate_count, len(out.rejected),
        )
        return out

    def _ingest_one(self, payload: Any) -> IngestResult:
        EVENTS_RECEIVED.inc()
        try:
            event = validate_event(payload, max_metadata_keys=self.settings.max_metadata_keys)
        except ClientValidationError as e:
            EVENTS_REJECTED.labels(reason=e.reason.split(":", 1)[0]).inc()
            raise
        start = time.time()
        try:
            with self._session_factory() as session, session.begin():
                inserted = session.execute(
                    upsert(session, EcosystemEvent.__table__).values(
                        event_id=event.event_id,
                        participant_hash=event.participant_hash,
                        session_id=event.session_id,
                        product=event.product,
                        event_type=event.event_type,
                        catalog_item_id=event.catalog_item_id,
                        metadata=event.metadata,
                        ts=event.timestamp,
                        received_at=utcnow(),
                        aggregated_at=utcnow(),
                    ).on_conflict_do_nothing(index_elements=["event_id"])
                ).rowcount
                if inserted != 1:
                    EVENTS_DUPLICATE.inc()
                    return IngestResult(event.event_id, accepted=True, duplicate=True)
                apply_aggregates(session, event, self.settings)
        except SQLAlchemyError as e:
            EVENTS_REJECTED.labels(reason="persistence_error").inc()
            logger.exception("failed to persist event %s", event.event_id)
            raise PersistenceError(e.__class__.__name__) from e
        finally:
            INGEST_LATENCY.observe(time.time() - start)
        EVENTS_ACCEPTED.labels(product=event.product, event_type=event.event_type).inc()
        return IngestResult(event.event_id, accepted=True)


def _payload_event_id(payload: Any) -> str | None:
    if isinstance(payload, dict) and isinstance(payload.get("event_id"), str):
        return payload["event_id"]
    return None
