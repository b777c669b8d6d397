"""Directed product -> product discovery matrix with windowed conversion attribution.

Referrals increment discovery_count on their edge and leave an attribution row for the
participant. A later conversion-eligible event for the destination claims the most
recent unclaimed referral inside the attribution window with a conditional UPDATE, so
each referral converts at most once even when conversions race.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from ecosystem_analytics.config import get_settings
from ecosystem_analytics.infrastructure.db import upsert
from ecosystem_analytics.infrastructure.metrics import registry
from ecosystem_analytics.models.events import utc_naive, utcnow
from ecosystem_analytics.models.tables import DiscoveryMatrixEdge, ReferralAttribution, ConversionRecord
from ecosystem_analytics.validation.events import validate_referral

logger = logging.getLogger(__name__)

REFERRALS_RECORDED = Counter('discovery_referrals_total', 'Referrals recorded on the discovery matrix', ['source', 'destination'], registry=registry)
CONVERSIONS = Counter('discovery_conversions_total', 'Conversion events by attribution outcome', ['destination', 'outcome'], registry=registry)


@dataclass
class ConversionAttribution:
    event_id: str
    destination_product: str
    participant_hash: str | None
    attributed: bool
    source_product: str | None = None
    referral_id: int | None = None


def record_referral(
    session: Session,
    source_product: str,
    destination_product: str,
    participant_hash: str | None = None,
    timestamp: datetime | None = None,
    referral_event_id: str | None = None,
) -> None:
    """Count a referral on the (source, destination) edge.

    Raises ClientValidationError for self-referrals instead of dropping them.
    """
    validate_referral(source_product, destination_product, event_id=referral_event_id)
    ts = utc_naive(timestamp) if timestamp else utcnow()
    table = DiscoveryMatrixEdge.__table__
    c = table.c
    stmt = upsert(session, table).values(
        source_product=source_product,
        destination_product=destination_product,
        discovery_count=1,
        conversion_count=0,
        last_updated=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[c.source_product, c.destination_product],
        set_={"discovery_count": c.discovery_count + 1, "last_updated": stmt.excluded.last_updated},
    )
    session.execute(stmt)
    if participant_hash:
        session.execute(
            upsert(session, ReferralAttribution.__table__).values(
                referral_event_id=referral_event_id,
                participant_hash=participant_hash,
                source_product=source_product,
                destination_product=destination_product,
                referred_at=ts,
            ).on_conflict_do_nothing()
        )
    REFERRALS_RECORDED.labels(source=source_product, destination=destination_product).inc()


def record_conversion(
    session: Session,
    destination_product: str,
    participant_hash: str | None,
    timestamp: datetime,
    event_id: str | None = None,
    window_hours: int | None = None,
) -> ConversionAttribution:
    """Attribute a conversion to the participant's latest open referral to destination_product.

    A conversion with no eligible referral is still recorded, as unattributed, and
    leaves the matrix untouched.
    """
    ts = utc_naive(timestamp)
    event_id = event_id or str(uuid.uuid4())
    existing = session.get(ConversionRecord, event_id)
    if existing is not None:
        return ConversionAttribution(
            event_id=existing.event_id,
            destination_product=existing.destination_product,
            participant_hash=existing.participant_hash,
            attributed=existing.attributed,
            source_product=existing.source_product,
            referral_id=existing.referral_id,
        )
    window = timedelta(hours=window_hours if window_hours is not None else get_settings().attribution_window_hours)
    result = ConversionAttribution(event_id, destination_product, participant_hash, attributed=False)
    if participant_hash:
        RA = ReferralAttribution
        candidates = session.execute(
            select(RA.id, RA.source_product)
            .where(
                RA.participant_hash == participant_hash,
                RA.destination_product == destination_product,
                RA.converted_at.is_(None),
                RA.referred_at >= ts - window,
                RA.referred_at <= ts,
            )
            .order_by(RA.referred_at.desc(), RA.id.desc())
        ).all()
        for referral_id, source_product in candidates:
            claimed = session.execute(
                update(RA)
                .where(RA.id == referral_id, RA.converted_at.is_(None))
                .values(converted_at=ts, conversion_event_id=event_id)
            ).rowcount
            if claimed != 1:
                # another writer took this referral first; try the next one
                continue
            session.execute(
                update(DiscoveryMatrixEdge)
                .where(
                    DiscoveryMatrixEdge.source_product == source_product,
                    DiscoveryMatrixEdge.destination_product == destination_product,
                )
                .values(conversion_count=DiscoveryMatrixEdge.conversion_count + 1, last_updated=utcnow())
            )
            result.attributed = True
            result.source_product = source_product
            result.referral_id = referral_id
            break
    session.execute(
        upsert(session, ConversionRecord.__table__).values(
            event_id=event_id,
            participant_hash=participant_hash,
            destination_product=destination_product,
            converted_at=ts,
            attributed=result.attributed,
            source_product=result.source_product,
            referral_id=result.referral_id,
        ).on_conflict_do_nothing()
    )
    CONVERSIONS.labels(destination=destination_product, outcome="attributed" if result.attributed else "unattributed").inc()
    if not result.attributed:
        logger.debug("unattributed conversion for %s (event %s)", destination_product, event_id)
    return result


def get_edge(session: Session, source_product: str, destination_product: str) -> DiscoveryMatrixEdge | None:
    return session.get(DiscoveryMatrixEdge, (source_product, destination_product), populate_existing=True)
