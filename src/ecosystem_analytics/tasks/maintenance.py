from __future__ import annotations
import logging
from datetime import timedelta
from celery import shared_task
from prometheus_client import Counter
from sqlalchemy import delete, select, update
from sqlalchemy.exc import OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from ecosystem_analytics.config import get_settings
from ecosystem_analytics.exceptions import ClientValidationError
from ecosystem_analytics.infrastructure import db
from ecosystem_analytics.infrastructure.metrics import registry
from ecosystem_analytics.ingestion.gateway import apply_aggregates
from ecosystem_analytics.models.events import EcosystemEventData, utcnow
from ecosystem_analytics.models.tables import EcosystemEvent, ReferralAttribution

logger = logging.getLogger(__name__)

RECONCILED = Counter('reconciled_events_total', 'Raw events aggregated by the reconciliation task', registry=registry)
RECONCILE_REJECTED = Counter('reconcile_rejected_events_total', 'Raw events the aggregators refused during reconciliation', registry=registry)
REFERRALS_EXPIRED = Counter('referral_attributions_expired_total', 'Unconverted referrals removed after retention', registry=registry)


def _to_event(row: EcosystemEvent) -> EcosystemEventData:
    return EcosystemEventData(
        event_id=row.event_id,
        timestamp=row.ts,
        product=row.product,
        event_type=row.event_type,
        participant_hash=row.participant_hash,
        session_id=row.session_id,
        metadata=dict(row.event_metadata or {}),
    )


def _claim(session, row_id: int) -> bool:
    return session.execute(
        update(EcosystemEvent)
        .where(EcosystemEvent.id == row_id, EcosystemEvent.aggregated_at.is_(None))
        .values(aggregated_at=utcnow())
    ).rowcount == 1


@retry(retry=retry_if_exception_type(OperationalError), stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10), reraise=True)
def _reconcile_one(row_id: int, settings) -> str:
    """Claim one unaggregated row and fan it out.

    Returns "reconciled", "skipped" when another worker got there first, or "rejected"
    when the aggregators refuse the row. A rejected row is marked aggregated on its own
    so it is not picked up again.
    """
    try:
        with db.SessionLocal() as session, session.begin():
            if not _claim(session, row_id):
                return "skipped"
            row = session.get(EcosystemEvent, row_id)
            apply_aggregates(session, _to_event(row), settings)
    except ClientValidationError as e:
        logger.warning("raw event row %s cannot be aggregated (%s); marking it done", row_id, e.reason)
        with db.SessionLocal() as session, session.begin():
            _claim(session, row_id)
        return "rejected"
    return "reconciled"


@shared_task
def reconcile_pending_events(grace_minutes: int | None = None, batch: int | None = None):
    """Aggregate raw events that were stored but never fanned out (bulk imports, crashes)."""
    settings = get_settings()
    grace = settings.reconcile_grace_minutes if grace_minutes is None else grace_minutes
    limit = batch or settings.reconcile_batch_size
    cutoff = utcnow() - timedelta(minutes=grace)
    with db.SessionLocal() as session:
        ids = session.execute(
            select(EcosystemEvent.id)
            .where(EcosystemEvent.aggregated_at.is_(None), EcosystemEvent.received_at <= cutoff)
            .order_by(EcosystemEvent.received_at, EcosystemEvent.id)
            .limit(limit)
        ).scalars().all()
    done = rejected = 0
    for row_id in ids:
        outcome = _reconcile_one(row_id, settings)
        if outcome == "reconciled":
            done += 1
        elif outcome == "rejected":
            rejected += 1
    if done:
        RECONCILED.inc(done)
        logger.info("reconciled %d pending event(s)", done)
    if rejected:
        RECONCILE_REJECTED.inc(rejected)
    return {"status": "ok", "candidates": len(ids), "reconciled": done, "rejected": rejected}


@shared_task
def expire_stale_referrals(days: int | None = None):
    settings = get_settings()
    cutoff = utcnow() - timedelta(days=days if days is not None else settings.referral_retention_days)
    with db.SessionLocal() as session, session.begin():
        res = session.execute(
            delete(ReferralAttribution).where(
                ReferralAttribution.converted_at.is_(None),
                ReferralAttribution.referred_at < cutoff,
            )
        )
    deleted = res.rowcount or 0
    REFERRALS_EXPIRED.inc(deleted)
    return {"status": "ok", "deleted": deleted}
