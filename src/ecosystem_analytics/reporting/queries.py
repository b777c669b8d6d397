"""Read-side reports over the aggregates: velocity trend, cross-product funnel,
journey patterns and a per-product summary.

All functions return plain JSON-serialisable dicts so results can be cached as-is.
"""
from __future__ import annotations
from datetime import datetime, timedelta
from sqlalchemy import select, func, case
from sqlalchemy.orm import Session
from ecosystem_analytics.aggregators import velocity
from ecosystem_analytics.exceptions import ClientValidationError
from ecosystem_analytics.models.events import EventType, Product, utcnow
from ecosystem_analytics.models.tables import (
    ConversionRecord,
    DiscoveryMatrixEdge,
    EcosystemEvent,
    InstallVelocityBucket,
    UserJourney,
    split_path,
)

MAX_WINDOW_HOURS = 24 * 30
MAX_PATTERN_LIMIT = 500


def trend(rate: float | None) -> str:
    if rate is None or rate == 0:
        return "flat"
    return "up" if rate > 0 else "down"


def _bucket_dict(b: InstallVelocityBucket, previous: InstallVelocityBucket | None) -> dict:
    return {
        "date": b.bucket_date.isoformat(),
        "hour": b.bucket_hour,
        "install_count": b.install_count,
        "unique_participant_count": b.unique_participant_count,
        "growth_rate": velocity.growth_rate(b.install_count, previous.install_count if previous else None),
    }


def realtime_velocity(session: Session, product: str, window_hours: int = 24, now: datetime | None = None) -> dict:
    """Trailing-window bucket series plus the current hour's growth rate and trend.

    growth_rate compares the current clock hour with the hour before it; it is None
    when the previous hour has no installs (e.g. a product's first active hour).
    """
    if product not in {p.value for p in Product}:
        raise ClientValidationError(f"unknown_product:{product}")
    if window_hours < 1 or window_hours > MAX_WINDOW_HOURS:
        raise ClientValidationError(f"invalid_window_hours:{window_hours}")
    current_start = velocity.hour_floor(now or utcnow())
    window_start = current_start - timedelta(hours=window_hours - 1)
    # one extra hour so the oldest point in the window still has a predecessor
    rows = velocity.bucket_series(session, product, window_start - timedelta(hours=1), current_start)
    by_start = {b.bucket_start: b for b in rows}
    series = [
        _bucket_dict(b, by_start.get(b.bucket_start - timedelta(hours=1)))
        for b in rows
        if b.bucket_start >= window_start
    ]
    current = by_start.get(current_start)
    previous = by_start.get(current_start - timedelta(hours=1))
    rate = velocity.growth_rate(current.install_count if current else 0, previous.install_count if previous else None)
    return {
        "product": product,
        "window_hours": window_hours,
        "current_hour": {
            "date": current_start.date().isoformat(),
            "hour": current_start.hour,
            "install_count": current.install_count if current else 0,
            "unique_participant_count": current.unique_participant_count if current else 0,
        },
        "previous_hour_install_count": previous.install_count if previous else None,
        "growth_rate": rate,
        "trending": trend(rate),
        "series": series,
    }


def _edge_dict(e: DiscoveryMatrixEdge) -> dict:
    return {
        "source_product": e.source_product,
        "destination_product": e.destination_product,
        "discovery_count": e.discovery_count,
        "conversion_count": e.conversion_count,
        "conversion_rate": (e.conversion_count / e.discovery_count) if e.discovery_count else None,
        "last_updated": e.last_updated.isoformat() if e.last_updated else None,
    }


def cross_product_funnel(session: Session) -> dict:
    """Discovery edges ranked by volume, plus funnel-wide insights.

    `unattributed_conversions` counts every conversion-eligible event (install, usage,
    conversion) that found no open referral to claim. Routine usage by an already
    converted participant lands there too, so it is a traffic figure rather than a
    count of lost referrals.
    """
    edges = session.execute(
        select(DiscoveryMatrixEdge).order_by(
            DiscoveryMatrixEdge.discovery_count.desc(),
            DiscoveryMatrixEdge.source_product,
            DiscoveryMatrixEdge.destination_product,
        )
    ).scalars().all()
    funnel = [_edge_dict(e) for e in edges]
    rates = [f["conversion_rate"] for f in funnel if f["conversion_rate"] is not None]
    unattributed = session.execute(
        select(func.count()).select_from(ConversionRecord).where(ConversionRecord.attributed.is_(False))
    ).scalar() or 0
    return {
        "funnel": funnel,
        "insights": {
            "total_discoveries": sum(f["discovery_count"] for f in funnel),
            "total_conversions": sum(f["conversion_count"] for f in funnel),
            "avg_conversion_rate": (sum(rates) / len(rates)) if rates else None,
            "top_path": funnel[0] if funnel else None,
            "unattributed_conversions": int(unattributed),
        },
    }


def _elapsed_seconds(session: Session, start_col, end_col):
    if session.get_bind().dialect.name == "postgresql":
        return func.extract("epoch", end_col - start_col)
    return (func.julianday(end_col) - func.julianday(start_col)) * 86400.0


def journey_patterns(session: Session, min_path_length: int = 2, limit: int = 20) -> dict:
    """Most frequent identical conversion paths with average interactions and duration."""
    if min_path_length < 1:
        raise ClientValidationError(f"invalid_min_path_length:{min_path_length}")
    if limit < 1 or limit > MAX_PATTERN_LIMIT:
        raise ClientValidationError(f"invalid_limit:{limit}")
    J = UserJourney
    frequency = func.count().label("frequency")
    q = (
        select(
            J.conversion_path_raw,
            func.max(J.path_length),
            frequency,
            func.avg(J.total_interactions),
            func.avg(_elapsed_seconds(session, J.first_seen_at, J.last_seen_at)),
        )
        .where(J.path_length >= min_path_length)
        .group_by(J.conversion_path_raw)
        .order_by(frequency.desc(), J.conversion_path_raw)
        .limit(limit)
    )
    patterns = []
    for raw_path, path_length, freq, avg_interactions, avg_seconds in session.execute(q):
        patterns.append({
            "conversion_path": split_path(raw_path),
            "path_length": int(path_length),
            "frequency": int(freq),
            "avg_interactions": round(float(avg_interactions or 0), 2),
            "avg_journey_hours": round(float(avg_seconds or 0) / 3600.0, 2),
        })
    return {
        "patterns": patterns,
        "most_common_path": patterns[0]["conversion_path"] if patterns else [],
    }


def _count_type(event_type: EventType):
    return func.sum(case((EcosystemEvent.event_type == event_type.value, 1), else_=0))


def ecosystem_summary(session: Session) -> list[dict]:
    E = EcosystemEvent
    total = func.count(E.id).label("total_events")
    q = (
        select(
            E.product,
            func.count(func.distinct(E.participant_hash)),
            total,
            _count_type(EventType.INSTALL),
            _count_type(EventType.DISCOVERY),
            _count_type(EventType.REFERRAL),
            func.max(E.ts),
        )
        .group_by(E.product)
        .order_by(total.desc(), E.product)
    )
    return [
        {
            "product": product,
            "total_participants": int(participants or 0),
            "total_events": int(events or 0),
            "total_installs": int(installs or 0),
            "total_discoveries": int(discoveries or 0),
            "total_referrals": int(referrals or 0),
            "last_event_at": last_at.isoformat() if isinstance(last_at, datetime) else last_at,
        }
        for product, participants, events, installs, discoveries, referrals, last_at in session.execute(q)
    ]
