"""Hourly install velocity buckets keyed by (product, UTC date, hour)."""
from __future__ import annotations
from datetime import datetime, date, timedelta
from typing import NamedTuple
from sqlalchemy import select, and_, or_
from sqlalchemy.orm import Session
from ecosystem_analytics.infrastructure.db import upsert
from ecosystem_analytics.models.events import utc_naive
from ecosystem_analytics.models.tables import InstallVelocityBucket, VelocityBucketParticipant


class BucketKey(NamedTuple):
    product: str
    bucket_date: date
    bucket_hour: int


def bucket_key(product: str, timestamp: datetime) -> BucketKey:
    ts = utc_naive(timestamp)
    return BucketKey(product, ts.date(), ts.hour)


def hour_floor(timestamp: datetime) -> datetime:
    return utc_naive(timestamp).replace(minute=0, second=0, microsecond=0)


def increment(session: Session, product: str, timestamp: datetime, participant_hash: str | None = None) -> BucketKey:
    """Atomically count one event into its hourly bucket.

    Unique participants are tracked with a set-add into velocity_bucket_participants; the
    unique counter only moves when that insert actually created a row.
    """
    key = bucket_key(product, timestamp)
    new_participant = 0
    if participant_hash:
        member = upsert(session, VelocityBucketParticipant.__table__).values(
            product=key.product,
            bucket_date=key.bucket_date,
            bucket_hour=key.bucket_hour,
            participant_hash=participant_hash,
        ).on_conflict_do_nothing()
        new_participant = 1 if session.execute(member).rowcount == 1 else 0
    table = InstallVelocityBucket.__table__
    c = table.c
    stmt = upsert(session, table).values(
        product=key.product,
        bucket_date=key.bucket_date,
        bucket_hour=key.bucket_hour,
        install_count=1,
        unique_participant_count=new_participant,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[c.product, c.bucket_date, c.bucket_hour],
        set_={
            "install_count": c.install_count + 1,
            "unique_participant_count": c.unique_participant_count + stmt.excluded.unique_participant_count,
        },
    )
    session.execute(stmt)
    return key


def growth_rate(current: int | None, previous: int | None) -> float | None:
    """(current - previous) / previous, or None when there is no usable baseline."""
    if not previous:
        return None
    return ((current or 0) - previous) / previous


def get_bucket(session: Session, product: str, timestamp: datetime) -> InstallVelocityBucket | None:
    key = bucket_key(product, timestamp)
    return session.execute(
        select(InstallVelocityBucket).where(
            InstallVelocityBucket.product == key.product,
            InstallVelocityBucket.bucket_date == key.bucket_date,
            InstallVelocityBucket.bucket_hour == key.bucket_hour,
        ).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def bucket_series(session: Session, product: str, start: datetime, end: datetime) -> list[InstallVelocityBucket]:
    """Stored buckets with start <= bucket_start <= end, oldest first."""
    start_key = bucket_key(product, start)
    end_key = bucket_key(product, end)
    B = InstallVelocityBucket
    after_start = or_(
        B.bucket_date > start_key.bucket_date,
        and_(B.bucket_date == start_key.bucket_date, B.bucket_hour >= start_key.bucket_hour),
    )
    before_end = or_(
        B.bucket_date < end_key.bucket_date,
        and_(B.bucket_date == end_key.bucket_date, B.bucket_hour <= end_key.bucket_hour),
    )
    q = select(B).where(B.product == product, after_start, before_end).order_by(B.bucket_date, B.bucket_hour)
    return list(session.execute(q).scalars())


def previous_hour(timestamp: datetime) -> datetime:
    return hour_floor(timestamp) - timedelta(hours=1)
