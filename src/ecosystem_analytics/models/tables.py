from __future__ import annotations
from datetime import datetime, date
from sqlalchemy import String, Integer, DateTime, Date, JSON, Boolean, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from ecosystem_analytics.infrastructure.db import Base
from ecosystem_analytics.models.events import utcnow

# conversion_path is stored as a delimited string so the append-if-absent update can
# run inside a single portable SQL expression
PATH_DELIMITER = ","


def split_path(raw: str | None) -> list[str]:
    return [p for p in (raw or "").split(PATH_DELIMITER) if p]


class EcosystemEvent(Base):
    """Raw, append-only event log keyed by the client generated event_id."""
    __tablename__ = "ecosystem_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    participant_hash: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    session_id: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    product: Mapped[str] = mapped_column(String(32))
    event_type: Mapped[str] = mapped_column(String(32))
    catalog_item_id: Mapped[str | None] = mapped_column(String(255), default=None)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    ts: Mapped[datetime] = mapped_column(DateTime, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    aggregated_at: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)

    __table_args__ = (
        Index("ix_ecosystem_events_product_type", "product", "event_type"),
        Index("ix_ecosystem_events_participant_ts", "participant_hash", "ts"),
    )


class UserJourney(Base):
    __tablename__ = "user_journeys"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    first_touchpoint: Mapped[str] = mapped_column(String(32), index=True)
    last_touchpoint: Mapped[str] = mapped_column(String(32))
    conversion_path_raw: Mapped[str] = mapped_column("conversion_path", String(512), index=True)
    path_length: Mapped[int] = mapped_column(Integer, default=1, index=True)
    total_interactions: Mapped[int] = mapped_column(Integer, default=1)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, index=True)

    @property
    def conversion_path(self) -> list[str]:
        return split_path(self.conversion_path_raw)

    @property
    def products_touched(self) -> set[str]:
        return set(self.conversion_path)


class InstallVelocityBucket(Base):
    __tablename__ = "install_velocity"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product: Mapped[str] = mapped_column(String(32))
    bucket_date: Mapped[date] = mapped_column(Date)
    bucket_hour: Mapped[int] = mapped_column(Integer)
    install_count: Mapped[int] = mapped_column(Integer, default=0)
    unique_participant_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("product", "bucket_date", "bucket_hour", name="ux_install_velocity_bucket"),
        CheckConstraint("bucket_hour >= 0 AND bucket_hour < 24", name="ck_install_velocity_hour"),
        Index("ix_install_velocity_product_date", "product", "bucket_date", "bucket_hour"),
    )

    @property
    def bucket_start(self) -> datetime:
        return datetime(self.bucket_date.year, self.bucket_date.month, self.bucket_date.day, self.bucket_hour)


class VelocityBucketParticipant(Base):
    """Set membership backing InstallVelocityBucket.unique_participant_count."""
    __tablename__ = "velocity_bucket_participants"
    product: Mapped[str] = mapped_column(String(32), primary_key=True)
    bucket_date: Mapped[date] = mapped_column(Date, primary_key=True)
    bucket_hour: Mapped[int] = mapped_column(Integer, primary_key=True)
    participant_hash: Mapped[str] = mapped_column(String(64), primary_key=True)


class DiscoveryMatrixEdge(Base):
    __tablename__ = "discovery_matrix"
    source_product: Mapped[str] = mapped_column(String(32), primary_key=True)
    destination_product: Mapped[str] = mapped_column(String(32), primary_key=True)
    discovery_count: Mapped[int] = mapped_column(Integer, default=0, index=True)
    conversion_count: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("source_product <> destination_product", name="ck_discovery_matrix_no_self_loop"),
    )


class ReferralAttribution(Base):
    """One row per referral seen for a participant; converted_at is claimed at most once."""
    __tablename__ = "referral_attributions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_event_id: Mapped[str | None] = mapped_column(String(128), unique=True, default=None)
    participant_hash: Mapped[str] = mapped_column(String(64))
    source_product: Mapped[str] = mapped_column(String(32))
    destination_product: Mapped[str] = mapped_column(String(32))
    referred_at: Mapped[datetime] = mapped_column(DateTime)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    conversion_event_id: Mapped[str | None] = mapped_column(String(128), default=None)

    __table_args__ = (
        Index("ix_referral_lookup", "participant_hash", "destination_product", "referred_at"),
    )


class ConversionRecord(Base):
    __tablename__ = "conversion_records"
    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    participant_hash: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    destination_product: Mapped[str] = mapped_column(String(32), index=True)
    converted_at: Mapped[datetime] = mapped_column(DateTime)
    attributed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    source_product: Mapped[str | None] = mapped_column(String(32), default=None)
    referral_id: Mapped[int | None] = mapped_column(Integer, default=None)
