from datetime import timedelta
from sqlalchemy import select, func
from ecosystem_analytics.aggregators import discovery, journeys, velocity
from ecosystem_analytics.infrastructure.celery_app import celery_app
from ecosystem_analytics.models.events import utcnow
from ecosystem_analytics.models.tables import EcosystemEvent, ReferralAttribution
from ecosystem_analytics.tasks.maintenance import expire_stale_referrals, reconcile_pending_events
from conftest import T0


def _raw(event_id, event_type="install", product="registry", participant="p-1", received_minutes_ago=60, **metadata):
    return EcosystemEvent(
        event_id=event_id,
        participant_hash=participant,
        product=product,
        event_type=event_type,
        event_metadata=metadata,
        ts=T0,
        received_at=utcnow() - timedelta(minutes=received_minutes_ago),
        aggregated_at=None,
    )


def test_reconcile_aggregates_pending_rows_once(bound_db, session_factory):
    with session_factory() as s, s.begin():
        s.add_all([
            _raw("e-1"),
            _raw("e-2", "referral", "registry", "p-1", referral_destination="brain"),
            _raw("e-3", received_minutes_ago=0),
        ])
    out = reconcile_pending_events(grace_minutes=10)
    assert out == {"status": "ok", "candidates": 2, "reconciled": 2, "rejected": 0}
    again = reconcile_pending_events(grace_minutes=10)
    assert again["reconciled"] == 0
    with session_factory() as s:
        assert velocity.get_bucket(s, "registry", T0).install_count == 1
        assert journeys.get_journey(s, "p-1").total_interactions == 2
        assert discovery.get_edge(s, "registry", "brain").discovery_count == 1
        pending = s.scalar(select(func.count()).select_from(EcosystemEvent).where(EcosystemEvent.aggregated_at.is_(None)))
        assert pending == 1


def test_reconcile_marks_unaggregatable_row_and_keeps_going(bound_db, session_factory):
    with session_factory() as s, s.begin():
        s.add_all([
            _raw("bad", "referral", "registry", "p-1", received_minutes_ago=120, referral_destination="registry"),
            _raw("good", received_minutes_ago=60),
        ])
    out = reconcile_pending_events(grace_minutes=10)
    assert out == {"status": "ok", "candidates": 2, "reconciled": 1, "rejected": 1}
    assert reconcile_pending_events(grace_minutes=10)["candidates"] == 0
    with session_factory() as s:
        assert velocity.get_bucket(s, "registry", T0).install_count == 1
        assert journeys.get_journey(s, "p-1").total_interactions == 1
        assert discovery.get_edge(s, "registry", "registry") is None
        pending = s.scalar(select(func.count()).select_from(EcosystemEvent).where(EcosystemEvent.aggregated_at.is_(None)))
        assert pending == 0


def test_expire_stale_referrals_keeps_converted_and_recent(bound_db, session_factory):
    now = utcnow()
    with session_factory() as s, s.begin():
        s.add_all([
            ReferralAttribution(participant_hash="p-1", source_product="registry", destination_product="brain", referred_at=now - timedelta(days=40)),
            ReferralAttribution(participant_hash="p-2", source_product="registry", destination_product="brain", referred_at=now - timedelta(days=40), converted_at=now - timedelta(days=39)),
            ReferralAttribution(participant_hash="p-3", source_product="registry", destination_product="brain", referred_at=now - timedelta(days=1)),
        ])
    assert expire_stale_referrals(days=30)["deleted"] == 1
    with session_factory() as s:
        left = sorted(s.scalars(select(ReferralAttribution.participant_hash)))
        assert left == ["p-2", "p-3"]


def test_beat_schedule_targets_registered_tasks():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {
        "ecosystem_analytics.tasks.maintenance.reconcile_pending_events",
        "ecosystem_analytics.tasks.maintenance.expire_stale_referrals",
    }
