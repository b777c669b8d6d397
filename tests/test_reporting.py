import pytest
from ecosystem_analytics.aggregators import discovery, journeys
from ecosystem_analytics.exceptions import ClientValidationError
from ecosystem_analytics.reporting import queries
from ecosystem_analytics.reporting.cache import QueryCache
from conftest import T0, hours


def test_empty_funnel(session):
    out = queries.cross_product_funnel(session)
    assert out["funnel"] == []
    assert out["insights"]["avg_conversion_rate"] is None
    assert out["insights"]["top_path"] is None


def test_funnel_counts_unattributed_conversions(session):
    discovery.record_referral(session, "brain", "x3o", "p-1", T0, "r-1")
    discovery.record_conversion(session, "x3o", "p-9", T0 + hours(1), event_id="c-1", window_hours=48)
    session.commit()
    out = queries.cross_product_funnel(session)
    assert out["funnel"][0]["conversion_rate"] == 0.0
    assert out["insights"]["unattributed_conversions"] == 1


def test_repeat_usage_after_claim_counts_as_unattributed(session):
    discovery.record_referral(session, "brain", "x3o", "p-1", T0, "r-1")
    first = discovery.record_conversion(session, "x3o", "p-1", T0 + hours(1), event_id="c-1", window_hours=48)
    repeat = discovery.record_conversion(session, "x3o", "p-1", T0 + hours(2), event_id="c-2", window_hours=48)
    session.commit()
    assert first.attributed and not repeat.attributed
    out = queries.cross_product_funnel(session)
    assert out["funnel"][0]["conversion_count"] == 1
    assert out["insights"]["unattributed_conversions"] == 1


def test_journey_patterns_group_identical_paths(session):
    for p in ("p-1", "p-2"):
        journeys.record_touchpoint(session, p, "registry", T0)
        journeys.record_touchpoint(session, p, "brain", T0 + hours(2))
    journeys.record_touchpoint(session, "p-3", "registry", T0)
    journeys.record_touchpoint(session, "p-4", "sports", T0)
    journeys.record_touchpoint(session, "p-4", "registry", T0 + hours(1))
    session.commit()
    out = queries.journey_patterns(session, min_path_length=2, limit=10)
    assert out["most_common_path"] == ["registry", "brain"]
    top = out["patterns"][0]
    assert top["frequency"] == 2
    assert top["path_length"] == 2
    assert top["avg_interactions"] == 2.0
    assert top["avg_journey_hours"] == pytest.approx(2.0, abs=0.01)
    assert len(out["patterns"]) == 2


@pytest.mark.parametrize("kwargs", [{"min_path_length": 0}, {"limit": 0}, {"limit": 10_000}])
def test_journey_patterns_bounds(session, kwargs):
    with pytest.raises(ClientValidationError):
        queries.journey_patterns(session, **kwargs)


def test_velocity_window_bounds(session):
    with pytest.raises(ClientValidationError):
        queries.realtime_velocity(session, "registry", 0)


class FakeRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value.encode() if isinstance(value, str) else value

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key, b"0")) + 1).encode()


def test_query_cache_hits_until_invalidated():
    cache = QueryCache(None, ttl_seconds=30, client=FakeRedis())
    calls = []

    def compute():
        calls.append(1)
        return {"n": len(calls)}

    assert cache.get_or_compute("summary", {}, compute) == {"n": 1}
    assert cache.get_or_compute("summary", {}, compute) == {"n": 1}
    cache.invalidate()
    assert cache.get_or_compute("summary", {}, compute) == {"n": 2}


def test_disabled_cache_always_computes():
    cache = QueryCache(None)
    assert not cache.enabled
    assert cache.get_or_compute("x", {}, lambda: 42) == 42
