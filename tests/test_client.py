import json
import multiprocessing
import os
import pytest
import requests
from ecosystem_analytics.client import identity
from ecosystem_analytics.client import queue as queue_module
from ecosystem_analytics.client.emitter import EventEmitter
from ecosystem_analytics.client.queue import DurableEventQueue
from ecosystem_analytics.config import Settings


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class StubHTTP:
    """requests.Session stand-in: replies from a script of status codes or exceptions."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "body": json.loads(data), "headers": headers, "timeout": timeout})
        outcome = self.script.pop(0) if self.script else 200
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


@pytest.fixture
def emitter_factory(tmp_path):
    def make(*script, **overrides):
        values = {"ANALYTICS_API_URL": "http://analytics.test/", "ANALYTICS_STATE_DIR": str(tmp_path), "INGEST_SECRET": None}
        values.update(overrides)
        settings = Settings(_env_file=None, **values)
        http = StubHTTP(*script)
        queue = DurableEventQueue(tmp_path / "queue.json", settings.analytics_queue_max_events)
        return EventEmitter(settings=settings, http=http, queue=queue, participant_hash="a" * 64), http
    return make


def test_successful_track_posts_single_event(emitter_factory):
    emitter, http = emitter_factory(200)
    event = emitter.track_install("github-mcp")
    assert len(http.calls) == 1
    call = http.calls[0]
    assert call["url"] == "http://analytics.test/events"
    assert call["timeout"] == 2.0
    assert call["headers"]["X-Ecosystem-Source"] == "registry-cli"
    assert call["body"]["event_id"] == event["event_id"]
    assert call["body"]["metadata"]["catalog_item_id"] == "github-mcp"
    assert len(emitter.queue) == 0


def test_network_failure_is_queued_not_raised(emitter_factory):
    emitter, http = emitter_factory(requests.ConnectionError("down"))
    event = emitter.track_usage("search")
    assert [e["event_id"] for e in emitter.queue.load()] == [event["event_id"]]


def test_non_2xx_is_queued(emitter_factory):
    emitter, _ = emitter_factory(503)
    emitter.track_discovery("mcp", 3)
    assert len(emitter.queue) == 1


def test_success_flushes_queue_through_batch(emitter_factory):
    emitter, http = emitter_factory(requests.Timeout("slow"), requests.Timeout("slow"), 200, 200)
    queued = [emitter.track_usage("a"), emitter.track_usage("b")]
    emitter.track_usage("c")
    batch = http.calls[-1]
    assert batch["url"] == "http://analytics.test/events/batch"
    assert batch["timeout"] == 5.0
    assert [e["event_id"] for e in batch["body"]["events"]] == [e["event_id"] for e in queued]
    assert len(emitter.queue) == 0
    assert not emitter.queue.path.exists()


def test_failed_batch_keeps_queue(emitter_factory):
    emitter, http = emitter_factory(requests.Timeout("slow"), 200, 500)
    emitter.track_usage("a")
    emitter.track_usage("b")
    assert http.calls[-1]["url"].endswith("/events/batch")
    assert len(emitter.queue) == 1
    assert emitter.flush() is True
    assert len(emitter.queue) == 0


def test_flush_returns_false_when_batch_rejected(emitter_factory):
    emitter, _ = emitter_factory(requests.Timeout("slow"), 503)
    emitter.track_usage("a")
    assert emitter.flush() is False
    assert len(emitter.queue) == 1


def test_referral_wrapper_sets_destination(emitter_factory):
    emitter, http = emitter_factory(200)
    emitter.track_referral("sports")
    body = http.calls[0]["body"]
    assert body["event_type"] == "referral"
    assert body["metadata"]["referral_destination"] == "sports"


def test_disabled_emitter_is_noop(emitter_factory):
    emitter, http = emitter_factory(ANALYTICS_ENABLED=False)
    assert emitter.track_usage("a") is None
    assert http.calls == []


def test_signed_requests_when_secret_configured(emitter_factory):
    emitter, http = emitter_factory(200, INGEST_SECRET="s3cret")
    emitter.track_usage("a")
    assert "," in http.calls[0]["headers"]["X-Signature"]


def test_queue_evicts_oldest_beyond_cap(tmp_path):
    q = DurableEventQueue(tmp_path / "q.json", max_events=3)
    for i in range(5):
        q.append({"event_id": str(i)})
    assert [e["event_id"] for e in q.load()] == ["2", "3", "4"]


def test_queue_survives_reload(tmp_path):
    path = tmp_path / "q.json"
    DurableEventQueue(path).append({"event_id": "x"})
    assert DurableEventQueue(path).load() == [{"event_id": "x"}]


def test_corrupted_queue_file_treated_as_empty(tmp_path):
    path = tmp_path / "q.json"
    path.write_text('[{"event_id": "x"', encoding="utf-8")
    q = DurableEventQueue(path)
    assert q.load() == []
    q.append({"event_id": "y"})
    assert q.load() == [{"event_id": "y"}]


def test_queue_writes_leave_no_temp_files(tmp_path):
    q = DurableEventQueue(tmp_path / "q.json")
    for i in range(3):
        q.append({"event_id": str(i)})
    assert {p.name for p in tmp_path.iterdir()} - {"q.json.lock"} == {"q.json"}


def _append_many(path, prefix, n):
    q = DurableEventQueue(path, max_events=10_000)
    for i in range(n):
        q.append({"event_id": f"{prefix}-{i}"})


@pytest.mark.skipif(queue_module.fcntl is None or not hasattr(os, "fork"), reason="needs fcntl and fork")
def test_concurrent_processes_do_not_lose_events(tmp_path):
    path = tmp_path / "q.json"
    ctx = multiprocessing.get_context("fork")
    workers = [ctx.Process(target=_append_many, args=(path, f"w{w}", 50)) for w in range(4)]
    for p in workers:
        p.start()
    for p in workers:
        p.join(timeout=60)
        assert p.exitcode == 0
    ids = [e["event_id"] for e in DurableEventQueue(path, max_events=10_000).load()]
    assert len(ids) == 200
    assert len(set(ids)) == 200


def test_participant_hash_is_deterministic():
    chars = identity.MachineCharacteristics("host", "linux", "x86_64", "cpu")
    h = identity.compute_participant_hash(chars)
    assert h == identity.compute_participant_hash(chars)
    assert len(h) == 64 and all(c in "0123456789abcdef" for c in h)
    assert "host" not in h
    other = identity.MachineCharacteristics("host2", "linux", "x86_64", "cpu")
    assert identity.compute_participant_hash(other) != h


def test_fallback_identifier_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setattr(identity, "collect_machine_characteristics", lambda: None)
    first = identity.resolve_participant_hash(tmp_path)
    second = identity.resolve_participant_hash(tmp_path)
    assert first == second
    assert (tmp_path / identity.PARTICIPANT_ID_FILE).read_text().strip() == first
