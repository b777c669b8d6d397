from __future__ import annotations
import uuid
from datetime import datetime, timedelta
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from ecosystem_analytics.api.deps import get_query_cache, get_session_factory
from ecosystem_analytics.api.main import app
from ecosystem_analytics.config import Settings, get_settings
from ecosystem_analytics.infrastructure import db
from ecosystem_analytics.reporting.cache import QueryCache

# fixed, hour-aligned reference point so bucket math is deterministic
T0 = datetime(2025, 3, 10, 14, 0, 0)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        REDIS_URL=None,
        INGEST_SECRET=None,
        ATTRIBUTION_WINDOW_HOURS=48,
        VELOCITY_EVENT_TYPES="install",
        CONVERSION_EVENT_TYPES="install,usage,conversion",
    )


@pytest.fixture
def engine(tmp_path):
    e = db.build_engine(f"sqlite:///{tmp_path / 'analytics.db'}")
    db.init_db(e)
    yield e
    e.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as s:
        yield s


@pytest.fixture
def bound_db(engine):
    """Point the module-level SessionLocal at the test engine (Celery tasks use it)."""
    previous = db.engine
    db.override_engine(engine)
    yield engine
    db.override_engine(previous)


@pytest.fixture
def client(session_factory, settings):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_query_cache] = lambda: QueryCache(None)
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_event(event_type="install", product="registry", participant="p-1", ts: datetime | None = None, **metadata):
    return {
        "event_id": str(uuid.uuid4()),
        "timestamp": (ts or T0).isoformat(),
        "product": product,
        "event_type": event_type,
        "participant_hash": participant,
        "session_id": "s-1",
        "metadata": metadata,
    }


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
