from __future__ import annotations
from functools import lru_cache
from typing import Callable, Iterator, Optional
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from ecosystem_analytics.config import Settings, get_settings
from ecosystem_analytics.infrastructure import db
from ecosystem_analytics.ingestion.gateway import IngestionGateway
from ecosystem_analytics.reporting.cache import QueryCache
from ecosystem_analytics.security.hmac import verify_hmac


def get_session_factory() -> Callable[[], Session]:
    # resolved per request so override_engine() takes effect
    return db.SessionLocal


def get_db(factory: Callable[[], Session] = Depends(get_session_factory)) -> Iterator[Session]:
    session = factory()
    try:
        yield session
    finally:
        session.close()


@lru_cache
def _cache_for(redis_url: Optional[str], ttl_seconds: int) -> QueryCache:
    return QueryCache(redis_url, ttl_seconds)


def get_query_cache(settings: Settings = Depends(get_settings)) -> QueryCache:
    return _cache_for(settings.redis_url, settings.query_cache_ttl_seconds)


def get_gateway(
    factory: Callable[[], Session] = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
    cache: QueryCache = Depends(get_query_cache),
) -> IngestionGateway:
    return IngestionGateway(factory, settings=settings, cache=cache)


async def require_signature(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Enforce HMAC request signing on ingest routes when INGEST_SECRET is configured."""
    if not settings.ingest_secret:
        return
    if not x_signature:
        raise HTTPException(status_code=401, detail="missing signature")
    verify_hmac(x_signature, await request.body(), settings.ingest_secret)
