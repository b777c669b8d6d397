from __future__ import annotations
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from ecosystem_analytics.api.deps import get_db, get_query_cache
from ecosystem_analytics.reporting import queries
from ecosystem_analytics.reporting.cache import QueryCache

router = APIRouter(tags=["reporting"])


@router.get("/velocity/realtime")
def velocity_realtime(
    product: str = Query("registry"),
    hours: int = Query(24),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_query_cache),
):
    return cache.get_or_compute(
        "velocity", {"product": product, "hours": hours},
        lambda: queries.realtime_velocity(db, product, hours),
    )


@router.get("/funnel/cross-product")
def funnel_cross_product(db: Session = Depends(get_db), cache: QueryCache = Depends(get_query_cache)):
    return cache.get_or_compute("funnel", {}, lambda: queries.cross_product_funnel(db))


@router.get("/journeys/patterns")
def journeys_patterns(
    min_path_length: int = Query(2),
    limit: int = Query(20),
    db: Session = Depends(get_db),
    cache: QueryCache = Depends(get_query_cache),
):
    return cache.get_or_compute(
        "journeys", {"min_path_length": min_path_length, "limit": limit},
        lambda: queries.journey_patterns(db, min_path_length=min_path_length, limit=limit),
    )


@router.get("/summary")
def summary(db: Session = Depends(get_db), cache: QueryCache = Depends(get_query_cache)):
    return cache.get_or_compute("summary", {}, lambda: {"products": queries.ecosystem_summary(db)})
