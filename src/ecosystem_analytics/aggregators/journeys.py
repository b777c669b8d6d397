"""Per-participant journey aggregation.

A journey is updated with a single INSERT ... ON CONFLICT DO UPDATE statement, so two
events for the same participant processed concurrently serialize on the row lock and
neither increment is lost. conversion_path is append-only: the CASE expression only
ever concatenates a product that is not yet present.
"""
from __future__ import annotations
from datetime import datetime
from sqlalchemy import case, literal, select
from sqlalchemy.orm import Session
from ecosystem_analytics.infrastructure.db import upsert
from ecosystem_analytics.models.events import utc_naive
from ecosystem_analytics.models.tables import UserJourney, PATH_DELIMITER


def record_touchpoint(session: Session, participant_hash: str, product: str, timestamp: datetime) -> None:
    ts = utc_naive(timestamp)
    table = UserJourney.__table__
    c = table.c
    stmt = upsert(session, table).values(
        participant_hash=participant_hash,
        first_touchpoint=product,
        last_touchpoint=product,
        conversion_path=product,
        path_length=1,
        total_interactions=1,
        first_seen_at=ts,
        last_seen_at=ts,
    )
    # ",a,b," LIKE "%,b,%" is a portable membership test against the delimited path
    already_on_path = (literal(PATH_DELIMITER) + c.conversion_path + literal(PATH_DELIMITER)).contains(
        f"{PATH_DELIMITER}{product}{PATH_DELIMITER}", autoescape=True
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[c.participant_hash],
        set_={
            "last_touchpoint": stmt.excluded.last_touchpoint,
            "total_interactions": c.total_interactions + 1,
            "conversion_path": case(
                (already_on_path, c.conversion_path),
                else_=c.conversion_path + literal(PATH_DELIMITER) + stmt.excluded.conversion_path,
            ),
            "path_length": case((already_on_path, c.path_length), else_=c.path_length + 1),
            "last_seen_at": case(
                (stmt.excluded.last_seen_at > c.last_seen_at, stmt.excluded.last_seen_at),
                else_=c.last_seen_at,
            ),
        },
    )
    session.execute(stmt)


def get_journey(session: Session, participant_hash: str) -> UserJourney | None:
    return session.execute(
        select(UserJourney).where(UserJourney.participant_hash == participant_hash)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
