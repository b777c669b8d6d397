from __future__ import annotations
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.dialects import postgresql, sqlite
from ecosystem_analytics.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if s.database_url:
        return s.database_url
    if s.supabase_project_ref and s.supabase_db_password:
        host = f"db.{s.supabase_project_ref}.supabase.co"
        return f"postgresql+psycopg2://{s.supabase_db_user}:{s.supabase_db_password}@{host}:5432/{s.supabase_db_name}?sslmode=require"
    return f"sqlite:///{s.sqlite_path}"


def build_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {}).setdefault("timeout", 30)
        e = create_engine(url, **kwargs)

        @event.listens_for(e, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):  # noqa
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL")
            cur.close()

        return e
    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = build_engine(_dsn())
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(e=None):
    """Create all tables (development / tests; production uses Alembic)."""
    from ecosystem_analytics.models import tables  # noqa: F401  (register mappers)
    Base.metadata.create_all(e or engine)


def upsert(session, table):
    """Dialect-specific INSERT supporting ON CONFLICT clauses.

    Postgres and SQLite (>= 3.24) share the same conflict semantics, which lets every
    aggregator express its per-key update as one atomic statement.
    """
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"atomic upsert not supported for dialect {name}")

