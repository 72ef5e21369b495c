"""
database.py — SQLAlchemy engine and session management for VibeRide.

Provides:
  engine       — the shared SQLAlchemy engine
  SessionLocal — sessionmaker bound to the engine
  get_db()     — FastAPI dependency that yields a scoped session per request
  init_db()    — create all tables (startup / `manage.py init-db`)
  ping()       — lightweight connectivity probe for /health

All SQLAlchemy calls remain synchronous. Use starlette.concurrency.run_in_threadpool
to call blocking DB operations from async route handlers without blocking the
event loop.  Background generation jobs open their own SessionLocal() because
FastAPI's Depends() doesn't exist outside a request.
"""

import os
import logging
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

logger = logging.getLogger(__name__)

# ── Database URL ──────────────────────────────────────────────────────────────
_raw_db_url = os.getenv('DATABASE_URL', 'sqlite:///viberide.db')


def _safe_db_url(url: str) -> str:
    """
    Ensure PostgreSQL URLs use the postgresql:// dialect prefix.
    Hosted providers sometimes inject postgres:// instead of postgresql://.
    """
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


_db_url = _safe_db_url(_raw_db_url)

# ── Engine ────────────────────────────────────────────────────────────────────
_connect_args: dict = {}
if _db_url.startswith('sqlite'):
    # Background jobs and request handlers hit the DB from different threads.
    _connect_args = {'timeout': 15, 'check_same_thread': False}

engine = create_engine(
    _db_url,
    connect_args=_connect_args,
    pool_pre_ping=True,
)

# ── SQLite WAL mode ───────────────────────────────────────────────────────────
# WAL allows concurrent readers + one writer simultaneously.
# Registered as a connection event so every pooled connection gets it.
if _db_url.startswith('sqlite'):
    @event.listens_for(engine, 'connect')
    def _set_sqlite_pragmas(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute('PRAGMA journal_mode=WAL')
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

# ── Session factory ───────────────────────────────────────────────────────────
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,   # prevents lazy-load errors after commit in async context
)


# ── FastAPI dependency ────────────────────────────────────────────────────────

def get_db() -> Generator[Session, None, None]:
    """
    Yield a SQLAlchemy session for the duration of a request, then close it.

    Usage:
        from fastapi import Depends
        from database import get_db

        async def my_route(db_session: Session = Depends(get_db)):
            ...
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db() -> None:
    """Create all tables. Schema changes after the first deploy go through Alembic."""
    from models import db
    db.metadata.create_all(engine)
    logger.info('Database tables ensured (%s)', engine.url.get_backend_name())


def ping() -> bool:
    """Return True if a trivial query round-trips."""
    try:
        with engine.connect() as conn:
            conn.execute(text('SELECT 1'))
        return True
    except SQLAlchemyError as exc:
        logger.error('Database ping failed: %s', exc)
        return False
