from __future__ import annotations

"""
EMBED_SUMMARY: Engine, session factory and schema bootstrap shared by the API and the batch jobs.
EMBED_TAGS: database, sqlalchemy, sessions, sqlite
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings


logger = logging.getLogger("insights.db")

settings = get_settings()

connect_args = {}
if settings.database_url.startswith("sqlite"):
    # Request handlers and detectors share the connection across the threadpool
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.database_url, connect_args=connect_args, future=True, pool_pre_ping=True)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def init_db() -> None:
    """Create missing tables, including the partial unique indexes on models."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.debug("schema ready url=%s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope() -> Iterator[Session]:
    """One session per request or job run; callers own commit and rollback."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_session() -> Iterator[Session]:
    with session_scope() as db:
        yield db
