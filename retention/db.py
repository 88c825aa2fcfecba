"""Database engine and session management."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "RETENTION_DATABASE_URL"
DEFAULT_DATABASE_URL = "sqlite:///retention.db"
SQLITE_BUSY_TIMEOUT_SECONDS = 30


def get_database_url() -> str:
    """Database URL from the environment, falling back to a local SQLite file."""
    database_url = os.environ.get(DATABASE_URL_ENV)
    if not database_url:
        logger.warning("%s not set, using %s", DATABASE_URL_ENV, DEFAULT_DATABASE_URL)
        return DEFAULT_DATABASE_URL
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def create_db_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    """Create an engine; SQLite connections wait on locks instead of failing."""
    url = database_url or get_database_url()
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT_SECONDS)
        return create_engine(url, connect_args=connect_args, **kwargs)
    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("pool_recycle", 300)
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Transactional scope: commit on success, roll back and re-raise on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
