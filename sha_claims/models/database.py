"""
Database configuration and session management.

This module sets up the SQLAlchemy engine from ``settings.database_url`` (an
SQLite file by default; point `DATABASE_URL` at Postgres in production).

Two session helpers are provided: `get_db` is the request-scoped FastAPI
dependency, and `session_scope` gives background workers a transactional
scope around a unit of work.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from sha_claims.config import settings

DATABASE_URL: str = settings.database_url

# The `check_same_thread` argument is needed for SQLite in multithreaded FastAPI applications.
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative class definitions.
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db(bind=None) -> None:
    """Create all tables.  In production you may use alembic migrations."""
    # Import the model modules so every table is registered on Base.metadata.
    from sha_claims.models import claims, inventory, jobs  # noqa: F401
    from sha_claims.services import workflow  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a session for the duration of one request.

    Service functions commit their own units of work; anything left pending
    when the request fails is rolled back.
    """
    db: Session = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope(factory=None) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Example:
        with session_scope() as db:
            # use db session here
    """
    db: Session = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
