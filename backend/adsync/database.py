"""Database engine and session factory for the SQL cache backend.

WHAT:
    Builds a SQLAlchemy engine + sessionmaker from CACHE_DATABASE_URL and
    creates the `cache_entries` table on first use.

WHY:
    The SQL backend is optional (CACHE_BACKEND=sql), so nothing connects at
    import time; callers ask for a session factory when they need one.

REFERENCES:
    - adsync/services/kv_store.py (SqlKeyValueStore)
    - adsync/models.py (CacheEntry)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite engines skip the pool settings they don't support."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def build_session_factory(database_url: str) -> sessionmaker:
    """Create engine + tables and return a session factory bound to it."""
    engine = build_engine(database_url)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    Commits on success, rolls back on error, always closes.
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
