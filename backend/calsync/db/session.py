"""Engine and session factory for the sync store.

DATABASE_URL selects the backend. Without it a file-based SQLite database is
used (in-memory SQLite gives every connection its own database, which breaks
the API tests). Deployments should point at PostgreSQL: the run claim and the
refresh re-read rely on real row locks there.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
import os
import threading

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./calsync.db")
_IS_SQLITE = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    # SQLite serializes writers; wait for the lock instead of failing a claim
    connect_args={"timeout": 30} if _IS_SQLITE else {},
    pool_pre_ping=not _IS_SQLITE,
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


_schema_lock = threading.Lock()
_schema_ready = False


def ensure_schema() -> None:
    """Create missing tables once per process (alembic owns real migrations)."""
    global _schema_ready
    if _schema_ready:
        return
    with _schema_lock:
        if not _schema_ready:
            from . import models  # noqa: F401
            Base.metadata.create_all(bind=engine)
            _schema_ready = True


def get_db():
    ensure_schema()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
