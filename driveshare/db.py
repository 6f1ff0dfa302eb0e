from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from typing import Generator
import os

# DATABASE_URL defaults to a local SQLite file at ./data.db (relative to the working directory).
# Override via the DATABASE_URL environment variable for staging/production.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data.db")

# How long a SQLite writer waits on the file lock; defaults to LOCK_TIMEOUT_SECONDS.
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

# Build the SQLAlchemy engine with backend-specific settings.
# - SQLite (dev/local): allow cross-thread access and wait on the file lock instead of failing immediately.
# - Server DBs (e.g., Postgres/MySQL): enable safe pooling to avoid stale or dropped connections under load.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        pool_size=20,
        max_overflow=20,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record) -> None:
        # WAL lets readers proceed while a booking transaction holds the write lock
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
    )

# Session factory: one session per request; autocommit and autoflush disabled for explicit transaction control
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models declared via SQLAlchemy's declarative API
Base = declarative_base()


def is_sqlite() -> bool:
    return engine.dialect.name == "sqlite"


def get_db() -> Generator:
    """
    FastAPI dependency.

    Yields a database session for the lifetime of the request and guarantees it
    is closed afterwards, even if an exception is raised.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
