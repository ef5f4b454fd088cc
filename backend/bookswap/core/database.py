"""
Database utilities and connection management.

WHAT: Engine, session factory and unit-of-work helpers
WHY: Every negotiation operation must run as one atomic unit against the stores
HOW: SQLAlchemy 2 sync engine; SQLite in WAL mode with explicit BEGIN IMMEDIATE
     for write units so concurrent writers queue instead of failing mid-transaction
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session as DBSession, declarative_base, sessionmaker

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Base for models
Base = declarative_base()


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not url.startswith("sqlite:///") or url.endswith(":memory:"):
        return
    data_dir = Path(url.replace("sqlite:///", "")).parent
    if not data_dir.exists():
        data_dir.mkdir(parents=True, exist_ok=True)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    For SQLite, pysqlite's implicit transaction handling is switched off so the
    unit of work controls BEGIN itself (needed for BEGIN IMMEDIATE and SAVEPOINT).
    """
    is_sqlite = url.startswith("sqlite")
    connect_args = {}
    if is_sqlite:
        _ensure_sqlite_dir(url)
        connect_args = {
            "check_same_thread": False,  # Allow multi-threaded access
            "timeout": settings.SQLITE_BUSY_TIMEOUT,
        }

    db_engine = create_engine(url, connect_args=connect_args, echo=echo, future=True)

    if is_sqlite:
        @event.listens_for(db_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable WAL mode and FK constraints, take over transaction control."""
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


def make_session_factory(db_engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(
        bind=db_engine,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


engine = create_db_engine(settings.DATABASE_URL, echo=settings.DEBUG)
SessionLocal = make_session_factory(engine)


@contextmanager
def get_db(session_factory: Optional[sessionmaker] = None, write: bool = False) -> Iterator[DBSession]:
    """
    Context manager for a database session (one unit of work).

    Usage:
        with get_db(factory, write=True) as db:
            # use db session
            pass

    Args:
        session_factory: Factory to open the session from (defaults to SessionLocal)
        write: Take the database write lock up front (SQLite BEGIN IMMEDIATE)

    Yields:
        Session: SQLAlchemy session, committed on clean exit, rolled back on error
    """
    factory = session_factory or SessionLocal
    session = factory()
    try:
        if write and session.get_bind().dialect.name == "sqlite":
            session.execute(text("BEGIN IMMEDIATE"))
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(
    session_factory: sessionmaker,
    db: Optional[DBSession] = None,
    write: bool = False,
) -> Iterator[DBSession]:
    """Join the caller's session when given, otherwise open a new unit of work."""
    if db is not None:
        yield db
        return
    with get_db(session_factory, write=write) as own:
        yield own


def ping_database(db_engine: Optional[Engine] = None) -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    db_engine = db_engine or engine
    try:
        with db_engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()

        return {
            "available": True,
            "url": db_engine.url.render_as_string(hide_password=True),
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": db_engine.url.render_as_string(hide_password=True),
            "error": str(e)
        }


def init_db(db_engine: Optional[Engine] = None):
    """Create all tables."""
    # Import models so they register on Base.metadata
    from . import models  # noqa: F401

    db_engine = db_engine or engine
    Base.metadata.create_all(bind=db_engine)
    logger.info(f"Database initialized ({db_engine.url.render_as_string(hide_password=True)})")


def close_db(db_engine: Optional[Engine] = None):
    """Close database connections."""
    (db_engine or engine).dispose()
    logger.info("Database connections closed")
