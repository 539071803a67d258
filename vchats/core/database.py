"""
Database engine, sessions and the change feed bound to them.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from vchats.core.config import get_settings
from vchats.core.logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()

# Initialized lazily
_engine = None
_SessionLocal = None
_change_feed = None


def _ensure_sqlite_directory(database_url: str) -> None:
    db_path = database_url.replace("sqlite:///", "", 1)
    if not db_path or db_path == ":memory:":
        return
    db_dir = Path(db_path).parent
    if not db_dir.exists():
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Created database directory", extra={"extra_data": {"path": str(db_dir)}})


def build_engine(database_url: str, echo: bool = False):
    """Create an engine; SQLite gets thread sharing and enforced foreign keys."""
    connect_args = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        _ensure_sqlite_directory(database_url)

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,
        pool_pre_ping=True,
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, echo=settings.debug)
        logger.info("Database engine created", extra={"extra_data": {"database_url": settings.database_url}})
    return _engine


def get_change_feed():
    """Process-wide change feed fed by commits of the default session factory."""
    global _change_feed
    if _change_feed is None:
        from vchats.services.channels import ChangeFeed

        _change_feed = ChangeFeed()
    return _change_feed


def get_session_factory():
    global _SessionLocal
    if _SessionLocal is None:
        from vchats.services.channels import attach_change_feed

        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
        attach_change_feed(_SessionLocal, get_change_feed())
    return _SessionLocal


def get_db(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Dependency to get database session."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Session scope for work outside a request (background tasks, websockets)."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def init_db(engine=None) -> None:
    """Create all tables on ``engine`` (the default engine when omitted)."""
    from vchats.models import message, push, social  # noqa: F401 - register models

    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("Database tables created")


def check_db_connection(session_factory: sessionmaker) -> bool:
    try:
        with session_scope(session_factory) as db:
            db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
