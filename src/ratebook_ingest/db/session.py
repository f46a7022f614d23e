from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..config.settings import get_settings
from .base import Base

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; PostgreSQL connections get a bounded statement timeout."""
    connect_args = {}
    if database_url.startswith("postgresql"):
        timeout_ms = get_settings().statement_timeout_ms
        connect_args["options"] = f"-c statement_timeout={timeout_ms}"
    return create_engine(database_url, pool_pre_ping=True, echo=echo, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = make_engine(settings.database_url, echo=settings.database_echo)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


def get_session() -> Session:
    """Get database session. Caller is responsible for closing the session."""
    return get_session_factory()()


@contextmanager
def get_db_session(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Context manager for database sessions with commit/rollback and cleanup."""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables from model metadata."""
    from . import models  # noqa: F401  register mappers

    Base.metadata.create_all(bind=engine or get_engine())
