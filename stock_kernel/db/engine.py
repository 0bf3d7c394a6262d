"""
Module: stock_kernel.db.engine
Responsibility: The process-wide relational engine and its session factory,
    plus ``session_scope`` for short transactions.
Architecture position: Kernel > DB.  May import from db/base.py.  create_tables
    imports models so Base.metadata is complete.

Invariants enforced:
    - At most one engine per process; ``init_engine_from_url`` replaces it
      and ``reset_engine`` disposes it.
    - In-memory SQLite gets a single shared connection (StaticPool);
      otherwise each session would open its own empty database.

Failure modes:
    - RuntimeError from get_engine/get_session_factory before
      init_engine_from_url().
"""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stock_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Engine not initialized. Call init_engine_from_url() first."


def _engine_options(database_url: str, echo: bool) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {"echo": echo, "pool_pre_ping": True}
    options: dict = {"echo": echo, "connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        options["poolclass"] = StaticPool
    return options


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """A standalone engine, not the process-wide one (e.g. for the consistency log)."""
    return create_engine(database_url, **_engine_options(database_url, echo))


def init_engine_from_url(database_url: str, echo: bool = False) -> Engine:
    """Create the engine for ``database_url`` (``sqlite://``, ``postgresql://...``)."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(database_url, echo)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name, "echo": echo})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _session_factory


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """
    One transaction: commit on normal exit, roll back and re-raise otherwise.

    Usage:
        with session_scope(factory) as session:
            session.add(row)
    """
    session = (factory or get_session_factory())()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create every table registered by ``stock_kernel.models``."""
    from stock_kernel.db.base import Base
    import stock_kernel.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory (test cleanup)."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
