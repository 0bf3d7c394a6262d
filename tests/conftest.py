"""
Pytest fixtures for the stock ledger test suite.

Provides:
- An in-memory SQLite relational store (shared connection per test)
- Document and relational store adapters, a deterministic clock, flags
- A router and worker wired to both stores (builders live in tests/builders.py)

Async code is driven with ``asyncio.run`` inside ordinary tests.
"""

import json
import logging
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import stock_kernel.models  # noqa: F401
from stock_config.flags import StaticFlagSource
from stock_config.schema import ReconciliationSettings, RoutingFlags
from stock_kernel.db.base import Base
from stock_kernel.db.immutability import register_immutability_listeners
from stock_kernel.domain.clock import DeterministicClock
from stock_kernel.exceptions import StoreUnavailableError
from stock_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from stock_services.alerts import CollectingAlertSink
from stock_services.consistency_records import InMemoryConsistencyLog
from stock_services.consistency_router import ConsistencyRouter
from stock_services.reconciliation_worker import ReconciliationWorker
from stock_services.stores.document_store import DocumentStoreAdapter
from stock_services.stores.relational_store import RelationalStoreAdapter

from tests.builders import START


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture stock_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, router):
            ...
            assert any(r["message"] == "secondary_write_failed" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("stock_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Relational store
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    register_immutability_listeners()
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


# =============================================================================
# Stores, clock, flags
# =============================================================================


class FlakyStore:
    """
    Wraps a store adapter and fails every call while ``down`` is True.

    Failures are raised as StoreUnavailableError, the way a real adapter
    reports a lost connection.
    """

    def __init__(self, inner):
        self._inner = inner
        self.name = inner.name
        self.down = False
        self.calls = 0

    def _check(self, operation: str) -> None:
        self.calls += 1
        if self.down:
            raise StoreUnavailableError(self.name, operation, "connection refused")

    async def get(self, collection, record_id):
        self._check("get")
        return await self._inner.get(collection, record_id)

    async def put(self, collection, record_id, record):
        self._check("put")
        await self._inner.put(collection, record_id, record)

    async def delete(self, collection, record_id):
        self._check("delete")
        await self._inner.delete(collection, record_id)

    async def query(self, collection, **equals):
        self._check("query")
        return await self._inner.query(collection, **equals)

    async def run_scoped(self, operations):
        self._check("run_scoped")
        return await self._inner.run_scoped(operations)


@pytest.fixture
def clock():
    return DeterministicClock(START)


@pytest.fixture
def flags():
    return StaticFlagSource(RoutingFlags())


@pytest.fixture
def document_store():
    return DocumentStoreAdapter()


@pytest.fixture
def relational_store(session_factory):
    return RelationalStoreAdapter(session_factory)


@pytest.fixture
def primary(document_store):
    return FlakyStore(document_store)


@pytest.fixture
def secondary(relational_store):
    return FlakyStore(relational_store)


@pytest.fixture
def consistency_log():
    return InMemoryConsistencyLog()


@pytest.fixture
def router(primary, secondary, consistency_log, flags, clock):
    return ConsistencyRouter(
        primary=primary,
        secondary=secondary,
        consistency_log=consistency_log,
        flags=flags,
        clock=clock,
        timeout_seconds=2.0,
        retry_delay_seconds=1.0,
    )


@pytest.fixture
def alert_sink():
    return CollectingAlertSink()


@pytest.fixture
def reconciliation_settings():
    return ReconciliationSettings(
        interval_seconds=0.01,
        max_attempts=3,
        backoff_base_seconds=1.0,
        backoff_cap_seconds=60.0,
        stale_after_seconds=60.0,
        batch_size=100,
    )


@pytest.fixture
def worker(router, reconciliation_settings, alert_sink):
    return ReconciliationWorker(router, reconciliation_settings, alert_sink)
