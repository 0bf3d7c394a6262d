"""
Relational store specifics: ORM append-only listeners, driver failures and
UTC datetime handling.
"""

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import select

from stock_kernel.db.base import Base
from stock_kernel.db.engine import session_scope
from stock_kernel.domain.ledger import StockLedger
from stock_kernel.exceptions import ImmutabilityViolationError, StoreUnavailableError
from stock_kernel.models import StockMovementModel
from stock_services.stores.base import Collection
from stock_services.stores.records import movement_to_record

from tests.builders import make_ingredient, receipt


def _movement():
    ledger = StockLedger()
    ledger.register(make_ingredient("milk"))
    return ledger.apply(receipt("r1", "10")).movement


class TestOrmImmutability:
    def test_update_blocked_by_listener(self, relational_store, session_factory):
        movement = _movement()
        asyncio.run(
            relational_store.put(Collection.MOVEMENTS, movement.id, movement_to_record(movement))
        )

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                row = session.execute(select(StockMovementModel)).scalar_one()
                row.note = "edited"

    def test_delete_blocked_by_listener(self, relational_store, session_factory):
        movement = _movement()
        asyncio.run(
            relational_store.put(Collection.MOVEMENTS, movement.id, movement_to_record(movement))
        )

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                session.delete(session.get(StockMovementModel, movement.id))

        with session_scope(session_factory) as session:
            assert session.get(StockMovementModel, movement.id) is not None


class TestFailures:
    def test_driver_error_is_store_unavailable(self, relational_store, engine):
        Base.metadata.drop_all(engine)

        with pytest.raises(StoreUnavailableError) as exc_info:
            asyncio.run(relational_store.get(Collection.INGREDIENTS, "milk"))

        assert exc_info.value.store == "relational"
        assert exc_info.value.operation == "get"

    def test_naive_datetime_rejected(self, relational_store):
        record = movement_to_record(_movement())
        record["timestamp"] = datetime(2024, 1, 1, 12, 0)

        with pytest.raises(StoreUnavailableError):
            asyncio.run(relational_store.put(Collection.MOVEMENTS, record["id"], record))


class TestDatetimes:
    def test_loaded_datetimes_are_utc_aware(self, relational_store):
        movement = _movement()

        async def scenario():
            await relational_store.put(
                Collection.MOVEMENTS, movement.id, movement_to_record(movement)
            )
            return await relational_store.get(Collection.MOVEMENTS, movement.id)

        stored = asyncio.run(scenario())

        assert stored["timestamp"] == movement.timestamp
        assert stored["timestamp"].tzinfo is not None
