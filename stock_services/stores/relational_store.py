"""
RelationalStoreAdapter -- SQLAlchemy-backed relational store (secondary).

Responsibility:
    Maps the four collections onto ORM models and runs each scope in one
    real database transaction.

Invariants enforced:
    - Movements and price history are insert-once at the adapter and
      append-only at the ORM (db/immutability.py listeners).
    - stock_movements.idempotency_key is UNIQUE: a logical write lands once.

Failure modes:
    - SQLAlchemyError outside a scope -> StoreUnavailableError.
    - Any error inside a scope -> rollback, ScopeAbortedError.

Sessions are synchronous and run inline on the event loop; calls are short
and the router bounds every store call with a timeout.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, TypeVar

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from stock_kernel.db.engine import session_scope
from stock_kernel.db.base import Base
from stock_kernel.exceptions import (
    ImmutabilityViolationError,
    ScopeAbortedError,
    StoreUnavailableError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models import (
    BatchModel,
    IngredientModel,
    PriceHistoryModel,
    StockMovementModel,
)
from stock_services.stores.base import Collection, Record, StoreAdapter

logger = get_logger("services.stores.relational")

T = TypeVar("T")

_MODELS: dict[Collection, type[Base]] = {
    Collection.INGREDIENTS: IngredientModel,
    Collection.MOVEMENTS: StockMovementModel,
    Collection.BATCHES: BatchModel,
    Collection.PRICE_HISTORY: PriceHistoryModel,
}

_ORDER_BY = {
    Collection.MOVEMENTS: "sequence",
    Collection.PRICE_HISTORY: "sequence",
}


def _row_to_record(row: Base) -> Record:
    values = {attr.key: getattr(row, attr.key) for attr in inspect(row).mapper.column_attrs}
    if "allergens" in values:
        values["allergens"] = list(values["allergens"] or [])
    return values


class RelationalStoreAdapter(StoreAdapter):
    """
    Relational store over a SQLAlchemy session factory.

    Contract:
        Calls outside a scope each run in their own short transaction.
        Calls inside ``run_scoped`` share the scope's session, which is
        committed once at the end.
    """

    def __init__(self, session_factory: sessionmaker[Session], name: str = "relational"):
        self.name = name
        self._session_factory = session_factory
        self._active: ContextVar[Session | None] = ContextVar(
            f"relational_store_session_{id(self)}", default=None
        )

    # -------------------------------------------------------------------------
    # StoreAdapter
    # -------------------------------------------------------------------------

    async def get(self, collection: Collection, record_id: str) -> Record | None:
        with self._session("get") as session:
            row = session.get(_MODELS[collection], record_id)
            return _row_to_record(row) if row is not None else None

    async def put(self, collection: Collection, record_id: str, record: Record) -> None:
        model = _MODELS[collection]
        values = {k: v for k, v in record.items() if k != "id"}
        with self._session("put") as session:
            row = session.get(model, record_id)
            if row is None:
                session.add(model(id=record_id, **values))
            elif collection.append_only:
                if _row_to_record(row) == {"id": record_id, **values}:
                    return
                raise ImmutabilityViolationError(
                    entity_type=collection.value,
                    entity_id=record_id,
                    reason="append-only record already exists with different content",
                )
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            session.flush()

    async def delete(self, collection: Collection, record_id: str) -> None:
        if collection.append_only:
            raise ImmutabilityViolationError(
                entity_type=collection.value,
                entity_id=record_id,
                reason="append-only records cannot be deleted",
            )
        with self._session("delete") as session:
            row = session.get(_MODELS[collection], record_id)
            if row is not None:
                session.delete(row)
                session.flush()

    async def query(self, collection: Collection, **equals: Any) -> list[Record]:
        model = _MODELS[collection]
        stmt = select(model).filter_by(**equals)
        stmt = stmt.order_by(getattr(model, _ORDER_BY.get(collection, "id")))
        with self._session("query") as session:
            return [_row_to_record(row) for row in session.execute(stmt).scalars()]

    async def run_scoped(self, operations: Callable[[], Awaitable[T]]) -> T:
        if self._active.get() is not None:
            return await operations()

        session = self._session_factory()
        token = self._active.set(session)
        try:
            result = await operations()
            session.commit()
            return result
        except Exception as exc:
            self._rollback(session)
            logger.warning(
                "scope_aborted",
                extra={"store": self.name, "error": str(exc)},
            )
            raise ScopeAbortedError(self.name, str(exc)) from exc
        finally:
            self._active.reset(token)
            session.close()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        """The active scope's session, or a one-call transaction."""
        active = self._active.get()
        if active is not None:
            yield active
            return
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(self.name, operation, str(exc)) from exc

    def _rollback(self, session: Session) -> None:
        try:
            session.rollback()
        except SQLAlchemyError:
            logger.exception("scope_rollback_failed", extra={"store": self.name})
