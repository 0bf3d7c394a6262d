"""
DocumentStoreAdapter -- schema-less in-process document store (primary).

Records are kept as deep copies so callers can never mutate stored state
through a reference.  Scopes stage writes in a copy-on-write overlay that is
merged into the collections in one synchronous step, so no other task can
observe a half-applied scope.
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from typing import Any, TypeVar

from stock_kernel.exceptions import ImmutabilityViolationError, ScopeAbortedError
from stock_kernel.logging_config import get_logger
from stock_services.stores.base import Collection, Record, StoreAdapter

logger = get_logger("services.stores.document")

T = TypeVar("T")

_DELETED = object()


class DocumentStoreAdapter(StoreAdapter):
    """
    In-process document collections with staged scopes.

    Guarantees:
        - Reads inside a scope see the scope's own staged writes.
        - Reads outside a scope never see staged writes.
        - Append-only collections reject differing re-puts and deletes.
    """

    def __init__(self, name: str = "document"):
        self.name = name
        self._collections: dict[Collection, dict[str, Record]] = {c: {} for c in Collection}
        self._staged: ContextVar[dict[Collection, dict[str, Any]] | None] = ContextVar(
            f"document_store_staged_{id(self)}", default=None
        )

    # -------------------------------------------------------------------------
    # StoreAdapter
    # -------------------------------------------------------------------------

    async def get(self, collection: Collection, record_id: str) -> Record | None:
        record = self._lookup(collection, record_id)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, collection: Collection, record_id: str, record: Record) -> None:
        if collection.append_only:
            existing = self._lookup(collection, record_id)
            if existing is not None:
                if existing == record:
                    return
                raise ImmutabilityViolationError(
                    entity_type=collection.value,
                    entity_id=record_id,
                    reason="append-only record already exists with different content",
                )
        self._write(collection, record_id, copy.deepcopy(record))

    async def delete(self, collection: Collection, record_id: str) -> None:
        if collection.append_only:
            raise ImmutabilityViolationError(
                entity_type=collection.value,
                entity_id=record_id,
                reason="append-only records cannot be deleted",
            )
        self._write(collection, record_id, _DELETED)

    async def query(self, collection: Collection, **equals: Any) -> list[Record]:
        merged = dict(self._collections[collection])
        staged = self._staged.get()
        if staged is not None:
            merged.update(staged[collection])
        return [
            copy.deepcopy(record)
            for record in merged.values()
            if record is not _DELETED
            and all(record.get(k) == v for k, v in equals.items())
        ]

    async def run_scoped(self, operations: Callable[[], Awaitable[T]]) -> T:
        if self._staged.get() is not None:
            return await operations()

        overlay: dict[Collection, dict[str, Any]] = {c: {} for c in Collection}
        token = self._staged.set(overlay)
        try:
            result = await operations()
        except Exception as exc:
            logger.warning(
                "scope_aborted",
                extra={"store": self.name, "error": str(exc)},
            )
            raise ScopeAbortedError(self.name, str(exc)) from exc
        finally:
            self._staged.reset(token)

        self._merge(overlay)
        return result

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _lookup(self, collection: Collection, record_id: str) -> Record | None:
        staged = self._staged.get()
        if staged is not None and record_id in staged[collection]:
            value = staged[collection][record_id]
            return None if value is _DELETED else value
        return self._collections[collection].get(record_id)

    def _write(self, collection: Collection, record_id: str, value: Any) -> None:
        staged = self._staged.get()
        if staged is not None:
            staged[collection][record_id] = value
        elif value is _DELETED:
            self._collections[collection].pop(record_id, None)
        else:
            self._collections[collection][record_id] = value

    def _merge(self, overlay: dict[Collection, dict[str, Any]]) -> None:
        for collection, changes in overlay.items():
            target = self._collections[collection]
            for record_id, value in changes.items():
                if value is _DELETED:
                    target.pop(record_id, None)
                else:
                    target[record_id] = value
