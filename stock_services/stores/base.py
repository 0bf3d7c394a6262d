"""
StoreAdapter and TransactionScope contracts.

Responsibility:
    The narrow interface the consistency layer needs from a backing store:
    get / put / delete / query over four collections, and a store-local
    scope in which a group of writes is applied all-or-nothing.

Architecture position:
    Services > Stores.  Adapters depend on the kernel (exceptions, models);
    nothing in the kernel depends on adapters.

Invariants enforced:
    - A missing record is ``None`` (authoritative, never a fallback trigger).
      Any failure to answer raises ``StoreUnavailableError``.
    - Append-only collections (movements, price history) are insert-once:
      an identical re-put is a no-op, a differing re-put or any delete
      raises ``ImmutabilityViolationError``.
    - A scope is local to one store.  Two stores mean two scopes and no
      joint atomicity.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

Record = dict[str, Any]
T = TypeVar("T")


class Collection(str, Enum):
    """Collections every store exposes."""

    INGREDIENTS = "ingredients"
    MOVEMENTS = "movements"
    BATCHES = "batches"
    PRICE_HISTORY = "price_history"

    @property
    def append_only(self) -> bool:
        return self in (Collection.MOVEMENTS, Collection.PRICE_HISTORY)


class TransactionScope(ABC):
    """A store-local all-or-nothing unit of work."""

    @abstractmethod
    async def run_scoped(self, operations: Callable[[], Awaitable[T]]) -> T:
        """Await ``operations()`` so its effects on this store are all visible or none are.

        Store calls made by ``operations`` on the same adapter join the
        scope; a nested ``run_scoped`` joins the outer one.

        Raises:
            ScopeAbortedError: If ``operations`` raised or the commit failed.
                Nothing done inside the scope is visible afterwards.
        """


class StoreAdapter(TransactionScope):
    """
    Async access to one backing store.

    Contract:
        Records are plain dicts of JSON-like values plus ``Decimal`` and
        aware ``datetime``; ``stock_services.stores.records`` converts them
        to and from domain objects.

    Non-goals:
        - Does NOT coordinate with any other store.
        - Does NOT validate stock rules; the ledger does.
    """

    name: str

    @abstractmethod
    async def get(self, collection: Collection, record_id: str) -> Record | None:
        """Fetch one record, or None when it does not exist."""

    @abstractmethod
    async def put(self, collection: Collection, record_id: str, record: Record) -> None:
        """Insert or replace one record (insert-once for append-only collections)."""

    @abstractmethod
    async def delete(self, collection: Collection, record_id: str) -> None:
        """Remove one record. Missing records are ignored."""

    @abstractmethod
    async def query(self, collection: Collection, **equals: Any) -> list[Record]:
        """All records whose fields equal every keyword given."""
