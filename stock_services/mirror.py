"""
Writing ledger effects into a store.

Responsibility:
    Turn a committed ledger result (or a whole ingredient snapshot) into
    store records and write them in one store-local scope.  Used for the
    primary commit, the secondary mirror and the worker's full sync.

Invariants enforced:
    - Records carry the ledger's own idempotency keys and sequences, so a
      repeated write is a no-op on append-only collections.
    - Comparison never mutates either side; the ledger always wins.
"""

from __future__ import annotations

from dataclasses import dataclass

from stock_kernel.domain.inventory import ZERO
from stock_kernel.domain.ledger import IngredientState, LedgerResult
from stock_kernel.utils.hashing import hash_payload
from stock_services.stores.base import Collection, StoreAdapter
from stock_services.stores.records import (
    batch_record_id,
    batch_to_record,
    ingredient_to_record,
    movement_to_record,
    price_to_record,
    record_version,
)


async def write_result(store: StoreAdapter, result: LedgerResult) -> None:
    """Write the effects of one committed ledger result in one scope."""

    async def operations() -> None:
        if result.movement is not None:
            await store.put(
                Collection.MOVEMENTS, result.movement.id, movement_to_record(result.movement)
            )
        if result.price_entry is not None:
            await store.put(
                Collection.PRICE_HISTORY, result.price_entry.id, price_to_record(result.price_entry)
            )
        for batch in result.affected_batches:
            await store.put(
                Collection.BATCHES,
                batch_record_id(batch.ingredient_id, batch.id),
                batch_to_record(batch),
            )
        await store.put(
            Collection.INGREDIENTS,
            result.ingredient_id,
            ingredient_to_record(result.ingredient, result.version),
        )

    await store.run_scoped(operations)


async def write_snapshot(store: StoreAdapter, state: IngredientState) -> None:
    """Bring a store up to an ingredient snapshot in one scope.

    Append-only records the store already holds are re-put unchanged (a
    no-op); mutable caches are overwritten with the ledger's values.
    """

    async def operations() -> None:
        for movement in state.movements:
            await store.put(Collection.MOVEMENTS, movement.id, movement_to_record(movement))
        for entry in state.price_history:
            await store.put(Collection.PRICE_HISTORY, entry.id, price_to_record(entry))
        for batch in state.batches:
            await store.put(
                Collection.BATCHES,
                batch_record_id(batch.ingredient_id, batch.id),
                batch_to_record(batch),
            )
        await store.put(
            Collection.INGREDIENTS,
            state.ingredient.id,
            ingredient_to_record(state.ingredient, state.version),
        )

    await store.run_scoped(operations)


@dataclass(frozen=True)
class DriftReport:
    """Differences between a store and the ledger for one ingredient."""

    entity_id: str
    mismatches: tuple[str, ...]

    @property
    def has_drift(self) -> bool:
        return bool(self.mismatches)


def _fingerprint(records: list[dict]) -> str:
    return hash_payload({"records": sorted(records, key=lambda r: r["id"])})


async def compare_snapshot(store: StoreAdapter, state: IngredientState) -> DriftReport:
    """Compare what a store holds for an ingredient against a ledger snapshot."""
    ingredient_id = state.ingredient.id
    mismatches: list[str] = []

    record = await store.get(Collection.INGREDIENTS, ingredient_id)
    if record is None:
        return DriftReport(ingredient_id, ("ingredient missing",))

    expected = state.ingredient.current_stock
    if record.get("current_stock") != expected:
        mismatches.append(
            f"current_stock {record.get('current_stock')} != ledger {expected}"
        )
    if record_version(record) != state.version:
        mismatches.append(f"version {record_version(record)} != ledger {state.version}")

    movements = await store.query(Collection.MOVEMENTS, ingredient_id=ingredient_id)
    if _fingerprint(movements) != _fingerprint([movement_to_record(m) for m in state.movements]):
        projected = sum((m.delta for m in state.movements), ZERO)
        stored = sum((r["delta"] for r in movements), ZERO)
        mismatches.append(
            f"movements differ ({len(movements)} stored, {len(state.movements)} in ledger; "
            f"stored sum {stored}, projected {projected})"
        )

    batches = await store.query(Collection.BATCHES, ingredient_id=ingredient_id)
    if _fingerprint(batches) != _fingerprint([batch_to_record(b) for b in state.batches]):
        mismatches.append("batches differ")

    prices = await store.query(Collection.PRICE_HISTORY, ingredient_id=ingredient_id)
    if _fingerprint(prices) != _fingerprint([price_to_record(p) for p in state.price_history]):
        mismatches.append("price history differs")

    return DriftReport(ingredient_id, tuple(mismatches))
