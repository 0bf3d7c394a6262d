"""
FEFO batch selection.

Responsibility:
    Decide which batches a decrement is taken from: earliest expiry first,
    or one explicitly targeted batch.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Failure modes:
    Returns ``None`` when the batches cannot cover the quantity. Nothing is
    ever partially allocated.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from stock_kernel.domain.inventory import ZERO, Batch, BatchAllocation


def available_quantity(batches: Iterable[Batch]) -> Decimal:
    return sum((b.current_quantity for b in batches), ZERO)


def select_batches(
    batches: Iterable[Batch],
    quantity: Decimal,
    target_batch_id: str | None = None,
) -> tuple[BatchAllocation, ...] | None:
    """Allocate ``quantity`` across batches.

    Preconditions:
        quantity > 0.

    Postconditions:
        The allocation quantities sum to exactly ``quantity`` and no batch
        is allocated more than its current quantity.

    Returns:
        The allocations, or None when there is not enough stock.
    """
    if target_batch_id is not None:
        for batch in batches:
            if batch.id == target_batch_id:
                if batch.current_quantity < quantity:
                    return None
                return (BatchAllocation(batch.id, quantity, batch.unit_cost),)
        return None

    remaining = quantity
    allocations: list[BatchAllocation] = []
    for batch in sorted(batches, key=Batch.fefo_key):
        if remaining <= 0:
            break
        if batch.is_depleted:
            continue
        take = min(batch.current_quantity, remaining)
        allocations.append(BatchAllocation(batch.id, take, batch.unit_cost))
        remaining -= take

    if remaining > 0:
        return None
    return tuple(allocations)


def apply_allocations(
    batches: tuple[Batch, ...],
    allocations: tuple[BatchAllocation, ...],
) -> tuple[tuple[Batch, ...], tuple[Batch, ...]]:
    """Decrement batches by their allocations.

    Returns:
        (all batches in original order, only the touched batches).
    """
    taken = {a.batch_id: a.quantity for a in allocations}
    updated: list[Batch] = []
    touched: list[Batch] = []
    for batch in batches:
        if batch.id in taken:
            new_batch = batch.consume(taken[batch.id])
            updated.append(new_batch)
            touched.append(new_batch)
        else:
            updated.append(batch)
    return tuple(updated), tuple(touched)
