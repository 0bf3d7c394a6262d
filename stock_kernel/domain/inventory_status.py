"""
Read-side views over ledger snapshots: inventory status, expiry, reorder.

Pure functions over ``IngredientState`` values. Callers pass snapshots they
already hold, so no view ever reads half of a commit.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from stock_kernel.domain.inventory import ZERO, Batch, Ingredient, StockMovement
from stock_kernel.domain.ledger import IngredientState

RECENT_MOVEMENT_LIMIT = 10


@dataclass(frozen=True, slots=True)
class InventoryStatus:
    """Current stock of one ingredient plus its most recent movements (newest first)."""

    ingredient: Ingredient
    current_stock: Decimal
    open_batches: tuple[Batch, ...]
    recent_movements: tuple[StockMovement, ...]
    version: int

    @property
    def needs_reorder(self) -> bool:
        return self.ingredient.needs_reorder


@dataclass(frozen=True, slots=True)
class ExpiryCheckResult:
    """Batches of one ingredient expiring inside the look-ahead window."""

    ingredient: Ingredient
    batches: tuple[Batch, ...]

    @property
    def total_quantity(self) -> Decimal:
        return sum((b.current_quantity for b in self.batches), ZERO)


def inventory_status(
    state: IngredientState,
    limit: int = RECENT_MOVEMENT_LIMIT,
) -> InventoryStatus:
    recent = tuple(reversed(state.movements[-limit:])) if limit > 0 else ()
    return InventoryStatus(
        ingredient=state.ingredient,
        current_stock=state.ingredient.current_stock,
        open_batches=tuple(
            sorted((b for b in state.batches if not b.is_depleted), key=Batch.fefo_key)
        ),
        recent_movements=recent,
        version=state.version,
    )


def expiring_batches(
    states: Iterable[IngredientState],
    as_of: datetime,
    days_ahead: int,
) -> tuple[ExpiryCheckResult, ...]:
    """Group non-depleted batches expiring within ``days_ahead`` by ingredient.

    Already-expired batches that still hold stock are included. Ingredients
    with nothing expiring are omitted. Batches are ordered FEFO.
    """
    results = []
    for state in states:
        batches = tuple(
            sorted(
                (b for b in state.batches if b.expires_within(as_of, days_ahead)),
                key=Batch.fefo_key,
            )
        )
        if batches:
            results.append(ExpiryCheckResult(ingredient=state.ingredient, batches=batches))
    return tuple(sorted(results, key=lambda r: r.batches[0].fefo_key()))


def low_stock(states: Iterable[IngredientState]) -> tuple[Ingredient, ...]:
    """Ingredients at or below their reorder point, lowest coverage first."""
    flagged = [s.ingredient for s in states if s.ingredient.needs_reorder]
    return tuple(sorted(flagged, key=lambda i: (i.current_stock - i.minimum_stock, i.id)))
