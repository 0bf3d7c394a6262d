"""
Pure domain layer.

Immutable value objects and the stock ledger.  Nothing here touches the
ORM or a database, and the current time only arrives through an injected
Clock, so every operation is deterministic for a given input.
"""

from stock_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from stock_kernel.domain.fefo import apply_allocations, available_quantity, select_batches
from stock_kernel.domain.inventory import (
    ZERO,
    Batch,
    BatchAllocation,
    Ingredient,
    MovementReason,
    PriceHistoryEntry,
    StockMovement,
    weighted_unit_cost,
)
from stock_kernel.domain.inventory_status import (
    ExpiryCheckResult,
    InventoryStatus,
    expiring_batches,
    inventory_status,
    low_stock,
)
from stock_kernel.domain.ledger import IngredientState, LedgerResult, StockLedger

__all__ = [
    "ZERO",
    "Batch",
    "BatchAllocation",
    "Clock",
    "DeterministicClock",
    "ExpiryCheckResult",
    "Ingredient",
    "IngredientState",
    "InventoryStatus",
    "LedgerResult",
    "MovementReason",
    "PriceHistoryEntry",
    "StockLedger",
    "StockMovement",
    "SystemClock",
    "apply_allocations",
    "available_quantity",
    "expiring_batches",
    "inventory_status",
    "low_stock",
    "select_batches",
    "weighted_unit_cost",
]
