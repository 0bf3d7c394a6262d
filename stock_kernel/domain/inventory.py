"""
Inventory value objects -- ingredients, movements, batches, price history.

Responsibility:
    Immutable records shared by the ledger, the store codec and the
    consistency layer.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - All records are frozen; "changes" produce new instances via
      ``dataclasses.replace``.
    - ``Ingredient.current_stock`` is a cache of the ledger projection and is
      only ever produced by the ledger.
    - ``Batch.consume`` never takes a batch below zero or above its initial
      quantity.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

ZERO = Decimal("0")

# Numeric(38, 9) in the relational store
QUANTITY_PLACES = 9
COST_QUANTUM = Decimal("0.000000001")


class MovementReason(str, Enum):
    """Why stock moved."""

    RECEIPT = "receipt"
    CONSUMPTION = "consumption"
    WASTE = "waste"
    AUDIT_ADJUSTMENT = "audit-adjustment"
    TRANSFER = "transfer"

    @property
    def required_sign(self) -> int:
        """+1 / -1 when the reason fixes the sign of delta, 0 when either is allowed."""
        if self is MovementReason.RECEIPT:
            return 1
        if self in (MovementReason.CONSUMPTION, MovementReason.WASTE):
            return -1
        return 0


@dataclass(frozen=True, slots=True)
class Ingredient:
    """
    A stocked ingredient owned by one outlet.

    ``current_stock`` and ``last_cost`` are derived by the ledger; callers
    register ingredients with zero stock and move stock with movements.
    """

    id: str
    outlet_id: str
    name: str
    unit: str
    category: str = ""
    allergens: tuple[str, ...] = ()
    minimum_stock: Decimal = ZERO
    current_stock: Decimal = ZERO
    last_cost: Decimal | None = None
    tracks_batches: bool = True
    allow_backorder: bool = False

    @property
    def needs_reorder(self) -> bool:
        """True when stock is at or below the reorder point."""
        return self.current_stock <= self.minimum_stock


@dataclass(frozen=True, slots=True)
class StockMovement:
    """
    Immutable stock movement fact.

    ``sequence`` is assigned by the ledger when the movement is appended
    (callers leave it at 0). ``unit_cost_at_time`` may be left empty for
    decrements; the ledger fills it with the weighted cost of the batches
    it consumed.

    ``batch_id`` targets a batch on decrements and names the new batch on
    increments. ``expires_at`` is the expiry of the batch a receipt creates.
    """

    id: str
    ingredient_id: str
    outlet_id: str
    delta: Decimal
    reason: MovementReason
    timestamp: datetime
    actor_id: str
    idempotency_key: str
    unit_cost_at_time: Decimal | None = None
    batch_id: str | None = None
    expires_at: datetime | None = None
    note: str | None = None
    sequence: int = 0

    @property
    def is_increase(self) -> bool:
        return self.delta > 0

    def request_fingerprint(self) -> tuple:
        """Fields that identify the logical request behind an idempotency key."""
        return (
            self.ingredient_id,
            self.outlet_id,
            self.delta,
            self.reason,
            self.batch_id,
        )


@dataclass(frozen=True, slots=True)
class Batch:
    """Lot-level stock with its own cost and expiry."""

    id: str
    ingredient_id: str
    initial_quantity: Decimal
    current_quantity: Decimal
    unit_cost: Decimal
    received_at: datetime
    expires_at: datetime

    @property
    def is_depleted(self) -> bool:
        return self.current_quantity <= 0

    def is_expired(self, as_of: datetime) -> bool:
        return self.expires_at <= as_of

    def expires_within(self, as_of: datetime, days: int) -> bool:
        """True if the batch still holds stock and expires before as_of + days."""
        if self.is_depleted:
            return False
        return self.expires_at <= as_of + timedelta(days=days)

    def consume(self, quantity: Decimal) -> Batch:
        """Return this batch with ``quantity`` removed.

        Raises:
            ValueError: If quantity is negative or exceeds what is left.
        """
        if quantity < 0 or quantity > self.current_quantity:
            raise ValueError(
                f"Cannot consume {quantity} from batch {self.id} "
                f"holding {self.current_quantity}"
            )
        return replace(self, current_quantity=self.current_quantity - quantity)

    def fefo_key(self) -> tuple:
        """Sort key: earliest expiry first, then oldest receipt, then id."""
        return (self.expires_at, self.received_at, self.id)


@dataclass(frozen=True, slots=True)
class BatchAllocation:
    """Quantity taken from (or added to) one batch by one movement."""

    batch_id: str
    quantity: Decimal
    unit_cost: Decimal


@dataclass(frozen=True, slots=True)
class PriceHistoryEntry:
    """
    Append-only cost change record.

    ``movement_id`` is set when a movement caused the change and empty for
    manual cost edits. ``sequence`` is the ingredient version at which the
    change was committed.
    """

    ingredient_id: str
    recorded_at: datetime
    price: Decimal
    reason: str
    idempotency_key: str
    sequence: int
    movement_id: str | None = None

    @property
    def id(self) -> str:
        return f"{self.ingredient_id}:{self.sequence}"

    @property
    def is_manual(self) -> bool:
        return self.movement_id is None


def weighted_unit_cost(allocations: tuple[BatchAllocation, ...]) -> Decimal | None:
    """Quantity-weighted average unit cost, quantized to store precision."""
    total_quantity = sum((a.quantity for a in allocations), ZERO)
    if total_quantity == 0:
        return None
    total_cost = sum((a.quantity * a.unit_cost for a in allocations), ZERO)
    return (total_cost / total_quantity).quantize(COST_QUANTUM)
