"""Builders for ingredients and movements shared across the test suite."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from stock_kernel.domain.inventory import Ingredient, MovementReason, StockMovement

OUTLET = "outlet-1"
ACTOR = "chef-1"
START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_ingredient(
    ingredient_id: str = "milk",
    *,
    tracks_batches: bool = True,
    allow_backorder: bool = False,
    minimum_stock: Decimal = Decimal("2"),
    outlet_id: str = OUTLET,
    name: str | None = None,
) -> Ingredient:
    return Ingredient(
        id=ingredient_id,
        outlet_id=outlet_id,
        name=name or ingredient_id.title(),
        unit="l",
        category="dairy",
        allergens=("lactose",),
        minimum_stock=minimum_stock,
        tracks_batches=tracks_batches,
        allow_backorder=allow_backorder,
    )


def receipt(
    key: str,
    quantity: str,
    *,
    ingredient_id: str = "milk",
    cost: str = "1.20",
    at: datetime = START,
    expires_in_days: int = 7,
    batch_id: str | None = None,
) -> StockMovement:
    return StockMovement(
        id=f"mv-{key}",
        ingredient_id=ingredient_id,
        outlet_id=OUTLET,
        delta=Decimal(quantity),
        reason=MovementReason.RECEIPT,
        timestamp=at,
        actor_id=ACTOR,
        idempotency_key=key,
        unit_cost_at_time=Decimal(cost),
        batch_id=batch_id,
        expires_at=at + timedelta(days=expires_in_days),
    )


def consumption(
    key: str,
    quantity: str,
    *,
    ingredient_id: str = "milk",
    at: datetime = START,
    batch_id: str | None = None,
    reason: MovementReason = MovementReason.CONSUMPTION,
) -> StockMovement:
    return StockMovement(
        id=f"mv-{key}",
        ingredient_id=ingredient_id,
        outlet_id=OUTLET,
        delta=-Decimal(quantity),
        reason=reason,
        timestamp=at,
        actor_id=ACTOR,
        idempotency_key=key,
        batch_id=batch_id,
    )
