"""
Record codec between domain objects and store records.

Both stores hold the same flat record shape.  Decoding is lenient about
value types because the document store is schema-less: decimals may arrive
as strings or ints and datetimes as ISO strings.  Encoding is exact.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from stock_kernel.domain.inventory import (
    Batch,
    Ingredient,
    MovementReason,
    PriceHistoryEntry,
    StockMovement,
)
from stock_services.stores.base import Record


def batch_record_id(ingredient_id: str, batch_id: str) -> str:
    """Store key for a batch; batch ids are only unique per ingredient."""
    return f"{ingredient_id}/{batch_id}"


def _decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def _optional_decimal(value: Any) -> Decimal | None:
    return None if value is None else _decimal(value)


def _datetime(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _optional_datetime(value: Any) -> datetime | None:
    return None if value is None else _datetime(value)


# Ingredients


def ingredient_to_record(ingredient: Ingredient, version: int) -> Record:
    return {
        "id": ingredient.id,
        "outlet_id": ingredient.outlet_id,
        "name": ingredient.name,
        "unit": ingredient.unit,
        "category": ingredient.category,
        "allergens": list(ingredient.allergens),
        "minimum_stock": ingredient.minimum_stock,
        "current_stock": ingredient.current_stock,
        "last_cost": ingredient.last_cost,
        "tracks_batches": ingredient.tracks_batches,
        "allow_backorder": ingredient.allow_backorder,
        "version": version,
    }


def ingredient_from_record(record: Record) -> Ingredient:
    return Ingredient(
        id=record["id"],
        outlet_id=record["outlet_id"],
        name=record["name"],
        unit=record["unit"],
        category=record.get("category") or "",
        allergens=tuple(record.get("allergens") or ()),
        minimum_stock=_decimal(record.get("minimum_stock", 0)),
        current_stock=_decimal(record.get("current_stock", 0)),
        last_cost=_optional_decimal(record.get("last_cost")),
        tracks_batches=bool(record.get("tracks_batches", True)),
        allow_backorder=bool(record.get("allow_backorder", False)),
    )


def record_version(record: Record) -> int:
    return int(record.get("version") or 0)


# Movements


def movement_to_record(movement: StockMovement) -> Record:
    return {
        "id": movement.id,
        "ingredient_id": movement.ingredient_id,
        "outlet_id": movement.outlet_id,
        "delta": movement.delta,
        "reason": movement.reason.value,
        "timestamp": movement.timestamp,
        "actor_id": movement.actor_id,
        "idempotency_key": movement.idempotency_key,
        "unit_cost_at_time": movement.unit_cost_at_time,
        "batch_id": movement.batch_id,
        "expires_at": movement.expires_at,
        "note": movement.note,
        "sequence": movement.sequence,
    }


def movement_from_record(record: Record) -> StockMovement:
    return StockMovement(
        id=record["id"],
        ingredient_id=record["ingredient_id"],
        outlet_id=record["outlet_id"],
        delta=_decimal(record["delta"]),
        reason=MovementReason(record["reason"]),
        timestamp=_datetime(record["timestamp"]),
        actor_id=record["actor_id"],
        idempotency_key=record["idempotency_key"],
        unit_cost_at_time=_optional_decimal(record.get("unit_cost_at_time")),
        batch_id=record.get("batch_id"),
        expires_at=_optional_datetime(record.get("expires_at")),
        note=record.get("note"),
        sequence=int(record.get("sequence") or 0),
    )


# Batches


def batch_to_record(batch: Batch) -> Record:
    return {
        "id": batch_record_id(batch.ingredient_id, batch.id),
        "batch_id": batch.id,
        "ingredient_id": batch.ingredient_id,
        "initial_quantity": batch.initial_quantity,
        "current_quantity": batch.current_quantity,
        "unit_cost": batch.unit_cost,
        "received_at": batch.received_at,
        "expires_at": batch.expires_at,
    }


def batch_from_record(record: Record) -> Batch:
    return Batch(
        id=record["batch_id"],
        ingredient_id=record["ingredient_id"],
        initial_quantity=_decimal(record["initial_quantity"]),
        current_quantity=_decimal(record["current_quantity"]),
        unit_cost=_decimal(record["unit_cost"]),
        received_at=_datetime(record["received_at"]),
        expires_at=_datetime(record["expires_at"]),
    )


# Price history


def price_to_record(entry: PriceHistoryEntry) -> Record:
    return {
        "id": entry.id,
        "ingredient_id": entry.ingredient_id,
        "recorded_at": entry.recorded_at,
        "price": entry.price,
        "reason": entry.reason,
        "idempotency_key": entry.idempotency_key,
        "sequence": entry.sequence,
        "movement_id": entry.movement_id,
    }


def price_from_record(record: Record) -> PriceHistoryEntry:
    return PriceHistoryEntry(
        ingredient_id=record["ingredient_id"],
        recorded_at=_datetime(record["recorded_at"]),
        price=_decimal(record["price"]),
        reason=record["reason"],
        idempotency_key=record["idempotency_key"],
        sequence=int(record["sequence"]),
        movement_id=record.get("movement_id"),
    )
