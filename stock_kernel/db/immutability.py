"""
ORM-Level Immutability Enforcement for append-only tables.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events:

    session.flush()
         |
         v
    [before_update event] --> _reject_update() --> ImmutabilityViolationError
         |                                                 ^
         v                                                 |
    [before_delete event] --> _reject_delete() ------------+
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, ImmutabilityViolationError propagates out of the flush and
the session's transaction is rolled back by its owner.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                | When Immutable          | Correction path
----------------------|-------------------------|-----------------------------
StockMovementModel    | ALWAYS (from creation)  | New compensating movement
PriceHistoryModel     | ALWAYS (from creation)  | New price entry

===============================================================================
USAGE
===============================================================================

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # idempotent
"""

from sqlalchemy import event

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _entity_name(target) -> str:
    return type(target).__name__.removesuffix("Model")


def _reject_update(mapper, connection, target):
    """Prevent any UPDATE to an append-only row."""
    entity_type = _entity_name(target)
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=f"{entity_type} records are append-only and cannot be modified",
    )


def _reject_delete(mapper, connection, target):
    """Prevent any DELETE of an append-only row."""
    entity_type = _entity_name(target)
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=f"{entity_type} records are append-only and cannot be deleted",
    )


def _protected_models():
    from stock_kernel.models.movement import PriceHistoryModel, StockMovementModel

    return (StockMovementModel, PriceHistoryModel)


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; listeners are only added if missing.
    """
    for model in _protected_models():
        if not event.contains(model, "before_update", _reject_update):
            event.listen(model, "before_update", _reject_update)
        if not event.contains(model, "before_delete", _reject_delete):
            event.listen(model, "before_delete", _reject_delete)

