"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from StockKernelError:

    StockKernelError (base)
    |
    +-- LedgerError
    |   +-- ValidationError
    |   +-- InsufficientStockError
    |   +-- IngredientNotFoundError
    |   +-- BatchNotFoundError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- StoreError
    |   +-- StoreUnavailableError
    |   +-- ScopeAbortedError
    |
    +-- ConsistencyError
        +-- PrimaryWriteFailedError
        +-- SecondaryWriteFailedError
        +-- ReconciliationExhaustedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Ledger          | VALIDATION_ERROR            | Malformed or inconsistent movement
                | INSUFFICIENT_STOCK          | Decrement below zero, backorder disallowed
                | INGREDIENT_NOT_FOUND        | Movement for an unknown ingredient
                | BATCH_NOT_FOUND             | Targeted batch does not exist
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Altering or deleting an applied movement
----------------|-----------------------------|-----------------------------------------
Store           | STORE_UNAVAILABLE           | Store call failed or timed out
                | SCOPE_ABORTED               | Store-local scope could not commit
----------------|-----------------------------|-----------------------------------------
Consistency     | PRIMARY_WRITE_FAILED        | Primary commit failed (retry-safe)
                | SECONDARY_WRITE_FAILED      | Mirror failed (never surfaced to callers)
                | RECONCILIATION_EXHAUSTED    | Repair attempts exhausted (operator alert)

===============================================================================
HANDLING PATTERNS
===============================================================================

1. IDEMPOTENT REPLAYS ARE NOT ERRORS:

    result = await router.write(movement)
    if result.replayed:
        # same idempotency_key was applied before; result is the prior one
        ...

2. PRIMARY FAILURES ARE RETRY-SAFE:

    try:
        await router.write(movement)
    except PrimaryWriteFailedError:
        await router.write(movement)  # same idempotency_key

3. SECONDARY FAILURES ARE ONLY VISIBLE THROUGH reconciliation_status().
"""

from decimal import Decimal


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STOCK_KERNEL_ERROR"


# Ledger exceptions


class LedgerError(StockKernelError):
    """Base exception for ledger rejections."""

    code: str = "LEDGER_ERROR"


class ValidationError(LedgerError):
    """Movement is malformed or inconsistent with its ingredient."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InsufficientStockError(LedgerError):
    """Decrement would drive stock negative and backorders are disallowed."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        ingredient_id: str,
        requested: Decimal,
        available: Decimal,
    ):
        self.ingredient_id = ingredient_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {ingredient_id}: "
            f"requested {requested}, available {available}"
        )


class IngredientNotFoundError(LedgerError):
    """Ingredient is not known to the ledger or the store."""

    code: str = "INGREDIENT_NOT_FOUND"

    def __init__(self, ingredient_id: str):
        self.ingredient_id = ingredient_id
        super().__init__(f"Ingredient not found: {ingredient_id}")


class BatchNotFoundError(LedgerError):
    """A movement targeted a batch that does not belong to the ingredient."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, ingredient_id: str, batch_id: str):
        self.ingredient_id = ingredient_id
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} not found for ingredient {ingredient_id}")


# Immutability exceptions


class ImmutabilityError(StockKernelError):
    """Base exception for append-only violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempt to alter or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


# Store exceptions


class StoreError(StockKernelError):
    """Base exception for store adapter failures."""

    code: str = "STORE_ERROR"


class StoreUnavailableError(StoreError):
    """
    The store could not serve the call (connection, timeout, driver error).

    Distinct from "not found", which adapters report as None.
    """

    code: str = "STORE_UNAVAILABLE"

    def __init__(self, store: str, operation: str, reason: str):
        self.store = store
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store {store} failed during {operation}: {reason}")


class ScopeAbortedError(StoreError):
    """
    A store-local scope could not commit.

    Callers must treat every effect of the scope as not applied to that
    store. No other store is affected.
    """

    code: str = "SCOPE_ABORTED"

    def __init__(self, store: str, reason: str):
        self.store = store
        self.reason = reason
        super().__init__(f"Scope aborted on {store}: {reason}")


# Consistency exceptions


class ConsistencyError(StockKernelError):
    """Base exception for dual-write protocol failures."""

    code: str = "CONSISTENCY_ERROR"


class PrimaryWriteFailedError(ConsistencyError):
    """
    The primary store did not commit the write.

    The write is fully not-applied; retrying with the same idempotency key
    is safe.
    """

    code: str = "PRIMARY_WRITE_FAILED"

    def __init__(self, entity_id: str, idempotency_key: str, reason: str):
        self.entity_id = entity_id
        self.idempotency_key = idempotency_key
        self.reason = reason
        super().__init__(
            f"Primary write failed for {entity_id} ({idempotency_key}): {reason}"
        )


class SecondaryWriteFailedError(ConsistencyError):
    """Mirror write to the secondary store failed. Absorbed by the router."""

    code: str = "SECONDARY_WRITE_FAILED"

    def __init__(self, entity_id: str, idempotency_key: str | None, reason: str):
        self.entity_id = entity_id
        self.idempotency_key = idempotency_key
        self.reason = reason
        super().__init__(f"Secondary write failed for {entity_id}: {reason}")


class ReconciliationExhaustedError(ConsistencyError):
    """Repair attempts for an entity reached the configured maximum."""

    code: str = "RECONCILIATION_EXHAUSTED"

    def __init__(self, entity_id: str, attempts: int, last_error: str | None):
        self.entity_id = entity_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Reconciliation exhausted for {entity_id} after {attempts} attempts: "
            f"{last_error}"
        )
