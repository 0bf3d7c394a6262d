"""
ConsistencyRouter -- routes stock reads and writes across two stores.

Responsibility:
    The only entry point for stock mutations while the system runs on a
    primary (document) store and a secondary (relational) store.  Writes go
    ledger-plan -> primary -> ledger-commit -> background mirror; reads go
    to the flag-selected store with fallback to the other.

Architecture position:
    Services.  Owns the per-ingredient write locks, the mirror tasks and the
    ledger instance; shares the ConsistencyRecord log with the
    ReconciliationWorker.

Invariants enforced:
    - At most one write per ingredient is in flight (per-ingredient lock).
    - The ledger commits only after the primary accepted the write, so a
      primary failure leaves no trace and a retry is safe.
    - A mirror failure never rolls back the primary and never reaches the
      caller; it is recorded as pending repair.
    - The consistency log is bookkeeping: when it cannot be written the
      failure is logged and the write carries on.
    - Routing flags are read at the start of every operation.

Failure modes:
    - ValidationError / InsufficientStockError / IngredientNotFoundError /
      BatchNotFoundError -- rejected by the ledger before any store I/O.
    - PrimaryWriteFailedError -- primary unavailable, timed out or aborted.
    - StoreUnavailableError -- a read failed on both stores.

Idempotency:
    A write whose idempotency key was already applied returns the prior
    result with ``replayed=True``.  A keyed write with nothing to store (a
    count that matched, an edit that changes nothing) is recorded as
    UNCHANGED, and matched counts are restored from that record after a
    re-hydration.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TypeVar

from stock_config.flags import FeatureFlagSource, StaticFlagSource
from stock_config.schema import ReadPreference
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.inventory import (
    Batch,
    Ingredient,
    PriceHistoryEntry,
    StockMovement,
)
from stock_kernel.domain.inventory_status import (
    RECENT_MOVEMENT_LIMIT,
    ExpiryCheckResult,
    InventoryStatus,
    expiring_batches,
    inventory_status,
    low_stock,
)
from stock_kernel.domain.ledger import LedgerResult, StockLedger
from stock_kernel.exceptions import (
    ImmutabilityError,
    IngredientNotFoundError,
    PrimaryWriteFailedError,
    SecondaryWriteFailedError,
    StoreError,
    StoreUnavailableError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_services.consistency_records import (
    ConsistencyLog,
    ConsistencyRecord,
    InMemoryConsistencyLog,
    WriteOutcome,
    WriteState,
)
from stock_services.mirror import write_result
from stock_services.stores.base import Collection, StoreAdapter
from stock_services.stores.records import (
    ingredient_from_record,
    movement_from_record,
    price_from_record,
    record_version,
)

logger = get_logger("services.consistency_router")

T = TypeVar("T")


@dataclass(frozen=True)
class WriteResult:
    """What a caller learns from an accepted write."""

    ingredient_id: str
    idempotency_key: str | None
    new_stock: Decimal
    version: int
    movement: StockMovement | None = None
    affected_batches: tuple[Batch, ...] = ()
    price_entry: PriceHistoryEntry | None = None
    ingredient: Ingredient | None = None
    replayed: bool = False
    state: WriteState | None = None

    @classmethod
    def from_ledger(cls, result: LedgerResult, state: WriteState | None) -> WriteResult:
        return cls(
            ingredient_id=result.ingredient_id,
            idempotency_key=result.idempotency_key,
            new_stock=result.new_stock,
            version=result.version,
            movement=result.movement,
            affected_batches=result.affected_batches,
            price_entry=result.price_entry,
            ingredient=result.ingredient,
            replayed=result.replayed,
            state=state,
        )


class ConsistencyRouter:
    """
    Dual-store read/write router.

    Contract:
        - ``write`` / ``audit_adjust`` / ``register_ingredient`` /
          ``update_ingredient`` / ``update_cost`` return a WriteResult once
          the primary committed.  The secondary is written by a background
          task.
        - ``read`` / ``list_ingredients`` never consult the ledger; they
          return what the chosen store holds.

    Non-goals:
        - Does NOT provide atomicity across the two stores.
        - Does NOT retry the secondary; the ReconciliationWorker does.
    """

    def __init__(
        self,
        primary: StoreAdapter,
        secondary: StoreAdapter,
        ledger: StockLedger | None = None,
        consistency_log: ConsistencyLog | None = None,
        flags: FeatureFlagSource | None = None,
        clock: Clock | None = None,
        timeout_seconds: float = 2.0,
        retry_delay_seconds: float = 1.0,
    ):
        self._primary = primary
        self._secondary = secondary
        self._ledger = ledger or StockLedger()
        self._log = consistency_log or InMemoryConsistencyLog()
        self._flags = flags or StaticFlagSource()
        self._clock = clock or SystemClock()
        self._timeout = timeout_seconds
        self._retry_delay = timedelta(seconds=retry_delay_seconds)
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._mirror_locks: dict[str, asyncio.Lock] = {}
        self._mirror_tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Collaborators (shared with the ReconciliationWorker)
    # -------------------------------------------------------------------------

    @property
    def primary(self) -> StoreAdapter:
        return self._primary

    @property
    def secondary(self) -> StoreAdapter:
        return self._secondary

    @property
    def ledger(self) -> StockLedger:
        return self._ledger

    @property
    def consistency_log(self) -> ConsistencyLog:
        return self._log

    @property
    def flags(self) -> FeatureFlagSource:
        return self._flags

    @property
    def clock(self) -> Clock:
        return self._clock

    def mirror_lock(self, ingredient_id: str) -> asyncio.Lock:
        """Serializes every write of one ingredient into the secondary."""
        return self._mirror_locks.setdefault(ingredient_id, asyncio.Lock())

    async def call_store(self, store: StoreAdapter, operation: str, call: Awaitable[T]) -> T:
        """Await a store call under the router's timeout.

        Raises:
            StoreUnavailableError: On timeout (other store errors propagate).
        """
        try:
            return await asyncio.wait_for(call, self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                store.name, operation, f"timed out after {self._timeout}s"
            ) from exc

    async def ensure_loaded(self, ingredient_id: str) -> bool:
        """Hydrate an ingredient into the ledger from the primary.

        Returns:
            False when the primary has no such ingredient.
        """
        async with self._write_lock(ingredient_id):
            return await self._hydrate(ingredient_id)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def write(self, movement: StockMovement) -> WriteResult:
        """Apply one stock movement."""
        return await self._execute(
            movement.ingredient_id,
            movement.idempotency_key,
            lambda: self._ledger.plan(movement),
            actor_id=movement.actor_id,
        )

    async def audit_adjust(
        self,
        ingredient_id: str,
        measured_quantity: Decimal,
        actor_id: str,
        idempotency_key: str,
        at: datetime | None = None,
        note: str | None = None,
    ) -> WriteResult:
        """Record a physical count; emits one audit-adjustment for the difference."""
        when = at or self._clock.now()

        def plan() -> LedgerResult:
            self._restore_count(ingredient_id, idempotency_key)
            return self._ledger.plan_audit(
                ingredient_id, measured_quantity, actor_id, idempotency_key, when, note=note
            )

        return await self._execute(ingredient_id, idempotency_key, plan, actor_id=actor_id)

    async def register_ingredient(self, ingredient: Ingredient) -> WriteResult:
        """Create an ingredient with an empty movement log.

        Registering identical attributes again is a replay, not an error.
        """
        return await self._execute(
            ingredient.id,
            None,
            lambda: self._ledger.plan_registration(ingredient),
        )

    async def update_ingredient(
        self,
        ingredient_id: str,
        changes: Mapping[str, object],
        idempotency_key: str,
        actor_id: str | None = None,
    ) -> WriteResult:
        """Edit name, category, allergens or the reorder point (minimum_stock).

        Stock, cost and batch tracking are not editable; a change to any of
        them is a ValidationError.
        """
        return await self._execute(
            ingredient_id,
            idempotency_key,
            lambda: self._ledger.plan_ingredient_update(ingredient_id, changes, idempotency_key),
            actor_id=actor_id,
        )

    async def update_cost(
        self,
        ingredient_id: str,
        price: Decimal,
        reason: str,
        idempotency_key: str,
        actor_id: str | None = None,
        at: datetime | None = None,
    ) -> WriteResult:
        """Manual last-cost edit; appends price history."""
        when = at or self._clock.now()
        return await self._execute(
            ingredient_id,
            idempotency_key,
            lambda: self._ledger.plan_price_change(
                ingredient_id, price, reason, when, idempotency_key
            ),
            actor_id=actor_id,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read(self, ingredient_id: str) -> Ingredient | None:
        """Read an ingredient from the preferred store, falling back on store errors.

        ``None`` from a store is authoritative and is returned as is.
        """
        with LogContext.bind(ingredient_id=ingredient_id):
            record = await self._read_with_fallback(
                "get", lambda store: store.get(Collection.INGREDIENTS, ingredient_id)
            )
        return ingredient_from_record(record) if record is not None else None

    async def list_ingredients(self, outlet_id: str) -> list[Ingredient]:
        """All ingredients of one outlet, by name."""
        records = await self._read_with_fallback(
            "query", lambda store: store.query(Collection.INGREDIENTS, outlet_id=outlet_id)
        )
        return sorted((ingredient_from_record(r) for r in records), key=lambda i: (i.name, i.id))

    async def inventory_status(
        self, ingredient_id: str, limit: int = RECENT_MOVEMENT_LIMIT
    ) -> InventoryStatus:
        """Current stock plus the most recent movements, from the ledger.

        Raises:
            IngredientNotFoundError: If the primary has no such ingredient.
        """
        if not await self.ensure_loaded(ingredient_id):
            raise IngredientNotFoundError(ingredient_id)
        return inventory_status(self._ledger.snapshot(ingredient_id), limit)

    async def expiring_batches(
        self,
        outlet_id: str,
        days_ahead: int,
        as_of: datetime | None = None,
    ) -> tuple[ExpiryCheckResult, ...]:
        """Batches with stock expiring within ``days_ahead``, grouped by ingredient."""
        states = await self._outlet_states(outlet_id)
        return expiring_batches(states, as_of or self._clock.now(), days_ahead)

    async def low_stock(self, outlet_id: str) -> tuple[Ingredient, ...]:
        """Ingredients of an outlet at or below their reorder point."""
        return low_stock(await self._outlet_states(outlet_id))

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def reconciliation_status(self, entity_id: str) -> ConsistencyRecord | None:
        return self._log.get(entity_id)

    def operation_status(self, idempotency_key: str) -> WriteOutcome | None:
        return self._log.get_outcome(idempotency_key)

    @property
    def mirrors_in_flight(self) -> int:
        return len(self._mirror_tasks)

    async def wait_for_mirrors(self) -> None:
        """Wait until every scheduled mirror task has finished."""
        while self._mirror_tasks:
            await asyncio.gather(*list(self._mirror_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_for_mirrors()
        logger.info("router_closed")

    # -------------------------------------------------------------------------
    # Internal: write path
    # -------------------------------------------------------------------------

    def _write_lock(self, ingredient_id: str) -> asyncio.Lock:
        return self._write_locks.setdefault(ingredient_id, asyncio.Lock())

    async def _execute(
        self,
        ingredient_id: str,
        idempotency_key: str | None,
        plan: Callable[[], LedgerResult],
        actor_id: str | None = None,
    ) -> WriteResult:
        flags = self._flags.current()
        outcome_key = idempotency_key or f"register:{ingredient_id}"

        with LogContext.bind(
            ingredient_id=ingredient_id,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
        ):
            async with self._write_lock(ingredient_id):
                try:
                    await self._hydrate(ingredient_id)
                except StoreError as exc:
                    raise PrimaryWriteFailedError(
                        ingredient_id, outcome_key, f"could not load ingredient: {exc}"
                    ) from exc

                planned = plan()
                if not planned.success:
                    logger.info(
                        "write_rejected",
                        extra={"error_code": planned.error.code, "error": str(planned.error)},
                    )
                    raise planned.error

                if not planned.has_effects:
                    return self._unchanged(planned, outcome_key)

                now = self._clock.now()
                self._track(
                    "advance_outcome",
                    lambda: self._log.advance_outcome(
                        outcome_key, ingredient_id, WriteState.PENDING, now
                    ),
                )
                try:
                    await self.call_store(
                        self._primary, "run_scoped", write_result(self._primary, planned)
                    )
                except (StoreError, ImmutabilityError) as exc:
                    self._track(
                        "advance_outcome",
                        lambda: self._log.advance_outcome(
                            outcome_key, ingredient_id, WriteState.PRIMARY_FAILED,
                            self._clock.now(), error=str(exc),
                        ),
                    )
                    logger.warning(
                        "primary_write_failed",
                        extra={"store": self._primary.name, "error": str(exc)},
                    )
                    raise PrimaryWriteFailedError(ingredient_id, outcome_key, str(exc)) from exc

                committed = self._ledger.commit(planned)
                if not committed.success:
                    raise committed.error

                self._track(
                    "record_primary_write",
                    lambda: self._log.record_primary_write(ingredient_id, committed.version, now),
                )
                self._track(
                    "advance_outcome",
                    lambda: self._log.advance_outcome(
                        outcome_key, ingredient_id, WriteState.PRIMARY_COMMITTED, now,
                        version=committed.version, new_stock=committed.new_stock,
                    ),
                )
                logger.info(
                    "primary_write_committed",
                    extra={
                        "store": self._primary.name,
                        "version": committed.version,
                        "new_stock": committed.new_stock,
                    },
                )

                if flags.dual_write_enabled:
                    self._schedule_mirror(committed, outcome_key)
                else:
                    logger.info("mirror_skipped_dual_write_disabled")

                return WriteResult.from_ledger(committed, WriteState.PRIMARY_COMMITTED)

    def _unchanged(self, planned: LedgerResult, outcome_key: str) -> WriteResult:
        """Answer a write that stores nothing: a replay or a keyed no-op."""
        if planned.replayed:
            logger.info("write_replayed", extra={"version": planned.version})
            outcome = self._track("get_outcome", lambda: self._log.get_outcome(outcome_key))
            return WriteResult.from_ledger(planned, outcome.state if outcome else None)

        self._ledger.commit(planned)
        self._track(
            "advance_outcome",
            lambda: self._log.advance_outcome(
                outcome_key, planned.ingredient_id, WriteState.UNCHANGED, self._clock.now(),
                version=planned.version, new_stock=planned.new_stock,
            ),
        )
        logger.info("write_unchanged", extra={"version": planned.version})
        return WriteResult.from_ledger(planned, WriteState.UNCHANGED)

    def _restore_count(self, ingredient_id: str, idempotency_key: str) -> None:
        """Re-admit a matched count the outcome log knows but the ledger has lost."""
        if self._ledger.result_for(idempotency_key) is not None:
            return
        outcome = self._track("get_outcome", lambda: self._log.get_outcome(idempotency_key))
        if (
            outcome is None
            or outcome.state is not WriteState.UNCHANGED
            or outcome.entity_id != ingredient_id
            or outcome.new_stock is None
        ):
            return
        self._ledger.remember_count(
            ingredient_id, outcome.new_stock, idempotency_key, outcome.version or 0
        )

    def _track(self, action: str, call: Callable[[], T]) -> T | None:
        """Run one consistency-log call.  A failing log is reported, not raised."""
        try:
            return call()
        except Exception as exc:
            logger.error(
                "consistency_log_failed",
                extra={"action": action, "error": str(exc)},
                exc_info=True,
            )
            return None

    async def _hydrate(self, ingredient_id: str) -> bool:
        """Replay an ingredient from the primary into the ledger.  Caller holds the write lock."""
        if self._ledger.is_loaded(ingredient_id):
            return True

        record = await self.call_store(
            self._primary, "get", self._primary.get(Collection.INGREDIENTS, ingredient_id)
        )
        if record is None:
            return False

        movements = await self.call_store(
            self._primary,
            "query",
            self._primary.query(Collection.MOVEMENTS, ingredient_id=ingredient_id),
        )
        prices = await self.call_store(
            self._primary,
            "query",
            self._primary.query(Collection.PRICE_HISTORY, ingredient_id=ingredient_id),
        )
        state = self._ledger.replay(
            ingredient_from_record(record),
            [movement_from_record(r) for r in movements],
            [price_from_record(r) for r in prices],
            version=record_version(record),
        )
        if record_version(record) != state.version:
            logger.warning(
                "primary_cache_version_mismatch",
                extra={"cached_version": record_version(record), "replayed_version": state.version},
            )
        logger.info(
            "ingredient_hydrated",
            extra={"version": state.version, "movements": len(state.movements)},
        )
        return True

    def _schedule_mirror(self, result: LedgerResult, outcome_key: str) -> None:
        task = asyncio.create_task(
            self._mirror(result, outcome_key), name=f"mirror:{outcome_key}"
        )
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)

    async def _mirror(self, result: LedgerResult, outcome_key: str) -> None:
        ingredient_id = result.ingredient_id
        async with self.mirror_lock(ingredient_id):
            record = self._track("get", lambda: self._log.get(ingredient_id))
            if record is not None and record.last_written_secondary_version >= result.version:
                # A full sync already carried this version.
                self._track(
                    "advance_outcome",
                    lambda: self._log.advance_outcome(
                        outcome_key, ingredient_id, WriteState.SECONDARY_COMMITTED,
                        self._clock.now(),
                    ),
                )
                return
            try:
                await self.call_store(
                    self._secondary, "run_scoped", write_result(self._secondary, result)
                )
            except Exception as exc:
                # Absorbed: the writer already has its result.
                now = self._clock.now()
                error = SecondaryWriteFailedError(ingredient_id, outcome_key, str(exc))
                logger.warning(
                    "secondary_write_failed",
                    extra={
                        "store": self._secondary.name,
                        "version": result.version,
                        "error": str(error),
                    },
                )
                self._track(
                    "record_secondary_failure",
                    lambda: self._log.record_secondary_failure(
                        ingredient_id, str(error), now, now + self._retry_delay
                    ),
                )
                self._track(
                    "advance_outcome",
                    lambda: self._log.advance_outcome(
                        outcome_key, ingredient_id, WriteState.SECONDARY_FAILED, now,
                        error=str(error),
                    ),
                )
                return

            now = self._clock.now()
            record = self._track(
                "record_secondary_success",
                lambda: self._log.record_secondary_success(ingredient_id, result.version, now),
            )
            self._track(
                "advance_outcome",
                lambda: self._log.advance_outcome(
                    outcome_key, ingredient_id, WriteState.SECONDARY_COMMITTED, now
                ),
            )
            logger.info(
                "secondary_write_committed",
                extra={
                    "store": self._secondary.name,
                    "version": result.version,
                    "pending_repair": record.pending_repair if record is not None else None,
                },
            )

    # -------------------------------------------------------------------------
    # Internal: read path
    # -------------------------------------------------------------------------

    async def _read_with_fallback(
        self,
        operation: str,
        call: Callable[[StoreAdapter], Awaitable[T]],
    ) -> T:
        flags = self._flags.current()
        if flags.read_preference is ReadPreference.SECONDARY:
            order = (self._secondary, self._primary)
        else:
            order = (self._primary, self._secondary)

        last_error: StoreError | None = None
        for store in order:
            try:
                return await self.call_store(store, operation, call(store))
            except StoreError as exc:
                last_error = exc
                logger.warning(
                    "read_fallback",
                    extra={"store": store.name, "operation": operation, "error": str(exc)},
                )
        raise last_error

    async def _outlet_states(self, outlet_id: str):
        records = await self.call_store(
            self._primary,
            "query",
            self._primary.query(Collection.INGREDIENTS, outlet_id=outlet_id),
        )
        states = []
        for record in records:
            if await self.ensure_loaded(record["id"]):
                states.append(self._ledger.snapshot(record["id"]))
        return states
