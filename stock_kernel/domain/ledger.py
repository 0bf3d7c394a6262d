"""
StockLedger -- append-only stock movements and their projections.

Responsibility:
    The single source of truth for the stock state of an ingredient.
    Quantity-on-hand, batch quantities and last cost are all folded from
    the ordered movement log (plus manual price edits); nothing else is
    authoritative.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O. The router decides
    when a planned result is committed (after the primary store accepted
    it); the ledger only validates, computes and installs snapshots.

Invariants enforced:
    - current_stock == sum(delta) over the ingredient's movements.
    - sum(batch.current_quantity) == current_stock for batch-tracked
      ingredients; batches stay within [0, initial_quantity].
    - Applied movements are never altered; corrections are new movements.
    - An idempotency key is applied at most once. Replaying it returns the
      prior result; reusing it for a different request is a ValidationError.
      A count that matched the projection is remembered under its key too.
    - A rejected movement has no side effect.
    - Profile edits never touch derived fields (stock, cost) or batch
      tracking; they bump the version like any other operation.

Failure modes:
    All rejections are returned as ``LedgerResult.fail(error)`` carrying a
    ``LedgerError`` subclass:
    - ValidationError -- malformed movement, sign/reason mismatch, reused key.
    - InsufficientStockError -- decrement below zero without backorder.
    - IngredientNotFoundError / BatchNotFoundError.

Concurrency:
    Each commit swaps in a new frozen ``IngredientState``; readers take one
    reference and never observe a partially applied movement. Admission of
    writes (one in flight per ingredient) is the caller's job.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal

from stock_kernel.domain.fefo import apply_allocations, available_quantity, select_batches
from stock_kernel.domain.inventory import (
    QUANTITY_PLACES,
    ZERO,
    Batch,
    BatchAllocation,
    Ingredient,
    MovementReason,
    PriceHistoryEntry,
    StockMovement,
    weighted_unit_cost,
)
from stock_kernel.exceptions import (
    BatchNotFoundError,
    IngredientNotFoundError,
    InsufficientStockError,
    LedgerError,
    ValidationError,
)
from stock_kernel.logging_config import get_logger

logger = get_logger("domain.ledger")

# Version of an ingredient the ledger has never seen; registration is version 1.
_ABSENT = 0

# Ingredient fields a profile edit may change.
EDITABLE_FIELDS = frozenset({"name", "category", "allergens", "minimum_stock"})


@dataclass(frozen=True, slots=True)
class IngredientState:
    """Immutable snapshot of everything the ledger knows about one ingredient.

    ``version`` counts committed operations, registration included, so a
    registered ingredient with no movements is at version 1.
    """

    ingredient: Ingredient
    movements: tuple[StockMovement, ...] = ()
    batches: tuple[Batch, ...] = ()
    price_history: tuple[PriceHistoryEntry, ...] = ()
    version: int = 0

    @property
    def manual_price_changes(self) -> tuple[PriceHistoryEntry, ...]:
        return tuple(p for p in self.price_history if p.is_manual)


@dataclass(frozen=True)
class LedgerResult:
    """
    Outcome of planning or applying a ledger operation.

    Attributes:
        success: Whether the operation was accepted.
        ingredient_id: Ingredient the operation targeted.
        idempotency_key: Caller key for the logical operation.
        new_stock: Quantity-on-hand after the operation.
        affected_batches: Batches created or decremented (post-state).
        allocations: Per-batch quantities the movement touched.
        movement: The movement as appended (sequence and cost filled).
        price_entry: Price history entry appended, if last cost changed.
        ingredient: Ingredient cache after the operation.
        version: Ingredient version after the operation.
        replayed: True when the key had already been applied.
        error: The rejection, when success is False.
    """

    success: bool
    ingredient_id: str
    idempotency_key: str | None = None
    new_stock: Decimal | None = None
    affected_batches: tuple[Batch, ...] = ()
    allocations: tuple[BatchAllocation, ...] = ()
    movement: StockMovement | None = None
    price_entry: PriceHistoryEntry | None = None
    ingredient: Ingredient | None = None
    version: int = 0
    replayed: bool = False
    error: LedgerError | None = None
    fingerprint: tuple | None = field(default=None, repr=False, compare=False)
    base_version: int = field(default=_ABSENT, repr=False, compare=False)
    next_state: IngredientState | None = field(default=None, repr=False, compare=False)

    @classmethod
    def fail(
        cls,
        ingredient_id: str,
        error: LedgerError,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        """Rejected operation. Carries no effects."""
        return cls(
            success=False,
            ingredient_id=ingredient_id,
            idempotency_key=idempotency_key,
            error=error,
        )

    @property
    def has_effects(self) -> bool:
        """True when committing this result would change ledger state."""
        return self.success and self.next_state is not None


class StockLedger:
    """
    Folds stock movements into per-ingredient state.

    Contract:
        ``plan_*`` methods validate and compute the post-state without
        mutating anything. ``commit`` installs a planned result. ``apply``,
        ``register``, ``record_price``, ``update_ingredient`` and
        ``reconcile_audit`` are plan-then-commit conveniences for callers
        with no store to write.

    Non-goals:
        - Does NOT persist anything.
        - Does NOT serialize writers; callers admit one write per ingredient.
    """

    def __init__(self, default_shelf_life_days: int = 365):
        self._states: dict[str, IngredientState] = {}
        self._applied: dict[str, LedgerResult] = {}
        self._default_shelf_life = timedelta(days=default_shelf_life_days)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_loaded(self, ingredient_id: str) -> bool:
        return ingredient_id in self._states

    def known_ingredients(self) -> tuple[str, ...]:
        return tuple(self._states)

    def snapshot(self, ingredient_id: str) -> IngredientState | None:
        return self._states.get(ingredient_id)

    def get_ingredient(self, ingredient_id: str) -> Ingredient | None:
        state = self._states.get(ingredient_id)
        return state.ingredient if state else None

    def get_batches(self, ingredient_id: str) -> tuple[Batch, ...]:
        state = self._states.get(ingredient_id)
        return state.batches if state else ()

    def get_movements(self, ingredient_id: str) -> tuple[StockMovement, ...]:
        state = self._states.get(ingredient_id)
        return state.movements if state else ()

    def get_price_history(self, ingredient_id: str) -> tuple[PriceHistoryEntry, ...]:
        state = self._states.get(ingredient_id)
        return state.price_history if state else ()

    def result_for(self, idempotency_key: str) -> LedgerResult | None:
        """Prior result for an applied idempotency key, if any."""
        return self._applied.get(idempotency_key)

    def project_stock(
        self,
        ingredient_id: str,
        as_of: datetime | None = None,
    ) -> Decimal:
        """Replay movement deltas, optionally only those at or before ``as_of``.

        Reads one immutable snapshot, so it is safe alongside commits.

        Raises:
            IngredientNotFoundError: If the ingredient is not loaded.
        """
        state = self._states.get(ingredient_id)
        if state is None:
            raise IngredientNotFoundError(ingredient_id)
        return sum(
            (m.delta for m in state.movements if as_of is None or m.timestamp <= as_of),
            ZERO,
        )

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def plan_registration(self, ingredient: Ingredient) -> LedgerResult:
        """Plan adding an ingredient with an empty movement log."""
        existing = self._states.get(ingredient.id)
        if existing is not None:
            if _profile(existing.ingredient) == _profile(ingredient):
                return LedgerResult(
                    success=True,
                    ingredient_id=ingredient.id,
                    new_stock=existing.ingredient.current_stock,
                    ingredient=existing.ingredient,
                    version=existing.version,
                    replayed=True,
                )
            return LedgerResult.fail(
                ingredient.id,
                ValidationError(
                    f"Ingredient {ingredient.id} is already registered with different attributes",
                    field="id",
                ),
            )
        if ingredient.current_stock != 0:
            return LedgerResult.fail(
                ingredient.id,
                ValidationError(
                    "current_stock is derived from movements; register with zero "
                    "stock and record a receipt",
                    field="current_stock",
                ),
            )
        if ingredient.last_cost is not None:
            return LedgerResult.fail(
                ingredient.id,
                ValidationError(
                    "last_cost is derived from receipts and price changes; register "
                    "without it and record a price change",
                    field="last_cost",
                ),
            )
        if ingredient.minimum_stock < 0:
            return LedgerResult.fail(
                ingredient.id,
                ValidationError("minimum_stock cannot be negative", field="minimum_stock"),
            )
        return LedgerResult(
            success=True,
            ingredient_id=ingredient.id,
            new_stock=ZERO,
            ingredient=ingredient,
            version=1,
            base_version=_ABSENT,
            next_state=IngredientState(ingredient=ingredient, version=1),
        )

    def register(self, ingredient: Ingredient) -> LedgerResult:
        return self.commit(self.plan_registration(ingredient))

    # -------------------------------------------------------------------------
    # Movements
    # -------------------------------------------------------------------------

    def plan(self, movement: StockMovement) -> LedgerResult:
        """Validate a movement and compute its effects without applying them."""
        key = movement.idempotency_key
        prior = self._applied.get(key) if key else None
        if prior is not None:
            return self._replay_result(prior, movement.request_fingerprint())

        state = self._states.get(movement.ingredient_id)
        if state is None:
            return LedgerResult.fail(
                movement.ingredient_id,
                IngredientNotFoundError(movement.ingredient_id),
                key,
            )

        error = self._validate(movement, state)
        if error is not None:
            return LedgerResult.fail(movement.ingredient_id, error, key)

        if movement.is_increase:
            return self._plan_increase(movement, state)
        return self._plan_decrease(movement, state)

    def apply(self, movement: StockMovement) -> LedgerResult:
        """Plan and commit a movement in one step."""
        return self.commit(self.plan(movement))

    def commit(self, result: LedgerResult) -> LedgerResult:
        """Install a planned result.

        Failed and replayed results are returned unchanged. A keyed no-op
        (a count that matched the projection, an edit that changes nothing)
        is remembered under its key but changes no state. A plan made
        against an older version of the ingredient is rejected rather than
        installed over newer state.
        """
        if not result.has_effects:
            if result.success and not result.replayed and result.idempotency_key:
                self._applied.setdefault(result.idempotency_key, result)
            return result

        current = self._states.get(result.ingredient_id)
        current_version = current.version if current is not None else _ABSENT
        if current_version != result.base_version:
            logger.warning(
                "ledger_stale_plan_rejected",
                extra={
                    "ingredient_id": result.ingredient_id,
                    "planned_against": result.base_version,
                    "current_version": current_version,
                },
            )
            return LedgerResult.fail(
                result.ingredient_id,
                ValidationError(
                    f"Plan for {result.ingredient_id} is stale "
                    f"(planned at v{result.base_version}, now v{current_version})"
                ),
                result.idempotency_key,
            )

        self._states[result.ingredient_id] = result.next_state
        committed = replace(result, next_state=None)
        if committed.idempotency_key:
            self._applied[committed.idempotency_key] = committed

        logger.debug(
            "ledger_committed",
            extra={
                "ingredient_id": committed.ingredient_id,
                "idempotency_key": committed.idempotency_key,
                "version": committed.version,
                "new_stock": committed.new_stock,
            },
        )
        return committed

    # -------------------------------------------------------------------------
    # Audit adjustments
    # -------------------------------------------------------------------------

    def plan_audit(
        self,
        ingredient_id: str,
        measured_quantity: Decimal,
        actor_id: str,
        idempotency_key: str,
        at: datetime,
        movement_id: str | None = None,
        note: str | None = None,
    ) -> LedgerResult:
        """Plan the single audit-adjustment movement that sets stock to a count.

        A count equal to the projection yields a successful result with no
        movement, which ``commit`` still records under the key.  A key
        already used for a different count or ingredient is rejected.
        """
        prior = self._applied.get(idempotency_key)
        if prior is not None:
            if _answers_count(prior, ingredient_id, measured_quantity):
                return self._replay_result(prior, prior.fingerprint)
            return _key_reused(ingredient_id, idempotency_key)

        state = self._states.get(ingredient_id)
        if state is None:
            return LedgerResult.fail(
                ingredient_id, IngredientNotFoundError(ingredient_id), idempotency_key
            )
        if not isinstance(measured_quantity, Decimal) or measured_quantity < 0:
            return LedgerResult.fail(
                ingredient_id,
                ValidationError(
                    f"Measured quantity must be a non-negative Decimal, got {measured_quantity!r}",
                    field="measured_quantity",
                ),
                idempotency_key,
            )

        delta = measured_quantity - self.project_stock(ingredient_id)
        if delta == 0:
            return LedgerResult(
                success=True,
                ingredient_id=ingredient_id,
                idempotency_key=idempotency_key,
                new_stock=state.ingredient.current_stock,
                ingredient=state.ingredient,
                version=state.version,
                fingerprint=_count_fingerprint(ingredient_id, measured_quantity),
                base_version=state.version,
            )

        movement = StockMovement(
            id=movement_id or f"audit:{idempotency_key}",
            ingredient_id=ingredient_id,
            outlet_id=state.ingredient.outlet_id,
            delta=delta,
            reason=MovementReason.AUDIT_ADJUSTMENT,
            timestamp=at,
            actor_id=actor_id,
            idempotency_key=idempotency_key,
            note=note or f"Audit count {measured_quantity}, expected {measured_quantity - delta}",
        )
        return self.plan(movement)

    def reconcile_audit(
        self,
        ingredient_id: str,
        measured_quantity: Decimal,
        actor_id: str,
        idempotency_key: str,
        at: datetime,
    ) -> LedgerResult:
        """Emit and apply the audit-adjustment for a physical count."""
        return self.commit(
            self.plan_audit(ingredient_id, measured_quantity, actor_id, idempotency_key, at)
        )

    def remember_count(
        self,
        ingredient_id: str,
        measured_quantity: Decimal,
        idempotency_key: str,
        version: int,
    ) -> None:
        """Re-admit a count that matched the projection when it was taken.

        Such counts leave nothing in the movement log, so after a replay the
        caller restores them from wherever it recorded them.
        """
        if idempotency_key in self._applied:
            return
        self._applied[idempotency_key] = LedgerResult(
            success=True,
            ingredient_id=ingredient_id,
            idempotency_key=idempotency_key,
            new_stock=measured_quantity,
            ingredient=self.get_ingredient(ingredient_id),
            version=version,
            fingerprint=_count_fingerprint(ingredient_id, measured_quantity),
        )

    # -------------------------------------------------------------------------
    # Manual price edits
    # -------------------------------------------------------------------------

    def plan_price_change(
        self,
        ingredient_id: str,
        price: Decimal,
        reason: str,
        at: datetime,
        idempotency_key: str,
    ) -> LedgerResult:
        """Plan a manual last-cost edit and its price history entry."""
        fingerprint = (ingredient_id, "price", price, reason)
        prior = self._applied.get(idempotency_key)
        if prior is not None:
            return self._replay_result(prior, fingerprint)

        state = self._states.get(ingredient_id)
        if state is None:
            return LedgerResult.fail(
                ingredient_id, IngredientNotFoundError(ingredient_id), idempotency_key
            )
        error = _check_amount(price, "price", allow_zero=True)
        if error is not None:
            return LedgerResult.fail(ingredient_id, error, idempotency_key)

        version = state.version + 1
        entry = PriceHistoryEntry(
            ingredient_id=ingredient_id,
            recorded_at=at,
            price=price,
            reason=reason,
            idempotency_key=idempotency_key,
            sequence=version,
        )
        ingredient = replace(state.ingredient, last_cost=price)
        return LedgerResult(
            success=True,
            ingredient_id=ingredient_id,
            idempotency_key=idempotency_key,
            new_stock=ingredient.current_stock,
            price_entry=entry,
            ingredient=ingredient,
            version=version,
            fingerprint=fingerprint,
            base_version=state.version,
            next_state=replace(
                state,
                ingredient=ingredient,
                price_history=state.price_history + (entry,),
                version=version,
            ),
        )

    def record_price(
        self,
        ingredient_id: str,
        price: Decimal,
        reason: str,
        at: datetime,
        idempotency_key: str,
    ) -> LedgerResult:
        return self.commit(
            self.plan_price_change(ingredient_id, price, reason, at, idempotency_key)
        )

    # -------------------------------------------------------------------------
    # Profile edits
    # -------------------------------------------------------------------------

    def plan_ingredient_update(
        self,
        ingredient_id: str,
        changes: Mapping[str, object],
        idempotency_key: str,
    ) -> LedgerResult:
        """Plan an edit of the ingredient's descriptive fields.

        Only ``EDITABLE_FIELDS`` may change.  Edits are not replayed one by
        one: the stored ingredient record carries the latest profile, and
        the versions they used show up as gaps in the movement sequence.
        An edit that changes nothing succeeds without a new version.
        """
        prior = self._applied.get(idempotency_key)
        if prior is not None:
            return self._replay_result(prior, _update_fingerprint(ingredient_id, changes))

        state = self._states.get(ingredient_id)
        if state is None:
            return LedgerResult.fail(
                ingredient_id, IngredientNotFoundError(ingredient_id), idempotency_key
            )
        error = _check_changes(changes)
        if error is not None:
            return LedgerResult.fail(ingredient_id, error, idempotency_key)

        values = dict(changes)
        if "allergens" in values:
            values["allergens"] = tuple(values["allergens"])
        ingredient = replace(state.ingredient, **values)
        fingerprint = _update_fingerprint(ingredient_id, changes)
        if ingredient == state.ingredient:
            return LedgerResult(
                success=True,
                ingredient_id=ingredient_id,
                idempotency_key=idempotency_key,
                new_stock=ingredient.current_stock,
                ingredient=ingredient,
                version=state.version,
                fingerprint=fingerprint,
                base_version=state.version,
            )

        version = state.version + 1
        return LedgerResult(
            success=True,
            ingredient_id=ingredient_id,
            idempotency_key=idempotency_key,
            new_stock=ingredient.current_stock,
            ingredient=ingredient,
            version=version,
            fingerprint=fingerprint,
            base_version=state.version,
            next_state=replace(state, ingredient=ingredient, version=version),
        )

    def update_ingredient(
        self,
        ingredient_id: str,
        changes: Mapping[str, object],
        idempotency_key: str,
    ) -> LedgerResult:
        return self.commit(self.plan_ingredient_update(ingredient_id, changes, idempotency_key))

    # -------------------------------------------------------------------------
    # Replay / rebuild
    # -------------------------------------------------------------------------

    def replay(
        self,
        ingredient: Ingredient,
        movements: Iterable[StockMovement],
        price_history: Iterable[PriceHistoryEntry] = (),
        version: int | None = None,
    ) -> IngredientState:
        """Rebuild an ingredient's state from its persisted log.

        Movements and manual price edits are re-applied in sequence order.
        Cached fields on ``ingredient`` (current_stock, last_cost) are ignored;
        its profile is taken as is.  Sequence gaps belong to profile edits
        and are skipped over, and ``version`` (the stored record's version)
        covers edits made after the last logged operation.

        Raises:
            ValidationError: If the persisted log does not replay cleanly.
        """
        self._forget(ingredient.id)
        registered = self.register(replace(ingredient, current_stock=ZERO, last_cost=None))
        if not registered.success:
            raise ValidationError(f"Cannot replay {ingredient.id}: {registered.error}")

        ops: list[tuple[int, StockMovement | PriceHistoryEntry]] = [
            (m.sequence, m) for m in movements
        ]
        ops.extend((p.sequence, p) for p in price_history if p.is_manual)
        ops.sort(key=lambda op: op[0])

        for sequence, op in ops:
            self._skip_to(ingredient.id, sequence - 1)
            if isinstance(op, StockMovement):
                result = self.apply(replace(op, sequence=0))
            else:
                result = self.record_price(
                    op.ingredient_id, op.price, op.reason, op.recorded_at, op.idempotency_key
                )
            if not result.success:
                logger.error(
                    "ledger_replay_failed",
                    extra={"ingredient_id": ingredient.id, "error": str(result.error)},
                )
                raise ValidationError(
                    f"Replay of {ingredient.id} failed: {result.error}"
                )
        if version is not None:
            self._skip_to(ingredient.id, version)

        state = self._states[ingredient.id]
        logger.info(
            "ledger_replayed",
            extra={
                "ingredient_id": ingredient.id,
                "movements": len(state.movements),
                "version": state.version,
                "current_stock": state.ingredient.current_stock,
            },
        )
        return state

    def rebuild(self, ingredient_id: str) -> IngredientState:
        """Recompute an ingredient's state from its movements on a fresh ledger.

        Raises:
            IngredientNotFoundError: If the ingredient is not loaded.
        """
        state = self._states.get(ingredient_id)
        if state is None:
            raise IngredientNotFoundError(ingredient_id)
        fresh = StockLedger(self._default_shelf_life.days)
        return fresh.replay(
            state.ingredient, state.movements, state.manual_price_changes, state.version
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _forget(self, ingredient_id: str) -> None:
        state = self._states.pop(ingredient_id, None)
        if state is None:
            return
        for key in [k for k, r in self._applied.items() if r.ingredient_id == ingredient_id]:
            del self._applied[key]

    def _skip_to(self, ingredient_id: str, version: int) -> None:
        """Advance a replaying ingredient over versions used by profile edits."""
        state = self._states[ingredient_id]
        if version > state.version:
            self._states[ingredient_id] = replace(state, version=version)

    def _replay_result(self, prior: LedgerResult, fingerprint: tuple | None) -> LedgerResult:
        if prior.fingerprint is not None and prior.fingerprint != fingerprint:
            requested = fingerprint[0] if fingerprint else prior.ingredient_id
            return _key_reused(requested, prior.idempotency_key)
        logger.info(
            "ledger_idempotent_replay",
            extra={
                "ingredient_id": prior.ingredient_id,
                "idempotency_key": prior.idempotency_key,
            },
        )
        return replace(prior, replayed=True)

    def _validate(self, movement: StockMovement, state: IngredientState) -> LedgerError | None:
        if not movement.id:
            return ValidationError("Movement id is required", field="id")
        if not movement.idempotency_key:
            return ValidationError("idempotency_key is required", field="idempotency_key")
        if not movement.actor_id:
            return ValidationError("actor_id is required", field="actor_id")
        if not isinstance(movement.reason, MovementReason):
            return ValidationError(f"Unknown reason {movement.reason!r}", field="reason")
        if movement.outlet_id != state.ingredient.outlet_id:
            return ValidationError(
                f"Ingredient {state.ingredient.id} belongs to outlet "
                f"{state.ingredient.outlet_id}, not {movement.outlet_id}",
                field="outlet_id",
            )
        if movement.timestamp.tzinfo is None:
            return ValidationError("timestamp must be timezone-aware", field="timestamp")

        error = _check_amount(movement.delta, "delta", allow_zero=False, allow_negative=True)
        if error is not None:
            return error
        sign = movement.reason.required_sign
        if sign and (movement.delta > 0) != (sign > 0):
            return ValidationError(
                f"{movement.reason.value} movements must have "
                f"{'positive' if sign > 0 else 'negative'} delta",
                field="delta",
            )
        if movement.unit_cost_at_time is not None:
            error = _check_amount(movement.unit_cost_at_time, "unit_cost_at_time", allow_zero=True)
            if error is not None:
                return error
        if any(m.id == movement.id for m in state.movements):
            return ValidationError(
                f"Movement {movement.id} is already in the ledger", field="id"
            )
        if movement.batch_id is not None and not state.ingredient.tracks_batches:
            return ValidationError(
                f"Ingredient {state.ingredient.id} does not track batches",
                field="batch_id",
            )
        return None

    def _plan_increase(self, movement: StockMovement, state: IngredientState) -> LedgerResult:
        ingredient = state.ingredient
        allocations: tuple[BatchAllocation, ...] = ()
        touched: tuple[Batch, ...] = ()
        batches = state.batches

        if ingredient.tracks_batches:
            is_receipt = movement.reason is MovementReason.RECEIPT
            unit_cost = movement.unit_cost_at_time
            if unit_cost is None:
                if is_receipt:
                    return LedgerResult.fail(
                        ingredient.id,
                        ValidationError("Receipts require unit_cost_at_time", field="unit_cost_at_time"),
                        movement.idempotency_key,
                    )
                unit_cost = ingredient.last_cost if ingredient.last_cost is not None else ZERO

            expires_at = movement.expires_at
            if expires_at is None:
                if is_receipt:
                    return LedgerResult.fail(
                        ingredient.id,
                        ValidationError("Receipts require expires_at", field="expires_at"),
                        movement.idempotency_key,
                    )
                expires_at = movement.timestamp + self._default_shelf_life
            if expires_at < movement.timestamp:
                return LedgerResult.fail(
                    ingredient.id,
                    ValidationError("Batch cannot expire before it is received", field="expires_at"),
                    movement.idempotency_key,
                )

            batch_id = movement.batch_id or movement.id
            if any(b.id == batch_id for b in batches):
                return LedgerResult.fail(
                    ingredient.id,
                    ValidationError(f"Batch {batch_id} already exists", field="batch_id"),
                    movement.idempotency_key,
                )
            batch = Batch(
                id=batch_id,
                ingredient_id=ingredient.id,
                initial_quantity=movement.delta,
                current_quantity=movement.delta,
                unit_cost=unit_cost,
                received_at=movement.timestamp,
                expires_at=expires_at,
            )
            allocations = (BatchAllocation(batch_id, movement.delta, unit_cost),)
            touched = (batch,)
            batches = batches + (batch,)
            # Keep the resolved expiry on the fact so replay does not depend on settings.
            movement = replace(movement, expires_at=expires_at)

        return self._finish(movement, state, allocations, touched, batches)

    def _plan_decrease(self, movement: StockMovement, state: IngredientState) -> LedgerResult:
        ingredient = state.ingredient
        quantity = -movement.delta
        allocations: tuple[BatchAllocation, ...] = ()
        touched: tuple[Batch, ...] = ()
        batches = state.batches

        if ingredient.tracks_batches:
            # Batches cannot go negative, so tracked ingredients never backorder.
            if movement.batch_id is not None:
                target = next((b for b in batches if b.id == movement.batch_id), None)
                if target is None:
                    return LedgerResult.fail(
                        ingredient.id,
                        BatchNotFoundError(ingredient.id, movement.batch_id),
                        movement.idempotency_key,
                    )
                available = target.current_quantity
            else:
                available = available_quantity(batches)

            selected = select_batches(batches, quantity, movement.batch_id)
            if selected is None:
                return self._insufficient(movement, quantity, available)
            allocations = selected
            batches, touched = apply_allocations(batches, allocations)
        elif ingredient.current_stock - quantity < 0 and not ingredient.allow_backorder:
            return self._insufficient(movement, quantity, ingredient.current_stock)

        return self._finish(movement, state, allocations, touched, batches)

    def _insufficient(
        self, movement: StockMovement, requested: Decimal, available: Decimal
    ) -> LedgerResult:
        logger.info(
            "ledger_insufficient_stock",
            extra={
                "ingredient_id": movement.ingredient_id,
                "idempotency_key": movement.idempotency_key,
                "requested": requested,
                "available": available,
            },
        )
        return LedgerResult.fail(
            movement.ingredient_id,
            InsufficientStockError(movement.ingredient_id, requested, available),
            movement.idempotency_key,
        )

    def _finish(
        self,
        movement: StockMovement,
        state: IngredientState,
        allocations: tuple[BatchAllocation, ...],
        touched: tuple[Batch, ...],
        batches: tuple[Batch, ...],
    ) -> LedgerResult:
        ingredient = state.ingredient
        version = state.version + 1

        touched_cost = weighted_unit_cost(allocations)
        applied_cost = (
            movement.unit_cost_at_time
            if movement.unit_cost_at_time is not None
            else touched_cost
        )
        if touched_cost is not None:
            last_cost = touched_cost
        elif movement.unit_cost_at_time is not None:
            last_cost = movement.unit_cost_at_time
        else:
            last_cost = ingredient.last_cost

        appended = replace(movement, unit_cost_at_time=applied_cost, sequence=version)
        new_ingredient = replace(
            ingredient,
            current_stock=ingredient.current_stock + movement.delta,
            last_cost=last_cost,
        )

        price_entry = None
        price_history = state.price_history
        if last_cost is not None and last_cost != ingredient.last_cost:
            price_entry = PriceHistoryEntry(
                ingredient_id=ingredient.id,
                recorded_at=movement.timestamp,
                price=last_cost,
                reason=movement.reason.value,
                idempotency_key=movement.idempotency_key,
                sequence=version,
                movement_id=movement.id,
            )
            price_history = price_history + (price_entry,)

        return LedgerResult(
            success=True,
            ingredient_id=ingredient.id,
            idempotency_key=movement.idempotency_key,
            new_stock=new_ingredient.current_stock,
            affected_batches=touched,
            allocations=allocations,
            movement=appended,
            price_entry=price_entry,
            ingredient=new_ingredient,
            version=version,
            fingerprint=movement.request_fingerprint(),
            base_version=state.version,
            next_state=IngredientState(
                ingredient=new_ingredient,
                movements=state.movements + (appended,),
                batches=batches,
                price_history=price_history,
                version=version,
            ),
        )


def _profile(ingredient: Ingredient) -> Ingredient:
    """An ingredient without its derived fields, for registration comparison."""
    return replace(ingredient, current_stock=ZERO, last_cost=None)


def _key_reused(ingredient_id: str, idempotency_key: str | None) -> LedgerResult:
    return LedgerResult.fail(
        ingredient_id,
        ValidationError(
            f"Idempotency key {idempotency_key} was already used for a different request",
            field="idempotency_key",
        ),
        idempotency_key,
    )


def _count_fingerprint(ingredient_id: str, measured_quantity: Decimal) -> tuple:
    return (ingredient_id, MovementReason.AUDIT_ADJUSTMENT, measured_quantity)


def _answers_count(prior: LedgerResult, ingredient_id: str, measured_quantity: Decimal) -> bool:
    """Whether a prior result is the outcome of this physical count.

    Every audit leaves stock at the measured quantity, so a movement-backed
    audit restored by replay is recognised by its reason and resulting stock.
    """
    if prior.ingredient_id != ingredient_id or prior.new_stock != measured_quantity:
        return False
    if prior.movement is not None:
        return prior.movement.reason is MovementReason.AUDIT_ADJUSTMENT
    return prior.fingerprint == _count_fingerprint(ingredient_id, measured_quantity)


def _update_fingerprint(ingredient_id: str, changes: Mapping[str, object]) -> tuple:
    items = []
    for name in sorted(changes):
        value = changes[name]
        if name == "allergens" and not isinstance(value, str):
            value = tuple(value)
        items.append((name, value))
    return (ingredient_id, "update", tuple(items))


def _check_changes(changes: Mapping[str, object]) -> ValidationError | None:
    if not changes:
        return ValidationError("No changes given")
    for name, value in changes.items():
        if name not in EDITABLE_FIELDS:
            return ValidationError(f"{name} cannot be edited", field=name)
        if name == "name" and (not isinstance(value, str) or not value.strip()):
            return ValidationError("name must be a non-empty string", field=name)
        if name == "category" and not isinstance(value, str):
            return ValidationError("category must be a string", field=name)
        if name == "allergens" and (
            isinstance(value, str)
            or not isinstance(value, Iterable)
            or not all(isinstance(a, str) for a in value)
        ):
            return ValidationError("allergens must be a collection of strings", field=name)
        if name == "minimum_stock":
            error = _check_amount(value, name, allow_zero=True)
            if error is not None:
                return error
    return None


def _check_amount(
    value: object,
    field_name: str,
    *,
    allow_zero: bool,
    allow_negative: bool = False,
) -> ValidationError | None:
    if not isinstance(value, Decimal) or not value.is_finite():
        return ValidationError(f"{field_name} must be a finite Decimal, got {value!r}", field=field_name)
    if value == 0 and not allow_zero:
        return ValidationError(f"{field_name} cannot be zero", field=field_name)
    if value < 0 and not allow_negative:
        return ValidationError(f"{field_name} cannot be negative", field=field_name)
    exponent = value.as_tuple().exponent
    if isinstance(exponent, int) and exponent < -QUANTITY_PLACES:
        return ValidationError(
            f"{field_name} has more than {QUANTITY_PLACES} decimal places",
            field=field_name,
        )
    return None
