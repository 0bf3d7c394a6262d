"""
ReconciliationWorker -- drains the repair backlog into the secondary store.

Contract:
    Polls the ConsistencyRecord log on a fixed interval.  For each due
    entity it brings the secondary up to the ledger snapshot (same
    idempotency keys and sequences, so repeated repairs are no-ops), then
    verifies the secondary against ``project_stock`` before marking the
    entity reconciled.

Invariants enforced:
    - All timestamps come from the injected Clock.
    - The ledger wins: secondary caches are overwritten, never merged.
    - Graceful shutdown: the stop signal is honoured between entities and
      an entity repair already under way is shielded from cancellation.
    - After ``max_attempts`` failed repairs the entity is escalated to the
      alert sink and left out of the backlog until ``requeue``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from stock_config.schema import ReconciliationSettings
from stock_kernel.exceptions import (
    ImmutabilityError,
    ReconciliationExhaustedError,
    StoreError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_services.alerts import AlertSink, LoggingAlertSink
from stock_services.consistency_records import ConsistencyRecord
from stock_services.consistency_router import ConsistencyRouter
from stock_services.mirror import DriftReport, compare_snapshot, write_snapshot

logger = get_logger("services.reconciliation_worker")


class RepairOutcome(str, Enum):
    RECONCILED = "reconciled"
    FAILED = "failed"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class ReconciliationReport:
    """Summary of one ``tick``."""

    examined: int = 0
    reconciled: int = 0
    failed: int = 0
    escalated: int = 0
    paused: bool = False


class ReconciliationWorker:
    """In-process polling worker for the secondary repair backlog.

    Contract:
        - ``tick()`` repairs every due entity once.
        - ``start()`` / ``stop()`` run ticks on the configured interval.
        - ``detect_drift()`` flags entities whose secondary disagrees with
          the ledger; the next tick repairs them.

    Non-goals:
        - NOT a distributed worker (no leader election).
        - Does NOT touch the primary; the ledger was built from it.
    """

    def __init__(
        self,
        router: ConsistencyRouter,
        settings: ReconciliationSettings | None = None,
        alert_sink: AlertSink | None = None,
    ):
        self._router = router
        self._settings = settings or ReconciliationSettings()
        self._alerts = alert_sink or LoggingAlertSink()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def tick(self) -> ReconciliationReport:
        """Repair every entity in the backlog that is due now (public for testing)."""
        if not self._router.flags.current().dual_write_enabled:
            logger.info("reconciliation_paused_dual_write_disabled")
            return ReconciliationReport(paused=True)

        log = self._router.consistency_log
        backlog = log.backlog(
            self._router.clock.now(),
            timedelta(seconds=self._settings.stale_after_seconds),
            limit=self._settings.batch_size,
        )

        counts = {outcome: 0 for outcome in RepairOutcome}
        examined = 0
        for record in backlog:
            if self._stop_event.is_set():
                break
            examined += 1
            try:
                outcome = await asyncio.shield(self._repair(record))
            except Exception:
                logger.exception(
                    "reconciliation_entity_failed", extra={"entity_id": record.entity_id}
                )
                outcome = RepairOutcome.FAILED
            counts[outcome] += 1

        report = ReconciliationReport(
            examined=examined,
            reconciled=counts[RepairOutcome.RECONCILED],
            failed=counts[RepairOutcome.FAILED],
            escalated=counts[RepairOutcome.ESCALATED],
        )
        if examined:
            logger.info(
                "reconciliation_tick_completed",
                extra={
                    "examined": report.examined,
                    "reconciled": report.reconciled,
                    "failed": report.failed,
                    "escalated": report.escalated,
                },
            )
        return report

    async def detect_drift(self, entity_ids: Iterable[str] | None = None) -> list[DriftReport]:
        """Compare the secondary with the ledger and flag mismatches for repair.

        Defaults to every entity in the consistency log.  Entities whose
        secondary cannot be read are skipped (and logged), not flagged.
        """
        if entity_ids is None:
            entity_ids = [r.entity_id for r in self._router.consistency_log.all()]

        reports: list[DriftReport] = []
        for entity_id in entity_ids:
            with LogContext.bind(ingredient_id=entity_id):
                try:
                    if not await self._router.ensure_loaded(entity_id):
                        logger.warning("drift_check_unknown_entity")
                        continue
                    async with self._router.mirror_lock(entity_id):
                        state = self._router.ledger.snapshot(entity_id)
                        report = await self._router.call_store(
                            self._router.secondary,
                            "compare",
                            compare_snapshot(self._router.secondary, state),
                        )
                except StoreError as exc:
                    logger.warning("drift_check_failed", extra={"error": str(exc)})
                    continue

                if report.has_drift:
                    self._router.consistency_log.flag_drift(
                        entity_id, "; ".join(report.mismatches), self._router.clock.now()
                    )
                    logger.warning(
                        "drift_detected", extra={"mismatches": list(report.mismatches)}
                    )
                reports.append(report)
        return reports

    def requeue(self, entity_id: str) -> ConsistencyRecord | None:
        """Clear an escalation; the entity is due on the next tick."""
        record = self._router.consistency_log.requeue(entity_id, self._router.clock.now())
        if record is not None:
            logger.info("reconciliation_requeued", extra={"entity_id": entity_id})
        return record

    def start(self) -> None:
        """Start the polling loop as a task on the running event loop."""
        if self._task is not None and not self._task.done():
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="reconciliation-worker")
        logger.info(
            "reconciliation_worker_started",
            extra={"interval_seconds": self._settings.interval_seconds},
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the loop to finish the entity it is on.

        Args:
            timeout: Max seconds to wait for the loop to exit.
        """
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout)
            except asyncio.TimeoutError:
                logger.warning("reconciliation_worker_stop_timeout", extra={"timeout": timeout})
        logger.info("reconciliation_worker_stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _run_loop(self) -> None:
        """Polling loop. Exits when the stop event is set."""
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("reconciliation_tick_exception")
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._settings.interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def _repair(self, record: ConsistencyRecord) -> RepairOutcome:
        entity_id = record.entity_id
        router = self._router
        with LogContext.bind(ingredient_id=entity_id, store=router.secondary.name):
            error: str
            try:
                loaded = await router.ensure_loaded(entity_id)
            except StoreError as exc:
                loaded, error = False, f"primary unavailable: {exc}"
            else:
                error = "ingredient not found in primary"

            if loaded:
                async with router.mirror_lock(entity_id):
                    state = router.ledger.snapshot(entity_id)
                    try:
                        await router.call_store(
                            router.secondary,
                            "run_scoped",
                            write_snapshot(router.secondary, state),
                        )
                        report = await router.call_store(
                            router.secondary,
                            "compare",
                            compare_snapshot(router.secondary, state),
                        )
                    except (StoreError, ImmutabilityError) as exc:
                        error = str(exc)
                    else:
                        projected = router.ledger.project_stock(entity_id)
                        if not report.has_drift and projected == state.ingredient.current_stock:
                            router.consistency_log.mark_reconciled(
                                entity_id, state.version, router.clock.now()
                            )
                            logger.info(
                                "entity_reconciled",
                                extra={
                                    "version": state.version,
                                    "current_stock": projected,
                                    "attempts": record.repair_attempts,
                                },
                            )
                            return RepairOutcome.RECONCILED
                        error = "; ".join(report.mismatches) or "projection mismatch"

            return self._record_failure(record, error)

    def _record_failure(self, record: ConsistencyRecord, error: str) -> RepairOutcome:
        now = self._router.clock.now()
        attempts = record.repair_attempts + 1
        escalate = attempts >= self._settings.max_attempts
        delay = min(
            self._settings.backoff_cap_seconds,
            self._settings.backoff_base_seconds * (2 ** attempts),
        )
        updated = self._router.consistency_log.record_repair_failure(
            record.entity_id,
            error,
            now,
            now + timedelta(seconds=delay),
            escalate,
        )
        if escalate:
            logger.error(
                "reconciliation_exhausted",
                extra={"attempts": updated.repair_attempts, "error": error},
            )
            self._alerts.escalate(
                ReconciliationExhaustedError(record.entity_id, updated.repair_attempts, error)
            )
            return RepairOutcome.ESCALATED

        logger.warning(
            "reconciliation_attempt_failed",
            extra={
                "attempts": updated.repair_attempts,
                "next_attempt_at": updated.next_attempt_at,
                "error": error,
            },
        )
        return RepairOutcome.FAILED
