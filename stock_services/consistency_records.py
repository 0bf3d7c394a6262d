"""
ConsistencyRecord log -- durable, inspectable state of the dual-write protocol.

Responsibility:
    Tracks, per entity, which ledger version each store last received and
    whether the secondary needs repair; tracks, per idempotency key, where
    a logical write is in its lifecycle.

Architecture position:
    Services.  Mutated only by the ConsistencyRouter and the
    ReconciliationWorker, both on one event loop.

Invariants enforced:
    - A record is "consistent" when pending_repair is False and both
      version fields are equal.
    - Escalated records never re-enter the backlog until ``requeue``.
    - Write outcomes only move forward along ``OUTCOME_TRANSITIONS``:
      PENDING -> PRIMARY_COMMITTED -> SECONDARY_COMMITTED | SECONDARY_FAILED,
      or PENDING -> PRIMARY_FAILED.  A failed primary write may be retried
      (PRIMARY_FAILED -> PENDING).  UNCHANGED (a keyed write with nothing
      to store) is final.  Other moves are ignored and logged.

Failure modes:
    - StoreUnavailableError from SqlConsistencyLog when its database
      cannot be reached.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from sqlalchemy import or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from stock_kernel.db.engine import session_scope
from stock_kernel.exceptions import StoreUnavailableError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.consistency import ConsistencyRecordModel, WriteOutcomeModel

logger = get_logger("services.consistency_records")


class WriteState(str, Enum):
    PENDING = "pending"
    PRIMARY_COMMITTED = "primary_committed"
    PRIMARY_FAILED = "primary_failed"
    SECONDARY_COMMITTED = "secondary_committed"
    SECONDARY_FAILED = "secondary_failed"
    UNCHANGED = "unchanged"


OUTCOME_TRANSITIONS: dict[WriteState | None, frozenset[WriteState]] = {
    None: frozenset({WriteState.PENDING, WriteState.UNCHANGED}),
    WriteState.PENDING: frozenset({WriteState.PRIMARY_COMMITTED, WriteState.PRIMARY_FAILED}),
    WriteState.PRIMARY_FAILED: frozenset({WriteState.PENDING}),
    WriteState.PRIMARY_COMMITTED: frozenset(
        {WriteState.SECONDARY_COMMITTED, WriteState.SECONDARY_FAILED}
    ),
    WriteState.SECONDARY_COMMITTED: frozenset(),
    WriteState.SECONDARY_FAILED: frozenset(),
    WriteState.UNCHANGED: frozenset(),
}


@dataclass(frozen=True)
class ConsistencyRecord:
    """Replication state of one entity between primary and secondary."""

    entity_id: str
    last_written_primary_version: int = 0
    last_written_secondary_version: int = 0
    pending_repair: bool = False
    last_reconciled_at: datetime | None = None
    repair_attempts: int = 0
    next_attempt_at: datetime | None = None
    escalated: bool = False
    last_error: str | None = None
    updated_at: datetime | None = None

    @property
    def is_consistent(self) -> bool:
        return (
            not self.pending_repair
            and self.last_written_primary_version == self.last_written_secondary_version
        )

    @property
    def lag(self) -> int:
        """Ledger versions the secondary has not received yet."""
        return self.last_written_primary_version - self.last_written_secondary_version


@dataclass(frozen=True)
class WriteOutcome:
    """Lifecycle of one logical write.

    ``version`` and ``new_stock`` are what the write produced, once known.
    """

    idempotency_key: str
    entity_id: str
    state: WriteState
    version: int | None = None
    new_stock: Decimal | None = None
    error: str | None = None
    updated_at: datetime | None = None


class ConsistencyLog(ABC):
    """
    Storage for consistency records and write outcomes.

    Subclasses provide the four storage primitives; the transitions are
    shared so both implementations follow identical rules.
    """

    # -------------------------------------------------------------------------
    # Storage primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    def get(self, entity_id: str) -> ConsistencyRecord | None: ...

    @abstractmethod
    def save(self, record: ConsistencyRecord) -> None: ...

    @abstractmethod
    def all(self) -> list[ConsistencyRecord]: ...

    @abstractmethod
    def get_outcome(self, idempotency_key: str) -> WriteOutcome | None: ...

    @abstractmethod
    def save_outcome(self, outcome: WriteOutcome) -> None: ...

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _get_or_new(self, entity_id: str) -> ConsistencyRecord:
        return self.get(entity_id) or ConsistencyRecord(entity_id=entity_id)

    def record_primary_write(self, entity_id: str, version: int, at: datetime) -> ConsistencyRecord:
        record = self._get_or_new(entity_id)
        record = replace(
            record,
            last_written_primary_version=max(record.last_written_primary_version, version),
            updated_at=at,
        )
        self.save(record)
        return record

    def record_secondary_success(
        self, entity_id: str, version: int, at: datetime
    ) -> ConsistencyRecord:
        """A mirror write landed.  Never clears a pending repair on its own."""
        record = self._get_or_new(entity_id)
        secondary_version = max(record.last_written_secondary_version, version)
        reconciled = (
            not record.pending_repair
            and secondary_version == record.last_written_primary_version
        )
        record = replace(
            record,
            last_written_secondary_version=secondary_version,
            last_reconciled_at=at if reconciled else record.last_reconciled_at,
            updated_at=at,
        )
        self.save(record)
        return record

    def record_secondary_failure(
        self, entity_id: str, error: str, at: datetime, next_attempt_at: datetime
    ) -> ConsistencyRecord:
        record = self._get_or_new(entity_id)
        if record.pending_repair and record.next_attempt_at is not None:
            next_attempt_at = max(next_attempt_at, record.next_attempt_at)
        record = replace(
            record,
            pending_repair=True,
            next_attempt_at=next_attempt_at,
            last_error=error,
            updated_at=at,
        )
        self.save(record)
        return record

    def flag_drift(self, entity_id: str, error: str, at: datetime) -> ConsistencyRecord:
        """Mark an entity for repair because the secondary disagrees with the ledger."""
        record = self._get_or_new(entity_id)
        record = replace(
            record,
            pending_repair=True,
            next_attempt_at=at,
            last_error=error,
            updated_at=at,
        )
        self.save(record)
        return record

    def mark_reconciled(self, entity_id: str, version: int, at: datetime) -> ConsistencyRecord:
        """The secondary was verified at ``version``.

        A write committed on the primary meanwhile keeps the record lagging;
        its own mirror (or a later tick) closes the gap.
        """
        record = self._get_or_new(entity_id)
        record = replace(
            record,
            last_written_primary_version=max(record.last_written_primary_version, version),
            last_written_secondary_version=max(record.last_written_secondary_version, version),
            pending_repair=False,
            last_reconciled_at=at,
            repair_attempts=0,
            next_attempt_at=None,
            escalated=False,
            last_error=None,
            updated_at=at,
        )
        self.save(record)
        return record

    def record_repair_failure(
        self,
        entity_id: str,
        error: str,
        at: datetime,
        next_attempt_at: datetime,
        escalate: bool,
    ) -> ConsistencyRecord:
        record = self._get_or_new(entity_id)
        record = replace(
            record,
            pending_repair=True,
            repair_attempts=record.repair_attempts + 1,
            next_attempt_at=next_attempt_at,
            escalated=record.escalated or escalate,
            last_error=error,
            updated_at=at,
        )
        self.save(record)
        return record

    def requeue(self, entity_id: str, at: datetime) -> ConsistencyRecord | None:
        """Clear an escalation so the worker tries the entity again."""
        record = self.get(entity_id)
        if record is None:
            return None
        record = replace(
            record,
            pending_repair=True,
            escalated=False,
            repair_attempts=0,
            next_attempt_at=at,
            updated_at=at,
        )
        self.save(record)
        return record

    def backlog(
        self,
        now: datetime,
        stale_after: timedelta,
        limit: int | None = None,
    ) -> list[ConsistencyRecord]:
        """Records the worker should repair now, most overdue first."""
        due: list[ConsistencyRecord] = []
        for record in self.all():
            if record.escalated:
                continue
            if record.pending_repair:
                if record.next_attempt_at is None or record.next_attempt_at <= now:
                    due.append(record)
            elif record.lag > 0 and (
                record.updated_at is None or record.updated_at <= now - stale_after
            ):
                due.append(record)
        due.sort(key=lambda r: (r.next_attempt_at or r.updated_at or now, r.entity_id))
        return due[:limit] if limit is not None else due

    # Outcomes

    def advance_outcome(
        self,
        idempotency_key: str,
        entity_id: str,
        state: WriteState,
        at: datetime,
        error: str | None = None,
        version: int | None = None,
        new_stock: Decimal | None = None,
    ) -> WriteOutcome | None:
        """Move a write to ``state``.

        Returns the outcome as stored.  A move ``OUTCOME_TRANSITIONS`` does
        not allow leaves the stored outcome (None if there is none) as is.
        """
        current = self.get_outcome(idempotency_key)
        previous = current.state if current is not None else None
        if state is not previous and state not in OUTCOME_TRANSITIONS[previous]:
            logger.warning(
                "outcome_transition_ignored",
                extra={
                    "idempotency_key": idempotency_key,
                    "from_state": previous.value if previous else None,
                    "to_state": state.value,
                },
            )
            return current

        outcome = WriteOutcome(
            idempotency_key=idempotency_key,
            entity_id=entity_id,
            state=state,
            version=version if version is not None else getattr(current, "version", None),
            new_stock=new_stock if new_stock is not None else getattr(current, "new_stock", None),
            error=error,
            updated_at=at,
        )
        self.save_outcome(outcome)
        return outcome


class InMemoryConsistencyLog(ConsistencyLog):
    """Process-local log. State is lost on restart."""

    def __init__(self) -> None:
        self._records: dict[str, ConsistencyRecord] = {}
        self._outcomes: dict[str, WriteOutcome] = {}

    def get(self, entity_id: str) -> ConsistencyRecord | None:
        return self._records.get(entity_id)

    def save(self, record: ConsistencyRecord) -> None:
        self._records[record.entity_id] = record

    def all(self) -> list[ConsistencyRecord]:
        return list(self._records.values())

    def get_outcome(self, idempotency_key: str) -> WriteOutcome | None:
        return self._outcomes.get(idempotency_key)

    def save_outcome(self, outcome: WriteOutcome) -> None:
        self._outcomes[outcome.idempotency_key] = outcome


class SqlConsistencyLog(ConsistencyLog):
    """
    Log persisted in a relational database.

    Survives restarts, so a repair backlog recorded before a crash is
    drained after it.  Give it its own database rather than the secondary
    store's, or a secondary outage takes the log down with it.
    """

    name = "consistency_log"

    _RECORD_FIELDS = tuple(ConsistencyRecord.__dataclass_fields__)

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @staticmethod
    def create_tables(engine: Engine) -> None:
        """Create the log's two tables (and nothing else) on ``engine``."""
        for model in (ConsistencyRecordModel, WriteOutcomeModel):
            model.__table__.create(engine, checkfirst=True)

    def get(self, entity_id: str) -> ConsistencyRecord | None:
        with self._scope("get") as session:
            row = session.get(ConsistencyRecordModel, entity_id)
            return self._to_record(row) if row is not None else None

    def save(self, record: ConsistencyRecord) -> None:
        values = {name: getattr(record, name) for name in self._RECORD_FIELDS}
        with self._scope("save") as session:
            row = session.get(ConsistencyRecordModel, record.entity_id)
            if row is None:
                session.add(ConsistencyRecordModel(**values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)

    def all(self) -> list[ConsistencyRecord]:
        with self._scope("all") as session:
            rows = session.execute(
                select(ConsistencyRecordModel).order_by(ConsistencyRecordModel.entity_id)
            ).scalars()
            return [self._to_record(row) for row in rows]

    def backlog(
        self,
        now: datetime,
        stale_after: timedelta,
        limit: int | None = None,
    ) -> list[ConsistencyRecord]:
        # Narrow in SQL first; the shared rules decide the final set.
        with self._scope("backlog") as session:
            rows = session.execute(
                select(ConsistencyRecordModel).where(
                    ConsistencyRecordModel.escalated.is_(False),
                    or_(
                        ConsistencyRecordModel.pending_repair.is_(True),
                        ConsistencyRecordModel.last_written_secondary_version
                        < ConsistencyRecordModel.last_written_primary_version,
                    ),
                )
            ).scalars()
            candidates = [self._to_record(row) for row in rows]
        narrowed = InMemoryConsistencyLog()
        for record in candidates:
            narrowed.save(record)
        return narrowed.backlog(now, stale_after, limit)

    def get_outcome(self, idempotency_key: str) -> WriteOutcome | None:
        with self._scope("get_outcome") as session:
            row = session.get(WriteOutcomeModel, idempotency_key)
            if row is None:
                return None
            return WriteOutcome(
                idempotency_key=row.idempotency_key,
                entity_id=row.entity_id,
                state=WriteState(row.state),
                version=row.version,
                new_stock=row.new_stock,
                error=row.error,
                updated_at=row.updated_at,
            )

    def save_outcome(self, outcome: WriteOutcome) -> None:
        with self._scope("save_outcome") as session:
            row = session.get(WriteOutcomeModel, outcome.idempotency_key)
            if row is None:
                row = WriteOutcomeModel(idempotency_key=outcome.idempotency_key)
                session.add(row)
            row.entity_id = outcome.entity_id
            row.state = outcome.state.value
            row.version = outcome.version
            row.new_stock = outcome.new_stock
            row.error = outcome.error
            row.updated_at = outcome.updated_at

    @contextmanager
    def _scope(self, operation: str) -> Iterator[Session]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(self.name, operation, str(exc)) from exc

    def _to_record(self, row: ConsistencyRecordModel) -> ConsistencyRecord:
        return ConsistencyRecord(**{name: getattr(row, name) for name in self._RECORD_FIELDS})
