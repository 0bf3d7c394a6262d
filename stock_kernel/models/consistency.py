"""
Module: stock_kernel.models.consistency
Responsibility: Durable, inspectable repair log for the dual-write protocol.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One ConsistencyRecordModel row per entity; one WriteOutcomeModel row
      per idempotency key.
    - Rows are mutable by design: they track progress, not facts.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UTCDateTime


class ConsistencyRecordModel(Base):
    """
    Per-entity replication state between primary and secondary.

    Guarantees:
        - pending_repair is False and the versions are equal once both
          stores agree.
    """

    __tablename__ = "consistency_records"

    __table_args__ = (Index("idx_consistency_pending", "pending_repair", "next_attempt_at"),)

    entity_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_written_primary_version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_written_secondary_version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_repair: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    repair_attempts: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class WriteOutcomeModel(Base):
    """Lifecycle state of one logical write, keyed by idempotency key."""

    __tablename__ = "write_outcomes"

    __table_args__ = (Index("idx_write_outcome_entity", "entity_id"),)

    idempotency_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    state: Mapped[str] = mapped_column(String(30), nullable=False)
    version: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    new_stock: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
