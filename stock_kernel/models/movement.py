"""
Module: stock_kernel.models.movement
Responsibility: ORM persistence for stock movements and price history in the
    relational store.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: both tables reject UPDATE and DELETE through ORM listeners
      (db/immutability.py).
    - idempotency_key is UNIQUE on stock_movements, so a logical write lands
      at most once even when the mirror is retried.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError on a second movement with the same idempotency key.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UTCDateTime


class StockMovementModel(Base):
    """
    Immutable stock movement row.

    Contract:
        Rows are inserted once by the mirror and never touched again.
        Corrections are new movements.
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        Index("idx_movement_ingredient_seq", "ingredient_id", "sequence"),
        Index("idx_movement_timestamp", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    ingredient_id: Mapped[str] = mapped_column(String(100), nullable=False)
    outlet_id: Mapped[str] = mapped_column(String(100), nullable=False)
    delta: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    unit_cost_at_time: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)


class PriceHistoryModel(Base):
    """Append-only cost change row, keyed "<ingredient_id>:<sequence>"."""

    __tablename__ = "price_history"

    __table_args__ = (Index("idx_price_ingredient_seq", "ingredient_id", "sequence"),)

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    ingredient_id: Mapped[str] = mapped_column(String(100), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    movement_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
