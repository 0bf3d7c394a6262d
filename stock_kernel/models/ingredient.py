"""
Module: stock_kernel.models.ingredient
Responsibility: ORM persistence for ingredients and their batches in the
    relational store.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - current_stock and batch current_quantity are caches written by the
      mirror from ledger snapshots; they are never computed here.
    - Batch rows are keyed by "<ingredient_id>/<batch_id>" so explicit batch
      ids only need to be unique per ingredient.

Failure modes:
    - IntegrityError on duplicate primary keys.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, BigInteger, Boolean, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UTCDateTime


class IngredientModel(Base):
    """
    Persistent ingredient row.

    Contract:
        One row per ingredient.  ``version`` is the ledger version the row
        was written at; the consistency layer compares it with the primary.

    Non-goals:
        - Does NOT validate stock; the ledger is authoritative.
    """

    __tablename__ = "ingredients"

    __table_args__ = (Index("idx_ingredient_outlet", "outlet_id"),)

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    outlet_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    allergens: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    minimum_stock: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    current_stock: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    last_cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    tracks_batches: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_backorder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class BatchModel(Base):
    """
    Persistent batch (lot) row.

    Guarantees:
        - initial_quantity, unit_cost, received_at and expires_at are set
          once; only current_quantity follows the ledger.
    """

    __tablename__ = "batches"

    __table_args__ = (
        # Query: all batches for an ingredient in FEFO order
        Index("idx_batch_ingredient_expiry", "ingredient_id", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    batch_id: Mapped[str] = mapped_column(String(100), nullable=False)
    ingredient_id: Mapped[str] = mapped_column(String(100), nullable=False)
    initial_quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    current_quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
