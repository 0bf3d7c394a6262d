"""
Module: stock_kernel.db.base
Responsibility: Declarative base for all SQLAlchemy ORM models of the
    relational (secondary) store, plus the column types that keep values
    comparable with the document store.
Architecture position: Kernel > DB.  Lowest-level import target within the
    persistence side of the kernel.  MUST NOT import from models/ or services.

Invariants enforced:
    - Decimal precision: type_annotation_map maps Decimal to Numeric(38, 9).
      The ledger rejects quantities with more places, so values survive a
      round trip unchanged.  NEVER use float for quantities or costs.
    - Timestamps are always timezone-aware UTC on load (UTCDateTime), even
      on backends that drop the offset.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    Contract:
        Binds aware datetimes converted to UTC; loads values back as aware
        UTC datetimes.

    Guarantees:
        - process_bind_param rejects naive datetimes.
        - process_result_value attaches UTC when the driver returns a naive
          value (SQLite).
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value!r} cannot be stored")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all relational store models.

    Contract:
        Models declare their own natural string primary keys; identifiers
        are shared with the document store, so no surrogate keys are
        generated here.

    Guarantees:
        - Decimal maps to Numeric(38, 9).
        - datetime maps to UTCDateTime.
        - str maps to String(255).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: UTCDateTime(),
        str: String(255),
    }
