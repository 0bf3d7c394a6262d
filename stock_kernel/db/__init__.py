"""Database infrastructure for the relational store."""

from stock_kernel.db.base import Base, UTCDateTime
from stock_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from stock_kernel.db.immutability import register_immutability_listeners

__all__ = [
    "Base",
    "UTCDateTime",
    "build_engine",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "register_immutability_listeners",
    "reset_engine",
    "session_scope",
]
