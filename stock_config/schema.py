"""
Stock settings schema.

YAML settings files are parsed into these frozen types by the loader.
Routing flags are kept separate from the rest because they are re-read on
every router operation; everything else is read once at bootstrap.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ReadPreference(str, Enum):
    """Which store a read is served from first."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass(frozen=True)
class RoutingFlags:
    """Feature flags consulted by the router at the start of each operation."""

    read_preference: ReadPreference = ReadPreference.PRIMARY
    dual_write_enabled: bool = True


@dataclass(frozen=True)
class StoreSettings:
    """Store connections and per-call timeout.

    The consistency log gets its own database so that it keeps recording
    repairs while the relational store is down.
    """

    relational_url: str = "sqlite://"
    consistency_log_url: str = "sqlite://"
    timeout_seconds: float = 2.0
    echo_sql: bool = False


@dataclass(frozen=True)
class ReconciliationSettings:
    """Repair worker cadence and retry policy."""

    interval_seconds: float = 30.0
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 300.0
    stale_after_seconds: float = 60.0
    batch_size: int = 100


@dataclass(frozen=True)
class LedgerSettings:
    default_shelf_life_days: int = 365


@dataclass(frozen=True)
class StockSettings:
    """Everything bootstrap needs to wire a router and a worker."""

    name: str = "default"
    flags: RoutingFlags = field(default_factory=RoutingFlags)
    stores: StoreSettings = field(default_factory=StoreSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    log_level: str = "INFO"
