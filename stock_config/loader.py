"""
Configuration Loader (``stock_config.loader``).

Responsibility
--------------
Loads YAML settings files and parses them into typed
``stock_config.schema`` dataclass instances.  Runtime callers go through
``stock_config.get_settings()``; the flag source reuses ``parse_flags``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Unknown keys in a section raise ``ValueError``; a typo never silently
  falls back to a default.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import (
    LedgerSettings,
    ReadPreference,
    ReconciliationSettings,
    RoutingFlags,
    StockSettings,
    StoreSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Postconditions:
        - Returns a ``dict`` (possibly empty if the YAML is empty).
    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level, got {type(data).__name__}")
    return data


def _check_keys(section: str, data: dict[str, Any], cls: type) -> None:
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {section}: {sorted(unknown)}")


def parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"{name} must be true or false, got {value!r}")


def parse_flags(data: dict[str, Any]) -> RoutingFlags:
    """Parse RoutingFlags from a dict."""
    _check_keys("flags", data, RoutingFlags)
    preference = data.get("read_preference", ReadPreference.PRIMARY.value)
    try:
        read_preference = ReadPreference(preference)
    except ValueError:
        raise ValueError(
            f"read_preference must be one of "
            f"{[p.value for p in ReadPreference]}, got {preference!r}"
        ) from None
    return RoutingFlags(
        read_preference=read_preference,
        dual_write_enabled=parse_bool(data.get("dual_write_enabled", True), "dual_write_enabled"),
    )


def parse_store_settings(data: dict[str, Any]) -> StoreSettings:
    """Parse StoreSettings from a dict."""
    _check_keys("stores", data, StoreSettings)
    timeout = float(data.get("timeout_seconds", StoreSettings.timeout_seconds))
    if timeout <= 0:
        raise ValueError(f"stores.timeout_seconds must be positive, got {timeout}")
    relational_url = str(data.get("relational_url", StoreSettings.relational_url))
    consistency_log_url = str(data.get("consistency_log_url", StoreSettings.consistency_log_url))
    # Two in-memory SQLite URLs are two separate databases.
    if consistency_log_url == relational_url and relational_url != "sqlite://":
        raise ValueError(
            "stores.consistency_log_url must not point at the relational store database"
        )
    return StoreSettings(
        relational_url=relational_url,
        consistency_log_url=consistency_log_url,
        timeout_seconds=timeout,
        echo_sql=parse_bool(data.get("echo_sql", False), "echo_sql"),
    )


def parse_reconciliation_settings(data: dict[str, Any]) -> ReconciliationSettings:
    """Parse ReconciliationSettings from a dict."""
    _check_keys("reconciliation", data, ReconciliationSettings)
    defaults = ReconciliationSettings()
    settings = ReconciliationSettings(
        interval_seconds=float(data.get("interval_seconds", defaults.interval_seconds)),
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        backoff_base_seconds=float(data.get("backoff_base_seconds", defaults.backoff_base_seconds)),
        backoff_cap_seconds=float(data.get("backoff_cap_seconds", defaults.backoff_cap_seconds)),
        stale_after_seconds=float(data.get("stale_after_seconds", defaults.stale_after_seconds)),
        batch_size=int(data.get("batch_size", defaults.batch_size)),
    )
    if settings.max_attempts < 1:
        raise ValueError("reconciliation.max_attempts must be at least 1")
    if settings.interval_seconds <= 0 or settings.batch_size < 1:
        raise ValueError("reconciliation.interval_seconds and batch_size must be positive")
    if settings.backoff_cap_seconds < settings.backoff_base_seconds:
        raise ValueError("reconciliation.backoff_cap_seconds must be >= backoff_base_seconds")
    return settings


def parse_ledger_settings(data: dict[str, Any]) -> LedgerSettings:
    """Parse LedgerSettings from a dict."""
    _check_keys("ledger", data, LedgerSettings)
    shelf_life = int(data.get("default_shelf_life_days", LedgerSettings.default_shelf_life_days))
    if shelf_life < 1:
        raise ValueError("ledger.default_shelf_life_days must be at least 1")
    return LedgerSettings(default_shelf_life_days=shelf_life)


def parse_settings(data: dict[str, Any]) -> StockSettings:
    """Parse a full settings document."""
    _check_keys("settings", data, StockSettings)
    return StockSettings(
        name=str(data.get("name", "default")),
        flags=parse_flags(data.get("flags") or {}),
        stores=parse_store_settings(data.get("stores") or {}),
        reconciliation=parse_reconciliation_settings(data.get("reconciliation") or {}),
        ledger=parse_ledger_settings(data.get("ledger") or {}),
        log_level=str(data.get("log_level", "INFO")).upper(),
    )
