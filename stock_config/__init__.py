"""
stock_config -- single public entrypoint for stock settings.

Responsibility:
    Provides the one way to obtain settings at runtime through
    ``get_settings()``.  Routing flags that must change without a restart
    come from a ``FeatureFlagSource`` instead (see ``stock_config.flags``).

Architecture position:
    Configuration -- sits above ``stock_kernel`` and below
    ``stock_services``.  The kernel never imports from ``stock_config``.

Failure modes:
    - ``FileNotFoundError`` -- the requested settings file does not exist.
    - ``ValueError`` -- unknown keys or out-of-range values.
"""

from __future__ import annotations

from pathlib import Path

from stock_config.flags import FeatureFlagSource, StaticFlagSource, YamlFlagSource
from stock_config.loader import load_yaml_file, parse_settings
from stock_config.schema import (
    LedgerSettings,
    ReadPreference,
    ReconciliationSettings,
    RoutingFlags,
    StockSettings,
    StoreSettings,
)
from stock_kernel.logging_config import get_logger

logger = get_logger("config")

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_settings(path: Path | str | None = None) -> StockSettings:
    """Load and validate a settings file (the packaged default when ``path`` is None)."""
    settings_path = Path(path) if path is not None else DEFAULT_SETTINGS_PATH
    settings = parse_settings(load_yaml_file(settings_path))
    logger.info(
        "settings_loaded",
        extra={
            "path": str(settings_path),
            "settings_name": settings.name,
            "read_preference": settings.flags.read_preference.value,
            "dual_write_enabled": settings.flags.dual_write_enabled,
        },
    )
    return settings


__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "FeatureFlagSource",
    "LedgerSettings",
    "ReadPreference",
    "ReconciliationSettings",
    "RoutingFlags",
    "StaticFlagSource",
    "StockSettings",
    "StoreSettings",
    "YamlFlagSource",
    "get_settings",
]
