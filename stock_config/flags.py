"""
Feature flag sources for store routing.

The router asks its flag source for ``current()`` at the start of every
operation, so a flag change applies from the next operation on without a
restart.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import yaml

from stock_config.loader import load_yaml_file, parse_flags
from stock_config.schema import RoutingFlags
from stock_kernel.logging_config import get_logger

logger = get_logger("config.flags")


@runtime_checkable
class FeatureFlagSource(Protocol):
    """Anything that can report the routing flags in force right now."""

    def current(self) -> RoutingFlags: ...


class StaticFlagSource:
    """In-memory flags, changed explicitly with ``set``. Used by tests and ops tooling."""

    def __init__(self, flags: RoutingFlags | None = None):
        self._flags = flags or RoutingFlags()

    def current(self) -> RoutingFlags:
        return self._flags

    def set(self, flags: RoutingFlags) -> None:
        logger.info(
            "routing_flags_changed",
            extra={
                "read_preference": flags.read_preference.value,
                "dual_write_enabled": flags.dual_write_enabled,
            },
        )
        self._flags = flags


class YamlFlagSource:
    """
    Flags read from a YAML file, re-read when the file's mtime changes.

    Contract:
        The file holds the ``flags`` mapping of a settings document (either
        at top level or under a ``flags`` key).

    Guarantees:
        - A file that disappears or fails to parse keeps the last good
          flags in force and logs a warning.
    """

    def __init__(self, path: Path | str, fallback: RoutingFlags | None = None):
        self._path = Path(path)
        self._flags = fallback or RoutingFlags()
        self._mtime_ns: int | None = None
        self._lock = threading.Lock()
        self._reload_if_changed()

    @property
    def path(self) -> Path:
        return self._path

    def current(self) -> RoutingFlags:
        self._reload_if_changed()
        return self._flags

    def _reload_if_changed(self) -> None:
        try:
            mtime_ns = os.stat(self._path).st_mtime_ns
        except OSError as exc:
            logger.warning(
                "flag_file_unreadable",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return

        with self._lock:
            if mtime_ns == self._mtime_ns:
                return
            try:
                data = load_yaml_file(self._path)
                flags = parse_flags(data.get("flags", data))
            except (OSError, ValueError, yaml.YAMLError) as exc:
                logger.warning(
                    "flag_file_invalid",
                    extra={"path": str(self._path), "error": str(exc)},
                )
                self._mtime_ns = mtime_ns
                return
            self._mtime_ns = mtime_ns
            if flags != self._flags:
                logger.info(
                    "routing_flags_reloaded",
                    extra={
                        "path": str(self._path),
                        "read_preference": flags.read_preference.value,
                        "dual_write_enabled": flags.dual_write_enabled,
                    },
                )
            self._flags = flags
