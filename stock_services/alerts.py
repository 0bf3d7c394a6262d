"""
Operator alert sinks for exhausted reconciliation.

The worker hands every ``ReconciliationExhaustedError`` to an ``AlertSink``.
Delivery beyond logging (paging, chat, tickets) is an integration concern;
implement ``AlertSink`` to plug one in.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from stock_kernel.exceptions import ReconciliationExhaustedError
from stock_kernel.logging_config import get_logger

logger = get_logger("services.alerts")


class AlertSink(ABC):
    @abstractmethod
    def escalate(self, error: ReconciliationExhaustedError) -> None:
        """Deliver one escalation.  Must not raise."""


class LoggingAlertSink(AlertSink):
    """Emits an ERROR log line carrying the error's structured fields."""

    def escalate(self, error: ReconciliationExhaustedError) -> None:
        logger.error(
            "reconciliation_escalated",
            extra={
                "entity_id": error.entity_id,
                "attempts": error.attempts,
                "last_error": error.last_error,
                "error_code": error.code,
            },
        )


class CollectingAlertSink(AlertSink):
    """Keeps escalations in memory (embedding and tests)."""

    def __init__(self) -> None:
        self.alerts: list[ReconciliationExhaustedError] = []

    def escalate(self, error: ReconciliationExhaustedError) -> None:
        self.alerts.append(error)
