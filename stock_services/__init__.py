"""
Services layer: store adapters, the dual-write router and the repair worker.

Callers use ``ConsistencyRouter`` for every stock read and write; the
``ReconciliationWorker`` runs alongside it to repair the secondary store.
"""

from stock_services.alerts import AlertSink, CollectingAlertSink, LoggingAlertSink
from stock_services.bootstrap import StockServices, build_services
from stock_services.consistency_records import (
    ConsistencyLog,
    ConsistencyRecord,
    InMemoryConsistencyLog,
    SqlConsistencyLog,
    WriteOutcome,
    WriteState,
)
from stock_services.consistency_router import ConsistencyRouter, WriteResult
from stock_services.mirror import DriftReport
from stock_services.reconciliation_worker import ReconciliationReport, ReconciliationWorker

__all__ = [
    "AlertSink",
    "CollectingAlertSink",
    "ConsistencyLog",
    "ConsistencyRecord",
    "ConsistencyRouter",
    "DriftReport",
    "InMemoryConsistencyLog",
    "LoggingAlertSink",
    "ReconciliationReport",
    "ReconciliationWorker",
    "SqlConsistencyLog",
    "StockServices",
    "WriteOutcome",
    "WriteResult",
    "WriteState",
    "build_services",
]
