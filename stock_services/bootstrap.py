"""
Wiring from settings to a running router and worker.

``build_services`` is the composition root: it initializes logging and the
relational engine, creates tables, registers the append-only listeners and
hands every component the same clock and flag source.  The consistency log
lives on its own engine, so an outage of the relational store does not
stop it from recording the repairs that outage causes.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from stock_config.flags import FeatureFlagSource, StaticFlagSource
from stock_config.schema import StockSettings
from stock_kernel.db.engine import (
    build_engine,
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from stock_kernel.db.immutability import register_immutability_listeners
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.ledger import StockLedger
from stock_kernel.logging_config import configure_logging, get_logger
from stock_services.alerts import AlertSink
from stock_services.consistency_records import SqlConsistencyLog
from stock_services.consistency_router import ConsistencyRouter
from stock_services.reconciliation_worker import ReconciliationWorker
from stock_services.stores.document_store import DocumentStoreAdapter
from stock_services.stores.relational_store import RelationalStoreAdapter

logger = get_logger("services.bootstrap")


@dataclass(frozen=True)
class StockServices:
    router: ConsistencyRouter
    worker: ReconciliationWorker
    primary: DocumentStoreAdapter
    secondary: RelationalStoreAdapter
    log_engine: Engine

    def dispose(self) -> None:
        """Release both database engines."""
        self.log_engine.dispose()
        reset_engine()


def build_services(
    settings: StockSettings,
    flags: FeatureFlagSource | None = None,
    clock: Clock | None = None,
    alert_sink: AlertSink | None = None,
) -> StockServices:
    """Build the router and worker described by ``settings``.

    Args:
        settings: Loaded settings (see ``stock_config.get_settings``).
        flags: Routing flag source; defaults to the flags in ``settings``,
            fixed for the life of the process.
        clock: Defaults to the system clock.
        alert_sink: Defaults to logging escalations.
    """
    configure_logging(level=settings.log_level)
    stores = settings.stores

    engine = init_engine_from_url(stores.relational_url, echo=stores.echo_sql)
    create_tables(engine)
    register_immutability_listeners()

    log_engine = build_engine(stores.consistency_log_url, echo=stores.echo_sql)
    SqlConsistencyLog.create_tables(log_engine)
    consistency_log = SqlConsistencyLog(sessionmaker(bind=log_engine, expire_on_commit=False))

    primary = DocumentStoreAdapter(name="document")
    secondary = RelationalStoreAdapter(get_session_factory(), name="relational")
    router = ConsistencyRouter(
        primary=primary,
        secondary=secondary,
        ledger=StockLedger(settings.ledger.default_shelf_life_days),
        consistency_log=consistency_log,
        flags=flags or StaticFlagSource(settings.flags),
        clock=clock or SystemClock(),
        timeout_seconds=stores.timeout_seconds,
        retry_delay_seconds=settings.reconciliation.backoff_base_seconds,
    )
    worker = ReconciliationWorker(router, settings.reconciliation, alert_sink)

    logger.info(
        "services_built",
        extra={
            "settings_name": settings.name,
            "primary": primary.name,
            "secondary": secondary.name,
            "consistency_log": log_engine.dialect.name,
        },
    )
    return StockServices(
        router=router,
        worker=worker,
        primary=primary,
        secondary=secondary,
        log_engine=log_engine,
    )
