"""Wiring from settings: a built router and worker, with the consistency log on its own database."""

import asyncio
import shutil
from dataclasses import replace
from decimal import Decimal

import pytest

from stock_config import StockSettings, get_settings
from stock_kernel.db.engine import get_engine
from stock_kernel.domain.clock import DeterministicClock
from stock_services.alerts import CollectingAlertSink
from stock_services.bootstrap import build_services
from stock_services.consistency_records import SqlConsistencyLog, WriteState
from stock_services.stores.base import Collection

from tests.builders import START, consumption, make_ingredient, receipt


@pytest.fixture
def services():
    built = build_services(
        get_settings(),
        clock=DeterministicClock(START),
        alert_sink=CollectingAlertSink(),
    )
    yield built
    built.dispose()


def _file_settings(relational_dir, log_path):
    defaults = StockSettings()
    return replace(
        defaults,
        stores=replace(
            defaults.stores,
            relational_url=f"sqlite:///{relational_dir / 'stock.db'}",
            consistency_log_url=f"sqlite:///{log_path}",
        ),
    )


class TestBuildServices:
    def test_components_wired(self, services):
        assert services.router.primary is services.primary
        assert services.router.secondary is services.secondary
        assert isinstance(services.router.consistency_log, SqlConsistencyLog)
        assert services.log_engine is not get_engine()

    def test_write_reaches_both_stores(self, services):
        router = services.router

        async def scenario():
            await router.register_ingredient(make_ingredient("milk"))
            await router.write(receipt("r1", "10"))
            await router.write(consumption("c1", "4"))
            await router.wait_for_mirrors()
            report = await services.worker.tick()
            primary = await services.primary.get(Collection.INGREDIENTS, "milk")
            secondary = await services.secondary.get(Collection.INGREDIENTS, "milk")
            await router.aclose()
            return report, primary, secondary

        report, primary, secondary = asyncio.run(scenario())

        assert report.examined == 0
        assert primary["current_stock"] == Decimal("6")
        assert secondary["current_stock"] == Decimal("6")
        assert secondary["version"] == 3
        assert router.reconciliation_status("milk").is_consistent
        assert router.operation_status("c1").state is WriteState.SECONDARY_COMMITTED

    def test_flags_from_settings(self):
        settings = replace(StockSettings(), flags=replace(StockSettings().flags, dual_write_enabled=False))
        built = build_services(settings, clock=DeterministicClock(START))
        try:
            assert not built.router.flags.current().dual_write_enabled
        finally:
            built.dispose()


class TestRelationalOutage:
    def test_write_succeeds_and_repair_is_recorded(self, tmp_path):
        relational_dir = tmp_path / "relational"
        relational_dir.mkdir()
        built = build_services(
            _file_settings(relational_dir, tmp_path / "log.db"),
            clock=DeterministicClock(START),
        )
        router = built.router

        async def scenario():
            await router.register_ingredient(make_ingredient("milk"))
            await router.write(receipt("r1", "10"))
            await router.wait_for_mirrors()

            # The relational database disappears; the log's database does not.
            get_engine().dispose()
            shutil.rmtree(relational_dir)

            result = await router.write(consumption("c1", "4"))
            await router.wait_for_mirrors()
            return result

        try:
            result = asyncio.run(scenario())
            record = router.reconciliation_status("milk")
            outcome = router.operation_status("c1")
            primary = asyncio.run(built.primary.get(Collection.INGREDIENTS, "milk"))
        finally:
            built.dispose()

        assert result.new_stock == Decimal("6")
        assert result.state is WriteState.PRIMARY_COMMITTED
        assert primary["current_stock"] == Decimal("6")
        assert record.pending_repair
        assert record.last_written_primary_version == 3
        assert record.last_written_secondary_version == 2
        assert outcome.state is WriteState.SECONDARY_FAILED

    def test_log_survives_rebuild_of_services(self, tmp_path):
        relational_dir = tmp_path / "relational"
        relational_dir.mkdir()
        settings = _file_settings(relational_dir, tmp_path / "log.db")

        first = build_services(settings, clock=DeterministicClock(START))

        async def register():
            await first.router.register_ingredient(make_ingredient("milk"))
            await first.router.wait_for_mirrors()

        try:
            asyncio.run(register())
        finally:
            first.dispose()

        second = build_services(settings, clock=DeterministicClock(START))
        try:
            outcome = second.router.operation_status("register:milk")
        finally:
            second.dispose()

        assert outcome.state is WriteState.SECONDARY_COMMITTED
