from __future__ import annotations

import asyncio
import threading
from typing import List, Optional

import pytest

from mindshare_trader.config.settings import SchedulerConfig
from mindshare_trader.datalake.schemas import CycleResult, PositionState, TradeAction, TradeReceipt
from mindshare_trader.datalake.storage import SQLiteStorage
from mindshare_trader.monitoring.alerts import AlertSeverity
from mindshare_trader.monitoring.metrics import METRICS
from mindshare_trader.services.housekeeping import HousekeepingService, performance_monitor
from mindshare_trader.services.scheduler import HousekeepingScheduler

TOKEN = "0x1111111111111111111111111111111111111111"
ARBITRUM = 42161


class FakeAggregator:
    def __init__(self, snapshots: list, *, gate: Optional[threading.Event] = None) -> None:
        self.snapshots = snapshots
        self.gate = gate
        self.entered = threading.Event()
        self.error: Optional[Exception] = None

    def build_candidates(self) -> list:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return list(self.snapshots)

    def run_cycle(self, candidates: list) -> list:
        return list(candidates)


class FakeExecutor:
    dry_run = False

    def __init__(self, exit_price: float = 1.0) -> None:
        self.exit_price = exit_price

    def _receipt(self, action: TradeAction, token_address: str, chain_id: int, price: float, amount: float):
        return TradeReceipt(f"0x{action.value}", token_address, chain_id, action, price, amount, price * amount)

    def buy(self, chain_id, token_address, base_amount=None, *, symbol=""):
        return self._receipt(TradeAction.BUY, token_address, chain_id, 1.0, 10.0)

    def sell(self, chain_id, token_address, token_amount=None, *, symbol=""):
        return self._receipt(TradeAction.SELL, token_address, chain_id, self.exit_price, token_amount or 0.0)

    def quote_price(self, chain_id, token_address, token_amount):
        return self.exit_price


class RecordingAlerts:
    def __init__(self) -> None:
        self.sent: List[dict] = []

    def send(self, message, *, severity=AlertSeverity.INFO, key=None, extra=None) -> bool:
        self.sent.append({"message": message, "severity": severity, "key": key})
        return True


def _service(storage: SQLiteStorage, make_config, aggregator, executor=None, alerts=None) -> HousekeepingService:
    return HousekeepingService(
        storage,
        config=make_config(),
        aggregator=aggregator,
        executor=executor or FakeExecutor(),
        alerts=alerts,
    )


def test_cycle_buys_then_sells_at_target(storage: SQLiteStorage, make_config, make_snapshot) -> None:
    executor = FakeExecutor(exit_price=1.0)
    service = _service(storage, make_config, FakeAggregator([make_snapshot(total_score=0.92)]), executor)

    first = service.run_cycle()

    assert first.success
    assert first.stats["buy_signals"] == 1
    assert first.stats["bought"] == 1
    assert first.stats["positions"][PositionState.OPEN.value] == 1
    assert "1 bought" in first.summary
    assert METRICS.get_gauge("positions_open") == 1

    executor.exit_price = 1.35
    second = service.run_cycle()

    assert second.success
    assert second.stats["buy_signals"] == 0
    assert second.stats["sell_signals"] == 1
    assert second.stats["sold"] == 1
    closed = storage.list_closed_positions()
    assert [(p.sell_reason, p.profit_loss_percent) for p in closed] == [("profit_target", 35)]


def test_cycle_skips_while_previous_one_runs(storage: SQLiteStorage, make_config, make_snapshot) -> None:
    gate = threading.Event()
    aggregator = FakeAggregator([], gate=gate)
    service = _service(storage, make_config, aggregator)
    results: List[CycleResult] = []

    worker = threading.Thread(target=lambda: results.append(service.run_cycle()))
    worker.start()
    assert aggregator.entered.wait(timeout=5)
    assert service.running

    skipped = service.run_cycle()
    gate.set()
    worker.join(timeout=5)

    assert skipped.skipped is True
    assert skipped.success is False
    assert results[0].success
    assert not service.running


def test_failed_cycle_reports_and_alerts(storage: SQLiteStorage, make_config) -> None:
    aggregator = FakeAggregator([])
    aggregator.error = RuntimeError("database unavailable")
    alerts = RecordingAlerts()
    service = _service(storage, make_config, aggregator, alerts=alerts)

    result = service.run_cycle()

    assert not result.success
    assert result.summary == "Cycle failed: database unavailable"
    assert alerts.sent[0]["key"] == "cycle_failed"
    assert alerts.sent[0]["severity"] == AlertSeverity.ERROR
    # The lock is released for the next cycle.
    aggregator.error = None
    assert service.run_cycle().success


def test_refreshes_tracked_candidates_without_signal(storage: SQLiteStorage, make_config, make_snapshot) -> None:
    storage.upsert_candidate(make_snapshot(total_score=0.9))
    service = _service(storage, make_config, FakeAggregator([make_snapshot(total_score=0.1, price=2.0)]))
    service.trader.process_pending_buys = lambda: []

    result = service.run_cycle()

    assert result.stats["buy_signals"] == 0
    row = storage.get_active_position(TOKEN, ARBITRUM)
    assert row.price == 2.0
    assert row.buy_signal is True


def test_performance_monitor_records_duration() -> None:
    METRICS.reset()
    with performance_monitor("unit"):
        pass

    assert METRICS.get("cycle.unit.calls_total") == 1
    assert METRICS.snapshot()["histograms"]["cycle.unit.duration_seconds"]["count"] == 1


class CountingService:
    def __init__(self) -> None:
        self.calls = 0

    def run_cycle(self) -> CycleResult:
        self.calls += 1
        return CycleResult(True, f"cycle {self.calls}")


def test_scheduler_runs_requested_cycles(monkeypatch: pytest.MonkeyPatch) -> None:
    service = CountingService()
    seen: List[str] = []

    def on_result(result: CycleResult) -> None:
        seen.append(result.summary)
        raise ValueError("callback failures are contained")

    async def scenario() -> int:
        scheduler = HousekeepingScheduler(service, config=SchedulerConfig(interval_seconds=60), on_result=on_result)

        async def no_wait(interval: float) -> bool:
            return False

        monkeypatch.setattr(scheduler, "_wait", no_wait)
        await scheduler.run_forever(max_cycles=2)
        return scheduler.cycles

    assert asyncio.run(scenario()) == 2
    assert seen == ["cycle 1", "cycle 2"]


def test_scheduler_stop_interrupts_wait() -> None:
    service = CountingService()

    async def scenario() -> int:
        scheduler = HousekeepingScheduler(
            service, config=SchedulerConfig(interval_seconds=3600, run_on_start=False)
        )
        scheduler.start()
        await asyncio.sleep(0)
        assert scheduler.running
        with pytest.raises(RuntimeError):
            scheduler.start()
        await scheduler.stop()
        return scheduler.cycles

    assert asyncio.run(scenario()) == 0
    assert service.calls == 0
