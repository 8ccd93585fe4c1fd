"""One housekeeping cycle: refresh market data, evaluate signals, trade, tidy up."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional

from ..analysis.aggregator import MarketDataAggregator
from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import CycleResult, Position, PositionState, TokenSnapshot
from ..datalake.storage import SQLiteStorage
from ..execution.engine import TradeExecutor
from ..execution.errors import TradingError
from ..execution.trader import TokenTrader
from ..monitoring.alerts import AlertManager, AlertSeverity
from ..monitoring.logger import correlation_scope, get_logger, new_correlation_id
from ..monitoring.metrics import METRICS
from ..strategy.signals import SignalEvaluator


@contextmanager
def performance_monitor(operation_name: str) -> Iterator[None]:
    """Time a cycle stage into ``cycle.<operation>.duration_seconds``."""

    start_time = time.perf_counter()
    try:
        yield
    finally:
        METRICS.observe(f"cycle.{operation_name}.duration_seconds", time.perf_counter() - start_time)
        METRICS.increment(f"cycle.{operation_name}.calls_total")


class HousekeepingService:
    """Runs the full pipeline once per call; at most one call is in flight per process."""

    def __init__(
        self,
        storage: SQLiteStorage,
        *,
        config: Optional[AppConfig] = None,
        aggregator: Optional[MarketDataAggregator] = None,
        evaluator: Optional[SignalEvaluator] = None,
        executor: Optional[TradeExecutor] = None,
        trader: Optional[TokenTrader] = None,
        alerts: Optional[AlertManager] = None,
    ) -> None:
        self._config = config or get_app_config()
        self._storage = storage
        self._aggregator = aggregator or MarketDataAggregator(storage, config=self._config)
        self._evaluator = evaluator or SignalEvaluator(storage, config=self._config)
        self._executor = executor or TradeExecutor(self._config)
        self._alerts = alerts
        self._trader = trader or TokenTrader(storage, self._executor, config=self._config, alerts=alerts)
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    @property
    def trader(self) -> TokenTrader:
        return self._trader

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def run_cycle(self) -> CycleResult:
        if not self._lock.acquire(blocking=False):
            METRICS.increment("cycles_skipped")
            self._logger.info("Housekeeping cycle already running; skipping")
            return CycleResult(False, "cycle already running", skipped=True)
        try:
            with correlation_scope(new_correlation_id("cycle")):
                return self._guarded_cycle()
        finally:
            self._lock.release()

    def _guarded_cycle(self) -> CycleResult:
        started = time.perf_counter()
        try:
            stats = self._run_stages()
        except Exception as exc:  # noqa: BLE001
            METRICS.increment("cycles_failed")
            self._logger.exception("Housekeeping cycle failed")
            if self._alerts is not None:
                self._alerts.send(
                    f"Housekeeping cycle failed: {exc}",
                    severity=AlertSeverity.ERROR,
                    key="cycle_failed",
                )
            return CycleResult(False, f"Cycle failed: {exc}")
        METRICS.increment("cycles_completed")
        METRICS.observe("cycle_duration_seconds", time.perf_counter() - started)
        summary = self._summarize(stats)
        self._logger.info("%s", summary, extra={"stats": stats})
        return CycleResult(True, summary, stats=stats)

    def _run_stages(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        with performance_monitor("aggregate"):
            candidates = self._aggregator.build_candidates()
            snapshots = self._aggregator.run_cycle(candidates)
        stats["candidates"] = len(candidates)
        stats["snapshots"] = len(snapshots)

        with performance_monitor("evaluate_buys"):
            stats["buy_signals"] = self._evaluate_buys(snapshots)
        with performance_monitor("evaluate_sells"):
            stats["sell_signals"] = self._evaluate_sells()

        with performance_monitor("execute_buys"):
            buys = self._trader.process_pending_buys()
        with performance_monitor("execute_sells"):
            sells = self._trader.process_pending_sells()
        stats["bought"] = sum(1 for result in buys if result.success)
        stats["buy_failures"] = sum(1 for result in buys if not result.success)
        stats["sold"] = sum(1 for result in sells if result.success)
        stats["sell_failures"] = sum(1 for result in sells if not result.success)

        with performance_monitor("cleanup"):
            stats["dropped_candidates"] = self._storage.drop_stale_candidates(
                timedelta(minutes=self._config.trading.candidate_ttl_minutes)
            )
            stats["purged_snapshots"] = self._storage.purge_snapshots(
                timedelta(days=self._config.storage.snapshot_retention_days)
            )
        stats["positions"] = self._storage.count_positions()
        METRICS.gauge("positions_open", stats["positions"][PositionState.OPEN.value])
        return stats

    def _evaluate_buys(self, snapshots: List[TokenSnapshot]) -> int:
        signals = 0
        for snapshot in snapshots:
            active = self._storage.get_active_position(snapshot.token_address, snapshot.chain_id)
            if active is not None and active.entry_price is not None:
                self._storage.refresh_position_metrics(snapshot)
                continue
            if self._evaluator.evaluate_buy(snapshot):
                if self._storage.upsert_candidate(snapshot, buy_signal=True):
                    signals += 1
            elif active is not None:
                self._storage.refresh_position_metrics(snapshot)
        return signals

    def _evaluate_sells(self) -> int:
        flagged = 0
        lookback = self._config.scoring.lookback
        for position in self._storage.get_open_positions():
            if position.id is None or position.state != PositionState.OPEN:
                continue
            history = self._storage.get_recent_snapshots(
                lookback, token_address=position.token_address, chain_id=position.chain_id
            )
            decision = self._evaluator.evaluate_sell(position, self._current_quote(position, history), history)
            if decision.stop_loss_level is not None:
                self._storage.raise_stop_loss(position.id, decision.stop_loss_level)
            if decision.should_sell and self._storage.mark_sell_signal(position.id, decision.reason):
                flagged += 1
                self._logger.info(
                    "Sell signal for %s: %s",
                    position.symbol or position.token_address,
                    decision.reason,
                    extra={"position_id": position.id, "pnl": decision.profit_loss_percent},
                )
        return flagged

    def _current_quote(self, position: Position, history: List[TokenSnapshot]) -> Optional[float]:
        """On-chain exit quote for the held amount, else the latest native price seen."""

        if position.token_amount:
            try:
                quote = self._executor.quote_price(position.chain_id, position.token_address, position.token_amount)
            except TradingError as exc:
                self._logger.warning("On-chain quote unavailable for %s: %s", position.token_address, exc)
            else:
                if quote is not None:
                    return quote
        if history and history[0].price_native is not None:
            return history[0].price_native
        return position.price_native

    def _summarize(self, stats: Dict[str, Any]) -> str:
        positions = stats.get("positions", {})
        return (
            f"Cycle complete: {stats['snapshots']} snapshots, "
            f"{stats['buy_signals']} buy signals, {stats['sell_signals']} sell signals, "
            f"{stats['bought']} bought, {stats['sold']} sold; "
            f"{positions.get(PositionState.OPEN.value, 0)} open, "
            f"{positions.get(PositionState.FLAGGED.value, 0)} flagged"
        )


__all__ = ["HousekeepingService", "performance_monitor"]
