"""Glue between the execution engine and the position store.

Every confirmed trade is written back with a bounded retry. When the row can
no longer be updated the trade is parked in the manual reconciliation table
and an alert is raised, since the funds have already moved.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, List, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import (
    Position,
    PositionState,
    ReconciliationItem,
    TokenSnapshot,
    TradeAction,
    TradeReceipt,
    TradeResult,
    utcnow,
)
from ..datalake.storage import SQLiteStorage
from ..monitoring.alerts import AlertManager, AlertSeverity
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .engine import TradeExecutor
from .errors import (
    ChainConfigurationError,
    ChainExecutionError,
    InsufficientBalanceError,
    InvalidTradeRequestError,
    NoLiquidityRouteError,
    TradingError,
)


class TokenTrader:
    """Executes pending buys and sells and records the resulting state transitions."""

    def __init__(
        self,
        storage: SQLiteStorage,
        executor: TradeExecutor,
        *,
        config: Optional[AppConfig] = None,
        alerts: Optional[AlertManager] = None,
    ) -> None:
        self._storage = storage
        self._executor = executor
        self._config = config or get_app_config()
        self._alerts = alerts
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Scheduled processing
    # ------------------------------------------------------------------
    def process_pending_buys(self) -> List[TradeResult]:
        limit = self._config.execution.max_trades_per_cycle
        tradeable = set(self._config.tradeable_chain_ids())
        results: List[TradeResult] = []
        for position in self._storage.get_buy_candidates():
            if len(results) >= limit:
                self._logger.info("Buy limit of %s reached for this cycle", limit)
                break
            if position.chain_id not in tradeable:
                continue
            results.append(self._guarded("buy", position, self._buy))
        return results

    def process_pending_sells(self) -> List[TradeResult]:
        results: List[TradeResult] = []
        for position in self._storage.get_sell_candidates():
            results.append(self._guarded("sell", position, self._sell))
        return results

    # ------------------------------------------------------------------
    # Manual requests
    # ------------------------------------------------------------------
    def manual_buy(self, token_address: str, chain_id: int, amount: Optional[str] = None) -> TradeResult:
        """Buy outside the signal loop; refused while the token already has an open position."""

        if self._storage.has_open_position(token_address, chain_id):
            return TradeResult(False, f"Position already open for {token_address}")
        held = self._storage.get_active_position(token_address, chain_id)
        if held is not None and held.pending_tx:
            return TradeResult(False, f"Transaction {held.pending_tx} for {token_address} awaits reconciliation")
        try:
            receipt = self._executor.buy(chain_id, token_address, amount)
        except TradingError as exc:
            self._park_submitted(TradeAction.BUY, token_address, chain_id, held.id if held else None, exc)
            return self._failure("manual buy", token_address, chain_id, exc)

        def record() -> bool:
            existing = self._storage.get_active_position(token_address, chain_id)
            if existing is None:
                self._storage.upsert_candidate(self._manual_snapshot(receipt), buy_signal=False)
                existing = self._storage.get_active_position(token_address, chain_id)
            if existing is None or existing.id is None:
                return False
            return self._storage.mark_bought(existing.id, receipt, stop_loss_level=self._config.signals.stop_loss_pct)

        self._write_back(receipt, None, record)
        active = self._storage.get_active_position(token_address, chain_id)
        return self._success(receipt, active.id if active else None)

    def manual_sell(self, token_address: str, chain_id: int) -> TradeResult:
        """Sell an open position now, flagging it first so the normal exit path applies."""

        position = self._storage.get_active_position(token_address, chain_id)
        if position is None or position.id is None or position.state == PositionState.CANDIDATE:
            return TradeResult(False, f"No open position for {token_address}")
        if position.pending_tx:
            return TradeResult(False, f"Transaction {position.pending_tx} for {token_address} awaits reconciliation")
        if position.state == PositionState.OPEN:
            self._storage.mark_sell_signal(position.id, "manual")
            position = self._storage.get_position(position.id) or position
        return self._guarded("manual_sell", position, self._sell)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _guarded(self, action: str, position: Position, handler: Callable[[Position], TradeResult]) -> TradeResult:
        try:
            return handler(position)
        except Exception:  # noqa: BLE001
            METRICS.increment(f"trader_{action}_errors")
            self._logger.exception(
                "Unexpected error during %s of %s on chain %s", action, position.token_address, position.chain_id
            )
            return TradeResult(False, TradingError.user_message, position_id=position.id)

    def _buy(self, position: Position) -> TradeResult:
        if position.id is None:
            return TradeResult(False, f"Position for {position.token_address} is not stored")
        position_id = position.id
        try:
            receipt = self._executor.buy(position.chain_id, position.token_address, symbol=position.symbol)
        except NoLiquidityRouteError as exc:
            METRICS.increment("trader_buy_no_route")
            self._logger.info("No route for %s on chain %s: %s", position.token_address, position.chain_id, exc)
            return TradeResult(False, exc.user_message, position_id=position_id)
        except TradingError as exc:
            self._park_submitted(TradeAction.BUY, position.token_address, position.chain_id, position_id, exc)
            return self._failure("buy", position.token_address, position.chain_id, exc, position_id)

        stop = self._config.signals.stop_loss_pct
        self._write_back(receipt, position_id, lambda: self._storage.mark_bought(position_id, receipt, stop_loss_level=stop))
        return self._success(receipt, position_id)

    def _sell(self, position: Position) -> TradeResult:
        if position.id is None:
            return TradeResult(False, f"Position for {position.token_address} is not stored")
        position_id = position.id
        try:
            receipt = self._executor.sell(
                position.chain_id,
                position.token_address,
                position.token_amount,
                symbol=position.symbol,
            )
        except InsufficientBalanceError as exc:
            METRICS.increment("trader_sell_no_balance")
            self._logger.warning("Cannot sell %s: %s", position.token_address, exc)
            return TradeResult(False, exc.user_message, position_id=position_id)
        except TradingError as exc:
            self._park_submitted(TradeAction.SELL, position.token_address, position.chain_id, position_id, exc)
            return self._failure("sell", position.token_address, position.chain_id, exc, position_id)

        closed: List[Position] = []

        def record() -> bool:
            result = self._storage.finalize_sold(position_id, receipt)
            if result is not None:
                closed.append(result)
            return result is not None

        self._write_back(receipt, position_id, record)
        result = self._success(receipt, position_id)
        if closed and closed[0].profit_loss_percent is not None:
            result.message = f"{result.message} ({closed[0].profit_loss_percent:+d}%)"
        return result

    def _park_submitted(
        self,
        action: TradeAction,
        token_address: str,
        chain_id: int,
        position_id: Optional[int],
        exc: TradingError,
    ) -> None:
        """Hold a row whose swap reached the chain so it is never submitted again automatically."""

        tx_hash = getattr(exc, "tx_hash", None)
        if not isinstance(exc, ChainExecutionError) or not tx_hash or self._executor.dry_run:
            return
        if position_id is not None:
            try:
                self._storage.hold_pending_tx(position_id, tx_hash)
            except sqlite3.Error:
                self._logger.exception("Could not hold position %s on %s", position_id, tx_hash)
        self._reconcile(
            ReconciliationItem(
                action=action,
                trade_id=tx_hash,
                token_address=token_address,
                chain_id=chain_id,
                position_id=position_id,
                error=f"submitted transaction has no confirmed outcome: {exc}",
                payload={"stage": "submitted", "error_type": type(exc).__name__},
            )
        )

    def _write_back(self, receipt: TradeReceipt, position_id: Optional[int], operation: Callable[[], bool]) -> bool:
        execution = self._config.execution
        retryer = Retrying(
            stop=stop_after_attempt(execution.writeback_attempts),
            wait=wait_fixed(execution.writeback_backoff_seconds),
            retry=retry_if_exception_type(sqlite3.Error),
            before_sleep=before_sleep_log(self._logger, logging.WARNING),
            reraise=True,
        )
        try:
            if retryer(operation):
                return True
            error = "position changed state before the trade could be recorded"
        except sqlite3.Error as exc:
            error = f"storage write failed: {exc}"

        METRICS.increment("trader_writeback_failures")
        if receipt.dry_run:
            self._logger.warning("Dry-run %s of %s not recorded: %s", receipt.action.value, receipt.token_address, error)
            return False
        self._reconcile(
            ReconciliationItem(
                action=receipt.action,
                trade_id=receipt.trade_id,
                token_address=receipt.token_address,
                chain_id=receipt.chain_id,
                position_id=position_id,
                error=error,
                payload={
                    "price": receipt.price,
                    "amount": receipt.amount,
                    "base_amount": receipt.base_amount,
                    "timestamp": receipt.timestamp.isoformat(),
                },
            )
        )
        return False

    def _reconcile(self, item: ReconciliationItem) -> None:
        METRICS.increment("trader_reconciliation_items")
        try:
            self._storage.record_reconciliation_item(item)
        except sqlite3.Error:
            self._logger.exception("Could not persist reconciliation item for %s", item.trade_id)
        self._logger.critical(
            "%s %s needs manual reconciliation: %s",
            item.action.value.capitalize(),
            item.trade_id,
            item.error,
            extra={"token_address": item.token_address, "chain_id": item.chain_id},
        )
        if self._alerts is not None:
            self._alerts.send(
                f"Manual reconciliation needed for {item.action.value} {item.trade_id}",
                severity=AlertSeverity.CRITICAL,
                key=f"reconcile:{item.trade_id}",
                extra={"error": item.error},
            )

    def _failure(
        self,
        action: str,
        token_address: str,
        chain_id: int,
        exc: TradingError,
        position_id: Optional[int] = None,
    ) -> TradeResult:
        METRICS.increment(f"trader_{action.replace(' ', '_')}_failures")
        quiet = isinstance(exc, (ChainConfigurationError, InvalidTradeRequestError))
        level = logging.WARNING if quiet else logging.ERROR
        self._logger.log(level, "%s of %s on chain %s failed: %s", action.capitalize(), token_address, chain_id, exc)
        message = exc.user_message
        tx_hash = getattr(exc, "tx_hash", None)
        explorer = None
        if tx_hash:
            chain = self._config.chain_by_id(chain_id)
            explorer = chain.explorer_link(tx_hash) if chain else None
        return TradeResult(False, message, position_id=position_id, explorer_url=explorer)

    def _success(self, receipt: TradeReceipt, position_id: Optional[int]) -> TradeResult:
        chain = self._config.chain_by_id(receipt.chain_id)
        asset = chain.base_asset_symbol if chain else "base"
        verb = "Bought" if receipt.action == TradeAction.BUY else "Sold"
        label = receipt.symbol or receipt.token_address
        message = f"{verb} {receipt.amount:.6g} {label} for {receipt.base_amount:.6g} {asset} at {receipt.price:.6g}"
        if receipt.dry_run:
            message = f"[dry-run] {message}"
        explorer = chain.explorer_link(receipt.trade_id) if chain and not receipt.dry_run else None
        self._logger.info("%s", message, extra={"trade_id": receipt.trade_id, "position_id": position_id})
        return TradeResult(True, message, receipt=receipt, position_id=position_id, explorer_url=explorer)

    def _manual_snapshot(self, receipt: TradeReceipt) -> TokenSnapshot:
        history = self._storage.get_recent_snapshots(1, token_address=receipt.token_address, chain_id=receipt.chain_id)
        if history:
            return history[0]
        chain = self._config.chain_by_id(receipt.chain_id)
        return TokenSnapshot(
            token_address=receipt.token_address,
            chain_id=receipt.chain_id,
            chain_name=chain.name if chain else str(receipt.chain_id),
            symbol=receipt.symbol,
            mindshare=0.0,
            liquidity=0.0,
            volume_24h=0.0,
            holders_count=0,
            price=0.0,
            price_native=receipt.price,
            timestamp=utcnow(),
        )


__all__ = ["TokenTrader"]
