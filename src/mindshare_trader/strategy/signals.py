"""Entry and exit rules applied to scored snapshots and open positions."""

from __future__ import annotations

from typing import Optional, Sequence, Set, Tuple

from ..analysis.aggregator import parse_forced_token
from ..analytics.pnl import unrealized_pnl_pct
from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import Position, PositionState, SellDecision, TokenSnapshot
from ..datalake.storage import SQLiteStorage
from ..monitoring.logger import get_logger


class SignalEvaluator:
    """Stateless rule set; all persistence is left to the caller."""

    def __init__(self, storage: SQLiteStorage, *, config: Optional[AppConfig] = None) -> None:
        self._storage = storage
        self._config = config or get_app_config()
        self._signals = self._config.signals
        self._logger = get_logger(__name__)

    def _forced_tokens(self) -> Set[Tuple[str, int]]:
        allowed = self._config.trading.allowed_chain_ids
        default_chain = allowed[0] if allowed else None
        forced: Set[Tuple[str, int]] = set()
        for entry in self._config.trading.force_buy_tokens:
            parsed = parse_forced_token(entry, default_chain)
            if parsed is not None:
                forced.add((parsed[1].lower(), parsed[0]))
        return forced

    def evaluate_buy(self, snapshot: TokenSnapshot) -> bool:
        if snapshot.chain_id not in self._config.tradeable_chain_ids():
            return False
        if self._storage.get_active_position(snapshot.token_address, snapshot.chain_id) is not None:
            return False
        if (snapshot.token_address.lower(), snapshot.chain_id) in self._forced_tokens():
            self._logger.info("Forced buy signal for %s", snapshot.token_address)
            return True
        return snapshot.total_score >= self._signals.buy_threshold

    def evaluate_sell(
        self,
        position: Position,
        current_quote: Optional[float],
        history: Sequence[TokenSnapshot],
    ) -> SellDecision:
        """Decide whether an open position should be flagged for sale.

        ``current_quote`` is the current price in the chain's base asset and
        ``history`` is newest first. A tightened trailing stop is reported in
        ``stop_loss_level`` even when no exit fires; the caller persists it.
        """

        state = position.state
        if state == PositionState.FLAGGED:
            return SellDecision(False, "already flagged")
        if state != PositionState.OPEN:
            return SellDecision(False, "not open")
        if self._signals.force_sell:
            return SellDecision(True, "forced")

        pnl: Optional[float] = None
        stop = position.stop_loss_level if position.stop_loss_level is not None else self._signals.stop_loss_pct
        new_stop: Optional[float] = None
        if current_quote is not None and current_quote > 0 and position.entry_price:
            pnl = unrealized_pnl_pct(position.entry_price, current_quote)
            if pnl >= self._signals.trailing_activation_pct and stop < self._signals.trailing_stop_pct:
                stop = self._signals.trailing_stop_pct
                new_stop = stop
            if pnl >= self._signals.profit_target_pct:
                return SellDecision(True, "profit_target", pnl, new_stop)
            if pnl <= stop:
                reason = "trailing_stop" if stop > self._signals.stop_loss_pct else "stop_loss"
                return SellDecision(True, reason, pnl, new_stop)

        latest = history[0] if history else None
        if latest is not None:
            entry_volume = position.entry_volume_24h
            if entry_volume and entry_volume > 0:
                floor = entry_volume * (1.0 - self._signals.volume_collapse_pct / 100.0)
                if latest.volume_24h < floor:
                    return SellDecision(True, "volume_collapse", pnl, new_stop)
            if latest.price_momentum < self._signals.momentum_reversal_z:
                return SellDecision(True, "momentum_reversal", pnl, new_stop)

        return SellDecision(False, "hold", pnl, new_stop)


__all__ = ["SignalEvaluator"]
