"""Profit and loss arithmetic shared by the signal rules and the position store."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from ..datalake.schemas import Position


def unrealized_pnl_pct(entry_price: float, current_price: float) -> float:
    """Percentage change from ``entry_price`` to ``current_price``."""

    if entry_price <= 0:
        raise ValueError("entry price must be positive")
    return (current_price - entry_price) / entry_price * 100.0


def profit_loss_percent(entry_price: float, exit_price: float) -> int:
    """Realized percentage rounded half-up to an integer.

    Half-up means toward positive infinity, so -12.5 becomes -12 and 12.5
    becomes 13.
    """

    return int(math.floor(unrealized_pnl_pct(entry_price, exit_price) + 0.5))


@dataclass(slots=True)
class PerformanceSummary:
    """Aggregate figures over closed positions."""

    closed: int
    winners: int
    losers: int
    average_pnl_pct: float
    best_pnl_pct: Optional[int]
    worst_pnl_pct: Optional[int]

    @property
    def win_rate(self) -> float:
        return self.winners / self.closed if self.closed else 0.0


def summarize_closed(positions: Iterable[Position]) -> PerformanceSummary:
    results = [p.profit_loss_percent for p in positions if p.finalized and p.profit_loss_percent is not None]
    if not results:
        return PerformanceSummary(0, 0, 0, 0.0, None, None)
    return PerformanceSummary(
        closed=len(results),
        winners=sum(1 for value in results if value > 0),
        losers=sum(1 for value in results if value < 0),
        average_pnl_pct=sum(results) / len(results),
        best_pnl_pct=max(results),
        worst_pnl_pct=min(results),
    )


__all__ = ["PerformanceSummary", "profit_loss_percent", "summarize_closed", "unrealized_pnl_pct"]
