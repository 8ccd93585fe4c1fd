"""Z-score factor scoring against a token's own recent history."""

from __future__ import annotations

from statistics import fmean, pstdev
from typing import Dict, Optional, Sequence

from ..config.settings import ScoringConfig, get_app_config
from ..datalake.schemas import FactorScores, TokenSnapshot

MIN_HISTORY_POINTS = 3
FACTORS = ("price", "volume", "mindshare", "liquidity", "holders")


def z_score(current: float, history: Sequence[float], *, min_history: int = MIN_HISTORY_POINTS) -> float:
    """Deviation of ``current`` from the mean of ``history`` in standard deviations.

    The spread is the population standard deviation of the history together
    with the current observation, so a jump away from a perfectly flat history
    still registers. Returns ``0.0`` with fewer than ``min_history`` points or
    zero spread.
    """

    points = [float(value) for value in history if value is not None]
    if len(points) < max(min_history, MIN_HISTORY_POINTS):
        return 0.0
    spread = pstdev([*points, float(current)])
    if spread == 0:
        return 0.0
    return (float(current) - fmean(points)) / spread


def factor_value(snapshot: TokenSnapshot, factor: str) -> float:
    if factor == "price":
        return snapshot.price
    if factor == "volume":
        return snapshot.volume_24h
    if factor == "mindshare":
        return snapshot.mindshare
    if factor == "liquidity":
        return snapshot.liquidity
    if factor == "holders":
        return float(snapshot.holders_count)
    raise KeyError(factor)


class ScoreEngine:
    """Deterministic composite scoring with configurable weights."""

    def __init__(self, config: Optional[ScoringConfig] = None) -> None:
        self._config = config or get_app_config().scoring

    @property
    def weights(self) -> Dict[str, float]:
        return self._config.weights()

    @property
    def lookback(self) -> int:
        return self._config.lookback

    def factor_scores(self, current: TokenSnapshot, history: Sequence[TokenSnapshot]) -> FactorScores:
        window = list(history)[: self._config.lookback]
        scores = {
            factor: z_score(
                factor_value(current, factor),
                [factor_value(item, factor) for item in window],
                min_history=self._config.min_history,
            )
            for factor in FACTORS
        }
        return FactorScores(**scores)

    def apply(self, current: TokenSnapshot, history: Sequence[TokenSnapshot]) -> TokenSnapshot:
        """Fill the momentum and composite fields of ``current`` in place and return it."""

        scores = self.factor_scores(current, history)
        current.price_momentum = scores.price
        current.volume_momentum = scores.volume
        current.mindshare_momentum = scores.mindshare
        current.liquidity_momentum = scores.liquidity
        current.holders_momentum = scores.holders
        current.total_score = scores.composite(self.weights)
        return current


__all__ = ["FACTORS", "MIN_HISTORY_POINTS", "ScoreEngine", "factor_value", "z_score"]
