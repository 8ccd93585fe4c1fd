"""Data models used across ingestion, analysis, execution, and storage layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionState(str, Enum):
    """Lifecycle stage of a tracked position."""

    CANDIDATE = "candidate"
    OPEN = "open"
    FLAGGED = "flagged"
    CLOSED = "closed"


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(slots=True)
class MarketMetrics:
    """Best-pair market facts for one token on one chain."""

    token_address: str
    chain_id: int
    price_usd: float
    liquidity_usd: float
    volume_24h: float
    price_native: Optional[float] = None
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None
    quote_token_address: Optional[str] = None
    symbol: Optional[str] = None


@dataclass(slots=True)
class SocialMetrics:
    """Attention and holder statistics reported by the social data provider."""

    agent_name: str
    mindshare: float
    mindshare_delta_pct: float = 0.0
    holders_count: int = 0
    price: Optional[float] = None
    price_delta_pct: Optional[float] = None
    liquidity: Optional[float] = None
    volume_24h: Optional[float] = None
    contracts: List[Tuple[int, str]] = field(default_factory=list)


@dataclass(slots=True)
class CandidateToken:
    """A token the aggregator should refresh this cycle."""

    token_address: str
    chain_id: int
    chain_name: str
    symbol: str = ""
    social: Optional[SocialMetrics] = None
    source: str = "trending"
    forced: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.token_address.lower(), self.chain_id)


@dataclass(slots=True)
class FactorScores:
    """Per-factor z-scores for one observation."""

    price: float = 0.0
    volume: float = 0.0
    mindshare: float = 0.0
    liquidity: float = 0.0
    holders: float = 0.0

    def composite(self, weights: Dict[str, float]) -> float:
        return (
            self.price * weights.get("price", 0.0)
            + self.volume * weights.get("volume", 0.0)
            + self.mindshare * weights.get("mindshare", 0.0)
            + self.liquidity * weights.get("liquidity", 0.0)
            + self.holders * weights.get("holders", 0.0)
        )


@dataclass(slots=True)
class TokenSnapshot:
    """Immutable market/social observation of a token at a point in time."""

    token_address: str
    chain_id: int
    chain_name: str
    symbol: str
    mindshare: float
    liquidity: float
    volume_24h: float
    holders_count: int
    price: float
    timestamp: datetime
    price_native: Optional[float] = None
    price_momentum: float = 0.0
    volume_momentum: float = 0.0
    mindshare_momentum: float = 0.0
    liquidity_momentum: float = 0.0
    holders_momentum: float = 0.0
    social_momentum: float = 0.0
    total_score: float = 0.0


@dataclass(slots=True)
class Position:
    """Persisted row tracking a token from candidate through to close."""

    token_address: str
    chain_id: int
    chain_name: str
    symbol: str
    mindshare: float = 0.0
    liquidity: float = 0.0
    volume_24h: float = 0.0
    holders_count: int = 0
    price: float = 0.0
    price_native: Optional[float] = None
    price_momentum: float = 0.0
    volume_momentum: float = 0.0
    mindshare_momentum: float = 0.0
    liquidity_momentum: float = 0.0
    holders_momentum: float = 0.0
    social_momentum: float = 0.0
    total_score: float = 0.0
    id: Optional[int] = None
    buy_signal: bool = False
    sell_signal: bool = False
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    profit_loss_percent: Optional[int] = None
    stop_loss_level: Optional[float] = None
    finalized: bool = False
    entry_volume_24h: Optional[float] = None
    token_amount: Optional[float] = None
    base_amount: Optional[float] = None
    entry_tx: Optional[str] = None
    exit_tx: Optional[str] = None
    sell_reason: Optional[str] = None
    pending_tx: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def state(self) -> PositionState:
        if self.finalized:
            return PositionState.CLOSED
        if self.entry_price is None:
            return PositionState.CANDIDATE
        if self.sell_signal:
            return PositionState.FLAGGED
        return PositionState.OPEN


@dataclass(slots=True)
class TradeReceipt:
    """Realized outcome of a confirmed swap."""

    trade_id: str
    token_address: str
    chain_id: int
    action: TradeAction
    price: float
    amount: float
    base_amount: float
    symbol: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    dry_run: bool = False


class SellDecision(NamedTuple):
    """Outcome of the exit rules for one open position."""

    should_sell: bool
    reason: str
    profit_loss_percent: Optional[float] = None
    stop_loss_level: Optional[float] = None


@dataclass(slots=True)
class TradeResult:
    """User-facing result of a buy or sell request."""

    success: bool
    message: str
    receipt: Optional[TradeReceipt] = None
    position_id: Optional[int] = None
    explorer_url: Optional[str] = None


@dataclass(slots=True)
class CycleResult:
    """Summary delivered to the host after every housekeeping cycle."""

    success: bool
    summary: str
    skipped: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReconciliationItem:
    """An on-chain trade whose outcome or bookkeeping needs an operator."""

    action: TradeAction
    trade_id: str
    token_address: str
    chain_id: int
    position_id: Optional[int]
    error: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


__all__ = [
    "CandidateToken",
    "CycleResult",
    "FactorScores",
    "MarketMetrics",
    "Position",
    "PositionState",
    "ReconciliationItem",
    "SellDecision",
    "SocialMetrics",
    "TokenSnapshot",
    "TradeAction",
    "TradeReceipt",
    "TradeResult",
    "utcnow",
]
