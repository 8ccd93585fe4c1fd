"""Shared dataclasses and interfaces for router adapters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from ...utils.constants import BPS_DENOMINATOR


def min_amount_out(amount_out: int, slippage_bps: int) -> int:
    """Lower bound on the swap output allowed by ``slippage_bps``."""

    if not 0 <= slippage_bps < BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps out of range: {slippage_bps}")
    return amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


@dataclass(slots=True)
class SwapQuote:
    """Best exact-input quote a venue found for a pair."""

    venue: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    fee_tier: Optional[int] = None


@dataclass(slots=True)
class SwapCall:
    """Unsigned router call plus the native value that must accompany it."""

    function: Any
    value: int = 0


class RouterVenue(Protocol):
    """Protocol implemented by all router adapters."""

    name: str

    @property
    def spender(self) -> str:
        """Address that needs an ERC-20 allowance before selling."""

    def quote(self, token_in: str, token_out: str, amount_in: int) -> SwapQuote:
        """Return the best non-zero quote or raise ``NoLiquidityRouteError``."""

    def build_swap(
        self,
        quote: SwapQuote,
        *,
        recipient: str,
        min_amount_out: int,
        deadline: int,
        pay_native: bool,
    ) -> SwapCall:
        """Convert a quote into a router call ready to be signed."""


__all__ = ["RouterVenue", "SwapCall", "SwapQuote", "min_amount_out"]
