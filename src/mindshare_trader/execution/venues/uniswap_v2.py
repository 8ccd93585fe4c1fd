"""Uniswap V2-style router adapter (single-hop paths through the base asset)."""

from __future__ import annotations

from web3.exceptions import ContractLogicError

from ...utils.constants import UNISWAP_V2_ROUTER_ABI
from ..client import ChainClient
from ..errors import ChainConfigurationError, NoLiquidityRouteError
from .base import SwapCall, SwapQuote


class UniswapV2Venue:
    name = "uniswap_v2"

    def __init__(self, client: ChainClient) -> None:
        chain = client.chain
        if not chain.router_address:
            raise ChainConfigurationError(f"V2 router missing for {chain.name}")
        self._client = client
        self._router = client.contract(chain.router_address, UNISWAP_V2_ROUTER_ABI)

    @property
    def spender(self) -> str:
        return self._router.address

    def _path(self, token_in: str, token_out: str) -> list:
        return [self._client.checksum(token_in), self._client.checksum(token_out)]

    def quote(self, token_in: str, token_out: str, amount_in: int) -> SwapQuote:
        try:
            amounts = self._client.call(
                self._router.functions.getAmountsOut(int(amount_in), self._path(token_in, token_out))
            )
        except ContractLogicError as exc:
            raise NoLiquidityRouteError(f"No V2 pair for {token_in} -> {token_out}: {exc}") from exc
        amount_out = int(amounts[-1]) if amounts else 0
        if amount_out <= 0:
            raise NoLiquidityRouteError(f"Zero V2 quote for {token_in} -> {token_out}")
        return SwapQuote(self.name, token_in, token_out, int(amount_in), amount_out)

    def build_swap(
        self,
        quote: SwapQuote,
        *,
        recipient: str,
        min_amount_out: int,
        deadline: int,
        pay_native: bool,
    ) -> SwapCall:
        path = self._path(quote.token_in, quote.token_out)
        to = self._client.checksum(recipient)
        if pay_native:
            function = self._router.functions.swapExactETHForTokens(int(min_amount_out), path, to, int(deadline))
            return SwapCall(function=function, value=quote.amount_in)
        function = self._router.functions.swapExactTokensForTokens(
            quote.amount_in, int(min_amount_out), path, to, int(deadline)
        )
        return SwapCall(function=function)


__all__ = ["UniswapV2Venue"]
