"""Uniswap V3 adapter: QuoterV2 across fee tiers, SwapRouter02 for execution."""

from __future__ import annotations

from typing import Optional

from web3.exceptions import ContractLogicError

from ...monitoring.logger import get_logger
from ...utils.constants import QUOTER_V2_ABI, SWAP_ROUTER_02_ABI
from ..client import ChainClient
from ..errors import ChainConfigurationError, NoLiquidityRouteError, RPCError
from .base import SwapCall, SwapQuote


class UniswapV3Venue:
    name = "uniswap_v3"

    def __init__(self, client: ChainClient) -> None:
        chain = client.chain
        if not chain.router_address or not chain.quoter_address:
            raise ChainConfigurationError(f"Uniswap V3 router or quoter missing for {chain.name}")
        self._client = client
        self._fee_tiers = list(chain.fee_tiers)
        self._router = client.contract(chain.router_address, SWAP_ROUTER_02_ABI)
        self._quoter = client.contract(chain.quoter_address, QUOTER_V2_ABI)
        self._logger = get_logger(__name__)

    @property
    def spender(self) -> str:
        return self._router.address

    def quote(self, token_in: str, token_out: str, amount_in: int) -> SwapQuote:
        checksum_in = self._client.checksum(token_in)
        checksum_out = self._client.checksum(token_out)
        best: Optional[SwapQuote] = None
        answered = False
        last_error: Optional[RPCError] = None
        for fee in self._fee_tiers:
            params = (checksum_in, checksum_out, int(amount_in), fee, 0)
            try:
                result = self._client.call(self._quoter.functions.quoteExactInputSingle(params))
            except ContractLogicError:
                # Missing pool or insufficient liquidity in this tier.
                answered = True
                continue
            except RPCError as exc:
                last_error = exc
                self._logger.warning("Quote failed for fee tier %s: %s", fee, exc)
                continue
            answered = True
            amount_out = int(result[0])
            if amount_out > 0 and (best is None or amount_out > best.amount_out):
                best = SwapQuote(self.name, token_in, token_out, int(amount_in), amount_out, fee)
        if best is not None:
            return best
        if not answered and last_error is not None:
            raise last_error
        raise NoLiquidityRouteError(f"No Uniswap V3 pool quotes {token_in} -> {token_out}")

    def build_swap(
        self,
        quote: SwapQuote,
        *,
        recipient: str,
        min_amount_out: int,
        deadline: int,
        pay_native: bool,
    ) -> SwapCall:
        params = (
            self._client.checksum(quote.token_in),
            self._client.checksum(quote.token_out),
            quote.fee_tier,
            self._client.checksum(recipient),
            quote.amount_in,
            int(min_amount_out),
            0,
        )
        data = self._router.encode_abi("exactInputSingle", args=[params])
        function = self._router.functions.multicall(int(deadline), [data])
        return SwapCall(function=function, value=quote.amount_in if pay_native else 0)


__all__ = ["UniswapV3Venue"]
