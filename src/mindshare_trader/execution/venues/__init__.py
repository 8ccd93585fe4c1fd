"""Router adapters for Uniswap V3 and V2-style DEXes."""

from ...config.settings import RouterKind
from ..client import ChainClient
from .base import RouterVenue, SwapCall, SwapQuote, min_amount_out
from .uniswap_v2 import UniswapV2Venue
from .uniswap_v3 import UniswapV3Venue


def venue_for_client(client: ChainClient) -> RouterVenue:
    if client.chain.router_kind == RouterKind.UNISWAP_V2:
        return UniswapV2Venue(client)
    return UniswapV3Venue(client)


__all__ = [
    "RouterVenue",
    "SwapCall",
    "SwapQuote",
    "UniswapV2Venue",
    "UniswapV3Venue",
    "min_amount_out",
    "venue_for_client",
]
