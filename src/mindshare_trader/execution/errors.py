"""Typed failures raised by data providers and the trade execution engine."""

from __future__ import annotations

from typing import Optional


class TradingError(Exception):
    """Base class for every recoverable failure the engine reports."""

    user_message = "Trade failed"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ExternalDataError(TradingError):
    """A market or social data provider returned an error or a malformed payload."""

    user_message = "Market data unavailable"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ChainConfigurationError(TradingError):
    """The requested chain is unknown or missing RPC, key, or router settings."""

    user_message = "Chain is not configured for trading"


class NoLiquidityRouteError(TradingError):
    """No router path returned a non-zero quote for the pair."""

    user_message = "No liquidity route for this token"


class InsufficientBalanceError(TradingError):
    """The wallet does not hold enough of the asset being sold."""

    user_message = "No token balance to sell"


class InvalidTradeRequestError(TradingError):
    """A token address or amount supplied for a trade cannot be used."""

    user_message = "Invalid token address or amount"


class ChainExecutionError(TradingError):
    """Submission or confirmation of a transaction failed."""

    user_message = "Transaction failed"

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, user_message: Optional[str] = None) -> None:
        super().__init__(message, user_message=user_message)
        self.tx_hash = tx_hash


class TransactionRevertedError(ChainExecutionError):
    user_message = "Transaction reverted on-chain"

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, reason: Optional[str] = None) -> None:
        super().__init__(message, tx_hash=tx_hash)
        self.reason = reason


class TransactionTimeoutError(ChainExecutionError):
    user_message = "Transaction was not confirmed in time"


class RPCError(ChainExecutionError):
    user_message = "Blockchain node unavailable"


__all__ = [
    "ChainConfigurationError",
    "ChainExecutionError",
    "ExternalDataError",
    "InsufficientBalanceError",
    "InvalidTradeRequestError",
    "NoLiquidityRouteError",
    "RPCError",
    "TradingError",
    "TransactionRevertedError",
    "TransactionTimeoutError",
]
