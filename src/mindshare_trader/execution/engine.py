"""Trade execution engine: quote, bound slippage, submit, and read realized amounts."""

from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed
from web3 import Web3

from ..config.settings import AppConfig, ChainConfig, get_app_config
from ..datalake.schemas import TradeAction, TradeReceipt
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .chains import ChainRegistry
from .client import ChainClient, hex_string, parse_transfer_amount
from .errors import ChainExecutionError, InsufficientBalanceError, InvalidTradeRequestError, RPCError
from .venues import RouterVenue, SwapQuote, min_amount_out


def to_raw(amount: Union[str, float, Decimal], decimals: int) -> int:
    try:
        return int(Decimal(str(amount)) * (Decimal(10) ** decimals))
    except (InvalidOperation, ValueError, OverflowError) as exc:
        raise InvalidTradeRequestError(f"Invalid amount {amount!r}") from exc


def check_token_address(token_address: str) -> str:
    if not isinstance(token_address, str) or not Web3.is_address(token_address.lower()):
        raise InvalidTradeRequestError(f"Invalid token address {token_address!r}")
    return token_address


def to_human(raw: int, decimals: int) -> float:
    return float(Decimal(int(raw)) / (Decimal(10) ** decimals))


class TradeExecutor:
    """Buys with the chain's native asset and sells back into its wrapped form."""

    def __init__(self, config: Optional[AppConfig] = None, *, registry: Optional[ChainRegistry] = None) -> None:
        self._config = config or get_app_config()
        self._registry = registry or ChainRegistry(self._config)
        self._trading = self._config.trading
        self._execution = self._config.execution
        self._logger = get_logger(__name__)

    @property
    def dry_run(self) -> bool:
        return self._trading.dry_run

    @property
    def registry(self) -> ChainRegistry:
        return self._registry

    def _context(self, chain_id: int) -> tuple[ChainConfig, ChainClient, RouterVenue]:
        chain = self._registry.require(chain_id, signing=not self.dry_run)
        return chain, self._registry.client(chain_id), self._registry.venue(chain_id)

    def _deadline(self, chain: ChainConfig) -> int:
        return int(time.time()) + chain.deadline_seconds

    def _trade_id(self) -> str:
        return f"dry-run-{uuid.uuid4()}"

    def _read_balance(self, client: ChainClient, token_address: str) -> int:
        retryer = Retrying(
            stop=stop_after_attempt(self._execution.balance_read_attempts),
            wait=wait_fixed(self._execution.balance_read_backoff_seconds),
            retry=retry_if_exception_type(RPCError),
            before_sleep=before_sleep_log(self._logger, logging.WARNING),
            reraise=True,
        )
        return retryer(client.token_balance, token_address)

    def buy(
        self,
        chain_id: int,
        token_address: str,
        base_amount: Optional[Union[str, float]] = None,
        *,
        symbol: str = "",
    ) -> TradeReceipt:
        """Swap ``base_amount`` of the native asset (default ``trading.trade_amount``) into the token."""

        check_token_address(token_address)
        chain, client, venue = self._context(chain_id)
        amount = base_amount if base_amount is not None else self._trading.trade_amount
        amount_in = to_raw(amount, chain.base_asset_decimals)
        if amount_in <= 0:
            raise InvalidTradeRequestError(f"Buy amount must be positive, got {amount!r}")

        with METRICS.timer("execution_buy_seconds"):
            quote = venue.quote(chain.base_asset_address, token_address, amount_in)
            decimals = client.token_decimals(token_address)
            if self.dry_run:
                trade_id, tokens_raw = self._trade_id(), quote.amount_out
                self._logger.info("Dry-run buy of %s on %s quoted %s raw tokens", token_address, chain.name, tokens_raw)
            else:
                trade_id, tokens_raw = self._submit(chain, client, venue, quote, pay_native=True)

        tokens = to_human(tokens_raw, decimals)
        base = to_human(amount_in, chain.base_asset_decimals)
        if tokens <= 0:
            raise ChainExecutionError(f"Buy of {token_address} on {chain.name} returned no tokens", tx_hash=trade_id)
        METRICS.increment("trades_buy")
        return TradeReceipt(
            trade_id=trade_id,
            token_address=token_address.lower(),
            chain_id=chain_id,
            action=TradeAction.BUY,
            price=base / tokens,
            amount=tokens,
            base_amount=base,
            symbol=symbol,
            dry_run=self.dry_run,
        )

    def sell(
        self,
        chain_id: int,
        token_address: str,
        token_amount: Optional[float] = None,
        *,
        symbol: str = "",
    ) -> TradeReceipt:
        """Swap the wallet's token balance (capped at ``token_amount`` when given) back to the base asset.

        In dry-run mode no balance is read; ``token_amount`` is the position's
        recorded holding and is required.
        """

        check_token_address(token_address)
        chain, client, venue = self._context(chain_id)
        decimals = client.token_decimals(token_address)

        with METRICS.timer("execution_sell_seconds"):
            if self.dry_run:
                amount_in = to_raw(token_amount, decimals) if token_amount else 0
            else:
                balance = self._read_balance(client, token_address)
                requested = to_raw(token_amount, decimals) if token_amount else balance
                amount_in = min(balance, requested) if requested > 0 else balance
            if amount_in <= 0:
                raise InsufficientBalanceError(f"No {token_address} balance to sell on {chain.name}")

            quote = venue.quote(token_address, chain.base_asset_address, amount_in)
            if self.dry_run:
                trade_id, base_raw = self._trade_id(), quote.amount_out
                self._logger.info("Dry-run sell of %s on %s quoted %s raw base", token_address, chain.name, base_raw)
            else:
                if client.allowance(token_address, venue.spender) < amount_in:
                    client.approve(token_address, venue.spender, amount_in)
                trade_id, base_raw = self._submit(chain, client, venue, quote, pay_native=False)

        tokens = to_human(amount_in, decimals)
        base = to_human(base_raw, chain.base_asset_decimals)
        METRICS.increment("trades_sell")
        return TradeReceipt(
            trade_id=trade_id,
            token_address=token_address.lower(),
            chain_id=chain_id,
            action=TradeAction.SELL,
            price=base / tokens,
            amount=tokens,
            base_amount=base,
            symbol=symbol,
            dry_run=self.dry_run,
        )

    def quote_price(self, chain_id: int, token_address: str, token_amount: float) -> Optional[float]:
        """Current exit price (base asset per token) for selling ``token_amount``."""

        if not token_amount or token_amount <= 0:
            return None
        check_token_address(token_address)
        _, client, venue = self._context(chain_id)
        chain = client.chain
        decimals = client.token_decimals(token_address)
        amount_in = to_raw(token_amount, decimals)
        quote = venue.quote(token_address, chain.base_asset_address, amount_in)
        return to_human(quote.amount_out, chain.base_asset_decimals) / to_human(amount_in, decimals)

    def _submit(
        self,
        chain: ChainConfig,
        client: ChainClient,
        venue: RouterVenue,
        quote: SwapQuote,
        *,
        pay_native: bool,
    ) -> tuple[str, int]:
        wallet = client.require_address()
        floor = min_amount_out(quote.amount_out, self._trading.slippage_bps)
        call = venue.build_swap(
            quote,
            recipient=wallet,
            min_amount_out=floor,
            deadline=self._deadline(chain),
            pay_native=pay_native,
        )
        receipt = client.transact(call.function, value=call.value)
        tx_hash = hex_string(receipt["transactionHash"])
        received = parse_transfer_amount(receipt, quote.token_out, wallet)
        if received <= 0:
            self._logger.warning(
                "No Transfer of %s to wallet in %s; using slippage floor", quote.token_out, tx_hash
            )
            received = floor
        self._logger.info(
            "Swap confirmed on %s: %s",
            chain.name,
            tx_hash,
            extra={"tx_hash": tx_hash, "amount_in": quote.amount_in, "amount_out": received},
        )
        return tx_hash, received


__all__ = ["TradeExecutor", "check_token_address", "to_human", "to_raw"]
