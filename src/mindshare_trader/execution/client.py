"""web3.py wrapper for one EVM chain: reads, signing, submission and receipts."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional

import requests
from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from ..config.settings import ChainConfig
from ..monitoring.logger import get_logger, register_secret
from ..monitoring.metrics import METRICS
from ..utils.constants import ERC20_ABI, TRANSFER_TOPIC
from .errors import ChainConfigurationError, RPCError, TransactionRevertedError, TransactionTimeoutError


def hex_string(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else f"0x{text}"


def parse_transfer_amount(receipt: Mapping[str, Any], token_address: str, recipient: str) -> int:
    """Sum the ERC-20 ``Transfer`` amounts of ``token_address`` credited to ``recipient``."""

    token = token_address.lower()
    wallet = recipient.lower()[-40:]
    total = 0
    for log in receipt.get("logs", []):
        if str(log.get("address", "")).lower() != token:
            continue
        topics = [hex_string(topic) for topic in log.get("topics", [])]
        if len(topics) < 3 or topics[0] != TRANSFER_TOPIC:
            continue
        if topics[2][-40:] != wallet:
            continue
        data = hex_string(log.get("data", "0x"))
        total += int(data, 16) if len(data) > 2 else 0
    return total


class ChainClient:
    """Thin facade over :class:`web3.Web3` that maps node failures onto typed errors."""

    def __init__(self, chain: ChainConfig, *, web3: Optional[Web3] = None) -> None:
        if web3 is None:
            if not chain.rpc_url:
                raise ChainConfigurationError(f"No RPC URL configured for {chain.name}")
            web3 = Web3(HTTPProvider(chain.rpc_url, request_kwargs={"timeout": chain.request_timeout}))
        self._chain = chain
        self._web3 = web3
        self._account = Account.from_key(chain.private_key) if chain.private_key else None
        register_secret(chain.private_key)
        self._decimals: Dict[str, int] = {}
        self._logger = get_logger(__name__)

    @property
    def chain(self) -> ChainConfig:
        return self._chain

    @property
    def web3(self) -> Web3:
        return self._web3

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account is not None else None

    def require_address(self) -> str:
        if self._account is None:
            raise ChainConfigurationError(f"No wallet key configured for {self._chain.name}")
        return self._account.address

    @staticmethod
    def checksum(address: str) -> str:
        return Web3.to_checksum_address(address)

    def contract(self, address: str, abi: list):
        return self._web3.eth.contract(address=self.checksum(address), abi=abi)

    @contextmanager
    def _rpc_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except ContractLogicError:
            raise
        except (Web3Exception, requests.RequestException, OSError) as exc:
            METRICS.increment("chain_rpc_errors")
            raise RPCError(f"{self._chain.name}: {action} failed: {exc}") from exc

    def call(self, function: Any) -> Any:
        """Execute a read-only contract call. Reverts surface as ``ContractLogicError``."""

        with self._rpc_errors("eth_call"):
            return function.call()

    def token_decimals(self, token_address: str) -> int:
        key = token_address.lower()
        if key not in self._decimals:
            token = self.contract(token_address, ERC20_ABI)
            with self._rpc_errors("decimals"):
                self._decimals[key] = int(token.functions.decimals().call())
        return self._decimals[key]

    def token_balance(self, token_address: str, owner: Optional[str] = None) -> int:
        holder = owner or self.require_address()
        token = self.contract(token_address, ERC20_ABI)
        with self._rpc_errors("balanceOf"):
            return int(token.functions.balanceOf(self.checksum(holder)).call())

    def allowance(self, token_address: str, spender: str) -> int:
        token = self.contract(token_address, ERC20_ABI)
        with self._rpc_errors("allowance"):
            return int(
                token.functions.allowance(self.require_address(), self.checksum(spender)).call()
            )

    def approve(self, token_address: str, spender: str, amount: int) -> Mapping[str, Any]:
        token = self.contract(token_address, ERC20_ABI)
        self._logger.info("Approving %s for %s on %s", spender, token_address, self._chain.name)
        return self.transact(token.functions.approve(self.checksum(spender), int(amount)))

    def transact(self, function: Any, *, value: int = 0) -> Mapping[str, Any]:
        """Sign and submit a contract call, then block until it is mined.

        Submission is never retried; a reverted receipt raises
        :class:`TransactionRevertedError` and an unconfirmed one
        :class:`TransactionTimeoutError`.
        """

        sender = self.require_address()
        params: Dict[str, Any] = {"from": sender, "chainId": self._chain.chain_id, "value": int(value)}
        if self._chain.gas_limit:
            params["gas"] = self._chain.gas_limit
        with self._rpc_errors("build transaction"):
            params["nonce"] = self._web3.eth.get_transaction_count(sender, "pending")
            try:
                tx = function.build_transaction(params)
            except ContractLogicError as exc:
                raise TransactionRevertedError(
                    f"{self._chain.name}: gas estimation reverted: {exc}", reason=str(exc)
                ) from exc
        signed = self._account.sign_transaction(tx)
        with self._rpc_errors("send_raw_transaction"):
            tx_hash = hex_string(self._web3.eth.send_raw_transaction(signed.raw_transaction))
        METRICS.increment("chain_transactions_submitted")
        self._logger.info("Submitted transaction %s on %s", tx_hash, self._chain.name)
        return self.wait_for_receipt(tx_hash, tx)

    def wait_for_receipt(self, tx_hash: str, tx: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
        try:
            receipt = self._web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._chain.confirmation_timeout_seconds
            )
        except TimeExhausted as exc:
            METRICS.increment("chain_transactions_timed_out")
            raise TransactionTimeoutError(
                f"{self._chain.name}: {tx_hash} not confirmed within "
                f"{self._chain.confirmation_timeout_seconds}s",
                tx_hash=tx_hash,
            ) from exc
        except (Web3Exception, requests.RequestException, OSError) as exc:
            raise RPCError(f"{self._chain.name}: receipt lookup failed: {exc}", tx_hash=tx_hash) from exc
        if int(receipt["status"]) != 1:
            reason = self._revert_reason(tx, receipt)
            METRICS.increment("chain_transactions_reverted")
            raise TransactionRevertedError(
                f"{self._chain.name}: {tx_hash} reverted" + (f": {reason}" if reason else ""),
                tx_hash=tx_hash,
                reason=reason,
            )
        METRICS.increment("chain_transactions_confirmed")
        return receipt

    def _revert_reason(self, tx: Optional[Mapping[str, Any]], receipt: Mapping[str, Any]) -> Optional[str]:
        """Replay the call at the mined block to recover the revert message, if any."""

        if not tx:
            return None
        call = {key: tx[key] for key in ("from", "to", "data", "value") if key in tx}
        try:
            self._web3.eth.call(call, block_identifier=receipt["blockNumber"])
        except ContractLogicError as exc:
            return str(exc)
        except (Web3Exception, requests.RequestException, OSError) as exc:
            self._logger.debug("Revert reason unavailable: %s", exc)
        return None


__all__ = ["ChainClient", "hex_string", "parse_transfer_amount"]
