from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from mindshare_trader.datalake.schemas import TradeAction
from mindshare_trader.execution.chains import ChainRegistry
from mindshare_trader.execution.client import ChainClient, parse_transfer_amount
from mindshare_trader.execution.engine import TradeExecutor, to_human, to_raw
from mindshare_trader.execution.errors import (
    ChainConfigurationError,
    InsufficientBalanceError,
    InvalidTradeRequestError,
    NoLiquidityRouteError,
    RPCError,
    TransactionRevertedError,
    TransactionTimeoutError,
)
from mindshare_trader.execution.venues import SwapCall, SwapQuote, UniswapV2Venue, UniswapV3Venue, min_amount_out
from mindshare_trader.utils.constants import TRANSFER_TOPIC

TOKEN = "0x1111111111111111111111111111111111111111"
WETH = "0x4200000000000000000000000000000000000006"
WALLET = "0x" + "ab" * 20
ROUTER = "0x" + "cd" * 20
ARBITRUM = 42161


def _transfer_log(token: str, recipient: str, amount: int, *, as_bytes: bool = False) -> Dict[str, Any]:
    topics: List[Any] = [TRANSFER_TOPIC, "0x" + "00" * 12 + "ef" * 20, "0x" + "00" * 12 + recipient[2:].lower()]
    data: Any = "0x" + format(amount, "064x")
    if as_bytes:
        topics = [bytes.fromhex(topic[2:]) for topic in topics]
        data = bytes.fromhex(data[2:])
    return {"address": token, "topics": topics, "data": data}


class FakeVenue:
    name = "fake"
    spender = ROUTER

    def __init__(self, rate: float = 1.0, *, error: Optional[Exception] = None) -> None:
        self.rate = rate
        self.error = error
        self.quotes: List[SwapQuote] = []
        self.built: List[Dict[str, Any]] = []

    def quote(self, token_in: str, token_out: str, amount_in: int) -> SwapQuote:
        if self.error is not None:
            raise self.error
        quote = SwapQuote(self.name, token_in, token_out, amount_in, int(amount_in * self.rate), 3000)
        self.quotes.append(quote)
        return quote

    def build_swap(self, quote, *, recipient, min_amount_out, deadline, pay_native) -> SwapCall:
        self.built.append(
            {"quote": quote, "recipient": recipient, "min_amount_out": min_amount_out, "pay_native": pay_native}
        )
        return SwapCall(function=("swap", quote.token_out), value=quote.amount_in if pay_native else 0)


class FakeClient:
    def __init__(self, chain, *, balance: int = 0, allowance: int = 0, received: Optional[int] = None) -> None:
        self.chain = chain
        self.address = WALLET
        self.balance = balance
        self.allowance_value = allowance
        self.received = received
        self.balance_errors = 0
        self.balance_reads = 0
        self.approvals: List[int] = []
        self.transactions: List[Any] = []

    def require_address(self) -> str:
        return WALLET

    def token_decimals(self, token_address: str) -> int:
        return 18

    def token_balance(self, token_address: str, owner: Optional[str] = None) -> int:
        self.balance_reads += 1
        if self.balance_errors:
            self.balance_errors -= 1
            raise RPCError("node unavailable")
        return self.balance

    def allowance(self, token_address: str, spender: str) -> int:
        return self.allowance_value

    def approve(self, token_address: str, spender: str, amount: int) -> Dict[str, Any]:
        self.approvals.append(amount)
        self.allowance_value = amount
        return {"status": 1}

    def transact(self, function: Any, *, value: int = 0) -> Dict[str, Any]:
        self.transactions.append((function, value, len(self.approvals)))
        token_out = function[1]
        logs = [_transfer_log(token_out, WALLET, self.received)] if self.received is not None else []
        return {"status": 1, "transactionHash": bytes.fromhex("12" * 32), "logs": logs}


def _executor(make_config, venue: FakeVenue, client_holder: Dict[str, FakeClient], **overrides) -> TradeExecutor:
    config = make_config(**overrides)

    def client_factory(chain):
        client = client_holder.get("client")
        if client is None:
            client = FakeClient(chain)
            client_holder["client"] = client
        client.chain = chain
        return client

    registry = ChainRegistry(config, client_factory=client_factory, venue_factory=lambda client: venue)
    return TradeExecutor(config, registry=registry)


def test_parse_transfer_amount_filters_token_topic_and_recipient() -> None:
    receipt = {
        "logs": [
            _transfer_log(TOKEN, WALLET, 5 * 10**18, as_bytes=True),
            _transfer_log(TOKEN, "0x" + "99" * 20, 7 * 10**18),
            _transfer_log(WETH, WALLET, 11),
            {"address": TOKEN, "topics": ["0x" + "00" * 32], "data": "0x01"},
            _transfer_log(TOKEN.upper().replace("0X", "0x"), WALLET.upper().replace("0X", "0x"), 2),
        ]
    }

    assert parse_transfer_amount(receipt, TOKEN, WALLET) == 5 * 10**18 + 2
    assert parse_transfer_amount(receipt, WETH, WALLET) == 11
    assert parse_transfer_amount({"logs": []}, TOKEN, WALLET) == 0


def test_min_amount_out_applies_slippage_bound() -> None:
    assert min_amount_out(1_000_000, 50) == 995_000
    assert min_amount_out(999, 50) == 994
    assert min_amount_out(1_000, 0) == 1_000
    with pytest.raises(ValueError):
        min_amount_out(1_000, 10_000)


def test_unit_conversion() -> None:
    assert to_raw("0.0001", 18) == 10**14
    assert to_human(1_500_000, 6) == 1.5
    with pytest.raises(InvalidTradeRequestError):
        to_raw("ten", 18)
    with pytest.raises(InvalidTradeRequestError):
        to_raw("NaN", 18)


def test_registry_rejects_unusable_chains(make_config) -> None:
    registry = ChainRegistry(make_config(), client_factory=lambda chain: None, venue_factory=lambda client: None)

    assert registry.require(ARBITRUM).chain_id == ARBITRUM
    with pytest.raises(ChainConfigurationError):
        registry.require(1)
    with pytest.raises(ChainConfigurationError):
        registry.require(8453)

    keyless = make_config(chains={"arbitrum": {"private_key": None}})
    with pytest.raises(ChainConfigurationError):
        ChainRegistry(keyless).require(ARBITRUM)
    assert ChainRegistry(keyless).require(ARBITRUM, signing=False).name == "arbitrum"


def test_malformed_requests_are_rejected_before_quoting(make_config) -> None:
    venue = FakeVenue()
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder)

    with pytest.raises(InvalidTradeRequestError) as excinfo:
        executor.buy(ARBITRUM, "0x11")
    assert excinfo.value.user_message == "Invalid token address or amount"
    with pytest.raises(InvalidTradeRequestError):
        executor.buy(ARBITRUM, TOKEN, "lots")
    with pytest.raises(InvalidTradeRequestError):
        executor.buy(ARBITRUM, TOKEN, "0")
    with pytest.raises(InvalidTradeRequestError):
        executor.sell(ARBITRUM, "not-an-address", 1.0)

    assert venue.quotes == []


def test_dry_run_buy_uses_quote_without_signing(make_config) -> None:
    venue = FakeVenue(rate=2.0)
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder, trading={"dry_run": True})

    receipt = executor.buy(ARBITRUM, TOKEN, "0.5", symbol="AGENT")

    assert receipt.dry_run is True
    assert receipt.trade_id.startswith("dry-run-")
    assert receipt.action == TradeAction.BUY
    assert receipt.amount == pytest.approx(1.0)
    assert receipt.base_amount == pytest.approx(0.5)
    assert receipt.price == pytest.approx(0.5)
    assert holder["client"].transactions == []
    assert venue.quotes[0].token_in == WETH


def test_live_buy_reads_tokens_from_transfer_logs(make_config) -> None:
    venue = FakeVenue(rate=1.0)
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder, trading={"slippage_bps": 100})
    client = FakeClient(make_config().chain_by_id(ARBITRUM), received=99 * 10**16)
    holder["client"] = client

    receipt = executor.buy(ARBITRUM, TOKEN, "1")

    assert receipt.dry_run is False
    assert receipt.trade_id == "0x" + "12" * 32
    assert receipt.amount == pytest.approx(0.99)
    assert receipt.price == pytest.approx(1 / 0.99)
    built = venue.built[0]
    assert built["pay_native"] is True
    assert built["recipient"] == WALLET
    assert built["min_amount_out"] == 10**18 * 9_900 // 10_000
    assert client.transactions[0][1] == 10**18


def test_buy_without_route_raises_and_sends_nothing(make_config) -> None:
    venue = FakeVenue(error=NoLiquidityRouteError("no pool"))
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder)

    with pytest.raises(NoLiquidityRouteError):
        executor.buy(ARBITRUM, TOKEN)
    assert holder["client"].transactions == []


def test_sell_with_zero_balance_raises(make_config) -> None:
    venue = FakeVenue()
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder)

    with pytest.raises(InsufficientBalanceError):
        executor.sell(ARBITRUM, TOKEN, 10.0)
    assert venue.quotes == []
    assert holder["client"].transactions == []


def test_sell_approves_router_before_swapping(make_config) -> None:
    venue = FakeVenue(rate=1.2)
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder)
    client = FakeClient(make_config().chain_by_id(ARBITRUM), balance=10 * 10**18, received=12 * 10**18)
    holder["client"] = client

    receipt = executor.sell(ARBITRUM, TOKEN)

    assert client.approvals == [10 * 10**18]
    # The swap was sent after exactly one approval.
    assert client.transactions[0][2] == 1
    assert client.transactions[0][1] == 0
    assert venue.built[0]["pay_native"] is False
    assert venue.quotes[0].token_out == WETH
    assert receipt.amount == pytest.approx(10.0)
    assert receipt.base_amount == pytest.approx(12.0)
    assert receipt.price == pytest.approx(1.2)

    executor.sell(ARBITRUM, TOKEN)
    assert client.approvals == [10 * 10**18]


def test_sell_retries_balance_reads(make_config) -> None:
    venue = FakeVenue()
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder, execution={"balance_read_attempts": 3})
    client = FakeClient(make_config().chain_by_id(ARBITRUM), balance=10**18, allowance=10**18, received=10**18)
    client.balance_errors = 2
    holder["client"] = client

    executor.sell(ARBITRUM, TOKEN)
    assert client.balance_reads == 3

    client.balance_errors = 3
    with pytest.raises(RPCError):
        executor.sell(ARBITRUM, TOKEN)


def test_dry_run_sell_uses_recorded_amount(make_config) -> None:
    venue = FakeVenue(rate=1.35)
    holder: Dict[str, FakeClient] = {}
    executor = _executor(make_config, venue, holder, trading={"dry_run": True})

    receipt = executor.sell(ARBITRUM, TOKEN, 10.0)

    assert receipt.trade_id.startswith("dry-run-")
    assert receipt.price == pytest.approx(1.35)
    assert holder["client"].balance_reads == 0
    with pytest.raises(InsufficientBalanceError):
        executor.sell(ARBITRUM, TOKEN, None)


def test_quote_price_is_base_per_token(make_config) -> None:
    executor = _executor(make_config, FakeVenue(rate=0.25), {})

    assert executor.quote_price(ARBITRUM, TOKEN, 4.0) == pytest.approx(0.25)
    assert executor.quote_price(ARBITRUM, TOKEN, 0.0) is None


# ---------------------------------------------------------------------------
# Router venues against stub contracts
# ---------------------------------------------------------------------------


class StubContractClient:
    """Implements the subset of ChainClient used by the venues."""

    def __init__(self, chain, responses: Dict[int, Any]) -> None:
        self.chain = chain
        self.responses = responses
        self.router = SimpleNamespace(
            address=ROUTER,
            encode_abi=lambda name, args: f"{name}:{args[0]}",
            functions=SimpleNamespace(
                multicall=lambda deadline, data: ("multicall", deadline, data),
                getAmountsOut=lambda amount, path: ("getAmountsOut", amount, path),
                swapExactETHForTokens=lambda *args: ("swapExactETHForTokens", *args),
                swapExactTokensForTokens=lambda *args: ("swapExactTokensForTokens", *args),
            ),
        )
        self.quoter = SimpleNamespace(
            functions=SimpleNamespace(quoteExactInputSingle=lambda params: ("quote", params)),
        )

    def checksum(self, address: str) -> str:
        return address

    def contract(self, address: str, abi: list):
        return self.quoter if address == self.chain.quoter_address else self.router

    def call(self, function):
        if function[0] == "quote":
            response = self.responses.get(function[1][3], 0)
        else:
            response = self.responses.get("v2", [function[1], 0])
        if isinstance(response, Exception):
            raise response
        return response if function[0] == "getAmountsOut" else (response, 0, 0, 0)


def test_v3_venue_picks_best_fee_tier(make_config) -> None:
    chain = make_config().chain_by_id(ARBITRUM)
    client = StubContractClient(chain, {100: ContractLogicError("no pool"), 500: 900, 3000: 1_000, 10000: 0})
    venue = UniswapV3Venue(client)

    quote = venue.quote(WETH, TOKEN, 10**6)

    assert (quote.amount_out, quote.fee_tier) == (1_000, 3000)
    call = venue.build_swap(quote, recipient=WALLET, min_amount_out=995, deadline=123, pay_native=True)
    assert call.value == 10**6
    assert call.function[0] == "multicall"
    assert call.function[1] == 123
    assert "3000" in call.function[2][0] and "995" in call.function[2][0]


def test_v3_venue_without_liquidity_or_node(make_config) -> None:
    chain = make_config().chain_by_id(ARBITRUM)
    reverted = StubContractClient(chain, {tier: ContractLogicError("revert") for tier in chain.fee_tiers})
    unreachable = StubContractClient(chain, {tier: RPCError("timeout") for tier in chain.fee_tiers})

    with pytest.raises(NoLiquidityRouteError):
        UniswapV3Venue(reverted).quote(WETH, TOKEN, 10**6)
    with pytest.raises(NoLiquidityRouteError):
        UniswapV3Venue(StubContractClient(chain, {})).quote(WETH, TOKEN, 10**6)
    with pytest.raises(RPCError):
        UniswapV3Venue(unreachable).quote(WETH, TOKEN, 10**6)


def test_v2_venue_quotes_and_builds_native_swaps(make_config) -> None:
    chain = make_config().chain_by_id(ARBITRUM)
    venue = UniswapV2Venue(StubContractClient(chain, {"v2": [10**6, 5_000]}))

    quote = venue.quote(WETH, TOKEN, 10**6)
    buy = venue.build_swap(quote, recipient=WALLET, min_amount_out=4_975, deadline=99, pay_native=True)
    sell = venue.build_swap(quote, recipient=WALLET, min_amount_out=1, deadline=99, pay_native=False)

    assert quote.amount_out == 5_000
    assert buy.function[0] == "swapExactETHForTokens" and buy.value == 10**6
    assert sell.function[0] == "swapExactTokensForTokens" and sell.value == 0

    missing = UniswapV2Venue(StubContractClient(chain, {"v2": ContractLogicError("INSUFFICIENT_LIQUIDITY")}))
    with pytest.raises(NoLiquidityRouteError):
        missing.quote(WETH, TOKEN, 10**6)


# ---------------------------------------------------------------------------
# ChainClient against a mocked web3
# ---------------------------------------------------------------------------


def _client(make_config) -> tuple[ChainClient, MagicMock]:
    web3 = MagicMock()
    return ChainClient(make_config().chain_by_id(ARBITRUM), web3=web3), web3


def test_client_submits_signed_transaction_and_returns_receipt(make_config) -> None:
    client, web3 = _client(make_config)
    function = MagicMock()
    function.build_transaction.return_value = {
        "to": "0x" + "22" * 20,
        "data": "0x",
        "value": 0,
        "gas": 21_000,
        "gasPrice": 1,
        "nonce": 3,
        "chainId": ARBITRUM,
    }
    web3.eth.get_transaction_count.return_value = 3
    web3.eth.send_raw_transaction.return_value = bytes.fromhex("34" * 32)
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "logs": []}

    receipt = client.transact(function)

    assert receipt["status"] == 1
    web3.eth.get_transaction_count.assert_called_once_with(client.address, "pending")
    web3.eth.wait_for_transaction_receipt.assert_called_once_with(
        "0x" + "34" * 32, timeout=client.chain.confirmation_timeout_seconds
    )


def test_client_maps_timeouts_and_reverts(make_config) -> None:
    client, web3 = _client(make_config)

    web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")
    with pytest.raises(TransactionTimeoutError) as timeout:
        client.wait_for_receipt("0xaaa")
    assert timeout.value.tx_hash == "0xaaa"

    web3.eth.wait_for_transaction_receipt.side_effect = None
    web3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 7}
    web3.eth.call.side_effect = ContractLogicError("execution reverted: Too little received")
    with pytest.raises(TransactionRevertedError) as reverted:
        client.wait_for_receipt("0xbbb", {"to": ROUTER, "data": "0x", "value": 0})
    assert "Too little received" in reverted.value.reason
    assert reverted.value.user_message == "Transaction reverted on-chain"


def test_client_wraps_node_failures(make_config) -> None:
    client, _ = _client(make_config)
    failing = MagicMock()
    failing.call.side_effect = ConnectionError("refused")

    with pytest.raises(RPCError):
        client.call(failing)

    reverting = MagicMock()
    reverting.call.side_effect = ContractLogicError("revert")
    with pytest.raises(ContractLogicError):
        client.call(reverting)
