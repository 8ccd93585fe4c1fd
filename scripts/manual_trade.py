"""Manual buy/sell, position status and reconciliation from the command line."""

from __future__ import annotations

import argparse

from mindshare_trader.analytics.pnl import summarize_closed
from mindshare_trader.config.settings import get_app_config
from mindshare_trader.datalake.schemas import TradeResult
from mindshare_trader.datalake.storage import SQLiteStorage
from mindshare_trader.execution.engine import TradeExecutor
from mindshare_trader.execution.trader import TokenTrader
from mindshare_trader.monitoring import bootstrap_observability
from mindshare_trader.monitoring.logger import correlation_scope, new_correlation_id


def _print_result(result: TradeResult) -> None:
    print(result.message)
    if result.explorer_url:
        print(result.explorer_url)
    if not result.success:
        raise SystemExit(1)


def _status(storage: SQLiteStorage) -> None:
    for position in storage.list_active_rows():
        print(
            f"#{position.id} {position.symbol or position.token_address} chain={position.chain_id} "
            f"state={position.state.value} entry={position.entry_price} stop={position.stop_loss_level}"
            + (f" pending={position.pending_tx}" if position.pending_tx else "")
        )
    summary = summarize_closed(storage.list_closed_positions(limit=500))
    print(
        f"closed={summary.closed} wins={summary.winners} losses={summary.losers} "
        f"win_rate={summary.win_rate:.0%} avg_pnl={summary.average_pnl_pct:.1f}%"
    )
    for item in storage.list_reconciliation_items():
        print(f"reconcile #{item.id}: {item.action.value} {item.trade_id} {item.token_address} ({item.error})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Manual trading controls for the mindshare trader.")
    sub = parser.add_subparsers(dest="command", required=True)

    buy = sub.add_parser("buy", help="Buy a token outside the signal loop")
    buy.add_argument("chain_id", type=int, help="EVM chain id")
    buy.add_argument("token", help="Token contract address")
    buy.add_argument("--amount", default=None, help="Base asset amount (defaults to trading.trade_amount)")

    sell = sub.add_parser("sell", help="Sell an open position now")
    sell.add_argument("chain_id", type=int, help="EVM chain id")
    sell.add_argument("token", help="Token contract address")

    sub.add_parser("status", help="List active positions, closed-trade summary and reconciliation items")

    resolve = sub.add_parser("resolve", help="Mark a reconciliation item as handled")
    resolve.add_argument("item_id", type=int)

    args = parser.parse_args()

    config = get_app_config()
    alerts = bootstrap_observability(config)
    storage = SQLiteStorage(config.storage.database_path)

    if args.command == "status":
        _status(storage)
        return
    if args.command == "resolve":
        if not storage.resolve_reconciliation_item(args.item_id):
            raise SystemExit(f"No open reconciliation item #{args.item_id}")
        print(f"Resolved reconciliation item #{args.item_id}")
        return

    trader = TokenTrader(storage, TradeExecutor(config), config=config, alerts=alerts)
    with correlation_scope(new_correlation_id(f"manual-{args.command}")):
        if args.command == "buy":
            _print_result(trader.manual_buy(args.token, args.chain_id, args.amount))
        else:
            _print_result(trader.manual_sell(args.token, args.chain_id))


if __name__ == "__main__":
    main()
