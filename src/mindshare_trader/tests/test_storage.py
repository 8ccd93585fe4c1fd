from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from mindshare_trader.datalake.schemas import PositionState, ReconciliationItem, TradeAction, TradeReceipt
from mindshare_trader.datalake.storage import SCHEMA_VERSION, SQLiteStorage

TOKEN = "0x1111111111111111111111111111111111111111"
ARBITRUM = 42161


def _receipt(action: TradeAction, price: float, amount: float = 10.0) -> TradeReceipt:
    return TradeReceipt(
        trade_id=f"0x{action.value}",
        token_address=TOKEN,
        chain_id=ARBITRUM,
        action=action,
        price=price,
        amount=amount,
        base_amount=price * amount,
    )


def _open_position(storage: SQLiteStorage, snapshot, entry_price: float = 1.0) -> int:
    storage.upsert_candidate(snapshot)
    position = storage.get_active_position(TOKEN, ARBITRUM)
    assert storage.mark_bought(position.id, _receipt(TradeAction.BUY, entry_price), stop_loss_level=-20.0)
    return position.id


def test_schema_is_migrated(tmp_path: Path) -> None:
    path = tmp_path / "state.sqlite3"
    SQLiteStorage(path)
    SQLiteStorage(path)
    con = sqlite3.connect(path)
    try:
        versions = [row[0] for row in con.execute("SELECT version FROM schema_migrations")]
        tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        con.close()
    assert versions == [SCHEMA_VERSION]
    assert {"positions", "snapshot_history", "manual_reconciliation"} <= tables


def test_version_one_database_is_upgraded(tmp_path: Path) -> None:
    path = tmp_path / "state.sqlite3"
    con = sqlite3.connect(path)
    try:
        con.execute("CREATE TABLE schema_migrations (version INTEGER NOT NULL)")
        con.execute("INSERT INTO schema_migrations (version) VALUES (1)")
        con.commit()
    finally:
        con.close()

    SQLiteStorage(path)

    con = sqlite3.connect(path)
    try:
        versions = [row[0] for row in con.execute("SELECT version FROM schema_migrations")]
        columns = {row[1] for row in con.execute("PRAGMA table_info(positions)")}
    finally:
        con.close()
    assert versions == [2]
    assert {"pending_tx", "token_amount", "sell_reason"} <= columns


def test_snapshot_history_is_newest_first_and_purgeable(storage: SQLiteStorage, make_snapshot) -> None:
    now = datetime.now(timezone.utc)
    for hours, price in ((72 * 24, 0.5), (2, 1.0), (1, 2.0)):
        storage.record_snapshot(make_snapshot(price=price, timestamp=now - timedelta(hours=hours)))
    storage.record_snapshot(make_snapshot(token_address="0x" + "22" * 20, price=9.0, timestamp=now))

    history = storage.get_recent_snapshots(10, token_address=TOKEN.upper(), chain_id=ARBITRUM)
    assert [item.price for item in history] == [2.0, 1.0, 0.5]

    assert storage.purge_snapshots(timedelta(days=30)) == 1
    assert len(storage.get_recent_snapshots(10, token_address=TOKEN)) == 2


def test_concurrent_upserts_merge_into_one_row(storage: SQLiteStorage, make_snapshot) -> None:
    barrier = threading.Barrier(8)
    errors = []

    def worker(index: int) -> None:
        barrier.wait()
        try:
            storage.upsert_candidate(make_snapshot(total_score=float(index)))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    rows = storage.list_active_rows()
    assert len(rows) == 1
    assert rows[0].buy_signal is True
    assert rows[0].total_score in {float(index) for index in range(8)}


def test_upsert_never_clears_trade_columns(storage: SQLiteStorage, make_snapshot) -> None:
    position_id = _open_position(storage, make_snapshot())
    assert storage.mark_sell_signal(position_id, "profit_target")

    storage.upsert_candidate(make_snapshot(price=3.0, total_score=-1.0), buy_signal=False)
    storage.upsert_candidate(make_snapshot(price=4.0), buy_signal=True)

    position = storage.get_position(position_id)
    assert position.price == 4.0
    assert position.entry_price == 1.0
    assert position.sell_signal is True
    assert position.exit_price is None
    assert position.buy_signal is False
    assert position.state == PositionState.FLAGGED
    assert len(storage.list_active_rows()) == 1


def test_upsert_does_not_clear_buy_signal(storage: SQLiteStorage, make_snapshot) -> None:
    storage.upsert_candidate(make_snapshot(), buy_signal=True)
    storage.upsert_candidate(make_snapshot(), buy_signal=False)

    assert storage.get_active_position(TOKEN, ARBITRUM).buy_signal is True
    assert len(storage.get_buy_candidates()) == 1


def test_lifecycle_transitions_are_guarded(storage: SQLiteStorage, make_snapshot) -> None:
    storage.upsert_candidate(make_snapshot(volume_24h=1234.0))
    candidate = storage.get_active_position(TOKEN, ARBITRUM)
    assert candidate.state == PositionState.CANDIDATE
    assert not storage.has_open_position(TOKEN, ARBITRUM)
    # Cannot flag or close a position that was never bought.
    assert not storage.mark_sell_signal(candidate.id, "stop_loss")
    assert storage.finalize_sold(candidate.id, _receipt(TradeAction.SELL, 2.0)) is None

    assert storage.mark_bought(candidate.id, _receipt(TradeAction.BUY, 1.0))
    assert not storage.mark_bought(candidate.id, _receipt(TradeAction.BUY, 5.0))
    opened = storage.get_position(candidate.id)
    assert opened.state == PositionState.OPEN
    assert opened.entry_price == 1.0
    assert opened.entry_volume_24h == 1234.0
    assert storage.has_open_position(TOKEN, ARBITRUM)
    # Closing requires the sell flag first.
    assert storage.finalize_sold(candidate.id, _receipt(TradeAction.SELL, 2.0)) is None

    assert storage.mark_sell_signal(candidate.id, "profit_target")
    assert not storage.mark_sell_signal(candidate.id, "stop_loss")
    assert storage.get_position(candidate.id).sell_reason == "profit_target"


def test_finalize_computes_rounded_profit(storage: SQLiteStorage, make_snapshot) -> None:
    position_id = _open_position(storage, make_snapshot(), entry_price=1.0)
    storage.mark_sell_signal(position_id, "profit_target")

    closed = storage.finalize_sold(position_id, _receipt(TradeAction.SELL, 1.34))

    assert closed is not None
    assert closed.finalized is True
    assert closed.exit_price == 1.34
    assert closed.profit_loss_percent == 34
    assert closed.state == PositionState.CLOSED
    assert storage.finalize_sold(position_id, _receipt(TradeAction.SELL, 2.0)) is None
    assert storage.get_active_position(TOKEN, ARBITRUM) is None
    assert [p.id for p in storage.list_closed_positions()] == [position_id]

    # A fresh candidate may follow a closed position for the same token.
    assert storage.upsert_candidate(make_snapshot())
    assert storage.get_active_position(TOKEN, ARBITRUM).id != position_id


def test_stop_loss_only_tightens(storage: SQLiteStorage, make_snapshot) -> None:
    position_id = _open_position(storage, make_snapshot())

    assert storage.raise_stop_loss(position_id, -10.0)
    assert not storage.raise_stop_loss(position_id, -15.0)
    assert storage.get_position(position_id).stop_loss_level == -10.0


def test_drop_stale_candidates_keeps_open_positions(storage: SQLiteStorage, make_snapshot) -> None:
    _open_position(storage, make_snapshot())
    storage.upsert_candidate(make_snapshot(token_address="0x" + "33" * 20))

    assert storage.drop_stale_candidates(timedelta(minutes=60)) == 0
    assert storage.drop_stale_candidates(timedelta(minutes=-1)) == 1
    assert storage.count_positions() == {"candidate": 0, "open": 1, "flagged": 0, "closed": 0}


def test_reconciliation_items_round_trip(storage: SQLiteStorage) -> None:
    item_id = storage.record_reconciliation_item(
        ReconciliationItem(
            action=TradeAction.SELL,
            trade_id="0xdead",
            token_address=TOKEN,
            chain_id=ARBITRUM,
            position_id=7,
            error="database is locked",
            payload={"price": 1.2},
        )
    )

    items = storage.list_reconciliation_items()
    assert [item.id for item in items] == [item_id]
    assert items[0].action == TradeAction.SELL
    assert items[0].payload == {"price": 1.2}
    assert storage.resolve_reconciliation_item(item_id)
    assert storage.list_reconciliation_items() == []
    assert len(storage.list_reconciliation_items(include_resolved=True)) == 1


def test_held_rows_leave_the_trade_queues_until_resolved(storage: SQLiteStorage, make_snapshot) -> None:
    storage.upsert_candidate(make_snapshot())
    candidate = storage.get_active_position(TOKEN, ARBITRUM)

    assert storage.hold_pending_tx(candidate.id, "0xabc")
    assert not storage.hold_pending_tx(candidate.id, "0xdef")
    assert storage.get_buy_candidates() == []
    assert storage.drop_stale_candidates(timedelta(minutes=-1)) == 0
    assert storage.get_active_position(TOKEN, ARBITRUM).pending_tx == "0xabc"

    item_id = storage.record_reconciliation_item(
        ReconciliationItem(
            action=TradeAction.BUY,
            trade_id="0xabc",
            token_address=TOKEN,
            chain_id=ARBITRUM,
            position_id=candidate.id,
            error="not confirmed",
        )
    )
    assert storage.resolve_reconciliation_item(item_id)
    assert not storage.resolve_reconciliation_item(item_id)
    assert [position.id for position in storage.get_buy_candidates()] == [candidate.id]


def test_held_flagged_position_is_not_offered_for_sale(storage: SQLiteStorage, make_snapshot) -> None:
    position_id = _open_position(storage, make_snapshot())
    storage.mark_sell_signal(position_id, "stop_loss")

    assert storage.hold_pending_tx(position_id, "0xsell")
    assert storage.get_sell_candidates() == []
    assert storage.get_position(position_id).state == PositionState.FLAGGED

    closed = storage.finalize_sold(position_id, _receipt(TradeAction.SELL, 0.8))
    assert closed.state == PositionState.CLOSED
    assert closed.pending_tx is None
