"""Persistence layer for scored snapshots and the position lifecycle.

Every position transition is a single guarded ``UPDATE ... WHERE`` so that two
processes sharing the database can never skip a lifecycle stage or open a
second position for the same token. The partial unique index on
``(token_address, chain_id) WHERE finalized = 0`` is the final arbiter.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..analytics.pnl import profit_loss_percent
from .schemas import (
    Position,
    PositionState,
    ReconciliationItem,
    TokenSnapshot,
    TradeAction,
    TradeReceipt,
    utcnow,
)


SCHEMA_VERSION = 2

CREATE_POSITION_TABLE = """
CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    token_address TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    chain_name TEXT NOT NULL,
    symbol TEXT,
    mindshare REAL DEFAULT 0,
    liquidity REAL DEFAULT 0,
    volume_24h REAL DEFAULT 0,
    holders_count INTEGER DEFAULT 0,
    price REAL DEFAULT 0,
    price_native REAL,
    price_momentum REAL DEFAULT 0,
    volume_momentum REAL DEFAULT 0,
    mindshare_momentum REAL DEFAULT 0,
    liquidity_momentum REAL DEFAULT 0,
    holders_momentum REAL DEFAULT 0,
    social_momentum REAL DEFAULT 0,
    total_score REAL DEFAULT 0,
    buy_signal INTEGER NOT NULL DEFAULT 0,
    sell_signal INTEGER NOT NULL DEFAULT 0,
    entry_price REAL,
    exit_price REAL,
    profit_loss_percent INTEGER,
    stop_loss_level REAL,
    finalized INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (sell_signal = 0 OR entry_price IS NOT NULL),
    CHECK (finalized = 0 OR entry_price IS NOT NULL)
);
"""

CREATE_POSITION_OPEN_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_active
ON positions(token_address, chain_id) WHERE finalized = 0;
"""

CREATE_SNAPSHOT_TABLE = """
CREATE TABLE IF NOT EXISTS snapshot_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    token_address TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    chain_name TEXT NOT NULL,
    symbol TEXT,
    mindshare REAL,
    liquidity REAL,
    volume_24h REAL,
    holders_count INTEGER,
    price REAL,
    price_native REAL,
    price_momentum REAL,
    volume_momentum REAL,
    mindshare_momentum REAL,
    liquidity_momentum REAL,
    holders_momentum REAL,
    social_momentum REAL,
    total_score REAL,
    timestamp TEXT NOT NULL
);
"""

CREATE_SNAPSHOT_INDEX = """
CREATE INDEX IF NOT EXISTS idx_snapshot_history_token
ON snapshot_history(token_address, chain_id, timestamp DESC);
"""

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

CREATE_RECONCILIATION_TABLE = """
CREATE TABLE IF NOT EXISTS manual_reconciliation (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    trade_id TEXT NOT NULL,
    token_address TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    position_id INTEGER,
    error TEXT,
    payload TEXT,
    created_at TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0
);
"""

_MARKET_COLUMNS = (
    "chain_name",
    "symbol",
    "mindshare",
    "liquidity",
    "volume_24h",
    "holders_count",
    "price",
    "price_native",
    "price_momentum",
    "volume_momentum",
    "mindshare_momentum",
    "liquidity_momentum",
    "holders_momentum",
    "social_momentum",
    "total_score",
)


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _market_values(snapshot: TokenSnapshot) -> tuple:
    return (
        snapshot.chain_name,
        snapshot.symbol,
        snapshot.mindshare,
        snapshot.liquidity,
        snapshot.volume_24h,
        snapshot.holders_count,
        snapshot.price,
        snapshot.price_native,
        snapshot.price_momentum,
        snapshot.volume_momentum,
        snapshot.mindshare_momentum,
        snapshot.liquidity_momentum,
        snapshot.holders_momentum,
        snapshot.social_momentum,
        snapshot.total_score,
    )


class SQLiteStorage:
    """SQLite-backed position store and snapshot history."""

    def __init__(self, database_path: Path, *, timeout: float = 30.0) -> None:
        database_path = Path(database_path).expanduser().resolve()
        if database_path.exists() and database_path.is_dir():
            raise ValueError(f"Database path is a directory: {database_path}")
        self._database_path = database_path
        self._timeout = timeout
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute("PRAGMA journal_mode=WAL")
            con.execute(CREATE_POSITION_TABLE)
            con.execute(CREATE_POSITION_OPEN_INDEX)
            con.execute(CREATE_SNAPSHOT_TABLE)
            con.execute(CREATE_SNAPSHOT_INDEX)
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            self._apply_migrations(con)
            con.commit()

    def _ensure_position_columns(self, con: sqlite3.Connection) -> None:
        columns = {row[1] for row in con.execute("PRAGMA table_info(positions)")}
        additions = {
            "entry_volume_24h": "REAL",
            "token_amount": "REAL",
            "base_amount": "REAL",
            "entry_tx": "TEXT",
            "exit_tx": "TEXT",
            "sell_reason": "TEXT",
            "opened_at": "TEXT",
            "closed_at": "TEXT",
            "pending_tx": "TEXT",
        }
        for column, column_type in additions.items():
            if column not in columns:
                con.execute(f"ALTER TABLE positions ADD COLUMN {column} {column_type}")

    def _apply_migrations(self, con: sqlite3.Connection) -> None:
        current = self._get_schema_version(con)
        if current == 0:
            self._set_schema_version(con, 1)
            current = 1
        if current < 2:
            self._migrate_to_v2(con)
            self._set_schema_version(con, 2)
        # Column backfill is idempotent and also repairs partially migrated files.
        self._ensure_position_columns(con)

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        row = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        try:
            return int(row[0])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, con: sqlite3.Connection, version: int) -> None:
        con.execute("DELETE FROM schema_migrations")
        con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (version,))

    def _migrate_to_v2(self, con: sqlite3.Connection) -> None:
        con.execute(CREATE_RECONCILIATION_TABLE)
        self._ensure_position_columns(con)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path, timeout=self._timeout)
        con.row_factory = sqlite3.Row
        try:
            yield con
        finally:
            con.close()

    # ------------------------------------------------------------------
    # Snapshot history
    # ------------------------------------------------------------------
    def record_snapshot(self, snapshot: TokenSnapshot) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO snapshot_history (
                    token_address, chain_id, chain_name, symbol, mindshare, liquidity,
                    volume_24h, holders_count, price, price_native, price_momentum,
                    volume_momentum, mindshare_momentum, liquidity_momentum,
                    holders_momentum, social_momentum, total_score, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.token_address.lower(),
                    snapshot.chain_id,
                    *_market_values(snapshot),
                    snapshot.timestamp.isoformat(),
                ),
            )
            con.commit()

    def get_recent_snapshots(
        self,
        limit: int = 50,
        *,
        token_address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> List[TokenSnapshot]:
        """Return snapshots newest first, optionally for a single token."""

        clauses: List[str] = []
        params: List[object] = []
        if token_address is not None:
            clauses.append("token_address = ?")
            params.append(token_address.lower())
        if chain_id is not None:
            clauses.append("chain_id = ?")
            params.append(chain_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(limit, 0))
        with self._connect() as con:
            rows = con.execute(
                f"SELECT * FROM snapshot_history {where} ORDER BY timestamp DESC, id DESC LIMIT ?",
                params,
            ).fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    def purge_snapshots(self, older_than: timedelta) -> int:
        cutoff = (utcnow() - older_than).isoformat()
        with self._connect() as con:
            cur = con.execute("DELETE FROM snapshot_history WHERE timestamp < ?", (cutoff,))
            con.commit()
            return cur.rowcount

    # ------------------------------------------------------------------
    # Position lifecycle
    # ------------------------------------------------------------------
    def upsert_candidate(self, snapshot: TokenSnapshot, *, buy_signal: bool = True) -> bool:
        """Insert or refresh the single non-finalized row for the snapshot's token.

        Only market and score columns are refreshed on conflict. ``buy_signal``
        can be raised on a row that has not been bought yet but is never
        cleared here, and trade columns are left untouched.
        """

        now = utcnow().isoformat()
        assignments = ",\n                    ".join(f"{col} = excluded.{col}" for col in _MARKET_COLUMNS)
        with self._connect() as con:
            cur = con.execute(
                f"""
                INSERT INTO positions (
                    token_address, chain_id, {", ".join(_MARKET_COLUMNS)},
                    buy_signal, created_at, updated_at
                ) VALUES ({", ".join("?" for _ in range(len(_MARKET_COLUMNS) + 5))})
                ON CONFLICT(token_address, chain_id) WHERE finalized = 0 DO UPDATE SET
                    {assignments},
                    buy_signal = CASE
                        WHEN positions.entry_price IS NULL
                        THEN MAX(positions.buy_signal, excluded.buy_signal)
                        ELSE positions.buy_signal
                    END,
                    updated_at = excluded.updated_at
                """,
                (
                    snapshot.token_address.lower(),
                    snapshot.chain_id,
                    *_market_values(snapshot),
                    1 if buy_signal else 0,
                    now,
                    now,
                ),
            )
            con.commit()
            return cur.rowcount > 0

    def refresh_position_metrics(self, snapshot: TokenSnapshot) -> bool:
        """Update market columns of an existing non-finalized row without inserting."""

        assignments = ", ".join(f"{col} = ?" for col in _MARKET_COLUMNS)
        with self._connect() as con:
            cur = con.execute(
                f"""
                UPDATE positions SET {assignments}, updated_at = ?
                WHERE token_address = ? AND chain_id = ? AND finalized = 0
                """,
                (
                    *_market_values(snapshot),
                    utcnow().isoformat(),
                    snapshot.token_address.lower(),
                    snapshot.chain_id,
                ),
            )
            con.commit()
            return cur.rowcount > 0

    def mark_bought(
        self,
        position_id: int,
        receipt: TradeReceipt,
        *,
        stop_loss_level: Optional[float] = None,
    ) -> bool:
        """Candidate -> Open. No-op unless the row is an unbought, unfinalized candidate."""

        now = utcnow().isoformat()
        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE positions SET
                    entry_price = ?,
                    token_amount = ?,
                    base_amount = ?,
                    entry_tx = ?,
                    entry_volume_24h = volume_24h,
                    stop_loss_level = ?,
                    buy_signal = 0,
                    pending_tx = NULL,
                    opened_at = ?,
                    updated_at = ?
                WHERE id = ? AND entry_price IS NULL AND finalized = 0
                """,
                (
                    receipt.price,
                    receipt.amount,
                    receipt.base_amount,
                    receipt.trade_id,
                    stop_loss_level,
                    receipt.timestamp.isoformat(),
                    now,
                    position_id,
                ),
            )
            con.commit()
            return cur.rowcount > 0

    def mark_sell_signal(self, position_id: int, reason: str) -> bool:
        """Open -> Flagged. Returns ``False`` when the row is not open or already flagged."""

        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE positions SET sell_signal = 1, sell_reason = ?, updated_at = ?
                WHERE id = ? AND entry_price IS NOT NULL AND sell_signal = 0 AND finalized = 0
                """,
                (reason, utcnow().isoformat(), position_id),
            )
            con.commit()
            return cur.rowcount > 0

    def raise_stop_loss(self, position_id: int, level: float) -> bool:
        """Tighten the stop; a lower level than the stored one is ignored."""

        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE positions SET stop_loss_level = ?, updated_at = ?
                WHERE id = ? AND entry_price IS NOT NULL AND finalized = 0
                  AND (stop_loss_level IS NULL OR stop_loss_level < ?)
                """,
                (level, utcnow().isoformat(), position_id, level),
            )
            con.commit()
            return cur.rowcount > 0

    def finalize_sold(self, position_id: int, receipt: TradeReceipt) -> Optional[Position]:
        """Flagged -> Closed, computing profit/loss from the stored entry price."""

        with self._connect() as con:
            con.execute("BEGIN IMMEDIATE")
            row = con.execute(
                """
                SELECT entry_price FROM positions
                WHERE id = ? AND sell_signal = 1 AND entry_price IS NOT NULL AND finalized = 0
                """,
                (position_id,),
            ).fetchone()
            if row is None:
                con.rollback()
                return None
            pnl = profit_loss_percent(row["entry_price"], receipt.price)
            now = utcnow().isoformat()
            con.execute(
                """
                UPDATE positions SET
                    exit_price = ?,
                    profit_loss_percent = ?,
                    exit_tx = ?,
                    finalized = 1,
                    pending_tx = NULL,
                    closed_at = ?,
                    updated_at = ?
                WHERE id = ? AND sell_signal = 1 AND finalized = 0
                """,
                (receipt.price, pnl, receipt.trade_id, receipt.timestamp.isoformat(), now, position_id),
            )
            con.commit()
        return self.get_position(position_id)

    def hold_pending_tx(self, position_id: int, tx_hash: str) -> bool:
        """Park a row whose swap reached the chain without a confirmed outcome.

        Held rows are skipped by the buy and sell queues until the matching
        reconciliation item is resolved.
        """

        with self._connect() as con:
            cur = con.execute(
                """
                UPDATE positions SET pending_tx = ?, updated_at = ?
                WHERE id = ? AND finalized = 0 AND pending_tx IS NULL
                """,
                (tx_hash, utcnow().isoformat(), position_id),
            )
            con.commit()
            return cur.rowcount > 0

    def drop_stale_candidates(self, max_age: timedelta) -> int:
        """Remove unbought candidates that have not been refreshed within ``max_age``."""

        cutoff = (utcnow() - max_age).isoformat()
        with self._connect() as con:
            cur = con.execute(
                """
                DELETE FROM positions
                WHERE entry_price IS NULL AND finalized = 0 AND pending_tx IS NULL AND updated_at < ?
                """,
                (cutoff,),
            )
            con.commit()
            return cur.rowcount

    # ------------------------------------------------------------------
    # Position queries
    # ------------------------------------------------------------------
    def get_position(self, position_id: int) -> Optional[Position]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        return self._row_to_position(row) if row else None

    def get_active_position(self, token_address: str, chain_id: int) -> Optional[Position]:
        with self._connect() as con:
            row = con.execute(
                "SELECT * FROM positions WHERE token_address = ? AND chain_id = ? AND finalized = 0",
                (token_address.lower(), chain_id),
            ).fetchone()
        return self._row_to_position(row) if row else None

    def has_open_position(self, token_address: str, chain_id: int) -> bool:
        position = self.get_active_position(token_address, chain_id)
        return position is not None and position.entry_price is not None

    def get_open_positions(self) -> List[Position]:
        """Bought, not yet finalized positions (flagged ones included)."""

        return self._query_positions("entry_price IS NOT NULL AND finalized = 0")

    def get_buy_candidates(self) -> List[Position]:
        return self._query_positions(
            "buy_signal = 1 AND entry_price IS NULL AND finalized = 0 AND pending_tx IS NULL"
        )

    def get_sell_candidates(self) -> List[Position]:
        return self._query_positions("sell_signal = 1 AND finalized = 0 AND pending_tx IS NULL")

    def list_active_rows(self) -> List[Position]:
        return self._query_positions("finalized = 0")

    def list_closed_positions(self, limit: int = 50) -> List[Position]:
        return self._query_positions("finalized = 1", order="closed_at DESC", limit=limit)

    def count_positions(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in PositionState}
        for position in self._query_positions("1 = 1"):
            counts[position.state.value] += 1
        return counts

    def _query_positions(self, where: str, *, order: str = "id ASC", limit: Optional[int] = None) -> List[Position]:
        sql = f"SELECT * FROM positions WHERE {where} ORDER BY {order}"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._connect() as con:
            rows = con.execute(sql, params).fetchall()
        return [self._row_to_position(row) for row in rows]

    # ------------------------------------------------------------------
    # Manual reconciliation
    # ------------------------------------------------------------------
    def record_reconciliation_item(self, item: ReconciliationItem) -> int:
        with self._connect() as con:
            cur = con.execute(
                """
                INSERT INTO manual_reconciliation (
                    action, trade_id, token_address, chain_id, position_id, error, payload, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.action.value,
                    item.trade_id,
                    item.token_address.lower(),
                    item.chain_id,
                    item.position_id,
                    item.error,
                    json.dumps(item.payload, default=str),
                    item.created_at.isoformat(),
                ),
            )
            con.commit()
            return int(cur.lastrowid)

    def list_reconciliation_items(self, *, include_resolved: bool = False) -> List[ReconciliationItem]:
        where = "" if include_resolved else "WHERE resolved = 0"
        with self._connect() as con:
            rows = con.execute(f"SELECT * FROM manual_reconciliation {where} ORDER BY id ASC").fetchall()
        return [
            ReconciliationItem(
                id=row["id"],
                action=TradeAction(row["action"]),
                trade_id=row["trade_id"],
                token_address=row["token_address"],
                chain_id=row["chain_id"],
                position_id=row["position_id"],
                error=row["error"] or "",
                payload=json.loads(row["payload"]) if row["payload"] else {},
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def resolve_reconciliation_item(self, item_id: int) -> bool:
        """Mark the item handled and release any row held on its transaction."""

        with self._connect() as con:
            con.execute("BEGIN IMMEDIATE")
            row = con.execute(
                "SELECT trade_id, position_id FROM manual_reconciliation WHERE id = ? AND resolved = 0",
                (item_id,),
            ).fetchone()
            if row is None:
                con.rollback()
                return False
            con.execute("UPDATE manual_reconciliation SET resolved = 1 WHERE id = ?", (item_id,))
            if row["position_id"] is not None:
                con.execute(
                    "UPDATE positions SET pending_tx = NULL, updated_at = ? WHERE id = ? AND pending_tx = ?",
                    (utcnow().isoformat(), row["position_id"], row["trade_id"]),
                )
            con.commit()
            return True

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> TokenSnapshot:
        return TokenSnapshot(
            token_address=row["token_address"],
            chain_id=row["chain_id"],
            chain_name=row["chain_name"],
            symbol=row["symbol"] or "",
            mindshare=row["mindshare"] or 0.0,
            liquidity=row["liquidity"] or 0.0,
            volume_24h=row["volume_24h"] or 0.0,
            holders_count=row["holders_count"] or 0,
            price=row["price"] or 0.0,
            price_native=row["price_native"],
            price_momentum=row["price_momentum"] or 0.0,
            volume_momentum=row["volume_momentum"] or 0.0,
            mindshare_momentum=row["mindshare_momentum"] or 0.0,
            liquidity_momentum=row["liquidity_momentum"] or 0.0,
            holders_momentum=row["holders_momentum"] or 0.0,
            social_momentum=row["social_momentum"] or 0.0,
            total_score=row["total_score"] or 0.0,
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        pnl = row["profit_loss_percent"]
        return Position(
            id=row["id"],
            token_address=row["token_address"],
            chain_id=row["chain_id"],
            chain_name=row["chain_name"],
            symbol=row["symbol"] or "",
            mindshare=row["mindshare"] or 0.0,
            liquidity=row["liquidity"] or 0.0,
            volume_24h=row["volume_24h"] or 0.0,
            holders_count=row["holders_count"] or 0,
            price=row["price"] or 0.0,
            price_native=row["price_native"],
            price_momentum=row["price_momentum"] or 0.0,
            volume_momentum=row["volume_momentum"] or 0.0,
            mindshare_momentum=row["mindshare_momentum"] or 0.0,
            liquidity_momentum=row["liquidity_momentum"] or 0.0,
            holders_momentum=row["holders_momentum"] or 0.0,
            social_momentum=row["social_momentum"] or 0.0,
            total_score=row["total_score"] or 0.0,
            buy_signal=bool(row["buy_signal"]),
            sell_signal=bool(row["sell_signal"]),
            entry_price=row["entry_price"],
            exit_price=row["exit_price"],
            profit_loss_percent=int(pnl) if pnl is not None else None,
            stop_loss_level=row["stop_loss_level"],
            finalized=bool(row["finalized"]),
            entry_volume_24h=row["entry_volume_24h"],
            token_amount=row["token_amount"],
            base_amount=row["base_amount"],
            entry_tx=row["entry_tx"],
            exit_tx=row["exit_tx"],
            sell_reason=row["sell_reason"],
            pending_tx=row["pending_tx"],
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
            opened_at=_parse(row["opened_at"]),
            closed_at=_parse(row["closed_at"]),
        )


__all__ = ["SQLiteStorage", "SCHEMA_VERSION"]
