"""
holdwatch Analytics: Trade Ledger

Append-only audit trail of simulated liquidations and trims.

Schema (SQLite, table ``trades``):
    id, symbol, quantity, price, action, timestamp, reason

No update or delete path exists. The risk engine never reads the ledger
back; the query helpers are for audits and reports.
"""

import json
import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
import logging

from core.exceptions import LedgerError

logger = logging.getLogger(__name__)

ACTION_BUY = "buy"
ACTION_SELL = "sell"
VALID_ACTIONS = (ACTION_BUY, ACTION_SELL)


@dataclass(frozen=True)
class TradeRecord:
    """One executed (simulated) trade."""
    symbol: str
    quantity: float
    price: float
    action: str
    timestamp: datetime
    reason: Optional[str] = None  # stop_loss / sentiment / rebalance

    def __post_init__(self):
        if self.action not in VALID_ACTIONS:
            raise ValueError(f"Invalid trade action: {self.action}")
        if self.quantity < 0:
            raise ValueError(f"Trade quantity must be non-negative, got {self.quantity}")

    @property
    def notional(self) -> float:
        return self.quantity * self.price

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


class TradeLedger:
    """
    SQLite-backed ledger with an optional JSONL mirror.

    Args:
        db_file: Path to the SQLite database (shared by screens if desired)
        jsonl_mirror: Also append each record to ``<db stem>.jsonl``
    """

    def __init__(self, db_file: str = "data/trades.db", jsonl_mirror: bool = False):
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self.jsonl_file = self.db_file.with_suffix(".jsonl") if jsonl_mirror else None
        self._init_sqlite()
        logger.info(f"TradeLedger initialized: db={self.db_file}, jsonl={self.jsonl_file}")

    def _init_sqlite(self):
        conn = sqlite3.connect(str(self.db_file))
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    quantity REAL NOT NULL,
                    price REAL NOT NULL,
                    action TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    reason TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol)")
            conn.commit()
        finally:
            conn.close()

    def append(self, record: TradeRecord) -> int:
        """
        Persist one record.

        Returns:
            The row id assigned by SQLite

        Raises:
            LedgerError: the record could not be stored
        """
        try:
            conn = sqlite3.connect(str(self.db_file))
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO trades (symbol, quantity, price, action, timestamp, reason)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.symbol,
                        record.quantity,
                        record.price,
                        record.action,
                        record.timestamp.isoformat(),
                        record.reason,
                    ),
                )
                conn.commit()
                row_id = cursor.lastrowid
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise LedgerError(record.symbol, e) from e

        if self.jsonl_file is not None:
            try:
                with open(self.jsonl_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps({"id": row_id, **record.to_dict()}) + "\n")
            except OSError as e:
                logger.warning(f"Failed to mirror trade {row_id} to {self.jsonl_file}: {e}")

        logger.info(
            f"Ledger #{row_id}: {record.action.upper()} {record.quantity:.6f} {record.symbol} "
            f"@ ${record.price:.4f} ({record.reason or 'n/a'})"
        )
        return row_id

    def query(self, sql: str, params: tuple = ()) -> List[Dict]:
        """
        Run a query on a read-only connection and return rows as dicts.

        Raises:
            sqlite3.OperationalError: the statement tries to write
        """
        conn = sqlite3.connect(f"{self.db_file.resolve().as_uri()}?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def recent_trades(self, limit: int = 100) -> List[TradeRecord]:
        rows = self.query("SELECT * FROM trades ORDER BY id DESC LIMIT ?", (int(limit),))
        trades = []
        for row in rows:
            trades.append(
                TradeRecord(
                    symbol=row["symbol"],
                    quantity=row["quantity"],
                    price=row["price"],
                    action=row["action"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    reason=row["reason"],
                )
            )
        return trades

    def count(self) -> int:
        return int(self.query("SELECT COUNT(*) AS n FROM trades")[0]["n"])


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
