"""
Account State Persistence.

SQLite key-value store holding the whole paper account as one JSON document
under a fixed key:

    kv_store(key TEXT PRIMARY KEY, value TEXT, updated_at TEXT)

Decimals are written as strings, enums by value and timestamps as ISO-8601,
so a save/load cycle reproduces the account exactly.

Recovery: a missing row starts a fresh account; an unreadable row is logged
and replaced by a fresh account.
"""
import json
import sqlite3
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from paper_perps.constants import DEFAULT_DB_PATH, INITIAL_BALANCE, STORE_KEY, SUPPORTED_SYMBOLS
from paper_perps.domain.models import (
    AccountState,
    CloseReason,
    Position,
    Side,
    Transaction,
    TransactionType,
)
from paper_perps.exceptions import StorageError
from paper_perps.monitoring.logger import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _parse_dec(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def position_to_dict(position: Position) -> Dict[str, Any]:
    return {
        "symbol": position.symbol,
        "side": position.side.value,
        "quantity": _dec(position.quantity),
        "entry_price": _dec(position.entry_price),
        "leverage": position.leverage,
        "margin": _dec(position.margin),
        "stop_loss": _dec(position.stop_loss),
        "take_profit": _dec(position.take_profit),
        "opened_at": position.opened_at.isoformat(),
    }


def position_from_dict(data: Dict[str, Any]) -> Position:
    return Position(
        symbol=data["symbol"],
        side=Side(data["side"]),
        quantity=Decimal(data["quantity"]),
        entry_price=Decimal(data["entry_price"]),
        leverage=int(data["leverage"]),
        margin=Decimal(data["margin"]),
        stop_loss=_parse_dec(data.get("stop_loss")),
        take_profit=_parse_dec(data.get("take_profit")),
        opened_at=_parse_ts(data["opened_at"]),
    )


def transaction_to_dict(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "symbol": txn.symbol,
        "price": _dec(txn.price),
        "quantity": _dec(txn.quantity),
        "leverage": txn.leverage,
        "margin": _dec(txn.margin),
        "pnl": _dec(txn.pnl),
        "reason": txn.reason.value if txn.reason else None,
        "timestamp": txn.timestamp.isoformat(),
    }


def transaction_from_dict(data: Dict[str, Any]) -> Transaction:
    reason = data.get("reason")
    leverage = data.get("leverage")
    return Transaction(
        id=data["id"],
        type=TransactionType(data["type"]),
        symbol=data["symbol"],
        price=Decimal(data["price"]),
        quantity=Decimal(data["quantity"]),
        timestamp=_parse_ts(data["timestamp"]),
        leverage=int(leverage) if leverage is not None else None,
        margin=_parse_dec(data.get("margin")),
        pnl=_parse_dec(data.get("pnl")),
        reason=CloseReason(reason) if reason else None,
    )


def state_to_dict(state: AccountState) -> Dict[str, Any]:
    return {
        "version": SCHEMA_VERSION,
        "balance": _dec(state.balance),
        "positions": {
            symbol: position_to_dict(p) if p is not None else None
            for symbol, p in state.positions.items()
        },
        "transactions": [transaction_to_dict(t) for t in state.transactions],
    }


def state_from_dict(data: Dict[str, Any]) -> AccountState:
    """Decode a stored document. Raises StorageError on any malformed field."""
    try:
        positions = {
            symbol: position_from_dict(p) if p is not None else None
            for symbol, p in data["positions"].items()
        }
        return AccountState(
            balance=Decimal(data["balance"]),
            positions=positions,
            transactions=[transaction_from_dict(t) for t in data["transactions"]],
        )
    except (KeyError, TypeError, ValueError, ArithmeticError, AttributeError) as e:
        raise StorageError(f"Malformed account state: {e}") from e


class AccountStore:
    """
    SQLite persistence for the paper account.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        store_key: str = STORE_KEY,
        symbols: Sequence[str] = SUPPORTED_SYMBOLS,
        initial_balance: Decimal = INITIAL_BALANCE,
    ):
        """Initialize persistence with database path."""
        self.db_path = db_path
        self.store_key = store_key
        self.symbols = tuple(symbols)
        self.initial_balance = Decimal(initial_balance)
        self._local = threading.local()

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def _conn(self) -> sqlite3.Connection:
        """Get thread-local connection."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path)
            self._local.conn.row_factory = sqlite3.Row
        return self._local.conn

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    def _fresh_state(self) -> AccountState:
        return AccountState.initial(self.symbols, self.initial_balance)

    def load(self) -> AccountState:
        """
        Load the stored account, or a fresh one.

        Corrupt payloads are discarded (logged at ERROR) and a fresh account
        is returned; the bad row is overwritten on the next save.
        """
        row = self._conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (self.store_key,)
        ).fetchone()
        if row is None:
            logger.info("No stored account, starting fresh", store_key=self.store_key,
                        balance=str(self.initial_balance))
            return self._fresh_state()

        try:
            state = self._decode(row["value"])
        except StorageError as e:
            logger.error("Stored account unreadable, resetting to initial state",
                         store_key=self.store_key, error=str(e))
            return self._fresh_state()

        logger.info(
            "Account loaded",
            store_key=self.store_key,
            balance=str(state.balance),
            open_positions=len(state.open_positions()),
            transactions=len(state.transactions),
        )
        return state

    def save(self, state: AccountState) -> None:
        payload = json.dumps(state_to_dict(state), separators=(",", ":"))
        now = datetime.now(timezone.utc).isoformat()
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (self.store_key, payload, now),
            )
        logger.debug("Account saved", store_key=self.store_key, bytes=len(payload))

    def clear(self) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM kv_store WHERE key = ?", (self.store_key,))

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @staticmethod
    def _decode(raw: str) -> AccountState:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise StorageError(f"Account payload is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StorageError("Account payload is not an object")
        version = data.get("version")
        if version != SCHEMA_VERSION:
            raise StorageError(f"Unsupported account schema version: {version}")
        return state_from_dict(data)
