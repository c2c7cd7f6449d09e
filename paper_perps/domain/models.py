"""
Domain models for the paper trading account.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all money and price
values are Decimals.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class Side(str, Enum):
    """Position side."""
    LONG = "LONG"
    SHORT = "SHORT"


class TransactionType(str, Enum):
    """Ledger event type."""
    OPEN_LONG = "OPEN_LONG"
    OPEN_SHORT = "OPEN_SHORT"
    CLOSE = "CLOSE"

    @classmethod
    def for_open(cls, side: Side) -> "TransactionType":
        return cls.OPEN_LONG if side == Side.LONG else cls.OPEN_SHORT


class CloseReason(str, Enum):
    """Why a position was closed."""
    MANUAL = "MANUAL"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    LIQUIDATION = "LIQUIDATION"


class ErrorKind(str, Enum):
    """Recoverable ledger rejection reasons."""
    INVALID_MARGIN = "INVALID_MARGIN"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"
    INVALID_LEVERAGE = "INVALID_LEVERAGE"
    POSITION_ALREADY_OPEN = "POSITION_ALREADY_OPEN"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NO_OPEN_POSITION = "NO_OPEN_POSITION"
    UNKNOWN_SYMBOL = "UNKNOWN_SYMBOL"
    INVALID_SIDE = "INVALID_SIDE"


ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_MARGIN: "Enter a valid margin.",
    ErrorKind.PRICE_UNAVAILABLE: "Live price unavailable.",
    ErrorKind.INVALID_LEVERAGE: "Leverage must be between 1x and 50x.",
    ErrorKind.POSITION_ALREADY_OPEN: "Close the existing position first.",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient Funds",
    ErrorKind.NO_OPEN_POSITION: "No open position.",
    ErrorKind.UNKNOWN_SYMBOL: "Unsupported symbol.",
    ErrorKind.INVALID_SIDE: "Side must be LONG or SHORT.",
}


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Coerce a numeric input to Decimal.

    Floats go through str() so 0.1 stays 0.1. Returns None for values that
    cannot be read as a number (None, bools, garbage strings).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Candle:
    """
    OHLCV candle used to snap stop/target levels to recent highs and lows.
    """
    timestamp: datetime
    symbol: str
    interval: str  # e.g. "1m", "15m"
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def __post_init__(self):
        """Validate candle data."""
        if self.timestamp.tzinfo is None:
            raise ValueError("Candle timestamp must be timezone-aware (UTC)")
        if self.high < self.low:
            raise ValueError(f"Invalid candle: high ({self.high}) < low ({self.low})")


@dataclass(frozen=True)
class Position:
    """
    Open leveraged position. One per symbol slot.

    quantity == margin * leverage / entry_price at creation and is never
    resized; only stop_loss/take_profit are replaced after opening.
    """
    symbol: str
    side: Side
    quantity: Decimal
    entry_price: Decimal
    leverage: int
    margin: Decimal
    opened_at: datetime
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None

    def __post_init__(self):
        if self.opened_at.tzinfo is None:
            raise ValueError("Position opened_at must be timezone-aware (UTC)")


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger log entry, created once per open/close."""
    id: str
    type: TransactionType
    symbol: str
    price: Decimal
    quantity: Decimal
    timestamp: datetime
    leverage: Optional[int] = None
    margin: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    reason: Optional[CloseReason] = None


@dataclass
class AccountState:
    """
    Balance, per-symbol position slots and the newest-first transaction log.

    Owned by a single Ledger; readers get copies via snapshot().
    """
    balance: Decimal
    positions: Dict[str, Optional[Position]]
    transactions: List[Transaction] = field(default_factory=list)

    @classmethod
    def initial(cls, symbols: Sequence[str], balance: Decimal) -> "AccountState":
        return cls(
            balance=balance,
            positions={symbol: None for symbol in symbols},
            transactions=[],
        )

    def snapshot(self) -> "AccountState":
        """Shallow copy; Position and Transaction are frozen so this is safe to share."""
        return AccountState(
            balance=self.balance,
            positions=dict(self.positions),
            transactions=list(self.transactions),
        )

    def open_positions(self) -> List[Position]:
        return [p for p in self.positions.values() if p is not None]


@dataclass(frozen=True)
class LedgerResult:
    """
    Outcome of a ledger command.

    Expected validation failures are reported here instead of raised.
    """
    success: bool
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> "LedgerResult":
        return cls(success=True)

    @classmethod
    def fail(cls, kind: ErrorKind, message: Optional[str] = None) -> "LedgerResult":
        return cls(success=False, error=kind, message=message or ERROR_MESSAGES[kind])

    def __bool__(self) -> bool:
        return self.success
