"""
Paper account ledger.

Single owner of the account state: cash balance, one position slot per
supported symbol and the newest-first transaction log.

ENFORCES:
    1. At most one open position per symbol
    2. Validation precedes mutation (a rejected command leaves state untouched)
    3. Every mutation is one atomic read-modify-write under the ledger lock
"""
import threading
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Any, Optional, Sequence

from paper_perps.constants import INITIAL_BALANCE, MAX_LEVERAGE, MIN_LEVERAGE, SUPPORTED_SYMBOLS
from paper_perps.domain.models import (
    AccountState,
    CloseReason,
    ErrorKind,
    LedgerResult,
    Position,
    Side,
    Transaction,
    TransactionType,
    to_decimal,
    utc_now,
)
from paper_perps.exceptions import InvariantError
from paper_perps.execution.equity import calculate_pnl
from paper_perps.monitoring.logger import get_logger

logger = get_logger(__name__)


def _positive_finite(value: Any) -> Optional[Decimal]:
    amount = to_decimal(value)
    if amount is None or not amount.is_finite() or amount <= 0:
        return None
    return amount


def _valid_leverage(value: Any, max_leverage: int) -> Optional[int]:
    lev = to_decimal(value)
    if lev is None or not lev.is_finite():
        return None
    if lev != lev.to_integral_value():
        return None
    if lev < MIN_LEVERAGE or lev > max_leverage:
        return None
    return int(lev)


def _parse_side(value: Any) -> Optional[Side]:
    if isinstance(value, Side):
        return value
    if isinstance(value, str):
        try:
            return Side(value.strip().upper())
        except ValueError:
            return None
    return None


def _risk_level(value: Any, current: Optional[Decimal]) -> Optional[Decimal]:
    """
    Resolve a stop-loss or take-profit input.

    None clears the level and a positive finite price sets it. Anything else
    (garbage text, NaN, zero, negatives) leaves `current` in place.
    """
    if value is None:
        return None
    level = _positive_finite(value)
    if level is None:
        logger.warning(
            "Ignoring invalid risk level",
            value=str(value),
            kept=str(current) if current is not None else None,
        )
        return current
    return level


class Ledger:
    """
    Paper account ledger.

    Commands return LedgerResult; expected rejections are never raised.
    """

    def __init__(
        self,
        symbols: Sequence[str] = SUPPORTED_SYMBOLS,
        initial_balance: Decimal = INITIAL_BALANCE,
        max_leverage: int = MAX_LEVERAGE,
        state: Optional[AccountState] = None,
    ):
        self._symbols = tuple(symbols)
        self._initial_balance = Decimal(initial_balance)
        self._max_leverage = max_leverage
        self._lock = threading.RLock()

        if state is None:
            state = AccountState.initial(self._symbols, self._initial_balance)
        else:
            # Restored state may predate a symbol-set change.
            for symbol in self._symbols:
                state.positions.setdefault(symbol, None)
        self._state = state

    # ========== READ ACCESS ==========

    @property
    def symbols(self) -> tuple:
        return self._symbols

    @property
    def initial_balance(self) -> Decimal:
        return self._initial_balance

    @property
    def balance(self) -> Decimal:
        with self._lock:
            return self._state.balance

    def get_position(self, symbol: str) -> Optional[Position]:
        with self._lock:
            return self._state.positions.get(symbol)

    def open_positions(self) -> list:
        with self._lock:
            return self._state.open_positions()

    @property
    def transactions(self) -> list:
        """Newest-first copy of the transaction log."""
        with self._lock:
            return list(self._state.transactions)

    def snapshot(self) -> AccountState:
        """Consistent copy of the whole account."""
        with self._lock:
            return self._state.snapshot()

    # ========== COMMANDS ==========

    def open_position(
        self,
        symbol: str,
        side: Side,
        margin: Any,
        leverage: Any,
        price: Any,
        stop_loss: Any = None,
        take_profit: Any = None,
    ) -> LedgerResult:
        """
        Open a market position filled at `price`.

        Checks run in a fixed order and the first failure wins: margin,
        price, leverage, unknown symbol, side, existing position, funds.
        Invalid stop/target inputs are dropped rather than rejected.
        """
        margin_amt = _positive_finite(margin)
        if margin_amt is None:
            return self._reject("open", ErrorKind.INVALID_MARGIN, symbol, margin=str(margin))

        fill_price = _positive_finite(price)
        if fill_price is None:
            return self._reject("open", ErrorKind.PRICE_UNAVAILABLE, symbol, price=str(price))

        lev = _valid_leverage(leverage, self._max_leverage)
        if lev is None:
            return self._reject(
                "open", ErrorKind.INVALID_LEVERAGE, symbol,
                message=f"Leverage must be between {MIN_LEVERAGE}x and {self._max_leverage}x.",
                leverage=str(leverage),
            )

        if symbol not in self._symbols:
            return self._reject("open", ErrorKind.UNKNOWN_SYMBOL, symbol)

        parsed_side = _parse_side(side)
        if parsed_side is None:
            return self._reject("open", ErrorKind.INVALID_SIDE, symbol, side=str(side))
        side = parsed_side

        with self._lock:
            state = self._state
            if state.positions.get(symbol) is not None:
                return self._reject("open", ErrorKind.POSITION_ALREADY_OPEN, symbol)
            if margin_amt > state.balance:
                return self._reject(
                    "open", ErrorKind.INSUFFICIENT_FUNDS, symbol,
                    margin=str(margin_amt), balance=str(state.balance),
                )

            quantity = margin_amt * lev / fill_price
            now = utc_now()
            position = Position(
                symbol=symbol,
                side=side,
                quantity=quantity,
                entry_price=fill_price,
                leverage=lev,
                margin=margin_amt,
                opened_at=now,
                stop_loss=_risk_level(stop_loss, None),
                take_profit=_risk_level(take_profit, None),
            )
            txn = Transaction(
                id=str(uuid.uuid4()),
                type=TransactionType.for_open(side),
                symbol=symbol,
                price=fill_price,
                quantity=quantity,
                timestamp=now,
                leverage=lev,
                margin=margin_amt,
            )

            state.balance -= margin_amt
            state.positions[symbol] = position
            state.transactions.insert(0, txn)
            balance_after = state.balance

        logger.info(
            "Position opened",
            symbol=symbol,
            side=side.value,
            margin=str(margin_amt),
            leverage=lev,
            price=str(fill_price),
            quantity=str(quantity),
            balance=str(balance_after),
        )
        return LedgerResult.ok()

    def close_position(
        self,
        symbol: str,
        price: Any,
        reason: CloseReason = CloseReason.MANUAL,
        expected: Optional[Position] = None,
    ) -> LedgerResult:
        """
        Close the symbol's position at `price`, releasing margin + PnL.

        With `expected`, the close only applies while the slot still holds
        that exact position; a replaced or reopened slot gives
        NO_OPEN_POSITION.

        The released amount is not clamped, so a loss beyond margin reduces
        the free balance.
        """
        fill_price = _positive_finite(price)
        if fill_price is None:
            return self._reject("close", ErrorKind.PRICE_UNAVAILABLE, symbol, price=str(price))

        if symbol not in self._symbols:
            return self._reject("close", ErrorKind.UNKNOWN_SYMBOL, symbol)

        reason = CloseReason(reason)
        with self._lock:
            state = self._state
            position = state.positions.get(symbol)
            if position is None or (expected is not None and position is not expected):
                return self._reject("close", ErrorKind.NO_OPEN_POSITION, symbol)

            pnl = calculate_pnl(position, fill_price)
            released = position.margin + pnl
            txn = Transaction(
                id=str(uuid.uuid4()),
                type=TransactionType.CLOSE,
                symbol=symbol,
                price=fill_price,
                quantity=position.quantity,
                timestamp=utc_now(),
                pnl=pnl,
                reason=reason,
            )

            state.balance += released
            state.positions[symbol] = None
            state.transactions.insert(0, txn)
            balance_after = state.balance

        logger.info(
            "Position closed",
            symbol=symbol,
            side=position.side.value,
            price=str(fill_price),
            pnl=str(pnl),
            reason=reason.value,
            balance=str(balance_after),
        )
        return LedgerResult.ok()

    def update_risk(self, symbol: str, stop_loss: Any = None, take_profit: Any = None) -> None:
        """
        Replace stop-loss and take-profit on an open position.

        Both fields are replaced wholesale; None clears. An unusable value
        keeps the current level. No-op without a position.
        """
        with self._lock:
            position = self._state.positions.get(symbol)
            if position is None:
                return
            updated = replace(
                position,
                stop_loss=_risk_level(stop_loss, position.stop_loss),
                take_profit=_risk_level(take_profit, position.take_profit),
            )
            self._check_unchanged_core(position, updated)
            self._state.positions[symbol] = updated

        logger.info(
            "Risk levels updated",
            symbol=symbol,
            stop_loss=str(updated.stop_loss) if updated.stop_loss is not None else None,
            take_profit=str(updated.take_profit) if updated.take_profit is not None else None,
        )

    def reset_account(self) -> None:
        """Back to the initial balance with no positions and an empty log."""
        with self._lock:
            self._state = AccountState.initial(self._symbols, self._initial_balance)
        logger.warning("Account reset", balance=str(self._initial_balance))

    # ========== INTERNALS ==========

    @staticmethod
    def _check_unchanged_core(before: Position, after: Position) -> None:
        if (before.quantity, before.entry_price, before.margin, before.leverage) != (
            after.quantity, after.entry_price, after.margin, after.leverage
        ):
            raise InvariantError(f"Risk update resized position for {before.symbol}")

    @staticmethod
    def _reject(action: str, kind: ErrorKind, symbol: str, message: Optional[str] = None, **context) -> LedgerResult:
        result = LedgerResult.fail(kind, message)
        logger.info("Ledger command rejected", action=action, symbol=symbol, error=kind.value, **context)
        return result
