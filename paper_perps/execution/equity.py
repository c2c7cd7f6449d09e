"""
Mark-to-market math for paper positions.

Pure functions: unrealized PnL, liquidation price and account-level
equity/margin figures. Used by the ledger at close time, by the risk trigger
evaluator on every tick and by the CLI for display.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from paper_perps.domain.models import AccountState, Position, Side


def calculate_pnl(position: Position, price: Decimal) -> Decimal:
    """
    Unrealized PnL of a position at the given price.

    LONG:  (price - entry) * quantity
    SHORT: (entry - price) * quantity
    """
    if position.side == Side.LONG:
        delta = price - position.entry_price
    else:
        delta = position.entry_price - price
    return delta * position.quantity


def liquidation_price(position: Position) -> Decimal:
    """
    Adverse price at which the loss consumes the whole margin.

    A move of entry/leverage against the position exhausts margin, since
    margin = notional / leverage at entry.
    """
    move = position.entry_price / Decimal(position.leverage)
    if position.side == Side.LONG:
        return position.entry_price - move
    return position.entry_price + move


def notional(position: Position, price: Decimal) -> Decimal:
    return position.quantity * price


@dataclass(frozen=True)
class AccountMetrics:
    """Derived account figures at a set of prices."""
    equity: Decimal
    total_pnl: Decimal
    used_margin: Decimal


@dataclass(frozen=True)
class PositionView:
    """Position marked to a price, for display."""
    position: Position
    price: Optional[Decimal]
    unrealized_pnl: Optional[Decimal]
    notional: Optional[Decimal]
    liquidation_price: Decimal


def account_metrics(state: AccountState, prices: Mapping[str, Decimal]) -> AccountMetrics:
    """
    Equity, total unrealized PnL and used margin.

    Only positions with a known price contribute, so an unpriced position
    drops out of equity until its first tick arrives.
    """
    total_pnl = Decimal("0")
    used_margin = Decimal("0")
    for symbol, position in state.positions.items():
        price = prices.get(symbol)
        if position is None or not price:
            continue
        total_pnl += calculate_pnl(position, price)
        used_margin += position.margin
    return AccountMetrics(
        equity=state.balance + used_margin + total_pnl,
        total_pnl=total_pnl,
        used_margin=used_margin,
    )


def position_view(position: Position, price: Optional[Decimal]) -> PositionView:
    if not price:
        return PositionView(
            position=position,
            price=None,
            unrealized_pnl=None,
            notional=None,
            liquidation_price=liquidation_price(position),
        )
    return PositionView(
        position=position,
        price=price,
        unrealized_pnl=calculate_pnl(position, price),
        notional=notional(position, price),
        liquidation_price=liquidation_price(position),
    )
