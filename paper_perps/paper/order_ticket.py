"""
Order ticket helpers.

Turns what a trader types (an amount in margin or coin units, a risk % and
reward multiple, raw stop/target text) into the numbers the ledger takes.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

from paper_perps.domain.models import Side, to_decimal
from paper_perps.exceptions import ValidationError

ZERO = Decimal("0")


class AmountMode(str, Enum):
    """How the ticket amount is interpreted."""
    MARGIN = "MARGIN"      # amount is cash collateral
    QUANTITY = "QUANTITY"  # amount is base-asset units


@dataclass(frozen=True)
class OrderSizing:
    quantity: Decimal
    margin: Decimal
    notional: Decimal

    @property
    def is_empty(self) -> bool:
        return self.quantity == 0 or self.margin == 0


EMPTY_SIZING = OrderSizing(quantity=ZERO, margin=ZERO, notional=ZERO)


def size_order(amount: Any, mode: AmountMode, price: Optional[Decimal], leverage: int) -> OrderSizing:
    """
    Quantity, margin and notional for a ticket.

    MARGIN:   quantity = amount * leverage / price
    QUANTITY: margin   = amount * price / leverage

    Missing price, a non-positive amount or non-positive leverage gives an
    empty sizing.
    """
    value = to_decimal(amount)
    lev = to_decimal(leverage)
    if not price or value is None or not value.is_finite() or value <= 0:
        return EMPTY_SIZING
    if lev is None or not lev.is_finite() or lev <= 0:
        return EMPTY_SIZING

    if AmountMode(mode) == AmountMode.MARGIN:
        quantity = value * lev / price
        return OrderSizing(quantity=quantity, margin=value, notional=quantity * price)

    return OrderSizing(quantity=value, margin=value * price / lev, notional=value * price)


def risk_preset(
    anchor_price: Decimal,
    side: Side,
    risk_pct: Any,
    reward_ratio: Any,
) -> Tuple[Decimal, Decimal]:
    """
    Stop-loss and take-profit placed `risk_pct` percent from the anchor, with
    the target `reward_ratio` times further away than the stop.
    """
    risk = to_decimal(risk_pct)
    reward = to_decimal(reward_ratio)
    if risk is None or reward is None or not risk.is_finite() or not reward.is_finite():
        raise ValidationError("Risk preset needs numeric risk % and reward ratio.")
    risk = risk / Decimal("100")
    one = Decimal("1")
    if Side(side) == Side.LONG:
        return anchor_price * (one - risk), anchor_price * (one + risk * reward)
    return anchor_price * (one + risk), anchor_price * (one - risk * reward)


def parse_price_input(text: Optional[str], label: str) -> Optional[Decimal]:
    """
    Parse a stop/target field.

    Blank input means "not set". Anything else must be a positive finite price.
    """
    if text is None or not str(text).strip():
        return None
    value = to_decimal(str(text).strip())
    if value is None or not value.is_finite() or value <= 0:
        raise ValidationError(f"{label} must be a valid price.")
    return value


def snap_to_nearest_candle(price: Decimal, candles: Iterable[Any]) -> Decimal:
    """Closest candle high or low to `price`; `price` itself when there are no candles."""
    closest = price
    best: Optional[Decimal] = None
    for candle in candles:
        for level in (candle.high, candle.low):
            diff = abs(level - price)
            if best is None or diff < best:
                best = diff
                closest = level
    return closest


def format_price_input(value: Decimal) -> str:
    """Two decimals at or above 1, six below."""
    if value is None or not value.is_finite():
        return ""
    places = Decimal("0.01") if value >= 1 else Decimal("0.000001")
    return str(value.quantize(places, rounding=ROUND_HALF_UP))
