"""
Automatic stop-loss / take-profit / liquidation handling.

On every price tick, each open position with a known price is checked in a
fixed order (first match wins):

    LONG:  price <= stop_loss   → STOP_LOSS
           price >= take_profit → TAKE_PROFIT
           price <= liquidation → LIQUIDATION
    SHORT: mirrored comparisons

Closes go through the ledger at the tick price and only apply to the exact
position that was checked. A close that loses a race (position gone or
replaced) is dropped quietly.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Mapping, Optional

from paper_perps.domain.models import CloseReason, Position, Side, to_decimal
from paper_perps.execution.equity import liquidation_price
from paper_perps.execution.ledger import Ledger
from paper_perps.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TriggerEvent:
    """A risk trigger that closed a position."""
    symbol: str
    side: Side
    reason: CloseReason
    price: Decimal
    entry_price: Decimal


def _usable(value: Any) -> Optional[Decimal]:
    level = to_decimal(value)
    if level is None or not level.is_finite() or level <= 0:
        return None
    return level


def check_trigger(position: Position, price: Decimal) -> Optional[CloseReason]:
    """
    Decide whether `price` triggers a forced close. Pure.

    A zero or non-finite stop/target counts as unset.
    """
    stop_loss = _usable(position.stop_loss)
    take_profit = _usable(position.take_profit)
    liquidation = liquidation_price(position)
    if position.side == Side.LONG:
        if stop_loss is not None and price <= stop_loss:
            return CloseReason.STOP_LOSS
        if take_profit is not None and price >= take_profit:
            return CloseReason.TAKE_PROFIT
        if price <= liquidation:
            return CloseReason.LIQUIDATION
    else:
        if stop_loss is not None and price >= stop_loss:
            return CloseReason.STOP_LOSS
        if take_profit is not None and price <= take_profit:
            return CloseReason.TAKE_PROFIT
        if price >= liquidation:
            return CloseReason.LIQUIDATION
    return None


class RiskTriggerEvaluator:
    """Scans open positions against the latest prices and force-closes on triggers."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def evaluate(self, prices: Mapping[str, Any]) -> List[TriggerEvent]:
        """
        Evaluate every symbol with both a price and an open position.

        Returns the triggers that actually closed a position. Each symbol is
        independent; one close never short-circuits the others.
        """
        events: List[TriggerEvent] = []
        for symbol in self.ledger.symbols:
            event = self.evaluate_symbol(symbol, prices.get(symbol))
            if event is not None:
                events.append(event)
        return events

    def evaluate_symbol(self, symbol: str, price: Any) -> Optional[TriggerEvent]:
        price = _usable(price)
        if price is None:
            return None

        position = self.ledger.get_position(symbol)
        if position is None:
            return None

        reason = check_trigger(position, price)
        if reason is None:
            return None

        result = self.ledger.close_position(symbol, price, reason, expected=position)
        if not result.success:
            logger.debug(
                "Risk trigger close skipped",
                symbol=symbol,
                reason=reason.value,
                error=result.error.value if result.error else None,
            )
            return None

        logger.warning(
            "RISK_TRIGGER",
            symbol=symbol,
            side=position.side.value,
            reason=reason.value,
            price=str(price),
            entry_price=str(position.entry_price),
        )
        return TriggerEvent(
            symbol=symbol,
            side=position.side,
            reason=reason,
            price=price,
            entry_price=position.entry_price,
        )
