"""
Execution module.

Contains the paper account ledger and its mark-to-market math.

ARCHITECTURE:
    Ledger (single owner of AccountState, serialized mutations)
        │
        └── equity (pure PnL / liquidation / account metrics)
"""

from paper_perps.execution.equity import (
    AccountMetrics,
    PositionView,
    account_metrics,
    calculate_pnl,
    liquidation_price,
    position_view,
)
from paper_perps.execution.ledger import Ledger

__all__ = [
    "AccountMetrics",
    "PositionView",
    "Ledger",
    "account_metrics",
    "calculate_pnl",
    "liquidation_price",
    "position_view",
]
