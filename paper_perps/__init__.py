"""
Paper perpetual-futures trading account.

Simulated leveraged positions marked to live prices with automatic
stop-loss, take-profit and liquidation handling.
"""
__version__ = "0.1.0"
