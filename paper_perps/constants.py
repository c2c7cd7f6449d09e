"""
System-wide constants for the paper trading account.
"""
from decimal import Decimal

# Account
INITIAL_BALANCE = Decimal("50000")
SUPPORTED_SYMBOLS = ("BTCUSDT", "ETHUSDT", "SOLUSDT", "DOGEUSDT", "ADAUSDT")

# Leverage bounds accepted by the ledger
MIN_LEVERAGE = 1
MAX_LEVERAGE = 50

# Persistence
STORE_KEY = "paper-trading-store"
DEFAULT_DB_PATH = "data/paper_account.db"

# Binance public streams
BINANCE_WS_URL = "wss://stream.binance.com:9443/ws"
BINANCE_STREAM_URL = "wss://stream.binance.com:9443/stream?streams="
