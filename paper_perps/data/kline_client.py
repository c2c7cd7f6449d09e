"""
Binance REST kline snapshot.

Fetches the most recent candles for a symbol so stop/target levels can be
snapped to nearby highs and lows.
"""
import ssl
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Sequence

import aiohttp
import certifi

from paper_perps.domain.models import Candle
from paper_perps.exceptions import PriceFeedError
from paper_perps.monitoring.logger import get_logger

logger = get_logger(__name__)

BINANCE_REST_URL = "https://api.binance.com"
KLINES_ENDPOINT = "/api/v3/klines"
DEFAULT_LIMIT = 200


def parse_kline_row(symbol: str, interval: str, row: Sequence[Any]) -> Optional[Candle]:
    """
    Convert one REST kline row into a Candle.

    Row layout: [open_time_ms, open, high, low, close, volume, close_time_ms, ...]
    Malformed rows return None.
    """
    try:
        return Candle(
            timestamp=datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
            symbol=symbol.upper(),
            interval=interval,
            open=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])),
        )
    except (IndexError, TypeError, ValueError, InvalidOperation):
        return None


class KlineClient:
    """Thin async client for the Binance public klines endpoint."""

    def __init__(self, base_url: str = BINANCE_REST_URL, timeout_seconds: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._ssl_context: Optional[ssl.SSLContext] = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        """Reusable SSL context with certifi certificates."""
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def get_klines(self, symbol: str, interval: str = "1m", limit: int = DEFAULT_LIMIT) -> List[Candle]:
        """Most recent `limit` candles, oldest first."""
        url = f"{self.base_url}{KLINES_ENDPOINT}"
        params = {"symbol": symbol.upper(), "interval": interval, "limit": str(limit)}
        connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.get(url, params=params) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise PriceFeedError(f"Kline request failed ({response.status}): {error_text[:200]}")
                    data = await response.json()
        except aiohttp.ClientError as e:
            raise PriceFeedError(f"Kline request failed: {e}") from e

        candles = []
        for row in data:
            candle = parse_kline_row(symbol, interval, row)
            if candle is not None:
                candles.append(candle)
        logger.debug("Klines fetched", symbol=symbol, interval=interval, count=len(candles))
        return candles
