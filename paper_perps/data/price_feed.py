"""
Binance trade-stream price feed.

Subscribes to `<symbol>@trade` for every configured symbol and keeps the
last trade price per symbol in a PriceBook. Listeners registered on the feed
are called after every accepted price so the paper session can run its risk
triggers tick by tick.
"""
from __future__ import annotations

import asyncio
import json
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import websockets
from websockets.exceptions import WebSocketException

from paper_perps.constants import BINANCE_STREAM_URL, BINANCE_WS_URL
from paper_perps.domain.models import to_decimal
from paper_perps.monitoring.logger import get_logger

logger = get_logger(__name__)

PriceListener = Callable[[str, Decimal], None]


class PriceBook:
    """Last known price per symbol. Absence means no price is available."""

    def __init__(self, prices: Optional[Mapping[str, Decimal]] = None):
        self._lock = threading.Lock()
        self._prices: Dict[str, Decimal] = {}
        for symbol, price in (prices or {}).items():
            self.update(symbol, price)

    def update(self, symbol: str, price: Any) -> bool:
        """Store a price as Decimal. Unparseable, non-positive or non-finite prices are ignored."""
        price = to_decimal(price)
        if price is None or not price.is_finite() or price <= 0:
            return False
        with self._lock:
            self._prices[symbol.upper()] = price
        return True

    def get(self, symbol: str) -> Optional[Decimal]:
        with self._lock:
            return self._prices.get(symbol.upper())

    def snapshot(self) -> Dict[str, Decimal]:
        with self._lock:
            return dict(self._prices)

    def __contains__(self, symbol: str) -> bool:
        return self.get(symbol) is not None


def build_stream_url(
    symbols: Sequence[str],
    ws_base_url: str = BINANCE_WS_URL,
    stream_base_url: str = BINANCE_STREAM_URL,
) -> Optional[str]:
    """
    Websocket URL for the trade streams of `symbols`.

    One symbol uses the raw `/ws/<stream>` endpoint; several use the combined
    `/stream?streams=a/b/c` endpoint. No symbols, no URL.
    """
    streams = [f"{s.lower()}@trade" for s in symbols]
    if not streams:
        return None
    if len(streams) == 1:
        return f"{ws_base_url}/{streams[0]}"
    return f"{stream_base_url}{'/'.join(streams)}"


def parse_trade_message(raw: Any) -> Optional[Tuple[str, Decimal]]:
    """
    Extract (symbol, price) from a raw or combined-stream trade payload.

    Returns None for anything that is not a usable trade (bad JSON, missing
    fields, non-finite price).
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            return None
    else:
        message = raw
    if not isinstance(message, dict):
        return None

    payload = message.get("data", message)
    if not isinstance(payload, dict):
        return None

    symbol = payload.get("s")
    if not symbol or not isinstance(symbol, str):
        return None
    try:
        price = Decimal(str(payload.get("p")))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite():
        return None
    return symbol.upper(), price


class BinanceTradeFeed:
    """Streams last-trade prices over the Binance websocket into a PriceBook."""

    def __init__(
        self,
        price_book: PriceBook,
        symbols: Sequence[str],
        ws_base_url: str = BINANCE_WS_URL,
        stream_base_url: str = BINANCE_STREAM_URL,
        max_retries: int = 10,
        backoff_base: float = 2.0,
        ping_interval: float = 20.0,
    ):
        self._book = price_book
        self._symbols = [s.upper() for s in symbols]
        self._url = build_stream_url(self._symbols, ws_base_url, stream_base_url)
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._ping_interval = ping_interval
        self._listeners: List[PriceListener] = []
        self._ws = None
        self._running = False
        self._retry_count = 0
        self._received_count = 0
        logger.info("BinanceTradeFeed initialized", symbol_count=len(self._symbols), url=self._url)

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def received_count(self) -> int:
        return self._received_count

    def add_listener(self, listener: PriceListener) -> None:
        self._listeners.append(listener)

    async def run(self) -> None:
        """Connect and stream until stopped, reconnecting with exponential backoff."""
        if not self._url:
            logger.warning("BinanceTradeFeed has no symbols, not starting")
            return
        self._running = True
        while self._running and self._retry_count < self._max_retries:
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                logger.info("BinanceTradeFeed cancelled")
                break
            except (OSError, WebSocketException) as e:
                self._retry_count += 1
                backoff = self._backoff_base * (2 ** min(self._retry_count - 1, 6))
                logger.warning(
                    "PRICE_FEED_DISCONNECT",
                    error=str(e),
                    error_type=type(e).__name__,
                    retry=self._retry_count,
                    max_retries=self._max_retries,
                    backoff_s=backoff,
                )
                if self._running and self._retry_count < self._max_retries:
                    await asyncio.sleep(backoff)
                else:
                    logger.error("PRICE_FEED_MAX_RETRIES", retries=self._retry_count)

        self._running = False
        logger.info("BinanceTradeFeed stopped", total_received=self._received_count)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()

    async def _connect_and_stream(self) -> None:
        async with websockets.connect(
            self._url,
            ping_interval=self._ping_interval,
            ping_timeout=10,
            close_timeout=5,
        ) as ws:
            self._ws = ws
            self._retry_count = 0
            logger.info("PRICE_FEED_CONNECTED", url=self._url)

            async for raw in ws:
                if not self._running:
                    break
                self.handle_message(raw)

    def handle_message(self, raw: Any) -> bool:
        """Apply one websocket message. Returns True when a price was accepted."""
        parsed = parse_trade_message(raw)
        if parsed is None:
            return False
        symbol, price = parsed
        if symbol not in self._symbols:
            return False
        if not self._book.update(symbol, price):
            return False
        self._received_count += 1
        for listener in self._listeners:
            listener(symbol, price)
        return True
