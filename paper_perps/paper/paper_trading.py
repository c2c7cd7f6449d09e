"""
Paper trading runtime.

Wires the ledger, the live price book, the risk trigger evaluator and the
account store into one session. Every accepted price runs the triggers;
every successful mutation is persisted.
"""
import asyncio
from decimal import Decimal
from typing import Any, List, Optional

from paper_perps.config.config import Config
from paper_perps.data.price_feed import BinanceTradeFeed, PriceBook
from paper_perps.domain.models import CloseReason, LedgerResult, Side, Transaction, to_decimal
from paper_perps.execution.equity import AccountMetrics, PositionView, account_metrics, position_view
from paper_perps.execution.ledger import Ledger
from paper_perps.monitoring.logger import get_logger
from paper_perps.risk.trigger_evaluator import RiskTriggerEvaluator, TriggerEvent
from paper_perps.storage.account_store import AccountStore

logger = get_logger(__name__)


class PaperTradingSession:
    """
    One paper trading session.

    Constructed at startup from the stored account, saved after each
    successful command or trigger, and saved again on shutdown.
    """

    def __init__(
        self,
        config: Config,
        store: Optional[AccountStore] = None,
        price_book: Optional[PriceBook] = None,
    ):
        self.config = config
        account = config.account

        self.store = store or AccountStore(
            db_path=config.storage.db_path,
            store_key=config.storage.store_key,
            symbols=account.symbols,
            initial_balance=account.initial_balance,
        )
        self.ledger = Ledger(
            symbols=account.symbols,
            initial_balance=account.initial_balance,
            max_leverage=account.max_leverage,
            state=self.store.load(),
        )
        self.prices = price_book or PriceBook()
        self.evaluator = RiskTriggerEvaluator(self.ledger)
        self.triggers: List[TriggerEvent] = []

        logger.info(
            "Paper trading session initialized",
            symbols=list(account.symbols),
            balance=str(self.ledger.balance),
            open_positions=len(self.ledger.open_positions()),
        )

    # ========== COMMANDS ==========

    def open(
        self,
        symbol: str,
        side: Side,
        margin: Any,
        leverage: Optional[int] = None,
        stop_loss: Any = None,
        take_profit: Any = None,
        price: Any = None,
    ) -> LedgerResult:
        """Open at `price`, or at the last book price when none is given."""
        symbol = symbol.upper()
        fill_price = self._fill_price(symbol, price)
        if leverage is None:
            leverage = self.config.account.default_leverage
        result = self.ledger.open_position(
            symbol, side, margin, leverage, fill_price,
            stop_loss=stop_loss, take_profit=take_profit,
        )
        if result.success:
            self.checkpoint()
        return result

    def close(self, symbol: str, price: Any = None, reason: CloseReason = CloseReason.MANUAL) -> LedgerResult:
        symbol = symbol.upper()
        result = self.ledger.close_position(symbol, self._fill_price(symbol, price), reason)
        if result.success:
            self.checkpoint()
        return result

    def update_risk(self, symbol: str, stop_loss: Any = None, take_profit: Any = None) -> bool:
        """Replace risk levels. Returns False when there is no position to update."""
        symbol = symbol.upper()
        if self.ledger.get_position(symbol) is None:
            return False
        self.ledger.update_risk(symbol, stop_loss=stop_loss, take_profit=take_profit)
        self.checkpoint()
        return True

    def reset(self) -> None:
        self.ledger.reset_account()
        self.triggers.clear()
        self.checkpoint()

    # ========== PRICE HANDLING ==========

    def on_price(self, symbol: str, price: Any) -> List[TriggerEvent]:
        """Record a tick and run the risk triggers against the whole book."""
        self.prices.update(symbol, price)
        return self.evaluate()

    def evaluate(self) -> List[TriggerEvent]:
        events = self.evaluator.evaluate(self.prices.snapshot())
        if events:
            self.triggers.extend(events)
            self.checkpoint()
        return events

    # ========== VIEWS ==========

    def metrics(self) -> AccountMetrics:
        return account_metrics(self.ledger.snapshot(), self.prices.snapshot())

    def positions(self) -> List[PositionView]:
        prices = self.prices.snapshot()
        return [position_view(p, prices.get(p.symbol)) for p in self.ledger.open_positions()]

    def history(self, limit: Optional[int] = None) -> List[Transaction]:
        txns = self.ledger.transactions
        return txns if limit is None else txns[:limit]

    # ========== LIFECYCLE ==========

    def checkpoint(self) -> None:
        self.store.save(self.ledger.snapshot())

    def build_feed(self) -> BinanceTradeFeed:
        feed_cfg = self.config.feed
        feed = BinanceTradeFeed(
            self.prices,
            self.config.account.symbols,
            ws_base_url=feed_cfg.ws_base_url,
            stream_base_url=feed_cfg.stream_base_url,
            max_retries=feed_cfg.max_retries,
            backoff_base=feed_cfg.backoff_base_seconds,
            ping_interval=feed_cfg.ping_interval,
        )
        feed.add_listener(lambda symbol, price: self.evaluate())
        return feed

    async def run(self, run_seconds: Optional[float] = None, feed: Optional[BinanceTradeFeed] = None) -> None:
        """
        Stream live prices and run triggers until the feed stops or
        `run_seconds` elapses.
        """
        feed = feed or self.build_feed()
        logger.info("Starting paper trading loop", run_seconds=run_seconds, url=feed.url)
        try:
            if run_seconds is None:
                await feed.run()
            else:
                try:
                    await asyncio.wait_for(feed.run(), timeout=run_seconds)
                except asyncio.TimeoutError:
                    logger.info("Run duration reached", run_seconds=run_seconds)
        finally:
            self.checkpoint()
            logger.info(
                "Paper trading loop stopped",
                triggers=len(self.triggers),
                balance=str(self.ledger.balance),
            )

    def close_store(self) -> None:
        self.store.close()

    def _fill_price(self, symbol: str, price: Any) -> Optional[Decimal]:
        if price is None:
            return self.prices.get(symbol)
        fill_price = to_decimal(price)
        if fill_price is not None and fill_price.is_finite() and fill_price > 0:
            self.prices.update(symbol, fill_price)
        return fill_price
