"""
CLI entrypoint for the paper perpetual-futures account.

Provides commands for status, open, close, risk, reset, history and run.
"""
import asyncio
import typer
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from paper_perps.config.config import Config, load_config
from paper_perps.data.kline_client import KlineClient
from paper_perps.domain.models import Side
from paper_perps.exceptions import PriceFeedError, ValidationError
from paper_perps.monitoring.logger import setup_logging, get_logger
from paper_perps.paper.order_ticket import (
    AmountMode,
    format_price_input,
    parse_price_input,
    risk_preset,
    size_order,
    snap_to_nearest_candle,
)
from paper_perps.paper.paper_trading import PaperTradingSession

app = typer.Typer(
    name="paper-perps",
    help="Paper perpetual-futures trading account",
    add_completion=False,
)

logger = get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _session(config_path: Path) -> PaperTradingSession:
    config: Config = load_config(str(config_path))
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return PaperTradingSession(config)


def _parse_marks(marks: List[str]) -> dict:
    """SYMBOL=PRICE pairs from --mark options."""
    parsed = {}
    for item in marks:
        symbol, sep, raw = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected SYMBOL=PRICE, got {item!r}", param_hint="--mark")
        try:
            price = parse_price_input(raw, f"Mark for {symbol}")
        except ValidationError as e:
            raise typer.BadParameter(str(e), param_hint="--mark")
        if price is not None:
            parsed[symbol.strip().upper()] = price
    return parsed


def _recent_candles(symbol: str, interval: str) -> list:
    try:
        return asyncio.run(KlineClient().get_klines(symbol, interval))
    except PriceFeedError as e:
        logger.warning("Candle snapshot unavailable, keeping levels", symbol=symbol, error=str(e))
        return []


def _usd(value: Optional[Decimal]) -> str:
    if value is None:
        return "--"
    return f"${value:,.2f}"


def _fail(message: str) -> None:
    typer.secho(f"✗ {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


@app.command()
def status(
    mark: List[str] = typer.Option([], "--mark", help="Mark price as SYMBOL=PRICE (repeatable)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Display balance, equity and open positions.

    Example:
        paper-perps status --mark BTCUSDT=64000
    """
    session = _session(config_path)
    try:
        for symbol, price in _parse_marks(mark).items():
            session.prices.update(symbol, price)

        metrics = session.metrics()
        typer.echo("Account Status")
        typer.echo("=" * 50)
        typer.echo(f"Balance:      {_usd(session.ledger.balance)}")
        typer.echo(f"Equity:       {_usd(metrics.equity)}")
        typer.echo(f"Used Margin:  {_usd(metrics.used_margin)}")
        pnl_color = typer.colors.GREEN if metrics.total_pnl >= 0 else typer.colors.RED
        typer.secho(f"Unrealized:   {_usd(metrics.total_pnl)}", fg=pnl_color)

        views = session.positions()
        if not views:
            typer.echo("\nNo open positions.")
        for view in views:
            pos = view.position
            typer.secho(f"\n{pos.symbol} ({pos.side.value})", bold=True)
            typer.echo(f"  Entry:      {_usd(pos.entry_price)}")
            typer.echo(f"  Mark:       {_usd(view.price)}")
            typer.echo(f"  Quantity:   {pos.quantity:.6f} ({pos.leverage}x)")
            typer.echo(f"  Margin:     {_usd(pos.margin)}")
            typer.echo(f"  Liq Price:  {_usd(view.liquidation_price)}")
            typer.echo(f"  Stop/TP:    {_usd(pos.stop_loss)} / {_usd(pos.take_profit)}")
            if view.unrealized_pnl is not None:
                color = typer.colors.GREEN if view.unrealized_pnl >= 0 else typer.colors.RED
                typer.secho(f"  Unrealized: {_usd(view.unrealized_pnl)}", fg=color)
        typer.echo("\n" + "=" * 50)
    finally:
        session.close_store()


@app.command(name="open")
def open_cmd(
    symbol: str = typer.Argument(..., help="Symbol, e.g. BTCUSDT"),
    side: Side = typer.Argument(..., help="LONG or SHORT", case_sensitive=False),
    amount: str = typer.Option(..., "--amount", help="Margin (USD) or quantity, see --mode"),
    price: str = typer.Option(..., "--price", help="Fill price"),
    mode: AmountMode = typer.Option(AmountMode.MARGIN, "--mode", case_sensitive=False),
    leverage: Optional[int] = typer.Option(None, "--leverage", "-l", help="Leverage (defaults to config)"),
    stop_loss: Optional[str] = typer.Option(None, "--sl", help="Stop-loss price"),
    take_profit: Optional[str] = typer.Option(None, "--tp", help="Take-profit price"),
    risk_pct: Optional[float] = typer.Option(None, "--risk-pct", help="Place SL/TP this % from entry"),
    reward: float = typer.Option(2.0, "--reward", help="Reward multiple for --risk-pct"),
    snap: Optional[str] = typer.Option(None, "--snap", help="Snap SL/TP to the nearest recent candle high/low at this interval, e.g. 15m"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Open a position with an immediate market fill.

    Example:
        paper-perps open BTCUSDT LONG --amount 1000 --leverage 10 --price 64000 --risk-pct 1
    """
    session = _session(config_path)
    try:
        try:
            fill_price = parse_price_input(price, "Price")
            sl = parse_price_input(stop_loss, "Stop-loss")
            tp = parse_price_input(take_profit, "Take-profit")
        except ValidationError as e:
            _fail(str(e))

        lev = leverage if leverage is not None else session.config.account.default_leverage
        max_lev = session.config.account.max_leverage
        if not 1 <= lev <= max_lev:
            _fail(f"Leverage must be between 1x and {max_lev}x.")
        sizing = size_order(amount, mode, fill_price, lev)
        if sizing.is_empty:
            _fail("Enter a valid amount.")

        if risk_pct is not None:
            sl, tp = risk_preset(fill_price, side, risk_pct, reward)

        if snap and (sl is not None or tp is not None):
            candles = _recent_candles(symbol, snap)
            if sl is not None:
                sl = snap_to_nearest_candle(sl, candles)
            if tp is not None:
                tp = snap_to_nearest_candle(tp, candles)

        result = session.open(
            symbol, side, sizing.margin, lev,
            stop_loss=sl, take_profit=tp, price=fill_price,
        )
        if not result.success:
            _fail(result.message or "Trade failed.")

        typer.secho(
            f"✓ Opened {side.value} {symbol.upper()} qty={sizing.quantity:.6f} "
            f"margin={_usd(sizing.margin)} @ {_usd(fill_price)} ({lev}x)",
            fg=typer.colors.GREEN,
        )
        if sl is not None or tp is not None:
            typer.echo(
                f"  SL {format_price_input(sl) if sl else '--'}  TP {format_price_input(tp) if tp else '--'}"
            )
    finally:
        session.close_store()


@app.command()
def close(
    symbol: str = typer.Argument(..., help="Symbol to close"),
    price: str = typer.Option(..., "--price", help="Fill price"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Close a position manually.

    Example:
        paper-perps close BTCUSDT --price 65000
    """
    session = _session(config_path)
    try:
        try:
            fill_price = parse_price_input(price, "Price")
        except ValidationError as e:
            _fail(str(e))
        result = session.close(symbol, price=fill_price)
        if not result.success:
            _fail(result.message or "Close failed.")
        last = session.history(limit=1)[0]
        color = typer.colors.GREEN if last.pnl >= 0 else typer.colors.RED
        typer.secho(f"✓ Closed {symbol.upper()} @ {_usd(fill_price)} PnL {_usd(last.pnl)}", fg=color)
    finally:
        session.close_store()


@app.command()
def risk(
    symbol: str = typer.Argument(..., help="Symbol with an open position"),
    stop_loss: Optional[str] = typer.Option(None, "--sl", help="Stop-loss price (omit to clear)"),
    take_profit: Optional[str] = typer.Option(None, "--tp", help="Take-profit price (omit to clear)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Replace stop-loss and take-profit on an open position.

    Example:
        paper-perps risk BTCUSDT --sl 62000 --tp 70000
    """
    session = _session(config_path)
    try:
        try:
            sl = parse_price_input(stop_loss, "Stop-loss")
            tp = parse_price_input(take_profit, "Take-profit")
        except ValidationError as e:
            _fail(str(e))
        if not session.update_risk(symbol, stop_loss=sl, take_profit=tp):
            _fail("No open position.")
        typer.secho(f"✓ Risk updated for {symbol.upper()}: SL {_usd(sl)} TP {_usd(tp)}", fg=typer.colors.GREEN)
    finally:
        session.close_store()


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Reset the account to its initial balance, dropping positions and history.
    """
    if not yes and not typer.confirm("Reset the paper account? This cannot be undone."):
        raise typer.Abort()
    session = _session(config_path)
    try:
        session.reset()
        typer.secho(f"✓ Account reset to {_usd(session.ledger.balance)}", fg=typer.colors.YELLOW)
    finally:
        session.close_store()


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", help="Number of transactions to show"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Show the newest transactions.
    """
    from rich.console import Console
    from rich.table import Table

    session = _session(config_path)
    try:
        txns = session.history(limit=limit)
        console = Console()
        if not txns:
            console.print("[dim]No transactions yet.[/dim]")
            return

        table = Table(title=f"Transactions (latest {len(txns)})")
        table.add_column("Time", style="dim")
        table.add_column("Type")
        table.add_column("Symbol")
        table.add_column("Price", justify="right")
        table.add_column("Qty", justify="right")
        table.add_column("Margin", justify="right")
        table.add_column("PnL", justify="right")
        table.add_column("Reason")
        for t in txns:
            pnl = ""
            if t.pnl is not None:
                color = "green" if t.pnl >= 0 else "red"
                pnl = f"[{color}]{_usd(t.pnl)}[/{color}]"
            table.add_row(
                t.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                t.type.value,
                t.symbol,
                _usd(t.price),
                f"{t.quantity:.6f}",
                _usd(t.margin) if t.margin is not None else "",
                pnl,
                t.reason.value if t.reason else "",
            )
        console.print(table)
    finally:
        session.close_store()


@app.command()
def run(
    seconds: Optional[float] = typer.Option(None, "--seconds", help="Stop after N seconds"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Stream live prices and auto-close positions on stop-loss, take-profit
    or liquidation.

    Example:
        paper-perps run --seconds 300
    """
    session = _session(config_path)
    logger.info("Starting live risk monitoring", symbols=list(session.ledger.symbols))
    try:
        asyncio.run(session.run(run_seconds=seconds))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        session.checkpoint()
    finally:
        session.close_store()

    for event in session.triggers:
        typer.secho(
            f"{event.reason.value}: {event.side.value} {event.symbol} closed @ {_usd(event.price)}",
            fg=typer.colors.YELLOW,
        )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Paper perpetual-futures trading account.
    """
    if version:
        from paper_perps import __version__
        typer.echo(f"paper-perps v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


if __name__ == "__main__":
    app()
