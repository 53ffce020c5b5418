"""CLI entry point for the paper-trading companion.

Commands:
  papertrader backfill [--dry-run] [--limit N]  — Fill missing beginner explanations
  papertrader seed demo-trade                  — Seed a demo EURUSD position
  papertrader seed demo-explanation            — Seed an explanation for the latest position
  papertrader remove-demo                      — Remove the demo trade and its explanations
  papertrader reset --yes                      — Wipe positions, signals, explanations, ledger
  papertrader positions                        — Show open positions
  papertrader open SYMBOL SIDE QTY STOP TP     — Open a position (dry-run by default)
  papertrader close POSITION_ID                — Close a position
  papertrader broker check                     — Broker connectivity / account summary
  papertrader broker test-order --yes          — Place and immediately close a 1-unit order

Exit codes for order commands: 2 nothing done on the broker, 3 status unknown,
4 broker close failed, 5 broker acted but the store was not updated,
1 other fatal errors.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import click
import openai
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from papertrader.config import AppConfig, is_live_trading_enabled, load_config
from papertrader.errors import (
    BrokerError,
    NetworkError,
    NotFoundError,
    OrderRejected,
    PaperTraderError,
    PersistenceError,
    PriceUnavailable,
    TradeNotRecorded,
    UnsupportedSymbol,
)
from papertrader.observability.logger import configure_logging, get_logger
from papertrader.observability.metrics import metrics
from papertrader.storage.database import Database

load_dotenv()

console = Console()
log = get_logger(__name__)

EXIT_FATAL = 1
EXIT_NOT_PLACED = 2
EXIT_STATUS_UNKNOWN = 3
EXIT_CLOSE_FAILED = 4
EXIT_NOT_RECORDED = 5


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _fail(message: str, code: int = EXIT_FATAL) -> None:
    console.print(f"[red]{message}[/red]")
    sys.exit(code)


def _open_db(cfg: AppConfig) -> Database:
    db = Database(cfg.storage)
    try:
        db.connect()
    except PersistenceError as e:
        _fail(f"Cannot open store: {e}")
    return db


def _broker(cfg: AppConfig):
    from papertrader.connectors.oanda import OandaClient

    try:
        return OandaClient(cfg.broker)
    except BrokerError as e:
        _fail(f"Broker unavailable: {e}")


def _order_exit_code(err: PaperTraderError) -> int:
    if isinstance(err, TradeNotRecorded):
        return EXIT_NOT_RECORDED
    if isinstance(err, NetworkError):
        return EXIT_STATUS_UNKNOWN
    if isinstance(err, (OrderRejected, UnsupportedSymbol, PriceUnavailable)):
        return EXIT_NOT_PLACED
    return EXIT_FATAL


def _close_exit_code(err: PaperTraderError) -> int:
    if isinstance(err, BrokerError) and not isinstance(
        err, (NetworkError, UnsupportedSymbol, PriceUnavailable),
    ):
        return EXIT_CLOSE_FAILED
    return _order_exit_code(err)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Paper-trading companion: backfill, demo data and broker orders."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )


# ─── BACKFILL ────────────────────────────────────────────────────────

@cli.command()
@click.option("--dry-run", is_flag=True, help="List candidates without generating or writing")
@click.option("--limit", type=int, default=None, help="Process at most N candidates")
@click.pass_context
def backfill(ctx: click.Context, dry_run: bool, limit: int | None) -> None:
    """Fill in missing beginner-friendly explanations."""
    from papertrader.engine.backfill import BackfillReconciler
    from papertrader.explain.llm_explainer import LLMExplainer

    cfg: AppConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        explainer = None
        if not dry_run:
            try:
                explainer = LLMExplainer(cfg.explanations)
            except openai.OpenAIError as e:
                _fail(f"Explanation generator unavailable: {e}")
        reconciler = BackfillReconciler(db, explainer, cfg.backfill)
        try:
            report = _run(reconciler.run(dry_run=dry_run, limit=limit))
        except PersistenceError as e:
            _fail(f"Backfill aborted, cannot read explanations: {e}")
    finally:
        db.close()

    table = Table(title="Backfill" + (" (dry run)" if dry_run else ""))
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Explanations", str(report.total_explanations))
    table.add_row("Candidates", str(report.candidates))
    if not dry_run:
        table.add_row("Updated", f"[green]{report.updated}[/green]")
        for outcome, count in report.counts().items():
            if outcome != "updated" and count:
                table.add_row(outcome.replace("_", " ").title(), f"[yellow]{count}[/yellow]")
    console.print(table)


# ─── DEMO DATA ───────────────────────────────────────────────────────

@cli.group()
def seed() -> None:
    """Seed demo data."""


@seed.command("demo-trade")
@click.pass_context
def seed_demo_trade(ctx: click.Context) -> None:
    """Seed an open EURUSD demo position."""
    from papertrader.storage.demo import seed_demo_position

    db = _open_db(ctx.obj["config"])
    try:
        position = seed_demo_position(db)
    finally:
        db.close()
    console.print(f"[green]Seeded demo position {position.id}[/green]")


@seed.command("demo-explanation")
@click.pass_context
def seed_demo_expl(ctx: click.Context) -> None:
    """Seed a demo explanation for the latest position."""
    from papertrader.storage.demo import seed_demo_explanation

    db = _open_db(ctx.obj["config"])
    try:
        explanation = seed_demo_explanation(db)
    finally:
        db.close()
    if explanation is None:
        console.print("[yellow]No positions found. Run 'papertrader seed demo-trade' first.[/yellow]")
        return
    console.print(
        f"[green]Seeded demo explanation {explanation.id} "
        f"for position {explanation.position_id}[/green]"
    )


@cli.command("remove-demo")
@click.pass_context
def remove_demo(ctx: click.Context) -> None:
    """Remove the demo trade and its explanations."""
    from papertrader.storage.demo import remove_demo_trade

    db = _open_db(ctx.obj["config"])
    try:
        result = remove_demo_trade(db)
    finally:
        db.close()
    if result.position_id is None:
        console.print("[yellow]No positions found to delete.[/yellow]")
        return
    console.print(
        f"Removed position {result.position_id} "
        f"(position deleted: {result.position_deleted}, "
        f"explanations deleted: {result.explanations_deleted})"
    )


@cli.command()
@click.option("--yes", is_flag=True, help="Confirm without prompting")
@click.pass_context
def reset(ctx: click.Context, yes: bool) -> None:
    """Delete all positions, signals, explanations and ledger entries."""
    from papertrader.storage.demo import RESET_COLLECTIONS, reset_collections

    if not yes and not click.confirm(f"Delete all documents in {', '.join(RESET_COLLECTIONS)}?"):
        console.print("Aborted.")
        return
    db = _open_db(ctx.obj["config"])
    try:
        counts = reset_collections(db)
    finally:
        db.close()
    for name, count in counts.items():
        console.print(f"Deleted {count} document(s) from {name}")
    console.print("[green]Reset complete.[/green]")


# ─── POSITIONS ───────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def positions(ctx: click.Context) -> None:
    """Show open positions."""
    db = _open_db(ctx.obj["config"])
    try:
        rows = db.get_open_positions()
    except PaperTraderError as e:
        _fail(f"Cannot list positions: {e}")
    finally:
        db.close()

    table = Table(title=f"Open Positions ({len(rows)})")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Symbol", style="cyan")
    table.add_column("Side")
    table.add_column("Qty", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Stop", justify="right", style="red")
    table.add_column("Target", justify="right", style="green")
    table.add_column("Broker trade", style="dim")
    for p in rows:
        table.add_row(
            p.id[:12], p.symbol, p.side.value, f"{p.qty:g}",
            f"{p.entry_price:.5f}", f"{p.stop_price:.5f}", f"{p.tp_price:.5f}",
            p.broker_trade_id or "—",
        )
    console.print(table)


def _order_flow(cfg: AppConfig, db: Database, broker: Any):
    from papertrader.execution.order_flow import OrderFlow
    from papertrader.explain.llm_explainer import LLMExplainer

    explainer = None
    try:
        explainer = LLMExplainer(cfg.explanations)
    except openai.OpenAIError as e:
        log.warning("cli.explainer_unavailable", error=str(e))
    return OrderFlow(db, broker, cfg.execution, explainer)


@cli.command("open")
@click.argument("symbol")
@click.argument("side", type=click.Choice(["LONG", "SHORT"], case_sensitive=False))
@click.argument("qty", type=float)
@click.argument("stop", type=float)
@click.argument("tp", type=float)
@click.option("--strategy-id", default=None, help="Strategy document id")
@click.option("--method", "method_name", default=None, help="Method label, e.g. 'Swing breakout'")
@click.pass_context
def open_cmd(
    ctx: click.Context, symbol: str, side: str, qty: float, stop: float, tp: float,
    strategy_id: str | None, method_name: str | None,
) -> None:
    """Open a position. Dry-run unless live trading is enabled."""
    from papertrader.execution.order_flow import OrderRequest
    from papertrader.storage.models import SENTINEL_STRATEGY_ID, Side

    cfg: AppConfig = ctx.obj["config"]
    req = OrderRequest(
        symbol=symbol, side=Side(side.upper()), qty=qty, stop_price=stop, tp_price=tp,
        strategy_id=strategy_id or SENTINEL_STRATEGY_ID, method_name=method_name,
    )

    async def _open():
        broker = _broker(cfg)
        db = _open_db(cfg)
        try:
            return await _order_flow(cfg, db, broker).open_position(req)
        finally:
            db.close()
            await broker.close()

    try:
        result = _run(_open())
    except PaperTraderError as e:
        _fail(f"Order failed [{e.reason}]: {e}", _order_exit_code(e))

    mode = "[yellow]SIMULATED[/yellow]" if result.simulated else "[green]LIVE[/green]"
    console.print(
        f"{mode} opened {result.position.side.value} {result.position.symbol} "
        f"@ {result.position.entry_price:.5f} → position {result.position.id}"
    )
    if result.reconciled:
        console.print(f"[yellow]Fill recovered from broker by tag {result.client_tag}[/yellow]")


@cli.command("close")
@click.argument("position_id")
@click.option("--reason", default="manual", help="Why the position is being closed")
@click.option("--exit-price", type=float, default=None, help="Exit price for simulated positions")
@click.pass_context
def close_cmd(ctx: click.Context, position_id: str, reason: str, exit_price: float | None) -> None:
    """Close a position (on the broker when it was opened there)."""
    cfg: AppConfig = ctx.obj["config"]

    async def _close():
        broker = _broker(cfg)
        db = _open_db(cfg)
        try:
            return await _order_flow(cfg, db, broker).close_position(position_id, reason, exit_price)
        finally:
            db.close()
            await broker.close()

    try:
        result = _run(_close())
    except NotFoundError as e:
        _fail(str(e))
    except PaperTraderError as e:
        _fail(f"Close failed [{e.reason}]: {e}", _close_exit_code(e))

    p = result.position
    if result.already_closed:
        console.print(f"Position {p.id} was already closed.")
        return
    colour = "green" if (p.pnl_gbp or 0) >= 0 else "red"
    console.print(
        f"Closed {p.symbol} @ {p.exit_price:.5f}: "
        f"[{colour}]£{p.pnl_gbp:+.2f} ({p.R_multiple:+.2f}R)[/{colour}]"
    )
    if result.failure_analysis:
        console.print(f"[dim]{result.failure_analysis}[/dim]")


# ─── BROKER ──────────────────────────────────────────────────────────

@cli.group()
def broker() -> None:
    """Broker connectivity and order tests."""


@broker.command("check")
@click.pass_context
def broker_check(ctx: click.Context) -> None:
    """Show the broker account summary."""
    cfg: AppConfig = ctx.obj["config"]

    async def _check():
        client = _broker(cfg)
        try:
            return await client.get_account_summary()
        finally:
            await client.close()

    try:
        summary = _run(_check())
    except BrokerError as e:
        _fail(f"Broker check failed [{e.reason}]: {e}")

    table = Table(title=f"OANDA {cfg.broker.environment} account")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Account", summary.account_id)
    table.add_row("Currency", summary.currency)
    table.add_row("Balance", f"{summary.balance:,.2f}")
    table.add_row("NAV", f"{summary.nav:,.2f}")
    table.add_row("Open trades", str(summary.open_trade_count))
    console.print(table)


@broker.command("test-order")
@click.option("--symbol", default="OANDA:XAUUSD", help="Internal symbol to trade")
@click.option("--yes", is_flag=True, help="Confirm placing a real order on the broker")
@click.pass_context
def broker_test_order(ctx: click.Context, symbol: str, yes: bool) -> None:
    """Place a 1-unit market order with SL/TP ~1% away, then close it."""
    from papertrader.connectors.symbols import map_symbol
    from papertrader.execution.order_flow import new_client_tag

    cfg: AppConfig = ctx.obj["config"]
    if cfg.broker.environment == "live" and not is_live_trading_enabled():
        _fail("Refusing to place a test order on a live account without ENABLE_LIVE_TRADING=true",
              EXIT_NOT_PLACED)
    if not yes and not click.confirm(f"Place a 1-unit order for {symbol} on {cfg.broker.environment}?"):
        console.print("Aborted.")
        return

    async def _test() -> None:
        instrument = map_symbol(symbol)
        client = _broker(cfg)
        try:
            mid = await client.get_mid_price(instrument)
            console.print(f"Instrument {instrument}, mid {mid}")
            tag = new_client_tag(f"{cfg.execution.tag_prefix}-order-test")
            try:
                fill = await client.place_market_order(instrument, 1, mid * 0.99, mid * 1.01, tag)
                trade_id = fill.trade_id
            except NetworkError:
                trade = await client.find_trade_by_tag(tag)
                if trade is None:
                    raise
                trade_id = trade.trade_id
            console.print(f"Placed trade {trade_id}; closing")
            try:
                status = await client.close_trade(trade_id)
            except BrokerError as e:
                _fail(f"Trade {trade_id} placed but close failed [{e.reason}]: {e}", EXIT_CLOSE_FAILED)
            console.print(f"[green]Closed trade {trade_id} ({status.state.value})[/green]")
        finally:
            await client.close()

    try:
        _run(_test())
    except PaperTraderError as e:
        _fail(f"Test order failed [{e.reason}]: {e}", _order_exit_code(e))
    log.info("cli.test_order_done", metrics=metrics.snapshot()["counters"])


if __name__ == "__main__":
    cli()
