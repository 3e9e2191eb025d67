"""
CLI entry point: recon load | run | trades | health.

Every command loads config from --config (default config.yaml). ``run``
journals every trade event and emits structured JSON events to stderr.
"""

import logging
import sys

import click
from dotenv import load_dotenv

from config import load_config

load_dotenv()

logger = logging.getLogger("recon")


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _load_rules(cfg):
    from config.recon_rules import load_recon_rules

    return load_recon_rules(override_path=cfg.reconcile.rules_override or None)


def _open_store(cfg):
    from ledger import TradeStore

    return TradeStore(cfg.store.path, busy_timeout=cfg.store.busy_timeout)


@click.group()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file.")
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """recon: reconcile broker fills into round-trip trades (FIFO, idempotent)."""
    _setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------- recon load ----------


@cli.command()
@click.argument("orders_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def load(ctx: click.Context, orders_file: str) -> None:
    """Load normalized order records (JSON lines) into the store."""
    cfg = load_config(ctx.obj["config_path"])
    from ledger import OrderFileError, read_orders

    try:
        orders = read_orders(orders_file)
    except OrderFileError as exc:
        raise click.ClickException(str(exc)) from exc
    store = _open_store(cfg)
    inserted = store.add_orders(orders)
    click.echo(f"Read {len(orders)} orders, stored {inserted} new ({len(orders) - inserted} already present).")


# ---------- recon run ----------


@cli.command()
@click.option("--user", "user_id", default=None, help="User to reconcile (default: every user with unconsumed orders).")
@click.pass_context
def run(ctx: click.Context, user_id: str | None) -> None:
    """Reconcile unconsumed orders into trades and print what changed."""
    cfg = load_config(ctx.obj["config_path"])
    from cli.output import format_run_summary, format_trade
    from cli.structured_log import StructuredEventLogger
    from journal import JournalWriter
    from reconcile import Reconciler

    rules = _load_rules(cfg)
    store = _open_store(cfg)
    journal = JournalWriter(cfg.journal.path, echo_stdout=cfg.journal.echo_stdout)
    events = StructuredEventLogger(
        enabled=cfg.alerting.structured_logs,
        webhook_url=cfg.alerting.webhook_url,
    )

    def on_event(event_type: str, payload: dict) -> None:
        journal.record(event_type, payload)
        events.handle(event_type, payload)

    reconciler = Reconciler(store, rules, max_workers=cfg.reconcile.max_workers, on_event=on_event)

    users = [user_id] if user_id else store.list_users()
    if not users:
        click.echo("No unconsumed orders. Nothing to reconcile.")
        return

    failed = False
    for uid in users:
        result = reconciler.run(uid)
        for trade in result.trades:
            click.echo("")
            click.echo(format_trade(trade))
        click.echo("")
        click.echo(format_run_summary(uid, result.trades, result.skipped))
        if not result.ok:
            failed = True
            for symbol, err in sorted(result.failures.items()):
                click.echo(f"  FAILED {symbol}: {err} (rolled back, safe to retry)")
    if failed:
        raise SystemExit(1)


# ---------- recon trades ----------


@cli.command()
@click.option("--user", "user_id", required=True, help="User whose trades to list.")
@click.option("--status", type=click.Choice(["OPEN", "CLOSED"], case_sensitive=False), default=None)
@click.option("--symbol", default=None, help="Only this symbol.")
@click.pass_context
def trades(ctx: click.Context, user_id: str, status: str | None, symbol: str | None) -> None:
    """List persisted trades for a user."""
    cfg = load_config(ctx.obj["config_path"])
    from cli.output import format_trade_table
    from recon_core.contracts import TradeStatus

    store = _open_store(cfg)
    rows = store.list_trades(
        user_id,
        status=TradeStatus(status.upper()) if status else None,
        symbol=symbol.upper() if symbol else None,
    )
    click.echo(format_trade_table(rows))


# ---------- recon health ----------


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check system health: config, rules, store access.

    Exit code 0 = healthy, 1 = unhealthy.
    """
    checks: list[tuple[str, bool, str]] = []

    try:
        cfg = load_config(ctx.obj["config_path"])
        checks.append(("config", True, f"loaded (store={cfg.store.path})"))
    except Exception as e:
        checks.append(("config", False, str(e)))
        _print_health(checks)
        raise SystemExit(1)

    try:
        rules = _load_rules(cfg)
        checks.append(("rules", True, f"validated (version {rules.version})"))
    except Exception as e:
        checks.append(("rules", False, str(e)))

    try:
        store = _open_store(cfg)
        pending = len(store.list_users())
        checks.append(("store", True, f"{store.path} ({pending} users with unconsumed orders)"))
    except Exception as e:
        checks.append(("store", False, str(e)))

    _print_health(checks)
    healthy = all(ok for _, ok, _ in checks)
    raise SystemExit(0 if healthy else 1)


def _print_health(checks: list[tuple[str, bool, str]]) -> None:
    for name, ok, detail in checks:
        status = "OK" if ok else "FAIL"
        click.echo(f"  [{status}] {name}: {detail}")
    healthy = all(ok for _, ok, _ in checks)
    click.echo(f"\nHealth: {'HEALTHY' if healthy else 'UNHEALTHY'}")


if __name__ == "__main__":
    cli()
