"""
CLI interface for EdgeCharge.

Operator access to keys, record signing, relaying, the ledger database
and dispute checks.
"""

import json
import logging
import sqlite3
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from edgecharge.config.loader import EdgeChargeSettings, StorageConfig, default_settings, load_settings
from edgecharge.core.codec import leaf_hash, signed_record_from_dict, signed_record_to_dict, to_hex
from edgecharge.core.errors import EdgeChargeError
from edgecharge.core.records import UsageRecord, new_nonce
from edgecharge.core.signer import generate_private_key, public_address, sign_record, verify_signed_record
from edgecharge.ledger.ledger import EdgeChargeLedger
from edgecharge.relayer.factory import build_batcher
from edgecharge.storage.repository import SqliteLedgerStore, fetch_recent_anchor_records, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> EdgeChargeSettings:
    return ctx.obj if isinstance(ctx.obj, EdgeChargeSettings) else default_settings()


def _db_path(ctx: typer.Context, db: Optional[str]) -> str:
    return db or _settings(ctx).storage.db_path


def _open_ledger(db_path: str) -> EdgeChargeLedger:
    if not Path(db_path).exists():
        raise FileNotFoundError(f"Ledger database not found: {db_path} (run `edgecharge init`)")
    return EdgeChargeLedger(SqliteLedgerStore(db_path))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    ),
):
    """EdgeCharge CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config is not None:
        try:
            ctx.obj = load_settings(config)
        except (OSError, ValueError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
    else:
        ctx.obj = default_settings()

    if ctx.invoked_subcommand is None:
        console.print("EdgeCharge - Use --help to see available commands")


@app.command()
def init(
    ctx: typer.Context,
    owner: str = typer.Option(..., "--owner", "-o", help="Ledger owner address"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
):
    """Initialize the ledger database."""
    db_path = _db_path(ctx, db)
    try:
        initialize_schema(db_path)
        store = SqliteLedgerStore(db_path, owner=owner)
        console.print(f"[green]✓[/] Ledger initialized at {db_path} (owner {store.load().owner})")
        sys.exit(EXIT_CODE_PASS)
    except (EdgeChargeError, ValueError, OSError, sqlite3.Error) as e:
        console.print(f"[red]Error initializing ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def keygen():
    """Generate a provider signing key and its address."""
    key = generate_private_key()
    console.print(f"Private key: {key}")
    console.print(f"Address:     {public_address(key)}")


@app.command()
def sign(
    key: str = typer.Option(..., "--key", "-k", help="Provider private key (hex)"),
    node_id: str = typer.Option(..., "--node-id", help="Edge node identifier"),
    window_start: int = typer.Option(..., "--start", help="Window start (unix seconds)"),
    window_end: int = typer.Option(..., "--end", help="Window end (unix seconds)"),
    units: int = typer.Option(..., "--units", "-u", help="Units consumed"),
    rate_id: str = typer.Option(..., "--rate-id", "-r", help="Rate card id"),
    nonce: Optional[str] = typer.Option(None, "--nonce", help="Record nonce (random if omitted)"),
    output: Optional[str] = typer.Option(None, "--output", help="Write the signed record to this file"),
):
    """Sign a usage record as the provider owning --key."""
    try:
        record = UsageRecord(
            provider=public_address(key),
            node_id=node_id,
            window_start=window_start,
            window_end=window_end,
            units_consumed=units,
            rate_id=rate_id,
            nonce=nonce or new_nonce(),
        )
        signed = sign_record(record, key)
    except (EdgeChargeError, ValueError) as e:
        console.print(f"[red]Error signing record:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    payload = json.dumps(signed_record_to_dict(signed), indent=2)
    if output:
        Path(output).write_text(payload, encoding="utf-8")
        console.print(f"[green]✓[/] Signed record written to {output}")
    else:
        print(payload)
    sys.exit(EXIT_CODE_PASS)


@app.command("verify-record")
def verify_record(path: str = typer.Argument(..., help="JSON file with a signed record")):
    """Check a signed record's signature and print its leaf hash."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        signed = signed_record_from_dict(data)
    except (EdgeChargeError, ValueError, OSError) as e:
        console.print(f"[red]Error reading record:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not verify_signed_record(signed):
        console.print(f"[red]✗[/] Invalid signature for record {signed.nonce}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Valid signature from {signed.provider}")
    console.print(f"Leaf hash: {to_hex(leaf_hash(signed))}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def anchors(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter to one provider"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to show"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
):
    """Show recent anchor submissions from the relayer audit trail."""
    db_path = _db_path(ctx, db)
    try:
        initialize_schema(db_path)
        records = fetch_recent_anchor_records(provider=provider, limit=limit, db_path=db_path)
    except (ValueError, OSError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("[dim]No anchor submissions recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent anchors")
    table.add_column("Submitted")
    table.add_column("Provider")
    table.add_column("Window")
    table.add_column("Records", justify="right")
    table.add_column("Total usage", justify="right")
    table.add_column("Status")
    table.add_column("Anchor id")
    for r in records:
        table.add_row(
            r.submitted_at.strftime("%Y-%m-%d %H:%M:%S"),
            r.provider,
            f"{r.window_start}-{r.window_end}",
            str(r.leaf_count),
            str(r.total_usage),
            r.status,
            r.anchor_id or "-",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def relay(
    ctx: typer.Context,
    paths: List[str] = typer.Argument(..., help="JSON files with a signed record or a list of them"),
    relayer: str = typer.Option(..., "--relayer", help="Authorized relayer address"),
    now: Optional[int] = typer.Option(None, "--now", help="Cycle time (unix seconds), defaults to the clock"),
    watch: bool = typer.Option(False, "--watch", help="Keep running cycles at the configured interval"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
):
    """Anchor signed records whose windows have closed."""
    settings = _settings(ctx)
    db_path = _db_path(ctx, db)
    settings = replace(settings, storage=StorageConfig(db_path=db_path))
    try:
        batcher = build_batcher(_open_ledger(db_path), relayer, settings)
    except (EdgeChargeError, ValueError, OSError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    accepted = 0
    for path in paths:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (ValueError, OSError) as e:
            console.print(f"[red]Error reading {path}:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        for item in data if isinstance(data, list) else [data]:
            if not isinstance(item, dict):
                console.print(f"[yellow]Rejected record from {path}:[/] not a JSON object")
                continue
            try:
                batcher.pool.add(signed_record_from_dict(item))
                accepted += 1
            except EdgeChargeError as e:
                console.print(f"[yellow]Rejected record from {path}:[/] {str(e)}")
    console.print(f"Accepted {accepted} record(s)")

    if watch:
        stop = threading.Event()
        try:
            batcher.run_forever(stop)
        except KeyboardInterrupt:
            stop.set()
        sys.exit(EXIT_CODE_PASS)

    entries = batcher.run_cycle(now)
    if not entries:
        console.print("[dim]No closed windows to anchor.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Anchor submissions")
    table.add_column("Provider")
    table.add_column("Records", justify="right")
    table.add_column("Total usage", justify="right")
    table.add_column("Status")
    for entry in entries:
        table.add_row(entry.provider, str(entry.leaf_count), str(entry.total_usage), entry.status)
    console.print(table)
    failed = [entry for entry in entries if entry.status == "failed"]
    for entry in failed:
        console.print(f"[red]✗[/] Batch for {entry.provider} failed: {entry.error}")
    sys.exit(EXIT_CODE_FAIL if failed else EXIT_CODE_PASS)


@app.command("show-anchor")
def show_anchor(
    ctx: typer.Context,
    anchor_id: str = typer.Argument(..., help="Anchor id (0x hex)"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
):
    """Show an anchored usage batch."""
    try:
        anchor = _open_ledger(_db_path(ctx, db)).get_usage_anchor(anchor_id)
    except (EdgeChargeError, ValueError, OSError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not anchor.exists:
        console.print(f"[yellow]No anchor {anchor_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    _print_fields("Usage anchor", anchor.to_dict())
    sys.exit(EXIT_CODE_PASS)


@app.command("show-invoice")
def show_invoice(
    ctx: typer.Context,
    invoice_id: int = typer.Argument(..., help="Invoice id"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
):
    """Show an invoice and its payment status."""
    try:
        invoice = _open_ledger(_db_path(ctx, db)).get_invoice(invoice_id)
    except (EdgeChargeError, ValueError, OSError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not invoice.exists:
        console.print(f"[yellow]No invoice {invoice_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    _print_fields("Invoice", invoice.to_dict())
    sys.exit(EXIT_CODE_PASS)


@app.command("verify-proof")
def verify_proof(
    ctx: typer.Context,
    anchor_id: str = typer.Argument(..., help="Anchor id (0x hex)"),
    leaf: str = typer.Argument(..., help="Leaf hash (0x hex)"),
    proof: Optional[List[str]] = typer.Option(None, "--proof", "-p", help="Sibling hash, repeat in order"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
):
    """Check that a leaf is included under an anchored root."""
    try:
        included = _open_ledger(_db_path(ctx, db)).verify_merkle_proof(anchor_id, leaf, proof or [])
    except (EdgeChargeError, ValueError, OSError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if included:
        console.print("[green]✓[/] Leaf is included in the anchored batch")
        sys.exit(EXIT_CODE_PASS)
    console.print("[red]✗[/] Proof does not match the anchored root")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def rates(ctx: typer.Context):
    """List the configured rate cards."""
    table = Table(title="Rate cards")
    table.add_column("Rate id")
    table.add_column("Name")
    table.add_column("Unit price", justify="right")
    table.add_column("Billing")
    table.add_column("Minimum", justify="right")
    table.add_column("Active")
    for rate_id, card in sorted(_settings(ctx).rate_table.cards.items()):
        table.add_row(
            rate_id,
            card.name,
            f"{card.unit_price} {card.currency}",
            card.billing_type.value,
            str(card.minimum_charge),
            "yes" if card.active else "no",
        )
    console.print(table)


def _print_fields(title: str, fields: dict):
    console.print(f"\n[bold]{title}[/bold]")
    console.print("-" * 40)
    for key, value in fields.items():
        console.print(f"{key}: {value}")


if __name__ == "__main__":
    app()
