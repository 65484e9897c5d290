# sealpost/cli/main.py
"""
CLI for inspecting, auditing and exporting the sealpost message ledger.
"""

import os
import sqlite3
from pathlib import Path
from typing import List, Optional

import typer
from eth_utils import is_address, to_checksum_address
from rich.console import Console
from rich.table import Table

from sealpost.core.canon import canonical_json
from sealpost.core.types import MessageMeta
from sealpost.crypto.hashing import NO_KEY_COMMITMENT
from sealpost.storage import SQLiteStorage
from sealpost.verify.verifier import LedgerVerifier

app = typer.Typer(
    name="sealpost",
    help="Inspect, audit and export the sealpost encrypted-message ledger",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def get_db_path(db_flag: Optional[Path] = None) -> Path:
    """Resolve DB path in this order:
    1. --db flag
    2. SEALPOST_DB_PATH environment variable
    3. Default: ~/.sealpost/ledger.db
    """
    if db_flag:
        path = db_flag.resolve()
    else:
        env_path = os.environ.get("SEALPOST_DB_PATH")
        if env_path:
            path = Path(env_path).resolve()
        else:
            path = Path.home() / ".sealpost" / "ledger.db"

    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def open_storage(ctx: typer.Context, db: Optional[Path]) -> SQLiteStorage:
    if db is None and ctx.obj:
        db = ctx.obj.get("db")
    db_path = get_db_path(db)

    if not db_path.exists():
        console.print(f"[red]Database file not found: {db_path}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Run a ledger with SQLite storage first (creates/populates DB)")
        console.print("  • Set env var: export SEALPOST_DB_PATH=/path/to/ledger.db")
        console.print("  • Or use --db: sealpost messages --db /custom/path.db")
        raise typer.Exit(1)

    try:
        return SQLiteStorage(db_path)
    except Exception as e:
        console.print(f"[red]Failed to open database: {str(e)}[/]")
        console.print("[yellow]The file may be corrupted or not a valid SQLite DB.[/]")
        raise typer.Exit(1)


def _normalize_identity(identity: str) -> str:
    """Checksum form, as stored by the ledger; anything that is not an address is left alone."""
    return to_checksum_address(identity) if is_address(identity) else identity


def _short(value: str, left: int = 8, right: int = 6) -> str:
    if len(value) <= left + right + 1:
        return value
    return value[:left] + "…" + value[-right:]


def _print_messages(title: str, msgs: List[MessageMeta]) -> None:
    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Sender")
    table.add_column("Recipient")
    table.add_column("Nonce", justify="right")
    table.add_column("Digest")
    table.add_column("Key")
    table.add_column("Signed")

    for m in msgs:
        table.add_row(
            str(m.id),
            str(m.timestamp),
            _short(m.sender),
            _short(m.recipient),
            str(m.nonce),
            _short(m.content_digest.hex()),
            "none" if m.key_locator_commitment == NO_KEY_COMMITMENT else "wrapped",
            "yes" if m.is_signed else "no",
        )

    console.print(table)


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to SQLite ledger database (overrides SEALPOST_DB_PATH env var)",
    ),
):
    """Manage the sealpost message ledger."""
    ctx.ensure_object(dict)["db"] = db


@app.command()
def messages(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent messages to show"),
):
    """Show the most recent accepted messages."""
    with open_storage(ctx, db) as storage:
        msgs = storage.query_messages(limit=limit)

    if not msgs:
        console.print("[yellow]No messages found in ledger.[/]")
        return

    _print_messages("Ledger Messages", msgs)


@app.command()
def inbox(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Recipient address"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """List messages addressed to IDENTITY."""
    identity = _normalize_identity(identity)
    with open_storage(ctx, db) as storage:
        msgs = storage.query_messages(limit=limit, recipient=identity)

    if not msgs:
        console.print(f"[yellow]No messages found for recipient '{identity}'[/]")
        return

    _print_messages(f"Inbox of {identity}", msgs)


@app.command()
def outbox(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Sender address"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """List messages sent by IDENTITY."""
    identity = _normalize_identity(identity)
    with open_storage(ctx, db) as storage:
        msgs = storage.query_messages(limit=limit, sender=identity)

    if not msgs:
        console.print(f"[yellow]No messages found for sender '{identity}'[/]")
        return

    _print_messages(f"Outbox of {identity}", msgs)


@app.command()
def keys(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """List the key directory (latest registered public key per identity)."""
    with open_storage(ctx, db) as storage:
        records = storage.load_key_records()

    if not records:
        console.print("[yellow]No keys registered.[/]")
        return

    table = Table(title="Key Directory")
    table.add_column("Identity")
    table.add_column("Fingerprint (SHA-256)")
    table.add_column("Locator")
    table.add_column("Updated", justify="right")
    for r in records:
        table.add_row(r.owner, r.public_key_digest.hex(), r.public_key_locator, str(r.updated_at))
    console.print(table)


@app.command()
def verify(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    min_interval: Optional[int] = typer.Option(
        None, "--min-interval", help="Also check per-sender rate-limit spacing (seconds)",
    ),
):
    """Audit the ledger: id order, nonce sequences, IV uniqueness, signatures."""
    storage = open_storage(ctx, db)
    try:
        result = LedgerVerifier(min_interval=min_interval).verify_from_storage(storage)
    finally:
        storage.close()

    if result.is_valid:
        console.print("[green]✓ Ledger is valid[/]")
        console.print(f"  {result.message}")
    else:
        console.print("[red]✗ Ledger verification failed[/]")
        for failure in result.failures:
            console.print(f"  • [{failure.index}] {failure.category}: {failure.message}")
        raise typer.Exit(1)


@app.command()
def export(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: ledger.jsonl)"),
):
    """Export all ledger records as JSONL (one canonical JSON record per line)."""
    storage = open_storage(ctx, db)
    try:
        msgs = storage.load_messages()
    except sqlite3.Error as e:
        console.print(f"[red]Failed to load ledger: {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        storage.close()

    if not msgs:
        console.print("[yellow]No messages found in ledger.[/]")
        raise typer.Exit(0)

    out_path = output or Path("ledger.jsonl")
    with open(out_path, "w", encoding="utf-8") as f:
        for msg in msgs:
            f.write(canonical_json(msg.to_dict()).decode("utf-8"))
            f.write("\n")

    console.print(f"[green]Exported {len(msgs)} messages to {out_path}[/]")
    console.print("Format: JSONL — one ledger record per line")


if __name__ == "__main__":
    app()
