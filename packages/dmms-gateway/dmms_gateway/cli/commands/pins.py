"""CLI — Certificate pin management.

Pairing is the human verification step: the operator compares the
fingerprint the gateway presents (shown on the gateway host) with the one
typed here, and only an explicit confirmation stores it.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from dmms_gateway.config import Settings, get_settings
from dmms_gateway.exceptions import TrustError
from dmms_gateway.paths import current_env, resolve_state_dir
from dmms_gateway.trust.connection import TrustGate, normalize_fingerprint
from dmms_gateway.trust.models import GatewayEndpoint, PinRecord
from dmms_gateway.trust.pin_store import PIN_DB_FILENAME, PinStore

app = typer.Typer(help="List, pair and unpair gateway certificate pins.")
console = Console()


def resolve_pin_db_path(settings: Settings) -> Path:
    if settings.trust.pin_db_path is not None:
        return settings.trust.pin_db_path
    return resolve_state_dir(current_env()) / PIN_DB_FILENAME


def _gate(store: PinStore, settings: Settings) -> TrustGate:
    return TrustGate(store, manual_tls_enabled=settings.trust.manual_tls)


@app.command("list")
def list_pins(
    json_output: Annotated[bool, typer.Option("--json", help="Print a single JSON object.")] = False,
) -> None:
    """Show every pinned endpoint."""
    settings = get_settings()

    async def _list() -> list[PinRecord]:
        async with PinStore(resolve_pin_db_path(settings)) as store:
            return await store.list_all()

    records = asyncio.run(_list())
    if json_output:
        typer.echo(json.dumps({"pins": [r.to_dict() for r in records]}, indent=2))
        return
    if not records:
        console.print("[yellow]No pinned endpoints.[/yellow]")
        return

    table = Table(title="Pinned endpoints")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Fingerprint (SHA-256)")
    table.add_column("Paired")
    table.add_column("By")
    for record in records:
        paired = datetime.fromtimestamp(record.paired_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(record.stable_id, record.fingerprint, paired, record.verified_by)
    console.print(table)


@app.command("pair")
def pair(
    stable_id: Annotated[str, typer.Argument(help="Stable endpoint id.")],
    fingerprint: Annotated[str, typer.Argument(help="SHA-256 fingerprint the gateway presents.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Confirm without prompting.")] = False,
) -> None:
    """Pin a gateway certificate fingerprint after explicit confirmation."""
    settings = get_settings()
    normalized = normalize_fingerprint(fingerprint)
    confirmed = yes or typer.confirm(f"Trust {stable_id} with certificate fingerprint {normalized}?")

    async def _pair() -> PinRecord:
        async with PinStore(resolve_pin_db_path(settings)) as store:
            return await _gate(store, settings).complete_pairing(
                GatewayEndpoint(stable_id=stable_id),
                fingerprint,
                confirmed=confirmed,
            )

    try:
        record = asyncio.run(_pair())
    except TrustError as exc:
        console.print(f"[red]Pairing failed:[/red] {exc.message}")
        raise typer.Exit(1)
    console.print(f"[green]Pinned[/green] {record.stable_id} → {record.fingerprint}")


@app.command("unpair")
def unpair(
    stable_id: Annotated[str, typer.Argument(help="Stable endpoint id.")],
) -> None:
    """Remove a pinned fingerprint."""
    settings = get_settings()

    async def _unpair() -> bool:
        async with PinStore(resolve_pin_db_path(settings)) as store:
            return await _gate(store, settings).unpair(stable_id)

    if asyncio.run(_unpair()):
        console.print(f"[green]Unpinned[/green] {stable_id}")
    else:
        console.print(f"[yellow]No pin stored for {stable_id}.[/yellow]")
