"""CLI — Run the gateway process in the foreground."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console

from dmms_gateway.config import get_settings

app = typer.Typer(help="Run the gateway process.")
console = Console(stderr=True)

BIND_MODES = ("loopback", "lan")


@app.callback()
def gateway() -> None:
    """Run the gateway process."""


@app.command("run")
def run(
    port: Annotated[int | None, typer.Option(min=1, max=65535, help="Port to listen on.")] = None,
    bind: Annotated[str | None, typer.Option(help="loopback (127.0.0.1) or lan (0.0.0.0).")] = None,
    token: Annotated[str | None, typer.Option(help="Bearer token clients must present.")] = None,
) -> None:
    """Serve the gateway RPC endpoint until interrupted."""
    from dmms_gateway.api.server import run_gateway

    settings = get_settings()
    bind = bind or settings.gateway.bind
    if bind not in BIND_MODES:
        raise typer.BadParameter(f"Expected one of: {', '.join(BIND_MODES)}.", param_hint="--bind")
    port = port or settings.effective_port()

    console.print(f"[bold green]Starting DMMS AI gateway on port {port} ({bind})[/bold green]")
    run_gateway(settings, port=port, bind=bind, token=token)
