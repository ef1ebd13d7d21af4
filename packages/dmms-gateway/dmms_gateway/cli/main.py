"""DMMS AI CLI — Entry point.

Usage:
    dmms-ai daemon status [--json] [--deep]
    dmms-ai daemon install [--port N] [--bind loopback|lan] [--token T]
    dmms-ai daemon start|stop|restart|uninstall
    dmms-ai gateway run [--port N] [--bind loopback|lan]
    dmms-ai pins list
    dmms-ai pins pair <stable_id> <fingerprint>
    dmms-ai pins unpair <stable_id>

Global options select a profile (``--profile work``, ``--dev``) before any
command runs, so every path, port and service name below is resolved for
that profile.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from dmms_gateway.cli.commands import daemon, gateway, pins
from dmms_gateway.config import Settings, override_settings
from dmms_gateway.logging import configure_logging
from dmms_gateway.paths import apply_profile_env, is_valid_profile_name

app = typer.Typer(
    name="dmms-ai",
    help="DMMS AI — personal-automation gateway control plane.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

console = Console()

app.add_typer(daemon.app, name="daemon")
app.add_typer(gateway.app, name="gateway")
app.add_typer(pins.app, name="pins")


@app.callback()
def main_callback(
    profile: Annotated[
        str | None, typer.Option("--profile", help="Run against a named profile (isolated state dir).")
    ] = None,
    dev: Annotated[bool, typer.Option("--dev", help="Shortcut for --profile dev (port 19001).")] = False,
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Extra JSON config file.")
    ] = None,
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="debug, info, warning, error or critical.")
    ] = None,
) -> None:
    if dev and profile:
        raise typer.BadParameter("Use either --dev or --profile, not both.")
    chosen = "dev" if dev else (profile.strip() if profile else None)
    if chosen:
        if not is_valid_profile_name(chosen):
            raise typer.BadParameter(f"Invalid profile name '{chosen}'.", param_hint="--profile")
        apply_profile_env(chosen, os.environ)

    settings = Settings.load(config_file=config)
    override_settings(settings)
    configure_logging(
        level=log_level or settings.logging.level,
        format=settings.logging.format,
        log_file=str(settings.logging.file) if settings.logging.file else None,
    )


if __name__ == "__main__":
    app()
