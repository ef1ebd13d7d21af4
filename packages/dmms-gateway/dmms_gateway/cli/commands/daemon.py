"""CLI — Gateway service management commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from dmms_gateway.config import get_settings
from dmms_gateway.daemon.lifecycle import LifecycleController
from dmms_gateway.daemon.models import LifecycleResult
from dmms_gateway.daemon.platform import select_service_adapter
from dmms_gateway.daemon.program_args import build_service_definition
from dmms_gateway.diagnostics.engine import DiagnosticsEngine, DiagnosticsReport
from dmms_gateway.exceptions import ServiceError, UnsupportedPlatformError
from dmms_gateway.paths import ENV_GATEWAY_TOKEN, current_env

app = typer.Typer(help="Install, control and diagnose the gateway background service.")
console = Console()

BIND_MODES = ("loopback", "lan")

JsonOption = Annotated[bool, typer.Option("--json", help="Print a single JSON object.")]


def _echo_json(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(action: str, exc: ServiceError, json_output: bool) -> None:
    if json_output:
        _echo_json(
            {
                "ok": False,
                "action": action,
                "error": exc.message,
                "errorType": type(exc).__name__,
                "context": exc.context,
            }
        )
    else:
        console.print(f"[red]{action} failed:[/red] {exc.message}")
    raise typer.Exit(1)


def _print_result(result: LifecycleResult, json_output: bool) -> None:
    if json_output:
        _echo_json(result.to_dict())
        return
    state = f" (state: {result.state.value})" if result.state else ""
    console.print(f"[green]{result.action}[/green] {result.label}: {result.result}{state}")


def _run_lifecycle(
    action: str,
    operation: Callable[[LifecycleController], Awaitable[LifecycleResult]],
    json_output: bool,
) -> None:
    try:
        controller = LifecycleController(
            select_service_adapter(),
            lock_timeout=get_settings().service.lock_timeout_s,
        )
        result = asyncio.run(operation(controller))
    except ServiceError as exc:
        _fail(action, exc, json_output)
        return
    _print_result(result, json_output)


@app.command("install")
def install(
    port: Annotated[int | None, typer.Option(min=1, max=65535, help="Gateway port.")] = None,
    bind: Annotated[str | None, typer.Option(help="Bind mode: loopback or lan.")] = None,
    token: Annotated[str | None, typer.Option(help="Gateway auth token written to the service env.")] = None,
    json_output: JsonOption = False,
) -> None:
    """Install (or re-install) the gateway as a background service."""
    settings = get_settings()
    env = current_env()
    bind = bind or settings.gateway.bind
    if bind not in BIND_MODES:
        raise typer.BadParameter(f"Expected one of: {', '.join(BIND_MODES)}.", param_hint="--bind")

    definition = build_service_definition(
        port=port or settings.effective_port(env),
        bind=bind,
        token=token or env.get(ENV_GATEWAY_TOKEN) or settings.gateway.auth.token,
        env=env,
        python_executable=settings.service.python_executable,
    )
    _run_lifecycle("install", lambda c: c.install(definition), json_output)


@app.command("start")
def start(json_output: JsonOption = False) -> None:
    """Start the installed gateway service."""
    _run_lifecycle("start", lambda c: c.start(), json_output)


@app.command("stop")
def stop(json_output: JsonOption = False) -> None:
    """Stop the gateway service (no-op when it is not running)."""
    _run_lifecycle("stop", lambda c: c.stop(), json_output)


@app.command("restart")
def restart(json_output: JsonOption = False) -> None:
    """Restart the installed gateway service."""
    _run_lifecycle("restart", lambda c: c.restart(), json_output)


@app.command("uninstall")
def uninstall(json_output: JsonOption = False) -> None:
    """Stop and remove the gateway service."""
    _run_lifecycle("uninstall", lambda c: c.uninstall(), json_output)


@app.command("status")
def status(
    json_output: JsonOption = False,
    deep: Annotated[bool, typer.Option("--deep", help="Also scan system-wide service dirs and scheduled tasks.")] = False,
) -> None:
    """Diagnose the gateway service, its port and its RPC endpoint."""
    settings = get_settings()
    try:
        adapter = select_service_adapter(settings=settings)
    except UnsupportedPlatformError:
        adapter = None

    engine = DiagnosticsEngine(adapter, settings=settings)
    report = asyncio.run(engine.diagnose(deep=deep))

    if json_output:
        _echo_json(report.to_dict())
        return
    _render_report(report)


def _render_report(report: DiagnosticsReport) -> None:
    table = Table(title="DMMS AI Gateway", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    table.add_row("Service", f"{report.label or '-'} ({report.kind or 'unsupported'})")
    table.add_row("State", report.state)
    if report.definition_path:
        table.add_row("Definition", report.definition_path)
    if report.runtime is not None:
        runtime = report.runtime
        detail = runtime.status.value
        if runtime.pid is not None:
            detail += f", pid {runtime.pid}"
        if runtime.last_exit_code is not None:
            detail += f", last exit {runtime.last_exit_code}"
        table.add_row("Runtime", detail)
    table.add_row("Port", f"{report.port} ({report.port_source})")
    table.add_row("Port status", report.port_usage.status.value)
    table.add_row("Probe URL", report.probe_url)
    if report.rpc.ok:
        table.add_row("RPC", f"[green]ok[/green] ({report.rpc.latency_ms} ms)")
    else:
        table.add_row("RPC", f"[red]failed[/red]: {report.rpc.error or 'no answer'}")
    if report.health is not None:
        table.add_row("Health", "[green]ok[/green]" if report.health.ok else f"[red]failed[/red]: {report.health.error}")
    table.add_row(
        "Config",
        "[yellow]mismatch[/yellow]" if report.config_mismatch else "[green]in sync[/green]",
    )
    console.print(table)

    for drift in report.drift.fields:
        console.print(f"  [yellow]{drift.name}[/yellow]: cli={drift.cli} service={drift.service}")
    for name, error in report.errors.items():
        console.print(f"  [red]{name}[/red]: {error}")
    for hint in report.hints:
        console.print(f"  [dim]hint:[/dim] {hint}")
