"""Diagnostics layer — Gateway status report.

Pipeline for one ``diagnose()`` call:

  1. Read the active service definition.  A damaged file counts as absent;
     no adapter for this OS means the service state is "unknown".
  2. Pick the port to probe: the service's own ``--port`` /
     ``DMMS_AI_GATEWAY_PORT`` if it declares one, otherwise the port the
     CLI resolves from its config.
  3. Concurrently read the runtime state, probe the port and call the
     gateway's ``status`` RPC, each under its own time budget.  A budget
     overrun marks only that field as failed.
  4. Compare what the CLI would install (port, config path, state dir,
     working dir) with what the service definition actually says.  Every
     difference is reported with both values; nothing is reconciled.
  5. When the status RPC fails without timing out on a busy port, fall back
     to a plain ``GET /health`` to tell "gateway down" from "RPC rejected".
  6. Scan for other gateway-like services (system-wide too with ``deep``),
     then derive hints.

The report never contains secret values: the definition environment is
redacted on output and the token is reported only as present/absent.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dmms_gateway.config import Settings, get_settings
from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.models import (
    GatewayInvocation,
    ServiceDefinition,
    ServiceRuntimeStatus,
    ServiceState,
)
from dmms_gateway.diagnostics.inspect import ExtraGatewayService, find_extra_gateway_services
from dmms_gateway.diagnostics.ports import (
    PortStatus,
    PortUsageReport,
    build_port_hints,
    classify_listeners,
    inspect_port_usage,
)
from dmms_gateway.exceptions import ServiceDefinitionParseError, ServiceError
from dmms_gateway.gateway.rpc import (
    RpcProbeResult,
    build_probe_url,
    probe_gateway_health,
    probe_gateway_status,
)
from dmms_gateway.logging import get_logger
from dmms_gateway.paths import (
    current_env,
    format_cli_command,
    resolve_config_path,
    resolve_state_dir,
)

log = get_logger(__name__)

PORT_SOURCE_SERVICE = "service args"
PORT_SOURCE_CONFIG = "config default"

PortProbe = Callable[..., Awaitable[PortUsageReport]]
RpcProbe = Callable[..., Awaitable[RpcProbeResult]]


# ---------------------------------------------------------------------------
# Report records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DriftField:
    name: str
    cli: str | None
    service: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.name, "cli": self.cli, "service": self.service}


@dataclass(frozen=True)
class ConfigDrift:
    cli: dict[str, Any]
    service: dict[str, Any] | None
    fields: tuple[DriftField, ...] = ()

    @property
    def mismatch(self) -> bool:
        return bool(self.fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mismatch": self.mismatch,
            "cli": self.cli,
            "service": self.service,
            "fields": [f.to_dict() for f in self.fields],
        }


@dataclass(frozen=True)
class DiagnosticsReport:
    kind: str | None
    label: str | None
    definition_path: str | None
    state: str
    definition: ServiceDefinition | None
    invocation: GatewayInvocation | None
    runtime: ServiceRuntimeStatus | None
    port: int
    port_source: str
    bind: str | None
    probe_url: str
    port_usage: PortUsageReport
    rpc: RpcProbeResult
    drift: ConfigDrift
    health: RpcProbeResult | None = None
    extra_services: tuple[ExtraGatewayService, ...] = ()
    hints: tuple[str, ...] = ()
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def config_mismatch(self) -> bool:
        return self.drift.mismatch

    def to_dict(self) -> dict[str, Any]:
        invocation = self.invocation
        return {
            "service": {
                "kind": self.kind,
                "label": self.label,
                "definitionPath": self.definition_path,
                "state": self.state,
                "definition": self.definition.to_dict(redact=True) if self.definition else None,
                "tokenConfigured": bool(invocation and invocation.token),
                "runtime": self.runtime.to_dict() if self.runtime else None,
            },
            "gateway": {
                "port": self.port,
                "portSource": self.port_source,
                "bind": self.bind,
                "probeUrl": self.probe_url,
            },
            "port": self.port_usage.to_dict(),
            "rpc": self.rpc.to_dict(),
            "health": self.health.to_dict() if self.health else None,
            "config": self.drift.to_dict(),
            "extraServices": [svc.to_dict() for svc in self.extra_services],
            "hints": list(self.hints),
            "errors": dict(self.errors),
        }


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------


def _norm_path(value: str | Path | None) -> str | None:
    if value is None:
        return None
    return os.path.normcase(os.path.realpath(str(value)))


def service_environment(cli_env: Mapping[str, str], definition: ServiceDefinition) -> dict[str, str]:
    """Environment the service runs with: the user's base env plus its own overrides.

    ``DMMS_AI_*`` values set in the CLI's shell are not inherited.
    """
    env = {k: v for k, v in cli_env.items() if not k.upper().startswith("DMMS_AI_")}
    env.update(definition.environment)
    return env


def detect_config_drift(
    cli_env: Mapping[str, str],
    cli_port: int,
    definition: ServiceDefinition | None,
    invocation: GatewayInvocation | None,
) -> ConfigDrift:
    cli_state_dir = resolve_state_dir(cli_env)
    cli = {
        "port": cli_port,
        "configPath": str(resolve_config_path(cli_env, cli_state_dir)),
        "stateDir": str(cli_state_dir),
    }
    if definition is None:
        return ConfigDrift(cli=cli, service=None)

    svc_env = service_environment(cli_env, definition)
    svc_state_dir = resolve_state_dir(svc_env)
    service = {
        "port": invocation.port if invocation else None,
        "configPath": str(resolve_config_path(svc_env, svc_state_dir)),
        "stateDir": str(svc_state_dir),
        "workingDirectory": definition.working_directory,
    }

    fields: list[DriftField] = []
    if service["port"] is not None and service["port"] != cli_port:
        fields.append(DriftField("port", str(cli_port), str(service["port"])))
    for key in ("configPath", "stateDir"):
        if _norm_path(cli[key]) != _norm_path(service[key]):
            fields.append(DriftField(key, cli[key], service[key]))
    if definition.working_directory and _norm_path(definition.working_directory) != _norm_path(cli_state_dir):
        fields.append(DriftField("workingDirectory", str(cli_state_dir), definition.working_directory))
    return ConfigDrift(cli=cli, service=service, fields=tuple(fields))


# ---------------------------------------------------------------------------
# Hints
# ---------------------------------------------------------------------------


def build_hints(
    state: str,
    runtime: ServiceRuntimeStatus | None,
    port_usage: PortUsageReport,
    rpc: RpcProbeResult,
    drift: ConfigDrift,
    extra_services: tuple[ExtraGatewayService, ...],
    env: Mapping[str, str],
    health: RpcProbeResult | None = None,
) -> list[str]:
    """Operator hints; suggested commands carry the active ``--profile``."""

    def cli(command: str) -> str:
        return format_cli_command(command, env)

    hints: list[str] = []
    state_dir = resolve_state_dir(env)
    if state == ServiceState.NOT_INSTALLED.value:
        hints.append(f"Gateway service is not installed. Run: {cli('dmms-ai daemon install')}")
    elif state == ServiceState.INSTALLED.value:
        hints.append(f"Gateway service is installed but not running. Run: {cli('dmms-ai daemon start')}")
    elif state == "unknown":
        hints.append(
            "Service management is not supported on this platform; "
            f"run the gateway with: {cli('dmms-ai gateway run')}"
        )

    if runtime is not None and runtime.last_exit_code not in (None, 0) and not runtime.running:
        hints.append(
            f"Gateway last exited with code {runtime.last_exit_code}; check logs in {state_dir / 'logs'}."
        )

    hints.extend(port_usage.hints)

    if state == ServiceState.RUNNING.value and not rpc.ok:
        reason = "timed out" if rpc.timed_out else (rpc.error or "failed")
        hints.append(f"Gateway process is running but the status RPC at {rpc.url} {reason}.")
    if health is not None and health.ok and not rpc.ok:
        hints.append(
            f"{health.url} answers, so the gateway is up but its RPC endpoint rejected the status call."
        )

    for drift_field in drift.fields:
        hints.append(
            f"Service {drift_field.name} is {drift_field.service} but this CLI uses {drift_field.cli}. "
            f"Re-run: {cli('dmms-ai daemon install')}"
        )

    if extra_services:
        labels = ", ".join(svc.label for svc in extra_services)
        hints.append(f"Other gateway-like services found: {labels}. Remove stale ones to avoid port conflicts.")
    return hints


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class DiagnosticsEngine:
    """Builds a ``DiagnosticsReport`` for the gateway service."""

    def __init__(
        self,
        adapter: ServiceAdapter | None,
        settings: Settings | None = None,
        env: Mapping[str, str] | None = None,
        *,
        port_probe: PortProbe = inspect_port_usage,
        rpc_probe: RpcProbe = probe_gateway_status,
        health_probe: RpcProbe = probe_gateway_health,
    ) -> None:
        self._adapter = adapter
        self._settings = settings or get_settings()
        self._env: dict[str, str] = dict(current_env() if env is None else env)
        self._port_probe = port_probe
        self._rpc_probe = rpc_probe
        self._health_probe = health_probe

    async def diagnose(self, expected_port: int | None = None, deep: bool = False) -> DiagnosticsReport:
        errors: dict[str, str] = {}
        settings = self._settings
        timeouts = settings.diagnostics

        definition = await self._read_definition(errors)
        invocation = GatewayInvocation.from_definition(definition) if definition else None

        cli_port = expected_port or settings.effective_port(self._env)
        if invocation is not None and invocation.port is not None:
            port, port_source = invocation.port, PORT_SOURCE_SERVICE
        else:
            port, port_source = cli_port, PORT_SOURCE_CONFIG

        token = (invocation.token if invocation else None) or settings.gateway.auth.token
        probe_url = build_probe_url(port, tls_enabled=settings.gateway.tls.enabled)

        runtime, port_usage, rpc = await asyncio.gather(
            self._read_runtime(timeouts.runtime_timeout_s, errors),
            self._probe_port(port, timeouts.port_probe_timeout_s, errors),
            self._rpc_probe(probe_url, timeout=timeouts.rpc_probe_timeout_s, token=token),
        )
        port_usage = self._attribute_listeners(port_usage, runtime)

        if self._adapter is None:
            state = "unknown"
        elif runtime is not None and runtime.running:
            state = ServiceState.RUNNING.value
        elif definition is not None or (runtime is not None and runtime.loaded):
            state = ServiceState.INSTALLED.value
        else:
            state = ServiceState.NOT_INSTALLED.value

        health: RpcProbeResult | None = None
        if not rpc.ok and not rpc.timed_out and port_usage.status is not PortStatus.FREE:
            health = await self._health_probe(probe_url, timeout=timeouts.rpc_probe_timeout_s, token=token)

        drift = detect_config_drift(self._env, cli_port, definition, invocation)

        extra: tuple[ExtraGatewayService, ...] = ()
        if self._adapter is not None:
            exclude = {self._adapter.label, str(self._adapter.definition_path)}
            extra = tuple(
                await find_extra_gateway_services(
                    self._env,
                    kind=self._adapter.KIND,
                    deep=deep,
                    exclude=exclude,
                    timeout=timeouts.runtime_timeout_s,
                )
            )

        hints = build_hints(state, runtime, port_usage, rpc, drift, extra, self._env, health=health)
        report = DiagnosticsReport(
            kind=self._adapter.KIND if self._adapter else None,
            label=self._adapter.label if self._adapter else None,
            definition_path=str(self._adapter.definition_path) if self._adapter else None,
            state=state,
            definition=definition,
            invocation=invocation,
            runtime=runtime,
            port=port,
            port_source=port_source,
            bind=invocation.bind if invocation and invocation.bind else settings.gateway.bind,
            probe_url=probe_url,
            port_usage=port_usage,
            rpc=rpc,
            drift=drift,
            health=health,
            extra_services=extra,
            hints=tuple(hints),
            errors=errors,
        )
        log.info(
            "diagnostics_complete",
            state=state,
            port=port,
            port_status=port_usage.status.value,
            rpc_ok=rpc.ok,
            mismatch=drift.mismatch,
        )
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _read_definition(self, errors: dict[str, str]) -> ServiceDefinition | None:
        if self._adapter is None:
            errors["service"] = "unsupported platform"
            return None
        try:
            return await self._adapter.read_definition()
        except ServiceDefinitionParseError as exc:
            errors["definition"] = exc.message
            return None

    async def _read_runtime(self, timeout: float, errors: dict[str, str]) -> ServiceRuntimeStatus | None:
        if self._adapter is None:
            return None
        try:
            return await asyncio.wait_for(self._adapter.read_runtime_status(), timeout=timeout)
        except asyncio.TimeoutError:
            errors["runtime"] = f"timed out after {timeout:g}s"
        except ServiceError as exc:
            errors["runtime"] = exc.message
        return None

    async def _probe_port(self, port: int, timeout: float, errors: dict[str, str]) -> PortUsageReport:
        # Connect plus listener lookup each get the port check budget.
        budget = timeout * 2
        try:
            return await asyncio.wait_for(
                self._port_probe(port, timeout=timeout, self_pids=(os.getpid(),)),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            errors["port"] = f"timed out after {budget:g}s"
            return PortUsageReport(
                port=port,
                status=PortStatus.TIMEOUT,
                hints=tuple(build_port_hints(port, PortStatus.TIMEOUT, [])),
                error=errors["port"],
            )

    @staticmethod
    def _attribute_listeners(
        port_usage: PortUsageReport,
        runtime: ServiceRuntimeStatus | None,
    ) -> PortUsageReport:
        """Re-classify a busy port once the service pid is known."""
        if port_usage.status is not PortStatus.IN_USE_BY_OTHER or runtime is None or runtime.pid is None:
            return port_usage
        status = classify_listeners(port_usage.listeners, (runtime.pid,))
        if status is port_usage.status:
            return port_usage
        return PortUsageReport(
            port=port_usage.port,
            status=status,
            listeners=port_usage.listeners,
            hints=tuple(build_port_hints(port_usage.port, status, port_usage.listeners)),
            error=port_usage.error,
        )
