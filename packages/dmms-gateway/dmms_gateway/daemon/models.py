"""Daemon layer — Service definition and runtime records.

  - ``ServiceDefinition``    — how the gateway is launched (parsed from a unit/plist/script)
  - ``ServiceRuntimeStatus`` — a read-only snapshot of what the OS reports right now
  - ``GatewayInvocation``    — port/bind/secrets recovered from a definition
  - ``ServiceState``         — the lifecycle state derived from both
  - ``LifecycleResult``      — outcome of an install/start/stop/restart/uninstall
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dmms_gateway.logging import redact_environment
from dmms_gateway.paths import (
    ENV_GATEWAY_PASSWORD,
    ENV_GATEWAY_PORT,
    ENV_GATEWAY_TOKEN,
    parse_port,
)


class ServiceState(str, Enum):
    NOT_INSTALLED = "not-installed"
    INSTALLED = "installed"
    RUNNING = "running"


class RuntimeStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ServiceDefinition:
    """How the daemon is launched.

    Produced by parsing platform-specific persisted state; only constructed
    by hand at install time.
    """

    program_arguments: tuple[str, ...]
    environment: dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None
    source_path: str = ""

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        return {
            "programArguments": list(self.program_arguments),
            "environment": redact_environment(self.environment) if redact else dict(self.environment),
            "workingDirectory": self.working_directory,
            "sourcePath": self.source_path,
        }


@dataclass(frozen=True)
class ServiceRuntimeStatus:
    """Snapshot of the service as the OS reports it.

    Re-fetched on every diagnostics call — never cached.  Numeric fields
    the OS tool reported in an unparsable form are ``None``, never 0.
    """

    status: RuntimeStatus = RuntimeStatus.UNKNOWN
    loaded: bool = False
    state: str | None = None
    sub_state: str | None = None
    pid: int | None = None
    last_exit_code: int | None = None
    last_exit_reason: str | None = None
    last_run_time: str | None = None
    detail: str | None = None

    @property
    def running(self) -> bool:
        return self.status is RuntimeStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "loaded": self.loaded,
            "state": self.state,
            "subState": self.sub_state,
            "pid": self.pid,
            "lastExitCode": self.last_exit_code,
            "lastExitReason": self.last_exit_reason,
            "lastRunTime": self.last_run_time,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class GatewayInvocation:
    """The gateway-relevant parts of a service definition."""

    port: int | None = None
    bind: str | None = None
    token: str | None = None
    password: str | None = None
    port_from_args: bool = False

    @classmethod
    def from_definition(cls, definition: ServiceDefinition) -> "GatewayInvocation":
        args = list(definition.program_arguments)
        env = definition.environment

        port = parse_port(_flag_value(args, "--port"))
        from_args = port is not None
        if port is None:
            port = parse_port(env.get(ENV_GATEWAY_PORT))

        return cls(
            port=port,
            bind=_flag_value(args, "--bind"),
            token=_trimmed(env.get(ENV_GATEWAY_TOKEN)),
            password=_trimmed(env.get(ENV_GATEWAY_PASSWORD)),
            port_from_args=from_args,
        )


@dataclass(frozen=True)
class LifecycleResult:
    action: str
    result: str
    label: str
    state: ServiceState | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": True,
            "action": self.action,
            "result": self.result,
            "service": self.label,
        }
        if self.state is not None:
            payload["state"] = self.state.value
        if self.detail:
            payload["detail"] = self.detail
        return payload


def _trimmed(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _flag_value(args: list[str], flag: str) -> str | None:
    """Return the value of ``--flag value`` or ``--flag=value``; None if absent or dangling."""
    for index, arg in enumerate(args):
        if arg == flag:
            if index + 1 < len(args) and not args[index + 1].startswith("--"):
                return args[index + 1].strip() or None
            return None
        if arg.startswith(flag + "="):
            return arg[len(flag) + 1 :].strip() or None
    return None
