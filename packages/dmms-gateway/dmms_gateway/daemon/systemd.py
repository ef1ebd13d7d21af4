"""Daemon layer — systemd user unit adapter (Linux).

The unit lives at ``~/.config/systemd/user/<name>.service``.  ``ExecStart=``
and ``Environment=`` values are tokenized with systemd's backslash escaping
to recover the argument vector and environment map.  Rendering doubles
``%`` (and ``$`` in ``ExecStart=``) so systemd does not expand them; parsing
reverses that.  Runtime state comes from ``systemctl --user show``
key/value output.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dmms_gateway.daemon.args import join_args, quote_arg, split_args_preserving_quotes
from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.constants import resolve_gateway_systemd_service_name
from dmms_gateway.daemon.exec import CommandResult, is_permission_error
from dmms_gateway.daemon.models import RuntimeStatus, ServiceDefinition, ServiceRuntimeStatus
from dmms_gateway.exceptions import (
    PermissionDeniedError,
    ServiceCommandError,
    ServiceDefinitionParseError,
)
from dmms_gateway.logging import get_logger
from dmms_gateway.paths import resolve_home_dir

log = get_logger(__name__)

_SHOW_PROPERTIES = "LoadState,ActiveState,SubState,MainPID,ExecMainStatus,ExecMainCode"
_BUS_UNAVAILABLE_MARKERS = (
    "failed to connect to bus",
    "not been booted with systemd",
    "no medium found",
)


def resolve_systemd_user_unit_path(env: Mapping[str, str]) -> Path:
    name = resolve_gateway_systemd_service_name(env)
    return resolve_home_dir(env) / ".config" / "systemd" / "user" / f"{name}.service"


# ---------------------------------------------------------------------------
# Pure parsers
# ---------------------------------------------------------------------------


def _parse_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_systemd_show(output: str) -> dict[str, Any]:
    """Parse ``systemctl show`` ``Key=Value`` lines.

    Returns only the keys that were present and parsable: ``MainPID=0``
    means "no process" and unparsable numbers are omitted.
    """
    info: dict[str, Any] = {}
    for raw in output.splitlines():
        key, sep, value = raw.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if not value:
            continue
        if key == "LoadState":
            info["load_state"] = value
        elif key == "ActiveState":
            info["active_state"] = value
        elif key == "SubState":
            info["sub_state"] = value
        elif key == "MainPID":
            pid = _parse_int(value)
            if pid is not None and pid > 0:
                info["main_pid"] = pid
        elif key == "ExecMainStatus":
            status = _parse_int(value)
            if status is not None:
                info["exec_main_status"] = status
        elif key == "ExecMainCode":
            info["exec_main_code"] = value
    return info


def escape_systemd_specifiers(value: str, dollar: bool = False) -> str:
    """Escape ``%`` specifiers and, for ``ExecStart=``, ``$`` variable expansion."""
    value = value.replace("%", "%%")
    if dollar:
        value = value.replace("$", "$$")
    return value


def unescape_systemd_specifiers(value: str, dollar: bool = False) -> str:
    value = value.replace("%%", "%")
    if dollar:
        value = value.replace("$$", "$")
    return value


def parse_systemd_exec_start(value: str) -> list[str]:
    return [
        unescape_systemd_specifiers(arg, dollar=True)
        for arg in split_args_preserving_quotes(value, escape_mode="backslash")
    ]


def _logical_lines(text: str) -> list[str]:
    """Join backslash-continued lines."""
    lines: list[str] = []
    pending = ""
    for raw in text.splitlines():
        stripped = raw.rstrip()
        if stripped.endswith("\\") and not stripped.endswith("\\\\"):
            pending += stripped[:-1] + " "
            continue
        lines.append(pending + stripped)
        pending = ""
    if pending:
        lines.append(pending)
    return lines


def parse_systemd_unit(text: str, source_path: str) -> ServiceDefinition | None:
    """Recover the gateway definition from a unit file; None without ExecStart."""
    section: str | None = None
    exec_start: str | None = None
    environment: dict[str, str] = {}
    working_directory: str | None = None

    for raw in _logical_lines(text):
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip()
            continue
        if section != "Service":
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "ExecStart":
            exec_start = value or None
        elif key == "Environment":
            for token in split_args_preserving_quotes(value, escape_mode="backslash"):
                name, eq, env_value = token.partition("=")
                name = name.strip()
                if eq and name:
                    environment[name] = unescape_systemd_specifiers(env_value.strip())
        elif key == "WorkingDirectory":
            working_directory = unescape_systemd_specifiers(value) or None

    if not exec_start:
        return None
    program_arguments = parse_systemd_exec_start(exec_start)
    if not program_arguments:
        return None
    return ServiceDefinition(
        program_arguments=tuple(program_arguments),
        environment=environment,
        working_directory=working_directory,
        source_path=source_path,
    )


def render_systemd_unit(definition: ServiceDefinition, description: str = "DMMS AI Gateway") -> str:
    exec_start = join_args(
        (escape_systemd_specifiers(arg, dollar=True) for arg in definition.program_arguments),
        "backslash",
    )
    lines = [
        "[Unit]",
        f"Description={description}",
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        f"ExecStart={exec_start}",
        "Restart=always",
        "RestartSec=5",
        "KillMode=process",
    ]
    if definition.working_directory:
        lines.append(f"WorkingDirectory={escape_systemd_specifiers(definition.working_directory)}")
    for key, value in definition.environment.items():
        assignment = f"{key}={escape_systemd_specifiers(value)}"
        lines.append(f"Environment={quote_arg(assignment, 'backslash')}")
    lines.extend(["", "[Install]", "WantedBy=default.target", ""])
    return "\n".join(lines)


def runtime_from_show(info: Mapping[str, Any], loaded: bool) -> ServiceRuntimeStatus:
    active = info.get("active_state")
    if active == "active":
        status = RuntimeStatus.RUNNING
    elif active in ("inactive", "failed"):
        status = RuntimeStatus.STOPPED
    else:
        status = RuntimeStatus.UNKNOWN
    return ServiceRuntimeStatus(
        status=status,
        loaded=loaded,
        state=active,
        sub_state=info.get("sub_state"),
        pid=info.get("main_pid"),
        last_exit_code=info.get("exec_main_status"),
        last_exit_reason=info.get("exec_main_code"),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class SystemdServiceAdapter(ServiceAdapter):
    KIND = "systemd"
    supports_restart = True

    @property
    def label(self) -> str:
        return f"{resolve_gateway_systemd_service_name(self._env)}.service"

    @property
    def definition_path(self) -> Path:
        return resolve_systemd_user_unit_path(self._env)

    async def _systemctl(self, *args: str) -> CommandResult:
        return await self._run(["systemctl", "--user", *args])

    async def is_available(self) -> bool:
        try:
            result = await self._systemctl("status")
        except ServiceCommandError:
            return False
        if result.ok:
            return True
        detail = result.detail.lower()
        return not any(marker in detail for marker in _BUS_UNAVAILABLE_MARKERS)

    async def _assert_available(self) -> None:
        if not await self.is_available():
            raise ServiceCommandError(
                "systemctl --user",
                "systemd user services are unavailable; enable lingering or run in a login session",
            )

    async def read_definition(self) -> ServiceDefinition | None:
        path = self.definition_path
        if not path.exists():
            return None
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ServiceDefinitionParseError(str(path), str(exc)) from exc
        return parse_systemd_unit(text, str(path))

    async def install(self, definition: ServiceDefinition) -> None:
        await self._assert_available()
        path = self.definition_path
        unit = render_systemd_unit(definition)
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_text, unit, encoding="utf-8")
        except PermissionError as exc:
            raise PermissionDeniedError("install", self.label, str(exc)) from exc
        log.info("systemd_unit_written", path=str(path), unit=self.label)

        (await self._systemctl("daemon-reload")).check("daemon-reload", self.label)
        (await self._systemctl("enable", self.label)).check("enable", self.label)
        (await self._systemctl("restart", self.label)).check("restart", self.label)
        log.info("systemd_service_installed", unit=self.label)

    async def uninstall(self) -> None:
        result = await self._systemctl("disable", "--now", self.label)
        if not result.ok and is_permission_error(result.detail):
            raise PermissionDeniedError("uninstall", self.label, result.detail)
        path = self.definition_path
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except PermissionError as exc:
            raise PermissionDeniedError("uninstall", self.label, str(exc)) from exc
        (await self._systemctl("daemon-reload")).check("daemon-reload", self.label)
        log.info("systemd_service_uninstalled", unit=self.label, path=str(path))

    async def start(self) -> None:
        (await self._systemctl("start", self.label)).check("start", self.label)
        log.info("systemd_service_started", unit=self.label)

    async def restart(self) -> None:
        (await self._systemctl("restart", self.label)).check("restart", self.label)
        log.info("systemd_service_restarted", unit=self.label)

    async def stop(self) -> None:
        (await self._systemctl("stop", self.label)).check("stop", self.label)
        log.info("systemd_service_stopped", unit=self.label)

    async def is_loaded(self) -> bool:
        result = await self._systemctl("is-enabled", self.label)
        return result.ok

    async def read_runtime_status(self) -> ServiceRuntimeStatus:
        result = await self._systemctl(
            "show", self.label, "--no-page", "--property", _SHOW_PROPERTIES
        )
        if not result.ok:
            return ServiceRuntimeStatus(status=RuntimeStatus.UNKNOWN, detail=result.detail or None)
        info = parse_systemd_show(result.stdout)
        loaded = info.get("load_state") != "not-found" and await self.is_loaded()
        return runtime_from_show(info, loaded)
