"""Daemon layer — Windows Scheduled Task adapter.

The task runs a generated ``gateway.cmd`` script in the state directory at
logon.  The script is the definition of record:

    @echo off
    rem DMMS AI Gateway
    cd /d "C:\\Users\\me\\.dmms-ai"
    set DMMS_AI_GATEWAY_PORT=18789
    "C:\\Python312\\python.exe" -m dmms_gateway gateway run --port 18789

Reading it back is line scanning: comments are skipped, the last ``cd /d``
wins, ``set`` lines accumulate, and the last remaining line is the
command, tokenized so that Windows paths and UNC prefixes keep their
backslashes.  Scheduled tasks have no restart primitive.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dmms_gateway.daemon.args import join_args, split_args_preserving_quotes
from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.constants import resolve_gateway_windows_task_name
from dmms_gateway.daemon.exec import CommandResult, is_permission_error
from dmms_gateway.daemon.models import RuntimeStatus, ServiceDefinition, ServiceRuntimeStatus
from dmms_gateway.exceptions import PermissionDeniedError, ServiceDefinitionParseError
from dmms_gateway.logging import get_logger
from dmms_gateway.paths import resolve_state_dir

log = get_logger(__name__)

TASK_SCRIPT_NAME = "gateway.cmd"


def resolve_task_script_path(env: Mapping[str, str]) -> Path:
    return resolve_state_dir(env) / TASK_SCRIPT_NAME


# ---------------------------------------------------------------------------
# Pure parsers
# ---------------------------------------------------------------------------


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def _is_comment(line: str) -> bool:
    lowered = line.lower()
    return (
        lowered.startswith("@echo")
        or lowered == "rem"
        or lowered.startswith("rem ")
        or line.startswith("::")
    )


def parse_task_script(text: str, source_path: str) -> ServiceDefinition | None:
    """Recover the gateway definition from a ``.cmd`` script; None without a command."""
    working_directory: str | None = None
    environment: dict[str, str] = {}
    command_line: str | None = None

    for raw in text.splitlines():
        line = raw.strip()
        if not line or _is_comment(line):
            continue
        lowered = line.lower()
        if lowered.startswith("cd /d "):
            working_directory = _unquote(line[len("cd /d ") :]) or None
            continue
        if lowered.startswith("set "):
            assignment = _unquote(line[len("set ") :])
            name, eq, value = assignment.partition("=")
            name = name.strip()
            if eq and name:
                environment[name] = value.strip()
            continue
        command_line = line

    if command_line is None:
        return None
    program_arguments = split_args_preserving_quotes(command_line, escape_mode="backslash-quote-only")
    if not program_arguments:
        return None
    return ServiceDefinition(
        program_arguments=tuple(program_arguments),
        environment=environment,
        working_directory=working_directory,
        source_path=source_path,
    )


def render_task_script(definition: ServiceDefinition, description: str = "DMMS AI Gateway") -> str:
    lines = ["@echo off", f"rem {description}"]
    if definition.working_directory:
        lines.append(f'cd /d "{definition.working_directory}"')
    for key, value in definition.environment.items():
        lines.append(f"set {key}={value}")
    lines.append(join_args(definition.program_arguments, "backslash-quote-only"))
    return "\r\n".join(lines) + "\r\n"


def _parse_task_result(value: str) -> int | None:
    value = value.strip()
    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        return int(value)
    except ValueError:
        return None


def parse_schtasks_query(output: str) -> dict[str, Any]:
    """Parse ``schtasks /Query /V /FO LIST`` output.

    Keys are matched case-insensitively; the first occurrence wins.
    ``Last Run Result`` is usually hex (``0x0``) and is omitted when it
    does not parse.
    """
    info: dict[str, Any] = {}
    for raw in output.splitlines():
        key, sep, value = raw.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if not value:
            continue
        if key == "status" and "status" not in info:
            info["status"] = value
        elif key == "last run time" and "last_run_time" not in info:
            info["last_run_time"] = value
        elif key == "last run result" and "last_run_result" not in info:
            code = _parse_task_result(value)
            if code is not None:
                info["last_run_result"] = code
    return info


def runtime_from_query(info: Mapping[str, Any]) -> ServiceRuntimeStatus:
    state = info.get("status")
    if state is None:
        status = RuntimeStatus.UNKNOWN
    elif state.lower() == "running":
        status = RuntimeStatus.RUNNING
    else:
        status = RuntimeStatus.STOPPED
    return ServiceRuntimeStatus(
        status=status,
        loaded=True,
        state=state,
        last_exit_code=info.get("last_run_result"),
        last_run_time=info.get("last_run_time"),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class SchtasksServiceAdapter(ServiceAdapter):
    KIND = "schtasks"
    supports_restart = False

    @property
    def label(self) -> str:
        return resolve_gateway_windows_task_name(self._env)

    @property
    def definition_path(self) -> Path:
        return resolve_task_script_path(self._env)

    async def _schtasks(self, *args: str) -> CommandResult:
        return await self._run(["schtasks", *args])

    async def read_definition(self) -> ServiceDefinition | None:
        path = self.definition_path
        if not path.exists():
            return None
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ServiceDefinitionParseError(str(path), str(exc)) from exc
        return parse_task_script(text, str(path))

    async def install(self, definition: ServiceDefinition) -> None:
        path = self.definition_path
        script = render_task_script(definition)
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, script.encode("utf-8"))
        except PermissionError as exc:
            raise PermissionDeniedError("install", self.label, str(exc)) from exc
        log.info("task_script_written", path=str(path), task=self.label)

        create = await self._schtasks(
            "/Create", "/F",
            "/SC", "ONLOGON",
            "/RL", "LIMITED",
            "/TN", self.label,
            "/TR", f'"{path}"',
        )
        create.check("create", self.label)
        (await self._schtasks("/Run", "/TN", self.label)).check("run", self.label)
        log.info("scheduled_task_installed", task=self.label)

    async def uninstall(self) -> None:
        # Ending a task that is not running fails harmlessly.
        await self._schtasks("/End", "/TN", self.label)
        delete = await self._schtasks("/Delete", "/F", "/TN", self.label)
        if not delete.ok and is_permission_error(delete.detail):
            raise PermissionDeniedError("uninstall", self.label, delete.detail)
        path = self.definition_path
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except PermissionError as exc:
            raise PermissionDeniedError("uninstall", self.label, str(exc)) from exc
        log.info("scheduled_task_uninstalled", task=self.label, path=str(path))

    async def start(self) -> None:
        (await self._schtasks("/Run", "/TN", self.label)).check("run", self.label)
        log.info("scheduled_task_started", task=self.label)

    async def stop(self) -> None:
        (await self._schtasks("/End", "/TN", self.label)).check("end", self.label)
        log.info("scheduled_task_stopped", task=self.label)

    async def is_loaded(self) -> bool:
        result = await self._schtasks("/Query", "/TN", self.label)
        return result.ok

    async def read_runtime_status(self) -> ServiceRuntimeStatus:
        result = await self._schtasks("/Query", "/TN", self.label, "/V", "/FO", "LIST")
        if not result.ok:
            return ServiceRuntimeStatus(
                status=RuntimeStatus.STOPPED,
                loaded=False,
                detail=result.detail or "task not found",
            )
        return runtime_from_query(parse_schtasks_query(result.stdout))
