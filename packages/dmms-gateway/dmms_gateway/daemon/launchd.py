"""Daemon layer — launchd LaunchAgent adapter (macOS).

The agent lives at ``~/Library/LaunchAgents/<label>.plist``.  The property
list already carries a structured ``ProgramArguments`` array and an
``EnvironmentVariables`` dict, so no tokenization is needed; environment
values are trimmed because hand-edited plists often pad secrets.

Runtime state is read from ``launchctl print gui/<uid>/<label>``.
"""

from __future__ import annotations

import asyncio
import os
import plistlib
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from xml.parsers.expat import ExpatError

from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.constants import resolve_gateway_launchd_label
from dmms_gateway.daemon.exec import CommandResult, is_permission_error
from dmms_gateway.daemon.models import RuntimeStatus, ServiceDefinition, ServiceRuntimeStatus
from dmms_gateway.exceptions import PermissionDeniedError, ServiceDefinitionParseError
from dmms_gateway.logging import get_logger
from dmms_gateway.paths import resolve_home_dir, resolve_state_dir

log = get_logger(__name__)


def resolve_launch_agent_plist_path(env: Mapping[str, str]) -> Path:
    label = resolve_gateway_launchd_label(env)
    return resolve_home_dir(env) / "Library" / "LaunchAgents" / f"{label}.plist"


# ---------------------------------------------------------------------------
# Pure parsers
# ---------------------------------------------------------------------------


def parse_launch_agent_plist(data: bytes, source_path: str) -> ServiceDefinition | None:
    """Recover the gateway definition from plist bytes; None without a command.

    Raises:
        ServiceDefinitionParseError: The bytes are not a valid property list.
    """
    try:
        plist = plistlib.loads(data)
    except (plistlib.InvalidFileException, ExpatError, ValueError) as exc:
        raise ServiceDefinitionParseError(source_path, str(exc) or "invalid property list") from exc
    if not isinstance(plist, dict):
        raise ServiceDefinitionParseError(source_path, "top-level object is not a dict")

    raw_args = plist.get("ProgramArguments")
    if isinstance(raw_args, list):
        program_arguments = [str(arg) for arg in raw_args if isinstance(arg, (str, int, float))]
    elif isinstance(plist.get("Program"), str):
        program_arguments = [plist["Program"]]
    else:
        program_arguments = []
    if not program_arguments:
        return None

    environment: dict[str, str] = {}
    raw_env = plist.get("EnvironmentVariables")
    if isinstance(raw_env, dict):
        for key, value in raw_env.items():
            if isinstance(value, (str, int, float)):
                environment[str(key)] = str(value).strip()

    working_directory = plist.get("WorkingDirectory")
    if not isinstance(working_directory, str) or not working_directory.strip():
        working_directory = None

    return ServiceDefinition(
        program_arguments=tuple(program_arguments),
        environment=environment,
        working_directory=working_directory,
        source_path=source_path,
    )


def render_launch_agent_plist(
    label: str,
    definition: ServiceDefinition,
    log_dir: Path | None = None,
) -> bytes:
    plist: dict[str, Any] = {
        "Label": label,
        "ProgramArguments": list(definition.program_arguments),
        "RunAtLoad": True,
        "KeepAlive": True,
    }
    if definition.environment:
        plist["EnvironmentVariables"] = dict(definition.environment)
    if definition.working_directory:
        plist["WorkingDirectory"] = definition.working_directory
    if log_dir is not None:
        plist["StandardOutPath"] = str(log_dir / "gateway.log")
        plist["StandardErrorPath"] = str(log_dir / "gateway.err.log")
    return plistlib.dumps(plist, fmt=plistlib.FMT_XML)


def _parse_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_launchctl_print(output: str) -> dict[str, Any]:
    """Parse ``launchctl print`` output.

    Only the first occurrence of each key counts — nested sections reuse
    names like ``state``.  Unparsable numbers are omitted.
    """
    info: dict[str, Any] = {}
    for raw in output.splitlines():
        key, sep, value = raw.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if not value:
            continue
        if key == "state" and "state" not in info:
            info["state"] = value
        elif key == "pid" and "pid" not in info:
            pid = _parse_int(value)
            if pid is not None and pid > 0:
                info["pid"] = pid
        elif key in ("last exit code", "last exit status") and "last_exit_status" not in info:
            code = _parse_int(value)
            if code is not None:
                info["last_exit_status"] = code
        elif key == "last exit reason" and "last_exit_reason" not in info:
            info["last_exit_reason"] = value
    return info


def runtime_from_print(info: Mapping[str, Any]) -> ServiceRuntimeStatus:
    state = info.get("state")
    if state == "running":
        status = RuntimeStatus.RUNNING
    elif state is None:
        status = RuntimeStatus.UNKNOWN
    else:
        status = RuntimeStatus.STOPPED
    return ServiceRuntimeStatus(
        status=status,
        loaded=True,
        state=state,
        pid=info.get("pid"),
        last_exit_code=info.get("last_exit_status"),
        last_exit_reason=info.get("last_exit_reason"),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class LaunchdServiceAdapter(ServiceAdapter):
    KIND = "launchd"
    supports_restart = True

    @property
    def label(self) -> str:
        return resolve_gateway_launchd_label(self._env)

    @property
    def definition_path(self) -> Path:
        return resolve_launch_agent_plist_path(self._env)

    @property
    def domain(self) -> str:
        return f"gui/{os.getuid()}"

    @property
    def service_target(self) -> str:
        return f"{self.domain}/{self.label}"

    async def _launchctl(self, *args: str) -> CommandResult:
        return await self._run(["launchctl", *args])

    async def _bootout(self) -> None:
        """Unload the agent; "not loaded" is fine, a refusal is not."""
        result = await self._launchctl("bootout", self.service_target)
        if not result.ok and is_permission_error(result.detail):
            raise PermissionDeniedError("bootout", self.label, result.detail)

    async def _bootstrap(self) -> None:
        result = await self._launchctl("bootstrap", self.domain, str(self.definition_path))
        result.check("bootstrap", self.label)

    async def read_definition(self) -> ServiceDefinition | None:
        path = self.definition_path
        if not path.exists():
            return None
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise ServiceDefinitionParseError(str(path), str(exc)) from exc
        return parse_launch_agent_plist(data, str(path))

    async def install(self, definition: ServiceDefinition) -> None:
        path = self.definition_path
        log_dir = resolve_state_dir(self._env) / "logs"
        payload = render_launch_agent_plist(self.label, definition, log_dir=log_dir)
        try:
            await asyncio.to_thread(log_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, payload)
        except PermissionError as exc:
            raise PermissionDeniedError("install", self.label, str(exc)) from exc
        log.info("launch_agent_written", path=str(path), label=self.label)

        await self._bootout()
        enable = await self._launchctl("enable", self.service_target)
        if not enable.ok and is_permission_error(enable.detail):
            raise PermissionDeniedError("enable", self.label, enable.detail)
        await self._bootstrap()
        (await self._launchctl("kickstart", "-k", self.service_target)).check("kickstart", self.label)
        log.info("launch_agent_installed", label=self.label)

    async def uninstall(self) -> None:
        await self._bootout()
        path = self.definition_path
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except PermissionError as exc:
            raise PermissionDeniedError("uninstall", self.label, str(exc)) from exc
        log.info("launch_agent_uninstalled", label=self.label, path=str(path))

    async def start(self) -> None:
        if not await self.is_loaded():
            await self._bootstrap()
        (await self._launchctl("kickstart", self.service_target)).check("kickstart", self.label)
        log.info("launch_agent_started", label=self.label)

    async def restart(self) -> None:
        if not await self.is_loaded():
            await self._bootstrap()
        (await self._launchctl("kickstart", "-k", self.service_target)).check("kickstart", self.label)
        log.info("launch_agent_restarted", label=self.label)

    async def stop(self) -> None:
        result = await self._launchctl("bootout", self.service_target)
        result.check("bootout", self.label)
        log.info("launch_agent_stopped", label=self.label)

    async def is_loaded(self) -> bool:
        result = await self._launchctl("print", self.service_target)
        return result.ok

    async def read_runtime_status(self) -> ServiceRuntimeStatus:
        result = await self._launchctl("print", self.service_target)
        if not result.ok:
            return ServiceRuntimeStatus(
                status=RuntimeStatus.STOPPED,
                loaded=False,
                detail=result.detail or "not loaded",
            )
        return runtime_from_print(parse_launchctl_print(result.stdout))
