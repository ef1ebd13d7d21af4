"""Diagnostics layer — Scan for gateway-like services besides the active one.

A second agent or unit that also launches the gateway (an old profile, a
system-wide copy, a hand-written unit) fights the active service for the
port.  The default scan covers the per-user service directories; ``deep``
adds the system-wide ones and, on Windows, the scheduled-task list.
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dmms_gateway.daemon.exec import run_command
from dmms_gateway.diagnostics.ports import GATEWAY_PROCESS_MARKERS
from dmms_gateway.exceptions import ServiceCommandError
from dmms_gateway.logging import get_logger
from dmms_gateway.paths import ENV_SERVICE_MARKER, resolve_home_dir

log = get_logger(__name__)

_CONTENT_MARKERS = (*GATEWAY_PROCESS_MARKERS, ENV_SERVICE_MARKER.lower())
_TASK_NAME_MARKERS = ("dmms ai gateway", "dmms-ai", "dmms_gateway")


@dataclass(frozen=True)
class ExtraGatewayService:
    kind: str
    label: str
    scope: str
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "label": self.label, "scope": self.scope, "path": self.path}


def contains_gateway_marker(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _CONTENT_MARKERS)


def parse_schtasks_task_names(output: str) -> list[str]:
    """Task names from ``schtasks /Query /FO LIST`` output, in order, deduplicated."""
    names: list[str] = []
    for raw in output.splitlines():
        key, sep, value = raw.partition(":")
        if not sep or key.strip().lower() != "taskname":
            continue
        name = value.strip().lstrip("\\")
        if name and name not in names:
            names.append(name)
    return names


def _service_dirs(kind: str, env: Mapping[str, str], deep: bool) -> list[tuple[Path, str]]:
    home = resolve_home_dir(env)
    if kind == "launchd":
        dirs = [(home / "Library" / "LaunchAgents", "user")]
        if deep:
            dirs += [(Path("/Library/LaunchAgents"), "system"), (Path("/Library/LaunchDaemons"), "system")]
        return dirs
    if kind == "systemd":
        dirs = [(home / ".config" / "systemd" / "user", "user")]
        if deep:
            dirs += [(Path("/etc/systemd/user"), "system"), (Path("/etc/systemd/system"), "system")]
        return dirs
    return []


def scan_service_dir(
    directory: Path,
    kind: str,
    scope: str,
    exclude: Collection[str] = (),
) -> list[ExtraGatewayService]:
    suffix = ".plist" if kind == "launchd" else ".service"
    found: list[ExtraGatewayService] = []
    if not directory.is_dir():
        return found
    for path in sorted(directory.glob(f"*{suffix}")):
        if str(path) in exclude or path.name in exclude:
            continue
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            log.debug("service_file_unreadable", path=str(path), error=str(exc))
            continue
        if contains_gateway_marker(text):
            label = path.stem if kind == "launchd" else path.name
            found.append(ExtraGatewayService(kind=kind, label=label, scope=scope, path=str(path)))
    return found


async def _scan_scheduled_tasks(exclude: Collection[str], timeout: float) -> list[ExtraGatewayService]:
    try:
        result = await run_command(["schtasks", "/Query", "/FO", "LIST"], timeout=timeout)
    except ServiceCommandError as exc:
        log.debug("schtasks_scan_failed", error=exc.message)
        return []
    found: list[ExtraGatewayService] = []
    for name in parse_schtasks_task_names(result.stdout):
        if name in exclude:
            continue
        if any(marker in name.lower() for marker in _TASK_NAME_MARKERS):
            found.append(ExtraGatewayService(kind="schtasks", label=name, scope="user"))
    return found


async def find_extra_gateway_services(
    env: Mapping[str, str],
    kind: str,
    deep: bool = False,
    exclude: Collection[str] = (),
    timeout: float = 10.0,
) -> list[ExtraGatewayService]:
    """Return gateway-like services other than those named in *exclude*.

    *kind* is the active adapter's ``KIND``; *exclude* holds its label and
    definition path.
    """
    if kind == "schtasks":
        return await _scan_scheduled_tasks(exclude, timeout) if deep else []

    found: list[ExtraGatewayService] = []
    for directory, scope in _service_dirs(kind, env, deep):
        found.extend(await asyncio.to_thread(scan_service_dir, directory, kind, scope, exclude))
    return found
