"""Diagnostics layer — Port probe and listener enumeration.

``inspect_port_usage`` answers "who holds the gateway port?":

  1. A bounded TCP connect decides free / busy / no answer.
  2. For a busy port, listeners are enumerated with psutil.  Where psutil
     is denied (macOS without privileges) ``lsof`` is asked instead.
  3. A listener whose command line carries a gateway marker, or whose pid
     is one of ours, means the port is in use by the gateway itself.

A probe timeout is reported as its own status.  It means "no answer",
which is neither "free" nor "taken".
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import psutil

from dmms_gateway.daemon.exec import run_command
from dmms_gateway.exceptions import ServiceCommandError
from dmms_gateway.logging import get_logger

log = get_logger(__name__)

GATEWAY_PROCESS_MARKERS = ("dmms_gateway", "dmms-ai")


class PortStatus(str, Enum):
    FREE = "free"
    IN_USE_BY_SELF = "in-use-by-self"
    IN_USE_BY_OTHER = "in-use-by-other"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PortListener:
    pid: int | None = None
    command: str | None = None
    address: str | None = None
    user: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "command": self.command, "address": self.address, "user": self.user}


@dataclass(frozen=True)
class PortUsageReport:
    port: int
    status: PortStatus
    listeners: tuple[PortListener, ...] = ()
    hints: tuple[str, ...] = field(default_factory=tuple)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "status": self.status.value,
            "listeners": [listener.to_dict() for listener in self.listeners],
            "hints": list(self.hints),
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def parse_lsof_listeners(output: str) -> list[PortListener]:
    """Parse ``lsof -F pcnL`` field output.

    Each process block starts with ``p<pid>``; ``c`` is the command, ``L``
    the login name and every ``n`` line one listening address.
    """
    listeners: list[PortListener] = []
    pid: int | None = None
    command: str | None = None
    user: str | None = None
    addresses: list[str] = []
    seen_block = False

    def flush() -> None:
        if not seen_block:
            return
        if addresses:
            for address in addresses:
                listeners.append(PortListener(pid=pid, command=command, address=address, user=user))
        else:
            listeners.append(PortListener(pid=pid, command=command, user=user))

    for raw in output.splitlines():
        if not raw:
            continue
        tag, value = raw[0], raw[1:].strip()
        if tag == "p":
            flush()
            seen_block = True
            pid = int(value) if value.isdigit() else None
            command = None
            user = None
            addresses = []
        elif tag == "c":
            command = value or None
        elif tag == "L":
            user = value or None
        elif tag == "n" and value and value not in addresses:
            addresses.append(value)
    flush()
    return listeners


def is_gateway_command(command: str | None) -> bool:
    if not command:
        return False
    lowered = command.lower()
    return any(marker in lowered for marker in GATEWAY_PROCESS_MARKERS)


def classify_listeners(listeners: Sequence[PortListener], self_pids: Iterable[int] = ()) -> PortStatus:
    """Busy port: ours if any listener is the gateway, otherwise someone else's."""
    own = set(self_pids)
    for listener in listeners:
        if listener.pid is not None and listener.pid in own:
            return PortStatus.IN_USE_BY_SELF
        if is_gateway_command(listener.command):
            return PortStatus.IN_USE_BY_SELF
    return PortStatus.IN_USE_BY_OTHER


def build_port_hints(port: int, status: PortStatus, listeners: Sequence[PortListener]) -> list[str]:
    hints: list[str] = []
    if status is PortStatus.IN_USE_BY_OTHER:
        if listeners:
            for listener in listeners:
                who = listener.command or "unknown process"
                pid = f"pid {listener.pid}" if listener.pid is not None else "pid unknown"
                hints.append(f"Port {port} is held by {who} ({pid}).")
        else:
            hints.append(f"Port {port} is in use by a process that could not be identified.")
        hints.append(f"Stop that process or install the gateway with a different --port than {port}.")
    elif status is PortStatus.IN_USE_BY_SELF:
        hints.append(f"Gateway already listening on port {port}.")
    elif status is PortStatus.TIMEOUT:
        hints.append(f"No answer on port {port} within the probe timeout; a firewall may be dropping connections.")
    return hints


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


async def _tcp_probe(host: str, port: int, timeout: float) -> bool | None:
    """True if something accepted the connection, False if refused, None on timeout."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except asyncio.TimeoutError:
        return None
    except OSError:
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


def _psutil_listeners(port: int) -> list[PortListener]:
    listeners: list[PortListener] = []
    seen: set[tuple[int | None, str]] = set()
    for conn in psutil.net_connections(kind="tcp"):
        if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
            continue
        address = f"{conn.laddr.ip}:{conn.laddr.port}"
        if (conn.pid, address) in seen:
            continue
        seen.add((conn.pid, address))
        command: str | None = None
        user: str | None = None
        if conn.pid:
            try:
                proc = psutil.Process(conn.pid)
                command = " ".join(proc.cmdline()) or proc.name()
                user = proc.username()
            except psutil.Error:
                pass
        listeners.append(PortListener(pid=conn.pid, command=command, address=address, user=user))
    return listeners


async def _lsof_listeners(port: int, timeout: float) -> list[PortListener]:
    result = await run_command(
        ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-FpcnL"],
        timeout=timeout,
    )
    return parse_lsof_listeners(result.stdout)


async def list_port_listeners(port: int, timeout: float = 1.5) -> tuple[list[PortListener], str | None]:
    """Enumerate listeners on *port*; the second item explains a failed lookup."""
    try:
        return await asyncio.to_thread(_psutil_listeners, port), None
    except psutil.AccessDenied:
        log.debug("psutil_access_denied", port=port)
    try:
        return await _lsof_listeners(port, timeout), None
    except ServiceCommandError as exc:
        return [], exc.message


async def inspect_port_usage(
    port: int,
    host: str = "127.0.0.1",
    timeout: float = 1.5,
    self_pids: Iterable[int] = (),
) -> PortUsageReport:
    accepted = await _tcp_probe(host, port, timeout)
    if accepted is None:
        status = PortStatus.TIMEOUT
        return PortUsageReport(
            port=port,
            status=status,
            hints=tuple(build_port_hints(port, status, [])),
            error=f"connect to {host}:{port} timed out after {timeout:g}s",
        )
    if not accepted:
        return PortUsageReport(port=port, status=PortStatus.FREE)

    listeners, error = await list_port_listeners(port, timeout)
    status = classify_listeners(listeners, self_pids)
    log.debug("port_in_use", port=port, status=status.value, listeners=len(listeners))
    return PortUsageReport(
        port=port,
        status=status,
        listeners=tuple(listeners),
        hints=tuple(build_port_hints(port, status, listeners)),
        error=error,
    )
