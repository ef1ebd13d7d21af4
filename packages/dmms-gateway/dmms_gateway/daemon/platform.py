"""Daemon layer — Service-manager selection.

Usage::

    adapter = select_service_adapter()
    controller = LifecycleController(adapter)

Detection happens once per process, at CLI startup.  The adapter is then
passed down explicitly; nothing below this module inspects ``sys.platform``.
"""

from __future__ import annotations

import sys
from collections.abc import Mapping

from dmms_gateway.config import Settings, get_settings
from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.launchd import LaunchdServiceAdapter
from dmms_gateway.daemon.schtasks import SchtasksServiceAdapter
from dmms_gateway.daemon.systemd import SystemdServiceAdapter
from dmms_gateway.exceptions import UnsupportedPlatformError

ADAPTERS_BY_PLATFORM: dict[str, type[ServiceAdapter]] = {
    "darwin": LaunchdServiceAdapter,
    "linux": SystemdServiceAdapter,
    "win32": SchtasksServiceAdapter,
}


def adapter_class_for(platform: str) -> type[ServiceAdapter]:
    """Map a ``sys.platform`` value to its adapter class.

    Raises:
        UnsupportedPlatformError: No service manager is supported on *platform*.
    """
    for prefix, adapter_cls in ADAPTERS_BY_PLATFORM.items():
        if platform.startswith(prefix):
            return adapter_cls
    raise UnsupportedPlatformError(platform)


def select_service_adapter(
    platform: str | None = None,
    env: Mapping[str, str] | None = None,
    settings: Settings | None = None,
) -> ServiceAdapter:
    settings = settings or get_settings()
    adapter_cls = adapter_class_for(platform or sys.platform)
    return adapter_cls(env, command_timeout=settings.service.command_timeout_s)
