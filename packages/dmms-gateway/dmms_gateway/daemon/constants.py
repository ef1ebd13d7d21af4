"""Daemon layer — Service names per platform and profile.

Default profile:
    launchd   ai.dmmsai.gateway
    systemd   dmms-ai-gateway.service
    schtasks  DMMS AI Gateway

Profile ``work``:
    launchd   ai.dmmsai.work
    systemd   dmms-ai-gateway-work.service
    schtasks  DMMS AI Gateway (work)

Each platform honours its own explicit override env var, which wins over
the profile-derived name.
"""

from __future__ import annotations

from collections.abc import Mapping

from dmms_gateway.paths import profile_suffix

GATEWAY_LAUNCHD_LABEL = "ai.dmmsai.gateway"
GATEWAY_SYSTEMD_SERVICE_NAME = "dmms-ai-gateway"
GATEWAY_WINDOWS_TASK_NAME = "DMMS AI Gateway"
GATEWAY_SERVICE_MARKER = "dmms-ai"

ENV_LAUNCHD_LABEL = "DMMS_AI_LAUNCHD_LABEL"
ENV_SYSTEMD_UNIT = "DMMS_AI_SYSTEMD_UNIT"
ENV_WINDOWS_TASK_NAME = "DMMS_AI_WINDOWS_TASK_NAME"


def _override(env: Mapping[str, str], key: str) -> str | None:
    value = (env.get(key) or "").strip()
    return value or None


def resolve_gateway_launchd_label(env: Mapping[str, str]) -> str:
    override = _override(env, ENV_LAUNCHD_LABEL)
    if override:
        return override
    profile = profile_suffix(env)
    return f"ai.dmmsai.{profile}" if profile else GATEWAY_LAUNCHD_LABEL


def resolve_gateway_systemd_service_name(env: Mapping[str, str]) -> str:
    """Unit name without the ``.service`` suffix."""
    override = _override(env, ENV_SYSTEMD_UNIT)
    if override:
        return override[: -len(".service")] if override.endswith(".service") else override
    profile = profile_suffix(env)
    return f"{GATEWAY_SYSTEMD_SERVICE_NAME}-{profile}" if profile else GATEWAY_SYSTEMD_SERVICE_NAME


def resolve_gateway_windows_task_name(env: Mapping[str, str]) -> str:
    override = _override(env, ENV_WINDOWS_TASK_NAME)
    if override:
        return override
    profile = profile_suffix(env)
    return f"{GATEWAY_WINDOWS_TASK_NAME} ({profile})" if profile else GATEWAY_WINDOWS_TASK_NAME
