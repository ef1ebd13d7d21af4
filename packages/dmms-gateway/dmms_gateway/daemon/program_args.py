"""Daemon layer — Canonical gateway invocation for service files.

Every adapter installs the same definition::

    <python> -m dmms_gateway gateway run --port <n> --bind <mode>

with the environment that pins the service to this CLI's profile, state
directory and config file.  Diagnostics later compares these values with
what it reads back, so anything written here is also what drift
detection checks.
"""

from __future__ import annotations

import sys
from collections.abc import Mapping

from dmms_gateway.daemon.constants import GATEWAY_SERVICE_MARKER
from dmms_gateway.daemon.models import ServiceDefinition
from dmms_gateway.paths import (
    ENV_CONFIG_PATH,
    ENV_GATEWAY_PORT,
    ENV_GATEWAY_TOKEN,
    ENV_PROFILE,
    ENV_SERVICE_MARKER,
    ENV_STATE_DIR,
    current_env,
    profile_suffix,
    resolve_config_path,
    resolve_state_dir,
)

GATEWAY_MODULE = "dmms_gateway"


def build_program_arguments(
    port: int,
    bind: str = "loopback",
    python_executable: str | None = None,
) -> list[str]:
    return [
        python_executable or sys.executable,
        "-m",
        GATEWAY_MODULE,
        "gateway",
        "run",
        "--port",
        str(port),
        "--bind",
        bind,
    ]


def build_service_environment(
    env: Mapping[str, str],
    port: int,
    token: str | None = None,
) -> dict[str, str]:
    state_dir = resolve_state_dir(env)
    service_env: dict[str, str] = {}
    profile = profile_suffix(env)
    if profile:
        service_env[ENV_PROFILE] = profile
    service_env[ENV_STATE_DIR] = str(state_dir)
    service_env[ENV_CONFIG_PATH] = str(resolve_config_path(env, state_dir))
    service_env[ENV_GATEWAY_PORT] = str(port)
    token = (token or "").strip()
    if token:
        service_env[ENV_GATEWAY_TOKEN] = token
    service_env[ENV_SERVICE_MARKER] = GATEWAY_SERVICE_MARKER
    return service_env


def build_service_definition(
    port: int,
    bind: str = "loopback",
    token: str | None = None,
    env: Mapping[str, str] | None = None,
    python_executable: str | None = None,
) -> ServiceDefinition:
    env = current_env() if env is None else env
    return ServiceDefinition(
        program_arguments=tuple(build_program_arguments(port, bind, python_executable)),
        environment=build_service_environment(env, port, token),
        working_directory=str(resolve_state_dir(env)),
    )
