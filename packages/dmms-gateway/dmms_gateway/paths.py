"""Path, profile and port resolution.

Every function here takes an explicit environment mapping instead of
reading ``os.environ`` so the same logic can answer two questions:

  * where does *this CLI process* keep its state/config/port, and
  * where does the *installed service* keep them, given the environment
    recovered from its unit/plist/script.

Diagnostics compares the two answers to detect config drift.

Resolution order (highest wins):
    state dir   — DMMS_AI_STATE_DIR > <home>/.dmms-ai-<profile> > <home>/.dmms-ai
    config path — DMMS_AI_CONFIG_PATH > <state dir>/dmms-ai.json
    port        — DMMS_AI_GATEWAY_PORT > config file gateway.port > profile default
    home        — DMMS_AI_HOME > HOME > USERPROFILE > Path.home()
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping, MutableMapping
from pathlib import Path

ENV_STATE_DIR = "DMMS_AI_STATE_DIR"
ENV_CONFIG_PATH = "DMMS_AI_CONFIG_PATH"
ENV_GATEWAY_PORT = "DMMS_AI_GATEWAY_PORT"
ENV_PROFILE = "DMMS_AI_PROFILE"
ENV_HOME = "DMMS_AI_HOME"
ENV_GATEWAY_TOKEN = "DMMS_AI_GATEWAY_TOKEN"
ENV_GATEWAY_PASSWORD = "DMMS_AI_GATEWAY_PASSWORD"
ENV_SERVICE_MARKER = "DMMS_AI_SERVICE_MARKER"

STATE_DIRNAME = ".dmms-ai"
CONFIG_FILENAME = "dmms-ai.json"

DEFAULT_GATEWAY_PORT = 18789
DEV_GATEWAY_PORT = 19001

_PROFILE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def is_valid_profile_name(name: str) -> bool:
    return bool(_PROFILE_RE.match(name))


def normalize_profile(raw: str | None) -> str | None:
    """Return the effective profile name, or None for the default profile.

    ``"default"`` (any case), blank values and names that are not valid
    profile identifiers all mean "no profile".
    """
    profile = _clean(raw)
    if profile is None or profile.lower() == "default":
        return None
    if not is_valid_profile_name(profile):
        return None
    return profile


def profile_suffix(env: Mapping[str, str]) -> str | None:
    return normalize_profile(env.get(ENV_PROFILE))


CLI_NAME = "dmms-ai"

_CLI_PREFIX_RE = re.compile(rf"^(?:\S+\s+)*?{re.escape(CLI_NAME)}(?=\s|$)")
_PROFILE_FLAG_RE = re.compile(r"(?:^|\s)--(?:profile|dev)(?=\s|=|$)")


def format_cli_command(command: str, env: Mapping[str, str]) -> str:
    """Insert ``--profile <name>`` after the CLI name when a profile is active.

    >>> format_cli_command("dmms-ai daemon install", {"DMMS_AI_PROFILE": "work"})
    'dmms-ai --profile work daemon install'
    """
    profile = profile_suffix(env)
    if profile is None or _PROFILE_FLAG_RE.search(command):
        return command
    match = _CLI_PREFIX_RE.match(command)
    if match is None:
        return command
    return f"{match.group(0)} --profile {profile}{command[match.end():]}"


# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------


def resolve_home_dir(
    env: Mapping[str, str],
    homedir: Callable[[], str] | None = None,
) -> Path:
    override = _clean(env.get(ENV_HOME))
    if override:
        return Path(override).expanduser().resolve()
    for key in ("HOME", "USERPROFILE"):
        value = _clean(env.get(key))
        if value:
            return Path(value)
    return Path(homedir() if homedir else Path.home())


def resolve_state_dir(
    env: Mapping[str, str],
    homedir: Callable[[], str] | None = None,
) -> Path:
    override = _clean(env.get(ENV_STATE_DIR))
    if override:
        return Path(override).expanduser().resolve()
    home = resolve_home_dir(env, homedir)
    profile = profile_suffix(env)
    if profile:
        return home / f"{STATE_DIRNAME}-{profile}"
    return home / STATE_DIRNAME


def resolve_config_path(
    env: Mapping[str, str],
    state_dir: Path | None = None,
    homedir: Callable[[], str] | None = None,
) -> Path:
    override = _clean(env.get(ENV_CONFIG_PATH))
    if override:
        return Path(override).expanduser().resolve()
    base = state_dir if state_dir is not None else resolve_state_dir(env, homedir)
    return base / CONFIG_FILENAME


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


def parse_port(value: object) -> int | None:
    """Parse a TCP port; anything unparsable or out of range is absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        port = value
    else:
        text = str(value).strip()
        if not text.isdigit():
            return None
        port = int(text)
    if 0 < port < 65536:
        return port
    return None


def default_port_for_profile(env: Mapping[str, str]) -> int:
    if profile_suffix(env) == "dev":
        return DEV_GATEWAY_PORT
    return DEFAULT_GATEWAY_PORT


def resolve_gateway_port(env: Mapping[str, str], config_port: int | None = None) -> int:
    from_env = parse_port(env.get(ENV_GATEWAY_PORT))
    if from_env is not None:
        return from_env
    if config_port is not None:
        return config_port
    return default_port_for_profile(env)


# ---------------------------------------------------------------------------
# Profile environment
# ---------------------------------------------------------------------------


def apply_profile_env(
    profile: str,
    env: MutableMapping[str, str],
    homedir: Callable[[], str] | None = None,
) -> None:
    """Fill profile-scoped defaults into *env* without overriding explicit values."""
    profile = profile.strip()
    env[ENV_PROFILE] = profile
    if not _clean(env.get(ENV_STATE_DIR)):
        env[ENV_STATE_DIR] = str(resolve_state_dir(env, homedir))
    if not _clean(env.get(ENV_CONFIG_PATH)):
        env[ENV_CONFIG_PATH] = str(Path(env[ENV_STATE_DIR]) / CONFIG_FILENAME)
    if profile == "dev" and not _clean(env.get(ENV_GATEWAY_PORT)):
        env[ENV_GATEWAY_PORT] = str(DEV_GATEWAY_PORT)


def current_env() -> dict[str, str]:
    return dict(os.environ)
