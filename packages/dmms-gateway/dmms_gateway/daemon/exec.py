"""Daemon layer — Bounded subprocess execution.

Every call to launchctl/systemctl/schtasks goes through ``run_command`` so
that each one carries an explicit timeout and suspends only the calling
task.  On timeout, or when the caller is cancelled, the child is killed.
A timeout raises ``CommandTimeoutError``; callers in the diagnostics path
turn that into an absent field.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from dmms_gateway.exceptions import (
    CommandTimeoutError,
    PermissionDeniedError,
    ServiceCommandError,
)
from dmms_gateway.logging import get_logger, redact_text

log = get_logger(__name__)

DEFAULT_TIMEOUT_S = 30.0

_PERMISSION_RE = re.compile(
    r"(permission denied|access is denied|access denied|operation not permitted"
    r"|interactive authentication required|not privileged)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        return (self.stderr.strip() or self.stdout.strip())

    def check(self, operation: str, service: str) -> "CommandResult":
        """Raise the matching service error if the command failed."""
        if self.ok:
            return self
        if is_permission_error(self.detail):
            raise PermissionDeniedError(operation, service, self.detail)
        raise ServiceCommandError(
            f"{self.argv[0]} {operation}",
            self.detail,
            returncode=self.returncode,
        )


def is_permission_error(detail: str) -> bool:
    return bool(_PERMISSION_RE.search(detail))


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float = DEFAULT_TIMEOUT_S,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """Run *argv* and capture its output.

    A non-zero exit status is returned, not raised — use
    :meth:`CommandResult.check` where failure is fatal.

    Raises:
        CommandTimeoutError: The command did not finish within *timeout*.
        ServiceCommandError: The executable could not be started.
    """
    argv = tuple(argv)
    log.debug("command_start", argv=[redact_text(a) for a in argv], timeout=timeout)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        raise ServiceCommandError(argv[0], f"executable not found ({exc.strerror})") from exc
    except PermissionError as exc:
        raise PermissionDeniedError("exec", argv[0], str(exc)) from exc

    stdin_bytes = input_text.encode() if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_bytes), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        log.warning("command_timeout", command=argv[0], timeout=timeout)
        raise CommandTimeoutError(" ".join(argv[:2]), timeout) from None
    except asyncio.CancelledError:
        # Cancelled by an outer budget; the child must not outlive it.
        await _kill(proc)
        log.debug("command_cancelled", command=argv[0])
        raise

    result = CommandResult(
        argv=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    log.debug("command_done", command=argv[0], returncode=result.returncode)
    return result
