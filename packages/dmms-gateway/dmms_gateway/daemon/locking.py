"""Daemon layer — Per-service exclusive section.

A lifecycle operation holds two locks for its whole duration:

  * an ``asyncio.Lock`` keyed by ``(adapter KIND, service label)`` and
    shared by every controller in this process, and
  * an advisory lock on ``<state dir>/locks/<kind>-<label>.lock`` shared
    with every other ``dmms-ai`` process (``flock`` on POSIX,
    ``msvcrt.locking`` on Windows).

The file lock is polled without blocking so waiting never stalls the
event loop.
"""

from __future__ import annotations

import asyncio
import os
import re
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import IO

from dmms_gateway.exceptions import ServiceBusyError
from dmms_gateway.logging import get_logger

log = get_logger(__name__)

LOCK_DIRNAME = "locks"
POLL_INTERVAL_S = 0.05

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")

# Locks belong to the loop that created them; a new loop gets fresh ones.
_PROCESS_LOCKS: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[tuple[str, str], asyncio.Lock]
] = weakref.WeakKeyDictionary()


def process_lock(kind: str, label: str) -> asyncio.Lock:
    locks = _PROCESS_LOCKS.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault((kind, label), asyncio.Lock())


def service_lock_path(state_dir: Path, kind: str, label: str) -> Path:
    safe_label = _UNSAFE_CHARS_RE.sub("_", label).strip("_") or "service"
    return state_dir / LOCK_DIRNAME / f"{kind}-{safe_label}.lock"


def _try_lock(handle: IO[str]) -> bool:
    handle.seek(0)
    if os.name == "nt":
        import msvcrt

        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
        except OSError:
            return False
        return True
    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(handle: IO[str]) -> None:
    handle.seek(0)
    if os.name == "nt":
        import msvcrt

        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@asynccontextmanager
async def file_lock(path: Path, service: str, timeout: float) -> AsyncIterator[None]:
    """Hold the advisory lock at *path*.

    Raises:
        ServiceBusyError: Another process kept the lock for *timeout* seconds.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    loop = asyncio.get_running_loop()
    with path.open("a+", encoding="utf-8") as handle:
        deadline = loop.time() + timeout
        waited = False
        while not _try_lock(handle):
            if loop.time() >= deadline:
                raise ServiceBusyError(service, str(path), timeout)
            if not waited:
                log.info("service_lock_wait", service=service, path=str(path))
                waited = True
            await asyncio.sleep(POLL_INTERVAL_S)
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"pid={os.getpid()}\n")
            handle.flush()
            yield
        finally:
            _unlock(handle)


@asynccontextmanager
async def service_lock(
    kind: str,
    label: str,
    state_dir: Path,
    timeout: float,
) -> AsyncIterator[None]:
    async with process_lock(kind, label):
        async with file_lock(service_lock_path(state_dir, kind, label), label, timeout):
            yield
