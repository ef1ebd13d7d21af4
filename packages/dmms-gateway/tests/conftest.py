"""Shared pytest fixtures for the dmms-gateway test suite."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from dmms_gateway.config import Settings, override_settings
from dmms_gateway.daemon.exec import CommandResult
from dmms_gateway.logging import configure_logging


# ---------------------------------------------------------------------------
# Environment & settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _quiet_logging() -> None:
    """Route logs to stderr and silence them so CLI stdout stays parseable."""
    configure_logging(level="critical")


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def env(home: Path) -> dict[str, str]:
    """A minimal, isolated environment: only HOME is set."""
    return {"HOME": str(home)}


@pytest.fixture
def test_settings(tmp_path: Path) -> Iterator[Settings]:
    settings = Settings(
        trust={"pin_db_path": str(tmp_path / "pins.db")},
        logging={"level": "debug", "format": "console"},
    )
    override_settings(settings)
    yield settings
    override_settings(None)


# ---------------------------------------------------------------------------
# Subprocess fake
# ---------------------------------------------------------------------------


class FakeRunner:
    """Stands in for ``run_command``: records argv, returns scripted results.

    Responses are matched by argv prefix; the most recently registered
    match wins.  Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self._responses: list[tuple[tuple[str, ...], int, str, str]] = []

    def respond(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self._responses.append((prefix, returncode, stdout, stderr))

    async def __call__(self, argv, **kwargs) -> CommandResult:  # type: ignore[no-untyped-def]
        argv = tuple(argv)
        self.calls.append(argv)
        for prefix, returncode, stdout, stderr in reversed(self._responses):
            if argv[: len(prefix)] == prefix:
                return CommandResult(argv=argv, returncode=returncode, stdout=stdout, stderr=stderr)
        return CommandResult(argv=argv, returncode=0, stdout="", stderr="")

    def called(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)

    def subcommands(self, skip: int = 1) -> list[str]:
        """First argument after the tool name(s) of each call, in order."""
        return [call[skip] for call in self.calls if len(call) > skip]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
