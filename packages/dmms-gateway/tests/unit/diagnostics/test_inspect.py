"""Unit tests — scanning for extra gateway-like services."""

from __future__ import annotations

from pathlib import Path

import pytest

from dmms_gateway.diagnostics.inspect import (
    contains_gateway_marker,
    find_extra_gateway_services,
    parse_schtasks_task_names,
    scan_service_dir,
)

TASK_LIST = """\
Folder: \\
TaskName:                             \\DMMS AI Gateway
Status:                               Ready

TaskName:                             \\DMMS AI Gateway (old)
Status:                               Ready

TaskName:                             \\DMMS AI Gateway
TaskName:                             \\OneDrive Standalone Update Task
"""


@pytest.mark.unit
class TestMarkers:
    def test_contains_marker(self) -> None:
        assert contains_gateway_marker("ExecStart=/usr/bin/python3 -m dmms_gateway gateway run")
        assert contains_gateway_marker("Environment=DMMS_AI_SERVICE_MARKER=dmms-ai")
        assert not contains_gateway_marker("ExecStart=/usr/bin/nginx")

    def test_task_names(self) -> None:
        assert parse_schtasks_task_names(TASK_LIST) == [
            "DMMS AI Gateway",
            "DMMS AI Gateway (old)",
            "OneDrive Standalone Update Task",
        ]


@pytest.mark.unit
class TestScanServiceDir:
    def test_finds_units_with_markers(self, tmp_path: Path) -> None:
        (tmp_path / "dmms-ai-gateway.service").write_text("ExecStart=python -m dmms_gateway gateway run\n")
        (tmp_path / "old-gw.service").write_text("ExecStart=python -m dmms_gateway gateway run --port 1\n")
        (tmp_path / "nginx.service").write_text("ExecStart=/usr/sbin/nginx\n")
        (tmp_path / "notes.txt").write_text("dmms_gateway")
        found = scan_service_dir(tmp_path, "systemd", "user", exclude={"dmms-ai-gateway.service"})
        assert [svc.label for svc in found] == ["old-gw.service"]
        assert found[0].to_dict() == {
            "kind": "systemd",
            "label": "old-gw.service",
            "scope": "user",
            "path": str(tmp_path / "old-gw.service"),
        }

    def test_launchd_label_is_stem(self, tmp_path: Path) -> None:
        (tmp_path / "ai.dmmsai.work.plist").write_text("<string>dmms_gateway</string>")
        found = scan_service_dir(tmp_path, "launchd", "user")
        assert [svc.label for svc in found] == ["ai.dmmsai.work"]

    def test_missing_dir(self, tmp_path: Path) -> None:
        assert scan_service_dir(tmp_path / "nope", "systemd", "user") == []


@pytest.mark.unit
class TestFindExtra:
    async def test_user_dir_scan(self, env: dict[str, str], home: Path) -> None:
        unit_dir = home / ".config" / "systemd" / "user"
        unit_dir.mkdir(parents=True)
        active = unit_dir / "dmms-ai-gateway.service"
        active.write_text("ExecStart=python -m dmms_gateway\n")
        (unit_dir / "dmms-ai-gateway-work.service").write_text("ExecStart=python -m dmms_gateway\n")
        found = await find_extra_gateway_services(env, kind="systemd", exclude={str(active)})
        assert [svc.label for svc in found] == ["dmms-ai-gateway-work.service"]

    async def test_schtasks_only_when_deep(self, env: dict[str, str]) -> None:
        assert await find_extra_gateway_services(env, deep=False, kind="schtasks") == []

    async def test_unknown_kind(self, env: dict[str, str]) -> None:
        assert await find_extra_gateway_services(env, kind="") == []
