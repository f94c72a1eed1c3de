"""Tests for the systemd provider."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from n8nctl.providers.systemd import SystemdError, SystemdProvider
from n8nctl.templates import TemplateEngine


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


Call = tuple[str, str | Path | None, bool, bool]


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider writing units under the temporary path."""
    systemd_dir = tmp_path / "systemd"
    systemd_dir.mkdir(parents=True, exist_ok=True)
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=systemd_dir,
        systemctl_bin="systemctl",  # Not invoked; monkeypatched in tests.
    )


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> list[Call]:
    """Record systemctl invocations instead of running them."""
    captured: list[Call] = []

    def fake_systemctl(
        self: SystemdProvider,
        command: str,
        unit_or_path: str | Path | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> DummyResult:
        captured.append((command, unit_or_path, check, dry_run))
        return DummyResult(returncode=0)

    monkeypatch.setattr(SystemdProvider, "_systemctl", fake_systemctl)
    return captured


def _context() -> dict[str, Any]:
    return {
        "project_name": "n8n",
        "service_user": "deploy",
        "working_directory": "/home/deploy/n8n",
        "docker_bin": "/usr/bin/docker",
    }


def test_render_unit_writes_file_and_reload(
    provider: SystemdProvider, calls: list[Call]
) -> None:
    """Rendering writes the unit file and triggers a daemon reload once."""
    changed = provider.render_unit(_context())

    assert changed is True
    contents = provider.unit_path.read_text(encoding="utf-8")
    assert "WorkingDirectory=/home/deploy/n8n" in contents
    assert "User=deploy" in contents
    assert calls == [("daemon-reload", None, True, False)]

    # Second render with identical context should remain a no-op.
    calls.clear()
    assert provider.render_unit(_context()) is False
    assert calls == []


@pytest.mark.parametrize("command", ["enable", "disable", "stop"])
def test_unit_management_calls_systemctl(
    provider: SystemdProvider, calls: list[Call], command: str
) -> None:
    """Enable/disable/stop delegate to systemctl with the unit name."""
    getattr(provider, command)()

    assert calls == [(command, "n8n.service", True, False)]


def test_remove_unit_stops_disables_and_reloads(
    provider: SystemdProvider, calls: list[Call]
) -> None:
    """Removing a unit stops it, disables it and deletes the file."""
    provider.unit_path.write_text("content", encoding="utf-8")

    provider.remove()

    assert not provider.is_installed()
    assert calls == [
        ("stop", "n8n.service", False, False),
        ("disable", "n8n.service", False, False),
        ("daemon-reload", None, True, False),
    ]

    # Removing again should be a no-op.
    calls.clear()
    provider.remove()
    assert calls == []


def test_dry_run_skips_systemctl(
    monkeypatch: pytest.MonkeyPatch, provider: SystemdProvider
) -> None:
    """Dry-run requests never spawn a process."""

    def fail_run(*_args: object, **_kwargs: object) -> None:
        raise AssertionError("subprocess.run should not be called")

    monkeypatch.setattr("n8nctl.providers.commands.subprocess.run", fail_run)

    result = provider.enable(dry_run=True)

    assert result.returncode == 0
    assert result.args == ["systemctl", "enable", "n8n.service"]


def test_privileged_install_uses_prefix(
    monkeypatch: pytest.MonkeyPatch, provider: SystemdProvider, calls: list[Call]
) -> None:
    """With a privilege prefix the unit is installed through ``install``."""
    provider.prefix = ("sudo",)
    commands: list[Sequence[str]] = []

    def fake_run(
        self: SystemdProvider, args: Sequence[str], **_kwargs: object
    ) -> DummyResult:
        commands.append(list(args))
        return DummyResult()

    monkeypatch.setattr(SystemdProvider, "_run", fake_run)

    assert provider.render_unit(_context()) is True
    assert commands[0][:4] == ["sudo", "install", "-m", "0644"]
    assert commands[0][-1] == str(provider.unit_path)


def test_daemon_reload_failure_propagates(
    monkeypatch: pytest.MonkeyPatch, provider: SystemdProvider
) -> None:
    """Reload errors other than a missing systemctl surface to the caller."""

    def failing_systemctl(
        self: SystemdProvider, command: str, *_args: object, **_kwargs: object
    ) -> DummyResult:
        raise SystemdError(f"systemctl {command} failed (exit 1): boom")

    monkeypatch.setattr(SystemdProvider, "_systemctl", failing_systemctl)

    with pytest.raises(SystemdError, match="boom"):
        provider.render_unit(_context())
