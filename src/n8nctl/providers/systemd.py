"""Systemd provider for the stack's boot-time service unit."""
from __future__ import annotations

import os
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine
from .commands import run_command


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage the systemd unit that starts the compose project."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    unit: str = "n8n.service"
    systemctl_bin: str = "systemctl"
    prefix: tuple[str, ...] = ()

    @property
    def unit_path(self) -> Path:
        """Return the full path for the unit file."""
        return self.systemd_dir / self.unit

    def render_unit(self, context: Mapping[str, object]) -> bool:
        """Render the unit file using *context*; reload systemd when it changed."""
        template_name = "systemd/n8n.service.j2"
        if not self.prefix:
            changed = self.templates.render_to_path(
                template_name, self.unit_path, context, mode=0o644
            )
        else:
            changed = self._install_privileged(
                self.templates.render_to_string(template_name, context)
            )
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit, dry_run=dry_run)

    def disable(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", self.unit, dry_run=dry_run)

    def stop(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit, dry_run=dry_run)

    def is_installed(self) -> bool:
        """Return ``True`` when the unit file exists."""
        return self.unit_path.exists()

    def remove(self) -> None:
        """Stop, disable and delete the unit file."""
        if not self.unit_path.exists():
            return
        self._systemctl("stop", self.unit, check=False)
        self._systemctl("disable", self.unit, check=False)
        if self.prefix:
            self._run([*self.prefix, "rm", "-f", str(self.unit_path)], error_prefix="rm unit")
        else:
            try:
                self.unit_path.unlink()
            except FileNotFoundError:
                return
        self._reload_daemon()

    # ------------------------------------------------------------------
    def _install_privileged(self, rendered: str) -> bool:
        try:
            if self.unit_path.read_text(encoding="utf-8") == rendered:
                return False
        except OSError:
            pass
        fd, tmp_name = tempfile.mkstemp(prefix="n8nctl-unit.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            self._run(
                [*self.prefix, "install", "-m", "0644", str(tmp_path), str(self.unit_path)],
                error_prefix="install unit",
            )
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit_or_path: str | Path | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [*self.prefix, self.systemctl_bin, command]
        if unit_or_path is not None:
            args.append(str(unit_or_path))
        return self._run(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            dry_run=dry_run,
        )

    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            args,
            error_cls=SystemdError,
            error_prefix=error_prefix,
            check=check,
            timeout=120.0,
            dry_run=dry_run,
        )


__all__ = ["SystemdProvider", "SystemdError"]
