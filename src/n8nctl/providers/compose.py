"""Docker Compose provider for the n8n stack."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .commands import run_command


class ComposeError(RuntimeError):
    """Raised when docker or docker compose operations fail."""


@dataclass(frozen=True, slots=True)
class ServiceState:
    """State of one compose service container."""

    service: str
    name: str
    state: str
    health: str = ""

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is running."""
        return self.state.lower() == "running"

    @property
    def healthy(self) -> bool:
        """Return ``True`` when running and not reporting an unhealthy check."""
        return self.running and self.health.lower() in {"", "healthy"}

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "name": self.name,
            "state": self.state,
            "health": self.health,
        }


class ContainerRuntime(Protocol):
    """Container operations the backup and restore workflows rely on."""

    def stop_services(self) -> None:
        """Stop and remove the stack's containers (volumes are kept)."""

    def start_services(self, services: Sequence[str] = ()) -> None:
        """Start *services* (all when empty) in the background."""

    def service_states(self) -> list[ServiceState]:
        """Return the state of each service container."""

    def volume_exists(self, volume: str) -> bool:
        """Return ``True`` when *volume* exists."""

    def create_volume(self, volume: str) -> None:
        """Create *volume*."""

    def remove_volume(self, volume: str) -> None:
        """Remove *volume*; absent volumes are ignored."""

    def archive_volume(self, volume: str, out_dir: Path, filename: str) -> None:
        """Write a gzip tar of *volume* to ``out_dir/filename``."""

    def restore_volume(self, volume: str, archive: Path) -> None:
        """Extract *archive* into *volume*."""

    def exec_in_service(
        self,
        service: str,
        args: Sequence[str],
        *,
        stdin_path: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* inside the running *service* container."""


@dataclass(slots=True)
class ComposeProvider:
    """Drive ``docker compose`` for the project rooted at *project_dir*."""

    project_dir: Path
    project_name: str = "n8n"
    docker_bin: str = "docker"
    helper_image: str = "alpine"
    timeout: float | None = 1800.0

    # Service lifecycle ---------------------------------------------
    def stop_services(self) -> None:
        """Stop and remove containers; named volumes survive."""
        self._compose("down")

    def down(self, *, remove_volumes: bool = False) -> None:
        """Tear the project down, optionally removing its volumes."""
        args = ["down", "--remove-orphans"]
        if remove_volumes:
            args.append("--volumes")
        self._compose(*args)

    def start_services(self, services: Sequence[str] = ()) -> None:
        """Start *services* (all when empty) detached."""
        self._compose("up", "-d", *services)

    def restart_services(self) -> None:
        """Restart running containers in place."""
        self._compose("restart")

    def restart_service(self, service: str) -> None:
        """Restart one service."""
        self._compose("restart", service)

    def recreate_services(self) -> None:
        """Recreate containers so configuration changes apply."""
        self._compose("down")
        self._compose("up", "-d")

    def pull(self) -> None:
        """Pull the latest images for every service."""
        self._compose("pull")

    def service_states(self) -> list[ServiceState]:
        """Return the state of each service container."""
        result = self._compose("ps", "--all", "--format", "json")
        return parse_ps_output(result.stdout or "")

    def status_text(self) -> str:
        """Return the tabular ``docker compose ps`` output."""
        return self._compose("ps").stdout or ""

    def logs(
        self, service: str | None = None, *, follow: bool = False, tail: int | None = None
    ) -> str:
        """Return (or stream when *follow* is set) service logs."""
        args = ["logs"]
        if follow:
            args.append("--follow")
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if service:
            args.append(service)
        result = self._compose(*args, capture_output=not follow, stream=follow)
        return result.stdout or ""

    def exec_in_service(
        self,
        service: str,
        args: Sequence[str],
        *,
        stdin_path: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* inside *service* without a TTY."""
        return self._compose("exec", "-T", service, *args, stdin_path=stdin_path, check=check)

    # Volumes -------------------------------------------------------
    def volume_exists(self, volume: str) -> bool:
        """Return ``True`` when *volume* exists."""
        result = self._docker("volume", "inspect", volume, check=False)
        return result.returncode == 0

    def create_volume(self, volume: str) -> None:
        """Create *volume*."""
        self._docker("volume", "create", volume)

    def remove_volume(self, volume: str) -> None:
        """Remove *volume*; a missing volume is not an error."""
        if self.volume_exists(volume):
            self._docker("volume", "rm", volume)

    def archive_volume(self, volume: str, out_dir: Path, filename: str) -> None:
        """Archive *volume* through a throwaway container mounting it read-only."""
        self._docker(
            "run",
            "--rm",
            "-v",
            f"{volume}:/source:ro",
            "-v",
            f"{out_dir}:/backup",
            self.helper_image,
            "tar",
            "-czf",
            f"/backup/{filename}",
            "-C",
            "/source",
            ".",
        )

    def restore_volume(self, volume: str, archive: Path) -> None:
        """Extract *archive* into *volume* through a throwaway container."""
        self._docker(
            "run",
            "--rm",
            "-v",
            f"{volume}:/target",
            "-v",
            f"{archive.parent}:/backup:ro",
            self.helper_image,
            "tar",
            "-xzf",
            f"/backup/{archive.name}",
            "-C",
            "/target",
        )

    def remove_network(self, network: str) -> None:
        """Remove *network* when it exists."""
        self._docker("network", "rm", network, check=False)

    # ------------------------------------------------------------------
    def _compose(
        self,
        *args: str,
        capture_output: bool = True,
        stream: bool = False,
        stdin_path: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [
            self.docker_bin,
            "compose",
            "--project-name",
            self.project_name,
            "--project-directory",
            str(self.project_dir),
            *args,
        ]
        return run_command(
            command,
            error_cls=ComposeError,
            error_prefix=f"docker compose {args[0]}",
            check=check,
            capture_output=capture_output,
            timeout=None if stream else self.timeout,
            cwd=self.project_dir,
            stdin_path=stdin_path,
        )

    def _docker(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.docker_bin, *args],
            error_cls=ComposeError,
            error_prefix=f"docker {' '.join(args[:2])}",
            check=check,
            timeout=self.timeout,
        )


def parse_ps_output(output: str) -> list[ServiceState]:
    """Parse ``docker compose ps --format json`` (array or JSON lines)."""
    text = output.strip()
    if not text:
        return []
    records: list[object]
    if text.startswith("["):
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ComposeError(f"Unexpected docker compose ps output: {exc}") from exc
        records = list(loaded) if isinstance(loaded, list) else []
    else:
        records = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ComposeError(f"Unexpected docker compose ps output: {exc}") from exc
    states: list[ServiceState] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        states.append(
            ServiceState(
                service=str(record.get("Service", "")),
                name=str(record.get("Name", "")),
                state=str(record.get("State", "")),
                health=str(record.get("Health", "") or ""),
            )
        )
    return states


__all__ = [
    "ComposeError",
    "ComposeProvider",
    "ContainerRuntime",
    "ServiceState",
    "parse_ps_output",
]
