"""Backup composition, retention and listing."""
from __future__ import annotations

import json
import shutil
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from . import __version__
from .archive import (
    MANIFEST_NAME,
    ArchiveError,
    ComponentArchiveResult,
    ComponentKind,
    ComponentSource,
    SourceKind,
    archive_component,
    build_manifest,
    create_outer_archive,
    new_timestamp,
    outer_archive_name,
    outer_timestamp,
)
from .config import AppConfig
from .envfile import EnvironmentRecord
from .providers.compose import ComposeError, ContainerRuntime
from .validation import BackupValidator, ValidationReport

CONFIG_PATHS = (Path("docker-compose.yml"), Path("nginx.conf"), Path(".env"), Path("certs"))
DATA_PATHS = (Path(".n8n"),)


class BackupError(RuntimeError):
    """Raised when a backup cannot be attempted."""


class RestartPolicy(str, Enum):
    """What to do with services once the snapshot is taken."""

    RESTART = "restart"
    LEAVE_STOPPED = "leave-stopped"


@dataclass(frozen=True)
class ArchiveInfo:
    """An outer archive found in the backup directory."""

    path: Path
    timestamp: str
    size_bytes: int

    @property
    def created(self) -> datetime:
        """Return the creation time encoded in the file name."""
        return datetime.strptime(self.timestamp, "%Y%m%d_%H%M%S")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "name": self.path.name,
            "timestamp": self.timestamp,
            "size_bytes": self.size_bytes,
        }


@dataclass
class BackupResult:
    """Outcome of one backup run."""

    timestamp: str
    archive: Path
    components: list[ComponentArchiveResult] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    validation: ValidationReport | None = None
    error: str | None = None
    restarted: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when the archive exists and validated."""
        return self.error is None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "timestamp": self.timestamp,
            "archive": str(self.archive),
            "components": [
                item.to_manifest_entry() | {"ok": item.ok, "error": item.error}
                for item in self.components
            ],
            "removed": [str(path) for path in self.removed],
            "warnings": list(self.warnings),
            "validation": self.validation.to_dict() if self.validation else None,
            "error": self.error,
            "restarted": self.restarted,
        }


def list_archives(backup_dir: Path) -> list[ArchiveInfo]:
    """Return outer archives in *backup_dir*, newest first."""
    if not backup_dir.is_dir():
        return []
    found: list[ArchiveInfo] = []
    for path in backup_dir.iterdir():
        timestamp = outer_timestamp(path)
        if timestamp is None or not path.is_file():
            continue
        found.append(ArchiveInfo(path=path, timestamp=timestamp, size_bytes=path.stat().st_size))
    found.sort(key=lambda item: (item.timestamp, item.path.stat().st_mtime), reverse=True)
    return found


def apply_retention(backup_dir: Path, keep: int) -> list[Path]:
    """Delete all but the *keep* newest outer archives; return the removed paths."""
    if keep < 1:
        raise BackupError("Retention must keep at least one archive.")
    removed: list[Path] = []
    for info in list_archives(backup_dir)[keep:]:
        info.path.unlink(missing_ok=True)
        removed.append(info.path)
    return removed


def component_sources(
    config: AppConfig, env: EnvironmentRecord | None = None
) -> list[ComponentSource]:
    """Return the source for every component, in archive order."""
    root = config.system_root
    credential_files = list(config.backups.dns_credential_paths)
    if env is not None:
        credential_files.extend(
            path for path in env.credential_paths() if path not in credential_files
        )

    def under_root(paths: Iterable[Path]) -> tuple[Path, ...]:
        return tuple(
            root / path.relative_to(path.anchor) if path.is_absolute() else root / path
            for path in paths
        )

    return [
        ComponentSource(
            ComponentKind.POSTGRES_DATA,
            SourceKind.VOLUME,
            volume=config.compose.postgres_volume,
        ),
        ComponentSource(
            ComponentKind.N8N_DATA,
            SourceKind.FILESYSTEM,
            base_dir=config.install_root,
            paths=DATA_PATHS,
        ),
        ComponentSource(
            ComponentKind.CONFIG,
            SourceKind.FILESYSTEM,
            base_dir=config.install_root,
            paths=CONFIG_PATHS,
        ),
        ComponentSource(
            ComponentKind.DNS_CREDENTIALS,
            SourceKind.CREDENTIALS,
            base_dir=root,
            paths=under_root(credential_files),
        ),
        ComponentSource(
            ComponentKind.FAIL2BAN_CONFIG,
            SourceKind.CREDENTIALS,
            base_dir=root,
            paths=under_root(config.backups.fail2ban_paths),
        ),
        ComponentSource(
            ComponentKind.FIREWALL_CONFIG,
            SourceKind.CREDENTIALS,
            base_dir=root,
            paths=under_root(config.backups.firewall_paths),
        ),
        ComponentSource(
            ComponentKind.LETSENCRYPT_CONFIG,
            SourceKind.CREDENTIALS,
            base_dir=root,
            paths=under_root((config.tls.letsencrypt_dir,)),
        ),
    ]


class BackupComposer:
    """Take a crash-consistent snapshot of the whole stack."""

    def __init__(
        self,
        config: AppConfig,
        runtime: ContainerRuntime,
        *,
        env: EnvironmentRecord | None = None,
        validator: BackupValidator | None = None,
        clock: Callable[[], datetime] | None = None,
        tool_version: str = __version__,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._env = env
        self._validator = validator or BackupValidator(min_size_bytes=config.backups.min_size_bytes)
        self._clock = clock or datetime.now
        self._tool_version = tool_version

    def compose(self, restart_policy: RestartPolicy = RestartPolicy.RESTART) -> BackupResult:
        """Stop services, archive every component and bundle the outer archive."""
        if not self._config.install_root.is_dir():
            raise BackupError(
                f"Installation root {self._config.install_root} does not exist; nothing to back up."
            )
        backup_dir = self._config.backup_dir
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup directory {backup_dir}: {exc}") from exc

        timestamp = self._unique_timestamp(backup_dir)
        result = BackupResult(
            timestamp=timestamp, archive=backup_dir / outer_archive_name(timestamp)
        )
        workspace = Path(tempfile.mkdtemp(prefix="n8nctl-backup-"))
        try:
            self._runtime.stop_services()
            try:
                names = self._collect(timestamp, workspace, result)
                create_outer_archive(workspace, result.archive, names)
            except (ArchiveError, OSError) as exc:
                result.error = f"Failed to create backup archive: {exc}"
            else:
                result.removed = apply_retention(backup_dir, self._config.backups.retention)
            finally:
                self._apply_restart_policy(restart_policy, result)
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

        if result.error is None:
            result.validation = self._validator.validate(result.archive)
            if not result.validation.ok:
                result.error = "Backup archive failed validation: " + "; ".join(
                    result.validation.reasons
                )
            result.warnings.extend(result.validation.warnings)
        return result

    def _collect(self, timestamp: str, workspace: Path, result: BackupResult) -> list[str]:
        names: list[str] = []
        for source in component_sources(self._config, self._env):
            item = archive_component(source, timestamp, workspace, runtime=self._runtime)
            result.components.append(item)
            if item.path is None:
                result.warnings.append(
                    f"Component {item.kind.value} could not be archived: {item.error}"
                )
                continue
            names.append(item.path.name)
        manifest = build_manifest(timestamp, result.components, tool_version=self._tool_version)
        (workspace / MANIFEST_NAME).write_text(
            json.dumps(manifest, indent=2) + "\n", encoding="utf-8"
        )
        names.append(MANIFEST_NAME)
        return names

    def _apply_restart_policy(self, policy: RestartPolicy, result: BackupResult) -> None:
        if policy is RestartPolicy.LEAVE_STOPPED:
            return
        try:
            self._runtime.start_services()
        except ComposeError as exc:
            result.warnings.append(
                f"Services failed to restart after backup: {exc}. Run 'n8nctl start'."
            )
            return
        result.restarted = True

    def _unique_timestamp(self, backup_dir: Path) -> str:
        timestamp = new_timestamp(self._clock())
        if not (backup_dir / outer_archive_name(timestamp)).exists():
            return timestamp
        raise BackupError(
            f"An archive named {outer_archive_name(timestamp)} already exists; retry in a second."
        )


__all__ = [
    "ArchiveInfo",
    "BackupComposer",
    "BackupError",
    "BackupResult",
    "RestartPolicy",
    "apply_retention",
    "component_sources",
    "list_archives",
]
