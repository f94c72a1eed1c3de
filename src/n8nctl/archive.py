"""Archive helpers shared by backup, validation and restore workflows.

A backup is one outer ``full_backup_<ts>.tar.gz`` holding one component
archive per :class:`ComponentKind` plus a ``manifest.json``. Every component
archive produced in one run carries the same timestamp.
"""
from __future__ import annotations

import gzip
import hashlib
import json
import os
import re
import tarfile
import tempfile
import zlib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .providers.compose import ContainerRuntime

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
OUTER_PREFIX = "full_backup_"
ARCHIVE_SUFFIX = ".tar.gz"
MANIFEST_NAME = "manifest.json"
MANIFEST_FORMAT = 1

_TIMESTAMP_RE = r"\d{8}_\d{6}"
OUTER_PATTERN = re.compile(rf"^{OUTER_PREFIX}(?P<ts>{_TIMESTAMP_RE})\.tar\.gz$")
LEGACY_SQL_PATTERN = re.compile(r"^postgres_.*\.sql$")

_READ_ERRORS = (tarfile.TarError, OSError, EOFError, zlib.error)


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be created, read or extracted."""


class SourceKind(str, Enum):
    """Where a component's data comes from."""

    FILESYSTEM = "filesystem-path-set"
    VOLUME = "named-volume"
    CREDENTIALS = "credential-file-set"


class ComponentKind(str, Enum):
    """Every component a backup knows about."""

    POSTGRES_DATA = "postgres_data"
    N8N_DATA = "n8n_data"
    CONFIG = "config"
    DNS_CREDENTIALS = "dns_credentials"
    FAIL2BAN_CONFIG = "fail2ban_config"
    FIREWALL_CONFIG = "firewall_config"
    LETSENCRYPT_CONFIG = "letsencrypt_config"

    @property
    def is_core(self) -> bool:
        """Return ``True`` for components a valid backup cannot lack."""
        return self in CORE_COMPONENTS

    def filename(self, timestamp: str) -> str:
        """Return the component archive name for *timestamp*."""
        return f"{self.value}_{timestamp}{ARCHIVE_SUFFIX}"

    def matches(self, name: str) -> bool:
        """Return ``True`` when *name* is an archive of this component."""
        return self.pattern.match(Path(name).name) is not None

    @property
    def pattern(self) -> re.Pattern[str]:
        """Return the filename pattern for this component."""
        return re.compile(rf"^{re.escape(self.value)}_(?P<ts>{_TIMESTAMP_RE})\.tar\.gz$")

    @classmethod
    def from_filename(cls, name: str) -> ComponentKind | None:
        """Return the component kind encoded in *name*, if any."""
        for kind in cls:
            if kind.matches(name):
                return kind
        return None


CORE_COMPONENTS: tuple[ComponentKind, ...] = (
    ComponentKind.POSTGRES_DATA,
    ComponentKind.N8N_DATA,
    ComponentKind.CONFIG,
)
SECURITY_COMPONENTS: tuple[ComponentKind, ...] = (
    ComponentKind.DNS_CREDENTIALS,
    ComponentKind.FAIL2BAN_CONFIG,
    ComponentKind.FIREWALL_CONFIG,
    ComponentKind.LETSENCRYPT_CONFIG,
)


def new_timestamp(now: datetime | None = None) -> str:
    """Return a second-resolution timestamp shared by one backup run."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def outer_archive_name(timestamp: str) -> str:
    """Return the outer archive file name for *timestamp*."""
    return f"{OUTER_PREFIX}{timestamp}{ARCHIVE_SUFFIX}"


def outer_timestamp(path: Path) -> str | None:
    """Return the timestamp encoded in an outer archive name."""
    match = OUTER_PATTERN.match(path.name)
    return match.group("ts") if match else None


@dataclass(frozen=True)
class ComponentSource:
    """Describe where to collect one component from.

    ``FILESYSTEM`` sources list paths relative to ``base_dir``;
    ``CREDENTIALS`` sources list absolute files which are stored relative to
    ``base_dir`` (the system root); ``VOLUME`` sources name a container volume.
    """

    kind: ComponentKind
    source_kind: SourceKind
    base_dir: Path | None = None
    paths: tuple[Path, ...] = ()
    volume: str | None = None

    def existing_paths(self) -> list[Path]:
        """Return the source paths that currently exist on disk."""
        if self.source_kind is SourceKind.VOLUME:
            return []
        found: list[Path] = []
        for path in self.paths:
            resolved = self.resolve(path)
            if resolved.exists() or resolved.is_symlink():
                found.append(resolved)
        return found

    def resolve(self, path: Path) -> Path:
        """Return the on-disk location of *path*."""
        if self.source_kind is SourceKind.FILESYSTEM and self.base_dir is not None:
            return self.base_dir / _strip_anchor(path)
        return path

    def arcname(self, resolved: Path) -> str:
        """Return the name *resolved* is stored under inside the component."""
        if self.base_dir is not None:
            try:
                return str(resolved.relative_to(self.base_dir))
            except ValueError:
                pass
        return str(_strip_anchor(resolved))


@dataclass
class ComponentArchiveResult:
    """Outcome of archiving one component."""

    kind: ComponentKind
    source_kind: SourceKind
    path: Path | None
    placeholder: bool = False
    ok: bool = True
    error: str | None = None
    size_bytes: int = 0
    sha256: str | None = None
    sources: list[str] = field(default_factory=list)

    def to_manifest_entry(self) -> dict[str, object]:
        """Return the manifest entry describing this component."""
        return {
            "kind": self.kind.value,
            "file": self.path.name if self.path else None,
            "source_kind": self.source_kind.value,
            "core": self.kind.is_core,
            "placeholder": self.placeholder,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "sources": list(self.sources),
        }


def archive_component(
    source: ComponentSource,
    timestamp: str,
    out_dir: Path,
    *,
    runtime: ContainerRuntime | None = None,
) -> ComponentArchiveResult:
    """Write ``<component>_<timestamp>.tar.gz`` for *source* into *out_dir*.

    Absent sources still produce a zero-entry archive. Failures are reported
    on the result instead of raised so a backup run can continue.
    """
    destination = out_dir / source.kind.filename(timestamp)
    result = ComponentArchiveResult(
        kind=source.kind,
        source_kind=source.source_kind,
        path=destination,
    )
    try:
        if source.source_kind is SourceKind.VOLUME:
            _archive_volume(source, destination, result, runtime)
        else:
            _archive_paths(source, destination, result)
    except (ArchiveError, OSError, tarfile.TarError, RuntimeError) as exc:
        destination.unlink(missing_ok=True)
        result.ok = False
        result.path = None
        result.error = str(exc)
        return result

    result.size_bytes = destination.stat().st_size
    result.sha256 = compute_checksum(destination)
    return result


def _archive_paths(
    source: ComponentSource,
    destination: Path,
    result: ComponentArchiveResult,
) -> None:
    existing = source.existing_paths()
    if not existing:
        write_placeholder(destination)
        result.placeholder = True
        return
    with tarfile.open(destination, "w:gz") as archive:
        for path in existing:
            name = source.arcname(path)
            archive.add(path, arcname=name)
            result.sources.append(name)


def _archive_volume(
    source: ComponentSource,
    destination: Path,
    result: ComponentArchiveResult,
    runtime: ContainerRuntime | None,
) -> None:
    if runtime is None or not source.volume:
        raise ArchiveError(f"No container runtime available to archive {source.kind.value}.")
    if not runtime.volume_exists(source.volume):
        write_placeholder(destination)
        result.placeholder = True
        return
    runtime.archive_volume(source.volume, destination.parent, destination.name)
    if not destination.exists():
        raise ArchiveError(f"Volume archive for {source.volume} was not created.")
    result.sources.append(source.volume)


def write_placeholder(destination: Path) -> None:
    """Write a valid, zero-entry gzip tar archive."""
    with tarfile.open(destination, "w:gz"):
        pass


def build_manifest(
    timestamp: str,
    results: Sequence[ComponentArchiveResult],
    *,
    tool_version: str,
) -> dict[str, object]:
    """Return the manifest describing one backup run."""
    return {
        "format": MANIFEST_FORMAT,
        "timestamp": timestamp,
        "tool_version": tool_version,
        "components": [item.to_manifest_entry() for item in results if item.path is not None],
    }


def create_outer_archive(workspace: Path, destination: Path, names: Iterable[str]) -> None:
    """Bundle *names* from *workspace* into *destination* atomically."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        with tarfile.open(tmp_path, "w:gz") as archive:
            for name in names:
                archive.add(workspace / name, arcname=name)
        os.chmod(tmp_path, 0o640)
        os.replace(tmp_path, destination)
    except (OSError, tarfile.TarError) as exc:
        raise ArchiveError(f"Failed to create {destination}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def verify_gzip_stream(path: Path) -> None:
    """Read the whole gzip stream so length and CRC trailers are checked."""
    try:
        with gzip.open(path, "rb") as handle:
            while handle.read(1024 * 1024):
                pass
    except (OSError, EOFError, zlib.error) as exc:
        raise ArchiveError(f"{path.name} is not a valid archive: {exc}") from exc


def list_members(path: Path) -> list[str]:
    """Return member names of a gzip tar archive after verifying the stream."""
    verify_gzip_stream(path)
    try:
        with tarfile.open(path, "r:gz") as archive:
            return archive.getnames()
    except _READ_ERRORS as exc:
        raise ArchiveError(f"{path.name} is not a valid archive: {exc}") from exc


def read_member_json(path: Path, member: str) -> dict[str, object] | None:
    """Return the JSON document stored as *member* in *path*, if present."""
    try:
        with tarfile.open(path, "r:gz") as archive:
            try:
                info = archive.getmember(member)
            except KeyError:
                return None
            handle = archive.extractfile(info)
            if handle is None:
                return None
            data = json.loads(handle.read().decode("utf-8"))
    except _READ_ERRORS as exc:
        raise ArchiveError(f"{path.name} is not a valid archive: {exc}") from exc
    except (ValueError, UnicodeDecodeError) as exc:
        raise ArchiveError(f"{member} in {path.name} is not valid JSON: {exc}") from exc
    return data if isinstance(data, dict) else None


def extract_archive(path: Path, destination: Path) -> None:
    """Extract *path* into *destination* refusing unsafe members."""
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(path, "r:gz") as archive:
            archive.extractall(destination, filter="data")
    except _READ_ERRORS as exc:
        raise ArchiveError(f"Failed to extract {path.name}: {exc}") from exc


def manifest_components(
    manifest: Mapping[str, object] | None,
) -> dict[ComponentKind, dict[str, object]]:
    """Return manifest component entries keyed by kind."""
    entries: dict[ComponentKind, dict[str, object]] = {}
    if not manifest:
        return entries
    raw = manifest.get("components")
    if not isinstance(raw, list):
        return entries
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        try:
            kind = ComponentKind(str(item.get("kind")))
        except ValueError:
            continue
        entries[kind] = dict(item)
    return entries


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _strip_anchor(path: Path) -> Path:
    if path.is_absolute():
        return path.relative_to(path.anchor)
    return path


__all__ = [
    "ARCHIVE_SUFFIX",
    "CORE_COMPONENTS",
    "LEGACY_SQL_PATTERN",
    "MANIFEST_NAME",
    "OUTER_PREFIX",
    "SECURITY_COMPONENTS",
    "ArchiveError",
    "ComponentArchiveResult",
    "ComponentKind",
    "ComponentSource",
    "SourceKind",
    "archive_component",
    "build_manifest",
    "compute_checksum",
    "create_outer_archive",
    "extract_archive",
    "list_members",
    "manifest_components",
    "new_timestamp",
    "outer_archive_name",
    "outer_timestamp",
    "read_member_json",
    "verify_gzip_stream",
    "write_placeholder",
]
