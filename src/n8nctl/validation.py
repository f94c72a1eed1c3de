"""Structural validation of backup archives.

Validation never touches live state: the archive is listed, extracted into a
scratch directory that is always removed, and each component archive is read
back in full.
"""
from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .archive import (
    CORE_COMPONENTS,
    LEGACY_SQL_PATTERN,
    MANIFEST_NAME,
    SECURITY_COMPONENTS,
    ArchiveError,
    ComponentKind,
    compute_checksum,
    extract_archive,
    list_members,
    manifest_components,
    read_member_json,
)


@dataclass
class ComponentCheck:
    """What validation learned about one component."""

    kind: ComponentKind
    present: bool = False
    member: str | None = None
    entries: int | None = None
    placeholder: bool = False
    corrupt: bool = False
    error: str | None = None

    @property
    def restorable(self) -> bool:
        """Return ``True`` when the component can be restored."""
        return self.present and not self.corrupt

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "core": self.kind.is_core,
            "present": self.present,
            "member": self.member,
            "entries": self.entries,
            "placeholder": self.placeholder,
            "corrupt": self.corrupt,
            "error": self.error,
        }


@dataclass
class ValidationReport:
    """Outcome of validating one archive."""

    path: Path
    ok: bool = True
    reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    components: dict[ComponentKind, ComponentCheck] = field(default_factory=dict)
    legacy_sql: str | None = None
    has_manifest: bool = False
    size_bytes: int = 0

    def fail(self, reason: str) -> None:
        """Record a fatal *reason*."""
        self.ok = False
        self.reasons.append(reason)

    def component(self, kind: ComponentKind) -> ComponentCheck:
        """Return the check for *kind*."""
        return self.components.setdefault(kind, ComponentCheck(kind))

    @property
    def has_database_volume(self) -> bool:
        """Return ``True`` when the archive carries a usable volume-format database."""
        check = self.component(ComponentKind.POSTGRES_DATA)
        return check.restorable and not check.placeholder

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "ok": self.ok,
            "size_bytes": self.size_bytes,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "legacy_sql": self.legacy_sql,
            "has_manifest": self.has_manifest,
            "components": [self.component(kind).to_dict() for kind in ComponentKind],
        }


class BackupValidator:
    """Run the ordered, short-circuiting archive checks."""

    def __init__(self, *, min_size_bytes: int = 1024, scratch_root: Path | None = None) -> None:
        self.min_size_bytes = min_size_bytes
        self.scratch_root = scratch_root

    def validate(self, path: Path) -> ValidationReport:
        """Validate *path* and return a :class:`ValidationReport`."""
        report = ValidationReport(path=path)
        for kind in ComponentKind:
            report.component(kind)

        if not self._check_file(path, report):
            return report

        try:
            members = list_members(path)
        except ArchiveError as exc:
            report.fail(str(exc))
            return report

        names = _top_level_names(members)
        self._check_presence(names, report)
        if not report.ok:
            return report

        manifest: dict[str, object] | None = None
        if MANIFEST_NAME in names:
            report.has_manifest = True
            try:
                manifest = read_member_json(path, names[MANIFEST_NAME])
            except ArchiveError as exc:
                report.warnings.append(f"Manifest could not be read: {exc}")

        self._check_components(path, report, manifest)
        return report

    # Individual checks ---------------------------------------------
    def _check_file(self, path: Path, report: ValidationReport) -> bool:
        if not path.exists():
            report.fail(f"Archive not found: {path}")
            return False
        if not path.is_file():
            report.fail(f"Archive is not a regular file: {path}")
            return False
        try:
            report.size_bytes = path.stat().st_size
            with path.open("rb") as handle:
                handle.read(1)
        except OSError as exc:
            report.fail(f"Archive is not readable: {exc}")
            return False
        if report.size_bytes < self.min_size_bytes:
            report.fail(
                f"Archive is too small ({report.size_bytes} bytes; "
                f"minimum {self.min_size_bytes})."
            )
            return False
        return True

    def _check_presence(self, names: dict[str, str], report: ValidationReport) -> None:
        for kind in (*CORE_COMPONENTS, *SECURITY_COMPONENTS):
            check = report.component(kind)
            match = next((name for name in sorted(names) if kind.matches(name)), None)
            if match is not None:
                check.present = True
                check.member = names[match]

        database = report.component(ComponentKind.POSTGRES_DATA)
        if not database.present:
            legacy = next((name for name in sorted(names) if LEGACY_SQL_PATTERN.match(name)), None)
            if legacy is not None:
                report.legacy_sql = names[legacy]

        for kind in CORE_COMPONENTS:
            if report.component(kind).present:
                continue
            if kind is ComponentKind.POSTGRES_DATA and report.legacy_sql is not None:
                continue
            report.fail(f"Missing core component: {kind.value}")

    def _check_components(
        self,
        path: Path,
        report: ValidationReport,
        manifest: dict[str, object] | None,
    ) -> None:
        expected = manifest_components(manifest)
        scratch = Path(tempfile.mkdtemp(prefix="n8nctl-validate-", dir=self.scratch_root))
        try:
            try:
                extract_archive(path, scratch)
            except ArchiveError as exc:
                report.fail(str(exc))
                return
            for kind in (*CORE_COMPONENTS, *SECURITY_COMPONENTS):
                check = report.component(kind)
                if not check.present or check.member is None:
                    continue
                self._check_component(scratch / check.member, check, expected.get(kind))
                if check.corrupt:
                    if kind.is_core:
                        report.fail(f"Corrupt core component {kind.value}: {check.error}")
                    else:
                        report.warnings.append(
                            f"Security component {kind.value} is corrupt and will be "
                            f"skipped: {check.error}"
                        )
                    continue
                if check.placeholder:
                    if kind is ComponentKind.POSTGRES_DATA:
                        report.fail(
                            "Missing core component: postgres_data (empty placeholder; the "
                            "database volume did not exist when the backup was taken)"
                        )
                    elif kind.is_core:
                        report.warnings.append(f"Core component {kind.value} is empty.")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _check_component(
        self,
        component_path: Path,
        check: ComponentCheck,
        expected: dict[str, object] | None,
    ) -> None:
        if not component_path.is_file():
            check.corrupt = True
            check.error = "component file missing after extraction"
            return
        if expected is not None and expected.get("sha256"):
            actual = compute_checksum(component_path)
            if actual != expected["sha256"]:
                check.corrupt = True
                check.error = "checksum does not match manifest"
                return
        try:
            entries = [name for name in list_members(component_path) if name not in {".", "./"}]
        except ArchiveError as exc:
            check.corrupt = True
            check.error = str(exc)
            return
        check.entries = len(entries)
        check.placeholder = not entries


def _top_level_names(members: list[str]) -> dict[str, str]:
    """Map normalised top-level file names to their member names."""
    names: dict[str, str] = {}
    for member in members:
        normalised = member[2:] if member.startswith("./") else member
        if not normalised or normalised == "." or "/" in normalised:
            continue
        names.setdefault(normalised, member)
    return names


__all__ = ["BackupValidator", "ComponentCheck", "ValidationReport"]
