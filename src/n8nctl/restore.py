"""Destructive restore of the stack from a validated archive."""
from __future__ import annotations

import os
import shutil
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .archive import SECURITY_COMPONENTS, ArchiveError, ComponentKind, extract_archive
from .config import AppConfig
from .envfile import EnvironmentRecord
from .providers.commands import run_command
from .providers.compose import ComposeError, ContainerRuntime
from .providers.health import HealthProbe, health_target, wait_for_services
from .providers.security import FirewallManager, IntrusionPreventionManager, SecurityProviderError
from .retry import retry_until
from .tls import AdaptationResult, CertificateError, CertificateLifecycleManager
from .validation import BackupValidator, ValidationReport

CONFIG_FILES = ("docker-compose.yml", "nginx.conf", ".env")
PRIVATE_KEY_NAMES = ("n8n.key", "privkey.pem")


class RestoreError(RuntimeError):
    """Raised when a restore cannot start or must abort."""

    def __init__(self, message: str, validation: ValidationReport | None = None) -> None:
        super().__init__(message)
        self.validation = validation


class RestoreCancelled(RestoreError):
    """Raised when the operator declines the destructive restore."""


@dataclass
class StepRecord:
    """One completed restore step."""

    name: str
    status: str
    detail: str | None = None


@dataclass
class RestoreReport:
    """Outcome of one restore run."""

    archive: Path
    validation: ValidationReport | None = None
    steps: list[StepRecord] = field(default_factory=list)
    restored: list[ComponentKind] = field(default_factory=list)
    skipped: list[ComponentKind] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    adaptation: AdaptationResult | None = None
    healthy: bool | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when no step recorded an error."""
        return not self.errors

    def step(self, name: str, status: str = "success", detail: str | None = None) -> None:
        """Record a step outcome."""
        self.steps.append(StepRecord(name, status, detail))

    def warn(self, name: str, message: str) -> None:
        """Record a recoverable problem on step *name*."""
        self.warnings.append(message)
        self.step(name, "warning", message)

    def fail(self, name: str, message: str) -> None:
        """Record an error on step *name*; the restore carries on."""
        self.errors.append(message)
        self.step(name, "error", message)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        adaptation = None
        if self.adaptation is not None:
            adaptation = {
                "regenerated": self.adaptation.regenerated,
                "reason": self.adaptation.reason,
                "current_ips": list(self.adaptation.current_ips),
                "certificate_ips": list(self.adaptation.certificate_ips),
            }
        return {
            "archive": str(self.archive),
            "ok": self.ok,
            "steps": [{"name": s.name, "status": s.status, "detail": s.detail} for s in self.steps],
            "restored": [kind.value for kind in self.restored],
            "skipped": [kind.value for kind in self.skipped],
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "adaptation": adaptation,
            "healthy": self.healthy,
        }


class RestoreOrchestrator:
    """Replace local state with the contents of an archive.

    The run is ordered: validate, confirm, stop services, restore config and
    certificates, adapt certificates to this host, restore application data,
    restore the database, restore security components, start services and
    finally probe health. Only validation failure or a declined confirmation
    abort the run; later problems are recorded on the report.
    """

    def __init__(
        self,
        config: AppConfig,
        runtime: ContainerRuntime,
        *,
        certificates: Callable[[EnvironmentRecord], CertificateLifecycleManager],
        validator: BackupValidator | None = None,
        firewall: FirewallManager | None = None,
        intrusion: IntrusionPreventionManager | None = None,
        health_probe: HealthProbe | None = None,
        confirm: Callable[[str], bool] | None = None,
        prefix: tuple[str, ...] = (),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._certificates = certificates
        self._validator = validator or BackupValidator(min_size_bytes=config.backups.min_size_bytes)
        self._firewall = firewall
        self._intrusion = intrusion
        self._health_probe = health_probe
        self._confirm = confirm
        self._prefix = prefix
        self._sleep = sleep

    def restore(self, archive: Path) -> RestoreReport:
        """Restore *archive* over the current installation."""
        report = RestoreReport(archive=archive)
        validation = self._validator.validate(archive)
        report.validation = validation
        if not validation.ok:
            raise RestoreError(
                "Archive failed validation: " + "; ".join(validation.reasons),
                validation=validation,
            )
        report.warnings.extend(validation.warnings)
        report.step("validate")

        if self._confirm is not None:
            message = (
                f"Restoring {archive.name} will replace configuration, application data and the "
                f"database under {self._config.install_root}. Continue?"
            )
            if not self._confirm(message):
                raise RestoreCancelled(
                    "Restore cancelled; nothing was changed.", validation=validation
                )
        report.step("confirm")

        workspace = Path(tempfile.mkdtemp(prefix="n8nctl-restore-"))
        try:
            try:
                extract_archive(archive, workspace)
            except ArchiveError as exc:
                raise RestoreError(str(exc), validation=validation) from exc
            self._config.install_root.mkdir(parents=True, exist_ok=True)

            self._stop_services(report)
            self.restore_config(workspace, validation, report)
            env = EnvironmentRecord.load_or_empty(self._config.env_file)
            manager = self._certificates(env)
            self._adapt_certificates(manager, report)
            self.restore_application_data(workspace, validation, report)
            self.restore_database(workspace, validation, report)
            self.restore_security(workspace, validation, env, report)
            self._start_services(report)
            self._check_health(manager, env, report)
        finally:
            shutil.rmtree(workspace, ignore_errors=True)
        return report

    # Steps ---------------------------------------------------------
    def _stop_services(self, report: RestoreReport) -> None:
        if not self._config.compose_file.exists():
            report.step("stop-services", "skipped", "no compose file present")
            return
        try:
            self._runtime.stop_services()
        except ComposeError as exc:
            report.warn("stop-services", f"Failed to stop services before restore: {exc}")
            return
        report.step("stop-services")

    def restore_config(
        self, workspace: Path, validation: ValidationReport, report: RestoreReport
    ) -> None:
        """Copy compose file, nginx config, environment record and certificates back."""
        check = validation.component(ComponentKind.CONFIG)
        if not check.restorable or check.member is None:
            report.warn(
                "restore-config",
                "No configuration component found; certificates and config may be missing.",
            )
            return
        staging = workspace / "_config"
        try:
            extract_archive(workspace / check.member, staging)
        except ArchiveError as exc:
            report.fail("restore-config", f"Failed to extract configuration: {exc}")
            return

        root = self._config.install_root
        restored: list[str] = []
        missing: list[str] = []
        certs = staging / "certs"
        try:
            for name in CONFIG_FILES:
                source = staging / name
                if not source.is_file():
                    missing.append(name)
                    continue
                shutil.copy2(source, root / name)
                restored.append(name)
            if self._config.env_file.exists():
                os.chmod(self._config.env_file, 0o600)

            if certs.is_dir():
                shutil.rmtree(self._config.certs_dir, ignore_errors=True)
                shutil.copytree(certs, self._config.certs_dir)
                for key_path in self._config.certs_dir.rglob("*"):
                    if key_path.name in PRIVATE_KEY_NAMES and key_path.is_file():
                        os.chmod(key_path, 0o600)
                restored.append("certs")
            else:
                missing.append("certs")
        except OSError as exc:
            report.fail(
                "restore-config",
                f"Failed to copy configuration into {root}: {exc}. "
                "Restore the files from the archive by hand.",
            )
            return

        report.restored.append(ComponentKind.CONFIG)
        if missing:
            report.warn("restore-config", f"Not found in backup: {', '.join(missing)}.")
        report.step("restore-config", detail=", ".join(restored))

    def _adapt_certificates(
        self, manager: CertificateLifecycleManager, report: RestoreReport
    ) -> None:
        try:
            report.adaptation = manager.adapt_after_restore()
        except CertificateError as exc:
            report.warn(
                "adapt-certificates",
                f"Certificate adaptation failed: {exc}. Run 'n8nctl cert adapt'.",
            )
            return
        status = "changed" if report.adaptation.regenerated else "success"
        report.step("adapt-certificates", status, report.adaptation.reason)

    def restore_application_data(
        self,
        workspace: Path,
        validation: ValidationReport,
        report: RestoreReport,
    ) -> None:
        """Replace the application data directory with the archived copy."""
        check = validation.component(ComponentKind.N8N_DATA)
        data_dir = self._config.data_dir
        owner = _owner(data_dir) or _owner(self._config.install_root)
        shutil.rmtree(data_dir, ignore_errors=True)
        if not check.restorable or check.member is None:
            report.warn("restore-app-data", "No application data found in backup.")
            return
        try:
            extract_archive(workspace / check.member, self._config.install_root)
        except ArchiveError as exc:
            report.fail("restore-app-data", f"Failed to restore application data: {exc}")
            return
        report.restored.append(ComponentKind.N8N_DATA)
        if owner is not None and os.geteuid() == 0:
            try:
                _chown_tree(data_dir, owner)
            except OSError as exc:
                report.warn(
                    "restore-app-data",
                    f"Could not hand {data_dir} back to uid {owner[0]}: {exc}. "
                    f"Run 'sudo chown -R {owner[0]}:{owner[1]} {data_dir}'.",
                )

        settings = data_dir / "config"
        if settings.is_file():
            os.chmod(settings, 0o600)
            report.step("restore-app-data", detail="encryption settings preserved (mode 0600)")
        else:
            report.warn(
                "restore-app-data",
                "No n8n config file in restored data; initial setup may be needed.",
            )

    def restore_database(
        self, workspace: Path, validation: ValidationReport, report: RestoreReport
    ) -> None:
        """Load the database from the volume archive, falling back to a legacy SQL dump."""
        check = validation.component(ComponentKind.POSTGRES_DATA)
        volume = self._config.compose.postgres_volume
        if validation.has_database_volume and check.member is not None:
            try:
                self._runtime.remove_volume(volume)
                self._runtime.create_volume(volume)
                self._runtime.restore_volume(volume, workspace / check.member)
            except ComposeError as exc:
                report.fail("restore-database", f"Failed to restore database volume: {exc}")
                return
            report.restored.append(ComponentKind.POSTGRES_DATA)
            report.step("restore-database", detail=f"volume {volume}")
            return
        if validation.legacy_sql is not None:
            self._restore_sql_dump(workspace / validation.legacy_sql, report)
            return
        report.fail(
            "restore-database",
            "No database backup found in archive (postgres_data or postgres_*.sql).",
        )

    def _restore_sql_dump(self, dump: Path, report: RestoreReport) -> None:
        compose = self._config.compose
        database = compose.services.database
        try:
            self._runtime.start_services([database])
            outcome = retry_until(
                lambda: self._runtime.exec_in_service(
                    database, ["pg_isready", "-U", compose.db_user], check=False
                ),
                lambda result: result.returncode == 0,
                attempts=self._config.health.db_ready_attempts,
                interval=self._config.health.interval,
                retry_on=(ComposeError,),
                sleep=self._sleep,
            )
            if not outcome.succeeded:
                report.warn(
                    "restore-database",
                    f"PostgreSQL not ready after {outcome.attempts} checks; "
                    "attempting the load anyway.",
                )
            psql = ["psql", "-U", compose.db_user]
            self._runtime.exec_in_service(
                database,
                [*psql, "-d", "postgres", "-c", f'DROP DATABASE IF EXISTS "{compose.db_name}";'],
            )
            self._runtime.exec_in_service(
                database, [*psql, "-d", "postgres", "-c", f'CREATE DATABASE "{compose.db_name}";']
            )
            self._runtime.exec_in_service(database, [*psql, "-d", compose.db_name], stdin_path=dump)
            self._runtime.stop_services()
        except ComposeError as exc:
            report.fail("restore-database", f"Failed to replay SQL dump {dump.name}: {exc}")
            return
        report.restored.append(ComponentKind.POSTGRES_DATA)
        report.step("restore-database", detail=f"legacy dump {dump.name}")

    def restore_security(
        self,
        workspace: Path,
        validation: ValidationReport,
        env: EnvironmentRecord,
        report: RestoreReport,
    ) -> None:
        """Restore security components that passed validation, then reactivate them."""
        for kind in SECURITY_COMPONENTS:
            check = validation.component(kind)
            if not check.present or check.member is None:
                report.skipped.append(kind)
                continue
            if check.corrupt:
                report.skipped.append(kind)
                report.warn(
                    f"restore-{kind.value}",
                    f"Skipped {kind.value}: failed validation ({check.error}).",
                )
                continue
            if check.placeholder:
                report.skipped.append(kind)
                continue
            staging = workspace / f"_{kind.value}"
            try:
                extract_archive(workspace / check.member, staging)
                self._install_tree(staging, self._config.system_root)
            except (ArchiveError, OSError, RestoreError) as exc:
                report.warn(f"restore-{kind.value}", f"Failed to restore {kind.value}: {exc}")
                continue
            report.restored.append(kind)
            report.step(f"restore-{kind.value}")

        firewall_restored = ComponentKind.FIREWALL_CONFIG in report.restored
        if firewall_restored and env.firewall_enabled and self._firewall:
            try:
                self._firewall.reload()
            except SecurityProviderError as exc:
                report.warn(
                    "reload-firewall",
                    f"Firewall reload failed: {exc}. Re-enable it manually with 'sudo ufw reload'.",
                )
            else:
                report.step("reload-firewall")
        fail2ban_restored = ComponentKind.FAIL2BAN_CONFIG in report.restored
        if fail2ban_restored and env.fail2ban_enabled and self._intrusion:
            try:
                self._intrusion.restart()
            except SecurityProviderError as exc:
                report.warn(
                    "restart-fail2ban",
                    f"fail2ban restart failed: {exc}. "
                    "Restart it manually with 'sudo systemctl restart fail2ban'.",
                )
            else:
                report.step("restart-fail2ban")

    def _install_tree(self, source: Path, destination: Path) -> None:
        if self._prefix:
            run_command(
                [*self._prefix, "cp", "-a", f"{source}/.", str(destination)],
                error_cls=RestoreError,
                error_prefix="install security files",
                timeout=self._config.command_timeout,
            )
            return
        shutil.copytree(source, destination, dirs_exist_ok=True, symlinks=True)

    def _start_services(self, report: RestoreReport) -> None:
        try:
            self._runtime.start_services()
        except ComposeError as exc:
            report.fail("start-services", f"Failed to start services: {exc}. Run 'n8nctl start'.")
            return
        report.step("start-services")

    def _check_health(
        self,
        manager: CertificateLifecycleManager,
        env: EnvironmentRecord,
        report: RestoreReport,
    ) -> None:
        health = self._config.health
        outcome = wait_for_services(
            self._runtime,
            attempts=health.attempts,
            interval=health.interval,
            sleep=self._sleep,
        )
        healthy = outcome.succeeded
        detail = f"services healthy after {outcome.attempts} checks" if healthy else None
        if healthy and self._health_probe is not None:
            url, verify = health_target(
                env.cert_mode,
                env.ca_domain,
                manager.self_signed.certificate,
                health.endpoint,
            )
            probe = self._health_probe.check(url, verify=verify)
            healthy = probe.ok
            detail = f"{url} answered {probe.status_code}" if probe.ok else probe.error
        report.healthy = healthy
        if healthy:
            report.step("health-check", detail=detail)
        else:
            report.warn(
                "health-check",
                "Services are not healthy yet; they may need more time. "
                "Check with 'n8nctl health'.",
            )


def _owner(path: Path) -> tuple[int, int] | None:
    try:
        info = path.stat()
    except OSError:
        return None
    return info.st_uid, info.st_gid


def _chown_tree(root: Path, owner: tuple[int, int]) -> None:
    """Give *root* and everything below it to *owner*."""
    uid, gid = owner
    os.chown(root, uid, gid)
    for path in root.rglob("*"):
        os.chown(path, uid, gid, follow_symlinks=False)


__all__ = [
    "RestoreCancelled",
    "RestoreError",
    "RestoreOrchestrator",
    "RestoreReport",
    "StepRecord",
]
