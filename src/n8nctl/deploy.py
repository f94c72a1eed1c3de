"""Stack deployment, removal, update and scheduled maintenance."""
from __future__ import annotations

import getpass
import gzip
import os
import secrets
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from packaging.version import InvalidVersion, Version

from . import __version__
from .backups import BackupComposer, BackupResult, RestartPolicy
from .config import AppConfig
from .envfile import (
    CA_DNS_PROVIDER,
    CA_DOMAIN,
    CA_EMAIL,
    CERT_MODE,
    FAIL2BAN_ENABLED,
    FIREWALL_ENABLED,
    CertMode,
    EnvironmentRecord,
    is_protected,
)
from .providers.compose import ComposeError, ContainerRuntime
from .providers.cron import CronError, CronScheduler
from .providers.health import wait_for_services
from .providers.security import FirewallManager, SecurityProviderError
from .providers.systemd import SystemdError, SystemdProvider
from .restore import RestoreOrchestrator, RestoreReport
from .templates import TemplateEngine
from .tls import CertificateError, CertificateLifecycleManager

POSTGRES_IMAGE = "postgres:15"
N8N_IMAGE = "docker.n8n.io/n8nio/n8n:latest"
NGINX_IMAGE = "nginx:stable"
MAINTENANCE_SCRIPT = Path("scripts") / "maintenance.sh"
LOG_COMPRESS_BYTES = 100 * 1024 * 1024
LOG_RETENTION_DAYS = 30
TOOL_KEYS = frozenset(
    {CERT_MODE, CA_DOMAIN, CA_DNS_PROVIDER, CA_EMAIL, FIREWALL_ENABLED, FAIL2BAN_ENABLED}
)


class DeployError(RuntimeError):
    """Raised when deployment, removal or update cannot proceed."""


class UninstallCancelled(DeployError):
    """Raised when the operator stops an uninstall after a failed backup."""


class StackRuntime(ContainerRuntime, Protocol):
    """Container operations needed beyond backup and restore."""

    def pull(self) -> None:
        """Pull the latest service images."""

    def down(self, *, remove_volumes: bool = False) -> None:
        """Tear the project down."""

    def remove_network(self, network: str) -> None:
        """Remove *network* when present."""


def is_installed(config: AppConfig) -> bool:
    """Return ``True`` when an installation exists at ``install_root``."""
    return config.install_root.is_dir() and config.compose_file.is_file()


def generate_environment(
    path: Path,
    *,
    admin_user: str,
    admin_password: str,
    timezone: str,
    db_user: str,
    db_name: str,
    firewall: bool = False,
    fail2ban: bool = False,
) -> EnvironmentRecord:
    """Create a fresh environment record with random secrets."""
    record = EnvironmentRecord(path)
    record.append_comment("n8n Configuration")
    record.upsert("N8N_BASIC_AUTH_ACTIVE", "true")
    record.upsert("N8N_BASIC_AUTH_USER", admin_user)
    record.upsert("N8N_BASIC_AUTH_PASSWORD", admin_password)
    record.upsert("N8N_ENCRYPTION_KEY", secrets.token_hex(32))
    record.upsert("N8N_HOST", "0.0.0.0")
    record.upsert("N8N_PORT", "5678")
    record.upsert("N8N_PROTOCOL", "https")
    record.upsert("WEBHOOK_URL", "https://localhost/")
    record.upsert("GENERIC_TIMEZONE", timezone)
    record.upsert("N8N_ENFORCE_SETTINGS_FILE_PERMISSIONS", "true")
    record.upsert("N8N_RUNNERS_ENABLED", "true")
    record.append_comment("")
    record.append_comment("Database Configuration")
    record.upsert("POSTGRES_USER", db_user)
    record.upsert("POSTGRES_PASSWORD", secrets.token_urlsafe(32))
    record.upsert("POSTGRES_DB", db_name)
    record.append_comment("")
    record.append_comment("Managed by n8nctl")
    record.upsert(CERT_MODE, CertMode.SELF_SIGNED.value)
    record.upsert(FIREWALL_ENABLED, "true" if firewall else "false")
    record.upsert(FAIL2BAN_ENABLED, "true" if fail2ban else "false")
    record.save()
    return record


def detect_timezone() -> str:
    """Return the host timezone name, falling back to ``UTC``."""
    try:
        result = subprocess.run(  # noqa: S603, S607 - fixed command
            ["timedatectl", "show", "-p", "Timezone", "--value"],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "UTC"
    value = (result.stdout or "").strip()
    return value if result.returncode == 0 and value else "UTC"


def extra_environment(env: EnvironmentRecord) -> list[str]:
    """Return operator-added keys that must be passed through to the app container."""
    return [
        key
        for key in env.keys()
        if not is_protected(key) and key not in TOOL_KEYS and not _is_credentials_key(key)
    ]


def _is_credentials_key(key: str) -> bool:
    return key.startswith("DNS_") and key.endswith("_CREDENTIALS")


def compose_context(config: AppConfig, env: EnvironmentRecord) -> dict[str, object]:
    """Return the template context for ``docker-compose.yml``."""
    return {
        "tool_version": __version__,
        "project_name": config.compose.project_name,
        "services": config.compose.services.to_dict(),
        "postgres_image": POSTGRES_IMAGE,
        "n8n_image": N8N_IMAGE,
        "nginx_image": NGINX_IMAGE,
        "extra_env": extra_environment(env),
    }


def render_compose(config: AppConfig, templates: TemplateEngine, env: EnvironmentRecord) -> bool:
    """Render ``docker-compose.yml``; return ``True`` when it changed."""
    return templates.render_to_path(
        "compose/docker-compose.yml.j2", config.compose_file, compose_context(config, env)
    )


def app_version(runtime: ContainerRuntime, service: str) -> Version | None:
    """Return the n8n version reported by the running application container."""
    try:
        result = runtime.exec_in_service(service, ["n8n", "--version"], check=False)
    except ComposeError:
        return None
    if result.returncode != 0:
        return None
    lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
    if not lines:
        return None
    try:
        return Version(lines[-1])
    except InvalidVersion:
        return None


@dataclass
class DeployOptions:
    """Operator choices for a deployment."""

    admin_password: str | None = None
    admin_user: str = "admin"
    timezone: str | None = None
    restore_archive: Path | None = None
    firewall: bool = False
    fail2ban: bool = False
    install_systemd: bool = True
    install_cron: bool = True
    start: bool = True


@dataclass
class DeployReport:
    """Outcome of a deployment."""

    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    restore: RestoreReport | None = None
    healthy: bool | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "steps": list(self.steps),
            "warnings": list(self.warnings),
            "restore": self.restore.to_dict() if self.restore else None,
            "healthy": self.healthy,
        }


class StackDeployer:
    """Create a new installation, optionally seeded from an archive."""

    def __init__(
        self,
        config: AppConfig,
        runtime: StackRuntime,
        *,
        templates: TemplateEngine,
        certificates: Callable[[EnvironmentRecord], CertificateLifecycleManager],
        systemd: SystemdProvider | None = None,
        scheduler: CronScheduler | None = None,
        restorer: RestoreOrchestrator | None = None,
        n8nctl_bin: str = "n8nctl",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._templates = templates
        self._certificates = certificates
        self._systemd = systemd
        self._scheduler = scheduler
        self._restorer = restorer
        self._n8nctl_bin = n8nctl_bin
        self._sleep = sleep

    def deploy(self, options: DeployOptions) -> DeployReport:
        """Run the deployment steps in order."""
        config = self._config
        if is_installed(config):
            raise DeployError(f"n8n is already installed at {config.install_root}.")
        report = DeployReport()
        self.create_layout()
        report.steps.append("layout")

        if options.restore_archive is not None:
            if self._restorer is None:
                raise DeployError("Restore requested but no restore orchestrator is available.")
            report.restore = self._restorer.restore(options.restore_archive)
            report.warnings.extend(report.restore.warnings)
            report.warnings.extend(report.restore.errors)
            report.steps.append("restore")

        if config.env_file.exists():
            env = EnvironmentRecord.load(config.env_file)
        else:
            if not options.admin_password:
                raise DeployError("An admin password is required for a fresh deployment.")
            env = generate_environment(
                config.env_file,
                admin_user=options.admin_user,
                admin_password=options.admin_password,
                timezone=options.timezone or detect_timezone(),
                db_user=config.compose.db_user,
                db_name=config.compose.db_name,
                firewall=options.firewall,
                fail2ban=options.fail2ban,
            )
            report.steps.append("environment")

        if not config.compose_file.exists():
            render_compose(config, self._templates, env)
            report.steps.append("compose")

        manager = self._certificates(env)
        if not manager.self_signed.exists():
            manager.issue_self_signed()
            report.steps.append("self-signed-certificate")
        if not config.nginx_conf.exists():
            manager.render_proxy_config()
            report.steps.append("nginx")

        if options.install_systemd and self._systemd is not None:
            self._install_systemd(self._systemd, report)
        if options.install_cron and self._scheduler is not None:
            self._install_cron(self._scheduler, report)

        if options.start and report.restore is None:
            self._runtime.pull()
            self._runtime.start_services()
            report.steps.append("start")
            outcome = wait_for_services(
                self._runtime,
                attempts=config.health.attempts,
                interval=config.health.interval,
                sleep=self._sleep,
            )
            report.healthy = outcome.succeeded
            if not outcome.succeeded:
                report.warnings.append("Services are not healthy yet; they may need more time.")
        elif report.restore is not None:
            report.healthy = report.restore.healthy
        return report

    def create_layout(self) -> None:
        """Create the installation and backup directories."""
        config = self._config
        try:
            for directory in (
                config.install_root,
                config.data_dir,
                config.certs_dir,
                config.install_root / "scripts",
            ):
                directory.mkdir(parents=True, exist_ok=True)
            config.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DeployError(f"Failed to create installation layout: {exc}") from exc

    def _install_systemd(self, systemd: SystemdProvider, report: DeployReport) -> None:
        context = {
            "project_name": self._config.compose.project_name,
            "service_user": getpass.getuser(),
            "working_directory": str(self._config.install_root),
            "docker_bin": (
                shutil.which(self._config.compose.docker_bin) or self._config.compose.docker_bin
            ),
        }
        try:
            systemd.render_unit(context)
            systemd.enable()
        except SystemdError as exc:
            report.warnings.append(f"systemd unit not installed: {exc}")
            return
        report.steps.append("systemd")

    def _install_cron(self, scheduler: CronScheduler, report: DeployReport) -> None:
        script = self._config.install_root / MAINTENANCE_SCRIPT
        self._templates.render_to_path(
            "cron/maintenance.sh.j2",
            script,
            {
                "log_file": str(self._config.logs_dir / "cron.log"),
                "n8nctl_bin": shutil.which(self._n8nctl_bin) or self._n8nctl_bin,
                "config_file": str(self._config.config_file),
            },
            mode=0o755,
        )
        try:
            scheduler.install(
                f"{self._config.schedule.cron_time} {script}", marker=str(script)
            )
        except CronError as exc:
            report.warnings.append(f"Maintenance schedule not installed: {exc}")
            return
        report.steps.append("cron")


@dataclass
class UninstallReport:
    """Outcome of removing the installation."""

    backup: BackupResult | None = None
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backup": self.backup.to_dict() if self.backup else None,
            "steps": list(self.steps),
            "warnings": list(self.warnings),
        }


class StackRemover:
    """Remove the installation, optionally after a final backup."""

    def __init__(
        self,
        config: AppConfig,
        runtime: StackRuntime,
        *,
        composer: BackupComposer | None = None,
        systemd: SystemdProvider | None = None,
        scheduler: CronScheduler | None = None,
        firewall: FirewallManager | None = None,
        confirm_continue: Callable[[str], bool] = lambda _message: False,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._composer = composer
        self._systemd = systemd
        self._scheduler = scheduler
        self._firewall = firewall
        self._confirm_continue = confirm_continue

    def uninstall(self, *, backup: bool) -> UninstallReport:
        """Remove containers, volumes, unit, schedule, firewall rules and files."""
        config = self._config
        report = UninstallReport()
        if backup:
            self._backup_first(report)

        if config.compose_file.exists():
            try:
                self._runtime.down(remove_volumes=True)
            except ComposeError as exc:
                report.warnings.append(f"docker compose down failed: {exc}")
            else:
                report.steps.append("containers")

        if self._systemd is not None:
            try:
                self._systemd.remove()
            except SystemdError as exc:
                report.warnings.append(f"systemd unit not removed: {exc}")
            else:
                report.steps.append("systemd")

        if self._scheduler is not None:
            try:
                self._scheduler.remove(str(config.install_root))
            except CronError as exc:
                report.warnings.append(f"Maintenance schedule not removed: {exc}")
            else:
                report.steps.append("cron")

        if self._firewall is not None:
            security = config.security
            try:
                cleanup = self._firewall.delete_rules_matching(
                    security.rule_pattern, cap=security.delete_cap
                )
            except SecurityProviderError as exc:
                report.warnings.append(
                    f"Firewall rules not removed: {exc}. "
                    "Remove them with 'sudo ufw status numbered'."
                )
            else:
                report.steps.append(f"firewall ({cleanup.deleted} rules)")
                if cleanup.exhausted:
                    report.warnings.append(
                        f"Stopped after {security.delete_cap} firewall deletions; "
                        "check 'sudo ufw status numbered'."
                    )

        shutil.rmtree(config.install_root, ignore_errors=True)
        report.steps.append("files")

        if not backup:
            try:
                self._runtime.remove_volume(config.compose.postgres_volume)
                self._runtime.remove_network(f"{config.compose.project_name}_network")
            except ComposeError as exc:
                report.warnings.append(f"Docker resources not fully removed: {exc}")
            else:
                report.steps.append("docker-resources")
        return report

    def _backup_first(self, report: UninstallReport) -> None:
        if self._composer is None:
            raise DeployError("Backup requested but no backup composer is available.")
        try:
            result = self._composer.compose(RestartPolicy.LEAVE_STOPPED)
        except (RuntimeError, OSError) as exc:
            message = f"Backup before uninstall failed: {exc}"
        else:
            report.backup = result
            if result.ok:
                report.steps.append("backup")
                return
            message = f"Backup before uninstall failed: {result.error}"
        report.warnings.append(message)
        if not self._confirm_continue(f"{message}. Continue with uninstall anyway?"):
            raise UninstallCancelled("Uninstall cancelled; your data is untouched.")


@dataclass
class UpdateReport:
    """Outcome of an image update."""

    backup: BackupResult
    before: Version | None
    after: Version | None

    @property
    def changed(self) -> bool:
        """Return ``True`` when the reported version moved."""
        return self.before != self.after

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backup": str(self.backup.archive),
            "before": str(self.before) if self.before else None,
            "after": str(self.after) if self.after else None,
            "changed": self.changed,
        }


def update_stack(
    config: AppConfig, runtime: StackRuntime, composer: BackupComposer
) -> UpdateReport:
    """Back up, pull newer images and restart the stack."""
    app = config.compose.services.app
    before = app_version(runtime, app)
    backup = composer.compose(RestartPolicy.LEAVE_STOPPED)
    if not backup.ok:
        raise DeployError(f"Backup before update failed; nothing was updated: {backup.error}")
    runtime.pull()
    runtime.start_services()
    return UpdateReport(backup=backup, before=before, after=app_version(runtime, app))


@dataclass
class MaintenanceReport:
    """Outcome of the scheduled maintenance run."""

    backup: BackupResult | None = None
    certificate_actions: list[str] = field(default_factory=list)
    compressed: list[Path] = field(default_factory=list)
    pruned: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when the backup succeeded."""
        return self.backup is not None and self.backup.ok

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backup": self.backup.to_dict() if self.backup else None,
            "certificate_actions": list(self.certificate_actions),
            "compressed": [str(path) for path in self.compressed],
            "pruned": [str(path) for path in self.pruned],
            "warnings": list(self.warnings),
        }


def run_maintenance(
    config: AppConfig,
    composer: BackupComposer,
    certificates: CertificateLifecycleManager,
    *,
    now: datetime | None = None,
) -> MaintenanceReport:
    """Daily backup, certificate renewal check and log housekeeping."""
    report = MaintenanceReport()
    try:
        report.backup = composer.compose(RestartPolicy.RESTART)
    except RuntimeError as exc:
        report.warnings.append(f"Backup failed: {exc}")
    else:
        report.warnings.extend(report.backup.warnings)
        if not report.backup.ok:
            report.warnings.append(f"Backup failed: {report.backup.error}")

    try:
        report.certificate_actions = certificates.renew_if_expiring()
    except (CertificateError, RuntimeError) as exc:
        report.warnings.append(f"Certificate renewal failed: {exc}")

    compressed, pruned = compress_logs(config.logs_dir, now=now)
    report.compressed.extend(compressed)
    report.pruned.extend(pruned)
    return report


def compress_logs(
    logs_dir: Path,
    *,
    threshold: int = LOG_COMPRESS_BYTES,
    retention_days: int = LOG_RETENTION_DAYS,
    now: datetime | None = None,
) -> tuple[list[Path], list[Path]]:
    """Gzip oversized ``*.log`` files and delete stale ``*.log.gz`` files."""
    if not logs_dir.is_dir():
        return [], []
    compressed: list[Path] = []
    for path in sorted(logs_dir.glob("*.log")):
        if path.stat().st_size <= threshold:
            continue
        target = path.with_name(f"{path.name}.{int(path.stat().st_mtime)}.gz")
        with path.open("rb") as source, gzip.open(target, "wb") as sink:
            shutil.copyfileobj(source, sink)
        path.write_bytes(b"")
        compressed.append(target)

    cutoff = (now or datetime.now()) - timedelta(days=retention_days)
    pruned: list[Path] = []
    for path in sorted(logs_dir.glob("*.log*.gz")):
        if datetime.fromtimestamp(path.stat().st_mtime) < cutoff:
            os.unlink(path)
            pruned.append(path)
    return compressed, pruned


__all__ = [
    "DeployError",
    "DeployOptions",
    "DeployReport",
    "MaintenanceReport",
    "StackDeployer",
    "StackRemover",
    "StackRuntime",
    "UninstallCancelled",
    "UninstallReport",
    "UpdateReport",
    "app_version",
    "compose_context",
    "compress_logs",
    "detect_timezone",
    "extra_environment",
    "generate_environment",
    "is_installed",
    "render_compose",
    "run_maintenance",
    "update_stack",
]
