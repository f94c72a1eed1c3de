"""Typer-powered command line for ``n8nctl``.

Every command runs inside a structured logger operation. Commands that change
the stack serialise on the global lock; read-only commands do not take it.
Provider failures exit with :attr:`ExitCode.PROVIDER`, lock contention with
:attr:`ExitCode.ENVIRONMENT` and archive validation failures with
:attr:`ExitCode.VALIDATION`.
"""
from __future__ import annotations

import os
import shutil
import textwrap
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn, Protocol

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupComposer, BackupError, BackupResult, RestartPolicy, list_archives
from .config import AppConfig, ConfigError, load_config
from .deploy import (
    DeployError,
    DeployOptions,
    StackDeployer,
    StackRemover,
    StackRuntime,
    UninstallCancelled,
    app_version,
    is_installed,
    render_compose,
    run_maintenance,
    update_stack,
)
from .envfile import (
    MASK,
    CertMode,
    EnvironmentRecord,
    EnvironmentRecordError,
    is_protected,
    is_sensitive,
    validate_key,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import (
    CertbotClient,
    CertificateAuthorityClient,
    CertificateAuthorityError,
    ComposeError,
    ComposeProvider,
    CronError,
    CronScheduler,
    DnsPropagationChecker,
    Fail2banManager,
    FirewallManager,
    HealthProbe,
    HttpsHealthProbe,
    IntrusionPreventionManager,
    SecurityProviderError,
    ServiceState,
    SystemdError,
    SystemdProvider,
    UfwFirewall,
)
from .providers.certbot import manual_auth_hook
from .providers.commands import privilege_prefix
from .providers.health import health_target
from .restore import RestoreCancelled, RestoreError, RestoreOrchestrator, RestoreReport
from .templates import TemplateEngine, TemplateError
from .tls import CertificateError, CertificateLifecycleManager, IdentityStatus, detect_host_ips
from .validation import BackupValidator, ValidationReport

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to n8nctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Do not ask for confirmation.",
)

PROVIDER_ERRORS = (
    ComposeError,
    SystemdError,
    CronError,
    CertificateAuthorityError,
    SecurityProviderError,
)
FAILURE_ERRORS = (
    BackupError,
    DeployError,
    CertificateError,
    EnvironmentRecordError,
    TemplateError,
    RestoreError,
)

STATUS_STYLES = {
    "success": "green",
    "changed": "cyan",
    "skipped": "dim",
    "warning": "yellow",
    "error": "red",
}


class ManagedStack(StackRuntime, Protocol):
    """Compose operations the interactive commands need on top of deployment."""

    def restart_services(self) -> None:
        """Restart running containers."""

    def restart_service(self, service: str) -> None:
        """Restart one service."""

    def recreate_services(self) -> None:
        """Recreate containers so configuration changes apply."""

    def status_text(self) -> str:
        """Return ``docker compose ps`` output."""

    def logs(
        self, service: str | None = None, *, follow: bool = False, tail: int | None = None
    ) -> str:
        """Return or stream service logs."""


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    compose: ManagedStack
    firewall: FirewallManager | None = None
    intrusion: IntrusionPreventionManager | None = None
    ca_client: CertificateAuthorityClient | None = None
    health_probe: HealthProbe | None = None
    systemd: SystemdProvider | None = None
    scheduler: CronScheduler | None = None
    dns_checker: DnsPropagationChecker | None = None
    ip_detector: Callable[[], Sequence[str]] = detect_host_ips
    sleep: Callable[[float], None] = field(default=time.sleep)

    def certificates(self, env: EnvironmentRecord) -> CertificateLifecycleManager:
        """Return a certificate manager bound to *env*."""
        return CertificateLifecycleManager(
            self.config,
            env,
            templates=self.templates,
            ca_client=self.ca_client,
            ip_detector=self.ip_detector,
            auth_hook=manual_auth_hook(_self_command(), self.config.config_file),
        )

    def composer(self, env: EnvironmentRecord | None = None) -> BackupComposer:
        """Return a backup composer for the installation."""
        return BackupComposer(self.config, self.compose, env=env)

    def restorer(self, confirm: Callable[[str], bool] | None = None) -> RestoreOrchestrator:
        """Return a restore orchestrator wired to this runtime's providers."""
        return RestoreOrchestrator(
            self.config,
            self.compose,
            certificates=self.certificates,
            firewall=self.firewall,
            intrusion=self.intrusion,
            health_probe=self.health_probe,
            confirm=confirm,
            prefix=privilege_prefix(self.config.use_sudo),
            sleep=self.sleep,
        )


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Deploy, back up, restore and maintain a self-hosted n8n stack.

        The stack runs n8n, PostgreSQL and nginx through Docker Compose under a
        single installation directory. Backups bundle the database volume, the
        application data, configuration, certificates and host security files
        into one validated archive.
        """
    ).strip(),
)
cert_app = typer.Typer(help="Inspect and manage the stack's TLS certificates.")
env_app = typer.Typer(help="Inspect and edit the stack's environment variables.")
app.add_typer(cert_app, name="cert")
app.add_typer(env_app, name="env")


def _self_command() -> str:
    return shutil.which("n8nctl") or "n8nctl"


def _under_system_root(config: AppConfig, path: Path) -> Path:
    if path.is_absolute():
        return config.system_root / path.relative_to(path.anchor)
    return config.system_root / path


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    prefix = privilege_prefix(config.use_sudo)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    compose = ComposeProvider(
        project_dir=config.install_root,
        project_name=config.compose.project_name,
        docker_bin=config.compose.docker_bin,
        helper_image=config.compose.helper_image,
        timeout=config.command_timeout,
    )
    security = config.security
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        compose=compose,
        firewall=UfwFirewall(ufw_bin=security.ufw_bin, prefix=prefix),
        intrusion=Fail2banManager(
            systemctl_bin=config.systemd.systemctl_bin,
            client_bin=security.fail2ban_bin,
            prefix=prefix,
        ),
        ca_client=CertbotClient(
            certbot_bin=config.tls.certbot_bin,
            config_dir=_under_system_root(config, config.tls.letsencrypt_dir),
            prefix=prefix,
        ),
        health_probe=HttpsHealthProbe(timeout=config.health.request_timeout),
        systemd=SystemdProvider(
            templates=templates,
            systemd_dir=config.systemd.unit_dir,
            unit=config.systemd.unit_name,
            systemctl_bin=config.systemd.systemctl_bin,
            prefix=prefix,
        ),
        scheduler=CronScheduler(crontab_bin=config.schedule.crontab_bin),
        dns_checker=DnsPropagationChecker(dig_bin=security.dig_bin),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    root = ctx.find_root()
    if isinstance(root.obj, RuntimeContext):
        return root.obj
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the n8nctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"n8nctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _locked(runtime: RuntimeContext, op: OperationScope) -> Iterator[None]:
    """Hold the global stack lock, exiting cleanly on contention."""
    try:
        with runtime.locks.stack_lock() as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            yield
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


@contextmanager
def _provider_errors(op: OperationScope) -> Iterator[None]:
    """Translate provider and domain errors into exit codes."""
    try:
        yield
    except PROVIDER_ERRORS as exc:
        _command_error(op, str(exc), rc=ExitCode.PROVIDER)
    except FAILURE_ERRORS as exc:
        _command_error(op, str(exc), rc=ExitCode.FAILURE)


def _restore_exit_code(exc: RestoreError) -> ExitCode:
    if exc.validation is not None and not exc.validation.ok:
        return ExitCode.VALIDATION
    return ExitCode.FAILURE


def _require_installed(runtime: RuntimeContext, op: OperationScope) -> None:
    if not is_installed(runtime.config):
        _command_error(
            op,
            f"n8n is not installed at {runtime.config.install_root}. Run 'n8nctl deploy' first.",
            rc=ExitCode.FAILURE,
        )


def _load_env(runtime: RuntimeContext, op: OperationScope) -> EnvironmentRecord:
    try:
        return EnvironmentRecord.load_or_empty(runtime.config.env_file)
    except EnvironmentRecordError as exc:
        _command_error(op, str(exc), rc=ExitCode.FAILURE)


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"  # pragma: no cover - loop always returns


def _render_validation(report: ValidationReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Component", style="bold")
    table.add_column("Kind")
    table.add_column("Present")
    table.add_column("Entries")
    table.add_column("State")
    for check in report.components.values():
        if check.corrupt:
            state = f"[red]corrupt[/red] ({escape(check.error or '')})"
        elif check.placeholder:
            state = "[yellow]empty[/yellow]"
        elif check.present:
            state = "[green]ok[/green]"
        else:
            state = "[dim]absent[/dim]"
        table.add_row(
            check.kind.value,
            "core" if check.kind.is_core else "security",
            "yes" if check.present else "no",
            "" if check.entries is None else str(check.entries),
            state,
        )
    console.print(table)
    if report.legacy_sql:
        console.print(f"Database: legacy SQL dump {escape(report.legacy_sql)}")
    for reason in report.reasons:
        console.print(f"[red]{escape(reason)}[/red]")
    _print_warnings(report.warnings)


def _render_restore_report(report: RestoreReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for step in report.steps:
        style = STATUS_STYLES.get(step.status, "white")
        table.add_row(step.name, f"[{style}]{step.status}[/{style}]", escape(step.detail or ""))
    console.print(table)
    if report.adaptation is not None and report.adaptation.regenerated:
        console.print(
            "[cyan]Self-signed certificate regenerated for this host's addresses: "
            f"{escape(', '.join(report.adaptation.current_ips) or 'none')}[/cyan]"
        )


def _render_backup_result(result: BackupResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Component", style="bold")
    table.add_column("File")
    table.add_column("Size")
    table.add_column("Note")
    for item in result.components:
        name = item.path.name if item.path is not None else "(missing)"
        size = _format_size(item.size_bytes) if item.path is not None else ""
        note = "empty placeholder" if item.placeholder else (item.error or "")
        table.add_row(item.kind.value, name, size, escape(note))
    console.print(table)


def _confirm(message: str) -> bool:
    return typer.confirm(message, default=False)


def _restart_proxy(runtime: RuntimeContext, op: OperationScope) -> None:
    proxy = runtime.config.compose.services.proxy
    try:
        runtime.compose.restart_service(proxy)
    except ComposeError as exc:
        op.add_step("proxy.restart", status="warning", detail=str(exc))
        console.print(
            f"[yellow]Warning:[/yellow] nginx restart failed: {escape(str(exc))}. "
            "Run 'n8nctl restart' to apply the certificate."
        )
        return
    op.add_step("proxy.restart", status="success")


# Lifecycle ---------------------------------------------------------------
@app.command()
def deploy(
    ctx: typer.Context,
    restore_archive: Path | None = typer.Option(
        None,
        "--restore",
        dir_okay=False,
        help="Seed the new installation from an existing backup archive.",
    ),
    admin_user: str = typer.Option("admin", "--admin-user", help="n8n basic auth user."),
    admin_password: str | None = typer.Option(
        None,
        "--admin-password",
        help="n8n basic auth password (prompted twice when omitted).",
    ),
    timezone: str | None = typer.Option(
        None,
        "--timezone",
        help="Timezone for n8n (defaults to the host timezone).",
    ),
    firewall: bool = typer.Option(False, "--firewall", help="Record the firewall as enabled."),
    fail2ban: bool = typer.Option(False, "--fail2ban", help="Record fail2ban as enabled."),
    no_systemd: bool = typer.Option(False, "--no-systemd", help="Skip the systemd unit."),
    no_cron: bool = typer.Option(False, "--no-cron", help="Skip the daily maintenance schedule."),
    no_start: bool = typer.Option(
        False, "--no-start", help="Do not pull images or start services."
    ),
) -> None:
    """Deploy a new n8n stack."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "deploy",
        args={
            "restore": str(restore_archive) if restore_archive else None,
            "admin_user": admin_user,
            "timezone": timezone,
            "firewall": firewall,
            "fail2ban": fail2ban,
            "systemd": not no_systemd,
            "cron": not no_cron,
            "start": not no_start,
        },
        target={"kind": "stack", "root": str(config.install_root)},
    ) as op:
        if is_installed(config):
            _command_error(
                op,
                f"n8n is already installed at {config.install_root}. Run 'n8nctl uninstall' first.",
                rc=ExitCode.FAILURE,
            )

        password = admin_password
        if password is None and restore_archive is None:
            password = typer.prompt("Admin password", hide_input=True)
            repeated = typer.prompt("Confirm admin password", hide_input=True)
            if password != repeated:
                _command_error(op, "Passwords do not match.", rc=ExitCode.FAILURE)

        options = DeployOptions(
            admin_password=password,
            admin_user=admin_user,
            timezone=timezone,
            restore_archive=restore_archive,
            firewall=firewall,
            fail2ban=fail2ban,
            install_systemd=not no_systemd,
            install_cron=not no_cron,
            start=not no_start,
        )
        deployer = StackDeployer(
            config,
            runtime.compose,
            templates=runtime.templates,
            certificates=runtime.certificates,
            systemd=runtime.systemd,
            scheduler=runtime.scheduler,
            restorer=runtime.restorer() if restore_archive is not None else None,
            n8nctl_bin=_self_command(),
            sleep=runtime.sleep,
        )
        with _locked(runtime, op):
            try:
                report = deployer.deploy(options)
            except RestoreError as exc:
                _command_error(op, str(exc), rc=_restore_exit_code(exc))
            except PROVIDER_ERRORS as exc:
                _command_error(op, str(exc), rc=ExitCode.PROVIDER)
            except FAILURE_ERRORS as exc:
                _command_error(op, str(exc), rc=ExitCode.FAILURE)

        for step in report.steps:
            op.add_step(step)
        if report.restore is not None:
            _render_restore_report(report.restore)
        _print_warnings(report.warnings)
        console.print(f"[green]n8n deployed at {escape(str(config.install_root))}.[/green]")
        console.print("Open https://<this-host>/ in a browser; the certificate is self-signed.")
        if report.warnings:
            op.warning(
                "Deployment completed with warnings.",
                warnings=report.warnings,
                changed=len(report.steps),
            )
        else:
            op.success("Deployment completed.", changed=len(report.steps), context=report.to_dict())


@app.command()
def uninstall(
    ctx: typer.Context,
    backup: bool | None = typer.Option(
        None,
        "--backup/--no-backup",
        help="Take a final backup before removing everything (asked when omitted).",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Remove the stack, its volumes, unit, schedule and firewall rules."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "uninstall",
        args={"backup": backup, "yes": yes},
        target={"kind": "stack", "root": str(config.install_root)},
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)

        take_backup = backup
        if take_backup is None:
            take_backup = yes or typer.confirm("Create a backup before uninstalling?", default=True)
        if not take_backup and not yes:
            console.print(
                "[bold red]This permanently deletes the database, workflows and "
                "credentials.[/bold red]"
            )
            answer = typer.prompt("Type 'yes' to continue", default="", show_default=False)
            if answer.strip().lower() != "yes":
                console.print("[yellow]Uninstall cancelled.[/yellow]")
                op.warning("Uninstall cancelled by operator.", warnings=["user-cancelled"])
                return

        remover = StackRemover(
            config,
            runtime.compose,
            composer=runtime.composer(env),
            systemd=runtime.systemd,
            scheduler=runtime.scheduler,
            firewall=runtime.firewall if env.firewall_enabled else None,
            confirm_continue=(lambda _message: False) if yes else _confirm,
        )
        with _locked(runtime, op):
            try:
                report = remover.uninstall(backup=take_backup)
            except UninstallCancelled as exc:
                console.print(f"[yellow]{escape(str(exc))}[/yellow]")
                op.warning(str(exc), warnings=["backup-failed"])
                raise typer.Exit(code=ExitCode.FAILURE) from exc

        for step in report.steps:
            op.add_step(step)
        if report.backup is not None and report.backup.ok:
            console.print(f"Final backup: {escape(str(report.backup.archive))}")
        _print_warnings(report.warnings)
        console.print("[green]n8n has been uninstalled.[/green]")
        if report.warnings:
            op.warning(
                "Uninstall completed with warnings.",
                warnings=report.warnings,
                changed=len(report.steps),
            )
        else:
            op.success("Uninstall completed.", changed=len(report.steps), context=report.to_dict())


@app.command()
def update(ctx: typer.Context) -> None:
    """Back up, pull newer images and restart the stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("update", target={"kind": "stack"}) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        with _locked(runtime, op), _provider_errors(op):
            report = update_stack(runtime.config, runtime.compose, runtime.composer(env))
        op.add_step("backup", detail=str(report.backup.archive))
        _print_warnings(report.backup.warnings)
        before = str(report.before) if report.before else "unknown"
        after = str(report.after) if report.after else "not running"
        if report.changed:
            console.print(f"[green]n8n updated: {before} -> {after}[/green]")
        else:
            console.print(f"n8n version unchanged ({after}).")
        op.success("Update completed.", changed=int(report.changed), context=report.to_dict())


# Backups -----------------------------------------------------------------
@app.command()
def backup(
    ctx: typer.Context,
    leave_stopped: bool = typer.Option(
        False,
        "--leave-stopped",
        help="Do not restart services after the snapshot.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a full backup archive of the stack."""
    runtime = _get_runtime(ctx)
    policy = RestartPolicy.LEAVE_STOPPED if leave_stopped else RestartPolicy.RESTART
    with runtime.logger.operation(
        "backup",
        args={"restart_policy": policy.value, "json": json_output},
        target={"kind": "backup", "dir": str(runtime.config.backup_dir)},
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        with _locked(runtime, op), _provider_errors(op):
            result = runtime.composer(env).compose(policy)

        for item in result.components:
            status = "success" if item.ok else "warning"
            op.add_step(f"archive.{item.kind.value}", status=status, detail=item.error)
        if result.removed:
            op.add_step("retention", detail=[path.name for path in result.removed])

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            _render_backup_result(result)
            _print_warnings(result.warnings)

        if not result.ok:
            validation_failed = result.validation is not None and not result.validation.ok
            _command_error(
                op,
                result.error or "Backup failed.",
                rc=ExitCode.VALIDATION if validation_failed else ExitCode.FAILURE,
            )
        if not json_output:
            size = _format_size(result.archive.stat().st_size)
            console.print(f"[green]Backup created: {escape(str(result.archive))} ({size})[/green]")
            if result.removed:
                console.print(f"Removed {len(result.removed)} old backup(s).")
        op.success(
            "Backup created.",
            changed=1,
            backups=[str(result.archive)],
            context={"warnings": result.warnings},
        )


@app.command("backups")
def backups_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backup archives, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups",
        args={"json": json_output},
        target={"kind": "backup", "dir": str(runtime.config.backup_dir)},
    ) as op:
        archives = list_archives(runtime.config.backup_dir)
        if json_output:
            console.print_json(data={"backups": [info.to_dict() for info in archives]})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", style="bold")
        table.add_column("Archive")
        table.add_column("Created")
        table.add_column("Size")
        if not archives:
            table.add_row("(none)", "", "", "")
        for index, info in enumerate(archives, start=1):
            table.add_row(
                str(index),
                info.path.name,
                info.created.strftime("%Y-%m-%d %H:%M:%S"),
                _format_size(info.size_bytes),
            )
        console.print(table)
        op.success("Reported backup list.", changed=0)


@app.command()
def validate(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., dir_okay=False, help="Backup archive to check."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check that an archive is complete and readable without restoring it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"archive": str(archive), "json": json_output},
        target={"kind": "backup", "path": str(archive)},
    ) as op:
        validator = BackupValidator(min_size_bytes=runtime.config.backups.min_size_bytes)
        report = validator.validate(archive)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_validation(report)
        if not report.ok:
            _command_error(
                op,
                f"Archive {archive.name} failed validation.",
                rc=ExitCode.VALIDATION,
                errors=report.reasons,
            )
        if not json_output:
            console.print(f"[green]Archive {escape(archive.name)} is valid.[/green]")
        if report.warnings:
            op.warning("Archive valid with warnings.", warnings=report.warnings)
        else:
            op.success("Archive valid.")


def _select_archive(runtime: RuntimeContext, op: OperationScope, latest: bool) -> Path:
    archives = list_archives(runtime.config.backup_dir)
    if not archives:
        _command_error(op, f"No backups found in {runtime.config.backup_dir}.", rc=ExitCode.FAILURE)
    if latest:
        return archives[0].path
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="bold")
    table.add_column("Archive")
    table.add_column("Size")
    for index, info in enumerate(archives, start=1):
        table.add_row(str(index), info.path.name, _format_size(info.size_bytes))
    console.print(table)
    choice = typer.prompt("Select backup number", type=int)
    if choice < 1 or choice > len(archives):
        _command_error(op, f"Invalid selection: {choice}.", rc=ExitCode.FAILURE)
    return archives[choice - 1].path


@app.command()
def restore(
    ctx: typer.Context,
    archive: Path | None = typer.Argument(
        None,
        dir_okay=False,
        help="Archive to restore (choose interactively when omitted).",
    ),
    latest: bool = typer.Option(False, "--latest", help="Restore the newest archive."),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Replace the stack's data and configuration with a backup archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={
            "archive": str(archive) if archive else None,
            "latest": latest,
            "yes": yes,
            "json": json_output,
        },
        target={"kind": "stack", "root": str(runtime.config.install_root)},
    ) as op:
        _require_installed(runtime, op)
        chosen = archive or _select_archive(runtime, op, latest)
        op.add_step("select", detail=chosen.name)
        restorer = runtime.restorer(confirm=None if yes else _confirm)
        with _locked(runtime, op):
            try:
                report = restorer.restore(chosen)
            except RestoreCancelled as exc:
                console.print(f"[yellow]{escape(str(exc))}[/yellow]")
                op.warning("Restore cancelled by operator.", warnings=["user-cancelled"])
                return
            except RestoreError as exc:
                if exc.validation is not None and not json_output:
                    _render_validation(exc.validation)
                _command_error(op, str(exc), rc=_restore_exit_code(exc))

        for step in report.steps:
            op.add_step(step.name, status=step.status, detail=step.detail)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_restore_report(report)
            _print_warnings(report.warnings)
        if not report.ok:
            _command_error(
                op, "Restore finished with errors.", rc=ExitCode.FAILURE, errors=report.errors
            )
        if not json_output:
            console.print(f"[green]Restored from {escape(chosen.name)}.[/green]")
        if report.warnings:
            op.warning(
                "Restore completed with warnings.",
                warnings=report.warnings,
                changed=len(report.restored),
            )
        else:
            op.success("Restore completed.", changed=len(report.restored))


@app.command()
def maintenance(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run the scheduled maintenance: backup, certificate renewal and log housekeeping."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "maintenance",
        args={"json": json_output},
        target={"kind": "stack"},
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        manager = runtime.certificates(env)
        with _locked(runtime, op):
            report = run_maintenance(runtime.config, runtime.composer(env), manager)
        if report.certificate_actions:
            try:
                manager.render_proxy_config()
            except TemplateError as exc:
                report.warnings.append(f"nginx configuration not updated: {exc}")
            _restart_proxy(runtime, op)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            if report.backup is not None and report.backup.ok:
                console.print(f"Backup: {escape(str(report.backup.archive))}")
            for action in report.certificate_actions:
                console.print(f"Certificates: {escape(action)}")
            if report.compressed or report.pruned:
                console.print(
                    f"Logs: {len(report.compressed)} compressed, {len(report.pruned)} removed"
                )
            _print_warnings(report.warnings)
        if not report.ok:
            _command_error(
                op, "Maintenance backup failed.", rc=ExitCode.FAILURE, errors=report.warnings
            )
        if report.warnings:
            op.warning("Maintenance completed with warnings.", warnings=report.warnings)
        else:
            op.success("Maintenance completed.", context=report.to_dict())


# Service control -----------------------------------------------------------
def _render_states(states: Sequence[ServiceState]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service", style="bold")
    table.add_column("Container")
    table.add_column("State")
    table.add_column("Health")
    if not states:
        table.add_row("(none)", "", "not running", "")
    for state in states:
        style = "green" if state.healthy else "red"
        table.add_row(
            state.service,
            state.name,
            f"[{style}]{state.state}[/{style}]",
            state.health or "-",
        )
    console.print(table)


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the state of the stack's containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status", args={"json": json_output}, target={"kind": "stack"}
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        if json_output:
            with _provider_errors(op):
                states = runtime.compose.service_states()
            console.print_json(
                data={
                    "install_root": str(runtime.config.install_root),
                    "cert_mode": env.cert_mode.value,
                    "services": [state.to_dict() for state in states],
                }
            )
        else:
            with _provider_errors(op):
                text = runtime.compose.status_text()
            console.out(text.rstrip() or "No containers.", highlight=False)
            console.print(f"Certificate mode: {env.cert_mode.value}")
        op.success("Reported stack status.", changed=0)


@app.command()
def logs(
    ctx: typer.Context,
    service: str | None = typer.Argument(None, help="Service to show (all when omitted)."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new log lines."),
    tail: int | None = typer.Option(None, "--tail", "-n", help="Number of lines to show."),
) -> None:
    """Show service logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"service": service, "follow": follow, "tail": tail},
        target={"kind": "stack"},
    ) as op:
        _require_installed(runtime, op)
        with _provider_errors(op):
            output = runtime.compose.logs(service, follow=follow, tail=tail)
        if output:
            console.out(output, end="", highlight=False)
        op.success("Displayed logs.", changed=0)


@app.command()
def health(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Check containers, the database and the HTTPS endpoint."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "health", args={"json": json_output}, target={"kind": "stack"}
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        checks: dict[str, dict[str, object]] = {}
        with _provider_errors(op):
            states = runtime.compose.service_states()
        for state in states:
            checks[f"container:{state.service}"] = {
                "ok": state.healthy,
                "detail": state.health or state.state,
            }

        database = config.compose.services.database
        try:
            ready = runtime.compose.exec_in_service(
                database, ["pg_isready", "-U", config.compose.db_user], check=False
            )
        except ComposeError as exc:
            checks["postgres"] = {"ok": False, "detail": str(exc)}
        else:
            checks["postgres"] = {
                "ok": ready.returncode == 0,
                "detail": (ready.stdout or "").strip(),
            }

        if runtime.health_probe is not None:
            manager = runtime.certificates(env)
            url, verify = health_target(
                env.cert_mode,
                env.ca_domain,
                manager.self_signed.certificate,
                config.health.endpoint,
            )
            probe = runtime.health_probe.check(url, verify=verify)
            checks["endpoint"] = {
                "ok": probe.ok,
                "detail": (
                    f"{url} -> {probe.status_code}" if probe.status_code else (probe.error or url)
                ),
            }

        healthy = bool(checks) and all(bool(item["ok"]) for item in checks.values())
        if json_output:
            console.print_json(data={"healthy": healthy, "checks": checks})
        else:
            _render_states(states)
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Check", style="bold")
            table.add_column("Result")
            table.add_column("Detail")
            for name, item in checks.items():
                result = "[green]ok[/green]" if item["ok"] else "[red]failed[/red]"
                table.add_row(name, result, escape(str(item["detail"])))
            console.print(table)
        for name, item in checks.items():
            op.add_step(name, status="success" if item["ok"] else "failed", detail=item["detail"])
        if not healthy:
            _command_error(op, "One or more health checks failed.", rc=ExitCode.FAILURE)
        op.success("All health checks passed.", changed=0)


@app.command()
def version(ctx: typer.Context) -> None:
    """Show n8nctl and n8n versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("version", target={"kind": "meta", "scope": "version"}) as op:
        _require_installed(runtime, op)
        detected = app_version(runtime.compose, runtime.config.compose.services.app)
        console.print(f"n8nctl {__version__}")
        console.print(f"n8n {detected if detected else 'not running'}")
        op.success(
            "Reported versions.",
            changed=0,
            context={"n8n": str(detected) if detected else None},
        )


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", target={"kind": "stack"}) as op:
        _require_installed(runtime, op)
        with _locked(runtime, op), _provider_errors(op):
            runtime.compose.start_services()
        console.print("[green]Services started.[/green]")
        op.success("Services started.", changed=1)


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop the stack (data volumes are kept)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("stop", target={"kind": "stack"}) as op:
        _require_installed(runtime, op)
        with _locked(runtime, op), _provider_errors(op):
            runtime.compose.stop_services()
        console.print("[green]Services stopped.[/green]")
        op.success("Services stopped.", changed=1)


@app.command()
def restart(
    ctx: typer.Context,
    recreate: bool = typer.Option(
        False,
        "--recreate",
        help="Recreate containers so configuration changes take effect.",
    ),
) -> None:
    """Restart (or recreate) the stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart", args={"recreate": recreate}, target={"kind": "stack"}
    ) as op:
        _require_installed(runtime, op)
        with _locked(runtime, op), _provider_errors(op):
            if recreate:
                runtime.compose.recreate_services()
            else:
                runtime.compose.restart_services()
        message = "Services recreated." if recreate else "Services restarted."
        console.print(f"[green]{message}[/green]")
        op.success(message, changed=1)


MENU_ITEMS = (
    ("1", "View status"),
    ("2", "View logs"),
    ("3", "Restart services"),
    ("4", "Recreate services"),
    ("5", "Create backup"),
    ("6", "Restore backup"),
    ("7", "Update n8n"),
    ("8", "Health check"),
    ("9", "Show version"),
    ("10", "Renew certificates"),
    ("11", "Show environment variables"),
    ("0", "Quit"),
)


@app.command()
def manage(ctx: typer.Context) -> None:
    """Interactive management menu."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("manage", target={"kind": "stack"}) as op:
        _require_installed(runtime, op)
        actions: dict[str, Callable[[], None]] = {
            "1": lambda: status(ctx, json_output=False),
            "2": lambda: logs(ctx, service=_prompt_service(runtime), follow=False, tail=200),
            "3": lambda: restart(ctx, recreate=False),
            "4": lambda: restart(ctx, recreate=True),
            "5": lambda: backup(ctx, leave_stopped=False, json_output=False),
            "6": lambda: restore(ctx, archive=None, latest=False, yes=False, json_output=False),
            "7": lambda: update(ctx),
            "8": lambda: health(ctx, json_output=False),
            "9": lambda: version(ctx),
            "10": lambda: cert_renew(ctx, force=False),
            "11": lambda: env_show(ctx, json_output=False),
        }
        selections: list[str] = []
        while True:
            console.print("\n[bold blue]n8n management[/bold blue]")
            for key, label in MENU_ITEMS:
                console.print(f"  {key:>2}) {label}")
            choice = typer.prompt("Select option", default="0").strip()
            if choice == "0":
                break
            action = actions.get(choice)
            if action is None:
                console.print("[red]Invalid option.[/red]")
                continue
            selections.append(choice)
            try:
                action()
            except typer.Exit as exc:
                if exc.exit_code:
                    console.print(
                        f"[yellow]Action finished with exit code {exc.exit_code}.[/yellow]"
                    )
        op.success("Management menu closed.", changed=0, context={"selections": selections})


def _prompt_service(runtime: RuntimeContext) -> str | None:
    services = runtime.config.compose.services
    choice = typer.prompt(
        f"Service ({services.app}, {services.database}, {services.proxy}, all)",
        default="all",
    ).strip()
    return None if choice in {"", "all"} else choice


# Certificates --------------------------------------------------------------
def _render_identity(identity: IdentityStatus) -> list[str]:
    if not identity.present:
        active = "yes" if identity.active else ""
        return [identity.mode.value, active, "[dim]absent[/dim]", "", "", ""]
    remaining = identity.days_remaining()
    expiry = identity.not_valid_after.strftime("%Y-%m-%d") if identity.not_valid_after else ""
    state = "[green]ok[/green]"
    if identity.error:
        state = f"[red]{escape(identity.error)}[/red]"
    elif identity.key_matches is False:
        state = "[red]key mismatch[/red]"
    elif remaining is not None and remaining < 0:
        state = "[red]expired[/red]"
    names = ", ".join([*identity.san_dns, *identity.san_ips])
    return [
        identity.mode.value,
        "yes" if identity.active else "",
        state,
        escape(identity.subject or ""),
        f"{expiry} ({remaining}d)" if remaining is not None else expiry,
        escape(names),
    ]


@cert_app.command("status")
def cert_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show both certificate identities and which one is active."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert status", args={"json": json_output}, target={"kind": "tls"}
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        manager = runtime.certificates(env)
        identities = manager.status()
        if json_output:
            console.print_json(
                data={
                    "mode": manager.mode.value,
                    "domain": env.ca_domain,
                    "identities": [identity.to_dict() for identity in identities],
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Identity", style="bold")
            table.add_column("Active")
            table.add_column("State")
            table.add_column("Subject")
            table.add_column("Expires")
            table.add_column("Names")
            for identity in identities:
                table.add_row(*_render_identity(identity))
            console.print(table)
        op.success("Reported certificate status.", changed=0)


@cert_app.command("renew")
def cert_renew(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Renew even when not close to expiry."),
) -> None:
    """Renew certificates that are inside the renewal window."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert renew", args={"force": force}, target={"kind": "tls"}
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        manager = runtime.certificates(env)
        with _locked(runtime, op), _provider_errors(op):
            if force:
                actions: list[str] = []
                manager.issue_self_signed()
                actions.append("self-signed certificate reissued")
                if env.ca_domain:
                    manager.renew_ca(force=True)
                    actions.append(f"CA-issued certificate renewed for {env.ca_domain}")
            else:
                actions = manager.renew_if_expiring()
            if actions:
                manager.render_proxy_config()
        if not actions:
            console.print("Certificates are not due for renewal.")
            op.success("No certificates renewed.", changed=0)
            return
        for action in actions:
            op.add_step("renew", detail=action)
            console.print(f"[green]{escape(action)}[/green]")
        _restart_proxy(runtime, op)
        op.success("Certificates renewed.", changed=len(actions))


@cert_app.command("issue")
def cert_issue(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to obtain a certificate for."),
    provider: str = typer.Option(
        ...,
        "--provider",
        help="DNS provider (cloudflare, digitalocean, route53, manual).",
    ),
    email: str = typer.Option(..., "--email", help="ACME account e-mail address."),
    credentials: Path | None = typer.Option(
        None,
        "--credentials",
        dir_okay=False,
        help="Credentials file for the DNS provider plugin.",
    ),
    activate: bool = typer.Option(
        True,
        "--activate/--no-activate",
        help="Make the CA-issued certificate the default identity.",
    ),
) -> None:
    """Obtain a CA-issued certificate through a DNS-01 challenge."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert issue",
        args={"domain": domain, "provider": provider, "email": email, "activate": activate},
        target={"kind": "tls", "domain": domain},
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        manager = runtime.certificates(env)
        with _locked(runtime, op), _provider_errors(op):
            superseded = manager.issue_ca(
                domain, provider=provider, email=email, credentials=credentials
            )
            op.add_step("issue", detail=domain)
            if activate:
                manager.switch_mode(CertMode.CA)
                op.add_step("mode", detail=CertMode.CA.value)
            else:
                manager.render_proxy_config()
        _restart_proxy(runtime, op)
        console.print(f"[green]Certificate issued for {escape(domain)}.[/green]")
        if superseded:
            kept = ", ".join(path.name for path in superseded)
            console.print(f"Previous files kept as: {escape(kept)}")
        op.success(
            "Certificate issued.",
            changed=1,
            context={"superseded": [str(path) for path in superseded]},
        )


@cert_app.command("mode")
def cert_mode(
    ctx: typer.Context,
    mode: str = typer.Argument(
        ..., help="Certificate mode to serve by default (self-signed or ca)."
    ),
) -> None:
    """Switch which certificate identity nginx serves by default."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cert mode", args={"mode": mode}, target={"kind": "tls"}) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        manager = runtime.certificates(env)
        with _locked(runtime, op), _provider_errors(op):
            selected = CertMode.parse(mode)
            changed = manager.switch_mode(selected)
        if not changed:
            console.print(f"Certificate mode already {selected.value}.")
            op.success("Certificate mode unchanged.", changed=0)
            return
        _restart_proxy(runtime, op)
        console.print(f"[green]Certificate mode set to {selected.value}.[/green]")
        op.success("Certificate mode switched.", changed=1, context={"mode": selected.value})


@cert_app.command("adapt")
def cert_adapt(ctx: typer.Context) -> None:
    """Regenerate the self-signed certificate when host addresses changed."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cert adapt", target={"kind": "tls"}) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        manager = runtime.certificates(env)
        with _locked(runtime, op), _provider_errors(op):
            result = manager.adapt_after_restore()
        op.add_step(
            "adapt",
            status="changed" if result.regenerated else "success",
            detail=result.reason,
        )
        console.print(escape(result.reason))
        if not result.regenerated:
            op.success("Certificate already matches host.", changed=0)
            return
        _restart_proxy(runtime, op)
        covered = escape(", ".join(result.current_ips))
        console.print(f"[green]Self-signed certificate now covers: {covered}[/green]")
        op.success("Self-signed certificate regenerated.", changed=1)


@contextmanager
def _tty_console() -> Iterator[Console]:
    """Yield a console on the controlling terminal; certbot captures stdout."""
    try:
        handle = open("/dev/tty", "w", encoding="utf-8")  # noqa: SIM115
    except OSError:
        yield Console(stderr=True)
        return
    with handle:
        yield Console(file=handle)


@cert_app.command("dns-hook", hidden=True)
def cert_dns_hook(ctx: typer.Context) -> None:
    """certbot manual auth hook: publish the TXT record and wait for propagation."""
    runtime = _get_runtime(ctx)
    domain = os.environ.get("CERTBOT_DOMAIN", "")
    validation = os.environ.get("CERTBOT_VALIDATION", "")
    with runtime.logger.operation("cert dns-hook", target={"kind": "tls", "domain": domain}) as op:
        if not domain or not validation:
            _command_error(
                op,
                "CERTBOT_DOMAIN and CERTBOT_VALIDATION must be set; "
                "this command is run by certbot.",
                rc=ExitCode.ENVIRONMENT,
            )
        with _tty_console() as tty:
            _wait_for_challenge(runtime, op, tty, domain, validation)


def _wait_for_challenge(
    runtime: RuntimeContext,
    op: OperationScope,
    tty: Console,
    domain: str,
    validation: str,
) -> None:
    tty.print("\n[bold]Create this DNS TXT record with your DNS provider:[/bold]")
    tty.print(f"  Name:  _acme-challenge.{escape(domain)}")
    tty.print(f"  Value: {escape(validation)}")
    tty.print("Waiting for the record to become visible...")
    security = runtime.config.security
    checker = runtime.dns_checker or DnsPropagationChecker(dig_bin=security.dig_bin)
    outcome = checker.wait(
        domain,
        validation,
        attempts=security.dns_propagation_attempts,
        interval=security.dns_propagation_interval,
    )
    if not outcome.succeeded:
        message = f"TXT record not visible after {outcome.attempts} checks; continuing anyway."
        tty.print(f"[yellow]{message}[/yellow]")
        op.warning(message, warnings=[message])
        return
    tty.print("[green]TXT record is visible.[/green]")
    op.success("DNS challenge record propagated.", context={"attempts": outcome.attempts})


# Environment record --------------------------------------------------------
@env_app.command("show")
def env_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List environment variables with sensitive values hidden."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env show", args={"json": json_output}, target={"kind": "env"}
    ) as op:
        _require_installed(runtime, op)
        env = _load_env(runtime, op)
        items = env.masked_items()
        if json_output:
            console.print_json(data={"variables": dict(items)})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Variable", style="bold")
            table.add_column("Value")
            table.add_column("System")
            for key, value in items:
                table.add_row(key, escape(value), "yes" if is_protected(key) else "")
            console.print(table)
        op.success("Reported environment variables.", changed=0)


def _backup_env_file(runtime: RuntimeContext) -> None:
    source = runtime.config.env_file
    if source.exists():
        shutil.copy2(source, source.with_name(".env.backup"))


def _apply_env_change(
    runtime: RuntimeContext,
    op: OperationScope,
    env: EnvironmentRecord,
    recreate: bool,
) -> None:
    with _provider_errors(op):
        if render_compose(runtime.config, runtime.templates, env):
            op.add_step("compose.render", status="changed")
        if recreate:
            runtime.compose.recreate_services()
            op.add_step("compose.recreate")
    if not recreate:
        console.print("Run 'n8nctl restart --recreate' for the change to take effect.")


@env_app.command("set")
def env_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Variable name (uppercase letters, digits, underscores)."),
    value: str = typer.Argument(..., help="Variable value."),
    recreate: bool = typer.Option(False, "--recreate", help="Recreate services afterwards."),
) -> None:
    """Add or update an environment variable."""
    runtime = _get_runtime(ctx)
    shown = MASK if is_sensitive(key) else value
    with runtime.logger.operation(
        "env set",
        args={"key": key, "value": shown, "recreate": recreate},
        target={"kind": "env", "key": key},
    ) as op:
        _require_installed(runtime, op)
        try:
            validate_key(key)
        except EnvironmentRecordError as exc:
            _command_error(op, str(exc), rc=ExitCode.FAILURE)
        with _locked(runtime, op):
            env = _load_env(runtime, op)
            existed = key in env
            _backup_env_file(runtime)
            with _provider_errors(op):
                changed = env.upsert(key, value)
                env.save()
            if not changed:
                console.print(f"{key} already has that value.")
                op.success("Environment unchanged.", changed=0)
                return
            _apply_env_change(runtime, op, env, recreate)
        verb = "updated" if existed else "added"
        console.print(f"[green]{key} {verb}.[/green]")
        op.success(f"Variable {verb}.", changed=1)


@env_app.command("unset")
def env_unset(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Variable name to remove."),
    recreate: bool = typer.Option(False, "--recreate", help="Recreate services afterwards."),
) -> None:
    """Remove an environment variable (system variables are protected)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env unset",
        args={"key": key, "recreate": recreate},
        target={"kind": "env", "key": key},
    ) as op:
        _require_installed(runtime, op)
        if is_protected(key):
            _command_error(op, f"Cannot remove system variable: {key}", rc=ExitCode.FAILURE)
        with _locked(runtime, op):
            env = _load_env(runtime, op)
            if key not in env:
                _command_error(op, f"Variable {key} not found.", rc=ExitCode.FAILURE)
            _backup_env_file(runtime)
            with _provider_errors(op):
                env.delete(key)
                env.save()
            _apply_env_change(runtime, op, env, recreate)
        console.print(f"[green]{key} removed.[/green]")
        op.success("Variable removed.", changed=1)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
