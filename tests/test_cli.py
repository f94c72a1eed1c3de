"""Tests for the n8nctl command line."""
from __future__ import annotations

import json
from pathlib import Path

from conftest import ADMIN_PASSWORD, CommandRecorder, FakeProbe, FakeStack
from typer.testing import CliRunner, Result

from n8nctl import __version__
from n8nctl.backups import BackupComposer, list_archives
from n8nctl.cli import RuntimeContext, app
from n8nctl.config import AppConfig
from n8nctl.envfile import MASK, EnvironmentRecord
from n8nctl.exit_codes import ExitCode
from n8nctl.providers.certbot import DnsPropagationChecker

runner = CliRunner()


def _invoke(runtime: RuntimeContext, args: list[str], **kwargs: object) -> Result:
    return runner.invoke(app, args, obj=runtime, **kwargs)


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _last_operation(config: AppConfig) -> dict[str, object]:
    lines = (config.logs_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def _backup(installed: AppConfig, stack: FakeStack) -> Path:
    result = BackupComposer(installed, stack).compose()
    assert result.ok, result.error
    stack.calls.clear()
    return result.archive


def test_version_option_outputs_package_version(runtime: RuntimeContext) -> None:
    """CLI ``--version`` flag emits the package version."""
    result = _invoke(runtime, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(runtime: RuntimeContext) -> None:
    """Bare invocation prints the command overview."""
    result = _invoke(runtime, [])

    assert result.exit_code == 0
    assert "self-hosted n8n stack" in result.stdout


def test_commands_require_an_installation(runtime: RuntimeContext) -> None:
    """Stack commands refuse to run before ``deploy``."""
    result = _invoke(runtime, ["status"])

    assert result.exit_code == ExitCode.FAILURE
    assert "not installed" in result.stdout
    assert _last_operation(runtime.config)["result"]["rc"] == 1


def test_status_json_lists_services(installed: AppConfig, runtime: RuntimeContext) -> None:
    """``status --json`` reports every container and the certificate mode."""
    result = _invoke(runtime, ["status", "--json"])

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["cert_mode"] == "self-signed"
    assert [item["service"] for item in payload["services"]] == ["n8n", "postgres", "nginx"]


def test_status_text_uses_compose_ps(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """The human view passes ``docker compose ps`` through."""
    result = _invoke(runtime, ["status"])

    assert result.exit_code == 0
    assert "n8n-n8n-1" in result.stdout
    assert "status" in stack.names


def test_deploy_fresh_stack(config: AppConfig, runtime: RuntimeContext, stack: FakeStack) -> None:
    """A fresh deployment writes the layout and starts the services."""
    result = _invoke(
        runtime,
        [
            "deploy",
            "--admin-password",
            ADMIN_PASSWORD,
            "--timezone",
            "UTC",
            "--no-systemd",
            "--no-cron",
        ],
    )

    assert result.exit_code == 0, result.stdout
    assert "n8n deployed" in result.stdout
    assert config.compose_file.exists()
    assert config.nginx_conf.exists()
    env = EnvironmentRecord.load(config.env_file)
    assert env.get("N8N_BASIC_AUTH_PASSWORD") == ADMIN_PASSWORD
    assert stack.names[:2] == ["pull", "start"]


def test_deploy_refuses_existing_install(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Deploying over an installation is an error."""
    result = _invoke(runtime, ["deploy", "--admin-password", ADMIN_PASSWORD])

    assert result.exit_code == ExitCode.FAILURE
    assert "already installed" in result.stdout


def test_deploy_password_mismatch(config: AppConfig, runtime: RuntimeContext) -> None:
    """The prompted password must be entered twice identically."""
    result = _invoke(runtime, ["deploy"], input="first\nsecond\n")

    assert result.exit_code == ExitCode.FAILURE
    assert "do not match" in result.stdout
    assert not config.env_file.exists()


def test_backup_list_and_validate(installed: AppConfig, runtime: RuntimeContext) -> None:
    """A CLI backup shows up in the listing and validates cleanly."""
    created = _invoke(runtime, ["backup"])
    assert created.exit_code == 0, created.stdout
    assert "Backup created" in created.stdout

    listing = _invoke(runtime, ["backups", "--json"])
    assert listing.exit_code == 0
    backups = _extract_json(listing.stdout)["backups"]
    assert len(backups) == 1

    archive = Path(backups[0]["path"])
    validated = _invoke(runtime, ["validate", str(archive), "--json"])
    assert validated.exit_code == 0
    assert _extract_json(validated.stdout)["ok"] is True


def test_backup_leave_stopped(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """``--leave-stopped`` skips the restart."""
    result = _invoke(runtime, ["backup", "--leave-stopped"])

    assert result.exit_code == 0, result.stdout
    assert "stop" in stack.names
    assert "start" not in stack.names


def test_validate_rejects_garbage(tmp_path: Path, runtime: RuntimeContext) -> None:
    """Invalid archives exit with the validation code."""
    archive = tmp_path / "full_backup_20260301_020000.tar.gz"
    archive.write_bytes(b"not an archive" * 200)

    result = _invoke(runtime, ["validate", str(archive)])

    assert result.exit_code == ExitCode.VALIDATION
    assert "failed validation" in result.stdout


def test_restore_latest_without_prompt(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """``restore --latest --yes`` replaces state from the newest archive."""
    archive = _backup(installed, stack)

    result = _invoke(runtime, ["restore", "--latest", "--yes"])

    assert result.exit_code == 0, result.stdout
    assert "Restored from" in result.stdout
    assert "volume-restore" in stack.names
    assert _last_operation(installed)["steps"][0]["detail"] == archive.name


def test_restore_declined_changes_nothing(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """Answering no at the confirmation leaves the stack alone."""
    archive = _backup(installed, stack)

    result = _invoke(runtime, ["restore", str(archive)], input="n\n")

    assert result.exit_code == 0
    assert "cancelled" in result.stdout
    assert "volume-restore" not in stack.names
    assert _last_operation(installed)["result"]["status"] == "warning"


def test_restore_interactive_selection(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """Without an archive the operator picks one from the list."""
    _backup(installed, stack)

    result = _invoke(runtime, ["restore", "--yes"], input="1\n")

    assert result.exit_code == 0, result.stdout
    assert "Select backup number" in result.stdout


def test_restore_without_backups(installed: AppConfig, runtime: RuntimeContext) -> None:
    """There must be something to restore."""
    result = _invoke(runtime, ["restore", "--latest", "--yes"])

    assert result.exit_code == ExitCode.FAILURE
    assert "No backups found" in result.stdout


def test_lock_contention_exits_with_environment_code(
    installed: AppConfig, runtime: RuntimeContext
) -> None:
    """A held stack lock makes mutating commands give up."""
    with runtime.locks.stack_lock():
        result = _invoke(runtime, ["start"])

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert _last_operation(installed)["result"]["rc"] == ExitCode.ENVIRONMENT


def test_provider_failure_exit_code(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """Compose failures exit with the provider code."""
    stack.fail_on.add("stop")

    result = _invoke(runtime, ["stop"])

    assert result.exit_code == ExitCode.PROVIDER
    assert "simulated" in result.stdout


def test_restart_recreate(installed: AppConfig, runtime: RuntimeContext, stack: FakeStack) -> None:
    """``--recreate`` recreates instead of restarting."""
    result = _invoke(runtime, ["restart", "--recreate"])

    assert result.exit_code == 0
    assert stack.names == ["recreate"]


def test_logs_forwards_options(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """Service and tail options reach the compose provider."""
    result = _invoke(runtime, ["logs", "n8n", "--tail", "50"])

    assert result.exit_code == 0
    assert "Editor is now accessible" in result.stdout
    assert stack.calls == [("logs", "n8n", False, 50)]


def test_health_reports_all_checks(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Containers, database and endpoint are all checked."""
    result = _invoke(runtime, ["health", "--json"])

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["healthy"] is True
    assert {"container:n8n", "postgres", "endpoint"} <= set(payload["checks"])


def test_health_fails_when_endpoint_down(installed: AppConfig, runtime: RuntimeContext) -> None:
    """A failing HTTPS probe fails the whole check."""
    runtime.health_probe = FakeProbe(ok=False)

    result = _invoke(runtime, ["health"])

    assert result.exit_code == ExitCode.FAILURE
    assert "health checks failed" in result.stdout


def test_version_command_reports_app_version(
    installed: AppConfig, runtime: RuntimeContext
) -> None:
    """Both the CLI and the running n8n version are shown."""
    result = _invoke(runtime, ["version"])

    assert result.exit_code == 0
    assert f"n8nctl {__version__}" in result.stdout
    assert "n8n 1.60.0" in result.stdout


def test_update_reports_version_change(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """Update backs up, pulls and reports the new version."""
    stack.versions = ["1.60.0", "1.61.0"]

    result = _invoke(runtime, ["update"])

    assert result.exit_code == 0, result.stdout
    assert "1.60.0 -> 1.61.0" in result.stdout
    assert len(list_archives(installed.backup_dir)) == 1


def test_uninstall_without_backup(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """``--no-backup --yes`` removes everything without prompting."""
    result = _invoke(runtime, ["uninstall", "--no-backup", "--yes"])

    assert result.exit_code == 0, result.stdout
    assert not installed.install_root.exists()
    assert ("down", True) in stack.calls
    assert "volume-rm" in stack.names


def test_uninstall_requires_typed_confirmation(
    installed: AppConfig, runtime: RuntimeContext
) -> None:
    """Skipping the backup interactively needs an explicit ``yes``."""
    result = _invoke(runtime, ["uninstall", "--no-backup"], input="no\n")

    assert result.exit_code == 0
    assert "cancelled" in result.stdout
    assert installed.install_root.exists()


def test_maintenance_takes_backup(installed: AppConfig, runtime: RuntimeContext) -> None:
    """The scheduled job creates a backup."""
    result = _invoke(runtime, ["maintenance"])

    assert result.exit_code == 0, result.stdout
    assert "Backup:" in result.stdout
    assert len(list_archives(installed.backup_dir)) == 1


def test_env_show_masks_secrets(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Sensitive values never appear in listings."""
    result = _invoke(runtime, ["env", "show", "--json"])

    assert result.exit_code == 0
    variables = _extract_json(result.stdout)["variables"]
    assert variables["N8N_BASIC_AUTH_PASSWORD"] == MASK
    assert variables["GENERIC_TIMEZONE"] == "UTC"
    assert ADMIN_PASSWORD not in result.stdout


def test_env_set_adds_variable(installed: AppConfig, runtime: RuntimeContext) -> None:
    """New variables are saved, the old file kept and compose re-rendered."""
    result = _invoke(runtime, ["env", "set", "N8N_LOG_LEVEL", "debug"])

    assert result.exit_code == 0, result.stdout
    assert "N8N_LOG_LEVEL added" in result.stdout
    assert EnvironmentRecord.load(installed.env_file).get("N8N_LOG_LEVEL") == "debug"
    assert (installed.install_root / ".env.backup").exists()
    assert "N8N_LOG_LEVEL" in installed.compose_file.read_text(encoding="utf-8")


def test_env_set_rejects_bad_key(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Keys must be upper-case identifiers."""
    result = _invoke(runtime, ["env", "set", "lower-case", "x"])

    assert result.exit_code == ExitCode.FAILURE


def test_env_set_masks_sensitive_value_in_log(
    installed: AppConfig, runtime: RuntimeContext
) -> None:
    """Secret values are not written to the operations log."""
    result = _invoke(runtime, ["env", "set", "SMTP_PASSWORD", "hunter2"])

    assert result.exit_code == 0, result.stdout
    assert "hunter2" not in json.dumps(_last_operation(installed))


def test_env_unset_protects_system_variables(
    installed: AppConfig, runtime: RuntimeContext
) -> None:
    """System variables cannot be removed."""
    result = _invoke(runtime, ["env", "unset", "POSTGRES_PASSWORD"])

    assert result.exit_code == ExitCode.FAILURE
    assert "Cannot remove system variable" in result.stdout


def test_env_unset_missing_variable(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Removing an unknown variable is an error."""
    result = _invoke(runtime, ["env", "unset", "N8N_LOG_LEVEL"])

    assert result.exit_code == ExitCode.FAILURE
    assert "not found" in result.stdout


def test_cert_status_json(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Both identities are reported with the active mode."""
    result = _invoke(runtime, ["cert", "status", "--json"])

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["mode"] == "self-signed"
    assert len(payload["identities"]) == 2


def test_cert_mode_ca_requires_certificate(
    installed: AppConfig, runtime: RuntimeContext
) -> None:
    """Switching to CA mode without a CA certificate fails."""
    result = _invoke(runtime, ["cert", "mode", "ca"])

    assert result.exit_code == ExitCode.FAILURE
    assert "cert issue" in result.stdout


def test_cert_mode_unknown_value(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Unknown modes are rejected."""
    result = _invoke(runtime, ["cert", "mode", "letsencrypt"])

    assert result.exit_code == ExitCode.FAILURE
    assert "Unknown certificate mode" in result.stdout


def test_cert_issue_activates_ca_mode(
    installed: AppConfig, runtime: RuntimeContext, stack: FakeStack
) -> None:
    """Issuing a certificate switches nginx over and restarts it."""
    result = _invoke(
        runtime,
        [
            "cert",
            "issue",
            "n8n.example.com",
            "--provider",
            "cloudflare",
            "--email",
            "ops@example.com",
            "--credentials",
            "/root/.secrets/cloudflare.ini",
        ],
    )

    assert result.exit_code == 0, result.stdout
    env = EnvironmentRecord.load(installed.env_file)
    assert env.cert_mode.value == "ca"
    assert env.ca_domain == "n8n.example.com"
    assert ("restart-service", "nginx") in stack.calls
    assert "n8n.example.com" in installed.nginx_conf.read_text(encoding="utf-8")


def test_cert_renew_nothing_due(installed: AppConfig, runtime: RuntimeContext) -> None:
    """A fresh self-signed certificate is not renewed."""
    result = _invoke(runtime, ["cert", "renew"])

    assert result.exit_code == 0
    assert "not due" in result.stdout


def test_cert_adapt_matching_host(installed: AppConfig, runtime: RuntimeContext) -> None:
    """Nothing is regenerated when the certificate already covers the host."""
    result = _invoke(runtime, ["cert", "adapt"])

    assert result.exit_code == 0, result.stdout
    assert _last_operation(installed)["result"]["changed"] == 0


def test_dns_hook_requires_certbot_environment(runtime: RuntimeContext) -> None:
    """The hook only makes sense when certbot runs it."""
    result = _invoke(
        runtime, ["cert", "dns-hook"], env={"CERTBOT_DOMAIN": "", "CERTBOT_VALIDATION": ""}
    )

    assert result.exit_code == ExitCode.ENVIRONMENT


def test_dns_hook_waits_for_propagation(
    runtime: RuntimeContext, commands: CommandRecorder
) -> None:
    """The hook polls resolvers until the challenge is visible."""
    commands.respond("dig", stdout='"token-value"\n')
    runtime.dns_checker = DnsPropagationChecker(sleep=lambda _delay: None)

    result = _invoke(
        runtime,
        ["cert", "dns-hook"],
        env={"CERTBOT_DOMAIN": "n8n.example.com", "CERTBOT_VALIDATION": "token-value"},
    )

    assert result.exit_code == 0
    record = _last_operation(runtime.config)
    assert record["result"]["status"] == "success"
    assert all("_acme-challenge.n8n.example.com" in command for command in commands.commands)
