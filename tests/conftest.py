"""Pytest configuration helpers and shared fakes for the test suite."""

from __future__ import annotations

import io
import os
import subprocess
import tarfile
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from n8nctl.cli import RuntimeContext
from n8nctl.config import AppConfig, load_config
from n8nctl.deploy import generate_environment, render_compose
from n8nctl.envfile import EnvironmentRecord
from n8nctl.locking import LockManager
from n8nctl.logging import StructuredLogger
from n8nctl.providers.certbot import DnsProvider, IssuedCertificate
from n8nctl.providers.compose import ComposeError, ServiceState
from n8nctl.providers.health import ProbeResult
from n8nctl.providers.security import RuleCleanup
from n8nctl.templates import TemplateEngine
from n8nctl.tls import CertificateLifecycleManager

HOST_IPS = ["192.168.1.50"]
ADMIN_PASSWORD = "correct-horse"  # noqa: S105 - test fixture value


def make_certificate(
    common_name: str,
    *,
    days: int = 90,
    dns_names: Sequence[str] = (),
) -> tuple[bytes, bytes]:
    """Return a PEM certificate/key pair valid for *days*."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
    )
    names = [x509.DNSName(name) for name in (dns_names or (common_name,))]
    builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    cert = builder.sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


class FakeStack:
    """In-memory stand-in for the compose provider."""

    def __init__(self, *, volumes: Sequence[str] = ("n8n_postgres_data",)) -> None:
        self.calls: list[tuple[object, ...]] = []
        self.volumes: set[str] = set(volumes)
        self.running = True
        self.healthy = True
        self.fail_on: set[str] = set()
        self.restored_members: dict[str, list[str]] = {}
        self.sql_loaded: list[str] = []
        self.versions = ["1.60.0"]

    @property
    def names(self) -> list[str]:
        """Return the recorded call names in order."""
        return [str(call[0]) for call in self.calls]

    def _record(self, name: str, *args: object) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise ComposeError(f"docker compose {name} failed (exit 1): simulated")

    # ContainerRuntime ----------------------------------------------
    def stop_services(self) -> None:
        self._record("stop")
        self.running = False

    def start_services(self, services: Sequence[str] = ()) -> None:
        self._record("start", tuple(services))
        self.running = True

    def service_states(self) -> list[ServiceState]:
        self._record("ps")
        if not self.running:
            return []
        health = "healthy" if self.healthy else "unhealthy"
        return [
            ServiceState("n8n", "n8n-n8n-1", "running", health),
            ServiceState("postgres", "n8n-postgres-1", "running", "healthy"),
            ServiceState("nginx", "n8n-nginx-1", "running"),
        ]

    def volume_exists(self, volume: str) -> bool:
        return volume in self.volumes

    def create_volume(self, volume: str) -> None:
        self._record("volume-create", volume)
        self.volumes.add(volume)

    def remove_volume(self, volume: str) -> None:
        self._record("volume-rm", volume)
        self.volumes.discard(volume)

    def archive_volume(self, volume: str, out_dir: Path, filename: str) -> None:
        self._record("volume-archive", volume)
        payload = os.urandom(4096)
        with tarfile.open(out_dir / filename, "w:gz") as archive:
            for name, data in (("PG_VERSION", b"15\n"), ("base/16384/1259", payload)):
                info = tarfile.TarInfo(name)
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))

    def restore_volume(self, volume: str, archive: Path) -> None:
        self._record("volume-restore", volume)
        with tarfile.open(archive, "r:gz") as handle:
            self.restored_members[volume] = handle.getnames()

    def exec_in_service(
        self,
        service: str,
        args: Sequence[str],
        *,
        stdin_path: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        self._record("exec", service, tuple(args))
        if stdin_path is not None:
            self.sql_loaded.append(stdin_path.read_text(encoding="utf-8"))
        stdout = ""
        if args and args[0] == "n8n":
            stdout = self.versions[0] if len(self.versions) == 1 else self.versions.pop(0)
        elif args and args[0] == "pg_isready":
            stdout = "/var/run/postgresql:5432 - accepting connections"
        return subprocess.CompletedProcess(list(args), 0, stdout=stdout, stderr="")

    # StackRuntime / ManagedStack -----------------------------------
    def pull(self) -> None:
        self._record("pull")

    def down(self, *, remove_volumes: bool = False) -> None:
        self._record("down", remove_volumes)
        self.running = False
        if remove_volumes:
            self.volumes.clear()

    def remove_network(self, network: str) -> None:
        self._record("network-rm", network)

    def restart_services(self) -> None:
        self._record("restart")

    def restart_service(self, service: str) -> None:
        self._record("restart-service", service)

    def recreate_services(self) -> None:
        self._record("recreate")

    def status_text(self) -> str:
        self._record("status")
        return "NAME        SERVICE   STATUS\nn8n-n8n-1   n8n       running\n"

    def logs(
        self, service: str | None = None, *, follow: bool = False, tail: int | None = None
    ) -> str:
        self._record("logs", service, follow, tail)
        return "n8n  | Editor is now accessible\n"


class FakeFirewall:
    """Record firewall interactions."""

    def __init__(self) -> None:
        self.reloads = 0
        self.deleted_patterns: list[tuple[str, int]] = []

    def enable(self) -> None:
        return None

    def disable(self) -> None:
        return None

    def reload(self) -> None:
        self.reloads += 1

    def delete_rules_matching(self, pattern: str, *, cap: int) -> RuleCleanup:
        self.deleted_patterns.append((pattern, cap))
        return RuleCleanup(deleted=2, exhausted=False)


class FakeIntrusion:
    """Record fail2ban restarts."""

    def __init__(self) -> None:
        self.restarts = 0

    def restart(self) -> None:
        self.restarts += 1


class FakeProbe:
    """Answer health probes with a fixed outcome."""

    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.requests: list[tuple[str, bool | str]] = []

    def check(self, url: str, *, verify: bool | str) -> ProbeResult:
        self.requests.append((url, verify))
        if self.ok:
            return ProbeResult(url=url, ok=True, status_code=200)
        return ProbeResult(url=url, ok=False, error="Connection failed: refused")


class FakeCertificateAuthority:
    """Issue throwaway certificates instead of calling certbot."""

    def __init__(self, days: int = 90) -> None:
        self.days = days
        self.issued: list[tuple[str, str, str]] = []
        self.renewed: list[str] = []

    def issue(self, domain: str, *, email: str, provider: DnsProvider) -> IssuedCertificate:
        self.issued.append((domain, email, provider.name))
        cert_pem, key_pem = make_certificate(domain, days=self.days)
        return IssuedCertificate(domain=domain, fullchain_pem=cert_pem, privkey_pem=key_pem)

    def renew(self, domain: str, *, provider: DnsProvider) -> IssuedCertificate:
        self.renewed.append(domain)
        cert_pem, key_pem = make_certificate(domain, days=90)
        return IssuedCertificate(domain=domain, fullchain_pem=cert_pem, privkey_pem=key_pem)


class CommandRecorder:
    """Stand-in for ``subprocess.run`` answering from canned responses."""

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.kwargs: list[dict[str, object]] = []
        self._responses: list[tuple[tuple[str, ...], int, str, str, bool]] = []

    def respond(
        self,
        *tokens: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        once: bool = False,
    ) -> None:
        """Answer commands containing every token in *tokens*."""
        self._responses.append((tokens, returncode, stdout, stderr, once))

    def __call__(self, args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        command = list(args)
        self.commands.append(command)
        self.kwargs.append(kwargs)
        for index, (tokens, returncode, stdout, stderr, once) in enumerate(self._responses):
            if all(token in command for token in tokens):
                if once:
                    del self._responses[index]
                return subprocess.CompletedProcess(command, returncode, stdout, stderr)
        return subprocess.CompletedProcess(command, 0, "", "")


@pytest.fixture()
def commands(monkeypatch: pytest.MonkeyPatch) -> CommandRecorder:
    """Route provider subprocess calls to a :class:`CommandRecorder`."""
    recorder = CommandRecorder()
    monkeypatch.setattr("n8nctl.providers.commands.subprocess.run", recorder)
    return recorder


@pytest.fixture()
def config_factory(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building configs rooted under ``tmp_path``."""

    def factory(**overrides: object) -> AppConfig:
        values: dict[str, object] = {
            "install_root": str(tmp_path / "n8n"),
            "backup_dir": str(tmp_path / "backups"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "system_root": str(tmp_path / "sysroot"),
            "use_sudo": False,
            "lock_timeout": 1.0,
            "health": {"attempts": 1, "interval": 0, "db_ready_attempts": 2},
            "systemd": {"unit_dir": str(tmp_path / "systemd")},
        }
        for key, value in overrides.items():
            current = values.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                values[key] = {**current, **value}
            else:
                values[key] = value
        return load_config(config_file=tmp_path / "config.yml", env={}, overrides=values)

    return factory


@pytest.fixture()
def config(config_factory: Callable[..., AppConfig]) -> AppConfig:
    """Return the default test configuration."""
    return config_factory()


@pytest.fixture()
def templates() -> TemplateEngine:
    """Return an engine using the packaged templates only."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture()
def stack() -> FakeStack:
    """Return a fresh fake compose provider."""
    return FakeStack()


@pytest.fixture()
def certificates(
    config: AppConfig, templates: TemplateEngine
) -> Callable[[EnvironmentRecord], CertificateLifecycleManager]:
    """Return a certificate manager factory seeing :data:`HOST_IPS`."""

    def factory(env: EnvironmentRecord) -> CertificateLifecycleManager:
        return CertificateLifecycleManager(
            config,
            env,
            templates=templates,
            ca_client=FakeCertificateAuthority(),
            ip_detector=lambda: list(HOST_IPS),
        )

    return factory


@pytest.fixture()
def installed(
    config: AppConfig,
    templates: TemplateEngine,
    certificates: Callable[[EnvironmentRecord], CertificateLifecycleManager],
) -> AppConfig:
    """Lay out a complete installation and return its config."""
    for directory in (config.install_root, config.data_dir, config.certs_dir):
        directory.mkdir(parents=True, exist_ok=True)
    env = generate_environment(
        config.env_file,
        admin_user="admin",
        admin_password=ADMIN_PASSWORD,
        timezone="UTC",
        db_user=config.compose.db_user,
        db_name=config.compose.db_name,
    )
    render_compose(config, templates, env)
    manager = certificates(env)
    manager.issue_self_signed()
    manager.render_proxy_config()
    settings = config.data_dir / "config"
    settings.write_text('{"encryptionKey": "original-key"}\n', encoding="utf-8")
    settings.chmod(0o600)
    (config.data_dir / "nodes").mkdir()
    (config.data_dir / "nodes" / "package.json").write_text("{}\n", encoding="utf-8")
    return config


@pytest.fixture()
def security_files(config: AppConfig) -> AppConfig:
    """Populate fail2ban and ufw files under the system root."""
    root = config.system_root
    jail = root / "etc" / "fail2ban" / "jail.local"
    jail.parent.mkdir(parents=True, exist_ok=True)
    jail.write_text("[sshd]\nenabled = true\n", encoding="utf-8")
    rules = root / "etc" / "ufw" / "user.rules"
    rules.parent.mkdir(parents=True, exist_ok=True)
    rules.write_text("### tuple ### allow tcp 443 0.0.0.0/0 any 0.0.0.0/0 n8n\n", encoding="utf-8")
    return config


@pytest.fixture()
def runtime(config: AppConfig, templates: TemplateEngine, stack: FakeStack) -> RuntimeContext:
    """Return a CLI runtime wired to fakes."""
    return RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        compose=stack,
        firewall=FakeFirewall(),
        intrusion=FakeIntrusion(),
        ca_client=FakeCertificateAuthority(),
        health_probe=FakeProbe(),
        ip_detector=lambda: list(HOST_IPS),
        sleep=lambda _delay: None,
    )
