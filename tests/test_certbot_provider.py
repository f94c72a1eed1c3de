"""Tests for the certbot client and DNS helpers."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import CommandRecorder

from n8nctl.providers.certbot import (
    CertbotClient,
    CertificateAuthorityError,
    DnsPropagationChecker,
    DnsProvider,
    manual_auth_hook,
)


def test_cloudflare_args_need_credentials() -> None:
    """Plugin providers point certbot at their credentials file."""
    provider = DnsProvider("cloudflare", credentials=Path("/root/.secrets/cloudflare.ini"))

    assert provider.certbot_args()[:3] == [
        "--dns-cloudflare",
        "--dns-cloudflare-credentials",
        "/root/.secrets/cloudflare.ini",
    ]
    with pytest.raises(CertificateAuthorityError, match="DNS_DIGITALOCEAN_CREDENTIALS"):
        DnsProvider("digitalocean").certbot_args()


def test_manual_provider_requires_hook() -> None:
    """The manual variant drives certbot through the auth hook."""
    hook = manual_auth_hook("/usr/local/bin/n8nctl", Path("/etc/n8nctl/my config.yml"))

    assert hook == "/usr/local/bin/n8nctl --config-file '/etc/n8nctl/my config.yml' cert dns-hook"
    assert DnsProvider("manual", auth_hook=hook).certbot_args()[-1] == hook
    with pytest.raises(CertificateAuthorityError, match="auth hook"):
        DnsProvider("manual").certbot_args()


def test_route53_uses_environment() -> None:
    """Route 53 reads AWS credentials from the environment."""
    provider = DnsProvider("route53", credentials=Path("/root/.aws/credentials"))

    assert provider.certbot_args() == ["--dns-route53"]
    assert provider.environment() == {"AWS_SHARED_CREDENTIALS_FILE": "/root/.aws/credentials"}


def test_issue_runs_certonly_and_reads_live_material(
    commands: CommandRecorder, tmp_path: Path
) -> None:
    """Issued material is read from certbot's live directory."""
    live = tmp_path / "live" / "n8n.example.com"
    live.mkdir(parents=True)
    (live / "fullchain.pem").write_bytes(b"CERT")
    (live / "privkey.pem").write_bytes(b"KEY")
    client = CertbotClient(config_dir=tmp_path)
    provider = DnsProvider("route53", credentials=Path("/root/.aws/credentials"))

    issued = client.issue("n8n.example.com", email="ops@example.com", provider=provider)

    command = commands.commands[0]
    assert command[:2] == ["certbot", "certonly"]
    assert "--dns-route53" in command
    assert ["-d", "n8n.example.com"] == command[command.index("-d") : command.index("-d") + 2]
    env = commands.kwargs[0]["env"]
    assert isinstance(env, dict)
    assert env["AWS_SHARED_CREDENTIALS_FILE"] == "/root/.aws/credentials"
    assert issued.fullchain_pem == b"CERT"
    assert issued.privkey_pem == b"KEY"


def test_privileged_renew_passes_environment_through_env(
    commands: CommandRecorder, tmp_path: Path
) -> None:
    """With sudo, provider variables are set through ``env``."""
    commands.respond("cat", stdout="PEM")
    client = CertbotClient(config_dir=tmp_path, prefix=("sudo",))
    provider = DnsProvider("route53", credentials=Path("/root/.aws/credentials"))

    issued = client.renew("n8n.example.com", provider=provider)

    assert commands.commands[0][:4] == [
        "sudo",
        "env",
        "AWS_SHARED_CREDENTIALS_FILE=/root/.aws/credentials",
        "certbot",
    ]
    assert commands.kwargs[0]["env"] is None
    assert issued.fullchain_pem == b"PEM"


def test_certbot_failure_raises(commands: CommandRecorder, tmp_path: Path) -> None:
    """certbot errors surface as :class:`CertificateAuthorityError`."""
    commands.respond("certonly", returncode=1, stderr="DNS problem: NXDOMAIN")
    client = CertbotClient(config_dir=tmp_path)
    provider = DnsProvider("manual", auth_hook="n8nctl cert dns-hook")

    with pytest.raises(CertificateAuthorityError, match="NXDOMAIN"):
        client.issue("n8n.example.com", email="ops@example.com", provider=provider)


def test_propagation_requires_every_resolver(commands: CommandRecorder) -> None:
    """The challenge counts as visible only when all resolvers agree."""
    commands.respond("@1.1.1.1", stdout='"token-value"\n')
    commands.respond("@8.8.8.8", stdout="", once=True)
    commands.respond("@8.8.8.8", stdout='"token-value"\n')
    sleeps: list[float] = []
    checker = DnsPropagationChecker(sleep=sleeps.append)

    outcome = checker.wait("n8n.example.com", "token-value", attempts=5, interval=10.0)

    assert outcome.succeeded is True
    assert outcome.attempts == 2
    assert sleeps == [10.0]
    assert commands.commands[0] == [
        "dig",
        "+short",
        "TXT",
        "_acme-challenge.n8n.example.com",
        "@1.1.1.1",
    ]


def test_propagation_gives_up(commands: CommandRecorder) -> None:
    """Attempts are capped."""
    checker = DnsPropagationChecker(resolvers=("1.1.1.1",), sleep=lambda _delay: None)

    outcome = checker.wait("n8n.example.com", "token-value", attempts=3, interval=1.0)

    assert outcome.succeeded is False
    assert len(commands.commands) == 3
