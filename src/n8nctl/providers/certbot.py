"""Certificate authority client backed by certbot DNS-01 challenges.

Each DNS provider identity maps to a :class:`DnsProvider` variant that knows
which certbot plugin flags (or environment) it needs. The ``manual`` variant
drives certbot's manual mode with an auth hook that calls back into
``n8nctl cert dns-hook`` to wait for DNS propagation.
"""
from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..retry import RetryOutcome, retry_until
from .commands import run_command


class CertificateAuthorityError(RuntimeError):
    """Raised when certificate issuance or renewal fails."""


@dataclass(frozen=True, slots=True)
class IssuedCertificate:
    """PEM material returned by the certificate authority client."""

    domain: str
    fullchain_pem: bytes
    privkey_pem: bytes


class CertificateAuthorityClient(Protocol):
    """Obtain domain-bound certificates through a DNS-01 challenge."""

    def issue(self, domain: str, *, email: str, provider: DnsProvider) -> IssuedCertificate:
        """Issue a certificate for *domain*."""

    def renew(self, domain: str, *, provider: DnsProvider) -> IssuedCertificate:
        """Renew the certificate for *domain*."""


@dataclass(frozen=True, slots=True)
class DnsProvider:
    """One DNS provider identity and how certbot talks to it."""

    name: str
    credentials: Path | None = None
    auth_hook: str | None = None

    def certbot_args(self) -> list[str]:
        """Return the certbot flags selecting this provider."""
        if self.name == "manual":
            if not self.auth_hook:
                raise CertificateAuthorityError(
                    "The manual DNS provider requires an auth hook command."
                )
            return [
                "--manual",
                "--preferred-challenges",
                "dns",
                "--manual-auth-hook",
                self.auth_hook,
            ]
        if self.name in {"cloudflare", "digitalocean"}:
            credentials = self._require_credentials()
            return [
                f"--dns-{self.name}",
                f"--dns-{self.name}-credentials",
                str(credentials),
                f"--dns-{self.name}-propagation-seconds",
                "30",
            ]
        if self.name == "route53":
            return ["--dns-route53"]
        raise CertificateAuthorityError(f"Unsupported DNS provider '{self.name}'.")

    def environment(self) -> dict[str, str]:
        """Return extra environment variables certbot needs for this provider."""
        if self.name == "route53" and self.credentials is not None:
            return {"AWS_SHARED_CREDENTIALS_FILE": str(self.credentials)}
        return {}

    def _require_credentials(self) -> Path:
        if self.credentials is None:
            raise CertificateAuthorityError(
                f"DNS provider '{self.name}' needs a credentials file "
                f"(set DNS_{self.name.upper()}_CREDENTIALS)."
            )
        return self.credentials


@dataclass(slots=True)
class CertbotClient:
    """certbot implementation of :class:`CertificateAuthorityClient`."""

    certbot_bin: str = "certbot"
    config_dir: Path = Path("/etc/letsencrypt")
    prefix: tuple[str, ...] = ()
    timeout: float | None = 900.0

    def issue(self, domain: str, *, email: str, provider: DnsProvider) -> IssuedCertificate:
        """Run ``certbot certonly`` for *domain* and return the issued material."""
        args = [
            "certonly",
            "--non-interactive",
            "--agree-tos",
            "--email",
            email,
            "--cert-name",
            domain,
            "-d",
            domain,
            "--config-dir",
            str(self.config_dir),
            *provider.certbot_args(),
        ]
        self._certbot(args, env=provider.environment())
        return self.read_material(domain)

    def renew(self, domain: str, *, provider: DnsProvider) -> IssuedCertificate:
        """Run ``certbot renew`` for the certificate named after *domain*."""
        args = [
            "renew",
            "--non-interactive",
            "--cert-name",
            domain,
            "--config-dir",
            str(self.config_dir),
        ]
        self._certbot(args, env=provider.environment())
        return self.read_material(domain)

    def read_material(self, domain: str) -> IssuedCertificate:
        """Return the live certificate material for *domain*."""
        live = self.config_dir / "live" / domain
        return IssuedCertificate(
            domain=domain,
            fullchain_pem=self._read(live / "fullchain.pem"),
            privkey_pem=self._read(live / "privkey.pem"),
        )

    def _read(self, path: Path) -> bytes:
        if not self.prefix:
            try:
                return path.read_bytes()
            except OSError as exc:
                raise CertificateAuthorityError(f"Failed to read {path}: {exc}") from exc
        result = run_command(
            [*self.prefix, "cat", str(path)],
            error_cls=CertificateAuthorityError,
            error_prefix=f"read {path}",
            timeout=60.0,
        )
        return (result.stdout or "").encode("utf-8")

    def _certbot(
        self, args: list[str], *, env: Mapping[str, str]
    ) -> subprocess.CompletedProcess[str]:
        command = [*self.prefix]
        if self.prefix and env:
            command.append("env")
            command.extend(f"{key}={value}" for key, value in env.items())
        command.extend([self.certbot_bin, *args])
        return run_command(
            command,
            error_cls=CertificateAuthorityError,
            error_prefix=f"certbot {args[0]}",
            timeout=self.timeout,
            env=None if self.prefix else env,
        )


def manual_auth_hook(n8nctl_bin: str, config_file: Path | None = None) -> str:
    """Return the certbot auth hook command for the manual DNS provider."""
    parts = [n8nctl_bin]
    if config_file is not None:
        parts.extend(["--config-file", str(config_file)])
    parts.extend(["cert", "dns-hook"])
    return shlex.join(parts)


@dataclass(slots=True)
class DnsPropagationChecker:
    """Poll public DNS until the ACME challenge record is visible."""

    dig_bin: str = "dig"
    resolvers: tuple[str, ...] = ("1.1.1.1", "8.8.8.8")
    timeout: float | None = 30.0
    sleep: Callable[[float], None] | None = None

    def txt_records(self, name: str, resolver: str) -> set[str]:
        """Return the TXT values published for *name* at *resolver*."""
        result = run_command(
            [self.dig_bin, "+short", "TXT", name, f"@{resolver}"],
            error_cls=CertificateAuthorityError,
            error_prefix="dig",
            check=False,
            timeout=self.timeout,
        )
        lines = (result.stdout or "").splitlines()
        return {line.strip().strip('"') for line in lines if line.strip()}

    def visible(self, name: str, value: str) -> bool:
        """Return ``True`` when every resolver reports *value* for *name*."""
        return all(value in self.txt_records(name, resolver) for resolver in self.resolvers)

    def wait(
        self, domain: str, value: str, *, attempts: int, interval: float
    ) -> RetryOutcome[bool]:
        """Poll until ``_acme-challenge.<domain>`` carries *value* or attempts run out."""
        name = f"_acme-challenge.{domain}"
        return retry_until(
            lambda: self.visible(name, value),
            attempts=attempts,
            interval=interval,
            retry_on=(CertificateAuthorityError,),
            sleep=self.sleep or time.sleep,
        )


__all__ = [
    "CertbotClient",
    "CertificateAuthorityClient",
    "CertificateAuthorityError",
    "DnsPropagationChecker",
    "DnsProvider",
    "IssuedCertificate",
    "manual_auth_hook",
]
