"""Certificate lifecycle for the two TLS identities nginx serves.

* The **self-signed** identity covers every non-loopback host IP plus
  ``localhost`` and the local hostname. It is regenerated whenever the host's
  addresses drift away from its SAN list, e.g. after restoring onto a new host.
* The **CA-issued** identity is bound to one domain and obtained through a
  DNS-01 challenge. It is renewed on expiry only and never regenerated because
  of IP changes.

Superseded key pairs are renamed with a timestamp suffix and never deleted.
"""
from __future__ import annotations

import ipaddress
import os
import socket
import subprocess
import tempfile
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .config import AppConfig
from .envfile import (
    CA_DNS_PROVIDER,
    CA_DOMAIN,
    CA_EMAIL,
    DNS_PROVIDERS,
    CertMode,
    EnvironmentRecord,
    credentials_key,
)
from .providers.certbot import CertificateAuthorityClient, DnsProvider, IssuedCertificate
from .templates import TemplateEngine

CONTAINER_CERTS_DIR = "/etc/nginx/certs"
SUPERSEDED_SUFFIX_FORMAT = "%Y%m%d_%H%M%S"


class CertificateError(RuntimeError):
    """Raised when certificate material cannot be issued, read or switched."""


@dataclass(frozen=True)
class TLSMaterial:
    """Certificate and private key paths for one identity."""

    certificate: Path
    key: Path

    def exists(self) -> bool:
        """Return ``True`` when both files are present."""
        return self.certificate.is_file() and self.key.is_file()


@dataclass(frozen=True)
class IdentityStatus:
    """Summary of one certificate identity."""

    mode: CertMode
    material: TLSMaterial
    present: bool
    active: bool
    subject: str | None = None
    san_dns: tuple[str, ...] = ()
    san_ips: tuple[str, ...] = ()
    not_valid_before: datetime | None = None
    not_valid_after: datetime | None = None
    key_matches: bool | None = None
    error: str | None = None

    def days_remaining(self, now: datetime | None = None) -> int | None:
        """Return whole days until expiry."""
        if self.not_valid_after is None:
            return None
        return (self.not_valid_after - (now or datetime.now(UTC))).days

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode.value,
            "active": self.active,
            "present": self.present,
            "certificate": str(self.material.certificate),
            "key": str(self.material.key),
            "subject": self.subject,
            "san_dns": list(self.san_dns),
            "san_ips": list(self.san_ips),
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "days_remaining": self.days_remaining(),
            "key_matches": self.key_matches,
            "error": self.error,
        }


@dataclass(frozen=True)
class AdaptationResult:
    """Outcome of reconciling restored certificates with the current host."""

    regenerated: bool
    reason: str
    current_ips: tuple[str, ...] = ()
    certificate_ips: tuple[str, ...] = ()
    superseded: tuple[Path, ...] = field(default_factory=tuple)


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def detect_host_ips() -> list[str]:
    """Return the host's non-loopback IP addresses."""
    candidates: list[str] = []
    try:
        result = subprocess.run(  # noqa: S603, S607 - fixed command
            ["hostname", "-I"],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
        if result.returncode == 0:
            candidates.extend(result.stdout.split())
    except (OSError, subprocess.TimeoutExpired):
        pass
    if not candidates:
        try:
            infos = socket.getaddrinfo(socket.gethostname(), None)
        except OSError:
            infos = []
        candidates.extend(str(info[4][0]) for info in infos)
    return normalise_ips(candidates)


def normalise_ips(values: Iterable[str]) -> list[str]:
    """Return sorted unique addresses, dropping loopback and link-local ones."""
    seen: set[ipaddress.IPv4Address | ipaddress.IPv6Address] = set()
    for value in values:
        try:
            address = ipaddress.ip_address(value.split("%", 1)[0])
        except ValueError:
            continue
        if address.is_loopback or address.is_link_local or address.is_unspecified:
            continue
        seen.add(address)
    return [str(address) for address in sorted(seen, key=lambda item: (item.version, item))]


def read_identity(
    mode: CertMode,
    material: TLSMaterial,
    *,
    active: bool,
) -> IdentityStatus:
    """Inspect *material* and return its :class:`IdentityStatus`."""
    if not material.certificate.is_file():
        return IdentityStatus(mode=mode, material=material, present=False, active=active)
    try:
        certificate = _load_certificate(material.certificate)
    except (OSError, ValueError) as exc:
        return IdentityStatus(
            mode=mode,
            material=material,
            present=True,
            active=active,
            error=f"Failed to parse certificate: {exc}",
        )

    key_matches: bool | None = None
    error: str | None = None
    if material.key.is_file():
        try:
            key_matches = _public_keys_match(certificate, _load_private_key(material.key))
        except (OSError, ValueError, TypeError) as exc:
            error = f"Failed to parse private key: {exc}"
    else:
        error = "Private key is missing."

    san_dns, san_ips = _subject_alt_names(certificate)
    return IdentityStatus(
        mode=mode,
        material=material,
        present=True,
        active=active,
        subject=certificate.subject.rfc4514_string(),
        san_dns=san_dns,
        san_ips=san_ips,
        not_valid_before=_as_utc(certificate.not_valid_before_utc),
        not_valid_after=_as_utc(certificate.not_valid_after_utc),
        key_matches=key_matches,
        error=error,
    )


class CertificateLifecycleManager:
    """Issue, renew, adapt and switch the stack's certificate identities."""

    def __init__(
        self,
        config: AppConfig,
        env: EnvironmentRecord,
        *,
        templates: TemplateEngine,
        ca_client: CertificateAuthorityClient | None = None,
        ip_detector: Callable[[], Sequence[str]] = detect_host_ips,
        clock: Callable[[], datetime] | None = None,
        auth_hook: str | None = None,
    ) -> None:
        self._config = config
        self._env = env
        self._templates = templates
        self._ca_client = ca_client
        self._ip_detector = ip_detector
        self._clock = clock or (lambda: datetime.now(UTC))
        self._auth_hook = auth_hook
        certs = config.certs_dir
        self.self_signed = TLSMaterial(certs / "n8n.crt", certs / "n8n.key")
        self.ca = TLSMaterial(certs / "ca" / "fullchain.pem", certs / "ca" / "privkey.pem")

    @property
    def mode(self) -> CertMode:
        """Return the active certificate mode from the environment record."""
        return self._env.cert_mode

    # Inspection ----------------------------------------------------
    def status(self) -> list[IdentityStatus]:
        """Return the status of both identities."""
        mode = self.mode
        return [
            read_identity(
                CertMode.SELF_SIGNED, self.self_signed, active=mode is CertMode.SELF_SIGNED
            ),
            read_identity(CertMode.CA, self.ca, active=mode is CertMode.CA),
        ]

    def current_ips(self) -> list[str]:
        """Return the host's current non-loopback addresses."""
        return normalise_ips(self._ip_detector())

    def needs_self_signed_regeneration(self, current_ips: Sequence[str] | None = None) -> bool:
        """Return ``True`` when the self-signed SAN list no longer covers the host."""
        identity = read_identity(CertMode.SELF_SIGNED, self.self_signed, active=False)
        if not identity.present or identity.error is not None:
            return True
        ips = normalise_ips(current_ips) if current_ips is not None else self.current_ips()
        if not identity.san_ips:
            return True
        covered = set(identity.san_ips)
        return any(ip not in covered for ip in ips)

    # Self-signed identity ------------------------------------------
    def issue_self_signed(self, current_ips: Sequence[str] | None = None) -> tuple[Path, ...]:
        """Issue a fresh self-signed pair; return the paths of superseded files."""
        tls = self._config.tls
        ips = normalise_ips(current_ips) if current_ips is not None else self.current_ips()
        now = self._clock()

        key = rsa.generate_private_key(public_exponent=65537, key_size=tls.key_size)
        name = x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, tls.local_hostname),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "n8nctl"),
            ]
        )
        alt_names: list[x509.GeneralName] = [
            x509.DNSName("localhost"),
            x509.DNSName(tls.local_hostname),
        ]
        alt_names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips)
        public_key = key.public_key()
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=tls.validity_days))
            .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .sign(key, hashes.SHA256())
        )
        cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
        return self._replace_pair(self.self_signed, cert_pem, key_pem)

    def adapt_after_restore(self, current_ips: Sequence[str] | None = None) -> AdaptationResult:
        """Regenerate the self-signed pair when restored onto a host with other IPs.

        The CA-issued identity is bound to a domain, so when it is the active
        mode nothing is regenerated.
        """
        ips = tuple(normalise_ips(current_ips) if current_ips is not None else self.current_ips())
        identity = read_identity(CertMode.SELF_SIGNED, self.self_signed, active=False)
        if self.mode is CertMode.CA:
            return AdaptationResult(
                regenerated=False,
                reason="CA-issued certificate is active; it is bound to the domain, not host IPs.",
                current_ips=ips,
                certificate_ips=identity.san_ips,
            )
        if not self.needs_self_signed_regeneration(ips):
            return AdaptationResult(
                regenerated=False,
                reason="Self-signed certificate already covers the current host addresses.",
                current_ips=ips,
                certificate_ips=identity.san_ips,
            )
        if not identity.present:
            reason = "No self-signed certificate was restored."
        elif not identity.san_ips:
            reason = "Restored self-signed certificate lists no IP addresses."
        else:
            missing = sorted(set(ips) - set(identity.san_ips))
            reason = f"Host addresses missing from certificate: {', '.join(missing)}."
        superseded = self.issue_self_signed(ips)
        return AdaptationResult(
            regenerated=True,
            reason=reason,
            current_ips=ips,
            certificate_ips=identity.san_ips,
            superseded=superseded,
        )

    # CA-issued identity --------------------------------------------
    def dns_provider(
        self,
        name: str | None = None,
        credentials: Path | None = None,
    ) -> DnsProvider:
        """Return the DNS provider variant recorded in (or passed for) the record."""
        provider_name = (name or self._env.ca_dns_provider or "").lower()
        if provider_name not in DNS_PROVIDERS:
            allowed = ", ".join(DNS_PROVIDERS)
            raise CertificateError(f"Unknown DNS provider '{provider_name}'. Allowed: {allowed}.")
        return DnsProvider(
            name=provider_name,
            credentials=credentials or self._env.credentials_path(provider_name),
            auth_hook=self._auth_hook,
        )

    def issue_ca(
        self,
        domain: str,
        *,
        provider: str,
        email: str,
        credentials: Path | None = None,
    ) -> tuple[Path, ...]:
        """Obtain a CA-issued certificate for *domain*; the self-signed pair is untouched."""
        client = self._require_client()
        dns_provider = self.dns_provider(provider, credentials)
        issued = client.issue(domain, email=email, provider=dns_provider)
        superseded = self._store_issued(issued)
        self._env.upsert(CA_DOMAIN, domain)
        self._env.upsert(CA_DNS_PROVIDER, dns_provider.name)
        self._env.upsert(CA_EMAIL, email)
        if credentials is not None:
            self._env.upsert(credentials_key(dns_provider.name), str(credentials))
        self._env.save()
        return superseded

    def ca_needs_renewal(self) -> bool:
        """Return ``True`` when the CA-issued certificate is inside the renewal window."""
        identity = read_identity(CertMode.CA, self.ca, active=False)
        remaining = identity.days_remaining(self._clock())
        if remaining is None:
            return True
        return remaining <= self._config.tls.renew_within_days

    def renew_ca(self, *, force: bool = False) -> bool:
        """Renew the CA-issued certificate when expiring (or when *force* is set)."""
        domain = self._env.ca_domain
        if not domain:
            raise CertificateError("No CA-issued domain is configured (CA_DOMAIN).")
        if not force and not self.ca_needs_renewal():
            return False
        client = self._require_client()
        issued = client.renew(domain, provider=self.dns_provider())
        self._store_issued(issued)
        return True

    def renew_if_expiring(self) -> list[str]:
        """Renew whichever identities are inside the renewal window."""
        actions: list[str] = []
        identity = read_identity(CertMode.SELF_SIGNED, self.self_signed, active=False)
        remaining = identity.days_remaining(self._clock())
        if remaining is None or remaining <= self._config.tls.renew_within_days:
            self.issue_self_signed()
            actions.append("self-signed certificate reissued")
        if self._env.ca_domain and self._ca_client is not None:
            if self.renew_ca():
                actions.append(f"CA-issued certificate renewed for {self._env.ca_domain}")
        return actions

    # Mode switch ---------------------------------------------------
    def switch_mode(self, mode: CertMode) -> bool:
        """Make *mode* the default identity; no key material is removed."""
        if mode is CertMode.CA and not self.ca.exists():
            raise CertificateError(
                "No CA-issued certificate is installed. Run 'n8nctl cert issue' first."
            )
        if mode is CertMode.SELF_SIGNED and not self.self_signed.exists():
            self.issue_self_signed()
        changed = self.mode is not mode
        self._env.cert_mode = mode
        self._env.save()
        rendered = self.render_proxy_config()
        return changed or rendered

    def render_proxy_config(self) -> bool:
        """Render ``nginx.conf`` for the active mode; return ``True`` when it changed."""
        return self._templates.render_to_path(
            "nginx/nginx.conf.j2",
            self._config.nginx_conf,
            self.proxy_context(),
            mode=0o644,
        )

    def proxy_context(self) -> dict[str, object]:
        """Return the template context describing both identities."""
        self_signed_cert = f"{CONTAINER_CERTS_DIR}/n8n.crt"
        self_signed_key = f"{CONTAINER_CERTS_DIR}/n8n.key"
        ca_cert = f"{CONTAINER_CERTS_DIR}/ca/fullchain.pem"
        ca_key = f"{CONTAINER_CERTS_DIR}/ca/privkey.pem"
        domain = self._env.ca_domain if self.ca.exists() else None
        use_ca_default = self.mode is CertMode.CA and self.ca.exists()
        return {
            "cert_mode": self.mode.value,
            "app_service": self._config.compose.services.app,
            "default_certificate": ca_cert if use_ca_default else self_signed_cert,
            "default_certificate_key": ca_key if use_ca_default else self_signed_key,
            "domain": domain,
            "domain_certificate": ca_cert,
            "domain_certificate_key": ca_key,
        }

    # ------------------------------------------------------------------
    def _require_client(self) -> CertificateAuthorityClient:
        if self._ca_client is None:
            raise CertificateError("No certificate authority client is configured.")
        return self._ca_client

    def _store_issued(self, issued: IssuedCertificate) -> tuple[Path, ...]:
        try:
            x509.load_pem_x509_certificate(issued.fullchain_pem)
        except ValueError as exc:
            raise CertificateError(
                f"Issued certificate for {issued.domain} is not valid PEM: {exc}"
            ) from exc
        return self._replace_pair(self.ca, issued.fullchain_pem, issued.privkey_pem)

    def _replace_pair(
        self, material: TLSMaterial, cert_pem: bytes, key_pem: bytes
    ) -> tuple[Path, ...]:
        suffix = self._clock().strftime(SUPERSEDED_SUFFIX_FORMAT)
        superseded: list[Path] = []
        try:
            material.certificate.parent.mkdir(parents=True, exist_ok=True)
            for path in (material.certificate, material.key):
                if path.exists():
                    target = path.with_name(f"{path.name}.{suffix}")
                    counter = 1
                    while target.exists():
                        target = path.with_name(f"{path.name}.{suffix}.{counter}")
                        counter += 1
                    os.replace(path, target)
                    superseded.append(target)
            _write_atomic(material.key, key_pem, 0o600)
            _write_atomic(material.certificate, cert_pem, 0o644)
        except OSError as exc:
            raise CertificateError(f"Failed to write certificate material: {exc}") from exc
        return tuple(superseded)


def _write_atomic(path: Path, data: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def _subject_alt_names(certificate: x509.Certificate) -> tuple[tuple[str, ...], tuple[str, ...]]:
    try:
        extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return (), ()
    names = extension.value
    dns_names = tuple(names.get_values_for_type(x509.DNSName))
    ips = tuple(normalise_ips(str(ip) for ip in names.get_values_for_type(x509.IPAddress)))
    return dns_names, ips


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_key = cert.public_key()
    try:
        key_public = private_key.public_key()
    except AttributeError:
        return False
    cert_bytes = cert_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = key_public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "AdaptationResult",
    "CertificateError",
    "CertificateLifecycleManager",
    "IdentityStatus",
    "TLSMaterial",
    "detect_host_ips",
    "normalise_ips",
    "read_identity",
]
