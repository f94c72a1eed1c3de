"""Typed access to the stack's ``.env`` file.

The environment record is a flat ``KEY=value`` file consumed by Docker Compose.
It holds credentials, the certificate mode and domain, DNS provider details and
the security feature toggles. :class:`EnvironmentRecord` keeps comments and key
order intact so operator edits survive a round trip through n8nctl.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class EnvironmentRecordError(RuntimeError):
    """Raised when the environment record cannot be read, parsed or updated."""


class CertMode(str, Enum):
    """Which certificate identity nginx serves by default."""

    SELF_SIGNED = "self-signed"
    CA = "ca"

    @classmethod
    def parse(cls, value: str) -> CertMode:
        """Return the mode for *value* or raise :class:`EnvironmentRecordError`."""
        normalised = value.strip().lower()
        for member in cls:
            if member.value == normalised:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise EnvironmentRecordError(f"Unknown certificate mode '{value}'. Allowed: {allowed}.")


DNS_PROVIDERS = ("cloudflare", "digitalocean", "route53", "manual")

KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")
SENSITIVE_MARKERS = ("PASSWORD", "KEY", "SECRET", "TOKEN")
MASK = "[HIDDEN]"
PROTECTED_PATTERN = re.compile(
    r"^(POSTGRES_|N8N_BASIC_AUTH_|N8N_HOST|N8N_PORT|N8N_PROTOCOL|WEBHOOK_URL|"
    r"GENERIC_TIMEZONE|N8N_ENCRYPTION_KEY|N8N_ENFORCE_SETTINGS_FILE_PERMISSIONS|"
    r"N8N_RUNNERS_ENABLED|DB_|CERT_MODE)"
)

CERT_MODE = "CERT_MODE"
CA_DOMAIN = "CA_DOMAIN"
CA_DNS_PROVIDER = "CA_DNS_PROVIDER"
CA_EMAIL = "CA_EMAIL"
FIREWALL_ENABLED = "FIREWALL_ENABLED"
FAIL2BAN_ENABLED = "FAIL2BAN_ENABLED"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def credentials_key(provider: str) -> str:
    """Return the record key holding the credential file path for *provider*."""
    return f"DNS_{provider.upper()}_CREDENTIALS"


def is_sensitive(key: str) -> bool:
    """Return ``True`` when *key* should be masked in listings."""
    return any(marker in key for marker in SENSITIVE_MARKERS)


def is_protected(key: str) -> bool:
    """Return ``True`` when *key* is a system variable that must not be removed."""
    return PROTECTED_PATTERN.match(key) is not None


def validate_key(key: str) -> str:
    """Return *key* when it is a valid variable name."""
    if not KEY_PATTERN.match(key):
        raise EnvironmentRecordError(
            f"Invalid variable name '{key}'. Use uppercase letters, numbers and underscores only."
        )
    return key


@dataclass(slots=True)
class _Line:
    raw: str
    key: str | None = None
    value: str | None = None


def _parse_line(raw: str) -> _Line:
    stripped = raw.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return _Line(raw=raw)
    key, _, value = stripped.partition("=")
    key = key.strip()
    if key.startswith("export "):
        key = key[len("export ") :].strip()
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        quote = value[0]
        value = value[1:-1]
        if quote == '"':
            value = value.replace('\\"', '"').replace("\\\\", "\\")
    return _Line(raw=raw, key=key, value=value)


def _format_value(value: str) -> str:
    if value == "" or re.search(r"[\s#\"']", value) is None:
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class EnvironmentRecord:
    """Load, query and update the ``.env`` file of an installation."""

    def __init__(self, path: Path, lines: list[_Line] | None = None) -> None:
        self.path = Path(path)
        self._lines: list[_Line] = list(lines or [])

    @classmethod
    def load(cls, path: Path) -> EnvironmentRecord:
        """Parse the record at *path*."""
        try:
            text = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise EnvironmentRecordError(f"Environment file not found: {path}") from exc
        except OSError as exc:
            raise EnvironmentRecordError(f"Failed to read environment file {path}: {exc}") from exc
        return cls(path, [_parse_line(raw) for raw in text.splitlines()])

    @classmethod
    def load_or_empty(cls, path: Path) -> EnvironmentRecord:
        """Parse the record at *path*, returning an empty record when it is absent."""
        if not Path(path).exists():
            return cls(path)
        return cls.load(path)

    def save(self) -> None:
        """Atomically write the record with owner-only permissions."""
        content = "\n".join(line.raw for line in self._lines)
        if content:
            content += "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".env.")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            finally:
                tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            raise EnvironmentRecordError(
                f"Failed to write environment file {self.path}: {exc}"
            ) from exc

    # Generic key access --------------------------------------------
    def __contains__(self, key: object) -> bool:
        return any(line.key == key for line in self._lines)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def keys(self) -> list[str]:
        """Return the keys in file order."""
        return [line.key for line in self._lines if line.key is not None]

    def items(self) -> list[tuple[str, str]]:
        """Return ``(key, value)`` pairs in file order."""
        return [
            (line.key, line.value or "")
            for line in self._lines
            if line.key is not None
        ]

    def as_dict(self) -> dict[str, str]:
        """Return the record as a plain mapping."""
        return dict(self.items())

    def masked_items(self) -> list[tuple[str, str]]:
        """Return pairs with sensitive values replaced by a mask."""
        return [(key, MASK if is_sensitive(key) else value) for key, value in self.items()]

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value for *key* or *default*."""
        for line in self._lines:
            if line.key == key:
                return line.value
        return default

    def require(self, key: str) -> str:
        """Return the value for *key* or raise when it is missing or empty."""
        value = self.get(key)
        if not value:
            raise EnvironmentRecordError(f"Environment variable {key} is not set in {self.path}.")
        return value

    def upsert(self, key: str, value: str) -> bool:
        """Set *key* to *value*; return ``True`` when the record changed."""
        validate_key(key)
        rendered = f"{key}={_format_value(value)}"
        for line in self._lines:
            if line.key == key:
                if line.value == value:
                    return False
                line.raw = rendered
                line.value = value
                return True
        self._lines.append(_Line(raw=rendered, key=key, value=value))
        return True

    def delete(self, key: str) -> bool:
        """Remove *key*; return ``True`` when it was present."""
        before = len(self._lines)
        self._lines = [line for line in self._lines if line.key != key]
        return len(self._lines) != before

    def append_comment(self, text: str) -> None:
        """Append a comment line (used when generating a fresh record)."""
        self._lines.append(_Line(raw=f"# {text}" if text else ""))

    # Typed accessors -----------------------------------------------
    @property
    def cert_mode(self) -> CertMode:
        """Return the active certificate mode (self-signed when unset)."""
        raw = self.get(CERT_MODE)
        if not raw:
            return CertMode.SELF_SIGNED
        return CertMode.parse(raw)

    @cert_mode.setter
    def cert_mode(self, mode: CertMode) -> None:
        self.upsert(CERT_MODE, mode.value)

    @property
    def ca_domain(self) -> str | None:
        """Return the domain bound to the CA-issued identity."""
        return self.get(CA_DOMAIN) or None

    @property
    def ca_dns_provider(self) -> str | None:
        """Return the DNS provider identity used for domain validation."""
        value = self.get(CA_DNS_PROVIDER)
        return value.lower() if value else None

    @property
    def ca_email(self) -> str | None:
        """Return the ACME account e-mail."""
        return self.get(CA_EMAIL) or None

    def credentials_path(self, provider: str) -> Path | None:
        """Return the credential file configured for *provider*."""
        value = self.get(credentials_key(provider))
        return Path(value).expanduser() if value else None

    def credential_paths(self) -> list[Path]:
        """Return every ``DNS_<PROVIDER>_CREDENTIALS`` path in the record."""
        paths: list[Path] = []
        for key, value in self.items():
            if key.startswith("DNS_") and key.endswith("_CREDENTIALS") and value:
                paths.append(Path(value).expanduser())
        return paths

    @property
    def firewall_enabled(self) -> bool:
        """Return the firewall feature toggle."""
        return (self.get(FIREWALL_ENABLED) or "").strip().lower() in _TRUE_VALUES

    @property
    def fail2ban_enabled(self) -> bool:
        """Return the intrusion-prevention feature toggle."""
        return (self.get(FAIL2BAN_ENABLED) or "").strip().lower() in _TRUE_VALUES


__all__ = [
    "CA_DNS_PROVIDER",
    "CA_DOMAIN",
    "CA_EMAIL",
    "CERT_MODE",
    "DNS_PROVIDERS",
    "FAIL2BAN_ENABLED",
    "FIREWALL_ENABLED",
    "MASK",
    "CertMode",
    "EnvironmentRecord",
    "EnvironmentRecordError",
    "credentials_key",
    "is_protected",
    "is_sensitive",
    "validate_key",
]
