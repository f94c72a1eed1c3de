"""Configuration loader for n8nctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/n8nctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``N8NCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export N8NCTL_BACKUPS__RETENTION=7
    export N8NCTL_TLS__LOCAL_HOSTNAME=automation.lan

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

The configuration file describes *how the tool operates* (paths, binaries,
timeouts). The stack's own settings (credentials, certificate mode, security
toggles) live in the environment record, see :mod:`n8nctl.envfile`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "PyYAML is required to load n8nctl configuration. Install with "
        "`pip install n8nctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "N8NCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServiceNames:
    """Compose service names for the three managed containers."""

    app: str = "n8n"
    database: str = "postgres"
    proxy: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"app": self.app, "database": self.database, "proxy": self.proxy}


@dataclass(frozen=True)
class ComposeConfig:
    """Container runtime settings."""

    docker_bin: str = "docker"
    project_name: str = "n8n"
    postgres_volume: str = "n8n_postgres_data"
    helper_image: str = "alpine"
    db_user: str = "n8n"
    db_name: str = "n8n"
    services: ServiceNames = ServiceNames()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "project_name": self.project_name,
            "postgres_volume": self.postgres_volume,
            "helper_image": self.helper_image,
            "db_user": self.db_user,
            "db_name": self.db_name,
            "services": self.services.to_dict(),
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup retention and security component sources."""

    retention: int = 5
    min_size_bytes: int = 1024
    fail2ban_paths: tuple[Path, ...] = (
        Path("/etc/fail2ban/jail.local"),
        Path("/etc/fail2ban/jail.d"),
        Path("/etc/fail2ban/filter.d"),
    )
    firewall_paths: tuple[Path, ...] = (
        Path("/etc/ufw/user.rules"),
        Path("/etc/ufw/user6.rules"),
        Path("/etc/ufw/ufw.conf"),
    )
    dns_credential_paths: tuple[Path, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "retention": self.retention,
            "min_size_bytes": self.min_size_bytes,
            "fail2ban_paths": [str(path) for path in self.fail2ban_paths],
            "firewall_paths": [str(path) for path in self.firewall_paths],
            "dns_credential_paths": [str(path) for path in self.dns_credential_paths],
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate lifecycle settings."""

    local_hostname: str = "n8n.local"
    validity_days: int = 3650
    key_size: int = 2048
    renew_within_days: int = 30
    letsencrypt_dir: Path = Path("/etc/letsencrypt")
    certbot_bin: str = "certbot"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "local_hostname": self.local_hostname,
            "validity_days": self.validity_days,
            "key_size": self.key_size,
            "renew_within_days": self.renew_within_days,
            "letsencrypt_dir": str(self.letsencrypt_dir),
            "certbot_bin": self.certbot_bin,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Bounded polling settings for health checks."""

    attempts: int = 30
    interval: float = 2.0
    db_ready_attempts: int = 10
    request_timeout: float = 10.0
    endpoint: str = "/healthz"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "attempts": self.attempts,
            "interval": self.interval,
            "db_ready_attempts": self.db_ready_attempts,
            "request_timeout": self.request_timeout,
            "endpoint": self.endpoint,
        }


@dataclass(frozen=True)
class SecurityConfig:
    """Firewall, intrusion-prevention and DNS challenge tooling."""

    ufw_bin: str = "ufw"
    fail2ban_bin: str = "fail2ban-client"
    dig_bin: str = "dig"
    rule_pattern: str = "n8n"
    delete_cap: int = 50
    dns_propagation_attempts: int = 30
    dns_propagation_interval: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ufw_bin": self.ufw_bin,
            "fail2ban_bin": self.fail2ban_bin,
            "dig_bin": self.dig_bin,
            "rule_pattern": self.rule_pattern,
            "delete_cap": self.delete_cap,
            "dns_propagation_attempts": self.dns_propagation_attempts,
            "dns_propagation_interval": self.dns_propagation_interval,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    unit_name: str = "n8n.service"
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "unit_name": self.unit_name,
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class ScheduleConfig:
    """Cron scheduling for the daily maintenance run."""

    crontab_bin: str = "crontab"
    cron_time: str = "0 3 * * *"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"crontab_bin": self.crontab_bin, "cron_time": self.cron_time}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for n8nctl."""

    config_file: Path
    install_root: Path
    backup_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    system_root: Path
    lock_timeout: float
    command_timeout: float
    use_sudo: bool = True
    compose: ComposeConfig = field(default_factory=ComposeConfig)
    backups: BackupConfig = field(default_factory=BackupConfig)
    tls: TLSConfig = field(default_factory=TLSConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    systemd: SystemdConfig = field(default_factory=SystemdConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    @property
    def env_file(self) -> Path:
        """Return the path of the environment record."""
        return self.install_root / ".env"

    @property
    def compose_file(self) -> Path:
        """Return the path of the rendered compose file."""
        return self.install_root / "docker-compose.yml"

    @property
    def nginx_conf(self) -> Path:
        """Return the path of the rendered nginx configuration."""
        return self.install_root / "nginx.conf"

    @property
    def certs_dir(self) -> Path:
        """Return the directory holding both certificate identities."""
        return self.install_root / "certs"

    @property
    def data_dir(self) -> Path:
        """Return the n8n application data directory."""
        return self.install_root / ".n8n"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "backup_dir": str(self.backup_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "system_root": str(self.system_root),
            "lock_timeout": self.lock_timeout,
            "command_timeout": self.command_timeout,
            "use_sudo": self.use_sudo,
            "compose": self.compose.to_dict(),
            "backups": self.backups.to_dict(),
            "tls": self.tls.to_dict(),
            "health": self.health.to_dict(),
            "security": self.security.to_dict(),
            "systemd": self.systemd.to_dict(),
            "schedule": self.schedule.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/n8nctl/config.yml",
    "install_root": "~/n8n",
    "backup_dir": "~/n8n-backups",
    "logs_dir": "~/.local/state/n8nctl/logs",
    "runtime_dir": "~/.local/state/n8nctl/run",
    "templates_dir": "~/.config/n8nctl/templates",
    "system_root": "/",
    "lock_timeout": 30.0,
    "command_timeout": 1800.0,
    "use_sudo": True,
    "compose": {
        "docker_bin": "docker",
        "project_name": "n8n",
        "postgres_volume": "n8n_postgres_data",
        "helper_image": "alpine",
        "db_user": "n8n",
        "db_name": "n8n",
        "services": {"app": "n8n", "database": "postgres", "proxy": "nginx"},
    },
    "backups": {
        "retention": 5,
        "min_size_bytes": 1024,
        "fail2ban_paths": [
            "/etc/fail2ban/jail.local",
            "/etc/fail2ban/jail.d",
            "/etc/fail2ban/filter.d",
        ],
        "firewall_paths": [
            "/etc/ufw/user.rules",
            "/etc/ufw/user6.rules",
            "/etc/ufw/ufw.conf",
        ],
        "dns_credential_paths": [],
    },
    "tls": {
        "local_hostname": "n8n.local",
        "validity_days": 3650,
        "key_size": 2048,
        "renew_within_days": 30,
        "letsencrypt_dir": "/etc/letsencrypt",
        "certbot_bin": "certbot",
    },
    "health": {
        "attempts": 30,
        "interval": 2.0,
        "db_ready_attempts": 10,
        "request_timeout": 10.0,
        "endpoint": "/healthz",
    },
    "security": {
        "ufw_bin": "ufw",
        "fail2ban_bin": "fail2ban-client",
        "dig_bin": "dig",
        "rule_pattern": "n8n",
        "delete_cap": 50,
        "dns_propagation_attempts": 30,
        "dns_propagation_interval": 10.0,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "unit_name": "n8n.service",
        "systemctl_bin": "systemctl",
    },
    "schedule": {
        "crontab_bin": "crontab",
        "cron_time": "0 3 * * *",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    name: set(cast(Mapping[str, object], value).keys())
    for name, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    compose = _as_dict(raw.get("compose"), "compose")
    services = _as_dict(compose.get("services"), "compose.services")
    unknown_services = set(services.keys()) - {"app", "database", "proxy"}
    if unknown_services:
        joined = ", ".join(sorted(unknown_services))
        raise ConfigError(f"Unknown compose.services keys: {joined}.")

    backups = _as_dict(raw.get("backups"), "backups")
    retention = _expect_int(backups.get("retention"), "backups.retention", default=5)
    if retention < 1:
        raise ConfigError("backups.retention must keep at least one archive.")

    tls = _as_dict(raw.get("tls"), "tls")
    validity = _expect_int(tls.get("validity_days"), "tls.validity_days", default=3650)
    if validity <= 0:
        raise ConfigError("tls.validity_days must be greater than zero.")
    renew = _expect_int(tls.get("renew_within_days"), "tls.renew_within_days", default=30)
    if renew < 0:
        raise ConfigError("tls.renew_within_days must be non-negative.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    compose_map = _as_dict(raw.get("compose"), "compose")
    services_map = _as_dict(compose_map.get("services"), "compose.services")
    compose = ComposeConfig(
        docker_bin=str(compose_map.get("docker_bin", "docker")),
        project_name=str(compose_map.get("project_name", "n8n")),
        postgres_volume=str(compose_map.get("postgres_volume", "n8n_postgres_data")),
        helper_image=str(compose_map.get("helper_image", "alpine")),
        db_user=str(compose_map.get("db_user", "n8n")),
        db_name=str(compose_map.get("db_name", "n8n")),
        services=ServiceNames(
            app=str(services_map.get("app", "n8n")),
            database=str(services_map.get("database", "postgres")),
            proxy=str(services_map.get("proxy", "nginx")),
        ),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(
        retention=_expect_int(backups_map.get("retention"), "backups.retention", default=5),
        min_size_bytes=_expect_int(
            backups_map.get("min_size_bytes"), "backups.min_size_bytes", default=1024
        ),
        fail2ban_paths=_to_path_tuple(backups_map.get("fail2ban_paths"), "backups.fail2ban_paths"),
        firewall_paths=_to_path_tuple(backups_map.get("firewall_paths"), "backups.firewall_paths"),
        dns_credential_paths=_to_path_tuple(
            backups_map.get("dns_credential_paths"), "backups.dns_credential_paths"
        ),
    )

    tls_map = _as_dict(raw.get("tls"), "tls")
    tls = TLSConfig(
        local_hostname=str(tls_map.get("local_hostname", "n8n.local")),
        validity_days=_expect_int(tls_map.get("validity_days"), "tls.validity_days", default=3650),
        key_size=_expect_int(tls_map.get("key_size"), "tls.key_size", default=2048),
        renew_within_days=_expect_int(
            tls_map.get("renew_within_days"), "tls.renew_within_days", default=30
        ),
        letsencrypt_dir=_to_path(tls_map.get("letsencrypt_dir", "/etc/letsencrypt")),
        certbot_bin=str(tls_map.get("certbot_bin", "certbot")),
    )

    health_map = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        attempts=_expect_int(health_map.get("attempts"), "health.attempts", default=30),
        interval=_expect_non_negative_float(
            health_map.get("interval"), "health.interval", default=2.0
        ),
        db_ready_attempts=_expect_int(
            health_map.get("db_ready_attempts"), "health.db_ready_attempts", default=10
        ),
        request_timeout=_expect_positive_float(
            health_map.get("request_timeout"), "health.request_timeout", default=10.0
        ),
        endpoint=str(health_map.get("endpoint", "/healthz")),
    )

    security_map = _as_dict(raw.get("security"), "security")
    security = SecurityConfig(
        ufw_bin=str(security_map.get("ufw_bin", "ufw")),
        fail2ban_bin=str(security_map.get("fail2ban_bin", "fail2ban-client")),
        dig_bin=str(security_map.get("dig_bin", "dig")),
        rule_pattern=str(security_map.get("rule_pattern", "n8n")),
        delete_cap=_expect_int(security_map.get("delete_cap"), "security.delete_cap", default=50),
        dns_propagation_attempts=_expect_int(
            security_map.get("dns_propagation_attempts"),
            "security.dns_propagation_attempts",
            default=30,
        ),
        dns_propagation_interval=_expect_non_negative_float(
            security_map.get("dns_propagation_interval"),
            "security.dns_propagation_interval",
            default=10.0,
        ),
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_map.get("unit_dir", "/etc/systemd/system")),
        unit_name=str(systemd_map.get("unit_name", "n8n.service")),
        systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
    )

    schedule_map = _as_dict(raw.get("schedule"), "schedule")
    schedule = ScheduleConfig(
        crontab_bin=str(schedule_map.get("crontab_bin", "crontab")),
        cron_time=str(schedule_map.get("cron_time", "0 3 * * *")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        install_root=_to_path(raw.get("install_root")),
        backup_dir=_to_path(raw.get("backup_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        system_root=_to_path(raw.get("system_root")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        command_timeout=_expect_positive_float(
            raw.get("command_timeout"), "command_timeout", default=1800.0
        ),
        use_sudo=_expect_bool(raw.get("use_sudo"), "use_sudo", default=True),
        compose=compose,
        backups=backups,
        tls=tls,
        health=health,
        security=security,
        systemd=systemd,
        schedule=schedule,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _to_path_tuple(value: object | None, label: str) -> tuple[Path, ...]:
    if value is None:
        return ()
    return tuple(_to_path(item) for item in _as_sequence(value, label))


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ComposeConfig",
    "ConfigError",
    "HealthConfig",
    "ScheduleConfig",
    "SecurityConfig",
    "ServiceNames",
    "SystemdConfig",
    "TLSConfig",
    "load_config",
]
