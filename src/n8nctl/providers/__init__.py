"""Provider interfaces for n8nctl."""
from __future__ import annotations

from .certbot import (
    CertbotClient,
    CertificateAuthorityClient,
    CertificateAuthorityError,
    DnsPropagationChecker,
    DnsProvider,
    IssuedCertificate,
)
from .compose import ComposeError, ComposeProvider, ContainerRuntime, ServiceState
from .cron import CronError, CronScheduler
from .health import HealthProbe, HttpsHealthProbe, ProbeResult
from .security import (
    Fail2banManager,
    FirewallManager,
    IntrusionPreventionManager,
    RuleCleanup,
    SecurityProviderError,
    UfwFirewall,
)
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CertbotClient",
    "CertificateAuthorityClient",
    "CertificateAuthorityError",
    "ComposeError",
    "ComposeProvider",
    "ContainerRuntime",
    "CronError",
    "CronScheduler",
    "DnsPropagationChecker",
    "DnsProvider",
    "Fail2banManager",
    "FirewallManager",
    "HealthProbe",
    "HttpsHealthProbe",
    "IntrusionPreventionManager",
    "IssuedCertificate",
    "ProbeResult",
    "RuleCleanup",
    "SecurityProviderError",
    "ServiceState",
    "SystemdError",
    "SystemdProvider",
    "UfwFirewall",
]
