"""Health probes for the running stack."""
from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import requests

from ..envfile import CertMode
from ..retry import RetryOutcome, retry_until
from .compose import ComposeError, ContainerRuntime, ServiceState


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of one HTTPS request against the stack."""

    url: str
    ok: bool
    status_code: int | None = None
    error: str | None = None


class HealthProbe(Protocol):
    """Issue a synthetic HTTPS request against the stack."""

    def check(self, url: str, *, verify: bool | str) -> ProbeResult:
        """Request *url*; *verify* is ``True`` (system CAs) or a CA bundle path."""


@dataclass(slots=True)
class HttpsHealthProbe:
    """``requests`` implementation of :class:`HealthProbe`."""

    timeout: float = 10.0
    session: requests.Session = field(default_factory=requests.Session)

    def check(self, url: str, *, verify: bool | str) -> ProbeResult:
        """Return whether *url* answers with a 2xx status."""
        try:
            response = self.session.get(url, timeout=self.timeout, verify=verify)
        except requests.exceptions.SSLError as exc:
            return ProbeResult(url=url, ok=False, error=f"TLS verification failed: {exc}")
        except requests.exceptions.ConnectionError as exc:
            return ProbeResult(url=url, ok=False, error=f"Connection failed: {exc}")
        except requests.exceptions.Timeout:
            return ProbeResult(url=url, ok=False, error=f"Timed out after {self.timeout:.0f}s")
        except requests.exceptions.RequestException as exc:
            return ProbeResult(url=url, ok=False, error=str(exc))
        return ProbeResult(url=url, ok=response.ok, status_code=response.status_code)


def health_target(
    cert_mode: CertMode,
    domain: str | None,
    self_signed_certificate: Path,
    endpoint: str = "/healthz",
) -> tuple[str, bool | str]:
    """Return the URL to probe and how to verify its certificate.

    The CA-issued identity is checked against system trust through its
    domain; the self-signed identity is trusted explicitly on ``localhost``.
    """
    if cert_mode is CertMode.CA and domain:
        return f"https://{domain}{endpoint}", True
    return f"https://localhost{endpoint}", str(self_signed_certificate)


def all_healthy(states: Sequence[ServiceState], required: Sequence[str] = ()) -> bool:
    """Return ``True`` when every required service (or every listed one) is healthy."""
    if not states:
        return False
    by_service = {state.service: state for state in states}
    if required:
        return all(name in by_service and by_service[name].healthy for name in required)
    return all(state.healthy for state in states)


def wait_for_services(
    runtime: ContainerRuntime,
    *,
    attempts: int,
    interval: float,
    required: Sequence[str] = (),
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome[list[ServiceState]]:
    """Poll service states until they are healthy or *attempts* run out."""
    return retry_until(
        runtime.service_states,
        lambda states: all_healthy(states, required),
        attempts=attempts,
        interval=interval,
        retry_on=(ComposeError,),
        sleep=sleep,
    )


__all__ = [
    "HealthProbe",
    "HttpsHealthProbe",
    "ProbeResult",
    "all_healthy",
    "health_target",
    "wait_for_services",
]
