"""Tests for health probes and service polling."""
from __future__ import annotations

from pathlib import Path

import pytest
import requests
from conftest import FakeStack

from n8nctl.envfile import CertMode
from n8nctl.providers.compose import ServiceState
from n8nctl.providers.health import (
    HttpsHealthProbe,
    all_healthy,
    health_target,
    wait_for_services,
)


class DummyResponse:
    """Minimal stand-in for :class:`requests.Response`."""

    def __init__(self, status_code: int) -> None:
        """Initialise the response."""
        self.status_code = status_code
        self.ok = status_code < 400


class DummySession(requests.Session):
    """Session returning a canned response or raising a canned error."""

    def __init__(self, outcome: DummyResponse | Exception) -> None:
        """Initialise the session."""
        super().__init__()
        self.outcome = outcome
        self.requests: list[tuple[str, object]] = []

    def get(self, url: str, **kwargs: object) -> DummyResponse:  # type: ignore[override]
        """Record the request and return the canned outcome."""
        self.requests.append((url, kwargs.get("verify")))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_probe_reports_status_code() -> None:
    """2xx answers count as healthy and verification settings are passed on."""
    session = DummySession(DummyResponse(200))
    probe = HttpsHealthProbe(session=session)

    result = probe.check("https://localhost/healthz", verify="/srv/n8n/certs/n8n.crt")

    assert result.ok is True
    assert result.status_code == 200
    assert session.requests == [("https://localhost/healthz", "/srv/n8n/certs/n8n.crt")]


@pytest.mark.parametrize(
    ("error", "prefix"),
    [
        (requests.exceptions.SSLError("bad cert"), "TLS verification failed"),
        (requests.exceptions.ConnectionError("refused"), "Connection failed"),
        (requests.exceptions.Timeout("slow"), "Timed out after 10s"),
    ],
)
def test_probe_translates_request_errors(error: Exception, prefix: str) -> None:
    """Transport failures become unhealthy results, never exceptions."""
    probe = HttpsHealthProbe(session=DummySession(error))

    result = probe.check("https://n8n.example.com/healthz", verify=True)

    assert result.ok is False
    assert result.error is not None and result.error.startswith(prefix)


def test_health_target_follows_certificate_mode(tmp_path: Path) -> None:
    """CA mode probes the domain with system trust; self-signed probes localhost."""
    cert = tmp_path / "n8n.crt"

    assert health_target(CertMode.CA, "n8n.example.com", cert) == (
        "https://n8n.example.com/healthz",
        True,
    )
    assert health_target(CertMode.SELF_SIGNED, "n8n.example.com", cert) == (
        "https://localhost/healthz",
        str(cert),
    )
    assert health_target(CertMode.CA, None, cert)[0] == "https://localhost/healthz"


def test_all_healthy_respects_required_services() -> None:
    """Only listed services matter when a required set is given."""
    states = [
        ServiceState("n8n", "n8n-n8n-1", "running", "healthy"),
        ServiceState("nginx", "n8n-nginx-1", "exited"),
    ]

    assert all_healthy(states) is False
    assert all_healthy(states, ["n8n"]) is True
    assert all_healthy(states, ["postgres"]) is False
    assert all_healthy([]) is False


def test_wait_for_services_polls_until_cap(stack: FakeStack) -> None:
    """An unhealthy stack is polled the configured number of times."""
    stack.healthy = False
    sleeps: list[float] = []

    outcome = wait_for_services(stack, attempts=3, interval=2.0, sleep=sleeps.append)

    assert outcome.succeeded is False
    assert stack.names.count("ps") == 3
    assert sleeps == [2.0, 2.0]
