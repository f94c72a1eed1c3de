"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from n8nctl.templates import TemplateEngine, TemplateError


def _unit_context() -> dict[str, object]:
    return {
        "project_name": "n8n",
        "service_user": "deploy",
        "working_directory": "/home/deploy/n8n",
        "docker_bin": "/usr/bin/docker",
    }


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("systemd/n8n.service.j2", _unit_context())

    assert "WorkingDirectory=/home/deploy/n8n" in output
    assert "ExecStart=/usr/bin/docker compose -p n8n up" in output


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "unit" / "n8n.service"

    changed = engine.render_to_path(
        "systemd/n8n.service.j2", destination, _unit_context(), mode=0o600
    )

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"


def test_render_to_path_reports_unchanged_content(tmp_path: Path) -> None:
    """A second identical render leaves the file alone."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "n8n.service"

    engine.render_to_path("systemd/n8n.service.j2", destination, _unit_context())
    changed = engine.render_to_path("systemd/n8n.service.j2", destination, _unit_context())

    assert changed is False


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """A template in the override directory replaces the packaged one."""
    override = tmp_path / "templates" / "systemd"
    override.mkdir(parents=True)
    (override / "n8n.service.j2").write_text("custom {{ project_name }}\n", encoding="utf-8")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    output = engine.render_to_string("systemd/n8n.service.j2", _unit_context())

    assert output == "custom n8n\n"


def test_missing_variable_raises_template_error() -> None:
    """Strict undefined variables surface as :class:`TemplateError`."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError, match="n8n.service.j2"):
        engine.render_to_string("systemd/n8n.service.j2", {"project_name": "n8n"})


def test_compose_template_passes_extra_variables() -> None:
    """Operator-added keys are forwarded to the application container."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "compose/docker-compose.yml.j2",
        {
            "tool_version": "0.1.0",
            "project_name": "n8n",
            "services": {"app": "n8n", "database": "postgres", "proxy": "nginx"},
            "postgres_image": "postgres:15",
            "n8n_image": "n8nio/n8n",
            "nginx_image": "nginx:stable",
            "extra_env": ["SLACK_WEBHOOK"],
        },
    )

    assert "      - SLACK_WEBHOOK=${SLACK_WEBHOOK}\n" in output
    assert "name: n8n_network" in output
