"""Jinja2 rendering for the files n8nctl manages on disk.

Built-in templates ship inside the package under ``templates/``. Operators can
shadow any of them by placing a file with the same relative name in the
configured override directory.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be rendered or written."""


class TemplateEngine:
    """Render packaged templates with optional operator overrides."""

    def __init__(self, environment: Environment) -> None:
        self._env = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None:
            override = Path(override_dir).expanduser()
            if override.is_dir():
                loaders.append(FileSystemLoader(str(override)))
        loaders.append(PackageLoader("n8nctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self._env.get_template(name)
            return template.render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template '{name}': {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        rendered = self.render_to_string(name, context)
        destination = Path(destination)
        try:
            if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
                os.chmod(destination, mode)
                return False
            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(destination.parent), prefix=f".{destination.name}."
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(rendered)
                os.chmod(tmp_path, mode)
                os.replace(tmp_path, destination)
            finally:
                tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            raise TemplateError(f"Failed to write {destination}: {exc}") from exc
        return True


__all__ = ["TemplateEngine", "TemplateError"]
