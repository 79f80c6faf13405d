"""Jinja2 template engine with built-in templates and local overrides.

Built-in templates ship inside this package. An override directory (by
default ``~/.config/mcpfleet/templates``) may shadow any of them by providing
a file at the same relative path.
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
    TemplateError,
)

BUILTIN_TEMPLATE_PACKAGE = "mcpfleet"
BUILTIN_TEMPLATE_DIR = "templates"


class TemplateEngine:
    """Render text templates with strict undefined-variable handling."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._env = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers *override_dir* over built-in templates."""
        loaders = []
        if override_dir is not None:
            override = Path(override_dir).expanduser()
            if override.is_dir():
                loaders.append(FileSystemLoader(str(override)))
        loaders.append(PackageLoader(BUILTIN_TEMPLATE_PACKAGE, BUILTIN_TEMPLATE_DIR))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment)

    def has_template(self, name: str) -> bool:
        """Return ``True`` when *name* can be loaded."""
        try:
            self._env.get_template(name)
        except TemplateError:
            return False
        return True

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self._env.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        content = self.render_to_string(name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine", "TemplateError"]
