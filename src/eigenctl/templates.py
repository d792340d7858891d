"""Jinja2 template rendering for monitoring service configuration."""
from __future__ import annotations

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
    """Raised when a template cannot be loaded or rendered."""


class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    def __init__(self, environment: Environment) -> None:
        """Wrap an already configured Jinja2 *environment*."""
        self._environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("eigenctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self._environment.get_template(name)
            return template.render(**dict(context))
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template '{name}': {exc}") from exc


__all__ = ["TemplateEngine", "TemplateError"]
