"""Stack template rendering.

Stack files use ``${VAR}`` placeholders (the envsubst convention used in
compose files). Rendering is strict: every placeholder must be present in
the Environment, and all missing names are reported together.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import jinja2
from jinja2 import meta

from ..errors import ConfigError


class TemplateRenderer:
    """Render ``${VAR}`` templates against an Environment mapping."""

    def __init__(self) -> None:
        # Only ${...} is a placeholder; Go templates such as {{.Node.Hostname}}
        # in compose files pass through untouched.
        self._env = jinja2.Environment(
            variable_start_string="${",
            variable_end_string="}",
            block_start_string="${%",
            block_end_string="%}",
            comment_start_string="${#",
            comment_end_string="#}",
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def missing(self, source: str, params: Mapping[str, str]) -> list[str]:
        """Names referenced by ``source`` that ``params`` does not define."""
        try:
            parsed = self._env.parse(source)
        except jinja2.TemplateSyntaxError as e:
            raise ConfigError(f"Invalid template syntax: {e.message}") from e
        return sorted(name for name in meta.find_undeclared_variables(parsed) if name not in params)

    def render_string(self, source: str, params: Mapping[str, str], name: str = "<string>") -> str:
        """Render a template string.

        Raises:
            ConfigError: If any placeholder has no value in ``params``.
        """
        missing = self.missing(source, params)
        if missing:
            raise ConfigError(
                f"Missing required parameters for {name}: {', '.join(missing)}",
                details={"missing": missing, "template": name},
            )
        try:
            return self._env.from_string(source).render(**dict(params))
        except jinja2.UndefinedError as e:
            raise ConfigError(f"Cannot render {name}: {e.message}") from e

    def render_file(self, path: Path, params: Mapping[str, str]) -> str:
        """Render a template file.

        Raises:
            ConfigError: If the file is missing or a placeholder is undefined.
        """
        try:
            source = path.read_text()
        except OSError as e:
            raise ConfigError(f"Cannot read stack template {path}: {e}") from e
        return self.render_string(source, params, name=str(path))
