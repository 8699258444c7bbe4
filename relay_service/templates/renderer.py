"""Jinja2 template renderer for stored email templates.

Renders ``{{key}}`` placeholders in template subjects and bodies with the
variables supplied by the sender. Placeholders without a value are left in
the output untouched instead of raising or rendering empty.

Version: 2.0.0
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from jinja2 import TemplateError, Undefined, meta
from jinja2.sandbox import SandboxedEnvironment

from relay_service.core.exceptions import TemplateRenderError
from relay_service.core.logger import get_logger

logger = get_logger(__name__)


class KeepPlaceholderUndefined(Undefined):
    """Undefined value that renders back as its own ``{{name}}`` placeholder."""

    __slots__ = ()

    def __str__(self) -> str:
        return "{{" + (self._undefined_name or "") + "}}"

    def __getattr__(self, name: str) -> Any:
        if name[:2] == "__":
            raise AttributeError(name)
        return KeepPlaceholderUndefined(name=f"{self._undefined_name}.{name}")


class TemplateRenderer:
    """Renders template strings with caller variables.

    Uses a sandboxed Jinja2 environment without autoescaping: variable
    values are inserted verbatim, as senders supply HTML-ready values.
    """

    def __init__(self, cache_size: int = 256) -> None:
        try:
            self.env = self._init_jinja_env()
        except Exception as e:
            logger.error(f"Failed to initialize template renderer: {e}")
            raise TemplateRenderError(f"Failed to initialize Jinja2: {e}") from e

        self._compile = lru_cache(maxsize=cache_size)(self.env.from_string)

    def _init_jinja_env(self) -> SandboxedEnvironment:
        """Initialize Jinja2 environment with custom settings."""
        return SandboxedEnvironment(
            autoescape=False,
            undefined=KeepPlaceholderUndefined,
            keep_trailing_newline=True,
        )

    def render(
        self,
        template_body: str,
        variables: dict[str, Any] | None,
        template_name: str | None = None,
    ) -> str:
        """Render a template string.

        Args:
            template_body: Template text with ``{{key}}`` placeholders.
            variables: Values for the placeholders.
            template_name: Template identifier used in error messages.

        Returns:
            Rendered string.

        Raises:
            TemplateRenderError: If the template is not valid Jinja2 syntax.

        Example:
            >>> TemplateRenderer().render("Hi {{name}} {{missing}}", {"name": "Ann"})
            'Hi Ann {{missing}}'
        """
        if "{" not in template_body:
            return template_body

        try:
            template = self._compile(template_body)
            rendered = template.render(**(variables or {}))
        except TemplateError as e:
            logger.error(f"Failed to render template {template_name or '<inline>'}: {e}")
            raise TemplateRenderError(
                f"Failed to render {template_name or 'template'}: {e}",
                template_name=template_name,
            ) from e

        logger.debug(f"Template rendered: {len(rendered)} chars")
        return rendered

    def extract_variables(self, template_body: str) -> list[str]:
        """List the placeholder names a template refers to.

        Raises:
            TemplateRenderError: If the template is not valid Jinja2 syntax.
        """
        try:
            ast = self.env.parse(template_body)
        except TemplateError as e:
            raise TemplateRenderError(f"Invalid template: {e}") from e
        return sorted(meta.find_undeclared_variables(ast))
