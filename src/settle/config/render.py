from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError
from pathlib import Path
from typing import Any, Dict, Optional

from settle.config.secrets import SecretResolver
from settle.errors import DeclarationError


class TemplateRenderer:
    """
    Renders file content against one host's variables. ``secret(ref)`` is
    available inside templates and goes through the secret resolver.
    """

    def __init__(self, templates_dir: Path, secrets: Optional[SecretResolver] = None):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self.secrets = secrets

    def _context(self, variables: Dict[str, Any], host: Dict[str, Any]) -> Dict[str, Any]:
        def secret(ref: str) -> str:
            if self.secrets is None:
                raise DeclarationError(f"template asked for secret '{ref}' but no resolver is configured")
            return self.secrets.resolve(ref)

        return {**variables, "vars": variables, "host": host, "secret": secret}

    def render_string(self, source: str, variables: Dict[str, Any], host: Dict[str, Any]) -> str:
        try:
            return self.env.from_string(source).render(**self._context(variables, host))
        except TemplateError as exc:
            raise DeclarationError(f"template error: {exc}") from exc

    def render_file(self, template_name: str, variables: Dict[str, Any], host: Dict[str, Any]) -> str:
        try:
            tmpl = self.env.get_template(template_name)
            return tmpl.render(**self._context(variables, host))
        except TemplateError as exc:
            raise DeclarationError(f"template {template_name}: {exc}") from exc
