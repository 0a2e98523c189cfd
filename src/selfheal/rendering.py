"""
Jinja2 templates for operator-facing messages

A template key `name:version` maps to `templates/<name>/<version>/`, which
holds `template.jinja2` and a `meta.yaml` listing the variables the template
expects.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import jinja2
import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


def _split_key(template_key: str) -> tuple[str, str]:
    name, sep, version = template_key.partition(":")
    if not sep or not name or not version:
        raise ConfigurationError(f"Template key must be 'name:version', got {template_key!r}")
    return name, version


class TemplateManager:
    """Renders versioned message templates, checking their declared variables"""

    def __init__(self, templates_dir: Optional[str] = None):
        self.templates_dir = Path(templates_dir) if templates_dir else TEMPLATES_DIR
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(self.templates_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=False,
        )
        self._meta = lru_cache(maxsize=32)(self._read_meta)

    def _read_meta(self, template_key: str) -> dict[str, Any]:
        name, version = _split_key(template_key)
        meta_path = self.templates_dir / name / version / "meta.yaml"
        if not meta_path.exists():
            logger.debug(f"No metadata for template {template_key}")
            return {}
        with open(meta_path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def template_meta(self, template_key: str) -> dict[str, Any]:
        return self._meta(template_key)

    def render(self, template_key: str, **variables: Any) -> str:
        """Render `template_key`; every variable listed in meta.yaml must be passed"""
        name, version = _split_key(template_key)
        missing = [
            var
            for var in self.template_meta(template_key).get("variables", [])
            if var not in variables
        ]
        if missing:
            raise ConfigurationError(
                f"Template {template_key} is missing variables: {', '.join(missing)}"
            )

        try:
            template = self.env.get_template(f"{name}/{version}/template.jinja2")
        except jinja2.TemplateNotFound as e:
            raise ConfigurationError(f"Unknown template {template_key}") from e
        return template.render(**variables).strip()
