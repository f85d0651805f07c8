"""Rendering of orchestration templates.

Templates are jinja2 files named ``<kind>.yaml.j2``. Rendering is pure: the
same tree always yields the same bytes, which is what makes the content hash
a reliable drift signal.
"""

from __future__ import annotations

import hashlib
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

logger = logging.getLogger(__name__)

PACKAGED_TEMPLATES_DIR = Path(__file__).parent / "stack_templates"
TEMPLATE_SUFFIX = ".yaml.j2"


class TemplateKind(str, Enum):
    """Template discriminator, one per managed stack type."""

    VM = "vm"
    LB = "lb"
    FIP = "fip"


class TemplateRenderError(Exception):
    """Raised when a template is missing or cannot be rendered."""

    pass


class TemplateEngine:
    """Renders stack templates, preferring an override directory when set."""

    def __init__(self, templates_dir: Path | None = None) -> None:
        search_path = [str(PACKAGED_TEMPLATES_DIR)]
        if templates_dir is not None:
            search_path.insert(0, str(templates_dir))
        self._env = Environment(
            loader=FileSystemLoader(search_path),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def render(self, kind: TemplateKind, tree: dict[str, Any]) -> bytes:
        try:
            template = self._env.get_template(f"{kind.value}{TEMPLATE_SUFFIX}")
            text = template.render(**tree)
        except TemplateError as e:
            raise TemplateRenderError(f"Failed to render {kind.value} template: {e}") from e
        return text.encode("utf-8")


def content_hash(rendered: bytes) -> str:
    """Digest identifying a rendered template."""
    return hashlib.sha256(rendered).hexdigest()
