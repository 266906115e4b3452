from __future__ import annotations

from pathlib import Path

from jinja2 import Template

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


def render_template(name: str, **kwargs) -> str:
    """Load a template from templates/{name} and render with kwargs."""
    path = TEMPLATE_DIR / name
    template_text = path.read_text()
    template = Template(template_text, autoescape=name.endswith(".html"))
    return template.render(**kwargs)
