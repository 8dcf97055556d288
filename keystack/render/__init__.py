"""Template rendering and structural checks for the stack template."""

from keystack.render.renderer import (
    ALL_SUBSTITUTION_KEYS,
    DEFAULT_TEMPLATE_NAME,
    REQUIRED_KEYS,
    load_template_text,
    render_template,
    write_rendered_template,
)
from keystack.render.template import (
    REQUIRED_RESOURCE_TYPES,
    check_template,
    load_cfn_yaml,
)

__all__ = [
    "ALL_SUBSTITUTION_KEYS",
    "DEFAULT_TEMPLATE_NAME",
    "REQUIRED_KEYS",
    "REQUIRED_RESOURCE_TYPES",
    "check_template",
    "load_cfn_yaml",
    "load_template_text",
    "render_template",
    "write_rendered_template",
]
