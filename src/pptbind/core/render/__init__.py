"""Template rendering package.

Public API:
- `render_template(data, tree, *, strict=False, now=None, options=None)`
- `prepare_template_data(tree, ...)` for the derived convenience fields

    from pptbind.core.render import render_template
"""

from __future__ import annotations

from .bindings import prepare_template_data
from .template_renderer import RenderOptions, RenderResult, render_container, render_part, render_template

__all__ = [
    "RenderOptions",
    "RenderResult",
    "prepare_template_data",
    "render_container",
    "render_part",
    "render_template",
]
