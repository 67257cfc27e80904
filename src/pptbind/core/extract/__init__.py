"""Template introspection package.

Turns the bytes of a presentation template into a `ParsedTemplate`: canvas
size, masters, layouts, slides and the data-binding tokens they carry.

Public API:
- `parse_template(data, *, file_name=..., file_size=..., registry=..., limits=...)`
- `extract(xml_text)` for token discovery on a single part
- `FieldRegistry` for the system field catalog

Keep this module as a thin re-export layer so callers can import a stable path:

    from pptbind.core.extract import parse_template
"""

from __future__ import annotations

from .field_registry import FieldRegistry, auto_map_fields, build_field_catalog
from .template_parser import ParsedTemplate, PartLimits, parse_container, parse_template
from .tokens import TokenSet, extract

__all__ = [
    "FieldRegistry",
    "ParsedTemplate",
    "PartLimits",
    "TokenSet",
    "auto_map_fields",
    "build_field_catalog",
    "extract",
    "parse_container",
    "parse_template",
]
