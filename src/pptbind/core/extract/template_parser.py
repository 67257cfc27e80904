"""Structural introspection of a presentation template.

Reads the presentation, master, layout and slide parts of an archive and
builds an immutable :class:`ParsedTemplate`: canvas size, masters with their
background and placeholders, layouts and slides with the references between
them, and every ``{{...}}`` token found along the way.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pptx.oxml.ns import qn
from pptx.util import Emu

from pptbind.core.container.package import (
    LAYOUT_PART,
    MASTER_PART,
    NOTES_PART,
    PRESENTATION_PART,
    SLIDE_PART,
    Container,
)
from pptbind.core.container.relationships import (
    RELTYPE_SLIDE_LAYOUT,
    RELTYPE_SLIDE_MASTER,
    RELTYPE_THEME,
    first_target,
)
from pptbind.core.errors import CorruptArchive
from pptbind.core.extract.field_registry import FieldRegistry, auto_map_fields, build_field_catalog
from pptbind.core.extract.tokens import TokenSet, extract

logger = logging.getLogger(__name__)

# 16:9 at 10in wide, used when presentation.xml carries no p:sldSz.
DEFAULT_WIDTH_EMU = 9144000
DEFAULT_HEIGHT_EMU = 5143500

DEFAULT_BACKGROUND_COLOR = "#FFFFFF"

_PLACEHOLDER_KIND = {
    "title": "title",
    "ctrTitle": "title",
    "subTitle": "title",
    "body": "body",
    "obj": "body",
    "pic": "picture",
    "chart": "chart",
    "tbl": "table",
}

_LAYOUT_TYPE_LABEL = {
    "title": "Title Slide",
    "obj": "Title and Content",
    "secHead": "Section Header",
    "twoObj": "Two Content",
    "blank": "Blank",
    "titleOnly": "Title Only",
    "twoTxTwoObj": "Comparison",
    "objTx": "Content with Caption",
}

_SHAPE_TAGS = (qn("p:sp"), qn("p:pic"), qn("p:graphicFrame"))
_PARSE_ERRORS = (ET.ParseError, CorruptArchive, UnicodeDecodeError, ValueError)


# ---------------------------------------------------------------------------
# Model


@dataclass(frozen=True)
class PartLimits:
    """Ceilings for the numbered part enumerations."""

    max_masters: int = 10
    max_layouts: int = 20
    max_slides: int = 100


@dataclass(frozen=True)
class Dimensions:
    width: float
    height: float

    def to_dict(self) -> dict[str, float]:
        return {"width": self.width, "height": self.height}


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0
    w: float = 0.0
    h: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not (self.x or self.y or self.w or self.h)

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(frozen=True)
class Placeholder:
    kind: str
    name: str
    position: Position = field(default_factory=Position)
    type_code: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "name": self.name, "position": self.position.to_dict()}


@dataclass(frozen=True)
class Background:
    type: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "value": self.value}


DEFAULT_BACKGROUND = Background("color", DEFAULT_BACKGROUND_COLOR)


@dataclass(frozen=True)
class TemplateMaster:
    id: str
    name: str
    index: int
    background: Background
    placeholders: tuple[Placeholder, ...] = ()
    part: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "index": self.index,
            "background": self.background.to_dict(),
            "placeholders": [p.to_dict() for p in self.placeholders],
        }


@dataclass(frozen=True)
class TemplateLayout:
    id: str
    name: str
    master_ref: str
    type: str
    placeholders: tuple[Placeholder, ...] = ()
    part: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "masterRef": self.master_ref,
            "type": self.type,
            "placeholders": [p.to_dict() for p in self.placeholders],
        }


@dataclass(frozen=True)
class TemplateSlide:
    index: int
    layout_ref: str
    custom_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "layoutRef": self.layout_ref, "customFields": list(self.custom_fields)}


@dataclass(frozen=True)
class ParsedTemplate:
    file_name: str
    file_size: int
    slide_count: int
    dimensions: Dimensions
    masters: tuple[TemplateMaster, ...]
    layouts: tuple[TemplateLayout, ...]
    slides: tuple[TemplateSlide, ...]
    custom_fields: tuple[str, ...]
    available_system_fields: tuple[str, ...]
    field_catalog: tuple[dict[str, Any], ...] = ()
    field_mappings: tuple[dict[str, str], ...] = ()
    parsed_at: str = ""
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "slideCount": self.slide_count,
            "dimensions": self.dimensions.to_dict(),
            "masters": [m.to_dict() for m in self.masters],
            "layouts": [lay.to_dict() for lay in self.layouts],
            "slides": [s.to_dict() for s in self.slides],
            "customFields": list(self.custom_fields),
            "availableSystemFields": list(self.available_system_fields),
            "fieldCatalog": [dict(e) for e in self.field_catalog],
            "fieldMappings": [dict(m) for m in self.field_mappings],
            "parsedAt": self.parsed_at,
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# XML helpers


def _inches(v: Any) -> float:
    try:
        return Emu(int(v)).inches
    except (TypeError, ValueError):
        return 0.0


def _csld_name(root: ET.Element) -> str:
    csld = root.find(qn("p:cSld"))
    if csld is None:
        return ""
    return (csld.get("name") or "").strip()


def _shape_position(shape: ET.Element) -> Position:
    xfrm = shape.find(f"{qn('p:spPr')}/{qn('a:xfrm')}")
    if xfrm is None:
        xfrm = shape.find(qn("p:xfrm"))
    if xfrm is None:
        return Position()
    off = xfrm.find(qn("a:off"))
    ext = xfrm.find(qn("a:ext"))
    return Position(
        x=_inches(off.get("x")) if off is not None else 0.0,
        y=_inches(off.get("y")) if off is not None else 0.0,
        w=_inches(ext.get("cx")) if ext is not None else 0.0,
        h=_inches(ext.get("cy")) if ext is not None else 0.0,
    )


def _placeholders(root: ET.Element) -> list[Placeholder]:
    out: list[Placeholder] = []
    for shape in root.iter():
        if shape.tag not in _SHAPE_TAGS:
            continue
        ph = shape.find(f"./*/{qn('p:nvPr')}/{qn('p:ph')}")
        if ph is None:
            continue
        type_code = ph.get("type", "obj")
        c_nv_pr = shape.find(f"./*/{qn('p:cNvPr')}")
        name = (c_nv_pr.get("name") if c_nv_pr is not None else None) or type_code
        out.append(
            Placeholder(
                kind=_PLACEHOLDER_KIND.get(type_code, "custom"),
                name=name,
                position=_shape_position(shape),
                type_code=type_code,
            )
        )
    return out


def _theme_colors(container: Container, theme_part: Optional[str]) -> tuple[dict[str, str], Optional[ET.Element]]:
    """Scheme colors (``{'lt1': 'FFFFFF', ...}``) and the theme root, best-effort."""
    if not theme_part:
        return {}, None
    data = container.get_part(theme_part)
    if data is None:
        return {}, None
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        logger.warning("Theme part %s is not well-formed: %s", theme_part, e)
        return {}, None

    out: dict[str, str] = {}
    clr = root.find(f".//{qn('a:themeElements')}/{qn('a:clrScheme')}")
    if clr is None:
        return out, root
    for child in list(clr):
        key = child.tag.split("}", 1)[1] if "}" in child.tag else child.tag
        srgb = child.find(qn("a:srgbClr"))
        if srgb is not None and srgb.get("val"):
            out[key] = srgb.get("val", "").upper()
            continue
        sysc = child.find(qn("a:sysClr"))
        if sysc is not None and sysc.get("lastClr"):
            out[key] = sysc.get("lastClr", "").upper()
    return out, root


def _color_value(fill: ET.Element, clr_map: dict[str, str], theme: dict[str, str]) -> Optional[str]:
    srgb = fill.find(qn("a:srgbClr"))
    if srgb is not None and srgb.get("val"):
        return "#" + srgb.get("val", "").upper()
    sysc = fill.find(qn("a:sysClr"))
    if sysc is not None and sysc.get("lastClr"):
        return "#" + sysc.get("lastClr", "").upper()
    scheme = fill.find(qn("a:schemeClr"))
    if scheme is not None and scheme.get("val"):
        key = scheme.get("val", "")
        rgb = theme.get(clr_map.get(key, key))
        if rgb:
            return "#" + rgb
    return None


def _theme_background_kind(theme_root: Optional[ET.Element], idx: int) -> Optional[str]:
    """Fill element name of the theme background style referenced by ``p:bgRef@idx``."""
    if theme_root is None or idx < 1001:
        return None
    lst = theme_root.find(f".//{qn('a:fmtScheme')}/{qn('a:bgFillStyleLst')}")
    if lst is None:
        return None
    styles = list(lst)
    if idx - 1001 >= len(styles):
        return None
    tag = styles[idx - 1001].tag
    return tag.split("}", 1)[1] if "}" in tag else tag


def _background(
    root: ET.Element, clr_map: dict[str, str], theme: dict[str, str], theme_root: Optional[ET.Element]
) -> Background:
    bg = root.find(f"{qn('p:cSld')}/{qn('p:bg')}")
    if bg is None:
        return DEFAULT_BACKGROUND

    ref = bg.find(qn("p:bgRef"))
    if ref is not None:
        try:
            kind = _theme_background_kind(theme_root, int(ref.get("idx", "0")))
        except ValueError:
            kind = None
        if kind == "blipFill":
            return Background("image", "embedded")
        if kind == "gradFill":
            return Background("gradient", "gradient")
        return Background("color", _color_value(ref, clr_map, theme) or DEFAULT_BACKGROUND_COLOR)

    # Declaration order decides: color, then image, then gradient.
    solid = bg.find(f".//{qn('a:solidFill')}")
    if solid is not None:
        return Background("color", _color_value(solid, clr_map, theme) or DEFAULT_BACKGROUND_COLOR)
    if bg.find(f".//{qn('a:blipFill')}") is not None:
        return Background("image", "embedded")
    if bg.find(f".//{qn('a:gradFill')}") is not None:
        return Background("gradient", "gradient")
    return DEFAULT_BACKGROUND


def _safe_target(container: Container, part: str, rel_type: str) -> Optional[str]:
    try:
        return first_target(container, part, rel_type)
    except _PARSE_ERRORS as e:
        logger.warning("Cannot read relationships of %s: %s", part, e)
        return None


# ---------------------------------------------------------------------------
# Sections


def dimensions(presentation_xml: bytes | str | None) -> Dimensions:
    """Canvas size in inches from ``p:sldSz``; 10 x 5.625 when absent."""
    cx, cy = DEFAULT_WIDTH_EMU, DEFAULT_HEIGHT_EMU
    if presentation_xml:
        try:
            root = ET.fromstring(presentation_xml)
        except ET.ParseError as e:
            logger.warning("presentation.xml is not well-formed, using default size: %s", e)
            root = None
        sz = root.find(qn("p:sldSz")) if root is not None else None
        if sz is not None:
            try:
                cx, cy = int(sz.get("cx", "")), int(sz.get("cy", ""))
            except ValueError:
                logger.warning("p:sldSz has non-integer extents, using default size")
                cx, cy = DEFAULT_WIDTH_EMU, DEFAULT_HEIGHT_EMU
    return Dimensions(width=Emu(cx).inches, height=Emu(cy).inches)


def parse_masters(container: Container, limits: PartLimits = PartLimits()) -> list[TemplateMaster]:
    masters: list[TemplateMaster] = []
    for n, path in container.numbered_parts(MASTER_PART, limits.max_masters):
        root = ET.fromstring(container.get_part(path) or b"")

        clr_map: dict[str, str] = {}
        cm = root.find(qn("p:clrMap"))
        if cm is not None:
            clr_map = dict(cm.attrib)
        theme, theme_root = _theme_colors(container, _safe_target(container, path, RELTYPE_THEME))

        masters.append(
            TemplateMaster(
                id=f"master{n}",
                name=_csld_name(root) or f"Master {n}",
                index=len(masters),
                background=_background(root, clr_map, theme, theme_root),
                placeholders=tuple(_placeholders(root)),
                part=path,
            )
        )
    return masters


def _inherit_positions(placeholders: list[Placeholder], master: Optional[TemplateMaster]) -> list[Placeholder]:
    if master is None:
        return placeholders
    by_type = {p.type_code: p.position for p in master.placeholders}
    by_kind = {p.kind: p.position for p in master.placeholders}
    out: list[Placeholder] = []
    for p in placeholders:
        if p.position.is_empty:
            inherited = by_type.get(p.type_code) or by_kind.get(p.kind)
            if inherited is not None:
                p = Placeholder(kind=p.kind, name=p.name, position=inherited, type_code=p.type_code)
        out.append(p)
    return out


def parse_layouts(
    container: Container, masters: list[TemplateMaster], limits: PartLimits = PartLimits()
) -> list[TemplateLayout]:
    by_part = {m.part: m for m in masters}
    layouts: list[TemplateLayout] = []
    for n, path in container.numbered_parts(LAYOUT_PART, limits.max_layouts):
        root = ET.fromstring(container.get_part(path) or b"")

        master = by_part.get(_safe_target(container, path, RELTYPE_SLIDE_MASTER) or "")
        if master is None and masters:
            master = masters[0]

        type_code = root.get("type")
        layouts.append(
            TemplateLayout(
                id=f"layout{n}",
                name=_csld_name(root) or f"Layout {n}",
                master_ref=master.id if master is not None else "",
                type=_LAYOUT_TYPE_LABEL.get(type_code, type_code) if type_code else "custom",
                placeholders=tuple(_inherit_positions(_placeholders(root), master)),
                part=path,
            )
        )
    return layouts


def parse_slides(
    container: Container, layouts: list[TemplateLayout], limits: PartLimits = PartLimits()
) -> list[TemplateSlide]:
    by_part = {lay.part: lay for lay in layouts}
    slides: list[TemplateSlide] = []
    for n, path in container.numbered_parts(SLIDE_PART, limits.max_slides):
        text = container.get_text(path) or ""

        layout = by_part.get(_safe_target(container, path, RELTYPE_SLIDE_LAYOUT) or "")
        if layout is None and layouts:
            layout = layouts[(n - 1) % len(layouts)]

        slides.append(
            TemplateSlide(
                index=n,
                layout_ref=layout.id if layout is not None else "",
                custom_fields=extract(text).fields,
            )
        )
    return slides


def collect_custom_fields(container: Container, limits: PartLimits = PartLimits()) -> TokenSet:
    """Union of tokens over slides, masters, layouts and notes, in that order."""
    found = TokenSet()
    sequences = (
        (SLIDE_PART, limits.max_slides),
        (MASTER_PART, limits.max_masters),
        (LAYOUT_PART, limits.max_layouts),
        (NOTES_PART, limits.max_slides),
    )
    for template, ceiling in sequences:
        for _, path in container.numbered_parts(template, ceiling):
            found = found.union(extract(container.get_text(path) or ""))
    return found


def _utc_now_iso(now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_container(
    container: Container,
    *,
    file_name: str = "template.pptx",
    file_size: Optional[int] = None,
    registry: Optional[FieldRegistry] = None,
    limits: PartLimits = PartLimits(),
    now: Optional[datetime] = None,
) -> ParsedTemplate:
    registry = registry or FieldRegistry.default()
    warnings: list[str] = []

    def _section(label: str, fn: Any, default: Any) -> Any:
        try:
            return fn()
        except _PARSE_ERRORS as e:
            logger.warning("Could not parse %s: %s", label, e)
            warnings.append(f"{label}: {e}")
            return default

    dims = _section("dimensions", lambda: dimensions(container.get_part(PRESENTATION_PART)), dimensions(None))
    masters = _section("masters", lambda: parse_masters(container, limits), [])
    layouts = _section("layouts", lambda: parse_layouts(container, masters, limits), [])
    slides = _section("slides", lambda: parse_slides(container, layouts, limits), [])
    custom = _section("customFields", lambda: collect_custom_fields(container, limits), TokenSet())

    parsed = ParsedTemplate(
        file_name=file_name,
        file_size=file_size if file_size else container.size,
        slide_count=len(slides),
        dimensions=dims,
        masters=tuple(masters),
        layouts=tuple(layouts),
        slides=tuple(slides),
        custom_fields=custom.fields,
        available_system_fields=tuple(registry.system_field_names()),
        field_catalog=tuple(e.to_dict() for e in build_field_catalog(custom.fields, registry)),
        field_mappings=tuple(m.to_dict() for m in auto_map_fields(custom.fields, registry)),
        parsed_at=_utc_now_iso(now),
        warnings=tuple(warnings),
    )
    logger.info(
        "Parsed template %s: %d masters, %d layouts, %d slides, %d custom fields",
        file_name,
        len(masters),
        len(layouts),
        len(slides),
        len(custom),
    )
    return parsed


def parse_template(data: bytes, **kwargs: Any) -> ParsedTemplate:
    """Open ``data`` as an archive and parse it; raises ``CorruptArchive`` for non-zip input."""
    with Container.open(data) as container:
        return parse_container(container, **kwargs)
