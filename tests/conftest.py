from __future__ import annotations

import io
import zipfile
from datetime import datetime, timezone
from typing import Iterable, Optional

import pytest
from pptx import Presentation
from pptx.util import Inches

P_NS = "http://schemas.openxmlformats.org/presentationml/2006/main"
A_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
PKG_RELS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"

RT_MASTER = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/slideMaster"
RT_LAYOUT = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/slideLayout"
RT_THEME = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/theme"

FIXED_NOW = datetime(2026, 1, 16, 10, 30, 0, tzinfo=timezone.utc)

XML_DECL = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'


# ---------------------------------------------------------------------------
# python-pptx built templates


def build_pptx(slides: Iterable[Iterable[str]], *, notes: Optional[dict[int, str]] = None, layout: int = 6) -> bytes:
    """One text box per slide, one paragraph per string."""
    prs = Presentation()
    for i, paragraphs in enumerate(slides, start=1):
        slide = prs.slides.add_slide(prs.slide_layouts[layout])
        box = slide.shapes.add_textbox(Inches(1), Inches(1), Inches(8), Inches(4))
        tf = box.text_frame
        for j, text in enumerate(paragraphs):
            p = tf.paragraphs[0] if j == 0 else tf.add_paragraph()
            p.text = text
        if notes and i in notes:
            slide.notes_slide.notes_text_frame.text = notes[i]
    buf = io.BytesIO()
    prs.save(buf)
    return buf.getvalue()


def slide_paragraphs(data: bytes, index: int = 0) -> list[str]:
    prs = Presentation(io.BytesIO(data))
    slide = prs.slides[index]
    out: list[str] = []
    for shape in slide.shapes:
        if shape.has_text_frame:
            out.extend(p.text for p in shape.text_frame.paragraphs)
    return out


# ---------------------------------------------------------------------------
# Hand-written archives


def zip_parts(parts: dict[str, str | bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in parts.items():
            zf.writestr(name, data)
    return buf.getvalue()


def rels_xml(*rels: tuple[str, str, str]) -> str:
    body = "".join(f'<Relationship Id="{rid}" Type="{rtype}" Target="{target}"/>' for rid, rtype, target in rels)
    return f'{XML_DECL}<Relationships xmlns="{PKG_RELS_NS}">{body}</Relationships>'


def text_shape(text: str, *, name: str = "TextBox 1", ph: Optional[str] = None, xfrm: bool = True) -> str:
    nv_pr = f'<p:nvPr><p:ph type="{ph}"/></p:nvPr>' if ph else "<p:nvPr/>"
    geom = (
        '<a:xfrm><a:off x="914400" y="457200"/><a:ext cx="7315200" cy="914400"/></a:xfrm>' if xfrm else ""
    )
    return (
        f'<p:sp><p:nvSpPr><p:cNvPr id="2" name="{name}"/><p:cNvSpPr/>{nv_pr}</p:nvSpPr>'
        f"<p:spPr>{geom}</p:spPr>"
        f"<p:txBody><a:bodyPr/><a:lstStyle/><a:p><a:r><a:t>{text}</a:t></a:r></a:p></p:txBody></p:sp>"
    )


def slide_xml(*shapes: str, root: str = "sld", attrs: str = "", name: str = "", bg: str = "") -> str:
    name_attr = f' name="{name}"' if name else ""
    extra = '<p:clrMap bg1="lt1" tx1="dk1" bg2="lt2" tx2="dk2" accent1="accent1"/>' if root == "sldMaster" else ""
    return (
        f'{XML_DECL}<p:{root} xmlns:a="{A_NS}" xmlns:r="{R_NS}" xmlns:p="{P_NS}"{attrs}>'
        f"<p:cSld{name_attr}>{bg}<p:spTree>"
        '<p:nvGrpSpPr><p:cNvPr id="1" name=""/><p:cNvGrpSpPr/><p:nvPr/></p:nvGrpSpPr><p:grpSpPr/>'
        f"{''.join(shapes)}</p:spTree></p:cSld>{extra}</p:{root}>"
    )


def presentation_xml(cx: int = 12192000, cy: int = 6858000) -> str:
    return f'{XML_DECL}<p:presentation xmlns:p="{P_NS}"><p:sldSz cx="{cx}" cy="{cy}"/></p:presentation>'


THEME_XML = (
    f'{XML_DECL}<a:theme xmlns:a="{A_NS}" name="Office"><a:themeElements><a:clrScheme name="Office">'
    '<a:dk1><a:sysClr val="windowText" lastClr="000000"/></a:dk1>'
    '<a:lt1><a:sysClr val="window" lastClr="FFFFFF"/></a:lt1>'
    '<a:dk2><a:srgbClr val="1F497D"/></a:dk2>'
    '<a:lt2><a:srgbClr val="EEECE1"/></a:lt2>'
    '<a:accent1><a:srgbClr val="4F81BD"/></a:accent1>'
    "</a:clrScheme></a:themeElements></a:theme>"
)


def structured_template(
    *,
    master_bg: str = '<p:bg><p:bgPr><a:solidFill><a:srgbClr val="1a2b3c"/></a:solidFill></p:bgPr></p:bg>',
    slide_texts: tuple[str, ...] = ("{{project_name}}", "{{#workstations}}{{name}}{{/workstations}}", "{{customer}}"),
    cx: int = 12192000,
    cy: int = 6858000,
) -> dict[str, str]:
    """Parts of a small template: 1 master, 2 layouts, one slide per entry in ``slide_texts``.

    slide1 -> layout2 and slide2 -> layout1 through relationships; later slides have
    no rels part and fall back to positional layout assignment.
    """
    parts: dict[str, str] = {
        "[Content_Types].xml": f'{XML_DECL}<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types"/>',
        "ppt/presentation.xml": presentation_xml(cx, cy),
        "ppt/theme/theme1.xml": THEME_XML,
        "ppt/slideMasters/slideMaster1.xml": slide_xml(
            text_shape("Click to edit title", name="Title Placeholder 1", ph="title"),
            text_shape("Body", name="Text Placeholder 2", ph="body"),
            text_shape("{{company_name}}", name="Footer Placeholder 3", ph="ftr"),
            root="sldMaster",
            name="Corporate",
            bg=master_bg,
        ),
        "ppt/slideMasters/_rels/slideMaster1.xml.rels": rels_xml(("rId1", RT_THEME, "../theme/theme1.xml")),
        "ppt/slideLayouts/slideLayout1.xml": slide_xml(
            text_shape("", name="Title 1", ph="title", xfrm=False), root="sldLayout", attrs=' type="title"', name="Cover"
        ),
        "ppt/slideLayouts/_rels/slideLayout1.xml.rels": rels_xml(("rId1", RT_MASTER, "../slideMasters/slideMaster1.xml")),
        "ppt/slideLayouts/slideLayout2.xml": slide_xml(root="sldLayout", attrs=' type="weird"'),
        "ppt/slideLayouts/_rels/slideLayout2.xml.rels": rels_xml(("rId1", RT_MASTER, "../slideMasters/slideMaster1.xml")),
    }
    for i, text in enumerate(slide_texts, start=1):
        parts[f"ppt/slides/slide{i}.xml"] = slide_xml(text_shape(text))
    if len(slide_texts) >= 1:
        parts["ppt/slides/_rels/slide1.xml.rels"] = rels_xml(("rId1", RT_LAYOUT, "../slideLayouts/slideLayout2.xml"))
    if len(slide_texts) >= 2:
        parts["ppt/slides/_rels/slide2.xml.rels"] = rels_xml(("rId1", RT_LAYOUT, "/ppt/slideLayouts/slideLayout1.xml"))
    return parts


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def structured_pptx() -> bytes:
    return zip_parts(structured_template())


@pytest.fixture
def loop_pptx() -> bytes:
    return build_pptx(
        [
            ["{{project_name}} for {{customer}}"],
            ["{{#workstations}}", "{{index}}:{{name}} ({{module_count}})", "{{/workstations}}"],
        ],
        notes={1: "Prepared by {{responsible}}"},
    )


@pytest.fixture
def sample_data() -> dict:
    return {
        "project_name": "Battery inspection",
        "customer": "ABC Corp.",
        "responsible": "Zhang San",
        "date": "2026-01-16",
        "workstations": [
            {"name": "WS-01", "modules": [{"name": "M1"}, {"name": "M2"}]},
            {"name": "WS-02", "modules": []},
        ],
        "hardware": {"cameras": [{"brand": "Basler"}], "lenses": [], "lights": [{}, {}]},
    }
