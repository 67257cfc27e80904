from __future__ import annotations

import io
import zipfile

import pytest

from conftest import build_pptx, slide_paragraphs, slide_xml, structured_template, text_shape, zip_parts
from pptbind.core.container.package import Container
from pptbind.core.errors import CorruptArchive, TemplateSyntaxError, UnknownTagError
from pptbind.core.extract.template_parser import parse_template
from pptbind.core.render.context import RenderContext
from pptbind.core.render.template_renderer import (
    RenderOptions,
    check_balance,
    ensure_paragraphs,
    render_part,
    render_template,
)
from pptbind.core.extract.tokens import tokenize


def _ctx(data: dict) -> RenderContext:
    return RenderContext.from_data(data)


def test_inline_loop_scenario(fixed_now):
    data = build_pptx([["{{#workstations}}{{index}}:{{name}} ({{module_count}}){{/workstations}}"]])
    tree = {
        "workstations": [
            {"name": "WS-01", "modules": [{"name": "M1"}, {"name": "M2"}]},
            {"name": "WS-02", "modules": []},
        ]
    }
    result = render_template(data, tree, now=fixed_now)
    assert slide_paragraphs(result.content) == ["1:WS-01 (2)2:WS-02 (0)"]
    assert result.mutated_parts == ("ppt/slides/slide1.xml",)


def test_paragraph_loop_repeats_whole_paragraphs(loop_pptx, sample_data, fixed_now):
    result = render_template(loop_pptx, sample_data, now=fixed_now)
    assert slide_paragraphs(result.content, 0) == ["Battery inspection for ABC Corp."]
    assert slide_paragraphs(result.content, 1) == ["1:WS-01 (2)", "2:WS-02 (0)"]
    assert result.slide_count == 2


def test_notes_are_rendered(loop_pptx, sample_data, fixed_now):
    result = render_template(loop_pptx, sample_data, now=fixed_now)
    assert "ppt/notesSlides/notesSlide1.xml" in result.mutated_parts
    with zipfile.ZipFile(io.BytesIO(result.content)) as zf:
        notes = zf.read("ppt/notesSlides/notesSlide1.xml").decode("utf-8")
    assert "Prepared by Zhang San" in notes


def test_nested_loops_and_outer_scope_lookup():
    xml = "{{#workstations}}[{{name}}:{{#modules}}{{index}}.{{name}}@{{project_name}};{{/modules}}]{{/workstations}}"
    ctx = _ctx(
        {
            "project_name": "P",
            "workstations": [
                {"name": "A", "modules": [{"index": 1, "name": "m1"}, {"index": 2, "name": "m2"}]},
                {"name": "B", "modules": []},
            ],
        }
    )
    assert render_part(xml, ctx) == "[A:1.m1@P;2.m2@P;][B:]"


def test_sections_on_records_scalars_and_missing_values():
    ctx = _ctx({"hardware": {"brand": "Basler"}, "show": True, "hide": False, "empty": []})
    assert render_part("{{#hardware}}{{brand}}{{/hardware}}", ctx) == "Basler"
    assert render_part("{{#show}}yes{{/show}}", ctx) == "yes"
    assert render_part("{{#hide}}no{{/hide}}", ctx) == ""
    assert render_part("{{#empty}}no{{/empty}}", ctx) == ""
    assert render_part("{{#missing}}no{{/missing}}", ctx) == ""


def test_dotted_names_walk_records_and_indexes():
    ctx = _ctx({"hardware": {"cameras": [{"model": "acA"}]}, "a.b": "literal"})
    assert render_part("{{hardware.cameras.0.model}}", ctx) == "acA"
    assert render_part("{{#hardware.cameras}}{{model}}{{/hardware.cameras}}", ctx) == "acA"
    assert render_part("{{a.b}}", ctx) == "literal"
    assert render_part("{{hardware.nope.x}}", ctx) == ""


def test_scalar_formatting():
    ctx = _ctx({"n": None, "t": True, "f": 2.0, "g": 2.5, "i": 3, "l": ["a", 1], "r": {"x": 1}})
    assert render_part("{{n}}|{{t}}|{{f}}|{{g}}|{{i}}|{{l}}|{{r}}", ctx) == "|true|2|2.5|3|a,1|"


def test_values_are_escaped_and_not_rescanned():
    ctx = _ctx({"v": "<b> & \"q\" 'a'", "w": "{{v}}"})
    assert render_part("{{v}}", ctx) == "&lt;b&gt; &amp; &quot;q&quot; &apos;a&apos;"
    assert render_part("{{w}}", ctx) == "&#123;&#123;v&#125;&#125;"


def test_escaping_in_archive(fixed_now):
    data = build_pptx([["{{project_name}}"]])
    result = render_template(data, {"project_name": "A<B & C>"}, now=fixed_now)
    with zipfile.ZipFile(io.BytesIO(result.content)) as zf:
        xml = zf.read("ppt/slides/slide1.xml").decode("utf-8")
    assert "A&lt;B &amp; C&gt;" in xml
    assert slide_paragraphs(result.content) == ["A<B & C>"]


def test_unknown_field_renders_empty(fixed_now):
    data = build_pptx([["[{{nobody_set_this}}]"]])
    result = render_template(data, {}, now=fixed_now)
    assert slide_paragraphs(result.content) == ["[]"]


def test_strict_mode_reports_every_unresolved_tag(fixed_now):
    data = build_pptx([["{{a}} {{b}}"], ["{{#c}}x{{/c}} {{a}}"]])
    with pytest.raises(UnknownTagError) as ei:
        render_template(data, {"b": 1}, strict=True, now=fixed_now)
    issues = ei.value.issues
    assert {(i.id, i.tag, i.part) for i in issues} == {
        ("undefined_tag", "a", "ppt/slides/slide1.xml"),
        ("undefined_tag", "a", "ppt/slides/slide2.xml"),
        ("undefined_tag", "c", "ppt/slides/slide2.xml"),
    }
    assert ei.value.details()[0]["id"] == "undefined_tag"


def test_strict_mode_accepts_explicit_null():
    assert render_part("{{a}}", _ctx({"a": None}), strict=True) == ""


@pytest.mark.parametrize(
    "text, ids",
    [
        ("{{/a}}", ["unopened_loop"]),
        ("{{#a}}", ["unclosed_loop"]),
        ("{{#a}}{{/b}}", ["closing_tag_does_not_match_opening_tag"]),
        ("{{#a}}{{#b}}{{/a}}", ["closing_tag_does_not_match_opening_tag", "unclosed_loop"]),
        ("{{#a}}{{#b}}{{/b}}{{/a}}", []),
    ],
)
def test_balance_checking(text, ids):
    issues, _ = check_balance(tokenize(text))
    assert [i.id for i in issues] == ids


def test_unbalanced_loops_across_parts_are_reported_together(fixed_now):
    data = build_pptx([["{{#a}} open"], ["close {{/b}}"]])
    with pytest.raises(TemplateSyntaxError) as ei:
        render_template(data, {}, now=fixed_now)
    assert not isinstance(ei.value, UnknownTagError)
    assert sorted(i.id for i in ei.value.issues) == ["unclosed_loop", "unopened_loop"]
    assert str(ei.value).startswith("Template processing error:")


def test_split_tokens_render_and_stay_well_formed(fixed_now):
    parts = structured_template(slide_texts=("{{pro</a:t></a:r><a:r><a:t>ject_name}}!",))
    out = render_template(zip_parts(parts), {"project_name": "Acme"}, now=fixed_now)
    with zipfile.ZipFile(io.BytesIO(out.content)) as zf:
        xml = zf.read("ppt/slides/slide1.xml").decode("utf-8")
    assert "<a:t>Acme</a:t></a:r><a:r><a:t>!</a:t>" in xml


def test_untouched_parts_are_byte_identical(loop_pptx, sample_data, fixed_now):
    result = render_template(loop_pptx, sample_data, now=fixed_now)
    with zipfile.ZipFile(io.BytesIO(loop_pptx)) as src, zipfile.ZipFile(io.BytesIO(result.content)) as dst:
        assert src.namelist() == dst.namelist()
        for name in src.namelist():
            if name in result.mutated_parts:
                continue
            assert src.read(name) == dst.read(name), name
    assert result.part_count == len(zipfile.ZipFile(io.BytesIO(loop_pptx)).namelist())


def test_round_trip_with_discovered_fields(fixed_now):
    parts = structured_template()
    data = zip_parts(parts)
    parsed = parse_template(data)
    tree: dict = {}
    for f in parsed.custom_fields:
        if f.startswith("#"):
            tree[f[1:]] = [{}]
        else:
            tree[f] = f"value of {f}"
    out = render_template(data, tree, strict=True, now=fixed_now)
    with Container.open(out.content) as c:
        assert c.names()
        text = c.get_text("ppt/slides/slide2.xml")
    assert "value of name" in text
    assert parse_template(out.content).custom_fields == ()


def test_static_fields_fill_gaps_only(fixed_now):
    data = build_pptx([["{{company_name}}/{{customer}}"]])
    options = RenderOptions(static_fields={"company_name": "ACME Vision", "customer": "fallback"})
    out = render_template(data, {"customer": "ABC"}, now=fixed_now, options=options)
    assert slide_paragraphs(out.content) == ["ACME Vision/ABC"]


def test_template_without_tokens_is_copied(fixed_now):
    parts = structured_template(slide_texts=("plain text",))
    parts["ppt/slideMasters/slideMaster1.xml"] = slide_xml(text_shape("x"), root="sldMaster")
    out = render_template(zip_parts(parts), {}, now=fixed_now)
    assert out.mutated_parts == ()


def test_substituted_braces_do_not_become_tokens(fixed_now):
    data = build_pptx([["Hello {{who}}"]])
    out = render_template(data, {"who": "{{injected}} {{#loop}}"}, now=fixed_now)
    assert slide_paragraphs(out.content) == ["Hello {{injected}} {{#loop}}"]
    assert parse_template(out.content).custom_fields == ()
    again = render_template(out.content, {"injected": "x"}, strict=True, now=fixed_now)
    assert again.mutated_parts == ()


def test_empty_paragraph_loop_leaves_one_paragraph(fixed_now):
    data = build_pptx([["{{#items}}", "{{name}}", "{{/items}}"]])
    out = render_template(data, {"items": []}, now=fixed_now)
    with zipfile.ZipFile(io.BytesIO(out.content)) as zf:
        xml = zf.read("ppt/slides/slide1.xml").decode("utf-8")
    assert "<a:p/></p:txBody>" in xml
    assert slide_paragraphs(out.content) == [""]

    full = render_template(data, {"items": [{"name": "a"}, {"name": "b"}]}, now=fixed_now)
    assert slide_paragraphs(full.content) == ["a", "b"]


def test_ensure_paragraphs_leaves_filled_bodies_alone():
    filled = "<p:txBody><a:bodyPr/><a:p><a:pPr/></a:p></p:txBody>"
    assert ensure_paragraphs(filled) == filled
    cell = "<a:tc><a:txBody><a:bodyPr/><a:lstStyle/></a:txBody></a:tc>"
    assert ensure_paragraphs(cell) == "<a:tc><a:txBody><a:bodyPr/><a:lstStyle/><a:p/></a:txBody></a:tc>"


def test_archive_without_presentation_part_is_rejected(fixed_now):
    data = zip_parts({"secrets/db_password.txt": "hunter2", "ppt/slides/slide1.xml": "<x/>"})
    with pytest.raises(CorruptArchive):
        render_template(data, {}, now=fixed_now)
