"""Substitute data into the ``{{...}}`` tokens of a presentation archive.

Rendering works on the raw XML text of each slide, layout, master and notes
part. Each part is compiled into a small tree of text, variables and
sections, checked for balanced sections, and rendered against a
:class:`RenderContext`. Every other archive member is copied untouched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Union
from xml.sax.saxutils import escape

from pptbind.core.container.package import PRESENTATION_PART, SLIDE_PART, Container
from pptbind.core.container.packager import pack
from pptbind.core.errors import CorruptArchive, TemplateIssue, TemplateSyntaxError, UnknownTagError
from pptbind.core.extract.tokens import LOOP_CLOSE, LOOP_OPEN, SCALAR, TOKEN_RE, Token, heal_split_tokens, tokenize
from pptbind.core.render.bindings import DEFAULT_DATE_FORMAT, DEFAULT_TIME_FORMAT, prepare_template_data
from pptbind.core.render.context import Collection, Record, RenderContext, format_node

logger = logging.getLogger(__name__)

MAX_SLIDES_COUNTED = 10000

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;", "{": "&#123;", "}": "&#125;"}
# Characters XML 1.0 does not allow anywhere in a document.
_ILLEGAL_XML_CHARS_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")

_PARAGRAPH_RE = re.compile(r"<a:p(?:\s[^>]*)?>.*?</a:p>", re.S)
_TAG_RE = re.compile(r"<[^<>]*>")
# Text bodies of shapes (p:) and table cells (a:). DrawingML needs at least one a:p in each.
_TX_BODY_RE = re.compile(r"(<(p|a):txBody(?:\s[^>]*)?>)(.*?)(</\2:txBody>)", re.S)
_HAS_PARAGRAPH_RE = re.compile(r"<a:p[\s/>]")


@dataclass(frozen=True)
class RenderOptions:
    date_format: str = DEFAULT_DATE_FORMAT
    time_format: str = DEFAULT_TIME_FORMAT
    static_fields: Mapping[str, Any] = field(default_factory=dict)
    compresslevel: Optional[int] = None


@dataclass(frozen=True)
class RenderResult:
    content: bytes
    mutated_parts: tuple[str, ...]
    part_count: int
    slide_count: int = 0


@dataclass
class _Var:
    name: str


@dataclass
class _Section:
    name: str
    children: list["_Node"] = field(default_factory=list)


_Node = Union[str, _Var, _Section]


def escape_value(value: str) -> str:
    return escape(_ILLEGAL_XML_CHARS_RE.sub("", value), _XML_ENTITIES)


def _keep_one_paragraph(m: re.Match[str]) -> str:
    if _HAS_PARAGRAPH_RE.search(m.group(3)):
        return m.group(0)
    return m.group(1) + m.group(3) + "<a:p/>" + m.group(4)


def ensure_paragraphs(xml_text: str) -> str:
    """Give every text body emptied by a paragraph loop an empty ``<a:p/>``."""
    if "txBody" not in xml_text:
        return xml_text
    return _TX_BODY_RE.sub(_keep_one_paragraph, xml_text)


# ---------------------------------------------------------------------------
# Compilation


def check_balance(tokens: list[Token], part: str = "") -> tuple[list[TemplateIssue], dict[int, int]]:
    """Return balance problems and the open-index -> close-index pairs that did match."""
    issues: list[TemplateIssue] = []
    pairs: dict[int, int] = {}
    stack: list[int] = []
    for i, tok in enumerate(tokens):
        if tok.kind == LOOP_OPEN:
            stack.append(i)
        elif tok.kind == LOOP_CLOSE:
            if not stack:
                issues.append(
                    TemplateIssue(
                        f'Unopened loop: the closing tag "{tok.raw}" has no opening tag',
                        "unopened_loop",
                        part=part,
                        tag=tok.name,
                    )
                )
                continue
            j = stack.pop()
            opener = tokens[j]
            if opener.name != tok.name:
                issues.append(
                    TemplateIssue(
                        f'Closing tag "{tok.raw}" does not match opening tag "{opener.raw}"',
                        "closing_tag_does_not_match_opening_tag",
                        part=part,
                        tag=tok.name,
                    )
                )
                continue
            pairs[j] = i
    for i in stack:
        issues.append(
            TemplateIssue(
                f'Unclosed loop: "{tokens[i].raw}" is never closed',
                "unclosed_loop",
                part=part,
                tag=tokens[i].name,
            )
        )
    return issues, pairs


def _lone_tag_paragraphs(text: str) -> dict[int, tuple[int, int]]:
    """Token start offset -> paragraph span, for paragraphs holding nothing but one section tag."""
    out: dict[int, tuple[int, int]] = {}
    for m in _PARAGRAPH_RE.finditer(text):
        para = m.group(0)
        visible = _TAG_RE.sub("", para).strip()
        tok = TOKEN_RE.fullmatch(visible)
        if tok is None or not tok.group(1):
            continue
        inner = TOKEN_RE.search(para)
        if inner is not None:
            out[m.start() + inner.start()] = (m.start(), m.end())
    return out


def _token_spans(text: str, tokens: list[Token], pairs: dict[int, int]) -> list[tuple[int, int]]:
    # A section whose open and close tags each fill a whole paragraph repeats
    # the paragraphs between them; the tag paragraphs themselves are dropped.
    spans = [(t.start, t.end) for t in tokens]
    lone = _lone_tag_paragraphs(text)
    for i, j in pairs.items():
        a, b = lone.get(tokens[i].start), lone.get(tokens[j].start)
        if a is not None and b is not None and a[1] <= b[0]:
            spans[i], spans[j] = a, b
    return spans


def _build_tree(text: str, tokens: list[Token], spans: list[tuple[int, int]]) -> list[_Node]:
    root: list[_Node] = []
    current = root
    stack: list[list[_Node]] = []
    pos = 0
    for tok, (start, end) in zip(tokens, spans):
        if start > pos:
            current.append(text[pos:start])
        if tok.kind == SCALAR:
            current.append(_Var(tok.name))
        elif tok.kind == LOOP_OPEN:
            section = _Section(tok.name)
            current.append(section)
            stack.append(current)
            current = section.children
        else:
            current = stack.pop()
        pos = end
    if pos < len(text):
        current.append(text[pos:])
    return root


def compile_part(xml_text: str, part: str = "") -> tuple[list[_Node], list[TemplateIssue]]:
    """Compile one part; the tree is empty when the part has balance issues."""
    text = heal_split_tokens(xml_text)
    tokens = tokenize(text)
    issues, pairs = check_balance(tokens, part)
    if issues:
        return [], issues
    return _build_tree(text, tokens, _token_spans(text, tokens, pairs)), []


# ---------------------------------------------------------------------------
# Evaluation


def _render_nodes(nodes: list[_Node], ctx: RenderContext, misses: Optional[list[str]]) -> str:
    out: list[str] = []
    for node in nodes:
        if isinstance(node, str):
            out.append(node)
            continue
        value = ctx.lookup(node.name)
        if value is None and misses is not None:
            misses.append(node.name)
        if isinstance(node, _Var):
            out.append(escape_value(format_node(value)))
        elif value is None:
            continue
        elif isinstance(value, Collection):
            for item in value.items:
                out.append(_render_nodes(node.children, ctx.push(item), misses))
        elif isinstance(value, Record):
            out.append(_render_nodes(node.children, ctx.push(value), misses))
        elif value.truthy():
            out.append(_render_nodes(node.children, ctx, misses))
    return "".join(out)


def render_part(xml_text: str, ctx: RenderContext, *, part: str = "", strict: bool = False) -> str:
    """Render a single part's XML text. Raises ``TemplateSyntaxError`` or ``UnknownTagError``."""
    tree, issues = compile_part(xml_text, part)
    if issues:
        raise TemplateSyntaxError(issues)
    misses: Optional[list[str]] = [] if strict else None
    rendered = ensure_paragraphs(_render_nodes(tree, ctx, misses))
    if misses:
        raise UnknownTagError(_undefined_issues(misses, part))
    return rendered


def _undefined_issues(names: list[str], part: str) -> list[TemplateIssue]:
    return [
        TemplateIssue(f'Tag "{{{{{name}}}}}" has no value in the data', "undefined_tag", part=part, tag=name)
        for name in dict.fromkeys(names)
    ]


def render_container(container: Container, data: Mapping[str, Any], *, strict: bool = False) -> dict[str, str]:
    """Render every templated part and return ``{path: new_text}`` for the parts that changed.

    ``data`` is used as-is; derived fields are the caller's concern (see
    :func:`prepare_template_data`). Balance issues from all parts are
    reported together, as are strict-mode misses.
    """
    compiled: list[tuple[str, str, list[_Node]]] = []
    issues: list[TemplateIssue] = []
    for path in container.templated_parts():
        try:
            text = container.get_text(path) or ""
        except UnicodeDecodeError as e:
            raise CorruptArchive(f"Part {path} is not UTF-8 text: {e}") from e
        if "{" not in text:
            continue
        tree, part_issues = compile_part(text, path)
        issues.extend(part_issues)
        compiled.append((path, text, tree))
    if issues:
        logger.warning("Template has %d loop tag problem(s)", len(issues))
        raise TemplateSyntaxError(issues)

    ctx = RenderContext.from_data(data)
    mutated: dict[str, str] = {}
    undefined: list[TemplateIssue] = []
    for path, text, tree in compiled:
        misses: Optional[list[str]] = [] if strict else None
        rendered = ensure_paragraphs(_render_nodes(tree, ctx, misses))
        if misses:
            undefined.extend(_undefined_issues(misses, path))
        if rendered != text:
            mutated[path] = rendered
    if undefined:
        raise UnknownTagError(undefined)
    return mutated


def render_template(
    data: bytes,
    tree: Mapping[str, Any],
    *,
    strict: bool = False,
    now: Optional[datetime] = None,
    options: Optional[RenderOptions] = None,
) -> RenderResult:
    """Render ``tree`` into the template archive ``data`` and return the new archive."""
    options = options or RenderOptions()
    prepared = prepare_template_data(
        tree,
        now=now,
        date_format=options.date_format,
        time_format=options.time_format,
        static_fields=options.static_fields,
    )
    with Container.open(data) as container:
        if not container.has_part(PRESENTATION_PART):
            raise CorruptArchive(f"Template is not a presentation: {PRESENTATION_PART} is missing")
        mutated = render_container(container, prepared, strict=strict)
        content = pack(mutated, container, compresslevel=options.compresslevel)
        part_count = len(container.names())
        slide_count = sum(1 for _ in container.numbered_parts(SLIDE_PART, MAX_SLIDES_COUNTED))
    logger.info("Rendered %d of %d parts (%d bytes)", len(mutated), part_count, len(content))
    return RenderResult(
        content=content,
        mutated_parts=tuple(mutated),
        part_count=part_count,
        slide_count=slide_count,
    )
