"""Resolve Open Packaging Convention relationships between archive parts."""

from __future__ import annotations

import posixpath
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import PurePosixPath

from pptx.opc.constants import RELATIONSHIP_TYPE as RT

from pptbind.core.container.package import Container

_RELS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"

RELTYPE_SLIDE_MASTER = RT.SLIDE_MASTER
RELTYPE_SLIDE_LAYOUT = RT.SLIDE_LAYOUT
RELTYPE_THEME = RT.THEME


@dataclass(frozen=True)
class Relationship:
    """A single outgoing relationship of a source part."""

    source_part: str
    r_id: str
    rel_type: str
    target: str
    is_external: bool = False
    resolved_target: str | None = None


def rels_path_for(part: str) -> str:
    """``ppt/slides/slide1.xml`` -> ``ppt/slides/_rels/slide1.xml.rels``."""
    p = PurePosixPath(part)
    return (p.parent / "_rels" / f"{p.name}.rels").as_posix()


def _resolve_target(source_part: str, target: str) -> str:
    if target.startswith("/"):
        return target.lstrip("/")
    base_dir = PurePosixPath(source_part).parent
    return posixpath.normpath((base_dir / target).as_posix())


def read_relationships(container: Container, part: str) -> list[Relationship]:
    """Return relationships declared for ``part``; empty when it has no rels part.

    Raises ``xml.etree.ElementTree.ParseError`` when the rels part is malformed.
    """
    data = container.get_part(rels_path_for(part))
    if data is None:
        return []
    root = ET.fromstring(data)
    out: list[Relationship] = []
    for el in root.findall(f"{{{_RELS_NS}}}Relationship"):
        target = el.get("Target", "")
        is_external = el.get("TargetMode") == "External"
        out.append(
            Relationship(
                source_part=part,
                r_id=el.get("Id", ""),
                rel_type=el.get("Type", ""),
                target=target,
                is_external=is_external,
                resolved_target=None if is_external or not target else _resolve_target(part, target),
            )
        )
    return out


def first_target(container: Container, part: str, rel_type: str) -> str | None:
    """Resolved path of the first internal relationship of ``rel_type``."""
    for rel in read_relationships(container, part):
        if rel.rel_type == rel_type and rel.resolved_target:
            return rel.resolved_target
    return None
