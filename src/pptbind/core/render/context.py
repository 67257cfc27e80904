"""Render data model and the scope chain used while expanding sections.

Caller data (plain JSON-like dicts and lists) is converted once into a tagged
tree of :class:`Scalar`, :class:`Record` and :class:`Collection` nodes, so the
renderer branches on node type instead of inspecting arbitrary Python values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class Scalar:
    value: Any = None

    def truthy(self) -> bool:
        return bool(self.value)


@dataclass(frozen=True)
class Record:
    fields: Mapping[str, "Node"] = field(default_factory=dict)

    def truthy(self) -> bool:
        return True


@dataclass(frozen=True)
class Collection:
    items: tuple["Node", ...] = ()

    def truthy(self) -> bool:
        return bool(self.items)


Node = Union[Scalar, Record, Collection]


def to_node(value: Any) -> Node:
    if isinstance(value, (Scalar, Record, Collection)):
        return value
    if isinstance(value, Mapping):
        return Record({str(k): to_node(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return Collection(tuple(to_node(v) for v in value))
    if isinstance(value, (datetime, date)):
        return Scalar(value.isoformat())
    return Scalar(value)


def format_scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_node(node: Optional[Node]) -> str:
    """Text shown for ``node`` in a ``{{name}}`` position."""
    if node is None or isinstance(node, Record):
        return ""
    if isinstance(node, Scalar):
        return format_scalar(node.value)
    return ",".join(format_node(item) for item in node.items)


def _child(node: Node, segment: str) -> Optional[Node]:
    if isinstance(node, Record):
        return node.fields.get(segment)
    if isinstance(node, Collection) and segment.isdigit():
        i = int(segment)
        return node.items[i] if i < len(node.items) else None
    return None


class RenderContext:
    """Immutable chain of scopes; the root record is the outermost scope."""

    def __init__(self, root: Node, parents: tuple[Node, ...] = ()) -> None:
        self._scopes = parents + (root,)

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "RenderContext":
        return cls(to_node(data))

    @property
    def depth(self) -> int:
        return len(self._scopes)

    def push(self, node: Node) -> "RenderContext":
        ctx = RenderContext.__new__(RenderContext)
        ctx._scopes = self._scopes + (node,)
        return ctx

    def lookup(self, name: str) -> Optional[Node]:
        """Resolve ``name`` innermost scope first.

        A literal key (``"hardware.cameras"``) wins over a dotted walk. A
        dotted walk starts from the innermost scope binding its first segment.
        """
        head, _, rest = name.partition(".")
        for scope in reversed(self._scopes):
            if not isinstance(scope, Record):
                continue
            if rest and name in scope.fields:
                return scope.fields[name]
            if head not in scope.fields:
                continue
            node: Optional[Node] = scope.fields[head]
            for segment in rest.split(".") if rest else ():
                node = _child(node, segment) if node is not None else None
            return node
        return None
