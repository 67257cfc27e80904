"""Find ``{{name}}`` data-binding tokens in part XML."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, NamedTuple

SCALAR = "scalar"
LOOP_OPEN = "open"
LOOP_CLOSE = "close"

TOKEN_RE = re.compile(r"\{\{([#/]?)([A-Za-z_][A-Za-z0-9_.\-]*)\}\}")

_TAG_RE = re.compile(r"<[^<>]*>")
# A token whose characters are interleaved with markup, e.g. when PowerPoint
# splits "{{project_name}}" over several runs.
_SPLIT_TOKEN_RE = re.compile(r"\{(?:<[^<>]*>)*\{(?:[^{}<>]|<[^<>]*>)*?\}(?:<[^<>]*>)*\}")

_KIND_BY_PREFIX = {"": SCALAR, "#": LOOP_OPEN, "/": LOOP_CLOSE}


class Token(NamedTuple):
    kind: str
    name: str
    start: int
    end: int

    @property
    def raw(self) -> str:
        prefix = {SCALAR: "", LOOP_OPEN: "#", LOOP_CLOSE: "/"}[self.kind]
        return "{{" + prefix + self.name + "}}"


@dataclass(frozen=True)
class TokenSet:
    """Field names advertised by one or more parts.

    ``fields`` keeps first-seen order; loop names carry a ``#`` prefix there.
    """

    fields: tuple[str, ...] = ()

    @property
    def scalars(self) -> frozenset[str]:
        return frozenset(f for f in self.fields if not f.startswith("#"))

    @property
    def loop_names(self) -> frozenset[str]:
        return frozenset(f[1:] for f in self.fields if f.startswith("#"))

    def union(self, other: "TokenSet") -> "TokenSet":
        return TokenSet(tuple(dict.fromkeys(self.fields + other.fields)))

    def __len__(self) -> int:
        return len(self.fields)


def _rejoin(m: re.Match[str]) -> str:
    s = m.group(0)
    if "<" not in s:
        return s
    token = _TAG_RE.sub("", s)
    if not TOKEN_RE.fullmatch(token):
        return s
    # Keep every tag, in order, after the rejoined token so the markup stays balanced.
    return token + "".join(_TAG_RE.findall(s))


def heal_split_tokens(xml_text: str) -> str:
    """Rejoin tokens whose characters were split across XML runs."""
    if "{" not in xml_text:
        return xml_text
    return _SPLIT_TOKEN_RE.sub(_rejoin, xml_text)


def tokenize(text: str) -> list[Token]:
    """Tokens in ``text`` in source order. ``text`` should already be healed."""
    return [
        Token(_KIND_BY_PREFIX[m.group(1)], m.group(2), m.start(), m.end())
        for m in TOKEN_RE.finditer(text)
    ]


def extract(xml_text: str) -> TokenSet:
    """Scalar and loop names in ``xml_text``; loop-close tokens are not advertised."""
    fields: dict[str, None] = {}
    for tok in tokenize(heal_split_tokens(xml_text)):
        if tok.kind == SCALAR:
            fields.setdefault(tok.name)
        elif tok.kind == LOOP_OPEN:
            fields.setdefault("#" + tok.name)
    return TokenSet(tuple(fields))


def merge(token_sets: Iterable[TokenSet]) -> TokenSet:
    out = TokenSet()
    for ts in token_sets:
        out = out.union(ts)
    return out
