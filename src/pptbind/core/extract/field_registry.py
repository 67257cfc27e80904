"""System field catalog and the combined field surface of a template.

The default catalog lives in ``schemas/system_fields.json``. Deployments can
layer further catalogs (JSON or YAML, same shape) on top without code
changes:

    registry = FieldRegistry.default().extend_from_file(Path("site_fields.yaml"))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import orjson
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parents[1] / "schemas" / "system_fields.json"

CUSTOM_CATEGORY = "custom"


@dataclass(frozen=True)
class SystemField:
    field: str
    label: str
    example: str = ""
    loop: bool = False


@dataclass(frozen=True)
class FieldCategory:
    id: str
    label: str
    fields: tuple[SystemField, ...] = ()


@dataclass(frozen=True)
class FieldCatalogEntry:
    """One row of the field list shown to template authors."""

    field: str
    label: str
    category: str
    loop: bool
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "label": self.label,
            "category": self.category,
            "loop": self.loop,
            "source": self.source,
        }


@dataclass(frozen=True)
class FieldMapping:
    template_field: str
    system_field: str

    def to_dict(self) -> dict[str, str]:
        return {"templateField": self.template_field, "systemField": self.system_field}


def _normalize(name: str) -> str:
    return name.lower().replace("_", "").replace("-", "")


def _categories_from_obj(obj: Any, *, source: str) -> list[FieldCategory]:
    if not isinstance(obj, Mapping) or not isinstance(obj.get("categories"), list):
        raise ValueError(f"field catalog {source} must be an object with a 'categories' list")
    out: list[FieldCategory] = []
    for c in obj["categories"]:
        if not isinstance(c, Mapping) or not isinstance(c.get("id"), str):
            raise ValueError(f"field catalog {source}: every category needs a string 'id'")
        fields = tuple(
            SystemField(
                field=str(f["field"]),
                label=str(f.get("label") or f["field"]),
                example=str(f.get("example") or ""),
                loop=bool(f.get("loop", False)),
            )
            for f in c.get("fields") or []
        )
        out.append(FieldCategory(id=c["id"], label=str(c.get("label") or c["id"]), fields=fields))
    return out


@dataclass(frozen=True)
class FieldRegistry:
    """Ordered, composable collection of system field categories."""

    categories: tuple[FieldCategory, ...] = field(default_factory=tuple)

    @classmethod
    def default(cls) -> "FieldRegistry":
        obj = orjson.loads(DEFAULT_CATALOG_PATH.read_bytes())
        return cls(tuple(_categories_from_obj(obj, source=str(DEFAULT_CATALOG_PATH))))

    @classmethod
    def from_files(cls, paths: Iterable[str | Path]) -> "FieldRegistry":
        reg = cls.default()
        for p in paths:
            reg = reg.extend_from_file(Path(p))
        return reg

    def extend(self, categories: Iterable[FieldCategory]) -> "FieldRegistry":
        """Return a registry with ``categories`` merged in; same-id categories gain new fields."""
        merged: dict[str, FieldCategory] = {c.id: c for c in self.categories}
        for extra in categories:
            base = merged.get(extra.id)
            if base is None:
                merged[extra.id] = extra
                continue
            known = {f.field for f in base.fields}
            added = tuple(f for f in extra.fields if f.field not in known)
            merged[extra.id] = FieldCategory(id=base.id, label=base.label, fields=base.fields + added)
        return FieldRegistry(tuple(merged.values()))

    def extend_from_file(self, path: Path) -> "FieldRegistry":
        # YAML is a superset of JSON, so one loader covers both formats.
        obj = yaml.safe_load(path.read_text(encoding="utf-8"))
        logger.info("Loaded field catalog %s", path)
        return self.extend(_categories_from_obj(obj, source=str(path)))

    def system_field_names(self) -> list[str]:
        names: dict[str, None] = {}
        for c in self.categories:
            for f in c.fields:
                names.setdefault(f.field)
        return list(names)

    def find(self, name: str) -> tuple[FieldCategory, SystemField] | None:
        for c in self.categories:
            for f in c.fields:
                if f.field == name:
                    return c, f
        return None

    def category_of(self, name: str) -> str:
        hit = self.find(name)
        return hit[0].id if hit else CUSTOM_CATEGORY

    def label_of(self, name: str) -> str:
        hit = self.find(name)
        return hit[1].label if hit else name

    def to_dict(self) -> dict[str, Any]:
        return {
            "categories": [
                {
                    "id": c.id,
                    "label": c.label,
                    "fields": [
                        {"field": f.field, "label": f.label, "example": f.example, "loop": f.loop}
                        for f in c.fields
                    ],
                }
                for c in self.categories
            ]
        }


def build_field_catalog(discovered: Sequence[str], registry: FieldRegistry) -> list[FieldCatalogEntry]:
    """Discovered template fields first, then every system field not already listed.

    ``discovered`` uses the token extractor's convention (``#name`` for loops).
    Nothing is validated: a discovered field need not exist in the registry.
    """
    out: list[FieldCatalogEntry] = []
    seen: set[str] = set()
    for raw in discovered:
        loop = raw.startswith("#")
        name = raw[1:] if loop else raw
        if name in seen:
            continue
        seen.add(name)
        out.append(
            FieldCatalogEntry(
                field=name,
                label=registry.label_of(name),
                category=registry.category_of(name),
                loop=loop,
                source="template",
            )
        )
    for c in registry.categories:
        for f in c.fields:
            if f.field in seen:
                continue
            seen.add(f.field)
            out.append(FieldCatalogEntry(field=f.field, label=f.label, category=c.id, loop=f.loop, source="system"))
    return out


def auto_map_fields(custom_fields: Sequence[str], registry: FieldRegistry) -> list[FieldMapping]:
    """Suggest a system field for each template field: exact match, then a loose one."""
    names = registry.system_field_names()
    loose = {}
    for n in names:
        loose.setdefault(_normalize(n), n)

    mappings: list[FieldMapping] = []
    for raw in custom_fields:
        tf = raw[1:] if raw.startswith("#") else raw
        if tf in names:
            mappings.append(FieldMapping(tf, tf))
            continue
        match = loose.get(_normalize(tf))
        if match is not None:
            mappings.append(FieldMapping(tf, match))
    return mappings
