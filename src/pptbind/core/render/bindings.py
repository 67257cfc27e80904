"""Derived convenience fields added to caller data before rendering."""

from __future__ import annotations

import copy
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATE_FORMAT = "{year}/{month}/{day}"
DEFAULT_TIME_FORMAT = "%H:%M:%S"

HARDWARE_COUNTS = (
    ("cameras", "camera_count"),
    ("lenses", "lens_count"),
    ("lights", "light_count"),
    ("controllers", "controller_count"),
)

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:$|[T ])")

# project.<key> -> root key when the root has none
_PROJECT_ALIASES = {"name": "project_name", "code": "project_code"}


def format_date(year: int, month: int, day: int, date_format: str = DEFAULT_DATE_FORMAT) -> str:
    return date_format.format(year=year, month=month, day=day)


def _records(value: Any) -> list[dict[str, Any]] | None:
    if isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
        return value
    return None


def _indexed(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out = []
    for i, item in enumerate(items, start=1):
        item = dict(item)
        item.setdefault("index", i)
        out.append(item)
    return out


def _lift_project(out: dict[str, Any]) -> None:
    project = out.get("project")
    if not isinstance(project, Mapping):
        return
    for key, value in project.items():
        out.setdefault(_PROJECT_ALIASES.get(key, key), value)


def _add_date_parts(out: dict[str, Any], date_format: str) -> None:
    for key, value in list(out.items()):
        if not isinstance(value, str):
            continue
        m = _ISO_DATE_RE.match(value)
        if not m:
            continue
        year, month, day = (int(g) for g in m.groups())
        try:
            date(year, month, day)
        except ValueError:
            logger.debug("Ignoring impossible date in field %s: %s", key, value)
            continue
        out.setdefault(f"{key}_formatted", format_date(year, month, day, date_format))
        out.setdefault(f"{key}_year", year)
        out.setdefault(f"{key}_month", month)
        out.setdefault(f"{key}_day", day)


def _add_workstations(out: dict[str, Any]) -> None:
    raw = out.get("workstations")
    workstations = raw if isinstance(raw, list) else []
    total_modules = 0
    enriched = []
    for i, ws in enumerate(workstations, start=1):
        if not isinstance(ws, dict):
            enriched.append(ws)
            continue
        ws = dict(ws)
        ws.setdefault("index", i)
        modules = ws.get("modules")
        if isinstance(modules, list):
            ws["modules"] = _indexed(modules) if _records(modules) else modules
            ws.setdefault("module_count", len(modules))
            total_modules += len(modules)
        else:
            ws.setdefault("module_count", 0)
        enriched.append(ws)
    if isinstance(raw, list):
        out["workstations"] = enriched
    out.setdefault("workstation_count", len(workstations))
    out.setdefault("total_module_count", total_modules)


def _add_hardware(out: dict[str, Any]) -> None:
    hardware = out.get("hardware")
    if not isinstance(hardware, Mapping):
        return
    total = 0
    for category, count_key in HARDWARE_COUNTS:
        items = hardware.get(category)
        n = len(items) if isinstance(items, list) else 0
        out.setdefault(count_key, n)
        total += n
    out.setdefault("total_hardware_count", total)


def prepare_template_data(
    data: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
    date_format: str = DEFAULT_DATE_FORMAT,
    time_format: str = DEFAULT_TIME_FORMAT,
    static_fields: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Return a copy of ``data`` with derived fields added.

    Values the caller supplied always win over derived ones. ``data`` itself
    is not modified.
    """
    out: dict[str, Any] = copy.deepcopy(dict(data))

    _lift_project(out)
    _add_date_parts(out, date_format)
    _add_workstations(out)
    _add_hardware(out)

    for key, value in list(out.items()):
        if key == "workstations":
            continue
        records = _records(value)
        if records is not None:
            out[key] = _indexed(records)

    ts = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    out.setdefault("generated_at", ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"))
    out.setdefault("generated_date", format_date(ts.year, ts.month, ts.day, date_format))
    out.setdefault("generated_time", ts.strftime(time_format))

    for key, value in (static_fields or {}).items():
        out.setdefault(key, value)
    return out
