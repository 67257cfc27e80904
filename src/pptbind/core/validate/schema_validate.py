from __future__ import annotations

import argparse
from functools import lru_cache
from pathlib import Path
from typing import Any

import orjson
from jsonschema import Draft202012Validator, ValidationError

from pptbind.core.errors import PayloadValidationError

SCHEMA_DIR = Path(__file__).resolve().parents[1] / "schemas"


def load_json(path: Path) -> Any:
    return orjson.loads(path.read_bytes())


def schema_path(name: str) -> Path:
    """Resolve a bundled schema name (``render_request``) or a path to a schema file."""
    p = Path(name)
    if p.suffix == ".json" and p.exists():
        return p
    return SCHEMA_DIR / f"{name}.schema.json"


@lru_cache(maxsize=None)
def _validator(path: str) -> Draft202012Validator:
    schema = load_json(Path(path))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _json_path(e: ValidationError) -> str:
    path = "$"
    for p in e.path:
        path += f"[{p!r}]" if isinstance(p, str) else f"[{p}]"
    return path


def iter_issues(instance: Any, schema: str) -> list[str]:
    """Schema violations of ``instance`` as ``"<jsonpath>: <message>"`` strings."""
    v = _validator(str(schema_path(schema)))
    errors = sorted(v.iter_errors(instance), key=lambda e: list(e.path))
    return [f"{_json_path(e)}: {e.message}" for e in errors]


def validate_payload(instance: Any, schema: str) -> None:
    issues = iter_issues(instance, schema)
    if issues:
        raise PayloadValidationError(issues)


# Helper function to validate a JSON instance file against a schema
def validate_json_against_schema(schema_file: Path, instance_path: Path) -> list[str]:
    """
    Validate a JSON instance against a JSON schema.
    Returns a list of human-readable error strings (empty if valid).
    Each error is formatted as: "- <jsonpath>: <message>"
    """
    if not schema_file.exists():
        return [f"[ERR] schema not found: {schema_file}"]
    if not instance_path.exists():
        return [f"[ERR] instance not found: {instance_path}"]
    return [f"- {issue}" for issue in iter_issues(load_json(instance_path), str(schema_file))]


def main() -> int:
    ap = argparse.ArgumentParser(prog="schema_validate")
    ap.add_argument("--schema", required=True, help="bundled schema name or path to *.schema.json")
    ap.add_argument("--instance", required=True, help="path to json to validate")
    args = ap.parse_args()

    schema_file = schema_path(args.schema)
    instance_path = Path(args.instance)

    errors = validate_json_against_schema(schema_file, instance_path)
    if not errors:
        print(f"[OK] {instance_path} conforms to {schema_file}")
        return 0
    if errors[0].startswith("[ERR]"):
        print(errors[0])
        return 2
    print(f"[NG] {instance_path} does NOT conform to {schema_file}")
    for err in errors:
        print(err)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
