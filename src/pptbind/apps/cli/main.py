from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Optional

import orjson

from pptbind.core.container.packager import verify_package
from pptbind.core.errors import ConfigValidationError, PptbindError, TemplateSyntaxError
from pptbind.core.extract.template_parser import parse_template
from pptbind.core.render.template_renderer import render_template
from pptbind.core.utils.config import Settings, configure_logging, load_settings
from pptbind.core.validate.schema_validate import iter_issues, schema_path, validate_json_against_schema


def _load_json(path: Path) -> Any:
    return orjson.loads(path.read_bytes())


def _write_json(obj: Any, out: Optional[str]) -> None:
    data = orjson.dumps(obj, option=orjson.OPT_INDENT_2)
    if out:
        Path(out).write_bytes(data + b"\n")
    else:
        print(data.decode("utf-8"))


def _settings(args: argparse.Namespace) -> Settings:
    return load_settings(Path(args.config) if args.config else None)


def _print_issues(e: TemplateSyntaxError) -> None:
    for issue in e.issues:
        where = f" [{issue.part}]" if issue.part else ""
        print(f"  - {issue.id}: {issue.message}{where}")


def cmd_parse(args: argparse.Namespace) -> int:
    """Parse a template and write ParsedTemplate JSON (stdout when --out is omitted)."""
    in_path = Path(args.template)
    if not in_path.exists():
        print(f"[NG] template not found: {in_path}")
        return 2

    settings = _settings(args)
    parsed = parse_template(
        in_path.read_bytes(),
        file_name=in_path.name,
        registry=settings.parse.registry(),
        limits=settings.parse.limits(),
    )
    _write_json(parsed.to_dict(), args.out)
    if args.out:
        print(
            f"[OK] parsed: {in_path} -> {args.out} "
            f"({parsed.slide_count} slides, {len(parsed.custom_fields)} custom fields)"
        )
    for w in parsed.warnings:
        print(f"[WARN] {w}")
    return 0


def cmd_render(args: argparse.Namespace) -> int:
    in_path = Path(args.template)
    data_path = Path(args.data)
    missing = [str(p) for p in (in_path, data_path) if not p.exists()]
    if missing:
        print("[NG] missing required files:")
        for m in missing:
            print(f"  - {m}")
        return 2

    data = _load_json(data_path)
    errors = iter_issues({"data": data}, "render_request")
    if errors:
        print(f"[NG] {data_path} is not a valid data tree")
        for e in errors:
            print(f"  - {e}")
        return 2

    settings = _settings(args)
    strict = args.strict or settings.render.strict
    try:
        result = render_template(in_path.read_bytes(), data, strict=strict, options=settings.render.options())
    except TemplateSyntaxError as e:
        print(f"[NG] {e.summary}")
        _print_issues(e)
        return 2
    verify_package(result.content)

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(result.content)
    print(f"[OK] rendered: {out_path} ({len(result.mutated_parts)} parts changed, {len(result.content)} bytes)")
    return 0


def cmd_fields(args: argparse.Namespace) -> int:
    settings = _settings(args)
    registry = settings.parse.registry()
    for extra in args.catalog or []:
        registry = registry.extend_from_file(Path(extra))
    if args.json:
        _write_json(registry.to_dict(), None)
        return 0
    for c in registry.categories:
        print(f"{c.id}: {c.label}")
        for f in c.fields:
            suffix = " (loop)" if f.loop else ""
            print(f"  {f.field:<28} {f.label}{suffix}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    schema_file = schema_path(args.schema)
    instance_path = Path(args.instance)
    errors = validate_json_against_schema(schema_file, instance_path)
    if not errors:
        print(f"[OK] {instance_path} conforms to {schema_file}")
        return 0
    if errors[0].startswith("[ERR]"):
        print(f"[NG] {errors[0]}")
        return 2
    print(f"[NG] {instance_path} does NOT conform to {schema_file}")
    for err in errors[:20]:
        print(f"  {err}")
    if len(errors) > 20:
        print(f"  ... ({len(errors)} errors)")
    return 2


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from pptbind.apps.http.server import create_app

    settings = _settings(args)
    host = args.host or settings.http.host
    port = args.port or settings.http.port
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pptbind")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--config", help="YAML settings file (default: $PPTBIND_CONFIG)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_parse = sub.add_parser("parse", help="introspect a .pptx template into ParsedTemplate JSON")
    p_parse.add_argument("template", help="path to .pptx template")
    p_parse.add_argument("--out", required=False, help="output JSON path (default: stdout)")
    p_parse.set_defaults(func=cmd_parse)

    p_rnd = sub.add_parser("render", help="fill a .pptx template with a JSON data tree")
    p_rnd.add_argument("template", help="path to .pptx template")
    p_rnd.add_argument("--data", required=True, help="JSON file with the data tree")
    p_rnd.add_argument("--out", required=True, help="output .pptx path")
    p_rnd.add_argument("--strict", action="store_true", help="fail on tags with no value in the data")
    p_rnd.set_defaults(func=cmd_render)

    p_fields = sub.add_parser("fields", help="list the system fields available to templates")
    p_fields.add_argument("--catalog", action="append", help="extra field catalog (JSON/YAML); repeatable")
    p_fields.add_argument("--json", action="store_true", help="print the catalog as JSON")
    p_fields.set_defaults(func=cmd_fields)

    p_val = sub.add_parser("validate", help="validate a JSON file against a bundled or given schema")
    p_val.add_argument("--schema", required=True, help="schema name (e.g. parsed_template) or *.schema.json path")
    p_val.add_argument("--instance", required=True, help="path to json to validate")
    p_val.set_defaults(func=cmd_validate)

    p_srv = sub.add_parser("serve", help="run the HTTP service")
    p_srv.add_argument("--host", help="bind address (default from settings)")
    p_srv.add_argument("--port", type=int, help="port (default from settings)")
    p_srv.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "WARNING")
    try:
        return args.func(args)
    except ConfigValidationError as e:
        print(f"[NG] {e}")
        return 2
    except PptbindError as e:
        print("[NG] " + args.cmd + " failed")
        print(f"      detail: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
