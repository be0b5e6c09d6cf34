#!/usr/bin/env python3
"""ERD canvas CLI - drive the schema editor backend, or work on project files offline."""

import argparse
import json
import os
import sys
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path

from .config import configure_logging, get_settings
from .core.importer import import_columns, import_project_json
from .core.layout import estimate_table_size, layered_layout
from .core.models import Project
from .core.sql_export import SQLDialect, SQLExportOptions, generate_project_sql
from .core.validation import validate_project, validation_summary


def _api_base():
    server = get_settings().server
    return os.environ.get("ERD_CANVAS_API", f"http://{server.host}:{server.port}/api")


def _json_out(data):
    print(json.dumps(data))
    sys.exit(0)


def _api_request(method, endpoint, data=None, params=None):
    """Make a request to the ERD canvas backend."""
    url = f"{_api_base()}{endpoint}"

    if params:
        filtered = {k: v for k, v in params.items() if v is not None}
        if filtered:
            url = f"{url}?{urllib.parse.urlencode(filtered)}"

    headers = {"Content-Type": "application/json"}
    body = json.dumps(data).encode() if data is not None else None

    req = urllib.request.Request(url, data=body, headers=headers, method=method)

    try:
        with urllib.request.urlopen(req, timeout=30) as response:
            text = response.read().decode()
            if response.headers.get_content_type() == "text/plain":
                return {"status": "ok", "text": text}
            return json.loads(text)
    except urllib.error.HTTPError as e:
        error_body = e.read().decode()
        try:
            error_data = json.loads(error_body)
            _json_out({"status": "error", "error": f"API error: {error_data.get('detail', 'Unknown error')}"})
        except json.JSONDecodeError:
            _json_out({"status": "error", "error": f"API error ({e.code}): {error_body}"})
    except urllib.error.URLError as e:
        _json_out({"status": "error", "error": f"Connection failed: {e.reason}. Is the erd-canvas server running?"})


def _parse_list_arg(value):
    """Parse a list argument from JSON string or return None."""
    if value is None:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return None


def _read_json(path):
    with open(path, "r") as f:
        return json.load(f)


def _write_or_print(text, output):
    if output:
        Path(output).write_text(text)
        _json_out({"status": "ok", "file_path": str(output)})
    print(text)
    sys.exit(0)


# ── Service ──────────────────────────────────────────────────────────────────

def cmd_serve(args):
    from .backend.main import run
    run(host=args.host, port=args.port)


# ── Projects ─────────────────────────────────────────────────────────────────

def cmd_list_projects(args):
    _json_out(_api_request("GET", "/projects"))


def cmd_new(args):
    _json_out(_api_request("POST", "/projects", data={
        "name": args.name,
        "description": args.description,
        "tags": _parse_list_arg(args.tags) or [],
    }))


def cmd_open(args):
    _json_out(_api_request("POST", f"/projects/{args.project_id}/open"))


def cmd_get_current(args):
    _json_out(_api_request("GET", "/project"))


def cmd_import(args):
    _json_out(_api_request("POST", "/projects/import", data=_read_json(args.file_path)))


# ── Tables ───────────────────────────────────────────────────────────────────

def cmd_add_table(args):
    fields = _parse_list_arg(args.fields)
    if fields is None:
        _json_out({"status": "error", "error": "--fields must be a JSON list"})
    _json_out(_api_request("POST", "/tables", data={
        "name": args.name,
        "fields": fields,
        "color": args.color,
        "x": args.x,
        "y": args.y,
    }))


def cmd_delete_table(args):
    _json_out(_api_request("DELETE", f"/tables/{args.table_id}"))


def cmd_duplicate_table(args):
    _json_out(_api_request("POST", f"/tables/{args.table_id}/duplicate"))


# ── Connections ──────────────────────────────────────────────────────────────

def cmd_add_connection(args):
    _json_out(_api_request("POST", "/connections", data={
        "sourceId": args.source_id,
        "sourceField": args.source_field,
        "targetId": args.target_id,
        "targetField": args.target_field,
        "relationshipType": args.relationship_type,
    }))


def cmd_delete_connection(args):
    _json_out(_api_request("DELETE", f"/connections/{args.connection_id}"))


# ── Layout, history, analysis ────────────────────────────────────────────────

def cmd_auto_layout(args):
    _json_out(_api_request("POST", "/canvas/layout"))


def cmd_undo(args):
    _json_out(_api_request("POST", "/undo"))


def cmd_redo(args):
    _json_out(_api_request("POST", "/redo"))


def cmd_validate(args):
    if args.file_path:
        issues = validate_project(Project.from_json_dict(_read_json(args.file_path)))
        _json_out({
            "status": "ok",
            "issues": [i.to_dict() for i in issues],
            "summary": validation_summary(issues),
        })
    _json_out(_api_request("GET", "/project/validate"))


def cmd_export_sql(args):
    if args.file_path:
        options = SQLExportOptions(
            dialect=SQLDialect(args.dialect),
            include_drop_statements=args.drop,
            include_timestamps=args.timestamps,
        )
        project = Project.from_json_dict(_read_json(args.file_path))
        _write_or_print(generate_project_sql(project, options), args.output)

    result = _api_request("GET", "/project/sql", params={
        "dialect": args.dialect,
        "drop": str(args.drop).lower(),
        "timestamps": str(args.timestamps).lower(),
    })
    _write_or_print(result["text"], args.output)


# ── Offline ──────────────────────────────────────────────────────────────────

def cmd_import_columns(args):
    """Build a project document from a JSON list of column descriptors."""
    columns = _read_json(args.file_path)
    project = import_columns(columns, name=args.name)
    _write_or_print(json.dumps(project.to_json_dict(), indent=2), args.output)


def cmd_layout_file(args):
    """Lay out a project document and write the new positions back."""
    project = import_project_json(_read_json(args.file_path))
    settings = get_settings().layout
    positions = layered_layout(
        project.tables,
        project.connections,
        {t.id: estimate_table_size(t) for t in project.tables},
        rank_separation=settings.rank_separation,
        node_separation=settings.node_separation,
        default_width=settings.default_node_width,
        default_height=settings.default_node_height,
        margin=settings.margin,
        sweeps=settings.ordering_sweeps,
    )
    tables = tuple(t.model_copy(update={"position": positions.get(t.id, t.position)}) for t in project.tables)
    project = project.model_copy(update={"tables": tables}).touch()
    _write_or_print(json.dumps(project.to_json_dict(), indent=2), args.output or args.file_path)


# ── Main ─────────────────────────────────────────────────────────────────────

def build_parser():
    parser = argparse.ArgumentParser(description="ERD canvas CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    # Service
    p = sub.add_parser("serve")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)

    # Projects
    sub.add_parser("list-projects")

    p = sub.add_parser("new")
    p.add_argument("--name", default="Untitled Project")
    p.add_argument("--description", default="")
    p.add_argument("--tags", default=None)

    p = sub.add_parser("open")
    p.add_argument("--project-id", required=True)

    sub.add_parser("get-current")

    p = sub.add_parser("import")
    p.add_argument("--file-path", required=True)

    # Tables
    p = sub.add_parser("add-table")
    p.add_argument("--name", required=True)
    p.add_argument("--fields", default="[]")
    p.add_argument("--color", default=None)
    p.add_argument("--x", type=float, default=100)
    p.add_argument("--y", type=float, default=100)

    p = sub.add_parser("delete-table")
    p.add_argument("--table-id", required=True)

    p = sub.add_parser("duplicate-table")
    p.add_argument("--table-id", required=True)

    # Connections
    p = sub.add_parser("add-connection")
    p.add_argument("--source-id", required=True)
    p.add_argument("--source-field", required=True)
    p.add_argument("--target-id", required=True)
    p.add_argument("--target-field", required=True)
    p.add_argument("--relationship-type", default="oneToMany", choices=["oneToOne", "oneToMany"])

    p = sub.add_parser("delete-connection")
    p.add_argument("--connection-id", required=True)

    # Layout and history
    sub.add_parser("auto-layout")
    sub.add_parser("undo")
    sub.add_parser("redo")

    # Analysis and export
    p = sub.add_parser("validate")
    p.add_argument("--file-path", default=None)

    p = sub.add_parser("export-sql")
    p.add_argument("--file-path", default=None)
    p.add_argument("--output", default=None)
    p.add_argument("--dialect", default="postgresql", choices=[d.value for d in SQLDialect])
    p.add_argument("--drop", action="store_true")
    p.add_argument("--timestamps", action="store_true")

    p = sub.add_parser("import-columns")
    p.add_argument("--file-path", required=True)
    p.add_argument("--name", default="Imported Project")
    p.add_argument("--output", default=None)

    p = sub.add_parser("layout-file")
    p.add_argument("--file-path", required=True)
    p.add_argument("--output", default=None)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging()

    cmd_map = {
        "serve": cmd_serve,
        "list-projects": cmd_list_projects,
        "new": cmd_new,
        "open": cmd_open,
        "get-current": cmd_get_current,
        "import": cmd_import,
        "add-table": cmd_add_table,
        "delete-table": cmd_delete_table,
        "duplicate-table": cmd_duplicate_table,
        "add-connection": cmd_add_connection,
        "delete-connection": cmd_delete_connection,
        "auto-layout": cmd_auto_layout,
        "undo": cmd_undo,
        "redo": cmd_redo,
        "validate": cmd_validate,
        "export-sql": cmd_export_sql,
        "import-columns": cmd_import_columns,
        "layout-file": cmd_layout_file,
    }
    cmd_map[args.command](args)


if __name__ == "__main__":
    main()
