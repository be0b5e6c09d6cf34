from __future__ import annotations

import json

import pytest

from erd_canvas import cli
from erd_canvas.core.models import Project

COLUMNS = [
    {"table_name": "users", "column_name": "id", "data_type": "integer", "is_primary_key": True},
    {"table_name": "posts", "column_name": "id", "data_type": "integer", "is_primary_key": True},
    {"table_name": "posts", "column_name": "user_id", "data_type": "integer",
     "foreign_table_name": "users", "foreign_column_name": "id"},
]


def _run(argv: list[str], capsys) -> str:
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    assert exc.value.code == 0
    return capsys.readouterr().out


def test_import_columns_then_export_sql_offline(tmp_path, capsys) -> None:
    columns = tmp_path / "columns.json"
    columns.write_text(json.dumps(COLUMNS))
    project_file = tmp_path / "project.json"

    out = _run(["import-columns", "--file-path", str(columns), "--name", "blog",
                "--output", str(project_file)], capsys)
    assert json.loads(out) == {"status": "ok", "file_path": str(project_file)}

    project = Project.from_json_dict(json.loads(project_file.read_text()))
    assert project.name == "blog"
    assert len(project.connections) == 1

    sql = _run(["export-sql", "--file-path", str(project_file), "--dialect", "mysql"], capsys)
    assert sql.index("CREATE TABLE users") < sql.index("CREATE TABLE posts")
    assert "FOREIGN KEY (user_id) REFERENCES users(id)" in sql


def test_layout_file_rewrites_positions(tmp_path, capsys) -> None:
    columns = tmp_path / "columns.json"
    columns.write_text(json.dumps(COLUMNS))
    project_file = tmp_path / "project.json"
    _run(["import-columns", "--file-path", str(columns), "--output", str(project_file)], capsys)

    _run(["layout-file", "--file-path", str(project_file)], capsys)
    project = Project.from_json_dict(json.loads(project_file.read_text()))
    users = next(t for t in project.tables if t.name == "users")
    posts = next(t for t in project.tables if t.name == "posts")
    assert users.position.y < posts.position.y


def test_validate_file(tmp_path, capsys, blog_project: Project) -> None:
    project_file = tmp_path / "project.json"
    project_file.write_text(json.dumps(blog_project.to_json_dict()))
    out = json.loads(_run(["validate", "--file-path", str(project_file)], capsys))
    assert out["summary"]["valid"] is True


def test_api_commands_build_requests(monkeypatch, capsys) -> None:
    calls = []

    def fake_request(method, endpoint, data=None, params=None):
        calls.append((method, endpoint, data, params))
        return {"success": True}

    monkeypatch.setattr(cli, "_api_request", fake_request)

    out = _run(["add-connection", "--source-id", "t2", "--source-field", "user_id",
                "--target-id", "t1", "--target-field", "id"], capsys)
    assert json.loads(out) == {"success": True}
    assert calls[-1] == ("POST", "/connections", {
        "sourceId": "t2",
        "sourceField": "user_id",
        "targetId": "t1",
        "targetField": "id",
        "relationshipType": "oneToMany",
    }, None)

    _run(["add-table", "--name", "users", "--fields", '[{"name": "id", "type": "INT"}]'], capsys)
    assert calls[-1][2]["fields"] == [{"name": "id", "type": "INT"}]

    _run(["delete-table", "--table-id", "t1"], capsys)
    assert calls[-1][:2] == ("DELETE", "/tables/t1")


def test_add_table_rejects_bad_fields(monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli, "_api_request", lambda *a, **k: pytest.fail("no request expected"))
    out = json.loads(_run(["add-table", "--name", "users", "--fields", "not json"], capsys))
    assert out["status"] == "error"
