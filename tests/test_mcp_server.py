from __future__ import annotations

import json

import httpx
import pytest

from erd_canvas import mcp_server


def test_tools_call_the_backend(monkeypatch) -> None:
    calls = []

    def fake_request(method, endpoint, **kwargs):
        calls.append((method, endpoint, kwargs))
        return {"success": True}

    monkeypatch.setattr(mcp_server, "api_request", fake_request)

    assert json.loads(mcp_server.erd_add_connection("t2", "user_id", "t1", "id")) == {"success": True}
    assert calls[-1] == ("POST", "/connections", {"json": {
        "sourceId": "t2",
        "sourceField": "user_id",
        "targetId": "t1",
        "targetField": "id",
        "relationshipType": "oneToMany",
    }})

    mcp_server.erd_update_table({"id": "t1", "name": "users", "fields": []})
    assert calls[-1][:2] == ("PUT", "/tables/t1")

    mcp_server.erd_auto_layout()
    assert calls[-1][:2] == ("POST", "/canvas/layout")


def _patch_transport(monkeypatch, handler) -> None:
    real_client = httpx.Client

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(mcp_server.httpx, "Client", client_factory)


def test_api_request_returns_json_and_text(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/project/sql"):
            return httpx.Response(200, text="CREATE TABLE users ();")
        return httpx.Response(200, json={"success": True, "path": request.url.path})

    _patch_transport(monkeypatch, handler)
    monkeypatch.setenv("ERD_CANVAS_API", "http://backend/api")

    assert mcp_server.api_request("GET", "/project") == {"success": True, "path": "/api/project"}
    assert mcp_server.erd_export_sql() == "CREATE TABLE users ();"


def test_api_errors_are_raised(monkeypatch) -> None:
    _patch_transport(monkeypatch, lambda request: httpx.Response(409, json={"detail": "No project open"}))
    with pytest.raises(mcp_server.APIError, match="No project open"):
        mcp_server.api_request("POST", "/undo")
    with pytest.raises(ValueError):
        mcp_server.api_request("OPTIONS", "/undo")
