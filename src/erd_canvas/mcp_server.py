#!/usr/bin/env python3
"""
ERD Canvas MCP Server

Provides MCP tools for AI agents to edit the open schema project.
All changes are immediately reflected in the canvas via WebSocket updates.
"""

import json
import os
from typing import Any, Optional

import httpx
from mcp.server.fastmcp import FastMCP

from .config import get_settings

# Create MCP server
mcp = FastMCP("erd-canvas")


class APIError(RuntimeError):
    """The backend rejected a request."""


def _api_base() -> str:
    server = get_settings().server
    return os.environ.get("ERD_CANVAS_API", f"http://{server.host}:{server.port}/api")


# --- HTTP Client Helper ---

def api_request(method: str, endpoint: str, **kwargs) -> Any:
    """Make a request to the ERD canvas backend."""
    url = f"{_api_base()}{endpoint}"
    with httpx.Client(timeout=30.0) as client:
        if method == "GET":
            response = client.get(url, params=kwargs.get("params"))
        elif method == "POST":
            response = client.post(url, json=kwargs.get("json"), params=kwargs.get("params"))
        elif method == "PATCH":
            response = client.patch(url, json=kwargs.get("json"))
        elif method == "PUT":
            response = client.put(url, json=kwargs.get("json"))
        elif method == "DELETE":
            response = client.delete(url)
        else:
            raise ValueError(f"Unknown method: {method}")

        if response.status_code >= 400:
            error = response.json().get("detail", "Unknown error")
            raise APIError(f"API error: {error}")

        if response.headers.get("content-type", "").startswith("text/plain"):
            return response.text
        return response.json()


def _dump(result: Any) -> str:
    return result if isinstance(result, str) else json.dumps(result, indent=2)


# ============================================================================
# PROJECT TOOLS
# ============================================================================

@mcp.tool()
def erd_get_current() -> str:
    """
    Get the open project and its canvas graph.

    Use this to learn table ids, field names and existing relationships
    before making changes.
    """
    return _dump(api_request("GET", "/project"))


@mcp.tool()
def erd_list_projects() -> str:
    """List stored projects with their table and connection counts."""
    return _dump(api_request("GET", "/projects"))


@mcp.tool()
def erd_new_project(name: str = "Untitled Project", description: str = "") -> str:
    """
    Create a new empty project and open it.

    Args:
        name: Name for the new project
        description: Optional description
    """
    return _dump(api_request("POST", "/projects", json={"name": name, "description": description}))


@mcp.tool()
def erd_open_project(project_id: str) -> str:
    """Open a stored project by id."""
    return _dump(api_request("POST", f"/projects/{project_id}/open"))


# ============================================================================
# TABLE TOOLS
# ============================================================================

@mcp.tool()
def erd_add_table(
    name: str,
    fields: list[dict],
    x: float = 100,
    y: float = 100,
    color: Optional[str] = None,
) -> str:
    """
    Create a table.

    Args:
        name: Table name (letters, digits and underscores; not starting with a digit)
        fields: Columns, e.g. [{"name": "id", "type": "INTEGER", "primary": true, "notNull": true}]
        x: X coordinate of the top-left corner
        y: Y coordinate of the top-left corner
        color: Optional header color

    Returns the created table with its generated ids.
    """
    return _dump(api_request("POST", "/tables", json={
        "name": name, "fields": fields, "x": x, "y": y, "color": color,
    }))


@mcp.tool()
def erd_update_table(table: dict) -> str:
    """
    Replace a table. Pass the full table as returned by erd_get_current,
    with the changes applied. Renaming a field drops connections bound to
    the old name. Foreign keys change only through the connection tools.
    """
    return _dump(api_request("PUT", f"/tables/{table['id']}", json=table))


@mcp.tool()
def erd_delete_table(table_id: str) -> str:
    """Delete a table together with its relationships."""
    return _dump(api_request("DELETE", f"/tables/{table_id}"))


@mcp.tool()
def erd_duplicate_table(table_id: str) -> str:
    """Duplicate a table next to the original."""
    return _dump(api_request("POST", f"/tables/{table_id}/duplicate"))


# ============================================================================
# RELATIONSHIP TOOLS
# ============================================================================

@mcp.tool()
def erd_add_connection(
    source_id: str,
    source_field: str,
    target_id: str,
    target_field: str,
    relationship_type: str = "oneToMany",
) -> str:
    """
    Create a relationship: source_field becomes a foreign key to target_field.

    Args:
        source_id: Id of the referencing table
        source_field: Name of the referencing field
        target_id: Id of the referenced table
        target_field: Name of the referenced field
        relationship_type: "oneToOne" or "oneToMany"
    """
    return _dump(api_request("POST", "/connections", json={
        "sourceId": source_id,
        "sourceField": source_field,
        "targetId": target_id,
        "targetField": target_field,
        "relationshipType": relationship_type,
    }))


@mcp.tool()
def erd_delete_connection(connection_id: str) -> str:
    """Delete a relationship and its foreign key."""
    return _dump(api_request("DELETE", f"/connections/{connection_id}"))


# ============================================================================
# LAYOUT, HISTORY, ANALYSIS
# ============================================================================

@mcp.tool()
def erd_auto_layout() -> str:
    """Arrange tables in layers: referenced tables above the tables referencing them."""
    return _dump(api_request("POST", "/canvas/layout"))


@mcp.tool()
def erd_undo() -> str:
    """Undo the last change."""
    return _dump(api_request("POST", "/undo"))


@mcp.tool()
def erd_redo() -> str:
    """Redo the last undone change."""
    return _dump(api_request("POST", "/redo"))


@mcp.tool()
def erd_validate() -> str:
    """Check the open project for naming, key and relationship problems."""
    return _dump(api_request("GET", "/project/validate"))


@mcp.tool()
def erd_export_sql(dialect: str = "postgresql", include_drop_statements: bool = False) -> str:
    """
    Export the open project as SQL DDL.

    Args:
        dialect: postgresql, mysql or sqlite
        include_drop_statements: Prefix the script with DROP TABLE IF EXISTS
    """
    return _dump(api_request("GET", "/project/sql", params={
        "dialect": dialect, "drop": str(include_drop_statements).lower(),
    }))


def main():
    mcp.run()


if __name__ == "__main__":
    main()
