"""
ERD Canvas Backend - FastAPI Application

This is the main entry point for the schema editor backend.
It provides:
- REST API for project operations (CRUD for tables/connections, project
  lifecycle, undo/redo, SQL export, import, validation)
- Canvas endpoints that route renderer gestures through CanvasSync
- WebSocket endpoint for real-time updates and notifications
- CORS configuration for local frontend development
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError as ModelValidationError

from ..config import get_settings
from ..core.clipboard import Clipboard
from ..core.errors import SchemaError
from ..core.importer import ColumnDescriptor, import_columns, import_project_json
from ..core.models import (
    Connection,
    ConnectionDefinition,
    Field as TableField,
    Position,
    RelationshipType,
    Table,
    TableDefinition,
)
from ..core.sql_export import SQLDialect, SQLExportOptions, generate_project_sql
from ..core.validation import validate_project, validation_summary
from .canvas_sync import CanvasSync
from .project_manager import ProjectManager
from .storage import JsonFileProjectStore
from .websocket_manager import ws_manager

logger = logging.getLogger(__name__)

settings = get_settings()

project_manager = ProjectManager(
    store=JsonFileProjectStore(settings.storage.directory),
    max_history=settings.history.max_entries,
    autosave=settings.storage.autosave,
    duplicate_offset=settings.clipboard.duplicate_offset,
)

canvas = CanvasSync(
    project_manager,
    clipboard=Clipboard(
        paste_offset=settings.clipboard.paste_offset,
        default_anchor=Position(x=settings.clipboard.paste_anchor_x, y=settings.clipboard.paste_anchor_y),
    ),
    layout_options={
        "rank_separation": settings.layout.rank_separation,
        "node_separation": settings.layout.node_separation,
        "default_width": settings.layout.default_node_width,
        "default_height": settings.layout.default_node_height,
        "margin": settings.layout.margin,
        "sweeps": settings.layout.ordering_sweeps,
    },
)


# --- Async change notification ---
# Bridge between sync ProjectManager/CanvasSync callbacks and async WebSocket broadcasts.
# The event is created per lifespan so it belongs to the serving loop.

_change_event: Optional[asyncio.Event] = None


def on_project_change(project):
    """Callback for snapshot changes - sets event for async handler."""
    if _change_event is not None:
        _change_event.set()


def on_canvas_notification(level: str, message: str):
    """Notifier for the canvas - queues a toast for connected clients."""
    logger.log(logging.WARNING if level in ("warning", "error") else logging.INFO, "%s", message)
    ws_manager.queue_notification(level, message)
    if _change_event is not None:
        _change_event.set()


async def change_broadcaster(event: asyncio.Event):
    """Background task that broadcasts changes to WebSocket clients."""
    while True:
        await event.wait()
        event.clear()

        await ws_manager.flush(project_manager.project)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup/shutdown tasks."""
    global _change_event
    _change_event = asyncio.Event()
    ws_manager.clear_notifications()

    project_manager.on_change(on_project_change)
    canvas.set_notifier(on_canvas_notification)

    broadcaster_task = asyncio.create_task(change_broadcaster(_change_event))

    yield

    broadcaster_task.cancel()
    try:
        await broadcaster_task
    except asyncio.CancelledError:
        pass
    project_manager.remove_callback(on_project_change)
    _change_event = None


# --- FastAPI App ---

app = FastAPI(
    title="ERD Canvas API",
    description="Backend API for the visual database schema editor",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SchemaError)
async def schema_error_handler(request: Request, exc: SchemaError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "errors": exc.errors},
    )


# --- Health Check ---

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "connections": ws_manager.connection_count}


# --- Projects ---

class CreateProjectRequest(BaseModel):
    name: str = "Untitled Project"
    description: str = ""
    tags: list[str] = []


class UpdateProjectRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[list[str]] = None


class ImportColumnsRequest(BaseModel):
    name: str = "Imported Project"
    columns: list[ColumnDescriptor]


@app.get("/api/projects")
async def list_projects():
    """List stored projects, most recently updated first."""
    return {"success": True, "projects": project_manager.list_projects()}


@app.post("/api/projects")
async def create_project(request: CreateProjectRequest):
    """Create a new empty project and open it."""
    project = project_manager.create_project(
        name=request.name,
        description=request.description,
        tags=request.tags,
    )
    return {"success": True, "project": project.to_json_dict()}


@app.post("/api/projects/import")
async def import_project(data: dict[str, Any], keep_id: bool = Query(default=False)):
    """Import a project from its JSON document and open it."""
    try:
        project = import_project_json(data, keep_id=keep_id)
    except ModelValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid project document: {e}")
    project_manager.import_project(project)
    return {"success": True, "project": project.to_json_dict()}


@app.post("/api/projects/import-columns")
async def import_project_columns(request: ImportColumnsRequest):
    """Build a project from catalog column descriptors and open it."""
    project = import_columns(request.columns, name=request.name)
    project_manager.import_project(project)
    return {"success": True, "project": project.to_json_dict()}


@app.get("/api/projects/{project_id}")
async def get_project(project_id: str):
    """Get a stored project without opening it."""
    project = project_manager.load_project(project_id)
    return {"success": True, "project": project.to_json_dict()}


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str):
    """Delete a stored project."""
    if project_manager.delete_project(project_id):
        return {"success": True}
    raise HTTPException(status_code=404, detail="Project not found")


@app.post("/api/projects/{project_id}/open")
async def open_project(project_id: str):
    """Open a stored project."""
    project = project_manager.open_project(project_id)
    return {"success": True, "project": project.to_json_dict()}


@app.post("/api/projects/{project_id}/duplicate")
async def duplicate_project(project_id: str):
    """Store a copy of a project under new ids."""
    project = project_manager.duplicate_project(project_id)
    return {"success": True, "project": project.to_json_dict()}


# --- Current Project ---

@app.get("/api/project")
async def get_current_project():
    """Get the open project state and its canvas projection."""
    state = project_manager.get_state()
    state["canvas"] = canvas.state_dict()
    return state


@app.patch("/api/project")
async def update_current_project(request: UpdateProjectRequest):
    """Update project metadata (name, description, tags)."""
    result = project_manager.update_project_info(
        name=request.name,
        description=request.description,
        tags=request.tags,
    )
    return {"success": True, "project": result.unwrap().to_json_dict()}


@app.post("/api/project/save")
async def save_project():
    project = project_manager.save()
    return {"success": True, "project_id": project.id}


@app.post("/api/project/close")
async def close_project():
    project_manager.close_project()
    return {"success": True}


@app.get("/api/project/validate")
async def validate_current_project():
    """
    Validate the open project for structural issues.

    Returns a list of issues and a summary.
    """
    issues = validate_project(project_manager.require_project())
    return {
        "success": True,
        "issues": [issue.to_dict() for issue in issues],
        "summary": validation_summary(issues)
    }


@app.get("/api/project/sql", response_class=PlainTextResponse)
async def export_sql(
    dialect: SQLDialect = Query(default=SQLDialect.POSTGRESQL),
    drop: bool = Query(default=False),
    timestamps: bool = Query(default=False),
):
    """Export the open project as a SQL DDL script."""
    options = SQLExportOptions(
        dialect=dialect,
        include_drop_statements=drop,
        include_timestamps=timestamps,
    )
    return generate_project_sql(project_manager.require_project(), options)


# --- Undo/Redo ---

@app.post("/api/undo")
async def undo():
    """Undo the last action."""
    project = project_manager.undo()
    if project:
        return {"success": True, "project": project.to_json_dict()}
    return {"success": False, "message": "Nothing to undo"}


@app.post("/api/redo")
async def redo():
    """Redo the last undone action."""
    project = project_manager.redo()
    if project:
        return {"success": True, "project": project.to_json_dict()}
    return {"success": False, "message": "Nothing to redo"}


# --- Table Operations ---

class CreateTableRequest(BaseModel):
    name: str
    fields: list[TableField] = []
    color: Optional[str] = None
    x: float = 100
    y: float = 100


class MoveTableRequest(BaseModel):
    x: float
    y: float


class PrimaryKeyRequest(BaseModel):
    field_id: str


@app.post("/api/tables")
async def create_table(request: CreateTableRequest):
    """Create a new table."""
    definition = TableDefinition(name=request.name, fields=tuple(request.fields), color=request.color)
    result = project_manager.add_table(definition, Position(x=request.x, y=request.y))
    return {"success": True, "table": result.unwrap().to_json_dict()}


@app.get("/api/tables/{table_id}")
async def get_table(table_id: str):
    """Get a specific table."""
    table = project_manager.require_project().get_table(table_id)
    if table:
        return {"success": True, "table": table.to_json_dict()}
    raise HTTPException(status_code=404, detail="Table not found")


@app.put("/api/tables/{table_id}")
async def update_table(table_id: str, table: Table):
    """Replace a table (fields, name, color, position)."""
    if table.id != table_id:
        table = table.model_copy(update={"id": table_id})
    result = project_manager.update_table(table)
    return {"success": True, "table": result.unwrap().to_json_dict()}


@app.patch("/api/tables/{table_id}/position")
async def move_table(table_id: str, request: MoveTableRequest):
    result = project_manager.move_table(table_id, Position(x=request.x, y=request.y))
    return {"success": True, "table": result.unwrap().to_json_dict()}


@app.delete("/api/tables/{table_id}")
async def delete_table(table_id: str):
    """Delete a table, its connections and the foreign keys pointing at it."""
    project_manager.delete_table(table_id).unwrap()
    return {"success": True}


@app.post("/api/tables/{table_id}/duplicate")
async def duplicate_table(table_id: str):
    result = project_manager.duplicate_table(table_id)
    return {"success": True, "table": result.unwrap().to_json_dict()}


@app.post("/api/tables/{table_id}/primary-key")
async def set_primary_key(table_id: str, request: PrimaryKeyRequest):
    """Make one field the table's primary key."""
    result = project_manager.set_primary_key(table_id, request.field_id)
    return {"success": True, "table": result.unwrap().to_json_dict()}


# --- Connection Operations ---

@app.post("/api/connections")
async def create_connection(definition: ConnectionDefinition):
    """Create a relationship and the matching foreign key."""
    result = project_manager.add_connection(definition)
    return {"success": True, "connection": result.unwrap().to_json_dict()}


@app.get("/api/connections/{connection_id}")
async def get_connection(connection_id: str):
    connection = project_manager.require_project().get_connection(connection_id)
    if connection:
        return {"success": True, "connection": connection.to_json_dict()}
    raise HTTPException(status_code=404, detail="Connection not found")


@app.put("/api/connections/{connection_id}")
async def update_connection(connection_id: str, connection: Connection):
    if connection.id != connection_id:
        connection = connection.model_copy(update={"id": connection_id})
    result = project_manager.update_connection(connection)
    return {"success": True, "connection": result.unwrap().to_json_dict()}


@app.delete("/api/connections/{connection_id}")
async def delete_connection(connection_id: str):
    """Delete a relationship and clear its foreign key."""
    project_manager.delete_connection(connection_id).unwrap()
    return {"success": True}


# --- Canvas ---

class ChangesRequest(BaseModel):
    changes: list[dict[str, Any]]


class ConnectRequest(BaseModel):
    source: Optional[str] = None
    source_handle: Optional[str] = None
    target: Optional[str] = None
    target_handle: Optional[str] = None
    relationship_type: RelationshipType = RelationshipType.ONE_TO_MANY


class DragStopRequest(BaseModel):
    node_id: str
    x: float
    y: float


class SelectionRequest(BaseModel):
    node_ids: list[str] = []
    edge_ids: list[str] = []


def _mutation_response(result):
    if result is None:
        return {"success": False, "canvas": canvas.state_dict()}
    return {"success": result.ok, "errors": result.errors, "canvas": canvas.state_dict()}


@app.get("/api/canvas")
async def get_canvas():
    """Get the visual graph (nodes, edges, selection)."""
    return canvas.state_dict()


@app.post("/api/canvas/nodes/changes")
async def apply_node_changes(request: ChangesRequest):
    """Apply renderer node changes (select, position, dimensions, remove)."""
    canvas.on_nodes_change(request.changes)
    return {"success": True, "canvas": canvas.state_dict()}


@app.post("/api/canvas/edges/changes")
async def apply_edge_changes(request: ChangesRequest):
    """Apply renderer edge changes (select, remove)."""
    canvas.on_edges_change(request.changes)
    return {"success": True, "canvas": canvas.state_dict()}


@app.post("/api/canvas/drag-stop")
async def drag_stop(request: DragStopRequest):
    result = canvas.on_node_drag_stop(request.node_id, Position(x=request.x, y=request.y))
    return _mutation_response(result)


@app.post("/api/canvas/connect")
async def connect(request: ConnectRequest):
    """Create a relationship from a connect gesture between two field handles."""
    result = canvas.on_connect(
        request.source,
        request.source_handle,
        request.target,
        request.target_handle,
        request.relationship_type,
    )
    return _mutation_response(result)


@app.post("/api/canvas/selection")
async def set_selection(request: SelectionRequest):
    canvas.select_nodes(request.node_ids)
    canvas.select_edges(request.edge_ids)
    return canvas.state_dict()


@app.post("/api/canvas/layout")
async def auto_layout():
    """Arrange all tables with the layered layout."""
    project_manager.require_project()
    if canvas.auto_layout():
        return {"success": True, "canvas": canvas.state_dict()}
    raise HTTPException(status_code=400, detail="Layout could not be applied")


@app.post("/api/canvas/copy")
async def copy_selection():
    """Copy the single selected table."""
    if canvas.copy_selection():
        return {"success": True}
    raise HTTPException(status_code=400, detail="Select exactly one table to copy")


@app.post("/api/canvas/paste")
async def paste():
    result = canvas.paste()
    if result is None:
        raise HTTPException(status_code=400, detail="Clipboard is empty")
    return {"success": True, "table": result.unwrap().to_json_dict()}


# --- WebSocket ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for real-time updates.

    Clients connect here to receive project_updated and notification events.
    """
    await ws_manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text('{"type": "pong"}')
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)


# --- Run with uvicorn ---

def run(host: Optional[str] = None, port: Optional[int] = None):
    import uvicorn
    uvicorn.run(app, host=host or settings.server.host, port=port or settings.server.port)


if __name__ == "__main__":
    run()
