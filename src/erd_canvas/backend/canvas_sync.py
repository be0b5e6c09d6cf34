"""
Canvas synchronization - keeps the visual graph in lockstep with the project.

The visual graph (one node per table, one edge per connection) is a pure
projection of the current project snapshot. It is rebuilt from scratch on
every snapshot change and never used as the source of truth for relational
facts. Only selection, measured sizes and in-progress drag positions live
outside the projection; they are visual-only and carried across rebuilds
by node id.

User gestures are translated into ProjectManager calls. The canvas never
draws the outcome of a gesture itself (new edge, removed edge, moved
table): it waits for the resulting snapshot change.

Connections orphaned by a change (renamed fields, out-of-band edits) are
swept by the ProjectManager inside the same snapshot; the canvas warns the
user with the count.

States:
- idle: the visual graph matches the last-seen snapshot
- reconciling: a snapshot change is being projected
- interacting: a drag or connect gesture is in progress
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from ..core import mutations
from ..core.clipboard import Clipboard
from ..core.layout import LayoutError, estimate_table_size, layered_layout
from ..core.models import (
    ConnectionDefinition,
    Position,
    Project,
    RelationshipType,
    Table,
)
from ..core.mutations import MutationResult
from .project_manager import ProjectManager

logger = logging.getLogger(__name__)

HANDLE_SOURCE_SUFFIX = "-out"
HANDLE_TARGET_SUFFIX = "-in"

Notifier = Callable[[str, str], None]

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def log_notifier(level: str, message: str) -> None:
    """Default notifier: user-facing messages go to the log."""
    logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s", message)


def source_handle_id(field_name: str) -> str:
    return f"{field_name}{HANDLE_SOURCE_SUFFIX}"


def target_handle_id(field_name: str) -> str:
    return f"{field_name}{HANDLE_TARGET_SUFFIX}"


def strip_handle_suffix(handle: str) -> str:
    """Recover the field name from a handle id."""
    for suffix in (HANDLE_SOURCE_SUFFIX, HANDLE_TARGET_SUFFIX):
        if handle.endswith(suffix):
            return handle[: -len(suffix)]
    return handle


class CanvasState(str, Enum):
    IDLE = "idle"
    RECONCILING = "reconciling"
    INTERACTING = "interacting"


@dataclass
class CanvasNode:
    """A table as drawn on the canvas."""
    id: str
    position: Position
    data: Table
    selected: bool = False
    dragging: bool = False
    width: Optional[float] = None
    height: Optional[float] = None
    type: str = "table"

    def to_dict(self) -> dict:
        result = {
            "id": self.id,
            "type": self.type,
            "position": {"x": self.position.x, "y": self.position.y},
            "data": self.data.to_json_dict(),
            "selected": self.selected,
            "dragging": self.dragging,
        }
        if self.width is not None and self.height is not None:
            result["width"] = self.width
            result["height"] = self.height
        return result


@dataclass
class CanvasEdge:
    """A connection as drawn on the canvas, bound to field handles."""
    id: str
    source: str
    target: str
    source_handle: str
    target_handle: str
    relationship_type: RelationshipType
    selected: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
            "selected": self.selected,
            "data": {"relationshipType": self.relationship_type.value},
        }


class CanvasSync:
    """
    Reconciles the visual graph with the ProjectManager's snapshots and
    turns canvas gestures into mutations.
    """

    def __init__(
        self,
        manager: ProjectManager,
        clipboard: Optional[Clipboard] = None,
        notifier: Optional[Notifier] = None,
        layout_options: Optional[dict[str, Any]] = None,
    ):
        self._manager = manager
        self._clipboard = clipboard or Clipboard()
        self._notify = notifier or log_notifier
        self._layout_options = dict(layout_options or {})

        self._state = CanvasState.IDLE
        self._reconciling = False
        self._connecting = False
        self._nodes: list[CanvasNode] = []
        self._edges: list[CanvasEdge] = []

        # Visual-only state, keyed by id
        self._selected_nodes: set[str] = set()
        self._selected_edges: set[str] = set()
        self._sizes: dict[str, tuple[float, float]] = {}
        self._drag_positions: dict[str, Position] = {}

        manager.on_change(self._on_project_changed)
        self._on_project_changed(manager.project)

    def detach(self) -> None:
        """Stop following the manager."""
        self._manager.remove_callback(self._on_project_changed)

    def set_notifier(self, notifier: Notifier) -> None:
        self._notify = notifier

    # --- Properties ---

    @property
    def state(self) -> CanvasState:
        return self._state

    @property
    def nodes(self) -> list[CanvasNode]:
        return list(self._nodes)

    @property
    def edges(self) -> list[CanvasEdge]:
        return list(self._edges)

    @property
    def clipboard(self) -> Clipboard:
        return self._clipboard

    @property
    def selected_node_ids(self) -> list[str]:
        return [n.id for n in self._nodes if n.selected]

    def get_node(self, node_id: str) -> Optional[CanvasNode]:
        for node in self._nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> Optional[CanvasEdge]:
        for edge in self._edges:
            if edge.id == edge_id:
                return edge
        return None

    def _settle(self) -> None:
        interacting = self._connecting or bool(self._drag_positions)
        self._state = CanvasState.INTERACTING if interacting else CanvasState.IDLE

    # --- Reconciliation ---

    def _on_project_changed(self, project: Optional[Project]) -> None:
        # A notifier may issue mutations of its own; the outer pass rebuilds
        # from the latest snapshot afterwards.
        if self._reconciling:
            return

        self._reconciling = True
        self._state = CanvasState.RECONCILING
        try:
            swept = self._manager.last_swept
            if swept:
                self._notify("warning", f"Removed {len(swept)} invalid connection(s)")
            self._rebuild(self._manager.project)
        finally:
            self._reconciling = False
            self._settle()

    def _rebuild(self, project: Optional[Project]) -> None:
        """Replace the visual graph with a fresh projection of `project`."""
        if project is None:
            self._nodes = []
            self._edges = []
            self._selected_nodes.clear()
            self._selected_edges.clear()
            self._drag_positions.clear()
            return

        table_ids = {t.id for t in project.tables}
        connection_ids = {c.id for c in project.connections}
        self._selected_nodes &= table_ids
        self._selected_edges &= connection_ids
        self._drag_positions = {k: v for k, v in self._drag_positions.items() if k in table_ids}
        self._sizes = {k: v for k, v in self._sizes.items() if k in table_ids}

        nodes = []
        for table in project.tables:
            width, height = self._sizes.get(table.id, (None, None))
            nodes.append(CanvasNode(
                id=table.id,
                position=self._drag_positions.get(table.id, table.position),
                data=table,
                selected=table.id in self._selected_nodes,
                dragging=table.id in self._drag_positions,
                width=width,
                height=height,
            ))

        edges = [
            CanvasEdge(
                id=c.id,
                source=c.source_id,
                target=c.target_id,
                source_handle=source_handle_id(c.source_field),
                target_handle=target_handle_id(c.target_field),
                relationship_type=c.relationship_type,
                selected=c.id in self._selected_edges,
            )
            for c in project.connections
        ]

        self._nodes = nodes
        self._edges = edges

    # --- Selection and measurement (visual only) ---

    def select_nodes(self, node_ids: Iterable[str], additive: bool = False) -> None:
        if not additive:
            self._selected_nodes.clear()
        self._selected_nodes.update(n for n in node_ids if self.get_node(n) is not None)
        for node in self._nodes:
            node.selected = node.id in self._selected_nodes

    def deselect_nodes(self, node_ids: Iterable[str]) -> None:
        self._selected_nodes.difference_update(node_ids)
        for node in self._nodes:
            node.selected = node.id in self._selected_nodes

    def select_edges(self, edge_ids: Iterable[str], additive: bool = False) -> None:
        if not additive:
            self._selected_edges.clear()
        self._selected_edges.update(e for e in edge_ids if self.get_edge(e) is not None)
        for edge in self._edges:
            edge.selected = edge.id in self._selected_edges

    def clear_selection(self) -> None:
        self.select_nodes([])
        self.select_edges([])

    def on_nodes_measured(self, sizes: dict[str, tuple[float, float]]) -> None:
        """Record rendered node sizes reported by the renderer."""
        for node in self._nodes:
            if node.id in sizes:
                width, height = sizes[node.id]
                self._sizes[node.id] = (width, height)
                node.width, node.height = width, height

    # --- Dragging ---

    def on_node_drag_start(self, node_id: str) -> bool:
        node = self.get_node(node_id)
        if node is None:
            return False
        self._drag_positions[node_id] = node.position
        node.dragging = True
        self._settle()
        return True

    def on_node_drag(self, node_id: str, position: Position) -> None:
        """Move a node locally while the pointer is down; nothing is persisted."""
        node = self.get_node(node_id)
        if node is None:
            return
        self._drag_positions[node_id] = position
        node.position = position
        node.dragging = True
        self._settle()

    def on_node_drag_cancel(self, node_id: str) -> None:
        """Abort a drag: restore the authoritative position, issue no mutation."""
        self._drag_positions.pop(node_id, None)
        project = self._manager.project
        node = self.get_node(node_id)
        table = project.get_table(node_id) if project else None
        if node is not None and table is not None:
            node.position = table.position
            node.dragging = False
        self._settle()

    def on_node_drag_stop(self, node_id: str, position: Position) -> Optional[MutationResult]:
        """
        Persist a drag.

        The node is moved optimistically to avoid a flicker; the table update
        is authoritative and its snapshot change redraws the node.
        """
        self._drag_positions.pop(node_id, None)
        node = self.get_node(node_id)
        if node is not None:
            node.position = position
            node.dragging = False
        self._settle()

        project = self._manager.project
        table = project.get_table(node_id) if project else None
        if table is None:
            return None
        if table.position == position:
            return None

        result = self._manager.update_table(table.model_copy(update={"position": position}))
        if not result.ok:
            self._notify("error", "; ".join(result.errors))
            self._rebuild(self._manager.project)
        return result

    # --- Connecting ---

    def on_connect_start(self) -> None:
        self._connecting = True
        self._settle()

    def on_connect_cancel(self) -> None:
        """The connect gesture was dropped outside a valid target."""
        self._connecting = False
        self._settle()

    def on_connect(
        self,
        source: Optional[str],
        source_handle: Optional[str],
        target: Optional[str],
        target_handle: Optional[str],
        relationship_type: RelationshipType = RelationshipType.ONE_TO_MANY,
    ) -> Optional[MutationResult]:
        """
        Create a relationship from a connect gesture.

        Handles are resolved to field names and both endpoints are checked
        against the current snapshot before anything is written. The new edge
        appears only once the snapshot change confirms it.
        """
        self._connecting = False
        self._settle()

        if not (source and source_handle and target and target_handle):
            return None

        project = self._manager.project
        if project is None:
            self._notify("error", "No project open")
            return None

        source_field = strip_handle_suffix(source_handle)
        target_field = strip_handle_suffix(target_handle)
        source_table = project.get_table(source)
        target_table = project.get_table(target)
        if source_table is None or target_table is None:
            self._notify("error", "Invalid connection: tables not found")
            return None
        if not source_table.has_field(source_field) or not target_table.has_field(target_field):
            self._notify("error", "Invalid connection: fields not found")
            return None

        result = self._manager.add_connection(ConnectionDefinition(
            source_id=source,
            target_id=target,
            source_field=source_field,
            target_field=target_field,
            relationship_type=relationship_type,
        ))
        if result.ok:
            self._notify("success", "Relation created successfully")
        else:
            self._notify("error", "; ".join(result.errors))
        return result

    # --- Removal ---

    def on_edges_delete(self, edge_ids: Iterable[str]) -> list[MutationResult]:
        """
        Delete connections for removed edges.

        The edges are not removed locally: the rebuild after each deletion
        does that.
        """
        results = []
        for edge_id in list(edge_ids):
            result = self._manager.delete_connection(edge_id)
            if not result.ok:
                self._notify("error", "; ".join(result.errors))
            results.append(result)
        return results

    def on_nodes_delete(self, node_ids: Iterable[str]) -> list[MutationResult]:
        results = []
        for node_id in list(node_ids):
            result = self._manager.delete_table(node_id)
            if not result.ok:
                self._notify("error", "; ".join(result.errors))
            results.append(result)
        return results

    # --- Change streams ---

    def on_nodes_change(self, changes: Iterable[dict]) -> None:
        """
        Apply a batch of renderer node changes.

        Supported change types: select, position (with `dragging`),
        dimensions and remove.
        """
        for change in changes:
            kind = change.get("type")
            node_id = change.get("id")
            if kind == "select":
                if change.get("selected"):
                    self.select_nodes([node_id], additive=True)
                else:
                    self.deselect_nodes([node_id])
            elif kind == "position":
                position = change.get("position")
                if position is None:
                    continue
                position = Position.model_validate(position)
                if change.get("dragging", False):
                    if node_id not in self._drag_positions:
                        self.on_node_drag_start(node_id)
                    self.on_node_drag(node_id, position)
                else:
                    self.on_node_drag_stop(node_id, position)
            elif kind == "dimensions":
                dimensions = change.get("dimensions") or {}
                if "width" in dimensions and "height" in dimensions:
                    self.on_nodes_measured({node_id: (dimensions["width"], dimensions["height"])})
            elif kind == "remove":
                self.on_nodes_delete([node_id])
            else:
                logger.debug("Ignoring node change %r", kind)

    def on_edges_change(self, changes: Iterable[dict]) -> None:
        """Apply a batch of renderer edge changes (select, remove)."""
        removed = []
        for change in changes:
            kind = change.get("type")
            edge_id = change.get("id")
            if kind == "select":
                selected = set(self._selected_edges)
                if change.get("selected"):
                    selected.add(edge_id)
                else:
                    selected.discard(edge_id)
                self.select_edges(selected)
            elif kind == "remove":
                removed.append(edge_id)
            else:
                logger.debug("Ignoring edge change %r", kind)
        if removed:
            self.on_edges_delete(removed)

    # --- Auto-layout ---

    def auto_layout(self) -> bool:
        """
        Lay out all tables.

        Every move is checked against a working copy of the snapshot first.
        Only when all of them would succeed are the positions applied to the
        visual graph in one batch and each changed position persisted; on
        failure nothing is applied.
        """
        project = self._manager.project
        if project is None:
            self._notify("error", "No project open")
            return False
        if not project.tables:
            return False

        sizes = {
            t.id: self._sizes.get(t.id) or estimate_table_size(t)
            for t in project.tables
        }
        try:
            positions = layered_layout(project.tables, project.connections, sizes, **self._layout_options)
        except LayoutError as exc:
            logger.exception("Auto-layout failed")
            self._notify("warning", f"Auto-layout failed: {exc}")
            return False

        changed = {
            t.id: positions[t.id]
            for t in project.tables
            if t.id in positions and positions[t.id] != t.position
        }
        check = mutations.move_tables(project, changed)
        if not check.ok:
            errors = "; ".join(check.errors)
            logger.warning("Auto-layout rejected: %s", errors)
            self._notify("warning", f"Auto-layout failed: {errors}")
            return False

        for node in self._nodes:
            if node.id in positions:
                node.position = positions[node.id]

        for table_id, position in changed.items():
            self._manager.move_table(table_id, position)

        self._notify("success", "Layout applied")
        return True

    # --- Clipboard ---

    def copy_selection(self) -> bool:
        """Copy the selected table; requires exactly one selected node."""
        selected = self.selected_node_ids
        project = self._manager.project
        if len(selected) != 1 or project is None:
            return False
        table = project.get_table(selected[0])
        if table is None:
            return False
        self._clipboard.copy(table)
        self._notify("info", f'Copied table "{table.name}"')
        return True

    def paste(self) -> Optional[MutationResult]:
        """Add the copied table next to the selected node (or at the default anchor)."""
        selected = self.selected_node_ids
        anchor = self.get_node(selected[0]).position if selected else None
        built = self._clipboard.build_paste(anchor)
        if built is None:
            return None

        definition, position = built
        result = self._manager.add_table(definition, position)
        if result.ok:
            self._notify("success", f'Pasted table "{definition.name}"')
        else:
            self._notify("error", "; ".join(result.errors))
        return result

    def state_dict(self) -> dict:
        """Serializable view of the visual graph."""
        return {
            "state": self._state.value,
            "nodes": [n.to_dict() for n in self._nodes],
            "edges": [e.to_dict() for e in self._edges],
            "clipboard": self._clipboard.has_data,
        }
