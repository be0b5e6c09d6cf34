"""
Project Manager - Core logic for project state, persistence, and history.

This module implements:
- Single project state management (one project open at a time)
- The only write path to that state: every change goes through `mutate`,
  which applies a pure mutation to the current snapshot and replaces it
- Linear undo/redo history of whole snapshots
- Persistence through a ProjectStore keyed by project id
- Orphan-connection sweep folded into every snapshot change
- Change callbacks for the canvas layer and real-time sync

Mutations are applied strictly in call order; the snapshot is replaced
wholesale, so readers never observe a half-updated project.
"""

import logging
from typing import Any, Callable, Iterable, Optional

from ..core import mutations
from ..core.errors import NotFoundError, StateError
from ..core.models import (
    Connection,
    ConnectionDefinition,
    Position,
    Project,
    Table,
    TableDefinition,
)
from ..core.mutations import MutationResult
from ..core.validation import no_project_issue
from .storage import MemoryProjectStore, ProjectStore

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Optional[Project]], None]


class ProjectManager:
    """
    Manages the open project's snapshot, history, and persistence.

    The history system works via snapshots:
    - Each successful mutation pushes the previous snapshot
    - Undo restores the previous snapshot
    - Redo re-applies a snapshot from the future stack

    Snapshots are immutable, so history holds them directly.
    """

    def __init__(
        self,
        store: Optional[ProjectStore] = None,
        max_history: int = 100,
        autosave: bool = True,
        duplicate_offset: float = mutations.DUPLICATE_OFFSET,
    ):
        self._store: ProjectStore = store if store is not None else MemoryProjectStore()
        self._project: Optional[Project] = None
        self._history: list[Project] = []   # Past states
        self._future: list[Project] = []    # Future states (for redo)
        self._max_history = max_history
        self._autosave = autosave
        self._duplicate_offset = duplicate_offset
        self._dirty = False
        self._on_change_callbacks: list[ChangeCallback] = []
        self._last_swept: tuple[Connection, ...] = ()

    # --- Properties ---

    @property
    def project(self) -> Optional[Project]:
        """Get the current project snapshot."""
        return self._project

    @property
    def store(self) -> ProjectStore:
        return self._store

    @property
    def is_dirty(self) -> bool:
        """Check if there are unsaved changes."""
        return self._dirty

    @property
    def can_undo(self) -> bool:
        return len(self._history) > 0

    @property
    def last_swept(self) -> tuple[Connection, ...]:
        """Connections the orphan sweep removed with the latest snapshot change."""
        return self._last_swept

    @property
    def can_redo(self) -> bool:
        return len(self._future) > 0

    def configure(
        self,
        store: Optional[ProjectStore] = None,
        max_history: Optional[int] = None,
        autosave: Optional[bool] = None,
        duplicate_offset: Optional[float] = None,
    ) -> None:
        """Swap storage or tuning after construction; closes the open project."""
        self.close_project()
        if store is not None:
            self._store = store
        if max_history is not None:
            self._max_history = max_history
        if autosave is not None:
            self._autosave = autosave
        if duplicate_offset is not None:
            self._duplicate_offset = duplicate_offset

    def require_project(self) -> Project:
        if self._project is None:
            raise StateError("No project open", [no_project_issue()])
        return self._project

    # --- Change Callbacks ---

    def on_change(self, callback: ChangeCallback) -> None:
        """Register a callback receiving each new snapshot (None when closed)."""
        self._on_change_callbacks.append(callback)

    def remove_callback(self, callback: ChangeCallback) -> None:
        if callback in self._on_change_callbacks:
            self._on_change_callbacks.remove(callback)

    def _notify_change(self) -> None:
        for callback in list(self._on_change_callbacks):
            callback(self._project)

    # --- Snapshot replacement ---

    def _sweep(self, project: Project) -> Project:
        """
        Drop connections whose tables or fields no longer exist.

        Runs on the snapshot about to become current, so the removals share
        its history entry and undo never has to replay them.
        """
        result = mutations.remove_orphan_connections(project)
        self._last_swept = result.value
        if result.value:
            logger.warning(
                "Orphan sweep removed %d connection(s) from project %s",
                len(result.value), project.id,
            )
        return result.project

    def _set_project(self, project: Optional[Project]) -> None:
        self._last_swept = ()
        if project is not None:
            project = self._sweep(project)
        self._project = project
        self._history.clear()
        self._future.clear()
        self._dirty = bool(self._last_swept)
        if self._dirty and self._autosave:
            self._autosave_current()
        self._notify_change()

    def _commit(self, project: Project) -> Project:
        """Replace the snapshot after a successful mutation; returns the swept snapshot."""
        project = self._sweep(project)
        if self._project is not None:
            self._future.clear()
            self._history.append(self._project)
            if len(self._history) > self._max_history:
                self._history.pop(0)

        self._project = project
        self._dirty = True
        if self._autosave:
            self._autosave_current()
        self._notify_change()
        return project

    def _autosave_current(self) -> None:
        try:
            self.save()
        except OSError:
            logger.exception("Autosave failed for project %s", self._project.id)

    def mutate(self, operation: Callable[..., MutationResult], *args: Any, **kwargs: Any) -> MutationResult:
        """
        Apply a mutation to the current snapshot.

        `operation` receives the current Project followed by `args`/`kwargs`
        and returns a MutationResult. On success the new snapshot replaces the
        current one, minus any connections the change left orphaned; on
        failure nothing changes and the result carries the issues.
        """
        if self._project is None:
            return MutationResult.failure([no_project_issue()])

        result = operation(self._project, *args, **kwargs)
        if not result.ok:
            logger.warning(
                "Rejected %s: %s",
                getattr(operation, "__name__", "mutation"), "; ".join(result.errors),
            )
            return result

        result.project = self._commit(result.project)
        return result

    # --- Table and connection operations ---

    def add_table(self, definition: TableDefinition, position: Position) -> MutationResult[Table]:
        return self.mutate(mutations.add_table, definition, position)

    def update_table(self, table: Table) -> MutationResult[Table]:
        return self.mutate(mutations.update_table, table)

    def move_table(self, table_id: str, position: Position) -> MutationResult[Table]:
        return self.mutate(mutations.move_table, table_id, position)

    def delete_table(self, table_id: str) -> MutationResult[Table]:
        return self.mutate(mutations.delete_table, table_id)

    def duplicate_table(self, table_id: str) -> MutationResult[Table]:
        return self.mutate(mutations.duplicate_table, table_id, offset=self._duplicate_offset)

    def set_primary_key(self, table_id: str, field_id: str) -> MutationResult[Table]:
        return self.mutate(mutations.set_primary_key, table_id, field_id)

    def add_connection(self, definition: ConnectionDefinition) -> MutationResult[Connection]:
        return self.mutate(mutations.add_connection, definition)

    def update_connection(self, connection: Connection) -> MutationResult[Connection]:
        return self.mutate(mutations.update_connection, connection)

    def delete_connection(self, connection_id: str) -> MutationResult[Connection]:
        return self.mutate(mutations.delete_connection, connection_id)

    def update_project_info(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> MutationResult[Project]:
        return self.mutate(mutations.update_project_info, name, description, tags)

    # --- Project lifecycle ---

    def create_project(self, name: str = "Untitled Project", description: str = "", tags: Iterable[str] = ()) -> Project:
        """Create a new empty project, persist it and open it."""
        project = Project(name=name, description=description, tags=tuple(tags))
        self._store.set(project.id, project.to_json_dict())
        logger.info("Created project %s (%s)", project.name, project.id)
        self._set_project(project)
        return project

    def load_project(self, project_id: str) -> Project:
        """Read a project from the store without opening it."""
        if self._project is not None and self._project.id == project_id:
            return self._project
        data = self._store.get(project_id)
        if data is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return Project.from_json_dict(data)

    def open_project(self, project_id: str) -> Project:
        """Open a stored project as the current one."""
        project = self.load_project(project_id)
        self._set_project(project)
        return project

    def import_project(self, project: Project, open_project: bool = True) -> Project:
        """Persist an externally built project (import/restore) and optionally open it."""
        self._store.set(project.id, project.to_json_dict())
        if open_project:
            self._set_project(project)
        return project

    def close_project(self) -> None:
        if self._project is None:
            return
        self._set_project(None)

    def delete_project(self, project_id: str) -> bool:
        """Delete a project from the store, closing it if it is open."""
        is_open = self._project is not None and self._project.id == project_id
        deleted = self._store.delete(project_id)
        if is_open:
            self.close_project()
            deleted = True
        return deleted

    def duplicate_project(self, project_id: str) -> Project:
        """Store a deep copy of a project under fresh ids. The copy is not opened."""
        copy = mutations.copy_project(self.load_project(project_id))
        self._store.set(copy.id, copy.to_json_dict())
        logger.info("Duplicated project %s as %s", project_id, copy.id)
        return copy

    def list_projects(self) -> list[dict]:
        """Summaries of all stored projects, most recently updated first."""
        summaries = []
        for project_id in self._store.keys():
            try:
                project = self.load_project(project_id)
            except (NotFoundError, ValueError):
                logger.warning("Skipping unreadable project %s", project_id)
                continue
            summaries.append({
                "id": project.id,
                "name": project.name,
                "tables": len(project.tables),
                "connections": len(project.connections),
                "updated_at": project.updated_at.isoformat(),
            })
        summaries.sort(key=lambda s: s["updated_at"], reverse=True)
        return summaries

    def save(self) -> Project:
        """Persist the open project."""
        project = self.require_project()
        self._store.set(project.id, project.to_json_dict())
        self._dirty = False
        return project

    # --- Undo/Redo ---

    def undo(self) -> Optional[Project]:
        """Undo the last mutation."""
        if not self.can_undo or self._project is None:
            return None

        self._future.append(self._project)
        self._project = self._history.pop()
        self._last_swept = ()
        self._dirty = True
        if self._autosave:
            self._autosave_current()
        self._notify_change()
        return self._project

    def redo(self) -> Optional[Project]:
        """Redo the last undone mutation."""
        if not self.can_redo or self._project is None:
            return None

        self._history.append(self._project)
        self._project = self._future.pop()
        self._last_swept = ()
        self._dirty = True
        if self._autosave:
            self._autosave_current()
        self._notify_change()
        return self._project

    def get_state(self) -> dict:
        """Get the full current state for API responses."""
        if self._project is None:
            return {
                "project": None,
                "is_dirty": False,
                "can_undo": False,
                "can_redo": False,
            }

        return {
            "project": self._project.to_json_dict(),
            "is_dirty": self._dirty,
            "can_undo": self.can_undo,
            "can_redo": self.can_redo,
        }
