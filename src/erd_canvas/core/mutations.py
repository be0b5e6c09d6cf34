"""
Mutation service - CRUD on tables and connections with consistency enforcement.

Every operation takes the current Project snapshot and returns a
MutationResult holding a *new* snapshot; the input is never modified.
On failure the result carries the issues and no snapshot, so nothing is
ever partially applied.

Consistency rules enforced here:
- At most one primary key per table (the most recently set one wins)
- A connection and the foreign key annotation on its source field are
  created, moved and removed together, in the same snapshot
- Deleting a table removes every connection touching it and clears every
  foreign key pointing at it
"""

import logging
from dataclasses import dataclass, field
from typing import Generic, Iterable, Mapping, Optional, TypeVar

from .errors import error_for_issues
from .models import (
    COPY_SUFFIX,
    Connection,
    ConnectionDefinition,
    Field,
    Position,
    Project,
    Table,
    TableDefinition,
    generate_connection_id,
    generate_field_id,
    generate_project_id,
    generate_table_id,
    utc_now,
)
from .validation import (
    IssueKind,
    ValidationIssue,
    find_orphan_connections,
    not_found_issue,
    validate_connection,
    validate_foreign_key,
    validate_table,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Offset applied to the position of a duplicated table.
DUPLICATE_OFFSET = 20


@dataclass
class MutationResult(Generic[T]):
    """Outcome of a mutation: a new snapshot and value, or the issues that rejected it."""
    project: Optional[Project] = None
    value: Optional[T] = None
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.project is not None and not self.issues

    @property
    def errors(self) -> list[str]:
        return [issue.message for issue in self.issues]

    def unwrap(self) -> T:
        """Return the value, raising the matching SchemaError if the mutation failed."""
        if not self.ok:
            raise error_for_issues(self.issues)
        return self.value

    @classmethod
    def success(cls, project: Project, value: Optional[T] = None) -> "MutationResult[T]":
        return cls(project=project, value=value)

    @classmethod
    def failure(cls, issues: Iterable[ValidationIssue]) -> "MutationResult[T]":
        issues = list(issues)
        logger.debug("Mutation rejected: %s", "; ".join(i.message for i in issues))
        return cls(issues=issues)


def _commit(project: Project, **updates) -> Project:
    """Build the next snapshot with a fresh update timestamp."""
    updates["updated_at"] = utc_now()
    return project.model_copy(update=updates)


def _replace_table(tables: Iterable[Table], table: Table) -> tuple[Table, ...]:
    return tuple(table if t.id == table.id else t for t in tables)


def _set_foreign_key(
    tables: Iterable[Table], table_id: str, field_name: str, ref_table_id: str, ref_field: str
) -> tuple[Table, ...]:
    result = []
    for t in tables:
        if t.id == table_id:
            fields = tuple(
                f.with_foreign_key(ref_table_id, ref_field) if f.name == field_name else f
                for f in t.fields
            )
            t = t.model_copy(update={"fields": fields})
        result.append(t)
    return tuple(result)


def _clear_foreign_key(tables: Iterable[Table], table_id: str, field_name: str) -> tuple[Table, ...]:
    result = []
    for t in tables:
        if t.id == table_id:
            fields = tuple(
                f.without_foreign_key() if f.name == field_name and f.foreign_key else f
                for f in t.fields
            )
            t = t.model_copy(update={"fields": fields})
        result.append(t)
    return tuple(result)


def normalize_primary_keys(fields: Iterable[Field], previous: Optional[Table] = None) -> tuple[Field, ...]:
    """
    Keep at most one primary field.

    The winner is the most recently flagged field: one that was not primary
    in `previous`, and among several candidates the last one in column order.
    """
    fields = tuple(fields)
    primaries = [f for f in fields if f.primary]
    if len(primaries) <= 1:
        return fields

    was_primary = {f.id for f in previous.fields if f.primary} if previous else set()
    newly_flagged = [f for f in primaries if f.id not in was_primary]
    keeper = (newly_flagged or primaries)[-1]

    return tuple(
        f.model_copy(update={"primary": False}) if f.primary and f.id != keeper.id else f
        for f in fields
    )


def _ensure_unique_field_ids(fields: Iterable[Field], taken: set[str]) -> tuple[Field, ...]:
    """Regenerate ids of fields that collide with `taken` or with each other."""
    seen = set(taken)
    result = []
    for f in fields:
        if f.id in seen:
            f = f.model_copy(update={"id": generate_field_id()})
        seen.add(f.id)
        result.append(f)
    return tuple(result)


def _foreign_key_issues(table: Table, tables: Iterable[Table]) -> list[ValidationIssue]:
    """Check that every foreign key on `table` resolves."""
    issues = []
    tables = list(tables)
    for f in table.fields:
        if f.foreign_key is None:
            continue
        for issue in validate_foreign_key(f, tables).issues:
            issue.table_id = issue.table_id or table.id
            issues.append(issue)
    return issues


def _foreign_key_edit_issues(table: Table, previous: Table) -> list[ValidationIssue]:
    """
    Foreign keys are set and cleared only by the connection operations.

    A field keeps the annotation it had under the same id; new fields carry none.
    """
    issues = []
    for f in table.fields:
        before = previous.get_field_by_id(f.id)
        expected = before.foreign_key if before is not None else None
        if f.foreign_key != expected:
            issues.append(ValidationIssue(
                IssueKind.REFERENTIAL,
                f"Foreign key on '{table.name}.{f.name}' can only change through its connection",
                table_id=table.id,
                field_name=f.name,
            ))
    return issues


# --- Table operations ---

def add_table(project: Project, definition: TableDefinition, position: Position) -> MutationResult[Table]:
    """Validate and append a new table with a fresh id."""
    taken = {f.id for t in project.tables for f in t.fields}
    table = Table(
        id=generate_table_id(),
        name=definition.name,
        fields=normalize_primary_keys(_ensure_unique_field_ids(definition.fields, taken)),
        position=position,
        color=definition.color,
    )

    issues = validate_table(table).issues
    issues += _foreign_key_issues(table, project.tables + (table,))
    if issues:
        return MutationResult.failure(issues)

    logger.debug("Adding table %s (%s)", table.name, table.id)
    return MutationResult.success(_commit(project, tables=project.tables + (table,)), table)


def update_table(project: Project, table: Table) -> MutationResult[Table]:
    """
    Replace the table with the same id, re-running table validation.

    Field foreign keys must match the stored ones by field id; relationships
    are created and removed by the connection operations only.
    """
    previous = project.get_table(table.id)
    if previous is None:
        return MutationResult.failure([not_found_issue("Table not found", table_id=table.id)])

    taken = {f.id for t in project.tables if t.id != table.id for f in t.fields}
    fields = _ensure_unique_field_ids(table.fields, taken)
    table = table.model_copy(update={"fields": normalize_primary_keys(fields, previous)})

    issues = validate_table(table).issues
    issues += _foreign_key_edit_issues(table, previous)
    if issues:
        return MutationResult.failure(issues)

    return MutationResult.success(
        _commit(project, tables=_replace_table(project.tables, table)), table
    )


def move_table(project: Project, table_id: str, position: Position) -> MutationResult[Table]:
    """Update only a table's position."""
    table = project.get_table(table_id)
    if table is None:
        return MutationResult.failure([not_found_issue("Table not found", table_id=table_id)])
    return update_table(project, table.model_copy(update={"position": position}))


def move_tables(project: Project, positions: Mapping[str, Position]) -> MutationResult[list[Table]]:
    """Move several tables in order; fails as a whole when any single move fails."""
    moved = []
    for table_id, position in positions.items():
        result = move_table(project, table_id, position)
        if not result.ok:
            return MutationResult.failure(result.issues)
        project = result.project
        moved.append(result.value)
    return MutationResult.success(project, moved)


def delete_table(project: Project, table_id: str) -> MutationResult[Table]:
    """
    Remove a table and cascade.

    Every connection whose source or target is the table goes away, and
    every foreign key on a surviving table that points at it is cleared.
    """
    table = project.get_table(table_id)
    if table is None:
        return MutationResult.failure([not_found_issue("Table not found", table_id=table_id)])

    tables = []
    for t in project.tables:
        if t.id == table_id:
            continue
        if any(f.foreign_key and f.foreign_key.table_id == table_id for f in t.fields):
            fields = tuple(
                f.without_foreign_key() if f.foreign_key and f.foreign_key.table_id == table_id else f
                for f in t.fields
            )
            t = t.model_copy(update={"fields": fields})
        tables.append(t)

    connections = tuple(c for c in project.connections if not c.touches_table(table_id))
    removed = len(project.connections) - len(connections)
    logger.debug("Deleting table %s, cascading %d connection(s)", table.name, removed)

    return MutationResult.success(
        _commit(project, tables=tuple(tables), connections=connections), table
    )


def duplicate_table(project: Project, table_id: str, offset: float = DUPLICATE_OFFSET) -> MutationResult[Table]:
    """
    Deep-copy a table with fresh table and field ids.

    Foreign key annotations are copied as-is and keep pointing at the
    original targets; no connections are created for the copy.
    """
    original = project.get_table(table_id)
    if original is None:
        return MutationResult.failure([not_found_issue("Table not found", table_id=table_id)])

    copy = original.model_copy(update={
        "id": generate_table_id(),
        "name": f"{original.name}{COPY_SUFFIX}",
        "position": original.position.offset(offset, offset),
        "fields": tuple(f.model_copy(update={"id": generate_field_id()}) for f in original.fields),
    })
    return MutationResult.success(_commit(project, tables=project.tables + (copy,)), copy)


def set_primary_key(project: Project, table_id: str, field_id: str) -> MutationResult[Table]:
    """Make one field the primary key and clear the flag on its siblings."""
    table = project.get_table(table_id)
    if table is None:
        return MutationResult.failure([not_found_issue("Table not found", table_id=table_id)])
    if table.get_field_by_id(field_id) is None:
        return MutationResult.failure([not_found_issue("Field not found", table_id=table_id)])

    fields = tuple(f.model_copy(update={"primary": f.id == field_id}) for f in table.fields)
    return update_table(project, table.model_copy(update={"fields": fields}))


def copy_project(project: Project, name: Optional[str] = None) -> Project:
    """
    Deep-copy a project under fresh project, table, field and connection ids.

    Connection endpoints and foreign keys are remapped onto the copied
    tables; references to tables outside the project are left untouched.
    """
    table_ids = {t.id: generate_table_id() for t in project.tables}

    tables = []
    for t in project.tables:
        fields = []
        for f in t.fields:
            update = {"id": generate_field_id()}
            if f.foreign_key and f.foreign_key.table_id in table_ids:
                update["foreign_key"] = f.foreign_key.model_copy(
                    update={"table_id": table_ids[f.foreign_key.table_id]}
                )
            fields.append(f.model_copy(update=update))
        tables.append(t.model_copy(update={"id": table_ids[t.id], "fields": tuple(fields)}))

    connections = tuple(
        c.model_copy(update={
            "id": generate_connection_id(),
            "source_id": table_ids.get(c.source_id, c.source_id),
            "target_id": table_ids.get(c.target_id, c.target_id),
        })
        for c in project.connections
    )

    now = utc_now()
    return project.model_copy(update={
        "id": generate_project_id(),
        "name": name or f"{project.name}{COPY_SUFFIX}",
        "tables": tuple(tables),
        "connections": connections,
        "created_at": now,
        "updated_at": now,
    })


def update_project_info(
    project: Project,
    name: Optional[str] = None,
    description: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
) -> MutationResult[Project]:
    """Update project metadata (name, description, tags)."""
    updates = {}
    if name is not None:
        if not name.strip():
            return MutationResult.failure([
                ValidationIssue(IssueKind.VALIDATION, "Project name is required")
            ])
        updates["name"] = name.strip()
    if description is not None:
        updates["description"] = description
    if tags is not None:
        updates["tags"] = tuple(tags)
    updated = _commit(project, **updates)
    return MutationResult.success(updated, updated)


# --- Connection operations ---

def _source_in_use(project: Project, source_id: str, source_field: str, ignore_id: Optional[str] = None) -> bool:
    return any(
        c.source_id == source_id and c.source_field == source_field and c.id != ignore_id
        for c in project.connections
    )


def _annotated_source_field(project: Project, connection: Connection) -> Optional[str]:
    """
    Name of the source field holding this connection's foreign key.

    When the field was renamed after the connection was made, the annotation
    moved with it under the new name: fall back to the field whose foreign key
    points at the connection's target and that no other connection claims.
    """
    table = project.get_table(connection.source_id)
    if table is None:
        return None
    if table.has_field(connection.source_field):
        return connection.source_field
    for f in table.fields:
        fk = f.foreign_key
        if fk is None or fk.table_id != connection.target_id or fk.field_name != connection.target_field:
            continue
        if not _source_in_use(project, table.id, f.name, ignore_id=connection.id):
            return f.name
    return None


def add_connection(project: Project, definition: ConnectionDefinition) -> MutationResult[Connection]:
    """
    Create a relationship.

    Appends the connection and sets the foreign key annotation on the
    source field in one snapshot.
    """
    issues = validate_connection(definition, project.tables).issues
    if issues:
        return MutationResult.failure(issues)

    if _source_in_use(project, definition.source_id, definition.source_field):
        return MutationResult.failure([ValidationIssue(
            IssueKind.REFERENTIAL,
            f"Field '{definition.source_field}' already has a relationship",
            table_id=definition.source_id,
            field_name=definition.source_field,
        )])

    connection = definition.to_connection()
    tables = _set_foreign_key(
        project.tables,
        connection.source_id, connection.source_field,
        connection.target_id, connection.target_field,
    )
    logger.debug(
        "Adding connection %s: %s.%s -> %s.%s", connection.id,
        connection.source_id, connection.source_field,
        connection.target_id, connection.target_field,
    )
    return MutationResult.success(
        _commit(project, tables=tables, connections=project.connections + (connection,)),
        connection,
    )


def update_connection(project: Project, connection: Connection) -> MutationResult[Connection]:
    """Re-validate and replace a connection, moving its foreign key annotation if needed."""
    previous = project.get_connection(connection.id)
    if previous is None:
        return MutationResult.failure([
            not_found_issue("Connection not found", connection_id=connection.id)
        ])

    issues = validate_connection(connection, project.tables).issues
    if issues:
        return MutationResult.failure(issues)

    if _source_in_use(project, connection.source_id, connection.source_field, ignore_id=connection.id):
        return MutationResult.failure([ValidationIssue(
            IssueKind.REFERENTIAL,
            f"Field '{connection.source_field}' already has a relationship",
            table_id=connection.source_id,
            field_name=connection.source_field,
            connection_id=connection.id,
        )])

    tables = project.tables
    annotated = _annotated_source_field(project, previous)
    if annotated is not None:
        tables = _clear_foreign_key(tables, previous.source_id, annotated)
    tables = _set_foreign_key(
        tables,
        connection.source_id, connection.source_field,
        connection.target_id, connection.target_field,
    )
    connections = tuple(connection if c.id == connection.id else c for c in project.connections)
    return MutationResult.success(
        _commit(project, tables=tables, connections=connections), connection
    )


def delete_connection(project: Project, connection_id: str) -> MutationResult[Connection]:
    """
    Remove a connection and clear the foreign key on its source field.

    The source field is matched by name, or by its foreign key when the
    field was renamed since the connection was made.
    """
    connection = project.get_connection(connection_id)
    if connection is None:
        return MutationResult.failure([
            not_found_issue("Connection not found", connection_id=connection_id)
        ])

    connections = tuple(c for c in project.connections if c.id != connection_id)
    tables = project.tables
    annotated = _annotated_source_field(project, connection)
    if annotated is not None:
        tables = _clear_foreign_key(tables, connection.source_id, annotated)
    logger.debug("Deleting connection %s", connection_id)
    return MutationResult.success(
        _commit(project, tables=tables, connections=connections), connection
    )


def remove_orphan_connections(project: Project) -> MutationResult[tuple[Connection, ...]]:
    """
    Delete every connection whose tables or fields no longer exist.

    Each orphan goes through `delete_connection`, so its foreign key goes with
    it. The value holds the removed connections; with none to remove the
    input snapshot comes back unchanged.
    """
    removed = []
    for connection in find_orphan_connections(project):
        result = delete_connection(project, connection.id)
        if result.ok:
            project = result.project
            removed.append(connection)
    return MutationResult.success(project, tuple(removed))
