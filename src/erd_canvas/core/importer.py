"""
Structured import - build a Project from flat column descriptors.

Import bypasses the mutation service and maintains the invariants itself,
in two passes:
1. Group descriptors by table name and create tables/fields with fresh ids
2. Resolve referenced table/column pairs into connections and set the
   matching foreign key annotations

Unresolvable references are skipped (and logged), never half-applied.
"""

import logging
from typing import Any, Iterable, Optional

from pydantic import BaseModel, field_validator

from .layout import grid_layout
from .models import (
    Connection,
    Field,
    Position,
    Project,
    RelationshipType,
    ScalarDefault,
    Table,
    generate_project_id,
    generate_table_id,
)

logger = logging.getLogger(__name__)


class ColumnDescriptor(BaseModel):
    """One column as reported by a catalog query (information_schema style)."""
    table_name: str
    column_name: str
    data_type: str
    column_default: ScalarDefault = None
    is_nullable: bool = True
    is_primary_key: bool = False
    foreign_table_name: Optional[str] = None
    foreign_column_name: Optional[str] = None

    @field_validator("is_nullable", "is_primary_key", mode="before")
    @classmethod
    def parse_yes_no(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() in ("yes", "y", "true", "1")
        return value

    @property
    def has_default(self) -> bool:
        return "column_default" in self.model_fields_set

    @property
    def has_reference(self) -> bool:
        return bool(self.foreign_table_name and self.foreign_column_name)


def _field_from_descriptor(column: ColumnDescriptor) -> Field:
    values = {
        "name": column.column_name,
        "type": column.data_type,
        "not_null": not column.is_nullable,
        "primary": column.is_primary_key,
    }
    if column.has_default:
        values["default_value"] = column.column_default
    return Field(**values)


def import_columns(
    columns: Iterable[ColumnDescriptor | dict],
    name: str = "Imported Project",
    project_id: Optional[str] = None,
) -> Project:
    """
    Build a new Project from column descriptors.

    Args:
        columns: Column descriptors (models or plain dicts)
        name: Name of the new project
        project_id: Id for the new project (generated if None)

    Returns:
        The imported Project, tables laid out on a grid
    """
    descriptors = [
        c if isinstance(c, ColumnDescriptor) else ColumnDescriptor.model_validate(c)
        for c in columns
    ]

    # Pass 1: tables and fields
    fields_by_table: dict[str, list[Field]] = {}
    for column in descriptors:
        fields = fields_by_table.setdefault(column.table_name, [])
        if any(f.name == column.column_name for f in fields):
            logger.warning("Skipping duplicate column %s.%s", column.table_name, column.column_name)
            continue
        fields.append(_field_from_descriptor(column))

    table_ids = {table_name: generate_table_id() for table_name in fields_by_table}
    positions = grid_layout(list(table_ids.values()))

    tables: dict[str, Table] = {}
    for table_name, fields in fields_by_table.items():
        # Keep the first primary key only
        seen_primary = False
        normalized = []
        for f in fields:
            if f.primary and seen_primary:
                f = f.model_copy(update={"primary": False})
            seen_primary = seen_primary or f.primary
            normalized.append(f)

        table_id = table_ids[table_name]
        tables[table_name] = Table(
            id=table_id,
            name=table_name,
            fields=tuple(normalized),
            position=positions.get(table_id, Position()),
        )

    # Pass 2: connections and foreign key annotations
    connections: list[Connection] = []
    for column in descriptors:
        if not column.has_reference:
            continue
        source = tables[column.table_name]
        target = tables.get(column.foreign_table_name)
        if target is None or not target.has_field(column.foreign_column_name):
            logger.warning(
                "Unresolved reference %s.%s -> %s.%s",
                column.table_name, column.column_name,
                column.foreign_table_name, column.foreign_column_name,
            )
            continue
        if any(c.source_id == source.id and c.source_field == column.column_name for c in connections):
            continue

        source_field = source.get_field(column.column_name)
        relationship = (
            RelationshipType.ONE_TO_ONE
            if source_field.unique or source_field.primary
            else RelationshipType.ONE_TO_MANY
        )
        connections.append(Connection(
            source_id=source.id,
            target_id=target.id,
            source_field=column.column_name,
            target_field=column.foreign_column_name,
            relationship_type=relationship,
        ))
        fields = tuple(
            f.with_foreign_key(target.id, column.foreign_column_name)
            if f.name == column.column_name else f
            for f in source.fields
        )
        tables[column.table_name] = source.model_copy(update={"fields": fields})

    values = {
        "name": name,
        "tables": tuple(tables.values()),
        "connections": tuple(connections),
    }
    if project_id:
        values["id"] = project_id
    project = Project(**values)
    logger.info(
        "Imported %d table(s) and %d connection(s) into %s",
        len(project.tables), len(project.connections), project.id,
    )
    return project


def import_project_json(data: dict, keep_id: bool = True) -> Project:
    """Load a project from its persisted JSON structure, optionally under a new id."""
    project = Project.from_json_dict(data)
    if not keep_id:
        project = project.model_copy(update={"id": generate_project_id()})
    return project
