"""
Core data models for schema projects.

These models define the canonical schema for a project:
- Tables with an ordered list of fields and a canvas position
- Fields with type, constraints, default value and optional foreign key
- Connections between two fields of two tables (fields referenced by name)
- The Project aggregate that owns all of the above

Snapshots are immutable: every model is frozen and collections are tuples.
Mutations build new snapshots with `model_copy(update=...)`.

Equality of Field, Table and Connection is by id, not by value.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field as ModelField, model_validator


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Marker appended to the name of duplicated and pasted tables.
COPY_SUFFIX = " (Copy)"

ScalarDefault = Union[bool, int, float, str, None]


def is_valid_identifier(name: str) -> bool:
    """Check identifier syntax: a letter or underscore, then alphanumerics/underscores."""
    return bool(name) and IDENTIFIER_PATTERN.match(name) is not None


def is_valid_table_name(name: str) -> bool:
    """
    Check a table name.

    Same as `is_valid_identifier`, except that any number of trailing
    copy markers is tolerated so duplicated tables stay editable.
    """
    base = name
    while base.endswith(COPY_SUFFIX):
        base = base[: -len(COPY_SUFFIX)]
    return is_valid_identifier(base)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_project_id() -> str:
    """Generate a unique project ID."""
    return f"project-{uuid.uuid4().hex[:8]}"


def generate_table_id() -> str:
    """Generate a unique table ID."""
    return f"t{uuid.uuid4().hex[:12]}"


def generate_field_id() -> str:
    """Generate a unique field ID."""
    return f"f{uuid.uuid4().hex[:12]}"


def generate_connection_id() -> str:
    """Generate a unique connection ID."""
    return f"c{uuid.uuid4().hex[:12]}"


class RelationshipType(str, Enum):
    """Cardinality of a connection."""
    ONE_TO_ONE = "oneToOne"
    ONE_TO_MANY = "oneToMany"


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Position(_Snapshot):
    """Top-left corner of a table on the canvas."""
    x: float = 0
    y: float = 0

    def offset(self, dx: float, dy: float) -> "Position":
        return Position(x=self.x + dx, y=self.y + dy)


class ForeignKeyRef(_Snapshot):
    """Denormalized pointer from a field to the table/field it references."""
    table_id: str = ModelField(alias="tableId")
    field_name: str = ModelField(alias="fieldName")


class Field(_Snapshot):
    """
    A column of a table.

    `default_value` distinguishes "no default" from an explicit null default:
    the default is present only when it was explicitly set (see `has_default`).
    """
    id: str = ModelField(default_factory=generate_field_id)
    name: str
    type: str
    not_null: bool = ModelField(False, alias="notNull")
    primary: bool = False
    unique: bool = False
    default_value: ScalarDefault = ModelField(None, alias="defaultValue")
    foreign_key: Optional[ForeignKeyRef] = ModelField(None, alias="foreignKey")

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Field):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("field", self.id))

    @property
    def has_default(self) -> bool:
        return "default_value" in self.model_fields_set

    def without_foreign_key(self) -> "Field":
        return self.model_copy(update={"foreign_key": None})

    def with_foreign_key(self, table_id: str, field_name: str) -> "Field":
        return self.model_copy(update={
            "foreign_key": ForeignKeyRef(table_id=table_id, field_name=field_name)
        })

    def to_json_dict(self) -> dict:
        """Convert to a JSON-serializable dict, omitting unset optional parts."""
        result = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "notNull": self.not_null,
            "primary": self.primary,
            "unique": self.unique,
        }
        if self.has_default:
            result["defaultValue"] = self.default_value
        if self.foreign_key is not None:
            result["foreignKey"] = self.foreign_key.model_dump(by_alias=True)
        return result


class Table(_Snapshot):
    """A modeled database entity."""
    id: str = ModelField(default_factory=generate_table_id)
    name: str
    fields: tuple[Field, ...] = ()
    position: Position = ModelField(default_factory=Position)
    color: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Table):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("table", self.id))

    def get_field(self, name: str) -> Optional[Field]:
        """Get a field by name."""
        for field in self.fields:
            if field.name == name:
                return field
        return None

    def get_field_by_id(self, field_id: str) -> Optional[Field]:
        for field in self.fields:
            if field.id == field_id:
                return field
        return None

    def has_field(self, name: str) -> bool:
        return self.get_field(name) is not None

    @property
    def primary_fields(self) -> list[Field]:
        return [f for f in self.fields if f.primary]

    def to_json_dict(self) -> dict:
        result = {
            "id": self.id,
            "name": self.name,
            "fields": [f.to_json_dict() for f in self.fields],
            "position": {"x": self.position.x, "y": self.position.y},
        }
        if self.color is not None:
            result["color"] = self.color
        return result


class Connection(_Snapshot):
    """
    A directed relationship between a source field and a target field.

    Fields are referenced by name because the canvas binds edges to
    name-keyed handles.
    """
    id: str = ModelField(default_factory=generate_connection_id)
    source_id: str = ModelField(alias="sourceId")
    target_id: str = ModelField(alias="targetId")
    source_field: str = ModelField(alias="sourceField")
    target_field: str = ModelField(alias="targetField")
    relationship_type: RelationshipType = ModelField(
        RelationshipType.ONE_TO_MANY, alias="relationshipType"
    )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Connection):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("connection", self.id))

    def touches_table(self, table_id: str) -> bool:
        return self.source_id == table_id or self.target_id == table_id

    def to_json_dict(self) -> dict:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "targetId": self.target_id,
            "sourceField": self.source_field,
            "targetField": self.target_field,
            "relationshipType": self.relationship_type.value,
        }


class Project(_Snapshot):
    """
    The root aggregate.
    This is what gets saved to/loaded from the project store.
    """
    id: str = ModelField(default_factory=generate_project_id)
    name: str = "Untitled Project"
    tables: tuple[Table, ...] = ()
    connections: tuple[Connection, ...] = ()
    created_at: datetime = ModelField(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = ModelField(default_factory=utc_now, alias="updatedAt")
    description: str = ""
    tags: tuple[str, ...] = ()

    def get_table(self, table_id: str) -> Optional[Table]:
        """Get a table by ID (O(n))."""
        for table in self.tables:
            if table.id == table_id:
                return table
        return None

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        """Get a connection by ID (O(n))."""
        for connection in self.connections:
            if connection.id == connection_id:
                return connection
        return None

    def connections_for_table(self, table_id: str) -> list[Connection]:
        return [c for c in self.connections if c.touches_table(table_id)]

    def touch(self) -> "Project":
        """Return a copy with a fresh update timestamp."""
        return self.model_copy(update={"updated_at": utc_now()})

    def to_json_dict(self) -> dict:
        """Convert to the persisted JSON structure."""
        return {
            "id": self.id,
            "name": self.name,
            "tables": [t.to_json_dict() for t in self.tables],
            "connections": [c.to_json_dict() for c in self.connections],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "description": self.description,
            "tags": list(self.tags),
        }

    @classmethod
    def from_json_dict(cls, data: dict) -> "Project":
        """Create a Project from its persisted JSON structure."""
        return cls.model_validate(data)


# --- Definitions (inputs to the mutation service) ---

class TableDefinition(_Snapshot):
    """A table without its id and position, as submitted for creation."""
    name: str
    fields: tuple[Field, ...] = ()
    color: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def drop_volatile_keys(cls, data: Any) -> Any:
        """Accept a full table dict by discarding its id and position."""
        if isinstance(data, dict):
            data = {k: v for k, v in data.items() if k not in ("id", "position")}
        return data

    @classmethod
    def from_table(cls, table: Table) -> "TableDefinition":
        return cls(name=table.name, fields=table.fields, color=table.color)


class ConnectionDefinition(_Snapshot):
    """A connection without its id, as submitted for creation."""
    source_id: str = ModelField(alias="sourceId")
    target_id: str = ModelField(alias="targetId")
    source_field: str = ModelField(alias="sourceField")
    target_field: str = ModelField(alias="targetField")
    relationship_type: RelationshipType = ModelField(
        RelationshipType.ONE_TO_MANY, alias="relationshipType"
    )

    def to_connection(self, connection_id: Optional[str] = None) -> Connection:
        return Connection(
            id=connection_id or generate_connection_id(),
            source_id=self.source_id,
            target_id=self.target_id,
            source_field=self.source_field,
            target_field=self.target_field,
            relationship_type=self.relationship_type,
        )
