"""
Schema validation - Check tables, fields, connections and whole projects.

Validation never raises: every check returns a ValidationResult (or a list
of issues) that the mutation service turns into a rejected mutation and the
canvas layer turns into a user-facing warning.

Issue kinds:
- validation: bad name/type/shape, local to the submitted entity
- referential: a connection or foreign key refers to a missing table/field
- state: the operation needs an open project and there is none
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from .models import is_valid_identifier, is_valid_table_name

if TYPE_CHECKING:
    from .models import Connection, ConnectionDefinition, Field, Project, Table


class IssueKind(str, Enum):
    """Error taxonomy for rejected operations."""
    VALIDATION = "validation"
    REFERENTIAL = "referential"
    STATE = "state"
    NOT_FOUND = "not_found"


@dataclass
class ValidationIssue:
    """A single problem found while validating an entity."""
    kind: IssueKind
    message: str
    table_id: Optional[str] = None
    field_name: Optional[str] = None
    connection_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result = {"kind": self.kind.value, "message": self.message}
        if self.table_id:
            result["table_id"] = self.table_id
        if self.field_name:
            result["field_name"] = self.field_name
        if self.connection_id:
            result["connection_id"] = self.connection_id
        return result


@dataclass
class ValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    @property
    def errors(self) -> list[str]:
        return [issue.message for issue in self.issues]

    def extend(self, issues: Iterable[ValidationIssue]) -> None:
        self.issues.extend(issues)


def no_project_issue() -> ValidationIssue:
    return ValidationIssue(kind=IssueKind.STATE, message="No project open")


def not_found_issue(message: str, **ids: str) -> ValidationIssue:
    return ValidationIssue(kind=IssueKind.NOT_FOUND, message=message, **ids)


def validate_field(field: "Field") -> ValidationResult:
    """Check a single field's name and type."""
    result = ValidationResult()

    if not field.name.strip():
        result.issues.append(ValidationIssue(
            IssueKind.VALIDATION, "Field name is required", field_name=field.name
        ))
    elif not is_valid_identifier(field.name):
        result.issues.append(ValidationIssue(
            IssueKind.VALIDATION,
            "Field name must start with a letter or underscore and contain "
            "only alphanumeric characters",
            field_name=field.name,
        ))

    if not field.type or not field.type.strip():
        result.issues.append(ValidationIssue(
            IssueKind.VALIDATION, "Field type is required", field_name=field.name
        ))

    return result


def validate_table(table: "Table") -> ValidationResult:
    """
    Check a table's name, field count and each field.

    Field messages are prefixed with the field name so they can be shown
    next to the table form.
    """
    result = ValidationResult()

    if not table.name.strip():
        result.issues.append(ValidationIssue(
            IssueKind.VALIDATION, "Table name is required", table_id=table.id
        ))
    elif not is_valid_table_name(table.name):
        result.issues.append(ValidationIssue(
            IssueKind.VALIDATION,
            "Table name must start with a letter or underscore and contain "
            "only alphanumeric characters",
            table_id=table.id,
        ))

    if not table.fields:
        result.issues.append(ValidationIssue(
            IssueKind.VALIDATION, "Table must have at least one field", table_id=table.id
        ))

    for f in table.fields:
        for issue in validate_field(f).issues:
            issue.message = f"Field '{f.name}': {issue.message}"
            issue.table_id = table.id
            result.issues.append(issue)

    return result


def validate_foreign_key(field: "Field", tables: Iterable["Table"]) -> ValidationResult:
    """Check that a field's foreign key points at an existing table and field."""
    result = ValidationResult()
    fk = field.foreign_key
    if fk is None:
        return result

    target = next((t for t in tables if t.id == fk.table_id), None)
    if target is None:
        result.issues.append(ValidationIssue(
            IssueKind.REFERENTIAL,
            f"Field '{field.name}': referenced table not found",
            field_name=field.name,
        ))
    elif not target.has_field(fk.field_name):
        result.issues.append(ValidationIssue(
            IssueKind.REFERENTIAL,
            f"Field '{field.name}': referenced field '{fk.field_name}' "
            f"not found in table '{target.name}'",
            table_id=target.id,
            field_name=field.name,
        ))
    return result


def validate_connection(
    conn: "Connection | ConnectionDefinition",
    tables: Iterable["Table"],
) -> ValidationResult:
    """Check that both endpoint tables exist and carry the named fields."""
    result = ValidationResult()
    tables = list(tables)
    connection_id = getattr(conn, "id", None)

    source = next((t for t in tables if t.id == conn.source_id), None)
    target = next((t for t in tables if t.id == conn.target_id), None)

    if source is None:
        result.issues.append(ValidationIssue(
            IssueKind.REFERENTIAL, "Source table not found", connection_id=connection_id
        ))
    if target is None:
        result.issues.append(ValidationIssue(
            IssueKind.REFERENTIAL, "Target table not found", connection_id=connection_id
        ))

    if source is not None and not source.has_field(conn.source_field):
        result.issues.append(ValidationIssue(
            IssueKind.REFERENTIAL,
            f"Source field '{conn.source_field}' not found in table '{source.name}'",
            table_id=source.id,
            field_name=conn.source_field,
            connection_id=connection_id,
        ))
    if target is not None and not target.has_field(conn.target_field):
        result.issues.append(ValidationIssue(
            IssueKind.REFERENTIAL,
            f"Target field '{conn.target_field}' not found in table '{target.name}'",
            table_id=target.id,
            field_name=conn.target_field,
            connection_id=connection_id,
        ))

    return result


def find_orphan_connections(project: "Project") -> list["Connection"]:
    """Connections whose tables or fields no longer exist."""
    return [
        c for c in project.connections
        if not validate_connection(c, project.tables).valid
    ]


def validate_project(project: "Project") -> list[ValidationIssue]:
    """
    Validate a whole project and return a list of issues.

    Checks for:
    - Tables failing table validation
    - Duplicate table names, duplicate field names within a table
    - More than one primary key in a table
    - Orphan connections
    - Foreign keys pointing at missing tables/fields
    - Foreign keys without a connection, and connections without a foreign key
    """
    issues: list[ValidationIssue] = []

    for table in project.tables:
        issues.extend(validate_table(table).issues)

        name_counts = Counter(f.name for f in table.fields)
        for name, count in name_counts.items():
            if count > 1:
                issues.append(ValidationIssue(
                    IssueKind.VALIDATION,
                    f"Table '{table.name}' has {count} fields named '{name}'",
                    table_id=table.id,
                    field_name=name,
                ))

        if len(table.primary_fields) > 1:
            issues.append(ValidationIssue(
                IssueKind.VALIDATION,
                f"Table '{table.name}' has more than one primary key",
                table_id=table.id,
            ))

        for f in table.fields:
            for issue in validate_foreign_key(f, project.tables).issues:
                issue.table_id = table.id
                issues.append(issue)

    table_counts = Counter(t.name for t in project.tables)
    for name, count in table_counts.items():
        if count > 1:
            issues.append(ValidationIssue(
                IssueKind.VALIDATION, f"Duplicate table name '{name}' ({count} tables)"
            ))

    for conn in project.connections:
        issues.extend(validate_connection(conn, project.tables).issues)

    # Pairing between connections and foreign key annotations
    paired: set[tuple[str, str]] = set()
    for conn in project.connections:
        paired.add((conn.source_id, conn.source_field))
        source = project.get_table(conn.source_id)
        field = source.get_field(conn.source_field) if source else None
        if field is not None and field.foreign_key is None:
            issues.append(ValidationIssue(
                IssueKind.REFERENTIAL,
                f"Connection from '{source.name}.{field.name}' has no foreign key on its source field",
                table_id=source.id,
                field_name=field.name,
                connection_id=conn.id,
            ))

    for table in project.tables:
        for f in table.fields:
            if f.foreign_key is not None and (table.id, f.name) not in paired:
                issues.append(ValidationIssue(
                    IssueKind.REFERENTIAL,
                    f"Foreign key on '{table.name}.{f.name}' has no matching connection",
                    table_id=table.id,
                    field_name=f.name,
                ))

    return issues


def validation_summary(issues: list[ValidationIssue]) -> dict:
    """
    Create a summary of validation issues.

    Args:
        issues: List of validation issues

    Returns:
        Dictionary with counts by kind
    """
    return {
        "total": len(issues),
        "validation": len([i for i in issues if i.kind == IssueKind.VALIDATION]),
        "referential": len([i for i in issues if i.kind == IssueKind.REFERENTIAL]),
        "state": len([i for i in issues if i.kind == IssueKind.STATE]),
        "not_found": len([i for i in issues if i.kind == IssueKind.NOT_FOUND]),
        "valid": not issues,
    }
