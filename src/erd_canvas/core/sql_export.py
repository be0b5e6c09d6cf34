"""
SQL export - render tables as CREATE TABLE statements.

Purely presentational: reads a Table or Project and produces text.
Foreign key clauses come from the field annotations; annotations whose
target table no longer exists are skipped.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .models import Project, ScalarDefault, Table, is_valid_identifier


class SQLDialect(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


class SQLExportOptions(BaseModel):
    """Options for SQL generation."""
    dialect: SQLDialect = SQLDialect.POSTGRESQL
    include_drop_statements: bool = False
    include_timestamps: bool = False


# Defaults rendered verbatim instead of as string literals
SQL_DEFAULT_KEYWORDS = {"CURRENT_TIMESTAMP", "CURRENT_DATE", "CURRENT_TIME", "NOW()", "NULL"}

_TIMESTAMP_COLUMNS = {
    SQLDialect.POSTGRESQL: [
        "created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP",
        "updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP",
    ],
    SQLDialect.MYSQL: [
        "created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP",
        "updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP",
    ],
    SQLDialect.SQLITE: [
        "created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP",
        "updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP",
    ],
}


def quote_identifier(name: str, dialect: SQLDialect = SQLDialect.POSTGRESQL) -> str:
    """Quote a name only when it is not a plain identifier."""
    if is_valid_identifier(name):
        return name
    if dialect == SQLDialect.MYSQL:
        return "`" + name.replace("`", "``") + "`"
    return '"' + name.replace('"', '""') + '"'


def format_default(value: ScalarDefault, dialect: SQLDialect = SQLDialect.POSTGRESQL) -> str:
    """Render a default value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        if dialect == SQLDialect.SQLITE:
            return "1" if value else "0"
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if value.strip().upper() in SQL_DEFAULT_KEYWORDS:
        return value.strip()
    return "'" + value.replace("'", "''") + "'"


def generate_table_sql(
    table: Table,
    project: Optional[Project] = None,
    options: Optional[SQLExportOptions] = None,
) -> str:
    """
    Generate the CREATE TABLE statement for one table.

    Foreign key clauses are only emitted when `project` is given, since the
    referenced table's name has to be resolved from its id.
    """
    options = options or SQLExportOptions()
    dialect = options.dialect
    lines = []

    existing = {f.name for f in table.fields}
    for f in table.fields:
        parts = [quote_identifier(f.name, dialect), f.type]
        if f.not_null:
            parts.append("NOT NULL")
        if f.primary:
            parts.append("PRIMARY KEY")
        if f.unique and not f.primary:
            parts.append("UNIQUE")
        if f.has_default:
            parts.append(f"DEFAULT {format_default(f.default_value, dialect)}")
        lines.append(" ".join(parts))

    if options.include_timestamps:
        for column in _TIMESTAMP_COLUMNS[dialect]:
            if column.split(" ", 1)[0] not in existing:
                lines.append(column)

    if project is not None:
        for f in table.fields:
            if f.foreign_key is None:
                continue
            target = project.get_table(f.foreign_key.table_id)
            if target is None:
                continue
            lines.append(
                f"FOREIGN KEY ({quote_identifier(f.name, dialect)}) "
                f"REFERENCES {quote_identifier(target.name, dialect)}"
                f"({quote_identifier(f.foreign_key.field_name, dialect)})"
            )

    body = ",\n".join(f"  {line}" for line in lines)
    return f"CREATE TABLE {quote_identifier(table.name, dialect)} (\n{body}\n);"


def dependency_order(project: Project) -> list[Table]:
    """Order tables so referenced tables come before the tables referencing them."""
    by_id = {t.id: t for t in project.tables}
    deps = {
        t.id: {
            f.foreign_key.table_id for f in t.fields
            if f.foreign_key and f.foreign_key.table_id in by_id and f.foreign_key.table_id != t.id
        }
        for t in project.tables
    }

    ordered: list[Table] = []
    placed: set[str] = set()
    remaining = [t.id for t in project.tables]
    while remaining:
        ready = [tid for tid in remaining if deps[tid] <= placed]
        if not ready:
            # Circular references: keep project order for the rest
            ready = remaining[:]
        for tid in ready:
            ordered.append(by_id[tid])
            placed.add(tid)
        remaining = [tid for tid in remaining if tid not in placed]
    return ordered


def generate_project_sql(project: Project, options: Optional[SQLExportOptions] = None) -> str:
    """Generate the SQL script for a whole project."""
    options = options or SQLExportOptions()
    tables = dependency_order(project)

    chunks = [f"-- {project.name}", f"-- Dialect: {options.dialect.value}", ""]
    if options.include_drop_statements:
        for table in reversed(tables):
            chunks.append(f"DROP TABLE IF EXISTS {quote_identifier(table.name, options.dialect)};")
        chunks.append("")

    for table in tables:
        chunks.append(generate_table_sql(table, project, options))
        chunks.append("")

    return "\n".join(chunks)
