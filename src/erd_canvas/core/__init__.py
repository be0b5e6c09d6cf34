"""
ERD Canvas Core - Shared models, validation, mutations, and layout algorithms.

This module provides the core functionality used by the backend API, the
CLI and the MCP tools, ensuring a single source of truth for all schema logic.
"""

from .models import (
    # Enums
    RelationshipType,
    # Core models
    Position,
    ForeignKeyRef,
    Field,
    Table,
    Connection,
    Project,
    # Inputs to the mutation service
    TableDefinition,
    ConnectionDefinition,
)

from .errors import SchemaError, ValidationError, ReferentialError, StateError, NotFoundError
from .validation import validate_project, find_orphan_connections, ValidationIssue, IssueKind
from .mutations import MutationResult
from .layout import layered_layout, grid_layout, LayoutError
from .clipboard import Clipboard

__all__ = [
    # Enums
    "RelationshipType",
    # Models
    "Position",
    "ForeignKeyRef",
    "Field",
    "Table",
    "Connection",
    "Project",
    "TableDefinition",
    "ConnectionDefinition",
    # Errors
    "SchemaError",
    "ValidationError",
    "ReferentialError",
    "StateError",
    "NotFoundError",
    # Validation
    "validate_project",
    "find_orphan_connections",
    "ValidationIssue",
    "IssueKind",
    # Mutations
    "MutationResult",
    # Layout
    "layered_layout",
    "grid_layout",
    "LayoutError",
    # Clipboard
    "Clipboard",
]
