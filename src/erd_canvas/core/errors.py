"""
Exceptions for rejected schema operations.

Mutations return results instead of raising; these exceptions are raised
only where a caller asks for it (`MutationResult.unwrap()`) and at API
boundaries that need to fail loudly.
"""

from typing import Optional

from .validation import IssueKind, ValidationIssue


class SchemaError(Exception):
    """Base class for schema operation errors."""
    status_code = 400

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        super().__init__(message)
        self.issues = list(issues or [])

    @property
    def errors(self) -> list[str]:
        return [issue.message for issue in self.issues] or [str(self)]


class ValidationError(SchemaError):
    """Bad name, type or shape. The model is unchanged."""
    status_code = 422


class ReferentialError(SchemaError):
    """A connection or foreign key refers to a missing table or field."""
    status_code = 409


class StateError(SchemaError):
    """The operation needs an open project."""
    status_code = 409


class NotFoundError(SchemaError):
    """The addressed table, connection or project does not exist."""
    status_code = 404


_ERRORS_BY_KIND = {
    IssueKind.VALIDATION: ValidationError,
    IssueKind.REFERENTIAL: ReferentialError,
    IssueKind.STATE: StateError,
    IssueKind.NOT_FOUND: NotFoundError,
}


def error_for_issues(issues: list[ValidationIssue], default: str = "Operation failed") -> SchemaError:
    """Build the exception matching the first issue's kind."""
    if not issues:
        return SchemaError(default)
    error_cls = _ERRORS_BY_KIND.get(issues[0].kind, SchemaError)
    return error_cls("; ".join(i.message for i in issues), issues)
