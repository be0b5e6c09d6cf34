"""
Clipboard duplication - copy a table and paste it as a new one.

The clipboard is transient and never persisted. Copy strips the volatile
parts of a table (id and position); paste builds a definition for
`add_table` with a copy marker on the name, fresh field ids and no foreign
keys, so a pasted table is never silently wired into existing relationships.
"""

import logging
from typing import Optional

from .models import COPY_SUFFIX, Position, Table, TableDefinition, generate_field_id

logger = logging.getLogger(__name__)

DEFAULT_PASTE_OFFSET = 50
DEFAULT_PASTE_ANCHOR = Position(x=100, y=100)


class Clipboard:
    """Holds at most one copied table definition."""

    def __init__(
        self,
        paste_offset: float = DEFAULT_PASTE_OFFSET,
        default_anchor: Position = DEFAULT_PASTE_ANCHOR,
    ):
        self._entry: Optional[TableDefinition] = None
        self._paste_offset = paste_offset
        self._default_anchor = default_anchor

    @property
    def has_data(self) -> bool:
        return self._entry is not None

    @property
    def entry(self) -> Optional[TableDefinition]:
        return self._entry

    def copy(self, table: Table) -> TableDefinition:
        """Hold a table's data, without its id and position."""
        self._entry = TableDefinition.from_table(table)
        logger.debug("Copied table %s", table.name)
        return self._entry

    def clear(self) -> None:
        self._entry = None

    def paste_position(self, selected: Optional[Position] = None) -> Position:
        """Offset from the selected node, or the default anchor when nothing is selected."""
        if selected is not None:
            return selected.offset(self._paste_offset, self._paste_offset)
        return self._default_anchor

    def build_paste(self, selected: Optional[Position] = None) -> Optional[tuple[TableDefinition, Position]]:
        """
        Build the definition and position for pasting the held table.

        Returns None when nothing has been copied.
        """
        if self._entry is None:
            return None

        fields = tuple(
            f.model_copy(update={"id": generate_field_id(), "foreign_key": None})
            for f in self._entry.fields
        )
        definition = self._entry.model_copy(update={
            "name": f"{self._entry.name}{COPY_SUFFIX}",
            "fields": fields,
        })
        return definition, self.paste_position(selected)
