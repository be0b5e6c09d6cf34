from __future__ import annotations

from erd_canvas.core import mutations
from erd_canvas.core.clipboard import Clipboard
from erd_canvas.core.models import Position, Project


def test_paste_without_copy_does_nothing() -> None:
    clipboard = Clipboard()
    assert not clipboard.has_data
    assert clipboard.build_paste() is None


def test_copy_strips_id_and_position(blog_project: Project) -> None:
    posts = blog_project.tables[1]
    entry = Clipboard().copy(posts)
    assert "id" not in type(entry).model_fields
    assert "position" not in type(entry).model_fields
    assert entry.name == "posts"


def test_paste_builds_a_fresh_unwired_copy(blog_project: Project) -> None:
    """Pasting never carries foreign keys forward, unlike duplicate_table."""
    posts = blog_project.tables[1]
    clipboard = Clipboard(paste_offset=50)
    clipboard.copy(posts)

    definition, position = clipboard.build_paste(posts.position)
    assert definition.name == "posts (Copy)"
    assert position == posts.position.offset(50, 50)
    assert {f.id for f in definition.fields}.isdisjoint({f.id for f in posts.fields})
    assert all(f.foreign_key is None for f in definition.fields)

    result = mutations.add_table(blog_project, definition, position)
    assert result.ok
    assert len(result.project.connections) == 1

    duplicated = mutations.duplicate_table(blog_project, posts.id).unwrap()
    assert duplicated.get_field("user_id").foreign_key is not None


def test_paste_uses_default_anchor_without_selection(blog_project: Project) -> None:
    clipboard = Clipboard(default_anchor=Position(x=7, y=9))
    clipboard.copy(blog_project.tables[0])
    _, position = clipboard.build_paste()
    assert position == Position(x=7, y=9)


def test_each_paste_regenerates_field_ids(blog_project: Project) -> None:
    clipboard = Clipboard()
    clipboard.copy(blog_project.tables[0])
    first, _ = clipboard.build_paste()
    second, _ = clipboard.build_paste()
    assert {f.id for f in first.fields}.isdisjoint({f.id for f in second.fields})


def test_clear() -> None:
    clipboard = Clipboard()
    clipboard.clear()
    assert clipboard.entry is None
