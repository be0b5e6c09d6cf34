from __future__ import annotations

import pytest

from erd_canvas.core import mutations
from erd_canvas.core.errors import NotFoundError, ReferentialError, ValidationError
from erd_canvas.core.models import (
    ConnectionDefinition,
    Field,
    Position,
    Project,
    RelationshipType,
    TableDefinition,
)
from erd_canvas.core.validation import IssueKind, find_orphan_connections, validate_project


def _users_and_orders(project: Project) -> Project:
    project = mutations.add_table(project, TableDefinition(name="users", fields=(
        Field(name="id", type="INT", primary=True),
        Field(name="name", type="VARCHAR"),
    )), Position(x=0, y=0)).project
    return mutations.add_table(project, TableDefinition(name="orders", fields=(
        Field(name="id", type="INT", primary=True),
        Field(name="user_id", type="INT"),
    )), Position(x=300, y=0)).project


def test_connection_round_trip_sets_and_clears_foreign_key(empty_project: Project) -> None:
    """Adding a connection annotates orders.user_id; deleting it clears exactly that annotation."""
    project = _users_and_orders(empty_project)
    users, orders = project.tables

    result = mutations.add_connection(project, ConnectionDefinition(
        source_id=orders.id, target_id=users.id,
        source_field="user_id", target_field="id",
        relationship_type=RelationshipType.ONE_TO_MANY,
    ))
    assert result.ok
    project = result.project
    fk = project.get_table(orders.id).get_field("user_id").foreign_key
    assert fk is not None
    assert (fk.table_id, fk.field_name) == (users.id, "id")
    assert len(project.connections) == 1

    project = mutations.delete_connection(project, result.value.id).project
    assert project.get_table(orders.id).get_field("user_id").foreign_key is None
    assert project.connections == ()
    assert all(f.foreign_key is None for t in project.tables for f in t.fields)


def test_input_snapshot_is_never_modified(empty_project: Project) -> None:
    result = mutations.add_table(
        empty_project, TableDefinition(name="users", fields=(Field(name="id", type="INT"),)), Position()
    )
    assert result.ok
    assert empty_project.tables == ()
    assert result.project.updated_at >= empty_project.updated_at


def test_delete_table_cascades_both_directions(blog_project: Project) -> None:
    users, posts = blog_project.tables

    project = mutations.delete_table(blog_project, users.id).project
    assert project.get_table(users.id) is None
    assert project.connections == ()
    assert project.get_table(posts.id).get_field("user_id").foreign_key is None
    assert find_orphan_connections(project) == []

    project = mutations.delete_table(blog_project, posts.id).project
    assert project.connections == ()
    assert [t.name for t in project.tables] == ["users"]


def test_invalid_table_is_rejected_without_change(empty_project: Project) -> None:
    result = mutations.add_table(empty_project, TableDefinition(name="bad name", fields=()), Position())
    assert not result.ok
    assert result.project is None
    assert {i.kind for i in result.issues} == {IssueKind.VALIDATION}
    assert "Table must have at least one field" in result.errors
    with pytest.raises(ValidationError):
        result.unwrap()


def test_add_table_keeps_only_the_last_primary_key(empty_project: Project) -> None:
    table = mutations.add_table(empty_project, TableDefinition(name="t", fields=(
        Field(name="a", type="INT", primary=True),
        Field(name="b", type="INT", primary=True),
    )), Position()).unwrap()
    assert [f.name for f in table.primary_fields] == ["b"]


def test_update_table_newly_flagged_primary_key_wins(blog_project: Project) -> None:
    users = blog_project.tables[0]
    fields = tuple(f.model_copy(update={"primary": True}) for f in users.fields)
    result = mutations.update_table(blog_project, users.model_copy(update={"fields": fields}))
    assert result.ok
    assert [f.name for f in result.value.primary_fields] == ["email"]


def test_set_primary_key(blog_project: Project) -> None:
    users = blog_project.tables[0]
    email = users.get_field("email")
    table = mutations.set_primary_key(blog_project, users.id, email.id).unwrap()
    assert [f.name for f in table.primary_fields] == ["email"]

    missing = mutations.set_primary_key(blog_project, users.id, "nope")
    assert missing.issues[0].kind == IssueKind.NOT_FOUND


def test_update_missing_table_is_not_found(blog_project: Project) -> None:
    table = blog_project.tables[0].model_copy(update={"id": "t-missing"})
    result = mutations.update_table(blog_project, table)
    with pytest.raises(NotFoundError):
        result.unwrap()


def test_update_table_rejects_dangling_foreign_key(blog_project: Project) -> None:
    users = blog_project.tables[0]
    fields = users.fields + (Field(name="team_id", type="INT").with_foreign_key("t-gone", "id"),)
    result = mutations.update_table(blog_project, users.model_copy(update={"fields": fields}))
    assert result.issues[0].kind == IssueKind.REFERENTIAL


def test_move_table(blog_project: Project) -> None:
    users = blog_project.tables[0]
    table = mutations.move_table(blog_project, users.id, Position(x=5, y=6)).unwrap()
    assert table.position == Position(x=5, y=6)


def test_connection_to_missing_field_is_referential_error(blog_project: Project) -> None:
    users, posts = blog_project.tables
    result = mutations.add_connection(blog_project, ConnectionDefinition(
        source_id=posts.id, target_id=users.id, source_field="title", target_field="nope",
    ))
    assert result.errors == ["Target field 'nope' not found in table 'users'"]
    with pytest.raises(ReferentialError):
        result.unwrap()


def test_source_field_holds_one_relationship(blog_project: Project) -> None:
    users, posts = blog_project.tables
    result = mutations.add_connection(blog_project, ConnectionDefinition(
        source_id=posts.id, target_id=users.id, source_field="user_id", target_field="email",
    ))
    assert result.errors == ["Field 'user_id' already has a relationship"]
    assert result.issues[0].kind == IssueKind.REFERENTIAL
    with pytest.raises(ReferentialError):
        result.unwrap()


def test_update_connection_moves_foreign_key(blog_project: Project) -> None:
    users, posts = blog_project.tables
    conn = blog_project.connections[0]

    moved = conn.model_copy(update={"source_field": "title", "target_field": "email"})
    project = mutations.update_connection(blog_project, moved).project

    posts = project.get_table(posts.id)
    assert posts.get_field("user_id").foreign_key is None
    assert posts.get_field("title").foreign_key.field_name == "email"
    assert project.get_connection(conn.id).source_field == "title"


def test_delete_missing_connection(blog_project: Project) -> None:
    result = mutations.delete_connection(blog_project, "c-missing")
    assert not result.ok
    assert result.issues[0].kind == IssueKind.NOT_FOUND


def test_duplicate_table_has_fresh_ids_and_keeps_foreign_keys(blog_project: Project) -> None:
    """The copy keeps its foreign keys pointing at the original targets; no connection is added."""
    users, posts = blog_project.tables
    result = mutations.duplicate_table(blog_project, posts.id)
    copy = result.unwrap()

    assert copy.id != posts.id
    assert copy.name == "posts (Copy)"
    assert copy.position == posts.position.offset(20, 20)
    assert {f.id for f in copy.fields}.isdisjoint({f.id for f in posts.fields})
    assert copy.get_field("user_id").foreign_key.table_id == users.id
    assert len(result.project.connections) == 1

    # The copy can still be edited
    assert mutations.move_table(result.project, copy.id, Position(x=1, y=1)).ok


def test_copy_project_remaps_references(blog_project: Project) -> None:
    copy = mutations.copy_project(blog_project)
    users, posts = copy.tables

    assert copy.id != blog_project.id
    assert copy.name == "blog (Copy)"
    assert {t.id for t in copy.tables}.isdisjoint({t.id for t in blog_project.tables})
    conn = copy.connections[0]
    assert (conn.source_id, conn.target_id) == (posts.id, users.id)
    assert posts.get_field("user_id").foreign_key.table_id == users.id


def test_update_project_info(blog_project: Project) -> None:
    project = mutations.update_project_info(
        blog_project, name="  shop ", description="orders", tags=["demo"]
    ).unwrap()
    assert (project.name, project.description, project.tags) == ("shop", "orders", ("demo",))
    assert not mutations.update_project_info(blog_project, name=" ").ok


def _rename_field(project: Project, table_id: str, old: str, new: str) -> Project:
    table = project.get_table(table_id)
    fields = tuple(f.model_copy(update={"name": new}) if f.name == old else f for f in table.fields)
    result = mutations.update_table(project, table.model_copy(update={"fields": fields}))
    assert result.ok
    return result.project


def test_update_table_cannot_clear_a_foreign_key(blog_project: Project) -> None:
    """Dropping the annotation would leave the connection without its other half."""
    posts = blog_project.tables[1]
    fields = tuple(f.without_foreign_key() if f.name == "user_id" else f for f in posts.fields)

    result = mutations.update_table(blog_project, posts.model_copy(update={"fields": fields}))
    assert not result.ok
    assert result.issues[0].kind == IssueKind.REFERENTIAL
    assert result.errors == ["Foreign key on 'posts.user_id' can only change through its connection"]


def test_update_table_cannot_add_a_foreign_key(blog_project: Project) -> None:
    users, posts = blog_project.tables
    fields = tuple(f.with_foreign_key(users.id, "email") if f.name == "title" else f for f in posts.fields)

    result = mutations.update_table(blog_project, posts.model_copy(update={"fields": fields}))
    with pytest.raises(ReferentialError):
        result.unwrap()


def test_update_table_keeps_unchanged_foreign_keys(blog_project: Project) -> None:
    posts = blog_project.tables[1]
    fields = tuple(f.model_copy(update={"type": "BIGINT"}) if f.name == "user_id" else f for f in posts.fields)

    table = mutations.update_table(blog_project, posts.model_copy(update={"fields": fields})).unwrap()
    assert table.get_field("user_id").type == "BIGINT"
    assert table.get_field("user_id").foreign_key == posts.get_field("user_id").foreign_key


def test_deleting_connection_after_rename_clears_the_moved_foreign_key(blog_project: Project) -> None:
    users, posts = blog_project.tables
    project = _rename_field(blog_project, posts.id, "user_id", "uid")
    assert project.get_table(posts.id).get_field("uid").foreign_key.table_id == users.id

    project = mutations.delete_connection(project, project.connections[0].id).project
    assert project.get_table(posts.id).get_field("uid").foreign_key is None


def test_remove_orphan_connections(blog_project: Project) -> None:
    posts = blog_project.tables[1]
    project = _rename_field(blog_project, posts.id, "user_id", "uid")
    assert find_orphan_connections(project) == list(project.connections)

    result = mutations.remove_orphan_connections(project)
    assert [c.id for c in result.value] == [blog_project.connections[0].id]
    assert result.project.connections == ()
    assert all(f.foreign_key is None for f in result.project.get_table(posts.id).fields)
    assert validate_project(result.project) == []


def test_remove_orphan_connections_without_orphans_is_a_no_op(blog_project: Project) -> None:
    result = mutations.remove_orphan_connections(blog_project)
    assert result.value == ()
    assert result.project is blog_project


def test_move_tables_fails_as_a_whole(blog_project: Project) -> None:
    users, posts = blog_project.tables
    bad = posts.model_copy(update={"name": "order-items"})
    project = blog_project.model_copy(update={"tables": (users, bad)})

    result = mutations.move_tables(project, {
        users.id: Position(x=1, y=1),
        posts.id: Position(x=2, y=2),
    })
    assert not result.ok
    assert result.project is None

    moved = mutations.move_tables(blog_project, {users.id: Position(x=5, y=6)}).unwrap()
    assert [t.position for t in moved] == [Position(x=5, y=6)]
