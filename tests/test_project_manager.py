from __future__ import annotations

import pytest

from erd_canvas.backend.project_manager import ProjectManager
from erd_canvas.backend.storage import JsonFileProjectStore, MemoryProjectStore
from erd_canvas.core.errors import NotFoundError, StateError
from erd_canvas.core.models import Connection, Field, Position, Project, TableDefinition
from erd_canvas.core.validation import IssueKind


def users_definition() -> TableDefinition:
    return TableDefinition(name="users", fields=(
        Field(name="id", type="INTEGER", primary=True),
        Field(name="email", type="TEXT"),
    ))


def test_mutations_without_project_are_state_errors(manager: ProjectManager) -> None:
    result = manager.add_table(users_definition(), Position())
    assert not result.ok
    assert result.issues[0].kind == IssueKind.STATE
    with pytest.raises(StateError):
        result.unwrap()
    with pytest.raises(StateError):
        manager.save()


def test_create_open_and_list(manager: ProjectManager) -> None:
    first = manager.create_project("first")
    manager.add_table(users_definition(), Position())
    second = manager.create_project("second", tags=["draft"])

    assert manager.project.id == second.id
    summaries = manager.list_projects()
    assert {s["id"] for s in summaries} == {first.id, second.id}
    assert next(s for s in summaries if s["id"] == first.id)["tables"] == 1

    opened = manager.open_project(first.id)
    assert [t.name for t in opened.tables] == ["users"]
    assert not manager.can_undo


def test_open_missing_project(manager: ProjectManager) -> None:
    with pytest.raises(NotFoundError):
        manager.open_project("project-missing")


def test_change_callbacks_receive_each_snapshot(manager: ProjectManager) -> None:
    seen: list = []
    manager.on_change(seen.append)

    project = manager.create_project("p")
    manager.add_table(users_definition(), Position())
    manager.add_table(TableDefinition(name="bad name", fields=()), Position())
    manager.close_project()

    assert seen[0].id == project.id
    assert len(seen[1].tables) == 1
    assert seen[-1] is None
    assert len(seen) == 3


def test_undo_redo(manager: ProjectManager) -> None:
    manager.create_project("p")
    manager.add_table(users_definition(), Position())
    assert manager.can_undo and not manager.can_redo

    assert manager.undo().tables == ()
    assert manager.can_redo
    assert len(manager.redo().tables) == 1
    assert manager.undo() is not None
    assert manager.undo() is None


def test_new_mutation_clears_redo(manager: ProjectManager) -> None:
    manager.create_project("p")
    manager.add_table(users_definition(), Position())
    manager.undo()
    manager.add_table(TableDefinition(name="other", fields=(Field(name="id", type="INT"),)), Position())
    assert not manager.can_redo


def test_history_is_bounded() -> None:
    manager = ProjectManager(max_history=2)
    manager.create_project("p")
    table = manager.add_table(users_definition(), Position()).unwrap()
    for x in range(5):
        manager.move_table(table.id, Position(x=x, y=0))
    assert manager.undo() is not None
    assert manager.undo() is not None
    assert manager.undo() is None


def test_autosave_persists_every_mutation() -> None:
    store = MemoryProjectStore()
    manager = ProjectManager(store=store)
    project = manager.create_project("p")
    manager.add_table(users_definition(), Position())
    assert len(store.get(project.id)["tables"]) == 1
    assert not manager.is_dirty


def test_without_autosave_changes_are_dirty_until_saved() -> None:
    store = MemoryProjectStore()
    manager = ProjectManager(store=store, autosave=False)
    project = manager.create_project("p")
    manager.add_table(users_definition(), Position())
    assert manager.is_dirty
    assert store.get(project.id)["tables"] == []

    manager.save()
    assert not manager.is_dirty
    assert len(store.get(project.id)["tables"]) == 1


def test_duplicate_and_delete_projects(blog_manager: ProjectManager, blog_project: Project) -> None:
    copy = blog_manager.duplicate_project(blog_project.id)
    assert copy.id != blog_project.id
    assert blog_manager.project.id == blog_project.id
    assert blog_manager.load_project(copy.id).name == "blog (Copy)"

    assert blog_manager.delete_project(blog_project.id)
    assert blog_manager.project is None
    assert not blog_manager.delete_project(blog_project.id)
    assert [s["id"] for s in blog_manager.list_projects()] == [copy.id]


def test_update_project_info(blog_manager: ProjectManager) -> None:
    project = blog_manager.update_project_info(name="shop", tags=["a", "b"]).unwrap()
    assert blog_manager.project is project
    assert project.tags == ("a", "b")


def test_file_store_round_trip(tmp_path, blog_project: Project) -> None:
    manager = ProjectManager(store=JsonFileProjectStore(tmp_path))
    manager.import_project(blog_project)
    assert (tmp_path / f"{blog_project.id}.json").exists()

    fresh = ProjectManager(store=JsonFileProjectStore(tmp_path))
    loaded = fresh.open_project(blog_project.id)
    assert loaded.to_json_dict() == blog_project.to_json_dict()


def test_get_state(blog_manager: ProjectManager) -> None:
    state = blog_manager.get_state()
    assert state["project"]["name"] == "blog"
    assert state["can_undo"] is False

    blog_manager.close_project()
    assert blog_manager.get_state()["project"] is None


def test_unsafe_project_id_is_not_found(tmp_path) -> None:
    manager = ProjectManager(store=JsonFileProjectStore(tmp_path))
    with pytest.raises(NotFoundError):
        manager.open_project("../outside")
    assert not manager.delete_project("../outside")


def test_import_sweeps_orphans_without_history(manager: ProjectManager, blog_project: Project) -> None:
    users = blog_project.tables[0]
    stray = Connection(source_id=users.id, target_id="t-gone", source_field="id", target_field="id")
    manager.import_project(blog_project.model_copy(update={
        "connections": blog_project.connections + (stray,),
    }))

    assert [c.id for c in manager.last_swept] == [stray.id]
    assert len(manager.project.connections) == 1
    assert not manager.can_undo
    assert len(manager.store.get(blog_project.id)["connections"]) == 1


def test_rename_and_sweep_share_one_history_entry(blog_manager: ProjectManager) -> None:
    posts = blog_manager.project.tables[1]
    fields = tuple(f.model_copy(update={"name": "uid"}) if f.name == "user_id" else f for f in posts.fields)

    result = blog_manager.update_table(posts.model_copy(update={"fields": fields}))
    assert result.project is blog_manager.project
    assert result.project.connections == ()
    assert len(blog_manager.last_swept) == 1

    restored = blog_manager.undo()
    assert len(restored.connections) == 1
    assert blog_manager.last_swept == ()
    assert not blog_manager.can_undo
