from __future__ import annotations

import pytest

from erd_canvas.backend.project_manager import ProjectManager
from erd_canvas.backend.storage import MemoryProjectStore
from erd_canvas.core import mutations
from erd_canvas.core.models import (
    ConnectionDefinition,
    Field,
    Position,
    Project,
    TableDefinition,
)


def users_definition() -> TableDefinition:
    return TableDefinition(
        name="users",
        fields=(
            Field(name="id", type="INTEGER", primary=True, not_null=True),
            Field(name="email", type="VARCHAR(255)", unique=True),
        ),
    )


def posts_definition() -> TableDefinition:
    return TableDefinition(
        name="posts",
        fields=(
            Field(name="id", type="INTEGER", primary=True, not_null=True),
            Field(name="user_id", type="INTEGER"),
            Field(name="title", type="TEXT"),
        ),
    )


@pytest.fixture
def empty_project() -> Project:
    return Project(name="blog")


@pytest.fixture
def blog_project(empty_project: Project) -> Project:
    """users <- posts.user_id, with the connection and its foreign key."""
    project = empty_project
    project = mutations.add_table(project, users_definition(), Position(x=0, y=0)).project
    project = mutations.add_table(project, posts_definition(), Position(x=400, y=0)).project
    users, posts = project.tables
    project = mutations.add_connection(project, ConnectionDefinition(
        source_id=posts.id,
        target_id=users.id,
        source_field="user_id",
        target_field="id",
    )).project
    return project


@pytest.fixture
def manager() -> ProjectManager:
    return ProjectManager(store=MemoryProjectStore())


@pytest.fixture
def blog_manager(manager: ProjectManager, blog_project: Project) -> ProjectManager:
    manager.import_project(blog_project)
    return manager
