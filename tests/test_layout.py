from __future__ import annotations

import itertools

import pytest

from erd_canvas.core.layout import (
    LayoutError,
    boxes_overlap,
    build_layout_graph,
    estimate_table_size,
    grid_layout,
    layered_layout,
)
from erd_canvas.core.models import Connection, Field, Position, Project, Table


def _table(table_id: str, *field_names: str) -> Table:
    return Table(
        id=table_id,
        name=table_id,
        fields=tuple(Field(name=n, type="INTEGER") for n in field_names or ("id",)),
    )


def _ref(source: str, target: str, field: str = "ref_id") -> Connection:
    """source.field references target.id"""
    return Connection(source_id=source, target_id=target, source_field=field, target_field="id")


SIZES = {"a": (200, 120), "b": (260, 180), "c": (180, 90), "d": (220, 150), "e": (240, 100)}


def _assert_no_overlap(positions: dict[str, Position], sizes: dict[str, tuple[float, float]]) -> None:
    for first, second in itertools.combinations(positions, 2):
        box_a = (positions[first].x, positions[first].y, *sizes[first])
        box_b = (positions[second].x, positions[second].y, *sizes[second])
        assert not boxes_overlap(box_a, box_b), f"{first} overlaps {second}"


def test_referenced_tables_rank_above_their_dependents() -> None:
    tables = [_table(t) for t in "abcde"]
    connections = [_ref("b", "a"), _ref("c", "a"), _ref("d", "b"), _ref("e", "d", "other_id")]
    positions = layered_layout(tables, connections, SIZES)

    assert set(positions) == set("abcde")
    for conn in connections:
        parent, child = positions[conn.target_id], positions[conn.source_id]
        assert parent.y + SIZES[conn.target_id][1] <= child.y


def test_layout_never_overlaps() -> None:
    tables = [_table(t) for t in "abcde"]
    connections = [_ref("b", "a"), _ref("c", "a"), _ref("d", "a"), _ref("e", "c")]
    positions = layered_layout(tables, connections, SIZES)
    _assert_no_overlap(positions, SIZES)


def test_bounding_box_starts_at_margin() -> None:
    tables = [_table(t) for t in "abc"]
    positions = layered_layout(tables, [_ref("b", "a")], SIZES, margin=40)
    assert min(p.x for p in positions.values()) == pytest.approx(40)
    assert min(p.y for p in positions.values()) == pytest.approx(40)


def test_rank_separation_is_respected() -> None:
    tables = [_table("a"), _table("b")]
    positions = layered_layout(tables, [_ref("b", "a")], SIZES, rank_separation=100)
    assert positions["b"].y - (positions["a"].y + SIZES["a"][1]) == pytest.approx(100)


def test_cycles_and_self_references_are_laid_out() -> None:
    tables = [_table(t) for t in "abc"]
    connections = [_ref("a", "b"), _ref("b", "c"), _ref("c", "a"), _ref("a", "a", "parent_id")]
    positions = layered_layout(tables, connections, SIZES)
    assert set(positions) == {"a", "b", "c"}
    _assert_no_overlap(positions, SIZES)


def test_disconnected_tables_share_the_top_rank() -> None:
    tables = [_table(t) for t in "abc"]
    positions = layered_layout(tables, [], SIZES)
    centers = {p.y + SIZES[t][1] / 2 for t, p in positions.items()}
    assert len(centers) == 1
    _assert_no_overlap(positions, SIZES)


def test_long_edges_do_not_collapse_ranks() -> None:
    tables = [_table(t) for t in "abc"]
    connections = [_ref("b", "a"), _ref("c", "b"), _ref("c", "a", "other_id")]
    positions = layered_layout(tables, connections, SIZES)
    assert positions["a"].y < positions["b"].y < positions["c"].y


def test_unknown_sizes_fall_back_to_defaults() -> None:
    graph = build_layout_graph([_table("a")], [], {}, default_width=111, default_height=77)
    assert (graph.nodes["a"].width, graph.nodes["a"].height) == (111, 77)


def test_invalid_size_raises_layout_error() -> None:
    with pytest.raises(LayoutError):
        layered_layout([_table("a")], [], {"a": (float("nan"), 100)})


def test_empty_schema() -> None:
    assert layered_layout([], []) == {}


def test_estimated_size_grows_with_fields() -> None:
    small = estimate_table_size(_table("a", "id"))
    large = estimate_table_size(_table("a", "id", "a_rather_long_column_name", "c", "d"))
    assert large[0] > small[0]
    assert large[1] > small[1]


def test_grid_layout() -> None:
    positions = grid_layout(["a", "b", "c", "d"], spacing_x=300, spacing_y=200, columns=3)
    assert positions["a"] == Position(x=100, y=100)
    assert positions["c"] == Position(x=700, y=100)
    assert positions["d"] == Position(x=100, y=300)


def test_layout_applies_to_project_tables(blog_project: Project) -> None:
    positions = layered_layout(blog_project.tables, blog_project.connections)
    users, posts = blog_project.tables
    assert positions[users.id].y < positions[posts.id].y
