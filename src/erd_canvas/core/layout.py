"""
Layout algorithms for schema tables.

Provides two strategies:
- Layered: relationship-aware top-to-bottom layout (rank assignment,
  crossing reduction, coordinate assignment)
- Grid: simple grid arrangement, used for imported projects

Layout functions never touch snapshots; they return a mapping of
table id -> top-left Position that the caller applies.
"""

import logging
import math
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from .models import Position

if TYPE_CHECKING:
    from .models import Connection, Table

logger = logging.getLogger(__name__)


# Default layout parameters
DEFAULT_NODE_WIDTH = 250
DEFAULT_NODE_HEIGHT = 200
DEFAULT_RANK_SEPARATION = 80
DEFAULT_NODE_SEPARATION = 60
DEFAULT_MARGIN = 50
DEFAULT_ORDERING_SWEEPS = 4

DEFAULT_SPACING_X = 300
DEFAULT_SPACING_Y = 260
DEFAULT_START_X = 100
DEFAULT_START_Y = 100


class LayoutError(Exception):
    """Layout could not be computed; no positions should be applied."""


def estimate_table_size(table: "Table") -> tuple[float, float]:
    """
    Estimate the rendered size of a table node from its content.

    Width follows the longest "name type" row, height one row per field
    plus the header.
    """
    char_width = 8.0
    row_height = 28
    header_height = 44
    padding = 32
    min_width = 180

    longest = len(table.name)
    for f in table.fields:
        longest = max(longest, len(f.name) + len(f.type) + 4)

    width = max(min_width, longest * char_width + padding)
    height = header_height + len(table.fields) * row_height + padding / 2
    return (float(int(width + 0.5)), float(int(height + 0.5)))


@dataclass
class LayoutNode:
    """A node of the layout graph. Coordinates are centers until converted."""
    id: str
    width: float
    height: float
    dummy: bool = False
    rank: int = 0
    x: float = 0.0
    y: float = 0.0


@dataclass
class LayoutGraph:
    """Directed graph with parent -> child edges."""
    nodes: dict[str, LayoutNode] = field(default_factory=dict)
    edges: list[tuple[str, str]] = field(default_factory=list)

    def add_node(self, node_id: str, width: float, height: float, dummy: bool = False) -> LayoutNode:
        if not dummy and (
            not math.isfinite(width) or not math.isfinite(height) or width < 0 or height < 0
        ):
            raise LayoutError(f"Invalid size for {node_id}: {width}x{height}")
        node = LayoutNode(node_id, width, height, dummy=dummy)
        self.nodes[node_id] = node
        return node

    def add_edge(self, source: str, target: str) -> None:
        if source == target or (source, target) in self.edges:
            return
        if source not in self.nodes or target not in self.nodes:
            return
        self.edges.append((source, target))


def build_layout_graph(
    tables: Iterable["Table"],
    connections: Iterable["Connection"],
    sizes: Optional[Mapping[str, tuple[float, float]]] = None,
    default_width: float = DEFAULT_NODE_WIDTH,
    default_height: float = DEFAULT_NODE_HEIGHT,
) -> LayoutGraph:
    """
    Build the layout graph for a schema.

    One node per table, sized from `sizes` when the rendered size is known
    and from the defaults otherwise. One edge per connection, oriented from
    the referenced (target) table to the referencing (source) table so that
    parents rank above their dependents. Self references are dropped.
    """
    sizes = sizes or {}
    graph = LayoutGraph()
    for table in tables:
        width, height = sizes.get(table.id) or (default_width, default_height)
        graph.add_node(table.id, width, height)
    for conn in connections:
        graph.add_edge(conn.target_id, conn.source_id)
    return graph


def _break_cycles(node_ids: list[str], edges: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Reverse DFS back edges so the graph becomes acyclic."""
    out: dict[str, list[str]] = defaultdict(list)
    for s, t in edges:
        out[s].append(t)

    visited: set[str] = set()
    on_stack: set[str] = set()
    back_edges: set[tuple[str, str]] = set()

    for root in node_ids:
        if root in visited:
            continue
        stack = [(root, iter(out[root]))]
        visited.add(root)
        on_stack.add(root)
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                on_stack.discard(node)
                continue
            if child in on_stack:
                back_edges.add((node, child))
            elif child not in visited:
                visited.add(child)
                on_stack.add(child)
                stack.append((child, iter(out[child])))

    result: list[tuple[str, str]] = []
    for s, t in edges:
        edge = (t, s) if (s, t) in back_edges else (s, t)
        if edge not in result:
            result.append(edge)
    return result


def _assign_ranks(graph: LayoutGraph, edges: list[tuple[str, str]]) -> None:
    """Longest-path layering: a node sits one rank below its deepest parent."""
    indegree = {node_id: 0 for node_id in graph.nodes}
    out: dict[str, list[str]] = defaultdict(list)
    for s, t in edges:
        out[s].append(t)
        indegree[t] += 1

    queue = deque(node_id for node_id, d in indegree.items() if d == 0)
    ranked = 0
    while queue:
        node_id = queue.popleft()
        ranked += 1
        for child in out[node_id]:
            graph.nodes[child].rank = max(graph.nodes[child].rank, graph.nodes[node_id].rank + 1)
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if ranked != len(graph.nodes):
        raise LayoutError("Layout graph still contains a cycle")


def _split_long_edges(graph: LayoutGraph, edges: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Replace edges spanning several ranks by chains through dummy nodes."""
    result = []
    for s, t in edges:
        span = graph.nodes[t].rank - graph.nodes[s].rank
        previous = s
        for step in range(1, span):
            dummy = graph.add_node(f"_dummy:{s}:{t}:{step}", 0, 0, dummy=True)
            dummy.rank = graph.nodes[s].rank + step
            result.append((previous, dummy.id))
            previous = dummy.id
        result.append((previous, t))
    return result


def _count_crossings(layers: list[list[str]], down: Mapping[str, list[str]]) -> int:
    crossings = 0
    for upper, lower in zip(layers, layers[1:]):
        pos = {node_id: i for i, node_id in enumerate(lower)}
        segments = [
            (i, pos[child])
            for i, node_id in enumerate(upper)
            for child in down.get(node_id, [])
            if child in pos
        ]
        for a in range(len(segments)):
            for b in range(a + 1, len(segments)):
                (u1, v1), (u2, v2) = segments[a], segments[b]
                if (u1 - u2) * (v1 - v2) < 0:
                    crossings += 1
    return crossings


def _reorder(layer: list[str], fixed: list[str], neighbors: Mapping[str, list[str]]) -> list[str]:
    """Sort a layer by the barycenter of each node's neighbors in the fixed layer."""
    pos = {node_id: i for i, node_id in enumerate(fixed)}

    def barycenter(item: tuple[int, str]) -> tuple[float, int]:
        index, node_id = item
        linked = [pos[n] for n in neighbors.get(node_id, []) if n in pos]
        if not linked:
            return (float(index), index)
        return (sum(linked) / len(linked), index)

    return [node_id for _, node_id in sorted(enumerate(layer), key=barycenter)]


def _order_layers(
    graph: LayoutGraph, edges: list[tuple[str, str]], sweeps: int
) -> list[list[str]]:
    """Order nodes within ranks to reduce edge crossings (barycenter sweeps)."""
    max_rank = max((n.rank for n in graph.nodes.values()), default=-1)
    layers: list[list[str]] = [[] for _ in range(max_rank + 1)]
    for node in graph.nodes.values():
        layers[node.rank].append(node.id)

    down: dict[str, list[str]] = defaultdict(list)
    up: dict[str, list[str]] = defaultdict(list)
    for s, t in edges:
        down[s].append(t)
        up[t].append(s)

    best = [list(layer) for layer in layers]
    best_crossings = _count_crossings(best, down)

    for _ in range(sweeps):
        if best_crossings == 0:
            break
        for r in range(1, len(layers)):
            layers[r] = _reorder(layers[r], layers[r - 1], up)
        for r in range(len(layers) - 2, -1, -1):
            layers[r] = _reorder(layers[r], layers[r + 1], down)

        crossings = _count_crossings(layers, down)
        if crossings < best_crossings:
            best = [list(layer) for layer in layers]
            best_crossings = crossings

    return best


def _assign_coordinates(
    graph: LayoutGraph, layers: list[list[str]], rank_separation: float, node_separation: float
) -> None:
    """Place node centers: ranks stacked top to bottom, each rank centered on x = 0."""
    cursor_y = 0.0
    for layer in layers:
        nodes = [graph.nodes[node_id] for node_id in layer]
        rank_height = max((n.height for n in nodes), default=0.0)

        total_width = sum(n.width for n in nodes) + node_separation * max(len(nodes) - 1, 0)
        cursor_x = -total_width / 2
        for node in nodes:
            node.x = cursor_x + node.width / 2
            node.y = cursor_y + rank_height / 2
            cursor_x += node.width + node_separation

        cursor_y += rank_height + rank_separation


def run_layered_layout(
    graph: LayoutGraph,
    rank_separation: float = DEFAULT_RANK_SEPARATION,
    node_separation: float = DEFAULT_NODE_SEPARATION,
    sweeps: int = DEFAULT_ORDERING_SWEEPS,
) -> LayoutGraph:
    """
    Run the layered layout on a graph, setting center coordinates in-place.

    Steps: cycle breaking, longest-path ranking, dummy nodes for long edges,
    barycenter crossing reduction, coordinate assignment.
    """
    real_ids = list(graph.nodes)
    edges = _break_cycles(real_ids, graph.edges)
    _assign_ranks(graph, edges)
    edges = _split_long_edges(graph, edges)
    layers = _order_layers(graph, edges, sweeps)
    _assign_coordinates(graph, layers, rank_separation, node_separation)
    return graph


def to_top_left(graph: LayoutGraph, margin: float = DEFAULT_MARGIN) -> dict[str, Position]:
    """
    Convert center coordinates of real nodes to top-left positions.

    The result is translated so the bounding box starts at (margin, margin).
    """
    corners = {
        node.id: (node.x - node.width / 2, node.y - node.height / 2)
        for node in graph.nodes.values()
        if not node.dummy
    }
    if not corners:
        return {}
    min_x = min(x for x, _ in corners.values())
    min_y = min(y for _, y in corners.values())
    return {
        node_id: Position(x=x - min_x + margin, y=y - min_y + margin)
        for node_id, (x, y) in corners.items()
    }


def layered_layout(
    tables: Iterable["Table"],
    connections: Iterable["Connection"],
    sizes: Optional[Mapping[str, tuple[float, float]]] = None,
    *,
    rank_separation: float = DEFAULT_RANK_SEPARATION,
    node_separation: float = DEFAULT_NODE_SEPARATION,
    default_width: float = DEFAULT_NODE_WIDTH,
    default_height: float = DEFAULT_NODE_HEIGHT,
    margin: float = DEFAULT_MARGIN,
    sweeps: int = DEFAULT_ORDERING_SWEEPS,
) -> dict[str, Position]:
    """
    Compute relationship-aware positions for every table.

    Args:
        tables: Tables to place
        connections: Connections between them (referenced tables rank higher)
        sizes: Rendered (width, height) per table id, where known
        rank_separation: Minimum vertical gap between ranks
        node_separation: Minimum horizontal gap between tables of a rank
        default_width: Width used when a table's rendered size is unknown
        default_height: Height used when a table's rendered size is unknown
        margin: Offset of the layout's top-left corner
        sweeps: Number of crossing-reduction sweeps

    Returns:
        Mapping of table id to top-left Position

    Raises:
        LayoutError: if the layout cannot be computed
    """
    try:
        graph = build_layout_graph(tables, connections, sizes, default_width, default_height)
        run_layered_layout(graph, rank_separation, node_separation, sweeps)
        positions = to_top_left(graph, margin)
    except LayoutError:
        raise
    except (KeyError, ValueError, TypeError, ZeroDivisionError) as exc:
        raise LayoutError(f"Layout failed: {exc}") from exc

    logger.debug("Layered layout placed %d table(s)", len(positions))
    return positions


def grid_layout(
    table_ids: list[str],
    spacing_x: float = DEFAULT_SPACING_X,
    spacing_y: float = DEFAULT_SPACING_Y,
    start_x: float = DEFAULT_START_X,
    start_y: float = DEFAULT_START_Y,
    columns: int | None = None
) -> dict[str, Position]:
    """
    Arrange tables in a grid pattern.

    Args:
        table_ids: Ids of the tables to arrange, in placement order
        spacing_x: Horizontal spacing between tables
        spacing_y: Vertical spacing between tables
        start_x: X coordinate of first table
        start_y: Y coordinate of first table
        columns: Number of columns (auto-calculated if None)

    Returns:
        Mapping of table id to top-left Position
    """
    if not table_ids:
        return {}

    # Auto-calculate columns based on table count
    if columns is None:
        columns = max(3, int(len(table_ids) ** 0.5) + 1)

    positions = {}
    for i, table_id in enumerate(table_ids):
        row = i // columns
        col = i % columns
        positions[table_id] = Position(x=start_x + col * spacing_x, y=start_y + row * spacing_y)

    return positions


def boxes_overlap(
    a: tuple[float, float, float, float], b: tuple[float, float, float, float]
) -> bool:
    """Check whether two (x, y, width, height) boxes overlap."""
    ax, ay, aw, ah = a
    bx, by, bw, bh = b
    return ax < bx + bw and bx < ax + aw and ay < by + bh and by < ay + ah
