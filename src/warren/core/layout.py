"""layered left-to-right graph layout.

a small sugiyama pipeline on networkx:
    1. break cycles by reversing dfs back edges
    2. rank nodes by longest path from the roots
    3. split long edges with dummy nodes
    4. order each rank by barycenter sweeps, keeping the fewest crossings
    5. x per rank, y per order, pulled toward the median predecessor

positions are top-left corners, like the renderer expects.
"""

from __future__ import annotations

import dataclasses
import logging
from statistics import median
from typing import Iterable, Mapping, Optional, Union

import networkx as nx

from .models import Edge, Node, NodeType, Position

logger = logging.getLogger(__name__)


# --- configuration ---

MAIN_NODE_SIZE = (600, 500)
NODE_SIZE = (300, 100)

NODESEP = 100
RANKSEP = 100
MARGINX = 200
MARGINY = 100
# roomier spacing once any answer is expanded
EXPANDED_RANKSEP = 200
EXPANDED_MARGINY = 200

ORDER_SWEEPS = 4


def node_size(node: Node) -> tuple[int, int]:
    """(width, height) of a node on screen."""
    return MAIN_NODE_SIZE if node.type == NodeType.MAIN else NODE_SIZE


def has_expanded_main(nodes: Iterable[Node]) -> bool:
    return any(n.type == NodeType.MAIN and n.data.is_expanded for n in nodes)


class LayoutEngine:
    """deterministic layered layout. the same input always gives the same output."""

    def __init__(
        self,
        nodesep: int = NODESEP,
        ranksep: int = RANKSEP,
        marginx: int = MARGINX,
        marginy: int = MARGINY,
        expanded_ranksep: int = EXPANDED_RANKSEP,
        expanded_marginy: int = EXPANDED_MARGINY,
    ):
        self.nodesep = nodesep
        self.ranksep = ranksep
        self.marginx = marginx
        self.marginy = marginy
        self.expanded_ranksep = expanded_ranksep
        self.expanded_marginy = expanded_marginy

    def layout(self, nodes: list[Node], edges: list[Edge]) -> list[Node]:
        """full relayout. returns new nodes in input order."""
        if not nodes:
            return []
        positions = self._positions(nodes, edges)
        return [_placed(n, positions[n.id]) for n in nodes]

    def arrange(
        self,
        nodes: list[Node],
        edges: list[Edge],
        previous: Union[Iterable[Node], Mapping[str, Position], None] = None,
    ) -> list[Node]:
        """incremental layout: nodes seen before stay where they were.

        new nodes are placed next to an already placed predecessor, at the
        same offset the full layout would give them, then pushed down until
        they overlap nothing.
        """
        if not nodes:
            return []
        if previous is None:
            known: dict[str, Position] = {}
        elif isinstance(previous, Mapping):
            known = dict(previous)
        else:
            known = {n.id: n.position for n in previous}

        current = {n.id for n in nodes}
        placed = {nid: pos for nid, pos in known.items() if nid in current}
        if len(placed) == len(nodes):
            return [_placed(n, placed[n.id]) for n in nodes]

        ideal = self._positions(nodes, edges)
        sizes = {n.id: node_size(n) for n in nodes}
        by_id = {n.id: n for n in nodes}

        for node in nodes:
            if node.id in placed:
                continue
            anchor = next(
                (e.source for e in edges if e.target == node.id and e.source in placed),
                None,
            )
            if anchor is not None:
                x = placed[anchor].x + ideal[node.id].x - ideal[anchor].x
                y = placed[anchor].y + ideal[node.id].y - ideal[anchor].y
            else:
                x, y = ideal[node.id].x, ideal[node.id].y
            y = self._nudge(x, y, sizes[node.id], placed, sizes)
            placed[node.id] = Position(x, y)
            logger.debug("placed %s at (%s, %s) near %s", node.id, x, y, anchor)

        return [_placed(by_id[n.id], placed[n.id]) for n in nodes]

    # --- pipeline ---

    def _positions(self, nodes: list[Node], edges: list[Edge]) -> dict[str, Position]:
        expanded = has_expanded_main(nodes)
        ranksep = self.expanded_ranksep if expanded else self.ranksep
        marginy = self.expanded_marginy if expanded else self.marginy

        graph = _build_graph(nodes, edges)
        _break_cycles(graph)
        rank = _rank(graph)
        layered, sizes = _split_long_edges(graph, rank, {n.id: node_size(n) for n in nodes})
        layers = _order(layered, rank)

        # x: ranks are columns, each as wide as its widest node
        widths = [max((sizes[n][0] for n in layer), default=0) for layer in layers]
        lefts, x = [], self.marginx
        for width in widths:
            lefts.append(x)
            x += width + ranksep

        # y: stack each column, pulled toward the median of predecessors
        centers: dict[str, float] = {}
        for layer in layers:
            bottom: Optional[float] = None
            for n in layer:
                half = sizes[n][1] / 2
                preds = [centers[p] for p in layered.predecessors(n) if p in centers]
                want = median(preds) if preds else None
                floor = bottom + self.nodesep + half if bottom is not None else None
                if want is None:
                    center = floor if floor is not None else half
                else:
                    center = max(want, floor) if floor is not None else want
                centers[n] = center
                bottom = center + half

        top = min(centers[n] - sizes[n][1] / 2 for n in centers)
        shift = marginy - top

        positions = {}
        for r, layer in enumerate(layers):
            for n in layer:
                if n not in graph:
                    continue  # dummy
                width, height = sizes[n]
                positions[n] = Position(
                    x=lefts[r] + (widths[r] - width) / 2,
                    y=centers[n] + shift - height / 2,
                )
        return positions

    def _nudge(
        self,
        x: float,
        y: float,
        size: tuple[int, int],
        placed: dict[str, Position],
        sizes: dict[str, tuple[int, int]],
    ) -> float:
        width, height = size
        while True:
            blockers = [
                placed[other].y + sizes[other][1]
                for other in placed
                if _overlaps((x, y, width, height), (placed[other].x, placed[other].y, *sizes[other]))
            ]
            if not blockers:
                return y
            y = max(blockers) + self.nodesep


_default_engine = LayoutEngine()


def layout(nodes: list[Node], edges: list[Edge]) -> list[Node]:
    """full relayout with the default spacing."""
    return _default_engine.layout(nodes, edges)


def arrange(
    nodes: list[Node],
    edges: list[Edge],
    previous: Union[Iterable[Node], Mapping[str, Position], None] = None,
) -> list[Node]:
    """incremental layout with the default spacing."""
    return _default_engine.arrange(nodes, edges, previous)


# --- stages ---


def _build_graph(nodes: list[Node], edges: list[Edge]) -> nx.DiGraph:
    graph = nx.DiGraph()
    graph.add_nodes_from(n.id for n in nodes)
    for edge in edges:
        if edge.source == edge.target:
            continue
        if edge.source not in graph or edge.target not in graph:
            logger.debug("layout ignores dangling edge %s", edge.id)
            continue
        graph.add_edge(edge.source, edge.target)
    return graph


def _break_cycles(graph: nx.DiGraph) -> list[tuple[str, str]]:
    """reverse every dfs back edge so the graph becomes acyclic."""
    back_edges = []
    state: dict[str, int] = {}  # 1 = on the stack, 2 = finished
    for root in list(graph.nodes):
        if root in state:
            continue
        state[root] = 1
        stack = [(root, iter(list(graph.successors(root))))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                state[node] = 2
                stack.pop()
            elif child not in state:
                state[child] = 1
                stack.append((child, iter(list(graph.successors(child)))))
            elif state[child] == 1:
                back_edges.append((node, child))

    for u, v in back_edges:
        graph.remove_edge(u, v)
        if not graph.has_edge(v, u):
            graph.add_edge(v, u)
    return back_edges


def _rank(graph: nx.DiGraph) -> dict[str, int]:
    """longest path from the roots."""
    rank = {}
    for r, generation in enumerate(nx.topological_generations(graph)):
        for n in generation:
            rank[n] = r
    return rank


def _split_long_edges(
    graph: nx.DiGraph,
    rank: dict[str, int],
    sizes: dict[str, tuple[int, int]],
) -> tuple[nx.DiGraph, dict[str, tuple[int, int]]]:
    """copy of graph where every edge spans exactly one rank."""
    layered = nx.DiGraph()
    layered.add_nodes_from(graph.nodes)
    sizes = dict(sizes)
    for u, v in graph.edges:
        prev = u
        for r in range(rank[u] + 1, rank[v]):
            dummy = f"\0{u}\0{v}\0{r}"
            rank[dummy] = r
            sizes[dummy] = (0, 0)
            layered.add_edge(prev, dummy)
            prev = dummy
        layered.add_edge(prev, v)
    return layered, sizes


def _order(graph: nx.DiGraph, rank: dict[str, int]) -> list[list[str]]:
    """order nodes within ranks to reduce edge crossings."""
    layers: list[list[str]] = [[] for _ in range(max(rank[n] for n in graph) + 1)]
    for n in graph:
        layers[rank[n]].append(n)

    best = [list(layer) for layer in layers]
    best_crossings = _crossings(graph, best)
    for i in range(ORDER_SWEEPS):
        if best_crossings == 0:
            break
        _sweep(graph, layers, downward=(i % 2 == 0))
        crossings = _crossings(graph, layers)
        if crossings < best_crossings:
            best = [list(layer) for layer in layers]
            best_crossings = crossings
    return best


def _sweep(graph: nx.DiGraph, layers: list[list[str]], downward: bool) -> None:
    indices = range(1, len(layers)) if downward else range(len(layers) - 2, -1, -1)
    for i in indices:
        fixed = layers[i - 1] if downward else layers[i + 1]
        pos = {n: k for k, n in enumerate(fixed)}

        def barycenter(item: tuple[int, str]) -> tuple[float, int]:
            k, n = item
            neighbours = graph.predecessors(n) if downward else graph.successors(n)
            ps = [pos[m] for m in neighbours if m in pos]
            return (sum(ps) / len(ps) if ps else k, k)

        layers[i] = [n for _, n in sorted(enumerate(layers[i]), key=barycenter)]


def _crossings(graph: nx.DiGraph, layers: list[list[str]]) -> int:
    total = 0
    for upper, lower in zip(layers, layers[1:]):
        pos = {n: k for k, n in enumerate(lower)}
        segments = [
            (i, pos[v]) for i, u in enumerate(upper) for v in graph.successors(u) if v in pos
        ]
        for a, (u1, v1) in enumerate(segments):
            for u2, v2 in segments[a + 1:]:
                if (u1 - u2) * (v1 - v2) < 0:
                    total += 1
    return total


def _overlaps(a: tuple, b: tuple) -> bool:
    ax, ay, aw, ah = a
    bx, by, bw, bh = b
    return ax < bx + bw and bx < ax + aw and ay < by + bh and by < ay + ah


def _placed(node: Node, position: Position) -> Node:
    return dataclasses.replace(
        node,
        position=Position(position.x, position.y),
        source_position="right",
        target_position="left",
    )
