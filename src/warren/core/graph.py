"""in-memory graph of the open canvas.

the ui-side source of truth: exploration and the session mutate it, the
autosave scheduler watches it. every mutation swaps whole node objects
rather than editing them in place, then notifies subscribers.
"""

from __future__ import annotations

import copy
from typing import Callable, Iterable, Optional

from .models import Edge, Node


Listener = Callable[[list[Node], list[Edge]], None]


class Graph:
    """ordered nodes and edges with change notification."""

    def __init__(self, nodes: Optional[Iterable[Node]] = None, edges: Optional[Iterable[Edge]] = None):
        self.nodes: list[Node] = list(nodes or [])
        self.edges: list[Edge] = list(edges or [])
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """call listener after every mutation. returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def __contains__(self, node_id: str) -> bool:
        return self.node(node_id) is not None

    def __len__(self) -> int:
        return len(self.nodes)

    def parents(self, node_id: str) -> list[Node]:
        """nodes with an edge into node_id, in edge order."""
        ids = [e.source for e in self.edges if e.target == node_id]
        return [n for i in ids if (n := self.node(i)) is not None]

    def set(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> None:
        """replace the whole graph."""
        self.nodes = list(nodes)
        self.edges = list(edges)
        self._notify()

    def set_nodes(self, nodes: Iterable[Node]) -> None:
        self.nodes = list(nodes)
        self._notify()

    def add(self, nodes: Iterable[Node] = (), edges: Iterable[Edge] = ()) -> None:
        self.nodes.extend(nodes)
        self.edges.extend(edges)
        self._notify()

    def replace_node(self, node: Node) -> bool:
        """swap the node with the same id. False if it is no longer present."""
        for i, existing in enumerate(self.nodes):
            if existing.id == node.id:
                self.nodes[i] = node
                self._notify()
                return True
        return False

    def clear(self) -> None:
        self.set([], [])

    def snapshot(self) -> tuple[list[Node], list[Edge]]:
        """deep copies, safe to hold across later mutations."""
        return copy.deepcopy(self.nodes), copy.deepcopy(self.edges)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self.nodes, self.edges)
