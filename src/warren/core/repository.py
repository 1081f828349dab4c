"""canvas repository: typed crud over the store plus the integrity rules.

every node and edge belongs to exactly one existing canvas, and every edge
joins two nodes of that canvas. the composite operations here (cascade
delete, duplicate, replace-on-save, import) each run in one store
transaction so a failure never leaves half a canvas behind.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional, Union

from .errors import NotFoundError
from .models import (
    Canvas,
    CanvasExport,
    CanvasState,
    DatabaseExport,
    Edge,
    Node,
    Setting,
    StoredEdge,
    StoredNode,
    _generate_id,
    check_export_version,
    now_ms,
)
from .store import Store, Transaction

logger = logging.getLogger(__name__)

GRAPH = ("canvases", "nodes", "edges")
EVERYTHING = ("canvases", "nodes", "edges", "settings")

UPDATABLE_FIELDS = {"name", "description", "thumbnail", "metadata"}


class CanvasRepository:
    """canvas, node, edge and settings operations on top of a Store."""

    def __init__(self, store: Store, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock

    # --- canvases ---

    async def create_canvas(self, name: str, description: Optional[str] = None) -> Canvas:
        async with self.store.transaction("canvases") as tx:
            now = self.clock()
            canvas = Canvas(
                id=await self._new_canvas_id(tx),
                name=name,
                description=description,
                created_at=now,
                updated_at=now,
            )
            await tx.canvases.put(canvas.to_dict())
        logger.debug("created canvas %s (%s)", canvas.id, name)
        return canvas

    async def get_canvas(self, canvas_id: str) -> Optional[Canvas]:
        async with self.store.transaction("canvases", mode="r") as tx:
            record = await tx.canvases.get(canvas_id)
        return Canvas.from_dict(record) if record else None

    async def get_all_canvases(self) -> list[Canvas]:
        """most recently updated first."""
        async with self.store.transaction("canvases", mode="r") as tx:
            records = await tx.canvases.all(order_by=("updatedAt", "createdAt"), reverse=True)
        return [Canvas.from_dict(r) for r in records]

    async def update_canvas(self, canvas_id: str, **fields: Any) -> Canvas:
        """merge name / description / thumbnail / metadata and bump updated_at."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update canvas field(s): {', '.join(sorted(unknown))}")

        async with self.store.transaction("canvases") as tx:
            canvas = await self._require_canvas(tx, canvas_id)
            for key, value in fields.items():
                setattr(canvas, key, value)
            canvas.updated_at = max(self.clock(), canvas.updated_at)
            await tx.canvases.put(canvas.to_dict())
        return canvas

    async def delete_canvas(self, canvas_id: str) -> None:
        """delete a canvas and everything it owns."""
        async with self.store.transaction(*GRAPH) as tx:
            await self._require_canvas(tx, canvas_id)
            nodes = await tx.nodes.delete_where("canvasId", canvas_id)
            edges = await tx.edges.delete_where("canvasId", canvas_id)
            await tx.canvases.delete(canvas_id)
        logger.debug("deleted canvas %s (%d nodes, %d edges)", canvas_id, nodes, edges)

    async def duplicate_canvas(self, canvas_id: str, new_name: Optional[str] = None) -> Canvas:
        """copy a canvas with its graph. node and edge ids are kept."""
        async with self.store.transaction(*GRAPH) as tx:
            source = await self._require_canvas(tx, canvas_id)
            now = self.clock()
            copy = Canvas(
                id=await self._new_canvas_id(tx),
                name=new_name or f"{source.name} (Copy)",
                description=source.description,
                created_at=now,
                updated_at=now,
            )
            await tx.canvases.put(copy.to_dict())
            nodes = await tx.nodes.where("canvasId", canvas_id)
            edges = await tx.edges.where("canvasId", canvas_id)
            await tx.nodes.bulk_put(_rebind(r, copy.id, now) for r in nodes)
            await tx.edges.bulk_put(_rebind(r, copy.id, now) for r in edges)
        return copy

    # --- nodes ---

    async def save_node(self, canvas_id: str, node: Node) -> StoredNode:
        stored = await self.save_nodes(canvas_id, [node])
        return stored[0]

    async def save_nodes(self, canvas_id: str, nodes: Iterable[Node]) -> list[StoredNode]:
        """upsert nodes into a canvas, keeping existing created_at."""
        async with self.store.transaction("canvases", "nodes") as tx:
            await self._require_canvas(tx, canvas_id)
            now = self.clock()
            stored = []
            for node in nodes:
                existing = await tx.nodes.get((canvas_id, node.id))
                created = existing["createdAt"] if existing else now
                stored.append(StoredNode(node, canvas_id, created, now))
            await tx.nodes.bulk_put(s.to_dict() for s in stored)
            await self._touch(tx, canvas_id, now)
        return stored

    async def get_canvas_nodes(self, canvas_id: str) -> list[Node]:
        async with self.store.transaction("nodes", mode="r") as tx:
            records = await tx.nodes.where("canvasId", canvas_id)
        return [StoredNode.from_dict(r).node for r in records]

    async def delete_node(self, canvas_id: str, node_id: str) -> bool:
        """delete a node and every edge touching it."""
        async with self.store.transaction(*GRAPH) as tx:
            await self._require_canvas(tx, canvas_id)
            removed = await tx.nodes.delete((canvas_id, node_id))
            await tx.edges.delete_where(("canvasId", "source"), (canvas_id, node_id))
            await tx.edges.delete_where(("canvasId", "target"), (canvas_id, node_id))
            await self._touch(tx, canvas_id)
        return removed

    # --- edges ---

    async def save_edge(self, canvas_id: str, edge: Edge) -> StoredEdge:
        stored = await self.save_edges(canvas_id, [edge])
        return stored[0]

    async def save_edges(self, canvas_id: str, edges: Iterable[Edge]) -> list[StoredEdge]:
        """upsert edges. both endpoints must already exist in the canvas."""
        async with self.store.transaction(*GRAPH) as tx:
            await self._require_canvas(tx, canvas_id)
            now = self.clock()
            stored = []
            for edge in edges:
                for endpoint in (edge.source, edge.target):
                    if await tx.nodes.get((canvas_id, endpoint)) is None:
                        raise NotFoundError(
                            f"edge {edge.id}: node {endpoint} not found in canvas {canvas_id}"
                        )
                existing = await tx.edges.get((canvas_id, edge.id))
                created = existing["createdAt"] if existing else now
                stored.append(StoredEdge(edge, canvas_id, created, now))
            await tx.edges.bulk_put(s.to_dict() for s in stored)
            await self._touch(tx, canvas_id, now)
        return stored

    async def get_canvas_edges(self, canvas_id: str) -> list[Edge]:
        async with self.store.transaction("edges", mode="r") as tx:
            records = await tx.edges.where("canvasId", canvas_id)
        return [StoredEdge.from_dict(r).edge for r in records]

    async def delete_edge(self, canvas_id: str, edge_id: str) -> bool:
        async with self.store.transaction("canvases", "edges") as tx:
            await self._require_canvas(tx, canvas_id)
            removed = await tx.edges.delete((canvas_id, edge_id))
            await self._touch(tx, canvas_id)
        return removed

    # --- whole graph ---

    async def save_canvas_state(self, canvas_id: str, nodes: list[Node], edges: list[Edge]) -> None:
        """replace the canvas graph with exactly these nodes and edges."""
        async with self.store.transaction(*GRAPH) as tx:
            await self._require_canvas(tx, canvas_id)
            now = self.clock()

            created_nodes = {r["id"]: r["createdAt"] for r in await tx.nodes.where("canvasId", canvas_id)}
            created_edges = {r["id"]: r["createdAt"] for r in await tx.edges.where("canvasId", canvas_id)}

            kept_edges = _connected(edges, {n.id for n in nodes}, canvas_id)

            await tx.nodes.delete_where("canvasId", canvas_id)
            await tx.edges.delete_where("canvasId", canvas_id)
            await tx.nodes.bulk_put(
                StoredNode(n, canvas_id, created_nodes.get(n.id, now), now).to_dict() for n in nodes
            )
            await tx.edges.bulk_put(
                StoredEdge(e, canvas_id, created_edges.get(e.id, now), now).to_dict() for e in kept_edges
            )
            await self._touch(tx, canvas_id, now)
        logger.debug("saved canvas %s: %d nodes, %d edges", canvas_id, len(nodes), len(kept_edges))

    async def load_canvas_state(self, canvas_id: str) -> CanvasState:
        async with self.store.transaction(*GRAPH, mode="r") as tx:
            canvas = await self._require_canvas(tx, canvas_id)
            nodes = await tx.nodes.where("canvasId", canvas_id)
            edges = await tx.edges.where("canvasId", canvas_id)
        return CanvasState(
            canvas=canvas,
            nodes=[StoredNode.from_dict(r).node for r in nodes],
            edges=[StoredEdge.from_dict(r).edge for r in edges],
        )

    # --- settings ---

    async def get_setting(self, key: str, default: Any = None) -> Any:
        async with self.store.transaction("settings", mode="r") as tx:
            record = await tx.settings.get(key)
        return record["value"] if record else default

    async def set_setting(self, key: str, value: Any) -> Setting:
        setting = Setting(key=key, value=value, updated_at=self.clock())
        async with self.store.transaction("settings") as tx:
            await tx.settings.put(setting.to_dict())
        return setting

    async def delete_setting(self, key: str) -> bool:
        async with self.store.transaction("settings") as tx:
            return await tx.settings.delete(key)

    async def get_all_settings(self) -> dict[str, Any]:
        async with self.store.transaction("settings", mode="r") as tx:
            records = await tx.settings.all()
        return {r["key"]: r["value"] for r in records}

    # --- import / export ---

    async def export_canvas(self, canvas_id: str) -> CanvasExport:
        async with self.store.transaction(*GRAPH, mode="r") as tx:
            canvas = await self._require_canvas(tx, canvas_id)
            nodes = await tx.nodes.where("canvasId", canvas_id)
            edges = await tx.edges.where("canvasId", canvas_id)
        return CanvasExport(
            canvas=canvas,
            nodes=[StoredNode.from_dict(r) for r in nodes],
            edges=[StoredEdge.from_dict(r) for r in edges],
            exported_at=self.clock(),
        )

    async def import_canvas(self, data: Union[CanvasExport, dict]) -> Canvas:
        """import a canvas export as a brand new canvas."""
        if isinstance(data, CanvasExport):
            check_export_version(data.version)
            export = data
        else:
            export = CanvasExport.from_dict(data)

        async with self.store.transaction(*GRAPH) as tx:
            now = self.clock()
            canvas = Canvas(
                id=await self._new_canvas_id(tx),
                name=f"{export.canvas.name} (Imported)",
                description=export.canvas.description,
                created_at=now,
                updated_at=now,
                metadata=export.canvas.metadata,
            )
            await tx.canvases.put(canvas.to_dict())
            await tx.nodes.bulk_put(
                StoredNode(n.node, canvas.id, now, now).to_dict() for n in export.nodes
            )
            edges = _connected([e.edge for e in export.edges], {n.node.id for n in export.nodes}, canvas.id)
            await tx.edges.bulk_put(StoredEdge(e, canvas.id, now, now).to_dict() for e in edges)
        logger.debug("imported canvas %s as %s", export.canvas.id, canvas.id)
        return canvas

    async def export_database(self) -> DatabaseExport:
        async with self.store.transaction(*EVERYTHING, mode="r") as tx:
            canvases = await tx.canvases.all()
            nodes = await tx.nodes.all()
            edges = await tx.edges.all()
            settings = await tx.settings.all()
        return DatabaseExport(
            canvases=[Canvas.from_dict(r) for r in canvases],
            nodes=[StoredNode.from_dict(r) for r in nodes],
            edges=[StoredEdge.from_dict(r) for r in edges],
            settings=[Setting.from_dict(r) for r in settings],
            exported_at=self.clock(),
        )

    async def import_database(self, data: Union[DatabaseExport, dict], merge: bool = False) -> None:
        """load a database export. without merge, everything is replaced.

        the result is checked for orphans before commit; any orphan aborts
        the whole import with NotFoundError.
        """
        if isinstance(data, DatabaseExport):
            check_export_version(data.version)
            export = data
        else:
            export = DatabaseExport.from_dict(data)

        async with self.store.transaction(*EVERYTHING) as tx:
            if not merge:
                for name in EVERYTHING:
                    await tx[name].clear()
            await tx.canvases.bulk_put(c.to_dict() for c in export.canvases)
            await tx.nodes.bulk_put(n.to_dict() for n in export.nodes)
            await tx.edges.bulk_put(e.to_dict() for e in export.edges)
            await tx.settings.bulk_put(s.to_dict() for s in export.settings)
            await self._check_integrity(tx)
        logger.info(
            "imported database (%s): %d canvases, %d nodes, %d edges",
            "merge" if merge else "replace",
            len(export.canvases), len(export.nodes), len(export.edges),
        )

    async def clear_database(self) -> None:
        async with self.store.transaction(*EVERYTHING) as tx:
            for name in EVERYTHING:
                await tx[name].clear()

    async def get_database_info(self) -> dict:
        return await self.store.info()

    # --- helpers ---

    async def _require_canvas(self, tx: Transaction, canvas_id: str) -> Canvas:
        record = await tx.canvases.get(canvas_id)
        if record is None:
            raise NotFoundError(f"canvas {canvas_id} not found")
        return Canvas.from_dict(record)

    async def _touch(self, tx: Transaction, canvas_id: str, now: Optional[int] = None) -> None:
        canvas = await self._require_canvas(tx, canvas_id)
        canvas.updated_at = max(now if now is not None else self.clock(), canvas.updated_at)
        await tx.canvases.put(canvas.to_dict())

    async def _new_canvas_id(self, tx: Transaction) -> str:
        while True:
            canvas_id = f"canvas_{self.clock()}_{_generate_id()}"
            if await tx.canvases.get(canvas_id) is None:
                return canvas_id

    async def _check_integrity(self, tx: Transaction) -> None:
        canvas_ids = {r["id"] for r in await tx.canvases.all()}
        node_keys = set()
        for record in await tx.nodes.all():
            if record["canvasId"] not in canvas_ids:
                raise NotFoundError(f"node {record['id']} references missing canvas {record['canvasId']}")
            node_keys.add((record["canvasId"], record["id"]))
        for record in await tx.edges.all():
            canvas_id = record["canvasId"]
            if canvas_id not in canvas_ids:
                raise NotFoundError(f"edge {record['id']} references missing canvas {canvas_id}")
            for endpoint in (record["source"], record["target"]):
                if (canvas_id, endpoint) not in node_keys:
                    raise NotFoundError(f"edge {record['id']} references missing node {endpoint}")


def _rebind(record: dict, canvas_id: str, now: int) -> dict:
    copy = dict(record)
    copy.update({"canvasId": canvas_id, "createdAt": now, "updatedAt": now})
    return copy


def _connected(edges: Iterable[Edge], node_ids: set[str], canvas_id: str) -> list[Edge]:
    """edges whose endpoints are both in node_ids; the rest are logged and dropped."""
    kept = []
    for edge in edges:
        if edge.source in node_ids and edge.target in node_ids:
            kept.append(edge)
        else:
            logger.warning(
                "dropping dangling edge %s (%s -> %s) on canvas %s",
                edge.id, edge.source, edge.target, canvas_id,
            )
    return kept
