"""core data model for warren.

a canvas owns a graph of nodes and edges. nodes and edges are pure graph
shapes; the stored forms add the owning canvas id and timestamps.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import ImportVersionMismatchError


# --- configuration ---

EXPORT_VERSION = "1.0"
SUPPORTED_EXPORT_VERSIONS = (EXPORT_VERSION,)
QUESTION_PREFIX = "question-"
MAIN_NODE_ID = "main"
LOADING_CONTENT = "Loading..."


class NodeType(Enum):
    MAIN = "mainNode"          # answered node: initial search or expanded question
    QUESTION = "questionNode"  # follow-up question from a search response
    DEFAULT = "default"        # question added from the suggestions dialog
    CHAT = "chat"
    NOTE = "note"
    QUERY = "query"
    THOUGHT = "thought"
    REFERENCE = "reference"
    INSIGHT = "insight"


MANUAL_LABELS = {
    NodeType.NOTE: "Untitled Note",
    NodeType.CHAT: "New Chat",
    NodeType.QUERY: "Research Query",
}


def now_ms() -> int:
    """current wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Position:
        if not d:
            return cls()
        return cls(x=d.get("x", 0.0), y=d.get("y", 0.0))


@dataclass
class Source:
    """citation attached to an answer."""

    title: str = ""
    url: str = ""
    author: Optional[str] = None
    uri: Optional[str] = None
    image: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"title": self.title, "url": self.url}
        for key in ("author", "uri", "image"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Source:
        return cls(
            title=d.get("title", ""),
            url=d.get("url", ""),
            author=d.get("author"),
            uri=d.get("uri"),
            image=d.get("image"),
        )


_NODE_DATA_KEYS = {"label", "content", "sources", "images", "isExpanded", "conversationThread"}


@dataclass
class NodeData:
    """payload rendered inside a node."""

    label: str = ""
    content: str = ""
    sources: list[Source] = field(default_factory=list)
    images: list[str] = field(default_factory=list)  # image urls
    is_expanded: bool = False
    conversation_thread: list[dict] = field(default_factory=list)  # chat nodes only
    extra: dict = field(default_factory=dict)  # renderer keys we don't model

    def to_dict(self) -> dict:
        d = dict(self.extra)
        d.update({
            "label": self.label,
            "content": self.content,
            "sources": [s.to_dict() for s in self.sources],
            "images": list(self.images),
            "isExpanded": self.is_expanded,
        })
        if self.conversation_thread:
            d["conversationThread"] = [dict(turn) for turn in self.conversation_thread]
        return d

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> NodeData:
        d = d or {}
        images = []
        for image in d.get("images") or []:
            # search responses carry {url, description}; nodes keep the url only
            images.append(image.get("url", "") if isinstance(image, dict) else str(image))
        return cls(
            label=str(d.get("label") or ""),
            content=str(d.get("content") or ""),
            sources=[Source.from_dict(s) for s in d.get("sources") or []],
            images=images,
            is_expanded=bool(d.get("isExpanded", False)),
            conversation_thread=list(d.get("conversationThread") or []),
            extra={k: v for k, v in d.items() if k not in _NODE_DATA_KEYS},
        )


@dataclass
class Node:
    """single vertex in the exploration graph."""

    id: str
    type: NodeType
    position: Position = field(default_factory=Position)
    data: NodeData = field(default_factory=NodeData)
    source_position: Optional[str] = None  # "left" / "right"
    target_position: Optional[str] = None
    style: dict = field(default_factory=dict)

    @property
    def is_question(self) -> bool:
        """question nodes are recognised by their id namespace."""
        return self.id.startswith(QUESTION_PREFIX)

    @property
    def is_main(self) -> bool:
        return self.type == NodeType.MAIN

    @classmethod
    def create_loading(cls, query: str) -> Node:
        """main node shown while the initial search is running."""
        return cls(
            id=MAIN_NODE_ID,
            type=NodeType.MAIN,
            data=NodeData(label=query, content=LOADING_CONTENT, is_expanded=True),
        )

    @classmethod
    def create_main(
        cls,
        label: str,
        content: str,
        sources: Optional[list[Source]] = None,
        images: Optional[list[str]] = None,
        node_id: str = MAIN_NODE_ID,
    ) -> Node:
        """answered node built from a search response."""
        return cls(
            id=node_id,
            type=NodeType.MAIN,
            data=NodeData(
                label=label,
                content=content,
                sources=list(sources or []),
                images=list(images or []),
                is_expanded=True,
            ),
        )

    @classmethod
    def create_follow_up(cls, parent_id: str, question: str, index: int) -> Node:
        """follow-up question suggested by a search response."""
        return cls(
            id=f"{QUESTION_PREFIX}{parent_id}-{index}",
            type=NodeType.QUESTION,
            data=NodeData(label=question),
            source_position="right",
            target_position="left",
        )

    @classmethod
    def create_question(cls, question: str, source_id: str) -> Node:
        """question the user picked or typed after dragging out of a node."""
        return cls(
            id=f"{QUESTION_PREFIX}{source_id}-{now_ms()}-{_generate_id()}",
            type=NodeType.DEFAULT,
            data=NodeData(label=question),
        )

    @classmethod
    def create_manual(cls, node_type: NodeType, position: Position) -> Node:
        """blank node placed by the user at a canvas position."""
        return cls(
            id=f"{node_type.value}-{now_ms()}-{_generate_id()}",
            type=node_type,
            position=Position(position.x, position.y),
            data=NodeData(label=MANUAL_LABELS.get(node_type, "New Node")),
        )

    def to_dict(self) -> dict:
        """serialize to dict for json."""
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "position": self.position.to_dict(),
            "data": self.data.to_dict(),
        }
        if self.source_position is not None:
            d["sourcePosition"] = self.source_position
        if self.target_position is not None:
            d["targetPosition"] = self.target_position
        if self.style:
            d["style"] = dict(self.style)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Node:
        """deserialize from dict."""
        return cls(
            id=d["id"],
            type=NodeType(d.get("type") or NodeType.DEFAULT.value),
            position=Position.from_dict(d.get("position")),
            data=NodeData.from_dict(d.get("data")),
            source_position=d.get("sourcePosition"),
            target_position=d.get("targetPosition"),
            style=dict(d.get("style") or {}),
        )


@dataclass
class Edge:
    """directed arc between two nodes of the same canvas."""

    id: str
    source: str
    target: str
    type: str = "smoothstep"
    animated: bool = True
    label: Optional[str] = None
    style: dict = field(default_factory=dict)
    marker_end: Optional[dict] = None

    @classmethod
    def connect(cls, source_id: str, target_id: str) -> Edge:
        """edge from a parent to one of its follow-up questions."""
        return cls(id=f"edge-{source_id}-{target_id}", source=source_id, target=target_id)

    @classmethod
    def create_question_edge(cls, source_id: str, question_id: str) -> Edge:
        return cls(
            id=f"edge-{question_id}",
            source=source_id,
            target=question_id,
            marker_end={"type": "arrowclosed"},
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "animated": self.animated,
        }
        if self.label is not None:
            d["label"] = self.label
        if self.style:
            d["style"] = dict(self.style)
        if self.marker_end is not None:
            d["markerEnd"] = dict(self.marker_end)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Edge:
        return cls(
            id=d["id"],
            source=d["source"],
            target=d["target"],
            type=d.get("type") or "smoothstep",
            animated=bool(d.get("animated", True)),
            label=d.get("label"),
            style=dict(d.get("style") or {}),
            marker_end=d.get("markerEnd"),
        )


_STORAGE_KEYS = ("canvasId", "createdAt", "updatedAt")


@dataclass
class StoredNode:
    """node as persisted: graph shape plus owning canvas and timestamps."""

    node: Node
    canvas_id: str
    created_at: int
    updated_at: int

    def to_dict(self) -> dict:
        d = self.node.to_dict()
        d.update({"canvasId": self.canvas_id, "createdAt": self.created_at, "updatedAt": self.updated_at})
        return d

    @classmethod
    def from_dict(cls, d: dict) -> StoredNode:
        shape = {k: v for k, v in d.items() if k not in _STORAGE_KEYS}
        return cls(
            node=Node.from_dict(shape),
            canvas_id=d["canvasId"],
            created_at=d.get("createdAt", 0),
            updated_at=d.get("updatedAt", 0),
        )


@dataclass
class StoredEdge:
    """edge as persisted."""

    edge: Edge
    canvas_id: str
    created_at: int
    updated_at: int

    def to_dict(self) -> dict:
        d = self.edge.to_dict()
        d.update({"canvasId": self.canvas_id, "createdAt": self.created_at, "updatedAt": self.updated_at})
        return d

    @classmethod
    def from_dict(cls, d: dict) -> StoredEdge:
        shape = {k: v for k, v in d.items() if k not in _STORAGE_KEYS}
        return cls(
            edge=Edge.from_dict(shape),
            canvas_id=d["canvasId"],
            created_at=d.get("createdAt", 0),
            updated_at=d.get("updatedAt", 0),
        )


@dataclass
class Canvas:
    """named workspace owning a graph."""

    id: str
    name: str
    description: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    thumbnail: Optional[str] = None  # base64 image
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.description is not None:
            d["description"] = self.description
        if self.thumbnail is not None:
            d["thumbnail"] = self.thumbnail
        if self.metadata is not None:
            d["metadata"] = dict(self.metadata)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Canvas:
        return cls(
            id=d["id"],
            name=d["name"],
            description=d.get("description"),
            created_at=d.get("createdAt", 0),
            updated_at=d.get("updatedAt", 0),
            thumbnail=d.get("thumbnail"),
            metadata=d.get("metadata"),
        )


@dataclass
class Setting:
    """process-wide key/value preference."""

    key: str
    value: Any
    updated_at: int = 0

    def to_dict(self) -> dict:
        return {"key": self.key, "value": self.value, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, d: dict) -> Setting:
        return cls(key=d["key"], value=d.get("value"), updated_at=d.get("updatedAt", 0))


@dataclass
class ConversationMessage:
    """one turn of exploration context. never persisted."""

    user: Optional[str] = None
    assistant: Optional[str] = None

    @classmethod
    def from_node(cls, node: Node) -> ConversationMessage:
        return cls(user=node.data.label, assistant=node.data.content)

    def to_chat_turns(self) -> list[dict]:
        """flatten to role/content pairs for the suggestions contract."""
        return [
            {"role": "user", "content": self.user or ""},
            {"role": "assistant", "content": self.assistant or ""},
        ]

    def to_dict(self) -> dict:
        d = {}
        if self.user is not None:
            d["user"] = self.user
        if self.assistant is not None:
            d["assistant"] = self.assistant
        return d

    @classmethod
    def from_dict(cls, d: dict) -> ConversationMessage:
        return cls(user=d.get("user"), assistant=d.get("assistant"))


@dataclass
class CanvasState:
    """a canvas together with its graph, as handed to callers."""

    canvas: Canvas
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "canvas": self.canvas.to_dict(),
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


def check_export_version(version: Optional[str]) -> str:
    """return the payload version or raise if this build can't read it."""
    if version not in SUPPORTED_EXPORT_VERSIONS:
        raise ImportVersionMismatchError(version, SUPPORTED_EXPORT_VERSIONS)
    return version


@dataclass
class CanvasExport:
    """single canvas snapshot for backup or sharing."""

    canvas: Canvas
    nodes: list[StoredNode] = field(default_factory=list)
    edges: list[StoredEdge] = field(default_factory=list)
    exported_at: int = 0
    version: str = EXPORT_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "canvas": self.canvas.to_dict(),
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "exportedAt": self.exported_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CanvasExport:
        version = check_export_version(d.get("version"))
        return cls(
            version=version,
            canvas=Canvas.from_dict(d["canvas"]),
            nodes=[StoredNode.from_dict(n) for n in d.get("nodes", [])],
            edges=[StoredEdge.from_dict(e) for e in d.get("edges", [])],
            exported_at=d.get("exportedAt", 0),
        )


@dataclass
class DatabaseExport:
    """whole-store snapshot."""

    canvases: list[Canvas] = field(default_factory=list)
    nodes: list[StoredNode] = field(default_factory=list)
    edges: list[StoredEdge] = field(default_factory=list)
    settings: list[Setting] = field(default_factory=list)
    exported_at: int = 0
    version: str = EXPORT_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "canvases": [c.to_dict() for c in self.canvases],
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "settings": [s.to_dict() for s in self.settings],
            "exportedAt": self.exported_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> DatabaseExport:
        version = check_export_version(d.get("version"))
        return cls(
            version=version,
            canvases=[Canvas.from_dict(c) for c in d.get("canvases", [])],
            nodes=[StoredNode.from_dict(n) for n in d.get("nodes", [])],
            edges=[StoredEdge.from_dict(e) for e in d.get("edges", [])],
            settings=[Setting.from_dict(s) for s in d.get("settings", [])],
            exported_at=d.get("exportedAt", 0),
        )


def _generate_id() -> str:
    """generate a short unique id."""
    return uuid.uuid4().hex[:8]
