"""canvas session: the open canvas and everything attached to it.

wires the in-memory graph to autosave, exploration and layout, and exposes
the callbacks a frontend drives (search, node clicks, drag-to-connect,
manual node creation). one session per frontend.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from .autosave import DEFAULT_DEBOUNCE_MS, AutosaveScheduler
from .client import ClientProtocol, SearchRequest, SuggestionsRequest
from .errors import NotFoundError
from .exploration import ExpansionOutcome, ExplorationMachine, ExplorationMode
from .graph import Graph
from .layout import LayoutEngine
from .models import Canvas, CanvasState, ConversationMessage, Edge, Node, NodeType, Position
from .repository import CanvasRepository
from .response_format import MAX_SUGGESTIONS

logger = logging.getLogger(__name__)


# --- configuration ---

CURRENT_CANVAS_SETTING = "currentCanvasId"
CANVAS_NAME_LENGTH = 50
FOLLOW_UP_EDGE_STYLE = {"stroke": "rgba(255, 255, 255, 0.3)"}


class CanvasSession:
    """one open canvas with autosave, exploration and layout."""

    def __init__(
        self,
        repository: CanvasRepository,
        client: ClientProtocol,
        layout_engine: Optional[LayoutEngine] = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        autosave: bool = True,
        mode: ExplorationMode = ExplorationMode.HYBRID,
    ):
        self.repository = repository
        self.client = client
        self.layout_engine = layout_engine or LayoutEngine()
        self.debounce_ms = debounce_ms
        self.autosave_enabled = autosave

        self.graph = Graph()
        self.exploration = ExplorationMachine(self.graph, client, self.layout_engine, mode)
        self.canvas: Optional[Canvas] = None
        self.autosave: Optional[AutosaveScheduler] = None
        self.connect_source: Optional[str] = None  # node a connection was dragged from

        self.graph.subscribe(self._on_graph_change)

    @property
    def canvas_id(self) -> Optional[str]:
        return self.canvas.id if self.canvas else None

    @property
    def history(self) -> list[ConversationMessage]:
        return self.exploration.history

    @property
    def mode(self) -> ExplorationMode:
        return self.exploration.mode

    @mode.setter
    def mode(self, mode: ExplorationMode) -> None:
        self.exploration.mode = mode

    def status(self) -> dict:
        return {
            "canvas": self.canvas.to_dict() if self.canvas else None,
            "nodes": len(self.graph.nodes),
            "edges": len(self.graph.edges),
            "mode": self.mode.value,
            "in_flight": self.exploration.in_flight,
            "history": len(self.history),
            "autosave": self.autosave.state.value if self.autosave else None,
            "last_saved": self.autosave.last_saved if self.autosave else None,
        }

    # --- canvas lifecycle ---

    async def restore(self) -> Optional[CanvasState]:
        """reopen the canvas that was open last time, if it still exists."""
        canvas_id = await self.repository.get_setting(CURRENT_CANVAS_SETTING)
        if not canvas_id:
            return None
        try:
            return await self.load_canvas(canvas_id)
        except NotFoundError:
            logger.info("last open canvas %s no longer exists", canvas_id)
            await self.repository.delete_setting(CURRENT_CANVAS_SETTING)
            return None

    async def new_canvas(self) -> None:
        """close the current canvas and start from an empty graph."""
        await self._teardown()
        self.canvas = None
        self.graph.clear()
        await self.repository.delete_setting(CURRENT_CANVAS_SETTING)

    async def load_canvas(self, canvas_id: str) -> CanvasState:
        state = await self.repository.load_canvas_state(canvas_id)
        await self._teardown()

        self.canvas = state.canvas
        self.graph.set(self.layout_engine.layout(state.nodes, state.edges), state.edges)
        self._start_autosave(initial=True)
        await self.repository.set_setting(CURRENT_CANVAS_SETTING, canvas_id)
        logger.info("loaded canvas %s (%d nodes)", canvas_id, len(state.nodes))
        return CanvasState(canvas=state.canvas, nodes=list(self.graph.nodes), edges=list(self.graph.edges))

    async def save_as(self, name: str, description: Optional[str] = None) -> Canvas:
        """store the current graph as a new canvas and switch to it."""
        canvas = await self.repository.create_canvas(name, description)
        if self.autosave is not None:
            await self.autosave.close()
            self.autosave = None
        await self.repository.save_canvas_state(canvas.id, self.graph.nodes, self.graph.edges)
        self.canvas = await self.repository.get_canvas(canvas.id) or canvas
        self._start_autosave(initial=True)
        await self.repository.set_setting(CURRENT_CANVAS_SETTING, canvas.id)
        return self.canvas

    async def close(self) -> None:
        await self._teardown()

    # --- exploration ---

    async def search(self, query: str, concept: str = "") -> list[Node]:
        """initial search: a main answer node plus its follow-up questions."""
        query = query.strip()
        if not query:
            raise ValueError("query is empty")

        if self.canvas is None:
            self.canvas = await self.repository.create_canvas(query[:CANVAS_NAME_LENGTH])
            self._start_autosave(initial=False)
            await self.repository.set_setting(CURRENT_CANVAS_SETTING, self.canvas.id)

        self.exploration.cancel_all()
        previous = self.graph.snapshot()
        self.graph.set([Node.create_loading(query)], [])

        request = SearchRequest(
            query=query,
            previous_conversation=list(self.history),
            mode=self.mode.follow_up_mode,
            concept=concept,
        )
        try:
            response = await self.client.search(request)
        except BaseException:
            self.graph.set(*previous)
            raise

        main = Node.create_main(
            label=response.contextual_query or query,
            content=response.response,
            sources=response.sources,
            images=[image.url for image in response.images],
        )
        nodes, edges = [main], []
        for index, question in enumerate(response.follow_up_questions):
            follow_up = Node.create_follow_up(main.id, question, index)
            edge = Edge.connect(main.id, follow_up.id)
            edge.style = dict(FOLLOW_UP_EDGE_STYLE)
            nodes.append(follow_up)
            edges.append(edge)

        self.graph.set(self.layout_engine.layout(nodes, edges), edges)
        return list(self.graph.nodes)

    def on_node_click(self, node_id: str) -> Optional[asyncio.Task]:
        return self.exploration.on_node_click(node_id)

    async def expand(self, node_id: str) -> ExpansionOutcome:
        return await self.exploration.expand(node_id)

    def on_connect_end(self, from_node_id: str) -> Node:
        """a connection drag ended on empty canvas; remember where it started."""
        node = self.graph.node(from_node_id)
        if node is None:
            raise NotFoundError(f"node {from_node_id} not found")
        self.connect_source = node.id
        return node

    async def request_suggestions(self, source_id: Optional[str] = None) -> list[str]:
        """ask the collaborator for follow-up questions. [] on failure."""
        source = self._require_source(source_id)
        turns = [turn for message in self.history for turn in message.to_chat_turns()]
        request = SuggestionsRequest(
            query=source.data.label,
            conversation_history=turns,
            mode=self.mode.follow_up_mode,
        )
        try:
            response = await self.client.suggest(request)
        except Exception:
            logger.exception("suggestions for %s failed", source.id)
            return []
        return response.suggestions[:MAX_SUGGESTIONS]

    async def create_question(self, question: str, source_id: Optional[str] = None) -> Node:
        """add a question node hanging off the drag source."""
        question = question.strip()
        if not question:
            raise ValueError("question is empty")
        source = self._require_source(source_id)
        self.history.append(ConversationMessage.from_node(source))

        node = Node.create_question(question, source.id)
        edge = Edge.create_question_edge(source.id, node.id)
        nodes = self.graph.nodes + [node]
        edges = self.graph.edges + [edge]
        self.graph.set(self.layout_engine.arrange(nodes, edges, previous=self.graph.nodes), edges)
        self.connect_source = None
        return self.graph.node(node.id)

    def on_create_node_at_position(self, node_type: Union[NodeType, str], position: Union[Position, dict]) -> Node:
        """drop a blank node where the user asked. no relayout."""
        if isinstance(node_type, str):
            node_type = NodeType(node_type)
        if isinstance(position, dict):
            position = Position.from_dict(position)
        node = Node.create_manual(node_type, position)
        self.graph.add(nodes=[node])
        return node

    # --- internals ---

    def _require_source(self, source_id: Optional[str]) -> Node:
        node_id = source_id or self.connect_source
        if node_id is None:
            raise NotFoundError("no source node selected")
        node = self.graph.node(node_id)
        if node is None:
            raise NotFoundError(f"node {node_id} not found")
        return node

    def _start_autosave(self, initial: bool) -> None:
        if not self.autosave_enabled or self.canvas is None:
            return
        self.autosave = AutosaveScheduler(
            self.repository,
            self.canvas.id,
            debounce_ms=self.debounce_ms,
            initial=(self.graph.nodes, self.graph.edges) if initial else None,
        )

    def _on_graph_change(self, nodes: list[Node], edges: list[Edge]) -> None:
        if self.autosave is not None:
            self.autosave.observe(nodes, edges)

    async def _teardown(self) -> None:
        self.exploration.reset()
        self.connect_source = None
        if self.autosave is not None:
            autosave, self.autosave = self.autosave, None
            await autosave.close()
