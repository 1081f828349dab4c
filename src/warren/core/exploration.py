"""node exploration: turning a question node into an answered node.

    Collapsed --click--> Expanding --answer--> Expanded
                             |
                             +--error / cancel--> Collapsed

only question nodes (ids starting with "question-") that are not expanded
can be clicked, and only while nothing else is expanding. every request
carries a cancellation token; a response is applied only if its token is
still the node's current one.
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import logging
from enum import Enum
from typing import Optional

from .client import ClientProtocol, SearchRequest, SearchResponse
from .errors import RequestCancelledError
from .graph import Graph
from .layout import LayoutEngine
from .models import LOADING_CONTENT, ConversationMessage, Node, NodeData, NodeType

logger = logging.getLogger(__name__)


class ExplorationMode(Enum):
    MANUAL = "manual"
    GUIDED = "guided"
    HYBRID = "hybrid"
    CLASSIC = "classic"

    @property
    def follow_up_mode(self) -> str:
        """collaborator mode: user-directed modes stay focused."""
        if self in (ExplorationMode.MANUAL, ExplorationMode.GUIDED):
            return "focused"
        return "expansive"


class ExpansionOutcome(Enum):
    REJECTED = "rejected"    # click not admitted
    EXPANDED = "expanded"
    FAILED = "failed"        # reverted to collapsed
    CANCELLED = "cancelled"
    STALE = "stale"          # response arrived for a superseded token


class CancellationToken:
    """marks one in-flight expansion. compared by identity."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        self.task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "live"
        return f"<CancellationToken {self.node_id} {state}>"


class ExplorationMachine:
    """expands question nodes of one graph, one at a time."""

    def __init__(
        self,
        graph: Graph,
        client: ClientProtocol,
        layout_engine: Optional[LayoutEngine] = None,
        mode: ExplorationMode = ExplorationMode.HYBRID,
    ):
        self.graph = graph
        self.client = client
        self.layout_engine = layout_engine or LayoutEngine()
        self.mode = mode
        self.history: list[ConversationMessage] = []
        self._tokens: dict[str, CancellationToken] = {}
        self._snapshots: dict[str, Node] = {}  # pre-click node per expansion

    @property
    def in_flight(self) -> list[str]:
        """ids of nodes currently expanding."""
        return list(self._tokens)

    @property
    def busy(self) -> bool:
        return bool(self._tokens)

    def token_for(self, node_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(node_id)

    def on_node_click(self, node_id: str) -> Optional[asyncio.Task]:
        """start expanding a node. returns the task, or None if rejected.

        the node is already shown as expanding when this returns.
        """
        node = self.graph.node(node_id)
        if node is None or not node.is_question:
            logger.debug("click on %s ignored: not a question node", node_id)
            return None
        if node.data.is_expanded:
            logger.debug("click on %s ignored: already expanded", node_id)
            return None
        if self._tokens:
            logger.debug("click on %s rejected: %s still expanding", node_id, ", ".join(self._tokens))
            return None

        main = self._current_main(node_id)
        if main is not None:
            self.history.append(ConversationMessage.from_node(main))

        token = CancellationToken(node_id)
        self._tokens[node_id] = token
        self._snapshots[node_id] = copy.deepcopy(node)
        self.graph.replace_node(dataclasses.replace(
            node,
            data=dataclasses.replace(node.data, content=LOADING_CONTENT, is_expanded=True),
        ))

        request = SearchRequest(
            query=node.data.label,
            previous_conversation=list(self.history),
            mode=self.mode.follow_up_mode,
        )
        token.task = asyncio.get_running_loop().create_task(self._run(token, request))
        return token.task

    async def expand(self, node_id: str) -> ExpansionOutcome:
        """click and wait for the outcome."""
        task = self.on_node_click(node_id)
        if task is None:
            return ExpansionOutcome.REJECTED
        token = self._tokens[node_id]
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled and not _current_task_cancelling():
                return ExpansionOutcome.CANCELLED
            raise

    def cancel(self, node_id: str) -> bool:
        """abort an expansion and put the node back the way it was."""
        token = self._tokens.pop(node_id, None)
        if token is None:
            return False
        token.cancel()
        self._restore(node_id)
        logger.debug("cancelled expansion of %s", node_id)
        return True

    def cancel_all(self) -> None:
        """abort every expansion without touching the graph (teardown)."""
        tokens = list(self._tokens.values())
        self._tokens.clear()
        self._snapshots.clear()
        for token in tokens:
            token.cancel()

    def reset(self) -> None:
        self.cancel_all()
        self.history.clear()

    # --- internals ---

    async def _run(self, token: CancellationToken, request: SearchRequest) -> ExpansionOutcome:
        node_id = token.node_id
        try:
            response = await self.client.search(request)
        except asyncio.CancelledError:
            if token.cancelled:
                return ExpansionOutcome.CANCELLED
            # cancelled from outside: undo and let the cancellation through
            if self._tokens.get(node_id) is token:
                self._restore(node_id)
            raise
        except RequestCancelledError:
            return ExpansionOutcome.CANCELLED
        except Exception:
            if not self._is_current(token):
                return ExpansionOutcome.STALE
            logger.exception("expansion of %s failed", node_id)
            self._restore(node_id)
            return ExpansionOutcome.FAILED
        else:
            if not self._is_current(token):
                logger.debug("discarding stale response for %s", node_id)
                return ExpansionOutcome.STALE
            if not self._apply(node_id, response):
                return ExpansionOutcome.STALE
            return ExpansionOutcome.EXPANDED
        finally:
            if self._tokens.get(node_id) is token:
                del self._tokens[node_id]
                self._snapshots.pop(node_id, None)

    def _is_current(self, token: CancellationToken) -> bool:
        return self._tokens.get(token.node_id) is token and not token.cancelled

    def _current_main(self, node_id: str) -> Optional[Node]:
        for parent in self.graph.parents(node_id):
            if parent.type == NodeType.MAIN:
                return parent
        return next((n for n in self.graph.nodes if n.type == NodeType.MAIN), None)

    def _apply(self, node_id: str, response: SearchResponse) -> bool:
        node = self.graph.node(node_id)
        snapshot = self._snapshots.get(node_id)
        if node is None:
            return False
        question = snapshot.data.label if snapshot is not None else node.data.label
        expanded = dataclasses.replace(
            node,
            type=NodeType.MAIN,
            data=NodeData(
                label=response.contextual_query or question,
                content=response.response,
                sources=list(response.sources),
                images=[image.url for image in response.images],
                is_expanded=True,
                extra=dict(node.data.extra),
            ),
        )
        nodes = [expanded if n.id == node_id else n for n in self.graph.nodes]
        self.graph.set_nodes(self.layout_engine.layout(nodes, self.graph.edges))
        logger.debug("expanded %s", node_id)
        return True

    def _restore(self, node_id: str) -> None:
        snapshot = self._snapshots.pop(node_id, None)
        if snapshot is not None:
            self.graph.replace_node(snapshot)


def _current_task_cancelling() -> bool:
    """True if the task running this code was itself asked to cancel."""
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
