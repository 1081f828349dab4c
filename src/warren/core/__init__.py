"""core primitives shared between frontends."""

from .errors import (
    WarrenError,
    NotFoundError,
    StoreUnavailableError,
    TransactionAbortedError,
    ImportVersionMismatchError,
    RequestCancelledError,
    UpstreamFailureError,
)
from .models import (
    Canvas,
    CanvasState,
    CanvasExport,
    DatabaseExport,
    ConversationMessage,
    Edge,
    Node,
    NodeData,
    NodeType,
    Position,
    Setting,
    Source,
    StoredEdge,
    StoredNode,
    EXPORT_VERSION,
)
from .store import Store, get_data_dir, get_default_db_path
from .repository import CanvasRepository
from .autosave import AutosaveScheduler, SaveState
from .graph import Graph
from .layout import LayoutEngine
from .exploration import CancellationToken, ExpansionOutcome, ExplorationMachine, ExplorationMode
from .session import CanvasSession
from .client import ClaudeClient, MockClient, ClientProtocol

__all__ = [
    # errors
    "WarrenError",
    "NotFoundError",
    "StoreUnavailableError",
    "TransactionAbortedError",
    "ImportVersionMismatchError",
    "RequestCancelledError",
    "UpstreamFailureError",
    # models
    "Canvas",
    "CanvasState",
    "CanvasExport",
    "DatabaseExport",
    "ConversationMessage",
    "Edge",
    "Node",
    "NodeData",
    "NodeType",
    "Position",
    "Setting",
    "Source",
    "StoredEdge",
    "StoredNode",
    "EXPORT_VERSION",
    # persistence
    "Store",
    "get_data_dir",
    "get_default_db_path",
    "CanvasRepository",
    "AutosaveScheduler",
    "SaveState",
    # graph
    "Graph",
    "LayoutEngine",
    # exploration
    "CancellationToken",
    "ExpansionOutcome",
    "ExplorationMachine",
    "ExplorationMode",
    "CanvasSession",
    # client
    "ClaudeClient",
    "MockClient",
    "ClientProtocol",
]
