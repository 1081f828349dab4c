"""fastapi server for warren.

exposes repository and session operations as REST endpoints for a local
frontend. everything runs against a local sqlite file.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional, Union

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.autosave import DEFAULT_DEBOUNCE_MS
from ..core.client import ClaudeClient, ClientProtocol, MockClient
from ..core.errors import (
    ImportVersionMismatchError,
    NotFoundError,
    StoreUnavailableError,
    TransactionAbortedError,
    UpstreamFailureError,
    WarrenError,
)
from ..core.exploration import ExplorationMode
from ..core.models import Edge, Node, Position
from ..core.repository import CanvasRepository
from ..core.session import CanvasSession
from ..core.store import Store, get_default_db_path

logger = logging.getLogger(__name__)


# --- configuration ---

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

ERROR_STATUS: dict[type[WarrenError], int] = {
    NotFoundError: 404,
    ImportVersionMismatchError: 400,
    UpstreamFailureError: 502,
    StoreUnavailableError: 503,
    TransactionAbortedError: 500,
}


# --- pydantic models for api ---

class CanvasCreate(BaseModel):
    """request to create a canvas."""
    name: str
    description: Optional[str] = None


class CanvasUpdate(BaseModel):
    """partial canvas update. only fields that are sent are changed."""
    name: Optional[str] = None
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    metadata: Optional[dict] = None


class CanvasDuplicate(BaseModel):
    new_name: Optional[str] = None


class CanvasStateUpdate(BaseModel):
    """full replacement of a canvas graph."""
    nodes: list[dict] = []
    edges: list[dict] = []


class DatabaseImport(BaseModel):
    """request to import a database export."""
    data: dict
    merge: bool = False
    confirm: bool = False  # required for a replacing import


class SettingValue(BaseModel):
    value: Any = None


class SaveAs(BaseModel):
    name: str
    description: Optional[str] = None


class SearchBody(BaseModel):
    """initial search on the open canvas."""
    query: str
    concept: str = ""


class ConnectEnd(BaseModel):
    node_id: str


class SuggestionsBody(BaseModel):
    node_id: Optional[str] = None  # defaults to the last connect-end source


class QuestionCreate(BaseModel):
    question: str
    source_id: Optional[str] = None


class NodeCreateAt(BaseModel):
    """manual node dropped at a canvas position."""
    type: str
    position: dict = {"x": 0, "y": 0}


class ModeUpdate(BaseModel):
    mode: str


# --- app state ---

class AppState:
    """process-wide store, repository and session."""

    def __init__(
        self,
        db_path: Union[str, Path, None] = None,
        mock: bool = False,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        autosave: bool = True,
        client: Optional[ClientProtocol] = None,
    ):
        self._db_path = db_path
        self.mock = mock
        self.debounce_ms = debounce_ms
        self.autosave = autosave
        self.store: Optional[Store] = None
        self._client = client
        self._repository: Optional[CanvasRepository] = None
        self._session: Optional[CanvasSession] = None

    @property
    def db_path(self) -> str:
        return str(self._db_path) if self._db_path is not None else str(get_default_db_path())

    @property
    def client(self) -> ClientProtocol:
        if self._client is None:
            if self.mock:
                self._client = MockClient()
            else:
                self._client = ClaudeClient()
        return self._client

    @property
    def repository(self) -> CanvasRepository:
        if self._repository is None:
            raise StoreUnavailableError("store is not open")
        return self._repository

    @property
    def session(self) -> CanvasSession:
        if self._session is None:
            raise StoreUnavailableError("store is not open")
        return self._session

    async def open(self) -> None:
        self.store = Store(self.db_path)
        await self.store.open_or_create()
        self._repository = CanvasRepository(self.store)
        self._session = CanvasSession(
            self._repository,
            self.client,
            debounce_ms=self.debounce_ms,
            autosave=self.autosave,
        )
        restored = await self._session.restore()
        if restored is not None:
            logger.info("restored canvas %s", restored.canvas.id)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
        if self.store is not None:
            await self.store.close()
        self._session = None
        self._repository = None


state = AppState()


# --- lifespan ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup: open the store and reopen the last canvas
    await state.open()
    yield
    # shutdown: flush autosave and close the store
    await state.close()


# --- app ---

app = FastAPI(
    title="warren api",
    description="REST API for warren exploration canvases",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # local frontend only
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def handle_warren_error(request: Request, exc: WarrenError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": type(exc).__name__})


async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.add_exception_handler(WarrenError, handle_warren_error)
app.add_exception_handler(ValueError, handle_value_error)


def _parse_graph(req: CanvasStateUpdate) -> tuple[list[Node], list[Edge]]:
    try:
        return [Node.from_dict(n) for n in req.nodes], [Edge.from_dict(e) for e in req.edges]
    except KeyError as e:
        raise HTTPException(status_code=400, detail=f"missing field: {e.args[0]}") from e


def _session_response() -> dict:
    session = state.session
    response = session.status()
    response.update(session.graph.to_dict())
    return response


# --- endpoints ---

@app.get("/health")
async def health():
    """health check."""
    return {"status": "ok"}


@app.get("/status")
async def status():
    """store and session status."""
    info = await state.repository.get_database_info()
    return {
        "db_path": state.db_path,
        "mock": state.mock,
        "autosave": state.autosave,
        "debounce_ms": state.debounce_ms,
        "database": info,
        "session": state.session.status(),
    }


# --- canvases ---

@app.get("/canvases")
async def list_canvases():
    """all canvases, most recently updated first."""
    return [c.to_dict() for c in await state.repository.get_all_canvases()]


@app.post("/canvases", status_code=201)
async def create_canvas(req: CanvasCreate):
    canvas = await state.repository.create_canvas(req.name, req.description)
    return canvas.to_dict()


@app.post("/canvases/import", status_code=201)
async def import_canvas(data: dict):
    """import a canvas export as a new canvas."""
    canvas = await state.repository.import_canvas(data)
    return canvas.to_dict()


@app.get("/canvases/{canvas_id}")
async def get_canvas(canvas_id: str):
    canvas = await state.repository.get_canvas(canvas_id)
    if canvas is None:
        raise HTTPException(status_code=404, detail=f"canvas not found: {canvas_id}")
    return canvas.to_dict()


@app.patch("/canvases/{canvas_id}")
async def update_canvas(canvas_id: str, req: CanvasUpdate):
    fields = req.model_dump(exclude_unset=True)
    canvas = await state.repository.update_canvas(canvas_id, **fields)
    if state.session.canvas_id == canvas_id:
        state.session.canvas = canvas
    return canvas.to_dict()


@app.delete("/canvases/{canvas_id}")
async def delete_canvas(canvas_id: str):
    """delete a canvas with all its nodes and edges."""
    if state.session.canvas_id == canvas_id:
        await state.session.new_canvas()
    await state.repository.delete_canvas(canvas_id)
    return {"deleted": canvas_id}


@app.post("/canvases/{canvas_id}/duplicate", status_code=201)
async def duplicate_canvas(canvas_id: str, req: Optional[CanvasDuplicate] = None):
    new_name = req.new_name if req else None
    canvas = await state.repository.duplicate_canvas(canvas_id, new_name)
    return canvas.to_dict()


@app.get("/canvases/{canvas_id}/state")
async def get_canvas_state(canvas_id: str):
    loaded = await state.repository.load_canvas_state(canvas_id)
    return loaded.to_dict()


@app.put("/canvases/{canvas_id}/state")
async def put_canvas_state(canvas_id: str, req: CanvasStateUpdate):
    """replace a canvas graph."""
    nodes, edges = _parse_graph(req)
    await state.repository.save_canvas_state(canvas_id, nodes, edges)
    loaded = await state.repository.load_canvas_state(canvas_id)
    return loaded.to_dict()


@app.get("/canvases/{canvas_id}/export")
async def export_canvas(canvas_id: str):
    export = await state.repository.export_canvas(canvas_id)
    return export.to_dict()


# --- database ---

@app.get("/database/info")
async def database_info():
    return await state.repository.get_database_info()


@app.get("/database/export")
async def export_database():
    export = await state.repository.export_database()
    return export.to_dict()


@app.post("/database/import")
async def import_database(req: DatabaseImport):
    """import a database export. replacing everything needs confirm=true."""
    if not req.merge and not req.confirm:
        raise HTTPException(status_code=400, detail="replacing import requires confirm=true")
    if not req.merge:
        await state.session.new_canvas()
    await state.repository.import_database(req.data, merge=req.merge)
    return {"imported": True, "merge": req.merge}


# --- settings ---

_MISSING = object()


@app.get("/settings")
async def list_settings():
    return await state.repository.get_all_settings()


@app.get("/settings/{key}")
async def get_setting(key: str):
    value = await state.repository.get_setting(key, _MISSING)
    if value is _MISSING:
        raise HTTPException(status_code=404, detail=f"setting not found: {key}")
    return {"key": key, "value": value}


@app.put("/settings/{key}")
async def put_setting(key: str, req: SettingValue):
    setting = await state.repository.set_setting(key, req.value)
    return setting.to_dict()


@app.delete("/settings/{key}")
async def delete_setting(key: str):
    if not await state.repository.delete_setting(key):
        raise HTTPException(status_code=404, detail=f"setting not found: {key}")
    return {"deleted": key}


# --- session ---

@app.get("/session")
async def get_session():
    """open canvas, graph and exploration status."""
    return _session_response()


@app.post("/session/new")
async def new_session_canvas():
    await state.session.new_canvas()
    return _session_response()


@app.post("/session/load/{canvas_id}")
async def load_session_canvas(canvas_id: str):
    await state.session.load_canvas(canvas_id)
    return _session_response()


@app.post("/session/save-as", status_code=201)
async def save_session_as(req: SaveAs):
    canvas = await state.session.save_as(req.name, req.description)
    return canvas.to_dict()


@app.put("/session/mode")
async def set_session_mode(req: ModeUpdate):
    state.session.mode = ExplorationMode(req.mode)
    return {"mode": state.session.mode.value, "follow_up_mode": state.session.mode.follow_up_mode}


@app.post("/session/search")
async def session_search(req: SearchBody):
    """initial search: answer node plus follow-up questions."""
    await state.session.search(req.query, concept=req.concept)
    return _session_response()


@app.post("/session/nodes/{node_id}/click")
async def click_node(node_id: str, wait: bool = Query(True, description="wait for the expansion to finish")):
    """expand a question node."""
    session = state.session
    if wait:
        outcome = await session.expand(node_id)
        node = session.graph.node(node_id)
        return {"outcome": outcome.value, "node": node.to_dict() if node else None}

    task = session.on_node_click(node_id)
    node = session.graph.node(node_id)
    return {"accepted": task is not None, "node": node.to_dict() if node else None}


@app.post("/session/nodes/{node_id}/cancel")
async def cancel_node(node_id: str):
    cancelled = state.session.exploration.cancel(node_id)
    return {"cancelled": cancelled}


@app.post("/session/connect-end")
async def connect_end(req: ConnectEnd):
    node = state.session.on_connect_end(req.node_id)
    return node.to_dict()


@app.post("/session/suggestions")
async def session_suggestions(req: SuggestionsBody):
    suggestions = await state.session.request_suggestions(req.node_id)
    return {"suggestions": suggestions}


@app.post("/session/questions", status_code=201)
async def create_question(req: QuestionCreate):
    node = await state.session.create_question(req.question, req.source_id)
    return node.to_dict()


@app.post("/session/nodes", status_code=201)
async def create_node_at_position(req: NodeCreateAt):
    node = state.session.on_create_node_at_position(req.type, Position.from_dict(req.position))
    return node.to_dict()


# --- entrypoint ---

def main(argv: Optional[list[str]] = None):
    """run the api server."""
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="warren api server")
    parser.add_argument("--host", default=DEFAULT_HOST, help="host to bind")
    parser.add_argument("--port", "-p", type=int, default=DEFAULT_PORT, help="port to bind")
    parser.add_argument("--db", help="path to the sqlite database (default: $WARREN_DB_PATH or ~/.warren/warren.db)")
    parser.add_argument("--mock", "-m", action="store_true", help="use mock client")
    parser.add_argument("--reload", action="store_true", help="enable auto-reload")
    parser.add_argument(
        "--debounce-ms",
        type=int,
        default=DEFAULT_DEBOUNCE_MS,
        help=f"autosave debounce in milliseconds (default: {DEFAULT_DEBOUNCE_MS})",
    )
    parser.add_argument(
        "--no-autosave",
        action="store_true",
        help="disable autosave",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="logging level (default: info)",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # configure state
    global state
    state = AppState(
        db_path=args.db,
        mock=args.mock,
        debounce_ms=args.debounce_ms,
        autosave=not args.no_autosave,
    )

    uvicorn.run(
        "warren.api.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
