"""tests for the rest api."""

import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient

from warren.api import server
from warren.api.server import AppState
from warren.core.client import MockClient, SearchResponse
from warren.core.errors import UpstreamFailureError


@pytest.fixture
def collaborator():
    return MockClient(
        responses={"rabbits": SearchResponse(response="Rabbits dig.", follow_up_questions=["Why dig?", "Where?"])},
        delay=0,
    )


@pytest.fixture
def api(monkeypatch, collaborator):
    """test client over an in-memory store and a mock collaborator."""
    monkeypatch.setattr(server, "state", AppState(db_path=":memory:", client=collaborator, debounce_ms=10_000))
    with TestClient(server.app) as client:
        yield client


def graph_payload():
    return {
        "nodes": [
            {"id": "main", "type": "mainNode", "data": {"label": "a", "content": "b", "isExpanded": True}},
            {"id": "question-main-0", "type": "questionNode", "data": {"label": "c?"}},
        ],
        "edges": [
            {"id": "edge-main-question-main-0", "source": "main", "target": "question-main-0"},
            {"id": "edge-dangling", "source": "main", "target": "ghost"},
        ],
    }


class TestHealth:
    """tests for health and status."""

    def test_health(self, api):
        assert api.get("/health").json() == {"status": "ok"}

    def test_status(self, api):
        body = api.get("/status").json()
        assert body["db_path"] == ":memory:"
        assert body["database"]["tables"]["canvases"] == 0
        assert body["session"]["canvas"] is None


class TestCanvases:
    """tests for canvas endpoints."""

    def test_create_list_get(self, api):
        created = api.post("/canvases", json={"name": "burrows"})
        assert created.status_code == 201
        canvas_id = created.json()["id"]

        assert [c["id"] for c in api.get("/canvases").json()] == [canvas_id]
        assert api.get(f"/canvases/{canvas_id}").json()["name"] == "burrows"

    def test_get_missing(self, api):
        assert api.get("/canvases/canvas_nope").status_code == 404

    def test_patch_only_sent_fields(self, api):
        canvas_id = api.post("/canvases", json={"name": "a", "description": "keep"}).json()["id"]
        body = api.patch(f"/canvases/{canvas_id}", json={"name": "b"}).json()
        assert body["name"] == "b"
        assert body["description"] == "keep"

    def test_patch_missing_is_404(self, api):
        response = api.patch("/canvases/canvas_nope", json={"name": "b"})
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_state_round_trip(self, api):
        """dangling edges are dropped on save."""
        canvas_id = api.post("/canvases", json={"name": "a"}).json()["id"]
        saved = api.put(f"/canvases/{canvas_id}/state", json=graph_payload()).json()
        assert [n["id"] for n in saved["nodes"]] == ["main", "question-main-0"]
        assert [e["id"] for e in saved["edges"]] == ["edge-main-question-main-0"]
        assert api.get(f"/canvases/{canvas_id}/state").json() == saved

    def test_state_missing_field(self, api):
        canvas_id = api.post("/canvases", json={"name": "a"}).json()["id"]
        response = api.put(f"/canvases/{canvas_id}/state", json={"nodes": [{"type": "note"}]})
        assert response.status_code == 400

    def test_duplicate_and_delete(self, api):
        canvas_id = api.post("/canvases", json={"name": "a"}).json()["id"]
        api.put(f"/canvases/{canvas_id}/state", json=graph_payload())

        copy = api.post(f"/canvases/{canvas_id}/duplicate").json()
        assert copy["name"] == "a (Copy)"
        assert len(api.get(f"/canvases/{copy['id']}/state").json()["nodes"]) == 2

        assert api.delete(f"/canvases/{canvas_id}").json() == {"deleted": canvas_id}
        assert api.get(f"/canvases/{canvas_id}/state").status_code == 404
        assert api.delete(f"/canvases/{canvas_id}").status_code == 404

    def test_export_import(self, api):
        canvas_id = api.post("/canvases", json={"name": "a"}).json()["id"]
        api.put(f"/canvases/{canvas_id}/state", json=graph_payload())
        export = api.get(f"/canvases/{canvas_id}/export").json()
        assert export["version"] == "1.0"

        imported = api.post("/canvases/import", json=export)
        assert imported.status_code == 201
        assert imported.json()["name"] == "a (Imported)"

    def test_import_wrong_version(self, api):
        canvas_id = api.post("/canvases", json={"name": "a"}).json()["id"]
        export = api.get(f"/canvases/{canvas_id}/export").json()
        export["version"] = "9.9"
        response = api.post("/canvases/import", json=export)
        assert response.status_code == 400
        assert response.json()["error"] == "ImportVersionMismatchError"


class TestDatabase:
    """tests for whole-database endpoints."""

    def test_replace_requires_confirm(self, api):
        export = api.get("/database/export").json()
        assert api.post("/database/import", json={"data": export}).status_code == 400

    def test_replace(self, api):
        api.post("/canvases", json={"name": "a"})
        export = api.get("/database/export").json()
        api.post("/canvases", json={"name": "b"})

        response = api.post("/database/import", json={"data": export, "confirm": True})

        assert response.status_code == 200
        assert [c["name"] for c in api.get("/canvases").json()] == ["a"]

    def test_merge_with_orphan_rejected(self, api):
        """an import that would leave orphans changes nothing."""
        export = api.get("/database/export").json()
        export["nodes"] = [{"canvasId": "canvas_ghost", "id": "n", "type": "note", "data": {}}]
        response = api.post("/database/import", json={"data": export, "merge": True})
        assert response.status_code == 404
        assert api.get("/database/info").json()["tables"]["nodes"] == 0


class TestSettings:
    """tests for settings endpoints."""

    def test_put_get_delete(self, api):
        assert api.get("/settings/theme").status_code == 404
        api.put("/settings/theme", json={"value": {"dark": True}})
        assert api.get("/settings/theme").json() == {"key": "theme", "value": {"dark": True}}
        assert api.get("/settings").json() == {"theme": {"dark": True}}
        assert api.delete("/settings/theme").status_code == 200
        assert api.delete("/settings/theme").status_code == 404


class TestSession:
    """tests for the exploration session endpoints."""

    def test_search_and_expand(self, api):
        body = api.post("/session/search", json={"query": "rabbits"}).json()
        assert [n["id"] for n in body["nodes"]] == ["main", "question-main-0", "question-main-1"]
        assert body["canvas"]["name"] == "rabbits"

        clicked = api.post("/session/nodes/question-main-0/click").json()
        assert clicked["outcome"] == "expanded"
        assert clicked["node"]["type"] == "mainNode"
        assert clicked["node"]["data"]["isExpanded"] is True

    def test_click_rejected(self, api):
        api.post("/session/search", json={"query": "rabbits"})
        assert api.post("/session/nodes/main/click").json()["outcome"] == "rejected"

    def test_cancel_unknown(self, api):
        assert api.post("/session/nodes/question-x/cancel").json() == {"cancelled": False}

    def test_upstream_failure_is_502(self, api, collaborator):
        collaborator.error = UpstreamFailureError("down")
        response = api.post("/session/search", json={"query": "rabbits"})
        assert response.status_code == 502
        assert response.json()["error"] == "UpstreamFailureError"

    def test_empty_query_is_400(self, api):
        assert api.post("/session/search", json={"query": " "}).status_code == 400

    def test_connect_suggest_create(self, api):
        api.post("/session/search", json={"query": "rabbits"})
        assert api.post("/session/connect-end", json={"node_id": "main"}).json()["id"] == "main"

        suggestions = api.post("/session/suggestions", json={}).json()["suggestions"]
        assert len(suggestions) == 2

        created = api.post("/session/questions", json={"question": suggestions[0]})
        assert created.status_code == 201
        assert created.json()["id"].startswith("question-main-")
        assert len(api.get("/session").json()["edges"]) == 3

    def test_connect_end_unknown(self, api):
        assert api.post("/session/connect-end", json={"node_id": "ghost"}).status_code == 404

    def test_manual_node(self, api):
        response = api.post("/session/nodes", json={"type": "note", "position": {"x": 3, "y": 4}})
        assert response.status_code == 201
        assert response.json()["position"] == {"x": 3, "y": 4}

    def test_mode(self, api):
        assert api.put("/session/mode", json={"mode": "guided"}).json() == {
            "mode": "guided",
            "follow_up_mode": "focused",
        }
        assert api.put("/session/mode", json={"mode": "chaotic"}).status_code == 400

    def test_save_as_and_load(self, api):
        api.post("/session/search", json={"query": "rabbits"})
        first = api.get("/session").json()["canvas"]["id"]

        saved = api.post("/session/save-as", json={"name": "copy"}).json()
        assert saved["name"] == "copy"

        loaded = api.post(f"/session/load/{first}").json()
        assert loaded["canvas"]["id"] == first
        assert len(loaded["nodes"]) == 3
        assert api.post("/session/load/canvas_nope").status_code == 404

    def test_delete_open_canvas_resets_session(self, api):
        api.post("/session/search", json={"query": "rabbits"})
        canvas_id = api.get("/session").json()["canvas"]["id"]
        api.delete(f"/canvases/{canvas_id}")
        session = api.get("/session").json()
        assert session["canvas"] is None
        assert session["nodes"] == []


class TestMain:
    """tests for the cli entrypoint."""

    def test_args_configure_state(self, monkeypatch):
        monkeypatch.setattr(server, "state", server.state)
        with patch("uvicorn.run") as run:
            server.main(["--mock", "--db", ":memory:", "--port", "9001", "--debounce-ms", "50", "--no-autosave"])

        assert server.state.mock
        assert server.state.db_path == ":memory:"
        assert server.state.debounce_ms == 50
        assert not server.state.autosave
        run.assert_called_once()
        assert run.call_args.args[0] == "warren.api.server:app"
        assert run.call_args.kwargs["port"] == 9001
