"""Tests for termrelay.server.app — HTTP API and stream endpoint."""

from __future__ import annotations

import time
from collections.abc import Iterator

import pytest
from conftest import FakeBackend, MemoryCatalogStore
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from termrelay.catalog import CatalogEntry
from termrelay.config import BackendConfig, RelayConfig, SessionConfig
from termrelay.server.app import create_app


@pytest.fixture
def client(backend: FakeBackend, catalog: MemoryCatalogStore) -> Iterator[TestClient]:
    config = RelayConfig(
        session=SessionConfig(list_cache_ttl=0, initial_input_delay=0, status_interval=60),
        backend=BackendConfig(spawn_settle_delay=0, program=["prog"]),
    )
    app = create_app(config, backend=backend, catalog=catalog)
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient, **body) -> dict:
    body.setdefault("name", "api")
    body.setdefault("workingDir", "/tmp")
    response = client.post("/sessions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def _settle(client: TestClient, session_id: str) -> None:
    relay = client.app.state.relay
    client.portal.call(relay.bridge.settled, session_id)


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        assert client.get("/health").json() == {"status": "ok", "sessions": 0}
        _create(client)
        assert client.get("/health").json()["sessions"] == 1


class TestSessionsApi:
    def test_create(self, client: TestClient, backend: FakeBackend) -> None:
        record = _create(client, group="proj")
        assert record["name"] == "api"
        assert record["group"] == "proj"
        assert record["workingDir"] == "/tmp"
        assert record["status"] == "running"
        assert record["pinned"] is False
        assert {"id", "createdAt", "lastActivity", "preview", "archived"} <= set(record)
        assert backend.created[0][0] == record["id"]

    def test_create_missing_name(self, client: TestClient) -> None:
        response = client.post("/sessions", json={"workingDir": "/tmp"})
        assert response.status_code == 400
        assert response.json() == {"error": "name is required"}

    def test_create_wrong_type(self, client: TestClient) -> None:
        response = client.post("/sessions", json={"name": ["not", "a", "string"]})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_list(self, client: TestClient, catalog: MemoryCatalogStore) -> None:
        catalog.entries["arch"] = CatalogEntry(id="arch", name="old", archived=True)
        record = _create(client)
        listed = client.get("/sessions").json()
        assert [s["id"] for s in listed] == [record["id"]]
        listed = client.get("/sessions", params={"includeArchived": "true"}).json()
        assert {s["id"] for s in listed} == {record["id"], "arch"}

    def test_get(self, client: TestClient) -> None:
        record = _create(client)
        assert client.get(f"/sessions/{record['id']}").json()["id"] == record["id"]

    def test_get_unknown(self, client: TestClient) -> None:
        response = client.get("/sessions/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Session not found: nope"}

    def test_patch_meta(self, client: TestClient) -> None:
        record = _create(client)
        response = client.patch(
            f"/sessions/{record['id']}/meta",
            json={"customName": "Renamed", "project": "p", "pinned": True},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "Renamed"
        assert body["group"] == "p"
        assert body["pinned"] is True

    def test_patch_unknown(self, client: TestClient) -> None:
        response = client.patch("/sessions/nope/meta", json={"pinned": True})
        assert response.status_code == 404

    def test_delete(self, client: TestClient, backend: FakeBackend) -> None:
        record = _create(client)
        response = client.delete(f"/sessions/{record['id']}")
        assert response.json() == {"ok": True}
        assert client.get(f"/sessions/{record['id']}").status_code == 404
        assert backend.killed == [record["id"]]
        assert client.delete(f"/sessions/{record['id']}").status_code == 404


# ---------------------------------------------------------------------------
# Stream endpoint
# ---------------------------------------------------------------------------


class TestStream:
    def test_unknown_session_rejected(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/sessions/nope/stream"):
                pass
        assert exc.value.code == 4404

    def test_replay_input_and_resize(self, client: TestClient, backend: FakeBackend) -> None:
        record = _create(client)
        sid = record["id"]
        _settle(client, sid)
        terminal = backend.terminal(sid)
        client.portal.call(terminal.emit, b"hello\r\n")

        with client.websocket_connect(f"/sessions/{sid}/stream") as ws:
            assert ws.receive_bytes() == b"hello\r\n"

            ws.send_text("ls\n")
            ws.send_text('{"type": "resize", "cols": 100, "rows": 30}')
            assert _wait_for(lambda: terminal.sizes == [(100, 30)])
            assert terminal.written == [b"ls\n"]

            client.portal.call(terminal.emit, b"README.md\r\n")
            assert ws.receive_bytes() == b"README.md\r\n"

    def test_binary_input(self, client: TestClient, backend: FakeBackend) -> None:
        sid = _create(client)["id"]
        _settle(client, sid)
        with client.websocket_connect(f"/sessions/{sid}/stream") as ws:
            ws.send_bytes(b"\x03")
            assert _wait_for(lambda: backend.terminal(sid).written == [b"\x03"])

    def test_delete_closes_stream(self, client: TestClient) -> None:
        sid = _create(client)["id"]
        _settle(client, sid)
        with client.websocket_connect(f"/sessions/{sid}/stream") as ws:
            assert client.delete(f"/sessions/{sid}").status_code == 200
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_bytes()
            assert exc.value.code == 1000
            assert exc.value.reason == "Session deleted"

    def test_attach_respawns_exited_session(
        self, client: TestClient, backend: FakeBackend
    ) -> None:
        sid = _create(client)["id"]
        _settle(client, sid)
        client.portal.call(backend.terminal(sid).exit, 1)
        backend.sessions.discard(sid)
        assert client.get(f"/sessions/{sid}").json()["status"] == "error"

        with client.websocket_connect(f"/sessions/{sid}/stream") as ws:
            assert b"[Process exited with code 1]" in ws.receive_bytes()
            _settle(client, sid)
            assert len(backend.terminals[sid]) == 2
        assert client.get(f"/sessions/{sid}").json()["status"] == "running"
