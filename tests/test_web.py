"""
Tests for the Flask REST routes and the Socket.IO channel.
"""

import time

import pytest

from cellsync.errors import (
    CellNotFound,
    CollaboratorUnavailable,
    PathConflict,
    SessionClosed,
    StaleBase,
    ValidationError,
)
from cellsync.web import create_app, error_status


@pytest.fixture
def web(manager):
    app, socketio = create_app(manager)
    app.config["TESTING"] = True
    return app, socketio


@pytest.fixture
def client(web):
    app, _ = web
    return app.test_client()


@pytest.fixture
def session_data(client, tmp_path):
    response = client.post("/sessions", json={
        "title": "Web Demo",
        "directory": str(tmp_path / "web"),
        "cells": [
            {"type": "title", "text": "Web Demo"},
            {"type": "code", "filename": "a.py", "source": "total = 0"},
            {"type": "code", "filename": "b.py", "source": "total += 5; total"},
        ],
    })
    assert response.status_code == 201
    return response.get_json()


def _cell_id(data, filename):
    return next(c["id"] for c in data["cells"] if c.get("filename") == filename)


class ReceivedMessages:
    """Accumulates [topic, event, payload] triples from a Socket.IO test client."""

    def __init__(self, sio_client):
        self.sio_client = sio_client
        self.messages = []

    def poll(self):
        for packet in self.sio_client.get_received():
            if packet["name"] == "message":
                self.messages.append(packet["args"])
        return self.messages

    def wait_for(self, event, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            for message in self.poll():
                if message[1] == event:
                    return message
            time.sleep(0.02)
        return None

    def events(self):
        return [m[1] for m in self.poll()]


class TestErrorStatus:

    def test_mapping(self):
        assert error_status(CellNotFound("c")) == 404
        assert error_status(StaleBase("a.py")) == 409
        assert error_status(PathConflict("a.py exists")) == 409
        assert error_status(SessionClosed("s")) == 409
        assert error_status(ValidationError("bad")) == 400
        assert error_status(CollaboratorUnavailable("down")) == 503


class TestSessionRoutes:

    def test_create_and_get(self, client, session_data):
        assert session_data["title"] == "Web Demo"
        assert len(session_data["cells"]) == 3

        response = client.get(f"/sessions/{session_data['id']}")
        assert response.status_code == 200
        assert response.get_json()["topic"] == session_data["topic"]

        listed = client.get("/sessions").get_json()["sessions"]
        assert [s["id"] for s in listed] == [session_data["id"]]

    def test_default_directory_from_title(self, client, manager):
        response = client.post("/sessions", json={"title": "My Analysis"})
        data = response.get_json()

        assert response.status_code == 201
        assert data["directory"] == str((manager.settings.notebooks_dir / "my-analysis").resolve())

    def test_unknown_session(self, client):
        response = client.get("/sessions/nope")
        assert response.status_code == 404
        assert response.get_json() == {
            "error": True,
            "type": "session_not_found",
            "message": "Session 'nope' not found",
        }

    def test_save_and_close(self, client, session_data):
        sid = session_data["id"]
        saved = client.post(f"/sessions/{sid}/save").get_json()
        assert saved["path"].endswith("notebook.json")

        assert client.delete(f"/sessions/{sid}").status_code == 200
        assert client.get(f"/sessions/{sid}").status_code == 404

    def test_settings(self, client, manager):
        assert client.get("/settings").get_json()["port"] == manager.settings.port


class TestCellRoutes:

    def test_insert_update_move_delete(self, client, session_data):
        sid = session_data["id"]
        response = client.post(f"/sessions/{sid}/cells", json={
            "cell": {"type": "code", "filename": "c.py", "source": "x = 1"},
            "index": 1,
        })
        assert response.status_code == 201
        created = response.get_json()
        assert created["index"] == 1
        cid = created["cell"]["id"]

        updated = client.post(f"/sessions/{sid}/cells/{cid}", json={"source": "x = 2"}).get_json()
        assert updated["cell"]["stale"] is True
        assert updated["changed"] == ["source", "stale"]

        moved = client.post(f"/sessions/{sid}/cells/{cid}/move", json={"index": 99}).get_json()
        assert moved["fromIndex"] == 1
        assert moved["index"] == 3

        assert client.delete(f"/sessions/{sid}/cells/{cid}").status_code == 200
        assert client.delete(f"/sessions/{sid}/cells/{cid}").status_code == 404

    def test_invalid_filename(self, client, session_data):
        response = client.post(f"/sessions/{session_data['id']}/cells", json={
            "cell": {"type": "code", "filename": "bad name.py"},
        })
        assert response.status_code == 400
        assert response.get_json()["type"] == "invalid_filename"

    def test_bad_bodies(self, client, session_data):
        sid = session_data["id"]
        cid = _cell_id(session_data, "a.py")
        assert client.post(f"/sessions/{sid}/cells", json={"cell": "x"}).status_code == 400
        assert client.post(f"/sessions/{sid}/cells", json={"cell": {}, "index": "1"}).status_code == 400
        assert client.post(f"/sessions/{sid}/cells/{cid}/move", json={}).status_code == 400
        assert client.post(f"/sessions/{sid}/cells/{cid}", json=[1, 2]).status_code == 400

    def test_execute(self, client, session_data):
        sid = session_data["id"]
        client.post(f"/sessions/{sid}/cells/{_cell_id(session_data, 'a.py')}/exec")
        response = client.post(f"/sessions/{sid}/cells/{_cell_id(session_data, 'b.py')}/exec")
        data = response.get_json()

        assert data["success"] is True
        assert data["output"] == [{"kind": "stdout", "data": "5\n"}]
        assert data["cell"]["stale"] is False

        variables = client.get(f"/sessions/{sid}/variables").get_json()["variables"]
        assert {"name": "total", "type": "int", "value": "5"} in variables

        assert client.post(f"/sessions/{sid}/reset").get_json() == {"ok": True}
        assert client.get(f"/sessions/{sid}/variables").get_json()["variables"] == []

    def test_stop_when_idle(self, client, session_data):
        sid = session_data["id"]
        response = client.post(f"/sessions/{sid}/cells/{_cell_id(session_data, 'a.py')}/stop")
        assert response.get_json() == {"cancelled": False}

    def test_diagnostics(self, client, session_data):
        sid = session_data["id"]
        cid = _cell_id(session_data, "a.py")
        client.post(f"/sessions/{sid}/cells/{cid}", json={"source": "def f(:"})
        data = client.get(f"/sessions/{sid}/cells/{cid}/diagnostics?line=1&offset=3").get_json()

        assert len(data["diagnostics"]) == 1
        assert data["diagnostics"][0]["cell_id"] == cid


class TestDiffRoutes:

    def test_apply_and_revert(self, client, session_data):
        sid = session_data["id"]
        response = client.post(f"/sessions/{sid}/diffs", json={"files": [
            {"path": "a.py", "original": "total = 0", "modified": "total = 1", "type": "edit"},
        ]})
        assert response.status_code == 200
        entry_id = response.get_json()["entry"]["id"]

        reverted = client.post(f"/sessions/{sid}/diffs/{entry_id}/revert").get_json()
        assert reverted["entry"]["reverts"] == entry_id

        history = client.get(f"/sessions/{sid}/history").get_json()["entries"]
        assert [e["type"] for e in history] == ["diff", "diff"]

    def test_stale_base_conflict(self, client, session_data):
        response = client.post(f"/sessions/{session_data['id']}/diffs", json={"files": [
            {"path": "a.py", "original": "total = 42", "modified": "total = 1", "type": "edit"},
        ]})
        assert response.status_code == 409
        assert response.get_json()["type"] == "stale_base"

    def test_path_conflict(self, client, session_data):
        response = client.post(f"/sessions/{session_data['id']}/diffs", json={"files": [
            {"path": "a.py", "modified": "", "type": "create"},
        ]})
        assert response.status_code == 409

    def test_malformed(self, client, session_data):
        sid = session_data["id"]
        assert client.post(f"/sessions/{sid}/diffs", json={"files": "a.py"}).status_code == 400
        assert client.post(f"/sessions/{sid}/diffs", json={"files": [{"path": "a.py"}]}).status_code == 400

    def test_append_history(self, client, session_data):
        sid = session_data["id"]
        response = client.post(f"/sessions/{sid}/history", json={"type": "user", "message": "hi"})
        assert response.status_code == 201
        assert response.get_json()["message"] == "hi"


class TestDepsRoutes:

    def test_install(self, client, session_data, installer):
        sid = session_data["id"]
        data = client.post(f"/sessions/{sid}/deps", json={"packages": ["no-such-dist-cellsync"]}).get_json()

        assert data["success"] is True
        assert installer.calls == [["no-such-dist-cellsync"]]
        assert client.get(f"/sessions/{sid}/deps").get_json() == {"missing": ["no-such-dist-cellsync"]}

    def test_install_requires_list(self, client, session_data):
        response = client.post(f"/sessions/{session_data['id']}/deps", json={"packages": "rich"})
        assert response.status_code == 400


class TestRealtime:

    def test_subscribe_and_receive(self, web, client, session_data):
        app, socketio = web
        received = ReceivedMessages(socketio.test_client(app))
        received.sio_client.emit("message", [session_data["topic"], "subscribe", {}])

        client.post(f"/sessions/{session_data['id']}/cells", json={"cell": {"type": "markdown", "text": "hi"}})

        message = received.wait_for("cell:inserted")
        assert message is not None
        assert message[0] == session_data["topic"]
        assert message[2]["cell"]["text"] == "hi"

    def test_exec_over_socket(self, web, session_data):
        app, socketio = web
        received = ReceivedMessages(socketio.test_client(app))
        topic = session_data["topic"]
        received.sio_client.emit("message", [topic, "subscribe", {}])
        received.sio_client.emit("message", [topic, "cell:exec", {"cellId": _cell_id(session_data, "a.py")}])

        assert received.wait_for("execution:completed") is not None
        assert received.events().index("execution:started") < received.events().index("execution:completed")

    def test_subscribe_unknown_session(self, web):
        app, socketio = web
        received = ReceivedMessages(socketio.test_client(app))
        received.sio_client.emit("message", ["session:nope", "subscribe", {}])

        message = received.wait_for("cell:error")
        assert message[2]["type"] == "session_not_found"

    def test_invalid_payload(self, web, session_data):
        app, socketio = web
        received = ReceivedMessages(socketio.test_client(app))
        topic = session_data["topic"]
        received.sio_client.emit("message", [topic, "subscribe", {}])
        received.sio_client.emit("message", [topic, "cell:move", {"cellId": "x"}])

        message = received.wait_for("cell:error")
        assert message[2]["type"] == "validation"
        assert message[2]["cellId"] == "x"

    def test_events_require_subscription(self, web, session_data, manager):
        app, socketio = web
        received = ReceivedMessages(socketio.test_client(app))
        session = manager.get_session(session_data["id"])
        before = len(session.cells)
        received.sio_client.emit("message", [
            session_data["topic"], "cell:create", {"cell": {"type": "markdown", "text": "sneaky"}},
        ])

        time.sleep(0.1)
        assert len(session.cells) == before

    def test_disconnect_closes_connection(self, web, session_data, manager):
        app, socketio = web
        sio_client = socketio.test_client(app)
        sio_client.emit("message", [session_data["topic"], "subscribe", {}])
        assert len(manager.broadcaster.subscribers(session_data["topic"])) == 1

        sio_client.disconnect()
        assert manager.broadcaster.subscribers(session_data["topic"]) == []
