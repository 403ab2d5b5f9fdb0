"""
Web interface for cellsync using Flask and Flask-SocketIO.

REST routes cover every session operation. The realtime channel carries
[topic, event, payload] triples on the Socket.IO "message" event; each
Socket.IO client becomes one broadcaster Connection once it subscribes.
"""

import logging
from typing import Any, Optional

from flask import Flask, jsonify, request
from flask_socketio import SocketIO

from cellsync.broadcast import Connection
from cellsync.config import Settings
from cellsync.diagnostics import Position
from cellsync.errors import (
    CellSyncError,
    CollaboratorUnavailable,
    ContextUnavailable,
    NotFound,
    PathConflict,
    SessionClosed,
    StaleBase,
    ValidationError,
)
from cellsync.events import parse_message, validate_outbound
from cellsync.session import SessionManager
from cellsync.utils import slugify

logger = logging.getLogger(__name__)


def error_status(error: CellSyncError) -> int:
    """HTTP status for an engine error."""
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, (StaleBase, PathConflict, SessionClosed)):
        return 409
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (CollaboratorUnavailable, ContextUnavailable)):
        return 503
    return 500


def _int_field(data: dict, key: str, default: Optional[int] = None) -> Optional[int]:
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    return value


def create_app(manager: SessionManager, settings: Optional[Settings] = None) -> tuple[Flask, SocketIO]:
    """
    Build the Flask app and its Socket.IO server around a session manager.

    Returns:
        (app, socketio)
    """
    settings = settings or manager.settings
    app = Flask(__name__)
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")
    broadcaster = manager.broadcaster

    # Socket.IO sid -> Connection
    connections: dict[str, Connection] = {}

    # ------------------------------------------------------------------ #
    # Errors
    # ------------------------------------------------------------------ #

    @app.errorhandler(CellSyncError)
    def handle_engine_error(error: CellSyncError):
        return jsonify(error.to_dict()), error_status(error)

    def _body() -> dict:
        data = request.get_json(force=True, silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    @app.route("/sessions", methods=["POST"])
    def api_session_create():
        data = _body()
        title = data.get("title") or "Untitled"
        directory = data.get("directory") or settings.notebooks_dir / slugify(title)
        metadata = {"title": title} if data.get("title") else None
        session = manager.create_session(directory, cells=data.get("cells"), metadata=metadata)
        return jsonify(session.to_dict()), 201

    @app.route("/sessions", methods=["GET"])
    def api_session_list():
        return jsonify({"sessions": [s.summary() for s in manager.list_sessions()]})

    @app.route("/sessions/<session_id>", methods=["GET"])
    def api_session_get(session_id):
        return jsonify(manager.get_session(session_id).to_dict())

    @app.route("/sessions/<session_id>", methods=["DELETE"])
    def api_session_close(session_id):
        save = request.args.get("save", "0") == "1"
        manager.close_session(session_id, save=save)
        return jsonify({"ok": True})

    @app.route("/sessions/<session_id>/save", methods=["POST"])
    def api_session_save(session_id):
        path = manager.save_session(manager.get_session(session_id))
        return jsonify({"ok": True, "path": str(path)})

    # ------------------------------------------------------------------ #
    # Cells
    # ------------------------------------------------------------------ #

    @app.route("/sessions/<session_id>/cells", methods=["POST"])
    def api_cell_create(session_id):
        session = manager.get_session(session_id)
        data = _body()
        cell = data.get("cell")
        if not isinstance(cell, dict):
            raise ValidationError("cell must be an object")
        change = manager.insert_cell(session, _int_field(data, "index"), cell)
        return jsonify(change.to_payload()), 201

    @app.route("/sessions/<session_id>/cells/<cell_id>", methods=["POST"])
    def api_cell_update(session_id, cell_id):
        session = manager.get_session(session_id)
        change = manager.update_cell(session, cell_id, _body())
        return jsonify(change.to_payload())

    @app.route("/sessions/<session_id>/cells/<cell_id>", methods=["DELETE"])
    def api_cell_delete(session_id, cell_id):
        session = manager.get_session(session_id)
        change = manager.delete_cell(session, cell_id)
        return jsonify(change.to_payload())

    @app.route("/sessions/<session_id>/cells/<cell_id>/move", methods=["POST"])
    def api_cell_move(session_id, cell_id):
        session = manager.get_session(session_id)
        index = _int_field(_body(), "index")
        if index is None:
            raise ValidationError("index is required")
        change = manager.move_cell(session, cell_id, index)
        return jsonify(change.to_payload())

    @app.route("/sessions/<session_id>/cells/<cell_id>/exec", methods=["POST"])
    def api_cell_execute(session_id, cell_id):
        session = manager.get_session(session_id)
        result = manager.execute_cell(session, cell_id)
        return jsonify({
            **result.to_dict(),
            "cell": session.store.get(cell_id).model_dump(mode="json"),
        })

    @app.route("/sessions/<session_id>/cells/<cell_id>/stop", methods=["POST"])
    def api_cell_stop(session_id, cell_id):
        session = manager.get_session(session_id)
        return jsonify({"cancelled": manager.cancel_execution(session, cell_id)})

    @app.route("/sessions/<session_id>/cells/<cell_id>/diagnostics", methods=["GET"])
    def api_cell_diagnostics(session_id, cell_id):
        session = manager.get_session(session_id)
        cursor = None
        if "line" in request.args:
            cursor = Position(
                line=request.args.get("line", 1, type=int),
                offset=request.args.get("offset", 1, type=int),
            )
        diagnostics = manager.diagnose_cell(session, cell_id, cursor)
        return jsonify({"diagnostics": [d.model_dump() for d in diagnostics]})

    # ------------------------------------------------------------------ #
    # History and diffs
    # ------------------------------------------------------------------ #

    @app.route("/sessions/<session_id>/diffs", methods=["POST"])
    def api_diff_apply(session_id):
        session = manager.get_session(session_id)
        data = _body()
        files = data.get("files")
        if not isinstance(files, list):
            raise ValidationError("files must be a list")
        result = manager.apply_diff(session, files, plan_id=data.get("plan_id"))
        return jsonify(result.to_payload())

    @app.route("/sessions/<session_id>/diffs/<entry_id>/revert", methods=["POST"])
    def api_diff_revert(session_id, entry_id):
        session = manager.get_session(session_id)
        return jsonify(manager.revert_diff(session, entry_id).to_payload())

    @app.route("/sessions/<session_id>/history", methods=["GET"])
    def api_history(session_id):
        session = manager.get_session(session_id)
        return jsonify({"entries": session.history.to_list()})

    @app.route("/sessions/<session_id>/history", methods=["POST"])
    def api_history_append(session_id):
        session = manager.get_session(session_id)
        entry = manager.append_history(session, _body())
        return jsonify(entry.model_dump(mode="json")), 201

    # ------------------------------------------------------------------ #
    # Evaluation context
    # ------------------------------------------------------------------ #

    @app.route("/sessions/<session_id>/reset", methods=["POST"])
    def api_reset(session_id):
        manager.reset_context(manager.get_session(session_id))
        return jsonify({"ok": True})

    @app.route("/sessions/<session_id>/variables", methods=["GET"])
    def api_variables(session_id):
        session = manager.get_session(session_id)
        return jsonify({"variables": manager.variables(session)})

    @app.route("/sessions/<session_id>/deps", methods=["GET"])
    def api_deps_missing(session_id):
        session = manager.get_session(session_id)
        return jsonify({"missing": manager.missing_packages(session)})

    @app.route("/sessions/<session_id>/deps", methods=["POST"])
    def api_deps_install(session_id):
        session = manager.get_session(session_id)
        packages = _body().get("packages")
        if not isinstance(packages, list) or not all(isinstance(p, str) for p in packages):
            raise ValidationError("packages must be a list of strings")
        return jsonify(manager.install_packages(session, packages))

    @app.route("/settings", methods=["GET"])
    def api_settings():
        return jsonify(settings.model_dump(mode="json"))

    # ------------------------------------------------------------------ #
    # Realtime
    # ------------------------------------------------------------------ #

    def _sender(sid: str):
        def send(message: list) -> None:
            socketio.emit("message", message, to=sid)
        return send

    def _on_connection_closed(connection: Connection) -> None:
        if connections.get(connection.id) is connection:
            del connections[connection.id]
        if connection.close_reason == "slow":
            socketio.server.disconnect(connection.id, namespace="/")

    def _emit_error(sid: str, topic: Any, error: CellSyncError, payload: Any) -> None:
        cell_id = payload.get("cellId") if isinstance(payload, dict) else None
        error_payload = validate_outbound("cell:error", {
            "type": error.kind,
            "message": str(error),
            "cellId": cell_id if isinstance(cell_id, str) else None,
        })
        socketio.emit("message", [topic, "cell:error", error_payload], to=sid)

    @socketio.on("connect")
    def handle_connect():
        logger.debug("Client connected: %s", request.sid)

    @socketio.on("disconnect")
    def handle_disconnect(*args):
        connection = connections.pop(request.sid, None)
        if connection is not None:
            connection.close(reason="disconnected")
        logger.debug("Client disconnected: %s", request.sid)

    @socketio.on("message")
    def handle_message(data):
        sid = request.sid
        topic, payload = None, None
        try:
            topic, event, payload = parse_message(data)
            if event == "subscribe":
                previous = connections.pop(sid, None)
                if previous is not None:
                    previous.close(reason="resubscribed")
                connection = broadcaster.connect(
                    _sender(sid), connection_id=sid, on_close=_on_connection_closed,
                )
                broadcaster.dispatch(topic, event, payload, connection)
                connections[sid] = connection
                return

            connection = connections.get(sid)
            if connection is None or connection.topic != topic:
                logger.warning("Client %s sent %s for unsubscribed topic %s", sid, event, topic)
                return
            broadcaster.dispatch(topic, event, payload, connection)
        except CellSyncError as e:
            _emit_error(sid, topic, e, payload)

    return app, socketio


def launch_web(manager: SessionManager, settings: Optional[Settings] = None, host: Optional[str] = None, port: Optional[int] = None):
    """
    Run the web server until interrupted.

    Args:
        manager: Session manager to serve
        settings: Settings, defaults to the manager's
        host: Interface to bind, defaults to settings.host
        port: Port to bind, defaults to settings.port
    """
    settings = settings or manager.settings
    app, socketio = create_app(manager, settings)

    socketio.run(
        app,
        host=host or settings.host,
        port=port or settings.port,
        debug=False,
        use_reloader=False,
        allow_unsafe_werkzeug=True,
    )
