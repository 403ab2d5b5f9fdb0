"""
SessionManager: registry and orchestrator of live sessions.

Every session owns a SessionActor, a single thread that runs the session's
operations one at a time in arrival order. Cell mutations, executions and
diff applications all go through it, which gives each session a total
order of commits. Broadcasts are published from the actor right after the
commit they describe, so every subscriber sees them in commit order.
"""

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from cellsync import persistence
from cellsync.broadcast import Broadcaster, Connection
from cellsync.cells import Cell, CellChange, CellStore, TitleCell, cell_from_dict, cell_to_dict
from cellsync.config import Settings
from cellsync.deps import PackageInstaller, PipInstaller, missing_packages
from cellsync.diagnostics import Diagnostic, DiagnosticsBridge, Position
from cellsync.errors import (
    CellSyncError,
    CollaboratorUnavailable,
    ContextUnavailable,
    SessionClosed,
    SessionNotFound,
    ValidationError,
)
from cellsync.events import session_id_from_topic, topic_for
from cellsync.history import (
    AppliedResult,
    DiffApplier,
    FileDiff,
    HistoryEntry,
    HistoryLog,
    PlanEntry,
    UserMessageEntry,
    entry_from_dict,
    parse_file_diffs,
)
from cellsync.kernel import ExecutionResult
from cellsync.sandbox import Sandbox
from cellsync.utils import get_timestamp, randomid

logger = logging.getLogger(__name__)

# Called with (query, cells) and returns plan messages:
#   {"type": "description", "content": str}
#   {"type": "command", "packages": [str], "description": str}
#   {"type": "file", "path": str, "modified": str, "delete": bool}
Planner = Callable[[str, tuple], Iterable[dict]]


class SessionActor:
    """Runs submitted callables one at a time on a dedicated thread."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._run,
            name=f"cellsync-session-{session_id}",
            daemon=True,
        )
        self._thread.start()

    @property
    def in_actor(self) -> bool:
        return threading.current_thread() is self._thread

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise SessionClosed(self.session_id)
            self._queue.put((future, fn, args, kwargs))
        return future

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Fail queued operations with SessionClosed and wait for the running one."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not None:
                    item[0].set_exception(SessionClosed(self.session_id))
            self._queue.put(None)
        if not self.in_actor:
            self._thread.join(timeout)


class Session:
    """One live notebook: its cells, history, evaluation context and topic."""

    def __init__(
        self,
        directory: Path,
        store: CellStore,
        sandbox: Sandbox,
        metadata: Optional[dict] = None,
        history: Optional[HistoryLog] = None,
        session_id: Optional[str] = None,
    ):
        self.id = session_id or randomid()
        self.directory = Path(directory)
        self.metadata = metadata or {}
        self.store = store
        self.history = history or HistoryLog()
        self.applier = DiffApplier(self.store, self.history)
        self.sandbox = sandbox
        self.topic = topic_for(self.id)
        self.actor = SessionActor(self.id)
        self.running_cell_id: Optional[str] = None
        self.closed = False
        self.created_at = get_timestamp()

    @property
    def cells(self) -> tuple[Cell, ...]:
        return self.store.cells

    @property
    def title(self) -> str:
        for cell in self.store:
            if cell.type == "title":
                return cell.text
        return self.metadata.get("title", self.directory.name)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "directory": str(self.directory),
            "cell_count": len(self.store),
            "running_cell_id": self.running_cell_id,
            "created_at": self.created_at,
        }

    def to_dict(self) -> dict:
        return {
            **self.summary(),
            "topic": self.topic,
            "metadata": self.metadata,
            "cells": [cell.model_dump(mode="json") for cell in self.store],
        }


class SessionManager:
    """
    Registry of live sessions.

    Built once at process start and handed to the web server, MCP server,
    autosaver and CLI.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broadcaster: Optional[Broadcaster] = None,
        diagnostics: Optional[DiagnosticsBridge] = None,
        installer: Optional[PackageInstaller] = None,
        sandbox_factory: Optional[Callable[[str, Path], Sandbox]] = None,
    ):
        self.settings = settings or Settings()
        self.broadcaster = broadcaster or Broadcaster(max_queue=self.settings.send_queue_size)
        self.diagnostics = diagnostics or DiagnosticsBridge()
        self.installer = installer or PipInstaller()
        self.sandbox_factory = sandbox_factory or self._default_sandbox
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.background_workers,
            thread_name_prefix="cellsync-bg",
        )
        self._register_handlers()

    def _default_sandbox(self, session_id: str, directory: Path) -> Sandbox:
        return Sandbox(
            session_id,
            working_dir=str(directory),
            start_timeout=self.settings.kernel_start_timeout,
            cancel_grace=self.settings.cancel_grace,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def create_session(
        self,
        directory: Union[str, Path],
        cells: Optional[Iterable[Union[Cell, dict]]] = None,
        metadata: Optional[dict] = None,
    ) -> Session:
        """
        Open a session for a directory.

        Cells are loaded from the directory when none are given. A
        directory that already has a live session returns that session.
        """
        directory = Path(directory).expanduser().resolve()
        with self._lock:
            for session in self._sessions.values():
                if session.directory == directory:
                    return session

        if cells is None:
            loaded = persistence.load_notebook(directory)
            if loaded is not None:
                cells, stored_metadata = loaded
                metadata = {**stored_metadata, **(metadata or {})}
            else:
                metadata = {**persistence.new_metadata(directory.name), **(metadata or {})}
                cells = [TitleCell(text=metadata["title"])]

        try:
            cells = [cell_from_dict(cell) if isinstance(cell, dict) else cell for cell in cells]
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid cell: {e}") from e
        store = CellStore(cells)
        directory.mkdir(parents=True, exist_ok=True)

        session_id = randomid()
        session = Session(
            directory,
            store,
            self.sandbox_factory(session_id, directory),
            metadata=metadata or {},
            session_id=session_id,
        )
        with self._lock:
            for existing in self._sessions.values():
                if existing.directory == directory:
                    session.actor.stop()
                    return existing
            self._sessions[session.id] = session
        logger.info("Created session %s for %s", session.id, directory)
        return session

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def list_sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def close_session(self, session_id: str, save: bool = False) -> None:
        """
        Close a session.

        Cancels the running execution, fails queued operations with
        SessionClosed, cancels pending client requests and discards the
        evaluation context.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)

        session.closed = True
        session.sandbox.cancel()
        session.actor.stop(timeout=self.settings.cancel_grace + 5.0)
        session.sandbox.shutdown()
        if save:
            persistence.save_notebook(session.directory, session.store.snapshot(), session.metadata)

        self.broadcaster.publish(session.topic, "session:closed", {"sessionId": session.id})
        self.broadcaster.close_topic(session.topic)
        logger.info("Closed session %s", session.id)

    def save_session(self, session: Session) -> Path:
        return persistence.save_notebook(session.directory, session.store.snapshot(), session.metadata)

    def shutdown(self) -> None:
        """Close every session and stop background work."""
        for session in self.list_sessions():
            try:
                self.close_session(session.id)
            except SessionNotFound:
                pass
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _call(self, session: Session, fn: Callable, *args, **kwargs) -> Any:
        return self._submit(session, fn, *args, **kwargs).result()

    def _submit(self, session: Session, fn: Callable, *args, **kwargs) -> Future:
        if session.closed:
            raise SessionClosed(session.id)
        return session.actor.submit(fn, session, *args, **kwargs)

    def _publish(self, session: Session, event: str, payload: dict) -> None:
        self.broadcaster.publish(session.topic, event, payload)

    def _publish_change(self, session: Session, change: CellChange) -> None:
        self._publish(session, f"cell:{change.kind}", change.to_payload())

    def _schedule_diagnostics(self, session: Session, changes: Iterable[CellChange]) -> None:
        for change in changes:
            if change.kind in ("inserted", "updated") and change.cell.type == "code":
                self._pool.submit(self._publish_diagnostics, session, change.cell)

    def _publish_diagnostics(self, session: Session, cell) -> None:
        diagnostics = self.diagnostics.diagnose(cell)
        if session.closed:
            return
        self._publish(session, "cell:diagnostics", {
            "cellId": cell.id,
            "diagnostics": [d.model_dump() for d in diagnostics],
        })

    # ------------------------------------------------------------------ #
    # Cell operations (serialized)
    # ------------------------------------------------------------------ #

    def insert_cell(self, session: Session, position: Optional[int], cell: Union[Cell, dict]) -> CellChange:
        if isinstance(cell, dict):
            try:
                cell = cell_from_dict(cell)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid cell: {e}") from e
        return self._call(session, self._insert_cell, position, cell)

    def _insert_cell(self, session: Session, position: Optional[int], cell: Cell) -> CellChange:
        if position is None:
            position = len(session.store)
        change = session.store.insert(position, cell)
        self._publish_change(session, change)
        self._schedule_diagnostics(session, [change])
        return change

    def update_cell(self, session: Session, cell_id: str, patch: dict) -> CellChange:
        return self._call(session, self._update_cell, cell_id, patch)

    def _update_cell(self, session: Session, cell_id: str, patch: dict) -> CellChange:
        change = session.store.update(cell_id, patch)
        self._publish_change(session, change)
        if "source" in change.changed:
            self._schedule_diagnostics(session, [change])
        return change

    def delete_cell(self, session: Session, cell_id: str) -> CellChange:
        return self._call(session, self._delete_cell, cell_id)

    def _delete_cell(self, session: Session, cell_id: str) -> CellChange:
        change = session.store.delete(cell_id)
        self._publish_change(session, change)
        return change

    def move_cell(self, session: Session, cell_id: str, position: int) -> CellChange:
        return self._call(session, self._move_cell, cell_id, position)

    def _move_cell(self, session: Session, cell_id: str, position: int) -> CellChange:
        change = session.store.move(cell_id, position)
        self._publish_change(session, change)
        return change

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def execute_cell(self, session: Session, cell_id: str) -> ExecutionResult:
        """Run a code cell and wait for the result."""
        return self.execute_cell_async(session, cell_id).result()

    def execute_cell_async(self, session: Session, cell_id: str) -> Future:
        """Queue a code cell for execution behind earlier operations."""
        return self._submit(session, self._execute_cell, cell_id)

    def _execute_cell(self, session: Session, cell_id: str) -> ExecutionResult:
        cell = session.store.get(cell_id)
        if cell.type != "code":
            raise ValidationError(f"Cell {cell_id!r} is not a code cell")

        # Armed before the cell shows as running, so an early cell:stop or close sticks.
        session.sandbox.prepare()
        if session.closed:
            raise SessionClosed(session.id)
        session.store.record_execution(cell_id, status="running", output=())
        session.running_cell_id = cell_id
        self._publish(session, "execution:started", {"cellId": cell_id})

        def on_input(request_id: str, prompt: str) -> Future:
            _, future = self.broadcaster.pending.expect(
                session.topic, request_id, timeout=self.settings.input_timeout,
            )
            self._publish(session, "cell:input-requested", {
                "cellId": cell_id,
                "requestId": request_id,
                "prompt": prompt,
            })
            return future

        try:
            result = session.sandbox.execute(
                cell.source,
                timeout=self.settings.execution_timeout,
                on_input=on_input,
            )
        except ContextUnavailable:
            session.running_cell_id = None
            change = session.store.record_execution(cell_id, status="idle")
            self._publish_change(session, change)
            logger.error("Evaluation context of session %s is unavailable, closing it", session.id)
            threading.Thread(target=self._close_quietly, args=(session.id,), daemon=True).start()
            raise
        session.running_cell_id = None

        fields = {"status": "idle", "output": tuple(result.output)}
        if result.success:
            fields["stale"] = False
        change = session.store.record_execution(cell_id, **fields)
        payload = {"cell": cell_to_dict(change.cell), "index": change.index, "result": result.to_dict()}
        if result.success:
            self._publish(session, "execution:completed", payload)
        else:
            self._publish(session, "execution:failed", {**payload, "error": result.error.model_dump()})
        return result

    def _close_quietly(self, session_id: str) -> None:
        try:
            self.close_session(session_id)
        except SessionNotFound:
            pass

    def cancel_execution(self, session: Session, cell_id: Optional[str] = None) -> bool:
        """
        Cancel the running execution.

        Bypasses the actor queue. Returns False if nothing (or another cell)
        is running.
        """
        running = session.running_cell_id
        if running is None or (cell_id is not None and cell_id != running):
            return False
        return session.sandbox.cancel()

    def reset_context(self, session: Session) -> None:
        """Discard the evaluation context. The next execution starts clean."""
        self._call(session, self._reset_context)

    def _reset_context(self, session: Session) -> None:
        session.sandbox.reset()
        self._publish(session, "context:reset", {})

    def variables(self, session: Session) -> list[dict[str, str]]:
        return self._call(session, lambda s: s.sandbox.variables())

    # ------------------------------------------------------------------ #
    # History and diffs
    # ------------------------------------------------------------------ #

    def apply_diff(
        self,
        session: Session,
        files: list[Union[FileDiff, dict]],
        plan_id: Optional[str] = None,
    ) -> AppliedResult:
        if not all(isinstance(f, FileDiff) for f in files):
            files = parse_file_diffs([f.model_dump() if isinstance(f, FileDiff) else f for f in files])
        return self._call(session, self._apply_diff, files, plan_id)

    def _apply_diff(self, session: Session, files: list[FileDiff], plan_id: Optional[str]) -> AppliedResult:
        result = session.applier.apply(files, plan_id=plan_id)
        self._publish(session, "diff:applied", result.to_payload())
        self._schedule_diagnostics(session, result.changes)
        return result

    def revert_diff(self, session: Session, entry_id: str) -> AppliedResult:
        return self._call(session, self._revert_diff, entry_id)

    def _revert_diff(self, session: Session, entry_id: str) -> AppliedResult:
        result = session.applier.revert(entry_id)
        self._publish(session, "diff:applied", result.to_payload())
        self._schedule_diagnostics(session, result.changes)
        return result

    def apply_command(
        self,
        session: Session,
        packages: list[str],
        description: str = "",
        plan_id: Optional[str] = None,
    ):
        return self._call(session, self._apply_command, packages, description, plan_id)

    def _apply_command(self, session: Session, packages: list[str], description: str, plan_id: Optional[str]):
        entry, change = session.applier.apply_command(packages, description, plan_id=plan_id)
        self._publish(session, "history:appended", {
            "entry": entry.model_dump(mode="json"),
            "changes": [{"kind": change.kind, **change.to_payload()}],
        })
        return entry, change

    def append_history(self, session: Session, entry: Union[HistoryEntry, dict]) -> HistoryEntry:
        """Record a user message or plan entry."""
        if isinstance(entry, dict):
            try:
                entry = entry_from_dict(entry)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid history entry: {e}") from e
        if entry.type in ("diff", "command"):
            raise ValidationError(f"{entry.type} entries are recorded by applying them")
        return self._call(session, self._append_history, entry)

    def _append_history(self, session: Session, entry: HistoryEntry) -> HistoryEntry:
        session.history.append(entry)
        self._publish(session, "history:appended", {"entry": entry.model_dump(mode="json")})
        return entry

    def run_plan(self, session: Session, query: str, planner: Planner) -> dict:
        """
        Ask a planner for changes and apply them.

        The user message is recorded first. Descriptions and commands are
        recorded in the order the planner produced them; file actions are
        applied at the end as a single atomic diff, based on the cells the
        planner was shown.
        """
        plan_id = randomid()
        self.append_history(session, UserMessageEntry(message=query, plan_id=plan_id))
        cells = session.store.snapshot()
        try:
            messages = list(planner(query, cells))
        except CellSyncError:
            raise
        except Exception as e:
            raise CollaboratorUnavailable(f"Planner failed: {e}") from e

        sources = {cell.filename: cell.source for cell in cells if cell.type in ("code", "requirements")}
        entries = []
        files = []
        for message in messages:
            kind = message.get("type")
            if kind == "description":
                entries.append(self.append_history(
                    session, PlanEntry(content=message["content"], plan_id=plan_id),
                ))
            elif kind == "command":
                entry, _ = self.apply_command(
                    session, message.get("packages", []), message.get("description", ""), plan_id=plan_id,
                )
                entries.append(entry)
            elif kind == "file":
                files.append(self._plan_file_diff(message, sources))
            else:
                raise ValidationError(f"Unknown plan message type {kind!r}")

        applied = self.apply_diff(session, files, plan_id=plan_id) if files else None
        return {"plan_id": plan_id, "entries": entries, "diff": applied}

    @staticmethod
    def _plan_file_diff(message: dict, sources: dict) -> FileDiff:
        path = message.get("path")
        if not path:
            raise ValidationError("Plan file action without a path")
        original = sources.get(Path(path).name)
        try:
            if message.get("delete"):
                return FileDiff(path=path, original=original, type="delete")
            if original is None:
                return FileDiff(path=path, modified=message.get("modified", ""), type="create")
            return FileDiff(path=path, original=original, modified=message.get("modified", ""), type="edit")
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed plan file action: {e}") from e

    # ------------------------------------------------------------------ #
    # Dependencies
    # ------------------------------------------------------------------ #

    def install_packages(self, session: Session, packages: list[str]) -> dict:
        """
        Add packages to requirements.txt and install them.

        The manifest change and its command entry are committed first; pip
        runs outside the session actor.
        """
        entry, _ = self.apply_command(session, packages, "Install packages")
        result = self.installer.install(list(entry.packages))
        if not session.closed:
            self._publish(session, "deps:installed", {
                "packages": list(entry.packages),
                "success": result.success,
                "output": result.output,
            })
        return {"packages": list(entry.packages), "success": result.success, "output": result.output}

    def missing_packages(self, session: Session) -> list[str]:
        manifest = session.store.manifest()
        if manifest is None:
            return []
        return missing_packages(manifest.source)

    # ------------------------------------------------------------------ #
    # Non-serialized
    # ------------------------------------------------------------------ #

    def diagnose_cell(self, session: Session, cell_id: str, cursor: Optional[Position] = None) -> list[Diagnostic]:
        cell = session.store.get(cell_id)
        if cell.type != "code":
            raise ValidationError(f"Cell {cell_id!r} is not a code cell")
        return self.diagnostics.diagnose(cell, cursor)

    def submit_ui_event(self, session: Session, request_id: str, value: Any) -> bool:
        """Answer a pending client request, e.g. an input() prompt."""
        return self.broadcaster.pending.resolve(session.topic, request_id, value)

    # ------------------------------------------------------------------ #
    # Client events
    # ------------------------------------------------------------------ #

    def _register_handlers(self) -> None:
        on = self.broadcaster.on
        on("subscribe", self._on_subscribe)
        on("unsubscribe", self._on_unsubscribe)
        on("cell:exec", self._on_exec)
        on("cell:stop", lambda topic, p, c: self.cancel_execution(self._session_for(topic), p.cellId))
        on("cell:create", lambda topic, p, c: self.insert_cell(self._session_for(topic), p.index, p.cell))
        on("cell:update", lambda topic, p, c: self.update_cell(self._session_for(topic), p.cellId, p.updates))
        on("cell:delete", lambda topic, p, c: self.delete_cell(self._session_for(topic), p.cellId))
        on("cell:move", lambda topic, p, c: self.move_cell(self._session_for(topic), p.cellId, p.index))
        on("deps:install", self._on_deps_install)

    def _session_for(self, topic: str) -> Session:
        return self.get_session(session_id_from_topic(topic))

    def _on_subscribe(self, topic: str, payload, connection: Optional[Connection]) -> None:
        session = self._session_for(topic)
        if connection is not None:
            self.broadcaster.subscribe(connection, session.topic)

    def _on_unsubscribe(self, topic: str, payload, connection: Optional[Connection]) -> None:
        if connection is not None and connection.topic == topic:
            self.broadcaster.unsubscribe(connection)

    def _report_failure(self, session: Session, cell_id: Optional[str], future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if isinstance(error, CellSyncError) and not isinstance(error, SessionClosed) and not session.closed:
            self._publish(session, "cell:error", {"type": error.kind, "message": str(error), "cellId": cell_id})
        elif error is not None and not isinstance(error, CellSyncError):
            logger.error("Background operation on session %s failed: %s", session.id, error)

    def _on_exec(self, topic: str, payload, connection: Optional[Connection]) -> Future:
        session = self._session_for(topic)
        future = self.execute_cell_async(session, payload.cellId)
        future.add_done_callback(lambda f: self._report_failure(session, payload.cellId, f))
        return future

    def _on_deps_install(self, topic: str, payload, connection: Optional[Connection]) -> Future:
        session = self._session_for(topic)
        future = self._pool.submit(self.install_packages, session, payload.packages)
        future.add_done_callback(lambda f: self._report_failure(session, None, f))
        return future
