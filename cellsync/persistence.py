"""
Reading and writing session directories.

A session directory holds notebook.json (cells and metadata) and, when the
session has a package manifest, requirements.txt with the manifest source.
The engine only ever sees the decoded {cells, metadata} shape.
"""

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from cellsync.cells import Cell, cell_from_dict, cell_to_dict
from cellsync.errors import ValidationError
from cellsync.utils import MANIFEST_FILENAME, get_timestamp

logger = logging.getLogger(__name__)

NOTEBOOK_FILENAME = "notebook.json"
FORMAT_VERSION = "1.0"


def encode(cells: Iterable[Cell], metadata: dict) -> dict:
    """Convert cells and metadata to the notebook.json document."""
    encoded = []
    for cell in cells:
        data = cell_to_dict(cell)
        if cell.type == "requirements":
            # source lives in requirements.txt
            data.pop("source")
        elif cell.type == "code":
            data["status"] = "idle"
        elif cell.type == "markdown":
            data.pop("tokens")
        encoded.append(data)
    return {"version": FORMAT_VERSION, "cells": encoded, "metadata": metadata}


def decode(document: dict, manifest_source: str = "") -> tuple[list[Cell], dict]:
    """Rebuild cells and metadata from a notebook.json document."""
    try:
        cells = []
        for data in document.get("cells", []):
            if data.get("type") == "requirements":
                data = {**data, "source": manifest_source}
            cells.append(cell_from_dict(data))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid notebook document: {e}") from e
    return cells, dict(document.get("metadata", {}))


def document_hash(document: dict) -> str:
    content = json.dumps(document, sort_keys=True).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def notebook_exists(directory: Path) -> bool:
    return (Path(directory) / NOTEBOOK_FILENAME).is_file()


def load_notebook(directory: Path) -> Optional[tuple[list[Cell], dict]]:
    """
    Load a session directory.

    Returns:
        (cells, metadata), or None if the directory holds no notebook
    """
    directory = Path(directory)
    path = directory / NOTEBOOK_FILENAME
    if not path.is_file():
        return None

    try:
        document = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e

    manifest_path = directory / MANIFEST_FILENAME
    manifest_source = manifest_path.read_text() if manifest_path.is_file() else ""
    return decode(document, manifest_source)


def save_notebook(directory: Path, cells: Iterable[Cell], metadata: dict) -> Path:
    """Write cells and metadata to a session directory."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    cells = list(cells)
    document = encode(cells, metadata)
    path = directory / NOTEBOOK_FILENAME
    path.write_text(json.dumps(document, indent=2) + "\n")

    for cell in cells:
        if cell.type == "requirements":
            (directory / MANIFEST_FILENAME).write_text(cell.source)
            break
    return path


def new_metadata(title: str = "Untitled") -> dict:
    now = get_timestamp()
    return {"title": title, "created": now, "modified": now}


class AutoSaver:
    """
    Periodically write live sessions back to their directories.

    A session is only written when the sha256 of its encoded form changed
    since the last write. Runs in a background thread.
    """

    def __init__(self, manager, interval: float = 5.0):
        """
        Args:
            manager: SessionManager whose sessions are saved
            interval: Seconds between passes
        """
        self.manager = manager
        self.interval = interval
        self._hashes: dict[str, str] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def save_if_changed(self, session) -> bool:
        """Write a session if its content changed. Returns True if written."""
        cells = session.store.snapshot()
        document = encode(cells, session.metadata)
        digest = document_hash(document)
        with self._lock:
            if self._hashes.get(session.id) == digest:
                return False
        save_notebook(session.directory, cells, session.metadata)
        with self._lock:
            self._hashes[session.id] = digest
        logger.debug("Saved session %s to %s", session.id, session.directory)
        return True

    def save_all(self) -> int:
        saved = 0
        sessions = self.manager.list_sessions()
        live = {session.id for session in sessions}
        with self._lock:
            for session_id in set(self._hashes) - live:
                del self._hashes[session_id]
        for session in sessions:
            try:
                if self.save_if_changed(session):
                    saved += 1
            except OSError as e:
                logger.error("Autosave of session %s failed: %s", session.id, e)
        return saved

    def _save_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.save_all()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._save_loop, name="cellsync-autosave", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the thread after a final save pass."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 0.5)
            self._thread = None
        self.save_all()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
