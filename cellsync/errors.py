"""
Exception types raised by the session engine.

Runtime failures inside a cell are not exceptions: they are reported as data
on the ExecutionResult. Everything here is raised to the immediate caller and
translated into a typed response at the web, socket and MCP boundaries.
"""


class CellSyncError(Exception):
    """Base class for all engine errors."""

    #: Short machine-readable name used on the wire.
    kind = "error"

    def to_dict(self) -> dict:
        return {"error": True, "type": self.kind, "message": str(self)}


class NotFound(CellSyncError):
    kind = "not_found"


class SessionNotFound(NotFound):
    kind = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id!r} not found")
        self.session_id = session_id


class CellNotFound(NotFound):
    kind = "cell_not_found"

    def __init__(self, cell_id: str):
        super().__init__(f"Cell {cell_id!r} not found")
        self.cell_id = cell_id


class ValidationError(CellSyncError):
    """Rejected before any mutation took place."""
    kind = "validation"


class InvalidFilename(ValidationError):
    kind = "invalid_filename"


class DuplicateFilename(ValidationError):
    kind = "duplicate_filename"


class PathConflict(ValidationError):
    kind = "path_conflict"


class StaleBase(CellSyncError):
    """A diff edit was derived from source that no longer matches the cell."""
    kind = "stale_base"

    def __init__(self, path: str):
        super().__init__(
            f"Cannot apply edit to {path!r}: the file changed since the diff was generated"
        )
        self.path = path


class CollaboratorUnavailable(CellSyncError):
    """Diagnostics, planner or installer could not be reached."""
    kind = "collaborator_unavailable"


class ContextUnavailable(CellSyncError):
    """The evaluation context could not be created or died. Fatal to the session."""
    kind = "context_unavailable"


class SessionClosed(CellSyncError):
    kind = "session_closed"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id!r} is closed")
        self.session_id = session_id
