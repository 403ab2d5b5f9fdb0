"""
MCP server for cellsync using FastMCP.

Lets an AI agent work on live sessions the way the web client does:
- Reading: list_sessions, list_cells, get_cell_source, get_history
- Changing: apply_diff, revert_diff, install_packages
- Running: run_cell

The tools operate on an explicit SessionManager, so the MCP server sees and
changes the same sessions as the web server in the same process.
"""

from contextlib import contextmanager
from typing import Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel, Field

from cellsync.errors import CellNotFound, CellSyncError
from cellsync.session import SessionManager
from cellsync.utils import join_output


class SessionInfo(BaseModel):
    """Summary of a live session."""
    id: str = Field(description="Session identifier")
    title: str = Field(description="Notebook title")
    directory: str = Field(description="Session directory")
    cell_count: int = Field(description="Total number of cells")


class CellOutput(BaseModel):
    """A cell as seen by an agent."""
    index: int = Field(description="Cell index in the notebook")
    id: str = Field(description="Unique cell identifier")
    type: str = Field(description="Cell type: title, markdown, code or requirements")
    filename: Optional[str] = Field(default=None, description="File name of code and requirements cells")
    source: str = Field(description="Cell source or text")
    stale: bool = Field(default=False, description="Output no longer reflects the source")
    stdout: str = Field(default="", description="stdout of the last run")
    stderr: str = Field(default="", description="stderr of the last run")


class CellList(BaseModel):
    """List of cells."""
    cells: list[CellOutput] = Field(description="Array of cells")


class RunResult(BaseModel):
    success: bool
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = Field(default=None, description="Exception name and message if the run failed")


@contextmanager
def _engine_errors():
    try:
        yield
    except CellSyncError as e:
        raise ToolError(f"{e.kind}: {e}") from e


def _cell_to_output(cell, index: int) -> CellOutput:
    source = cell.text if cell.type in ("title", "markdown") else cell.source
    output = getattr(cell, "output", ())
    return CellOutput(
        index=index,
        id=cell.id,
        type=cell.type,
        filename=getattr(cell, "filename", None),
        source=source,
        stale=getattr(cell, "stale", False),
        stdout=join_output(output, "stdout"),
        stderr=join_output(output, "stderr"),
    )


class NotebookTools:
    """MCP tool implementations bound to one SessionManager."""

    def __init__(self, manager: SessionManager):
        self.manager = manager

    def _file_cell(self, session, filename: str):
        cell = session.store.find_by_filename(filename)
        if cell is None:
            raise CellNotFound(filename)
        return cell

    def list_sessions(self) -> list[SessionInfo]:
        """List the live notebook sessions."""
        return [
            SessionInfo(id=s.id, title=s.title, directory=str(s.directory), cell_count=len(s.store))
            for s in self.manager.list_sessions()
        ]

    def list_cells(self, session_id: str) -> CellList:
        """List all cells of a session in display order.

        Args:
            session_id: Session to read
        """
        with _engine_errors():
            session = self.manager.get_session(session_id)
            return CellList(cells=[_cell_to_output(c, i) for i, c in enumerate(session.store)])

    def get_cell_source(self, session_id: str, filename: str) -> str:
        """Get the current source of a code cell or of requirements.txt.

        Use it as the `original` of an edit diff.

        Args:
            session_id: Session to read
            filename: File name of the cell, e.g. 'analysis.py'
        """
        with _engine_errors():
            session = self.manager.get_session(session_id)
            return self._file_cell(session, filename).source

    def apply_diff(self, session_id: str, files: list[dict], plan_id: Optional[str] = None) -> dict:
        """Apply a multi-file diff to a session, all or nothing.

        Each file is {path, original, modified, type} where type is
        'create', 'edit' or 'delete'. An edit whose original no longer
        matches the cell is rejected; re-read the source and try again.

        Args:
            session_id: Session to change
            files: File diffs in application order
            plan_id: Optional plan the diff belongs to
        """
        with _engine_errors():
            session = self.manager.get_session(session_id)
            return self.manager.apply_diff(session, files, plan_id=plan_id).to_payload()

    def revert_diff(self, session_id: str, entry_id: str) -> dict:
        """Undo a previously applied diff.

        Args:
            session_id: Session to change
            entry_id: Id of the diff history entry
        """
        with _engine_errors():
            session = self.manager.get_session(session_id)
            return self.manager.revert_diff(session, entry_id).to_payload()

    def run_cell(self, session_id: str, filename: str) -> RunResult:
        """Run a code cell in the session's persistent context.

        Args:
            session_id: Session to run in
            filename: File name of the code cell
        """
        with _engine_errors():
            session = self.manager.get_session(session_id)
            cell = self._file_cell(session, filename)
            result = self.manager.execute_cell(session, cell.id)
        error = f"{result.error.ename}: {result.error.evalue}" if result.error else None
        return RunResult(
            success=result.success,
            stdout=join_output(result.output, "stdout"),
            stderr=join_output(result.output, "stderr"),
            error=error,
        )

    def install_packages(self, session_id: str, packages: list[str]) -> dict:
        """Add packages to requirements.txt and pip install them.

        Args:
            session_id: Session to change
            packages: Requirement strings, e.g. ['pandas', 'numpy>=2']
        """
        with _engine_errors():
            session = self.manager.get_session(session_id)
            return self.manager.install_packages(session, packages)

    def get_history(self, session_id: str) -> list[dict]:
        """Get the history of user messages, plans, commands and diffs.

        Args:
            session_id: Session to read
        """
        with _engine_errors():
            return self.manager.get_session(session_id).history.to_list()


def create_mcp_server(manager: SessionManager, name: str = "cellsync") -> FastMCP:
    """Build a FastMCP server whose tools act on manager's sessions."""
    mcp = FastMCP(name)
    tools = NotebookTools(manager)
    for tool in (
        tools.list_sessions,
        tools.list_cells,
        tools.get_cell_source,
        tools.apply_diff,
        tools.revert_diff,
        tools.run_cell,
        tools.install_packages,
        tools.get_history,
    ):
        mcp.add_tool(tool)
    return mcp
