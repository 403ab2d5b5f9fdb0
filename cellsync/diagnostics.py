"""
Diagnostics bridge.

Forwards a code cell's source to a type-checking collaborator and maps the
results back onto the cell. The collaborator is best effort: if it fails,
the cell simply has no diagnostics.
"""

import logging
from typing import Literal, Optional, Protocol

from pydantic import BaseModel, ValidationError as PydanticValidationError

from cellsync.errors import CollaboratorUnavailable

logger = logging.getLogger(__name__)


class Position(BaseModel):
    """1-based line and offset inside a cell's source."""
    line: int
    offset: int


class Diagnostic(BaseModel):
    cell_id: str = ""
    code: int = 0
    category: Literal["error", "warning", "suggestion", "message"] = "error"
    text: str
    start: Position
    end: Position


class Checker(Protocol):
    def check(self, file_path: str, source: str, line: int, offset: int) -> list[dict]:
        ...


class SyntaxChecker:
    """Default collaborator: reports the first syntax error found by compile()."""

    def check(self, file_path: str, source: str, line: int, offset: int) -> list[dict]:
        try:
            compile(source, file_path, "exec")
        except SyntaxError as e:
            err_line = e.lineno or 1
            err_offset = e.offset or 1
            end_line = getattr(e, "end_lineno", None) or err_line
            end_offset = getattr(e, "end_offset", None) or err_offset + 1
            return [{
                "code": 1,
                "category": "error",
                "text": f"{type(e).__name__}: {e.msg}",
                "start": {"line": err_line, "offset": err_offset},
                "end": {"line": end_line, "offset": max(end_offset, err_offset)},
            }]
        return []


def _clamp(position: Position, lines: list[str]) -> Position:
    line = max(1, min(position.line, len(lines)))
    offset = max(1, min(position.offset, len(lines[line - 1]) + 1))
    return Position(line=line, offset=offset)


class DiagnosticsBridge:
    def __init__(self, checker: Optional[Checker] = None):
        self.checker = checker or SyntaxChecker()

    def diagnose(self, cell, cursor: Optional[Position] = None) -> list[Diagnostic]:
        """
        Collect diagnostics for a code cell.

        Args:
            cell: CodeCell to check
            cursor: Optional cursor position forwarded to the collaborator

        Returns:
            Diagnostics clamped to the cell's source, or [] if the
            collaborator is unavailable or answered with garbage.
        """
        cursor = cursor or Position(line=1, offset=1)
        try:
            raw = self.checker.check(cell.filename, cell.source, cursor.line, cursor.offset)
        except (CollaboratorUnavailable, OSError, TimeoutError) as e:
            logger.warning("Diagnostics unavailable for %s: %s", cell.filename, e)
            return []

        lines = cell.source.splitlines() or [""]
        diagnostics = []
        for item in raw or []:
            try:
                diagnostic = Diagnostic(cell_id=cell.id, **item)
            except (PydanticValidationError, TypeError) as e:
                logger.warning("Dropping malformed diagnostic for %s: %s", cell.filename, e)
                continue
            diagnostics.append(diagnostic.model_copy(update={
                "start": _clamp(diagnostic.start, lines),
                "end": _clamp(diagnostic.end, lines),
            }))
        return diagnostics
