"""
Utility functions for cellsync.
"""

import base64
import difflib
import os
import re
from datetime import datetime
from typing import Iterable

from rich.syntax import Syntax
from rich.text import Text


FILENAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.py$")
MANIFEST_FILENAME = "requirements.txt"


def randomid(byte_size: int = 16) -> str:
    """Random lowercase base32 identifier."""
    return base64.b32hexencode(os.urandom(byte_size)).decode("ascii").rstrip("=").lower()


def valid_filename(filename: str) -> bool:
    """Check a code cell filename: letters, digits, underscores, dashes, ending in .py"""
    return bool(FILENAME_PATTERN.match(filename))


def requirement_name(line: str) -> str:
    """Normalized distribution name of a requirements.txt line."""
    name = re.split(r"[<>=!~;\[\s@]", line.strip(), maxsplit=1)[0]
    return name.lower().replace("_", "-")


def diff_stats(original: str, modified: str) -> tuple[int, int]:
    """
    Count added and removed lines between two versions of a file.

    Returns:
        Tuple of (additions, deletions)
    """
    additions = 0
    deletions = 0
    for line in difflib.ndiff(original.splitlines(), modified.splitlines()):
        if line.startswith("+ "):
            additions += 1
        elif line.startswith("- "):
            deletions += 1
    return additions, deletions


def join_output(output: Iterable, kind: str = "stdout") -> str:
    """Concatenate the data of all output chunks of one kind."""
    return "".join(chunk.data for chunk in output if chunk.kind == kind)


def format_rich_output(chunk):
    """
    Format an output chunk as a Rich renderable.

    stderr is shown in yellow, stdout as plain text.
    """
    text = chunk.data.rstrip("\n")
    if chunk.kind == "stderr":
        return Text(text, style="yellow")
    return Text(text)


def format_rich_error(error) -> Text:
    """Render a RuntimeFailure with its traceback."""
    error_text = Text()
    error_text.append(f"{error.ename}", style="bold red")
    error_text.append(f": {error.evalue}", style="red")
    if error.traceback:
        error_text.append(f"\n{error.traceback.rstrip()}", style="dim red")
    return error_text


def format_rich_source(source: str) -> Syntax:
    return Syntax(source, "python", theme="monokai", line_numbers=True)


def get_cell_type_icon(cell_type: str) -> str:
    """Get a short label for the cell type."""
    return {
        "title": "h1",
        "markdown": "md",
        "code": "py",
        "requirements": "req",
    }.get(cell_type, "??")


def get_cell_status(cell) -> tuple[str, str]:
    """
    Get status indicator and style for a code cell.

    Returns:
        Tuple of (indicator_string, rich_style)
    """
    if cell.status == "running":
        return ("run", "cyan")
    if cell.stale:
        return ("stale", "yellow")
    if cell.output:
        return ("ok", "green")
    return ("--", "dim")


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to max_length, adding ellipsis if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def get_timestamp() -> str:
    """Get current timestamp string."""
    return datetime.now().isoformat()


def slugify(title: str) -> str:
    """Directory-safe name for a notebook title."""
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", title).strip("-").lower()
    return slug or randomid(8)
