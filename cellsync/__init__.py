"""
cellsync: notebooks with a persistent, shared Python session.

This package provides a notebook engine where:
- Code cells run against one persistent evaluation context per session
- Several clients can attach to a session and receive every change in order
- AI generated multi-file diffs are applied atomically and can be reverted
"""

from cellsync.cells import (
    Cell,
    CellStore,
    CodeCell,
    MarkdownCell,
    OutputChunk,
    PackageManifestCell,
    TitleCell,
)
from cellsync.config import Settings, load_settings
from cellsync.history import FileDiff, HistoryLog
from cellsync.kernel import ExecutionResult, NotebookKernel
from cellsync.session import Session, SessionManager

__version__ = "0.1.0"
__all__ = [
    "Cell",
    "CellStore",
    "CodeCell",
    "MarkdownCell",
    "OutputChunk",
    "PackageManifestCell",
    "TitleCell",
    "Settings",
    "load_settings",
    "FileDiff",
    "HistoryLog",
    "ExecutionResult",
    "NotebookKernel",
    "Session",
    "SessionManager",
]
