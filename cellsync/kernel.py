"""
NotebookKernel: IPython shell that keeps execution state between cells.

One kernel lives inside each session's worker process (see sandbox.py), so
the namespace persists across runs of that session and is never shared with
another session.
"""

import sys
import traceback
from dataclasses import dataclass, field
from typing import Callable, Optional

from IPython.core.displayhook import DisplayHook
from IPython.core.interactiveshell import InteractiveShell
from pydantic import BaseModel
from traitlets import Type
from traitlets.config import Config

from cellsync.cells import OutputChunk
from cellsync.utils import truncate_text


class RuntimeFailure(BaseModel):
    """An uncaught exception raised by cell code."""
    ename: str
    evalue: str
    traceback: str = ""


@dataclass
class ExecutionResult:
    """Result of executing a code cell."""
    success: bool
    output: list[OutputChunk] = field(default_factory=list)
    error: Optional[RuntimeFailure] = None
    execution_count: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "output": [chunk.model_dump() for chunk in self.output],
            "error": self.error.model_dump() if self.error else None,
            "execution_count": self.execution_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionResult":
        """Create from dictionary."""
        error = data.get("error")
        return cls(
            success=data["success"],
            output=[OutputChunk(**chunk) for chunk in data.get("output", [])],
            error=RuntimeFailure(**error) if error else None,
            execution_count=data.get("execution_count", 0),
        )


class BareDisplayHook(DisplayHook):
    """Display hook that prints the value of the last expression without an Out[n] prompt."""

    def write_output_prompt(self):
        pass


class SandboxShell(InteractiveShell):
    """
    InteractiveShell that never prints tracebacks.

    Exceptions are reported through ExecutionResult.error instead of being
    written to stdout with terminal colors.
    """

    displayhook_class = Type(BareDisplayHook)

    def showtraceback(self, *args, **kwargs):
        pass

    def showsyntaxerror(self, *args, **kwargs):
        pass

    def showindentationerror(self):
        pass


class StreamWriter:
    """
    File-like object that records every write as an OutputChunk.

    stdout and stderr writers share one list, so chunks keep the order in
    which the cell emitted them.
    """

    def __init__(self, chunks: list[OutputChunk], kind: str):
        self.chunks = chunks
        self.kind = kind

    def write(self, text: str) -> int:
        if text:
            data = text
            if self.chunks and self.chunks[-1].kind == self.kind:
                data = self.chunks.pop().data + text
            self.chunks.append(OutputChunk(kind=self.kind, data=data))
        return len(text)

    def writelines(self, lines):
        for line in lines:
            self.write(line)

    def flush(self):
        pass

    def isatty(self):
        return False


def _failure_from_exception(exc: BaseException) -> RuntimeFailure:
    return RuntimeFailure(
        ename=type(exc).__name__,
        evalue=str(exc),
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )


class NotebookKernel:
    """
    Persistent IPython kernel that maintains execution state.

    This kernel wraps IPython's InteractiveShell to provide:
    - Persistent namespace across cell executions
    - Ordered stdout/stderr capture
    - The repr of a trailing expression as stdout, like a REPL
    """

    def __init__(self, input_handler: Optional[Callable[[str], str]] = None):
        """
        Initialize the kernel with a fresh IPython shell.

        Args:
            input_handler: Replacement for input() inside cells
        """
        config = Config()
        config.HistoryManager.enabled = False
        self.ip = SandboxShell(config=config)
        self.input_handler = input_handler
        self.execution_count = 0
        self._setup_namespace()

    def _setup_namespace(self):
        """Set up the initial namespace."""
        self.ip.user_ns["__notebook__"] = True
        if self.input_handler is not None:
            self.ip.user_ns["input"] = self.input_handler

    def execute_cell(self, code: str) -> ExecutionResult:
        """
        Execute code and return result with outputs.

        Args:
            code: Python code to execute

        Returns:
            ExecutionResult with ordered output chunks and status
        """
        self.execution_count += 1
        chunks: list[OutputChunk] = []
        error = None

        old_stdout, old_stderr = sys.stdout, sys.stderr
        try:
            sys.stdout = StreamWriter(chunks, "stdout")
            sys.stderr = StreamWriter(chunks, "stderr")
            result = self.ip.run_cell(code, store_history=False, silent=False)
        finally:
            sys.stdout, sys.stderr = old_stdout, old_stderr

        exc = result.error_before_exec or result.error_in_exec
        if exc is not None:
            error = _failure_from_exception(exc)

        return ExecutionResult(
            success=error is None,
            output=chunks,
            error=error,
            execution_count=self.execution_count,
        )

    def get_defined_names(self) -> list[str]:
        """Get list of user-defined names in namespace."""
        hidden = set(self.ip.user_ns_hidden)
        return [
            k for k in self.ip.user_ns.keys()
            if not k.startswith("_") and k not in hidden and k != "input"
        ]

    def describe_variables(self) -> list[dict[str, str]]:
        """Name, type and a short repr of every user-defined variable."""
        variables = []
        for name in sorted(self.get_defined_names()):
            value = self.ip.user_ns[name]
            variables.append({
                "name": name,
                "type": type(value).__name__,
                "value": truncate_text(repr(value), 200),
            })
        return variables
