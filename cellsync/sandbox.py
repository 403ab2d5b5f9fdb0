"""
Execution sandbox: one isolated, stateful evaluation context per session.

The context is a NotebookKernel running in a dedicated worker process. The
parent talks to it over a pair of multiprocessing queues:

    parent -> worker   execute, input_reply, variables, shutdown
    worker -> parent   status, execute_done, input_request, variables_reply

Running the kernel out of process keeps sessions isolated from each other
and lets a cancellation interrupt (SIGINT) or, failing that, kill the
context without touching the server.
"""

import logging
import multiprocessing
import os
import signal
import threading
import time
from concurrent.futures import Future
from queue import Empty
from typing import Callable, Optional

from cellsync.errors import ContextUnavailable
from cellsync.kernel import ExecutionResult, RuntimeFailure
from cellsync.utils import randomid

logger = logging.getLogger(__name__)

# Called with (request_id, prompt) when cell code calls input().
InputHandler = Callable[[str, str], Future]

_POLL_INTERVAL = 0.05


def kernel_worker_main(input_queue, output_queue, working_dir=None):
    """
    Main loop for the kernel subprocess.

    Waits for commands on input_queue and sends results to output_queue.
    SIGINT raises KeyboardInterrupt in whatever the cell is running.
    """
    from cellsync.kernel import NotebookKernel

    def sigint_handler(signum, frame):
        raise KeyboardInterrupt("Execution interrupted")

    signal.signal(signal.SIGINT, sigint_handler)
    if working_dir and os.path.isdir(working_dir):
        os.chdir(working_dir)

    def remote_input(prompt=""):
        import sys

        request_id = randomid(8)
        if prompt:
            sys.stdout.write(str(prompt))
        output_queue.put({"type": "input_request", "request_id": request_id, "prompt": str(prompt)})
        while True:
            msg = input_queue.get()
            if msg.get("type") == "input_reply" and msg.get("request_id") == request_id:
                if msg.get("value") is None:
                    raise EOFError("No input available")
                return msg["value"]

    kernel = NotebookKernel(input_handler=remote_input)
    output_queue.put({"type": "status", "status": "ready", "pid": os.getpid()})

    while True:
        try:
            msg = input_queue.get()
        except KeyboardInterrupt:
            # SIGINT while idle
            continue

        msg_type = msg.get("type")
        if msg_type == "execute":
            try:
                result = kernel.execute_cell(msg["code"])
            except KeyboardInterrupt:
                # Interrupt landed outside of the cell code itself
                result = ExecutionResult(
                    success=False,
                    error=RuntimeFailure(ename="KeyboardInterrupt", evalue="Execution interrupted"),
                    execution_count=kernel.execution_count,
                )
            output_queue.put({
                "type": "execute_done",
                "exec_id": msg["exec_id"],
                "result": result.to_dict(),
            })

        elif msg_type == "variables":
            output_queue.put({
                "type": "variables_reply",
                "variables": kernel.describe_variables(),
            })

        elif msg_type == "shutdown":
            output_queue.put({"type": "status", "status": "shutdown"})
            break


def _cancelled_result(reason: str, result: Optional[ExecutionResult] = None) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        output=result.output if result else [],
        error=RuntimeFailure(ename="ExecutionCancelled", evalue=reason),
        execution_count=result.execution_count if result else 0,
    )


class Sandbox:
    """
    Persistent evaluation context for one session.

    Key features:
    - Lazy start: the worker is spawned on the first execution
    - Persistent namespace across executions (until reset)
    - Cancellation from any thread, with a kill-and-recreate fallback
    - input() inside cells is answered by a client through on_input
    """

    def __init__(
        self,
        session_id: str,
        working_dir: Optional[str] = None,
        start_timeout: float = 30.0,
        cancel_grace: float = 2.0,
    ):
        self.session_id = session_id
        self.working_dir = working_dir
        self.start_timeout = start_timeout
        self.cancel_grace = cancel_grace
        self.process = None
        self.input_queue = None
        self.output_queue = None
        self._mp = multiprocessing.get_context("spawn")
        self._cancel = threading.Event()
        self._pending = False
        self._busy = False

    @property
    def is_alive(self) -> bool:
        """Check if the worker process is running."""
        return self.process is not None and self.process.is_alive()

    def _start_process(self):
        """Start the worker process and wait for its ready signal."""
        self.input_queue = self._mp.Queue()
        self.output_queue = self._mp.Queue()
        self.process = self._mp.Process(
            target=kernel_worker_main,
            args=(self.input_queue, self.output_queue, self.working_dir),
            name=f"cellsync-kernel-{self.session_id}",
            daemon=True,
        )
        try:
            self.process.start()
            msg = self.output_queue.get(timeout=self.start_timeout)
        except (OSError, Empty) as e:
            self._kill()
            raise ContextUnavailable(f"Could not start evaluation context: {e or 'timed out'}") from e

        if msg.get("type") != "status" or msg.get("status") != "ready":
            self._kill()
            raise ContextUnavailable(f"Unexpected message from kernel worker: {msg!r}")
        logger.info("Started kernel for session %s (pid %s)", self.session_id, msg.get("pid"))

    def execute(
        self,
        code: str,
        timeout: Optional[float] = None,
        on_input: Optional[InputHandler] = None,
    ) -> ExecutionResult:
        """
        Run code in the session's context.

        Blocks until the code finishes, is cancelled, or exceeds timeout.
        Callers are expected to serialize calls per session.

        Args:
            code: Python source to run
            timeout: Seconds after which the execution is cancelled
            on_input: Called when cell code asks for input()

        Returns:
            ExecutionResult; runtime errors and cancellations are reported
            through its error field.
        """
        if not self._pending:
            self._cancel.clear()
        self._busy = True
        self._pending = False
        interrupted_at = None
        reason = ""
        pending_input: Optional[tuple[str, Future]] = None

        try:
            if not self._cancel.is_set() and not self.is_alive:
                self._start_process()
            if self._cancel.is_set():
                return _cancelled_result("Execution cancelled")

            exec_id = randomid(8)
            self.input_queue.put({"type": "execute", "code": code, "exec_id": exec_id})
            deadline = time.monotonic() + timeout if timeout is not None else None

            while True:
                now = time.monotonic()
                if interrupted_at is None:
                    if self._cancel.is_set():
                        reason = "Execution cancelled"
                    elif deadline is not None and now >= deadline:
                        reason = f"Execution timed out after {timeout}s"
                    if reason:
                        interrupted_at = now
                        self._interrupt()
                elif now - interrupted_at > self.cancel_grace:
                    # The context did not come back from the interrupt. It
                    # cannot be rolled back, so discard it entirely.
                    logger.warning(
                        "Kernel for session %s did not respond to interrupt, restarting",
                        self.session_id,
                    )
                    self._kill()
                    return _cancelled_result(reason)

                if pending_input is not None:
                    request_id, future = pending_input
                    if interrupted_at is not None:
                        future.cancel()
                    if future.done():
                        value = None if future.cancelled() else future.result()
                        self.input_queue.put({"type": "input_reply", "request_id": request_id, "value": value})
                        pending_input = None

                try:
                    msg = self.output_queue.get(timeout=_POLL_INTERVAL)
                except Empty:
                    if not self.is_alive:
                        logger.error("Kernel for session %s died during execution", self.session_id)
                        self._kill()
                        return ExecutionResult(
                            success=False,
                            error=RuntimeFailure(
                                ename="KernelDied",
                                evalue="The evaluation context terminated unexpectedly",
                            ),
                        )
                    continue

                msg_type = msg.get("type")
                if msg_type == "execute_done" and msg.get("exec_id") == exec_id:
                    result = ExecutionResult.from_dict(msg["result"])
                    if interrupted_at is not None:
                        return _cancelled_result(reason, result)
                    return result

                elif msg_type == "input_request":
                    if on_input is None or interrupted_at is not None:
                        self.input_queue.put({
                            "type": "input_reply",
                            "request_id": msg["request_id"],
                            "value": None,
                        })
                    else:
                        future = on_input(msg["request_id"], msg.get("prompt", ""))
                        pending_input = (msg["request_id"], future)

        finally:
            self._busy = False
            self._pending = False
            if pending_input is not None:
                pending_input[1].cancel()

    def prepare(self) -> None:
        """Mark an execution as pending so cancel() applies to it before it starts."""
        self._cancel.clear()
        self._pending = True

    def cancel(self) -> bool:
        """
        Request cancellation of the in-flight execution.

        Safe to call from any thread. A cancel that arrives after prepare()
        but before the code reaches the worker stops that execution from
        running at all. Returns False if nothing is running or pending.
        """
        if not (self._busy or self._pending):
            return False
        self._cancel.set()
        return True

    def variables(self, timeout: float = 5.0) -> list[dict[str, str]]:
        """Describe the variables defined in the context."""
        if not self.is_alive:
            return []
        self.input_queue.put({"type": "variables"})
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                msg = self.output_queue.get(timeout=_POLL_INTERVAL)
            except Empty:
                continue
            if msg.get("type") == "variables_reply":
                return msg["variables"]
        raise ContextUnavailable("Kernel did not answer in time")

    def _interrupt(self) -> bool:
        """Send SIGINT to the worker."""
        if self.process and self.process.is_alive():
            try:
                os.kill(self.process.pid, signal.SIGINT)
                return True
            except (ProcessLookupError, PermissionError):
                return False
        return False

    def _kill(self):
        """Terminate the worker without waiting for it to clean up."""
        if self.process is not None:
            if self.process.is_alive():
                self.process.terminate()
                self.process.join(timeout=1)
            if self.process.is_alive():
                self.process.kill()
                self.process.join(timeout=1)
        self.process = None
        self.input_queue = None
        self.output_queue = None

    def reset(self):
        """Discard the context. The next execution starts from a clean namespace."""
        self.shutdown()
        logger.info("Reset kernel for session %s", self.session_id)

    def shutdown(self):
        """Shutdown the worker process cleanly."""
        if self.process is None:
            return

        if self.is_alive and not self._busy:
            try:
                self.input_queue.put({"type": "shutdown"})
                self.process.join(timeout=2)
            except (OSError, ValueError):
                pass

        self._kill()
