"""Pytest fixtures shared across all test modules."""

import threading
import time

import pytest

from cellsync.cells import CodeCell, TitleCell
from cellsync.config import Settings
from cellsync.deps import InstallResult
from cellsync.errors import ContextUnavailable
from cellsync.kernel import NotebookKernel
from cellsync.session import SessionManager
from cellsync.utils import randomid


class InlineSandbox:
    """
    Sandbox double that runs cells in the test process.

    Same interface as cellsync.sandbox.Sandbox, without the worker process,
    so manager tests stay fast. Cancellation is not supported.
    """

    def __init__(self, session_id, directory=None):
        self.session_id = session_id
        self.kernel = None
        self.executed = []
        self.busy = False
        self.shut_down = False
        self.resets = 0

    @property
    def is_alive(self):
        return self.kernel is not None

    def prepare(self):
        pass

    def execute(self, code, timeout=None, on_input=None):
        if self.kernel is None:
            self.kernel = NotebookKernel()
        if on_input is not None:
            def remote_input(prompt=""):
                return on_input(randomid(8), str(prompt)).result(timeout=5)
            self.kernel.ip.user_ns["input"] = remote_input
        self.busy = True
        self.executed.append(code)
        try:
            return self.kernel.execute_cell(code)
        finally:
            self.busy = False

    def cancel(self):
        return False

    def variables(self, timeout=5.0):
        return self.kernel.describe_variables() if self.kernel else []

    def reset(self):
        self.kernel = None
        self.resets += 1

    def shutdown(self):
        self.kernel = None
        self.shut_down = True


class BrokenSandbox(InlineSandbox):
    """Sandbox whose evaluation context can never be created."""

    def execute(self, code, timeout=None, on_input=None):
        raise ContextUnavailable("out of memory")


class FakeInstaller:
    def __init__(self, success=True):
        self.success = success
        self.calls = []

    def install(self, packages):
        self.calls.append(list(packages))
        return InstallResult(success=self.success, output="installed " + " ".join(packages))


class Recorder:
    """Send function for a broadcaster Connection that keeps every message."""

    def __init__(self, delay=0.0):
        self.messages = []
        self.delay = delay
        self._cond = threading.Condition()

    def __call__(self, message):
        if self.delay:
            time.sleep(self.delay)
        with self._cond:
            self.messages.append(message)
            self._cond.notify_all()

    def events(self):
        with self._cond:
            return [m[1] for m in self.messages]

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        with self._cond:
            while not predicate(self.messages):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def wait_for_event(self, event, timeout=5.0):
        return self.wait_for(lambda msgs: any(m[1] == event for m in msgs), timeout)

    def wait_for_count(self, count, timeout=5.0):
        return self.wait_for(lambda msgs: len(msgs) >= count, timeout)


@pytest.fixture
def make_recorder():
    return Recorder


@pytest.fixture
def settings(tmp_path):
    return Settings(base_dir=tmp_path / "home", autosave_interval=0.1)


@pytest.fixture
def installer():
    return FakeInstaller()


@pytest.fixture
def make_manager(settings, installer):
    """
    Build extra managers.

    broken=True gives contexts that never start, real=True gives worker
    process sandboxes. Keyword overrides are applied to the settings.
    """
    managers = []

    def build(broken=False, real=False, **overrides):
        sandbox_class = BrokenSandbox if broken else InlineSandbox
        manager = SessionManager(
            settings.model_copy(update=overrides) if overrides else settings,
            installer=installer,
            sandbox_factory=None if real else (
                lambda session_id, directory: sandbox_class(session_id, directory)
            ),
        )
        managers.append(manager)
        return manager

    yield build
    for manager in managers:
        manager.shutdown()


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def demo_session(manager, tmp_path):
    """Session with [Title("Demo"), a.py: total = 0, b.py: total += 5; total]."""
    return manager.create_session(
        tmp_path / "demo",
        cells=[
            TitleCell(text="Demo"),
            CodeCell(filename="a.py", source="total = 0"),
            CodeCell(filename="b.py", source="total += 5; total"),
        ],
    )


@pytest.fixture
def subscribe(manager):
    """Attach a recording client to a session's topic."""

    def attach(session, delay=0.0):
        recorder = Recorder(delay=delay)
        connection = manager.broadcaster.connect(recorder)
        manager.broadcaster.subscribe(connection, session.topic)
        return recorder, connection

    return attach
