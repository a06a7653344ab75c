"""Shared pytest fixtures for Agent Bridge tests."""

import threading
import time
from typing import Callable, Generator, Optional
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from agent_bridge.backend import ProcessBackend
from agent_bridge.models import BackendKind, HistoryPolicy
from agent_bridge.registry import SessionRegistry
from agent_bridge.server import create_app
from agent_bridge.tmux_controller import TmuxController

TEST_CONFIG = {
    "history": {"max_chunks": 100, "recent_text_chars": 1024},
    "fanout": {"queue_size": 16},
    "tmux": {"poll_interval": 0.01},
}


class FakeBackend(ProcessBackend):
    """
    In-memory backend driven by the test.

    emit() and finish() play the part of the reader/poller thread and follow
    the same rule as the real backends: nothing is delivered once terminate()
    has quiesced the backend.
    """

    def __init__(
        self,
        kind: BackendKind = BackendKind.PTY_DIRECT,
        history_policy: HistoryPolicy = HistoryPolicy.APPEND,
        working_dir: Optional[str] = None,
    ):
        self.kind = kind
        self.history_policy = history_policy
        self._working_dir = working_dir
        self._exit_code: Optional[int] = None
        self._lock = threading.RLock()
        self._quiesced = False
        self._on_output = None
        self._on_exit = None
        self.started = False
        self.inputs: list[str] = []
        self.resizes: list[tuple[int, int]] = []
        self.interrupts = 0
        self.terminate_calls = 0

    def start(self, on_output, on_exit) -> None:
        self._on_output = on_output
        self._on_exit = on_exit
        self.started = True

    def emit(self, data) -> bool:
        with self._lock:
            if self._quiesced or not self.started:
                return False
            self._on_output(data)
            return True

    def finish(self, code: Optional[int] = 0) -> None:
        with self._lock:
            if self._quiesced:
                return
            self._quiesced = True
            self._exit_code = code
            self._on_exit(code)

    def send_input(self, text: str) -> None:
        self.inputs.append(text)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    def interrupt(self) -> None:
        self.interrupts += 1

    def terminate(self) -> None:
        self.terminate_calls += 1
        with self._lock:
            self._quiesced = True

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def working_directory(self) -> Optional[str]:
        return self._working_dir


@pytest.fixture
def make_backend() -> Callable[..., FakeBackend]:
    """
    Factory for FakeBackend instances.

    Returns:
        The FakeBackend class
    """
    return FakeBackend


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """
    Poll a predicate until it holds or the timeout passes.

    Returns:
        Function (predicate, timeout=2.0) -> bool
    """
    def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()

    return _wait


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Returns:
        MagicMock with common tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.available = True
    mock.session_exists.return_value = True
    mock.create_session.return_value = None
    mock.send_input.return_value = True
    mock.send_keys.return_value = True
    mock.kill_session.return_value = True
    mock.capture_pane.return_value = "Mock tmux output"
    mock.resize_window.return_value = True
    return mock


@pytest.fixture
def fake_backends() -> dict:
    """Backends built by the registry fixture, keyed by session id."""
    return {}


@pytest.fixture
def registry(
    mock_tmux: MagicMock, fake_backends: dict
) -> Generator[SessionRegistry, None, None]:
    """
    Create a SessionRegistry whose sessions run on FakeBackends.

    Args:
        mock_tmux: Mocked TmuxController
        fake_backends: Filled with each backend the registry builds

    Yields:
        SessionRegistry configured for testing
    """
    def factory(kind, session_id, command, arguments, working_dir, env):
        policy = HistoryPolicy.REPLACE if kind == BackendKind.MULTIPLEXER_MANAGED else HistoryPolicy.APPEND
        backend = FakeBackend(kind, policy, working_dir=working_dir)
        fake_backends[session_id] = backend
        return backend

    manager = SessionRegistry(config=TEST_CONFIG, tmux=mock_tmux, backend_factory=factory)
    yield manager
    manager.shutdown()


@pytest.fixture
def test_client(registry: SessionRegistry) -> TestClient:
    """
    Create a FastAPI TestClient for testing API endpoints.

    Args:
        registry: SessionRegistry fixture to inject into app

    Returns:
        TestClient configured with the app and registry
    """
    app = create_app(registry=registry, config=TEST_CONFIG)
    return TestClient(app)
