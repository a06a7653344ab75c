"""Sessions hosted in a detached tmux session, observed by snapshot polling."""

import logging
import os
import shlex
import threading
from typing import Optional, Sequence

from . import terminal
from .backend import ExitCallback, OutputCallback, ProcessBackend
from .errors import TransientPollError
from .models import BackendKind, HistoryPolicy
from .tmux_controller import TmuxController, find_tmux

logger = logging.getLogger(__name__)

DEFAULT_KNOWN_AGENTS = ("claude", "codex", "gemini", "aider")


def resolve_agent_command(
    command: str,
    search_path: str,
    known_agents: Sequence[str] = DEFAULT_KNOWN_AGENTS,
) -> Optional[str]:
    """
    Pick the command to launch inside the tmux shell.

    Known agent commands that are not installed fall back to the other known
    agents in order. Returns None when no known agent is installed, which
    leaves a bare shell. Unknown commands are returned unchanged and left
    for the shell to resolve.
    """
    if command not in known_agents:
        return command
    if terminal.resolve_executable(command, search_path):
        return command
    for alternative in known_agents:
        if alternative == command:
            continue
        if terminal.resolve_executable(alternative, search_path):
            logger.info(f"{command} not found, falling back to {alternative}")
            return alternative
    logger.warning(f"No known agent command found for {command}, leaving a bare shell")
    return None


class SnapshotDiffer:
    """Exact-text diff of successive pane snapshots."""

    def __init__(self):
        self.last_delivered: Optional[str] = None

    @staticmethod
    def normalize(snapshot: str) -> str:
        # tmux pads the visible pane with blank lines
        return snapshot.rstrip()

    def update(self, snapshot: str) -> Optional[str]:
        """Return the normalized snapshot if it should be delivered, else None."""
        text = self.normalize(snapshot)
        if not text or text == self.last_delivered:
            return None
        self.last_delivered = text
        return text

    def reset(self):
        self.last_delivered = None


class TmuxBackend(ProcessBackend):
    """Runs a command inside a named tmux session and polls the pane for changes."""

    kind = BackendKind.MULTIPLEXER_MANAGED
    history_policy = HistoryPolicy.REPLACE

    def __init__(
        self,
        session_name: str,
        command: str,
        args: Optional[list[str]] = None,
        controller: Optional[TmuxController] = None,
        working_dir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        search_path: Optional[str] = None,
        config: Optional[dict] = None,
    ):
        self.session_name = session_name
        self.command = command
        self.args = list(args or [])
        self.env_overrides = dict(env or {})
        self.config = config or {}
        self.controller = controller or TmuxController(
            find_tmux(self.config.get("tmux", {}).get("path")), self.config
        )
        self._working_dir = working_dir or os.getcwd()

        tmux_config = self.config.get("tmux", {})
        self.poll_interval = tmux_config.get("poll_interval", 0.5)
        self.capture_lines = tmux_config.get("capture_lines", 1000)
        self.known_agents = tuple(tmux_config.get("known_agents", DEFAULT_KNOWN_AGENTS))
        self.cols = tmux_config.get("cols", 120)
        self.rows = tmux_config.get("rows", 40)
        self.join_timeout_seconds = tmux_config.get("join_timeout_seconds", 5.0)

        if search_path is None:
            search_path = terminal.build_search_path(self.config.get("pty", {}).get("search_paths"))
        self.search_path = search_path

        self.differ = SnapshotDiffer()
        self._on_output: Optional[OutputCallback] = None
        self._on_exit: Optional[ExitCallback] = None
        self._poller: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._callback_lock = threading.RLock()
        self._quiesced = False
        self._terminated = False
        self._release_lock = threading.Lock()
        self._released = False

    @property
    def working_directory(self) -> Optional[str]:
        return self._working_dir

    @property
    def exit_code(self) -> Optional[int]:
        # tmux does not report the exit status of whatever ran in the pane
        return None

    def build_command_line(self) -> Optional[str]:
        """Shell command typed into the new session, or None for a bare shell."""
        resolved = resolve_agent_command(self.command, self.search_path, self.known_agents)
        if resolved is None:
            return None
        # Arguments belong to the requested command, not to a fallback agent
        args = self.args if resolved == self.command else []
        exports = [f"{key}={shlex.quote(value)}" for key, value in self.env_overrides.items()]
        parts = [shlex.quote(resolved)] + [shlex.quote(a) for a in args]
        return " ".join(exports + parts)

    def start(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        if self._poller is not None:
            raise RuntimeError(f"tmux backend {self.session_name} already started")
        self._on_output = on_output
        self._on_exit = on_exit

        command_line = self.build_command_line()
        # BackendUnavailable propagates to the caller of create
        self.controller.create_session(
            self.session_name,
            self._working_dir,
            command_line=command_line,
            cols=self.cols,
            rows=self.rows,
        )

        self._poller = threading.Thread(
            target=self._poll_loop,
            name=f"tmux-poller-{self.session_name}",
            daemon=True,
        )
        self._poller.start()
        logger.info(
            f"Polling tmux session {self.session_name} every {self.poll_interval}s "
            f"(running: {command_line or 'shell'})"
        )

    def _poll_loop(self):
        while not self._stop_event.wait(self.poll_interval):
            if not self.poll_once():
                break

    def poll_once(self) -> bool:
        """
        Run one poll cycle.

        Returns:
            False once the tmux session is gone and polling should stop
        """
        try:
            if not self.controller.session_exists(self.session_name):
                logger.info(f"tmux session {self.session_name} no longer exists")
                self._deliver_exit()
                self._mark_released()
                return False
            snapshot = self.controller.capture_pane(self.session_name, self.capture_lines)
        except TransientPollError as e:
            logger.debug(f"Poll failed for {self.session_name}, retrying next tick: {e}")
            return True

        with self._callback_lock:
            if self._quiesced:
                return False
            text = self.differ.update(snapshot)
            if text is None:
                return True
            try:
                self._on_output(text)
            except Exception as e:
                logger.error(f"Output handler failed for {self.session_name}: {e}")
        return True

    def _deliver_exit(self):
        with self._callback_lock:
            if self._quiesced:
                return
            self._quiesced = True
            try:
                self._on_exit(None)
            except Exception as e:
                logger.error(f"Exit handler failed for {self.session_name}: {e}")

    def _mark_released(self) -> bool:
        """Claim the session name for release. True only for the first caller."""
        with self._release_lock:
            if self._released:
                return False
            self._released = True
            return True

    def send_input(self, text: str) -> None:
        if self._released:
            logger.debug(f"Dropping input for released tmux session {self.session_name}")
            return
        if not self.controller.send_input(self.session_name, text.rstrip("\r\n")):
            logger.warning(f"Input to {self.session_name} was not fully delivered")
        # The pane will change; make sure the next poll republishes it
        with self._callback_lock:
            self.differ.reset()

    def resize(self, cols: int, rows: int) -> None:
        if not self._released:
            self.controller.resize_window(self.session_name, cols, rows)

    def interrupt(self) -> None:
        if not self._released:
            self.controller.send_keys(self.session_name, "C-c")

    def terminate(self) -> None:
        with self._callback_lock:
            if self._terminated:
                return
            self._terminated = True
            self._quiesced = True
        self._stop_event.set()

        if self._poller is not None and self._poller is not threading.current_thread():
            self._poller.join(timeout=self.join_timeout_seconds)

        if self._mark_released():
            self.controller.kill_session(self.session_name)
        logger.info(f"Terminated tmux session {self.session_name}")
