"""Child processes attached to a pseudo-terminal."""

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Optional

from . import terminal
from .backend import ExitCallback, OutputCallback, ProcessBackend
from .errors import LaunchFailure
from .models import BackendKind, HistoryPolicy

logger = logging.getLogger(__name__)

DEFAULT_TERM_ENV = {
    "TERM": "xterm-256color",
    "LANG": "en_US.UTF-8",
}


class PTYBackend(ProcessBackend):
    """Runs one command on a PTY and streams its raw output from a reader thread."""

    kind = BackendKind.PTY_DIRECT
    history_policy = HistoryPolicy.APPEND

    def __init__(
        self,
        command: str,
        args: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
        working_dir: Optional[str] = None,
        search_path: Optional[str] = None,
        config: Optional[dict] = None,
    ):
        """
        Resolve the executable up front so a bad command fails synchronously.

        Args:
            command: Command name or path
            args: Argument list
            env: Environment overrides, applied on top of the defaults
            working_dir: Directory to start in (defaults to the daemon's cwd)
            search_path: os.pathsep-joined lookup path; built from config if omitted
            config: Full configuration dict (reads the "pty" section)

        Raises:
            LaunchFailure: if the command cannot be resolved
        """
        self.command = command
        self.args = list(args or [])
        self.env_overrides = dict(env or {})
        self._working_dir = working_dir
        self.config = config or {}

        pty_config = self.config.get("pty", {})
        self.exit_grace_seconds = pty_config.get("exit_grace_seconds", 0.1)
        self.terminate_wait_seconds = pty_config.get("terminate_wait_seconds", 1.0)
        self.read_size = pty_config.get("read_size", 4096)
        self.read_poll_seconds = pty_config.get("read_poll_seconds", 0.1)
        self.join_timeout_seconds = pty_config.get("join_timeout_seconds", 2.0)
        self.cols = pty_config.get("cols", 120)
        self.rows = pty_config.get("rows", 40)

        if search_path is None:
            search_path = terminal.build_search_path(pty_config.get("search_paths"))
        self.executable = terminal.resolve_executable(command, search_path)
        if not self.executable:
            raise LaunchFailure(command, "command not found")

        self._process: Optional[subprocess.Popen] = None
        self._controller_fd: Optional[int] = None
        self._reader: Optional[threading.Thread] = None
        self._on_output: Optional[OutputCallback] = None
        self._on_exit: Optional[ExitCallback] = None

        self._stop_event = threading.Event()
        # Held while a callback runs; terminate() takes it to quiesce delivery
        self._callback_lock = threading.RLock()
        self._quiesced = False
        self._terminated = False
        # Guards the controller descriptor against use after release
        self._fd_lock = threading.Lock()
        self._released = False

    @property
    def working_directory(self) -> Optional[str]:
        return self._working_dir

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def exit_code(self) -> Optional[int]:
        if self._process is None:
            return None
        return self._process.returncode

    def build_environment(self) -> dict[str, str]:
        """Host environment, then terminal defaults, then caller overrides."""
        env = dict(os.environ)
        env.update(DEFAULT_TERM_ENV)
        env.update(self.env_overrides)
        return env

    def start(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        if self._process is not None:
            raise RuntimeError(f"PTY backend for {self.command} already started")

        self._on_output = on_output
        self._on_exit = on_exit

        try:
            controller_fd, child_fd = terminal.open_pty()
        except OSError as e:
            raise LaunchFailure(self.command, f"pseudo-terminal allocation failed: {e}") from e

        try:
            terminal.set_window_size(child_fd, self.cols, self.rows)
        except OSError as e:
            logger.debug(f"Could not set initial window size for {self.command}: {e}")

        try:
            self._process = subprocess.Popen(
                [self.executable, *self.args],
                stdin=child_fd,
                stdout=child_fd,
                stderr=child_fd,
                cwd=self._working_dir,
                env=self.build_environment(),
                start_new_session=True,
                preexec_fn=terminal.acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            terminal.close_quietly(controller_fd)
            raise LaunchFailure(self.command, str(e)) from e
        finally:
            # The child holds its own copy; ours must go so EOF/EIO can arrive
            terminal.close_quietly(child_fd)

        self._controller_fd = controller_fd
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"pty-reader-{self._process.pid}",
            daemon=True,
        )
        self._reader.start()
        logger.info(f"Started {self.executable} (pid={self._process.pid}) on PTY")

    def _read_loop(self):
        """Drain the controller side until the stream ends or terminate() stops us."""
        fd = self._controller_fd
        try:
            while not self._stop_event.is_set():
                if not terminal.wait_readable(fd, self.read_poll_seconds):
                    # Nothing pending: if the child is gone, the stream is done
                    if self._process.poll() is not None:
                        break
                    continue
                data = terminal.read_available(fd, self.read_size)
                if data is None:
                    continue
                if not data:
                    break
                self._deliver_output(data)
        except (OSError, ValueError) as e:
            if not self._stop_event.is_set():
                logger.warning(f"PTY read failed for pid {self.pid}: {e}")

        if self._stop_event.is_set():
            # terminate() owns exit handling and release
            return

        code = self._wait_for_exit()
        # Output written just before exit can land after the last select
        time.sleep(self.exit_grace_seconds)
        self._drain(fd)
        self._deliver_exit(code)
        self._release()

    def _drain(self, fd: int):
        """Deliver whatever is still buffered on the controller side."""
        while not self._stop_event.is_set():
            try:
                data = terminal.read_available(fd, self.read_size)
            except (OSError, ValueError) as e:
                logger.debug(f"PTY drain for pid {self.pid} stopped: {e}")
                return
            if not data:
                return
            self._deliver_output(data)

    def _wait_for_exit(self) -> Optional[int]:
        while not self._stop_event.is_set():
            try:
                return self._process.wait(timeout=self.read_poll_seconds)
            except subprocess.TimeoutExpired:
                continue
        return self._process.returncode

    def _deliver_output(self, data: bytes):
        with self._callback_lock:
            if self._quiesced:
                return
            try:
                self._on_output(data)
            except Exception as e:
                logger.error(f"Output handler failed for pid {self.pid}: {e}")

    def _deliver_exit(self, code: Optional[int]):
        with self._callback_lock:
            if self._quiesced:
                return
            self._quiesced = True
            logger.info(f"Process {self.pid} exited with code {code}")
            try:
                self._on_exit(code)
            except Exception as e:
                logger.error(f"Exit handler failed for pid {self.pid}: {e}")

    def _release(self):
        """Close the controller descriptor exactly once."""
        with self._fd_lock:
            if self._released or self._controller_fd is None:
                return
            self._released = True
            terminal.close_quietly(self._controller_fd)
        logger.debug(f"Released PTY for pid {self.pid}")

    def write(self, data: bytes) -> None:
        """Fire-and-forget single write to the child's terminal."""
        with self._fd_lock:
            if self._released or self._controller_fd is None:
                logger.debug(f"Dropping write to released PTY ({self.command})")
                return
            try:
                terminal.write_once(self._controller_fd, data)
            except OSError as e:
                logger.debug(f"Write to pid {self.pid} dropped: {e}")

    def send_input(self, text: str) -> None:
        # Raw-mode TUIs submit on carriage return; cooked mode maps CR to NL
        self.write((text.rstrip("\r\n") + "\r").encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        with self._fd_lock:
            if self._released or self._controller_fd is None:
                return
            try:
                terminal.set_window_size(self._controller_fd, cols, rows)
            except OSError:
                pass

    def _signal(self, sig: int) -> None:
        if self._process is None or self._process.poll() is not None:
            return
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            pass

    def interrupt(self) -> None:
        self._signal(signal.SIGINT)

    def terminate(self) -> None:
        with self._callback_lock:
            if self._terminated:
                return
            self._terminated = True
            self._quiesced = True
        self._stop_event.set()

        if self._process is not None and self._process.poll() is None:
            self._signal(signal.SIGTERM)
            try:
                self._process.wait(timeout=self.terminate_wait_seconds)
            except subprocess.TimeoutExpired:
                # No forced kill: a child that ignores SIGTERM keeps running
                logger.warning(
                    f"pid {self.pid} still running {self.terminate_wait_seconds}s after SIGTERM"
                )

        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=self.join_timeout_seconds)
        self._release()
        logger.info(f"Terminated PTY session for {self.command} (pid={self.pid})")
