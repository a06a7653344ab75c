"""tmux operations for creating and driving multiplexer-managed sessions."""

import logging
import shutil
import subprocess
import time
from typing import Optional

from .errors import BackendUnavailable, TransientPollError

logger = logging.getLogger(__name__)


def find_tmux(configured_path: Optional[str] = None) -> Optional[str]:
    """Resolve the tmux binary once; the result is passed to TmuxController explicitly."""
    if configured_path:
        return configured_path
    for candidate in ("tmux", "/opt/homebrew/bin/tmux", "/usr/local/bin/tmux", "/usr/bin/tmux"):
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
    return None


class TmuxController:
    """Thin wrapper over the tmux CLI."""

    def __init__(self, tmux_path: Optional[str] = None, config: Optional[dict] = None):
        """
        Args:
            tmux_path: Absolute path to the tmux binary (None if not installed)
            config: Full configuration dict (reads "timeouts.tmux")
        """
        self.tmux_path = tmux_path
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.send_keys_settle_seconds = tmux_timeouts.get("send_keys_settle_seconds", 0.1)

    @property
    def available(self) -> bool:
        return self.tmux_path is not None

    def _run_tmux(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a tmux command."""
        if not self.tmux_path:
            raise FileNotFoundError("tmux is not installed")
        cmd = [self.tmux_path] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=self.command_timeout_seconds,
        )

    def session_exists(self, session_name: str) -> bool:
        """
        Check if a tmux session exists.

        Raises:
            TransientPollError: if tmux could not be asked (timeout, OS error)
        """
        try:
            result = self._run_tmux("has-session", "-t", session_name, check=False)
        except (subprocess.TimeoutExpired, OSError) as e:
            raise TransientPollError(f"has-session failed for {session_name}: {e}") from e
        return result.returncode == 0

    def create_session(
        self,
        session_name: str,
        working_dir: str,
        command_line: Optional[str] = None,
        cols: int = 120,
        rows: int = 40,
    ) -> None:
        """
        Create a new detached tmux session, optionally typing a command into its shell.

        Args:
            session_name: Name for the tmux session
            working_dir: Directory the shell starts in
            command_line: Shell-quoted command to start; None leaves a bare shell
            cols: Initial window width
            rows: Initial window height

        Raises:
            BackendUnavailable: if tmux is missing or refuses to create the session
        """
        try:
            self._run_tmux(
                "new-session",
                "-d",
                "-s", session_name,
                "-c", working_dir,
                "-x", str(cols),
                "-y", str(rows),
            )
        except FileNotFoundError as e:
            raise BackendUnavailable(f"tmux not available: {e}") from e
        except subprocess.CalledProcessError as e:
            raise BackendUnavailable(
                f"tmux new-session failed for {session_name}: {e.stderr.strip()}"
            ) from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise BackendUnavailable(f"tmux new-session failed for {session_name}: {e}") from e

        if command_line:
            if not self.send_keys(session_name, command_line, "Enter"):
                self.kill_session(session_name)
                raise BackendUnavailable(f"Could not start command in tmux session {session_name}")

        logger.info(f"Created tmux session {session_name} in {working_dir}")

    def send_keys(self, session_name: str, *keys: str, literal: bool = False) -> bool:
        """
        Send keys to a tmux session.

        Args:
            session_name: Target session name
            keys: Key names (e.g. 'Enter', 'C-c') or text
            literal: Pass -l so text is typed verbatim instead of parsed as key names

        Returns:
            True if tmux accepted the keys
        """
        args = ["send-keys", "-t", session_name]
        if literal:
            args.append("-l")
        # "--" stops text starting with "-" being parsed as a flag
        args.append("--")
        args.extend(keys)
        try:
            self._run_tmux(*args)
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to send keys to {session_name}: {e.stderr.strip()}")
            return False
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Failed to send keys to {session_name}: {e}")
            return False

    def send_input(self, session_name: str, text: str) -> bool:
        """
        Type text into a session and submit it.

        Two separate tmux calls: literal text, then Enter. The settle delay
        keeps TUIs from treating the Enter as part of a paste burst. If the
        second call fails the text stays typed but unsubmitted.

        Returns:
            True if both calls succeeded
        """
        if not self.send_keys(session_name, text, literal=True):
            return False
        time.sleep(self.send_keys_settle_seconds)
        if not self.send_keys(session_name, "Enter"):
            logger.warning(f"Text typed into {session_name} but Enter was not delivered")
            return False
        logger.info(f"Sent input to {session_name}: {text[:50]}...")
        return True

    def kill_session(self, session_name: str) -> bool:
        """
        Kill a tmux session.

        Returns:
            True if the session is gone afterwards
        """
        try:
            if not self.session_exists(session_name):
                logger.debug(f"Session {session_name} does not exist")
                return True  # Already gone
            self._run_tmux("kill-session", "-t", session_name)
            logger.info(f"Killed session {session_name}")
            return True
        except TransientPollError as e:
            logger.error(f"Failed to kill session: {e}")
            return False
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to kill session: {e.stderr.strip()}")
            return False
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Failed to kill session: {e}")
            return False

    def capture_pane(self, session_name: str, lines: int = 1000) -> str:
        """
        Capture the pane's visible content plus scrollback.

        Args:
            session_name: Session to capture from
            lines: Number of scrollback lines to include

        Returns:
            Captured text

        Raises:
            TransientPollError: if the capture call failed
        """
        try:
            result = self._run_tmux(
                "capture-pane",
                "-t", session_name,
                "-p",  # Print to stdout
                "-S", f"-{lines}",  # Start from N lines back
            )
        except subprocess.CalledProcessError as e:
            raise TransientPollError(f"capture-pane failed for {session_name}: {e.stderr.strip()}") from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise TransientPollError(f"capture-pane failed for {session_name}: {e}") from e
        return result.stdout

    def resize_window(self, session_name: str, cols: int, rows: int) -> bool:
        """Resize a session's window. Returns False on failure."""
        try:
            self._run_tmux("resize-window", "-t", session_name, "-x", str(cols), "-y", str(rows))
            return True
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.debug(f"Failed to resize {session_name}: {e}")
            return False
