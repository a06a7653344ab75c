"""POSIX pseudo-terminal and executable-lookup helpers.

Everything that touches file descriptors, ioctls or the filesystem search
path lives here so the session state machine, snapshot diffing and prompt
detection stay pure and testable without spawning processes.
"""

import errno
import fcntl
import os
import pty
import select
import shutil
import struct
import termios
from pathlib import Path
from typing import Iterable, Optional

DEFAULT_EXTRA_SEARCH_PATHS = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "~/.local/bin",
    "~/.npm-global/bin",
    "~/.nvm/current/bin",
)

# Errors that mean "nothing to read right now" rather than "stream closed"
RETRYABLE_READ_ERRNOS = frozenset({errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR})


def build_search_path(extra_paths: Optional[Iterable[str]] = None) -> str:
    """Combine $PATH with extra directories agent CLIs are commonly installed to."""
    parts = [p for p in os.environ.get("PATH", "/usr/bin:/bin").split(os.pathsep) if p]
    extras = DEFAULT_EXTRA_SEARCH_PATHS if extra_paths is None else extra_paths
    for extra in extras:
        expanded = str(Path(extra).expanduser())
        if expanded not in parts:
            parts.append(expanded)
    return os.pathsep.join(parts)


def resolve_executable(command: str, search_path: str) -> Optional[str]:
    """Resolve a command to an absolute executable path, or None."""
    if os.sep in command:
        path = Path(command).expanduser()
        return str(path) if path.is_file() and os.access(path, os.X_OK) else None
    return shutil.which(command, path=search_path)


def open_pty() -> tuple[int, int]:
    """Allocate a (controller, child) descriptor pair."""
    controller_fd, child_fd = pty.openpty()
    set_nonblocking(controller_fd)
    return controller_fd, child_fd


def set_nonblocking(fd: int) -> None:
    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)


def set_window_size(fd: int, cols: int, rows: int) -> None:
    """Issue TIOCSWINSZ. Raises OSError on failure."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def wait_readable(fd: int, timeout: float) -> bool:
    """Block up to timeout seconds for fd to become readable."""
    readable, _, _ = select.select([fd], [], [], timeout)
    return bool(readable)


def read_available(fd: int, size: int) -> Optional[bytes]:
    """
    Non-blocking read from a controller descriptor.

    Returns:
        bytes on success, b"" when the stream has ended (EOF or EIO once the
        child side is closed), None when nothing is available yet.

    Raises:
        OSError: for non-retryable errors other than EIO
    """
    try:
        return os.read(fd, size)
    except OSError as e:
        if e.errno in RETRYABLE_READ_ERRNOS:
            return None
        if e.errno == errno.EIO:
            # Linux reports EIO on the controller side after the child closes
            return b""
        raise


def write_once(fd: int, data: bytes) -> int:
    """Single write call, no retry loop."""
    return os.write(fd, data)


def close_quietly(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


def acquire_controlling_tty() -> None:
    """
    Make stdin (the PTY child side) the controlling terminal.

    Runs in the forked child after setsid(), before exec. Tools that open
    /dev/tty directly need this; a failure just leaves the child without one.
    """
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass
