"""Common interface for process backends."""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from .models import BackendKind, HistoryPolicy

# PTY backends deliver raw bytes, snapshot backends deliver rendered text
OutputCallback = Callable[[Union[bytes, str]], None]
ExitCallback = Callable[[Optional[int]], None]


class ProcessBackend(ABC):
    """
    One hosted process (or multiplexer session) owned by exactly one Session.

    A backend runs a single background unit (reader or poller thread) which
    is the only caller of on_output/on_exit. After terminate() returns, that
    unit has been quiesced and neither callback fires again.
    """

    kind: BackendKind
    history_policy: HistoryPolicy

    @abstractmethod
    def start(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        """Launch the process and the background unit. Raises on launch failure."""

    @abstractmethod
    def send_input(self, text: str) -> None:
        """Forward one line of user input. Best effort, never raises."""

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None:
        """Resize the terminal. Failures are ignored."""

    @abstractmethod
    def interrupt(self) -> None:
        """Send an interrupt (Ctrl+C). Idempotent."""

    @abstractmethod
    def terminate(self) -> None:
        """Stop the process and quiesce callbacks. Idempotent."""

    @property
    @abstractmethod
    def exit_code(self) -> Optional[int]:
        """Exit status once known, else None."""

    @property
    def working_directory(self) -> Optional[str]:
        return None
