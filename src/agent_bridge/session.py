"""Session: one backend, its history and its state machine."""

import codecs
import logging
import threading
from datetime import datetime
from typing import Callable, Optional, Union

from .backend import ProcessBackend
from .history import OutputHistory, RecentText, strip_control_sequences
from .models import (
    HistoryPolicy,
    OutputChannel,
    OutputChunk,
    PromptType,
    SessionEvent,
    SessionState,
    SessionSummary,
    utc_now,
)
from .prompt_detector import PromptDetector

logger = logging.getLogger(__name__)

EventSink = Callable[[SessionEvent], None]


class Session:
    """
    Wraps exactly one backend.

    Every mutation of state and history happens under the session's own
    RLock. Backend calls that may block (input, terminate) are made outside
    it, because the backend's background thread takes the session lock from
    inside its own callback lock.
    """

    def __init__(
        self,
        session_id: str,
        command: str,
        arguments: list[str],
        backend: ProcessBackend,
        on_event: Optional[EventSink] = None,
        detector: Optional[PromptDetector] = None,
        config: Optional[dict] = None,
    ):
        self.id = session_id
        self.command = command
        self.arguments = list(arguments)
        self.backend = backend
        self.created_at: datetime = utc_now()
        self.config = config or {}

        history_config = self.config.get("history", {})
        self.history = OutputHistory(
            backend.history_policy,
            max_chunks=history_config.get("max_chunks", 5000),
        )
        self._recent = RecentText(history_config.get("recent_text_chars", 4096))

        self._on_event = on_event
        self._detector = detector or PromptDetector()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lock = threading.RLock()

        self.state = SessionState.RUNNING
        self.exit_code: Optional[int] = None
        self._prompt_type: Optional[PromptType] = None
        # Counts recorded stdout chunks so send_input can spot output that raced the write
        self._output_seq = 0
        self._terminated = False
        self._terminate_done = threading.Event()

    def start(self) -> None:
        """Launch the backend. LaunchFailure/BackendUnavailable propagate."""
        self.backend.start(self.append_output, self.handle_exit)
        logger.info(f"Session {self.id} started: {self.command} {' '.join(self.arguments)}")

    @property
    def prompt_type(self) -> Optional[PromptType]:
        with self._lock:
            return self._prompt_type

    @property
    def is_alive(self) -> bool:
        with self._lock:
            return self.state != SessionState.EXITED

    def _emit(self, event: SessionEvent):
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception as e:
            logger.error(f"Event sink failed for session {self.id}: {e}")

    def _set_state(self, state: SessionState):
        """Transition and publish. Caller holds the lock."""
        if self.state == state or self.state == SessionState.EXITED:
            return
        previous = self.state
        self.state = state
        logger.info(f"Session {self.id}: {previous.value} -> {state.value}")
        self._emit(SessionEvent.state_change(self.id, state, self.exit_code))

    def _normalize(self, raw: Union[bytes, str]) -> str:
        text = self._decoder.decode(raw) if isinstance(raw, bytes) else raw
        if self.backend.history_policy == HistoryPolicy.APPEND:
            # Byte streams carry escape sequences; rendered snapshots do not
            text = strip_control_sequences(text)
        return text

    def append_output(self, raw: Union[bytes, str]) -> None:
        """
        Record one piece of backend output.

        Byte-stream output is decoded and stripped of control sequences and
        appended; snapshot output replaces the history. Empty results are
        dropped. A detected prompt moves Running to WaitingForInput.
        """
        with self._lock:
            if self.state == SessionState.EXITED:
                return
            text = self._normalize(raw)
            if not text:
                return

            chunk = OutputChunk(content=text, channel=OutputChannel.STDOUT)
            self.history.record(chunk)
            self._output_seq += 1
            if self.history.policy == HistoryPolicy.REPLACE:
                recent = self._recent.replace(text)
            else:
                recent = self._recent.extend(text)
            self._emit(SessionEvent.output(self.id, chunk))

            if self.state == SessionState.RUNNING:
                prompt = self._detector.detect(recent)
                if prompt is not None:
                    self._prompt_type = prompt
                    self._set_state(SessionState.WAITING_FOR_INPUT)

    def handle_exit(self, exit_code: Optional[int]) -> None:
        """Backend exit signal: any state -> Exited, recorded once."""
        with self._lock:
            if self.state == SessionState.EXITED:
                return
            tail = self._decoder.decode(b"", final=True)
            if tail and self.history.policy == HistoryPolicy.APPEND:
                text = strip_control_sequences(tail)
                if text:
                    chunk = OutputChunk(content=text)
                    self.history.record(chunk)
                    self._emit(SessionEvent.output(self.id, chunk))
            self.exit_code = exit_code
            self._prompt_type = None
            self._set_state(SessionState.EXITED)

    def send_input(self, text: str) -> bool:
        """
        Record user input and forward it to the backend.

        Returns:
            False if the session has exited (nothing is written)
        """
        with self._lock:
            if self.state == SessionState.EXITED:
                logger.debug(f"Dropping input for exited session {self.id}")
                return False
            # Recorded before the write so intent survives a failed write
            self.history.record(OutputChunk(content=text, channel=OutputChannel.STDIN))
            seq_before = self._output_seq

        self.backend.send_input(text)

        with self._lock:
            if self.state != SessionState.WAITING_FOR_INPUT:
                return True
            self._prompt_type = None
            self._set_state(SessionState.RUNNING)
            if self._output_seq != seq_before:
                # The child answered during the write; detection was skipped while waiting
                prompt = self._detector.detect(self._recent.text)
                if prompt is not None:
                    self._prompt_type = prompt
                    self._set_state(SessionState.WAITING_FOR_INPUT)
        return True

    def send_yes(self) -> bool:
        return self.send_input("y")

    def send_no(self) -> bool:
        return self.send_input("n")

    def get_history(self, limit: Optional[int] = None, offset: int = 0) -> list[OutputChunk]:
        with self._lock:
            return self.history.slice(limit, offset)

    def get_recent_output(self, lines: int = 50) -> str:
        """Last N lines of stdout text."""
        with self._lock:
            chunks = self.history.slice(offset=max(0, len(self.history) - 100))
        text = "".join(c.content for c in chunks if c.channel == OutputChannel.STDOUT)
        return "\n".join(text.splitlines()[-lines:])

    def resize(self, cols: int, rows: int) -> None:
        if self.is_alive:
            self.backend.resize(cols, rows)

    def interrupt(self) -> None:
        if self.is_alive:
            self.backend.interrupt()

    def terminate(self) -> None:
        """
        Stop the backend and mark the session Exited.

        Idempotent. Once this returns the backend has been quiesced and no
        further output or state callbacks arrive; concurrent callers wait
        for the first one to finish.
        """
        with self._lock:
            first = not self._terminated
            self._terminated = True
        if not first:
            self._terminate_done.wait()
            return

        try:
            self.backend.terminate()

            with self._lock:
                if self.state != SessionState.EXITED:
                    self.exit_code = self.backend.exit_code
                    self._prompt_type = None
                    self._set_state(SessionState.EXITED)
        finally:
            self._terminate_done.set()
        logger.info(f"Session {self.id} terminated")

    def summary(self) -> SessionSummary:
        with self._lock:
            return SessionSummary(
                id=self.id,
                command=self.command,
                arguments=list(self.arguments),
                created_at=self.created_at,
                state=self.state,
                backend=self.backend.kind,
                exit_code=self.exit_code,
                working_directory=self.backend.working_directory,
                prompt_type=self._prompt_type,
            )
