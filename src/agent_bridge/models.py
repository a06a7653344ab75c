"""Data models for Agent Bridge sessions."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List


def utc_now() -> datetime:
    """Timezone-aware timestamp used for chunks and sessions."""
    return datetime.now(timezone.utc)


class SessionState(Enum):
    """Session lifecycle state."""
    RUNNING = "running"                    # Agent is producing output / working
    WAITING_FOR_INPUT = "waitingForInput"  # Blocked on an interactive prompt
    EXITED = "exited"                      # Terminal, never left


class BackendKind(Enum):
    """How a session's process is hosted."""
    PTY_DIRECT = "ptyDirect"
    MULTIPLEXER_MANAGED = "multiplexerManaged"
    EXTERNALLY_ATTACHED = "externallyAttached"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["BackendKind"]:
        """Accept wire values and the short config aliases ("pty", "tmux")."""
        if value is None:
            return None
        normalized = value.strip()
        aliases = {
            "pty": cls.PTY_DIRECT,
            "tmux": cls.MULTIPLEXER_MANAGED,
            "multiplexer": cls.MULTIPLEXER_MANAGED,
            "external": cls.EXTERNALLY_ATTACHED,
        }
        if normalized.lower() in aliases:
            return aliases[normalized.lower()]
        return cls(normalized)


class OutputChannel(Enum):
    """Stream a chunk belongs to."""
    STDOUT = "stdout"
    STDERR = "stderr"
    STDIN = "stdin"


class PromptType(Enum):
    """Kind of response an interactive prompt expects."""
    YES_NO = "yesNo"
    CONFIRMATION = "confirmation"
    ENTER_TO_CONTINUE = "enterToContinue"
    FREEFORM = "freeform"


class HistoryPolicy(Enum):
    """How new output lands in a session's history."""
    APPEND = "append"    # Byte-stream backends keep every chunk
    REPLACE = "replace"  # Snapshot backends keep only the latest render


@dataclass(frozen=True)
class OutputChunk:
    """One unit of session output (or recorded input)."""
    content: str
    channel: OutputChannel = OutputChannel.STDOUT
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "content": self.content,
            "channel": self.channel.value,
        }


@dataclass
class SessionSummary:
    """Public view of a session, as returned by create/list/get."""
    id: str
    command: str
    arguments: List[str]
    created_at: datetime
    state: SessionState
    backend: BackendKind
    exit_code: Optional[int] = None
    working_directory: Optional[str] = None
    prompt_type: Optional[PromptType] = None

    @property
    def is_external(self) -> bool:
        return self.backend == BackendKind.EXTERNALLY_ATTACHED

    def to_dict(self) -> dict:
        """Convert summary to the camelCase wire format."""
        return {
            "id": self.id,
            "command": self.command,
            "arguments": list(self.arguments),
            "createdAt": self.created_at.isoformat(),
            "state": self.state.value,
            "exitCode": self.exit_code,
            "isExternal": self.is_external,
            "workingDirectory": self.working_directory,
            "backend": self.backend.value,
            "promptType": self.prompt_type.value if self.prompt_type else None,
        }


@dataclass(frozen=True)
class SessionEvent:
    """Outbound event pushed to subscribers."""
    type: str  # "output" or "state"
    session_id: str
    chunk: Optional[OutputChunk] = None
    state: Optional[SessionState] = None
    exit_code: Optional[int] = None

    @classmethod
    def output(cls, session_id: str, chunk: OutputChunk) -> "SessionEvent":
        return cls(type="output", session_id=session_id, chunk=chunk)

    @classmethod
    def state_change(
        cls, session_id: str, state: SessionState, exit_code: Optional[int] = None
    ) -> "SessionEvent":
        return cls(type="state", session_id=session_id, state=state, exit_code=exit_code)

    def to_dict(self) -> dict:
        data = {"type": self.type, "sessionId": self.session_id}
        if self.chunk is not None:
            data["chunk"] = self.chunk.to_dict()
        if self.state is not None:
            data["state"] = self.state.value
            if self.state == SessionState.EXITED:
                data["exitCode"] = self.exit_code
        return data
