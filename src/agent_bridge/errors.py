"""Error types raised by the session engine."""


class AgentBridgeError(Exception):
    """Base class for engine errors."""


class LaunchFailure(AgentBridgeError):
    """Executable could not be resolved or the OS refused a process/PTY."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to launch {command!r}: {reason}")


class BackendUnavailable(AgentBridgeError):
    """The multiplexer program is missing or refused to create a session."""


class TransientPollError(AgentBridgeError):
    """A single poll-cycle multiplexer call failed; retried on the next tick."""
