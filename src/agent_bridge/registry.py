"""Session registry: creation, lookup, removal and observer fan-out."""

import itertools
import logging
import secrets
import string
import threading
from typing import Callable, Optional

from . import terminal
from .backend import ProcessBackend
from .errors import BackendUnavailable
from .fanout import OUTPUT, STATE, ObserverLike, Subscription
from .models import BackendKind, OutputChunk, SessionEvent, SessionSummary
from .prompt_detector import PromptDetector
from .pty_backend import PTYBackend
from .session import Session
from .tmux_backend import TmuxBackend
from .tmux_controller import TmuxController, find_tmux

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_lowercase + string.digits

BackendFactory = Callable[..., ProcessBackend]


class SessionRegistry:
    """
    Thread-safe map of session id to Session, plus observer registrations.

    The registry lock only guards the maps. It is never held while calling
    into a Session, a backend or an observer.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        tmux: Optional[TmuxController] = None,
        backend_factory: Optional[BackendFactory] = None,
    ):
        """
        Args:
            config: Full configuration dict
            tmux: Controller for multiplexer sessions (built from config if omitted)
            backend_factory: Override for backend construction, called as
                factory(kind, session_id, command, arguments, working_dir, env)
        """
        self.config = config or {}
        sessions_config = self.config.get("sessions", {})
        self.id_length = sessions_config.get("id_length", 8)
        self.default_backend = BackendKind.parse(sessions_config.get("default_backend", "pty"))
        self.queue_size = self.config.get("fanout", {}).get("queue_size", 256)

        if tmux is None:
            tmux = TmuxController(find_tmux(self.config.get("tmux", {}).get("path")), self.config)
        self.tmux = tmux
        self.search_path = terminal.build_search_path(self.config.get("pty", {}).get("search_paths"))
        self.detector = PromptDetector()
        self._backend_factory = backend_factory or self._build_backend

        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._reserved: set[str] = set()
        self._order: dict[str, int] = {}
        self._sequence = itertools.count()
        self._subscriptions: dict[str, list[Subscription]] = {}

    # Identifiers

    def _new_id(self) -> str:
        return "".join(secrets.choice(ID_ALPHABET) for _ in range(self.id_length))

    def _reserve_id(self) -> str:
        """Pick an id unused by any live or starting session. Caller holds the lock."""
        while True:
            session_id = self._new_id()
            if session_id not in self._sessions and session_id not in self._reserved:
                self._reserved.add(session_id)
                return session_id
            logger.warning(f"Session id collision on {session_id}, regenerating")

    # Creation

    def _build_backend(
        self,
        kind: BackendKind,
        session_id: str,
        command: str,
        arguments: list[str],
        working_dir: Optional[str],
        env: Optional[dict[str, str]],
    ) -> ProcessBackend:
        if kind == BackendKind.PTY_DIRECT:
            return PTYBackend(
                command,
                arguments,
                env=env,
                working_dir=working_dir,
                search_path=self.search_path,
                config=self.config,
            )
        if kind == BackendKind.MULTIPLEXER_MANAGED:
            if not self.tmux.available:
                raise BackendUnavailable("tmux is not installed")
            return TmuxBackend(
                session_id,
                command,
                arguments,
                controller=self.tmux,
                working_dir=working_dir,
                env=env,
                search_path=self.search_path,
                config=self.config,
            )
        raise BackendUnavailable(f"Sessions of kind {kind.value} cannot be created")

    def create_session(
        self,
        command: str,
        arguments: Optional[list[str]] = None,
        backend: Optional[str] = None,
        working_dir: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> SessionSummary:
        """
        Create and start a session.

        Args:
            command: Command name or path
            arguments: Argument list
            backend: "pty"/"tmux" or a BackendKind value; config default if None
            working_dir: Directory to start in
            env: Environment overrides

        Returns:
            Summary of the running session

        Raises:
            LaunchFailure: if the command or the PTY could not be started
            BackendUnavailable: if the requested backend cannot host sessions
            ValueError: if backend names no known kind
        """
        arguments = list(arguments or [])
        kind = BackendKind.parse(backend) or self.default_backend

        with self._lock:
            session_id = self._reserve_id()

        try:
            process_backend = self._backend_factory(
                kind, session_id, command, arguments, working_dir, env
            )
            session = Session(
                session_id,
                command,
                arguments,
                process_backend,
                on_event=self._publish,
                detector=self.detector,
                config=self.config,
            )
            session.start()
        except Exception:
            with self._lock:
                self._reserved.discard(session_id)
            raise

        with self._lock:
            self._reserved.discard(session_id)
            self._sessions[session_id] = session
            self._order[session_id] = next(self._sequence)

        logger.info(f"Created session {session_id} ({kind.value}): {command}")
        return session.summary()

    # Lookup

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        session = self.get_session(session_id)
        return session.summary() if session else None

    def list_sessions(self) -> list[SessionSummary]:
        """Summaries of all live sessions, newest first."""
        with self._lock:
            entries = [(self._order[sid], s) for sid, s in self._sessions.items()]
        summaries = [(order, s.summary()) for order, s in entries]
        summaries.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [summary for _, summary in summaries]

    def get_history(
        self, session_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> list[OutputChunk]:
        session = self.get_session(session_id)
        if session is None:
            return []
        return session.get_history(limit, offset)

    # Control

    def send_input(self, session_id: str, text: str) -> bool:
        """
        Forward input to a session.

        Returns:
            True if the session exists; write-level failures are not reported
        """
        session = self.get_session(session_id)
        if session is None:
            logger.debug(f"Input for unknown session {session_id} dropped")
            return False
        session.send_input(text)
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return False
        session.resize(cols, rows)
        return True

    def interrupt(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return False
        session.interrupt()
        return True

    def remove_session(self, session_id: str) -> None:
        """
        Remove a session. Idempotent.

        Observers are closed (waiting out any in-flight delivery) before the
        backend is torn down, so nothing for this id is delivered after
        return.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
            self._order.pop(session_id, None)
            subscriptions = self._subscriptions.pop(session_id, [])

        for subscription in subscriptions:
            subscription.close()

        if session is None:
            return
        session.terminate()
        logger.info(f"Removed session {session_id}")

    def shutdown(self) -> None:
        """Terminate every session and stop all delivery threads."""
        with self._lock:
            session_ids = list(self._sessions)
        logger.info(f"Shutting down {len(session_ids)} session(s)")
        for session_id in session_ids:
            self.remove_session(session_id)

    # Observers

    def _subscribe(self, session_id: str, kind: str, observer: ObserverLike) -> Optional[Subscription]:
        with self._lock:
            if session_id not in self._sessions:
                return None
            subscription = Subscription(session_id, kind, observer, self.queue_size)
            self._subscriptions.setdefault(session_id, []).append(subscription)
        logger.debug(f"Subscription {subscription.id} added for {kind} on {session_id}")
        return subscription

    def subscribe_output(self, session_id: str, observer: ObserverLike) -> Optional[Subscription]:
        """Register an output observer. Returns None for an unknown session."""
        return self._subscribe(session_id, OUTPUT, observer)

    def subscribe_state(self, session_id: str, observer: ObserverLike) -> Optional[Subscription]:
        """Register a state observer. Returns None for an unknown session."""
        return self._subscribe(session_id, STATE, observer)

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.session_id, [])
            found = subscription in subscriptions
            if found:
                subscriptions.remove(subscription)
        subscription.close()
        return found

    def remove_observers(self, session_id: str) -> None:
        with self._lock:
            subscriptions = self._subscriptions.pop(session_id, [])
        for subscription in subscriptions:
            subscription.close()

    def _publish(self, event: SessionEvent) -> None:
        """Queue an event for every matching observer, in registration order."""
        with self._lock:
            targets = [
                s for s in self._subscriptions.get(event.session_id, [])
                if s.kind == event.type
            ]
        for subscription in targets:
            subscription.offer(event)
