"""FastAPI boundary: REST routes and the /ws event socket."""

import asyncio
import json
import logging
import queue
import time
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import BackendUnavailable, LaunchFailure
from .fanout import Subscription, put_drop_oldest
from .models import SessionEvent

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Log requests that hold up the event loop.

    Session routes only touch in-memory state, so anything past the slow
    threshold is suspicious. DELETE waits for the backend to quiesce and is
    allowed as long as the configured teardown timeouts add up to.
    """

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        server_timeouts = self.config.get("timeouts", {}).get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 0.5)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.05)

        pty_config = self.config.get("pty", {})
        tmux_config = self.config.get("tmux", {})
        pty_teardown = pty_config.get("terminate_wait_seconds", 1.0) + pty_config.get("join_timeout_seconds", 2.0)
        self.teardown_threshold = server_timeouts.get(
            "teardown_threshold_seconds",
            max(pty_teardown, tmux_config.get("join_timeout_seconds", 5.0)),
        )

    def threshold_for(self, request: Request) -> float:
        if request.method == "DELETE":
            return max(self.slow_threshold, self.teardown_threshold)
        return self.slow_threshold

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.threshold_for(request):
            logger.warning(
                f"Slow request: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s (status {response.status_code})"
            )
        elif elapsed > self.timing_threshold:
            logger.debug(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class CreateSessionRequest(BaseModel):
    """Request to create a new session."""
    model_config = ConfigDict(populate_by_name=True)

    command: str
    arguments: list[str] = Field(default_factory=list)
    backend: Optional[str] = None
    working_directory: Optional[str] = Field(default=None, alias="workingDirectory")
    env: Optional[dict[str, str]] = None


class SendInputRequest(BaseModel):
    """Request to send a line of input to a session."""
    input: str


class ResizeRequest(BaseModel):
    """Request to resize a session's terminal."""
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class ConnectionObserver:
    """Feeds session events for one WebSocket connection into its send queue."""

    def __init__(self, listener: queue.Queue):
        self.listener = listener

    def notify(self, event: SessionEvent) -> None:
        put_drop_oldest(self.listener, event.to_dict())


def create_app(registry=None, config: Optional[dict] = None, lifespan=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: SessionRegistry instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Agent Bridge",
        description="Start, observe and drive interactive agent sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)
    app.state.registry = registry

    listener_size = app.state.config.get("fanout", {}).get("queue_size", 256)

    def _registry():
        if not app.state.registry:
            raise HTTPException(status_code=503, detail="Session registry not configured")
        return app.state.registry

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/sessions")
    def list_sessions():
        """List live sessions, newest first."""
        return {"sessions": [s.to_dict() for s in _registry().list_sessions()]}

    @app.post("/sessions")
    def create_session(request: CreateSessionRequest):
        """Create a session and start its process."""
        registry = _registry()
        try:
            summary = registry.create_session(
                request.command,
                request.arguments,
                backend=request.backend,
                working_dir=request.working_directory,
                env=request.env,
            )
        except LaunchFailure as e:
            raise HTTPException(status_code=400, detail=str(e))
        except BackendUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid backend: {e}")
        return summary.to_dict()

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str):
        """Get one session's summary."""
        summary = _registry().get_summary(session_id)
        if not summary:
            raise HTTPException(status_code=404, detail="Session not found")
        return summary.to_dict()

    @app.get("/sessions/{session_id}/history")
    def get_history(
        session_id: str,
        limit: Optional[int] = Query(default=None, ge=0),
        offset: int = Query(default=0, ge=0),
    ):
        """Retained output history; empty for an unknown session."""
        chunks = _registry().get_history(session_id, limit=limit, offset=offset)
        return {"sessionId": session_id, "chunks": [c.to_dict() for c in chunks]}

    @app.post("/sessions/{session_id}/input")
    def send_input(session_id: str, request: SendInputRequest):
        """Send a line of input to a session."""
        if not _registry().send_input(session_id, request.input):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"status": "sent", "sessionId": session_id}

    @app.post("/sessions/{session_id}/resize")
    def resize(session_id: str, request: ResizeRequest):
        """Resize a session's terminal."""
        if not _registry().resize(session_id, request.cols, request.rows):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"status": "resized", "sessionId": session_id}

    @app.post("/sessions/{session_id}/interrupt")
    def interrupt(session_id: str):
        """Send Ctrl+C to a session."""
        if not _registry().interrupt(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"status": "interrupted", "sessionId": session_id}

    @app.delete("/sessions/{session_id}")
    def remove_session(session_id: str):
        """Remove a session. Succeeds for unknown ids too."""
        _registry().remove_session(session_id)
        return {"status": "removed", "sessionId": session_id}

    @app.websocket("/ws")
    async def ws_events(websocket: WebSocket) -> None:
        registry = app.state.registry
        await websocket.accept()
        if not registry:
            await websocket.close(code=1011)
            return

        listener: queue.Queue[Optional[dict[str, Any]]] = queue.Queue(maxsize=listener_size)
        observer = ConnectionObserver(listener)
        subscriptions: dict[str, list[Subscription]] = {}
        logger.debug("Event websocket connected")

        async def send_json(payload: dict[str, Any]) -> None:
            await websocket.send_text(json.dumps(payload))

        async def stream_events() -> None:
            while True:
                try:
                    event = await asyncio.to_thread(listener.get, True, 0.5)
                except queue.Empty:
                    continue
                if event is None:
                    break
                await send_json(event)

        def subscribe(session_id: str) -> bool:
            if session_id in subscriptions:
                return True
            output = registry.subscribe_output(session_id, observer)
            if output is None:
                return False
            state = registry.subscribe_state(session_id, observer)
            subscriptions[session_id] = [s for s in (output, state) if s is not None]
            return True

        def unsubscribe(session_id: str) -> None:
            for subscription in subscriptions.pop(session_id, []):
                registry.unsubscribe(subscription)

        async def consume_messages() -> None:
            while True:
                try:
                    message = await websocket.receive_text()
                except WebSocketDisconnect:
                    return
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    await send_json({"type": "error", "message": "Invalid JSON"})
                    continue
                if not isinstance(payload, dict):
                    continue

                message_type = str(payload.get("type") or "")
                session_id = str(payload.get("sessionId") or "")

                if message_type == "ping":
                    await send_json({"type": "pong"})
                elif message_type == "subscribe":
                    if await asyncio.to_thread(subscribe, session_id):
                        await send_json({"type": "subscribed", "sessionId": session_id})
                    else:
                        await send_json(
                            {"type": "error", "sessionId": session_id, "message": "Session not found"}
                        )
                elif message_type == "unsubscribe":
                    await asyncio.to_thread(unsubscribe, session_id)
                    await send_json({"type": "unsubscribed", "sessionId": session_id})
                elif message_type == "input":
                    text = str(payload.get("input") or "")
                    if not await asyncio.to_thread(registry.send_input, session_id, text):
                        await send_json(
                            {"type": "error", "sessionId": session_id, "message": "Session not found"}
                        )
                else:
                    await send_json({"type": "error", "message": f"Unknown message type: {message_type}"})

        sender = asyncio.create_task(stream_events())
        receiver = asyncio.create_task(consume_messages())
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, WebSocketDisconnect):
                    raise exc
        except WebSocketDisconnect:
            pass
        finally:
            # Only this connection's handles; other subscribers are untouched
            for session_id in list(subscriptions):
                await asyncio.to_thread(unsubscribe, session_id)
            put_drop_oldest(listener, None)
            if not sender.done():
                sender.cancel()
            if not receiver.done():
                receiver.cancel()
            logger.debug("Event websocket disconnected")

    return app
