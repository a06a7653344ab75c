"""Observer subscriptions with bounded per-subscriber delivery queues."""

import itertools
import logging
import queue
import threading
from typing import Any, Callable, Optional, Protocol, Union

from .models import SessionEvent

logger = logging.getLogger(__name__)

OUTPUT = "output"
STATE = "state"

_subscription_ids = itertools.count(1)


class Observer(Protocol):
    def notify(self, event: SessionEvent) -> None:
        ...


ObserverLike = Union[Observer, Callable[[SessionEvent], Any]]


def put_drop_oldest(target: queue.Queue, item: Any) -> int:
    """
    Non-blocking put that evicts the oldest entry when the queue is full.

    Returns:
        Number of items lost (0 or 1)
    """
    try:
        target.put_nowait(item)
        return 0
    except queue.Full:
        pass

    lost = 0
    try:
        target.get_nowait()
        lost = 1
    except queue.Empty:
        pass

    try:
        target.put_nowait(item)
    except queue.Full:
        return 1
    return lost


def _resolve_notify(observer: ObserverLike) -> Callable[[SessionEvent], Any]:
    notify = getattr(observer, "notify", None)
    if callable(notify):
        return notify
    if callable(observer):
        return observer
    raise TypeError(f"Observer must have notify(event) or be callable: {observer!r}")


class Subscription:
    """
    One observer registered for one session and one event kind.

    Events are queued without blocking the publisher. When the queue is full
    the oldest queued event is dropped. A dedicated thread drains the queue
    and calls the observer, so a slow observer only delays itself.
    """

    def __init__(
        self,
        session_id: str,
        kind: str,
        observer: ObserverLike,
        queue_size: int = 256,
    ):
        if kind not in (OUTPUT, STATE):
            raise ValueError(f"Unknown subscription kind: {kind}")
        self.id = next(_subscription_ids)
        self.session_id = session_id
        self.kind = kind
        self.observer = observer
        self._notify = _resolve_notify(observer)
        self._queue: queue.Queue[Optional[SessionEvent]] = queue.Queue(maxsize=max(1, queue_size))
        # Held for the duration of each notify so close() can wait it out
        self._delivery_lock = threading.RLock()
        self._closed = False
        self._stats_lock = threading.Lock()
        self.dropped = 0
        self.delivered = 0

        self._thread = threading.Thread(
            target=self._run,
            name=f"fanout-{session_id}-{kind}-{self.id}",
            daemon=True,
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Optional[SessionEvent]) -> None:
        lost = put_drop_oldest(self._queue, item)
        if lost:
            with self._stats_lock:
                self.dropped += lost

    def offer(self, event: SessionEvent) -> None:
        """Queue an event for delivery. Never blocks; no-op once closed."""
        if self._closed:
            return
        self._put(event)

    def _run(self):
        while True:
            event = self._queue.get()
            if event is None:
                break
            with self._delivery_lock:
                if self._closed:
                    break
                try:
                    self._notify(event)
                    with self._stats_lock:
                        self.delivered += 1
                except Exception as e:
                    logger.error(f"Observer {self.id} for session {self.session_id} failed: {e}")
        logger.debug(f"Delivery thread for subscription {self.id} stopped")

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop delivery.

        Waits for a notify already in progress, so nothing reaches the
        observer after this returns. Idempotent.
        """
        with self._delivery_lock:
            if self._closed:
                return
            self._closed = True
        self._put(None)
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
