"""Lifecycle events published by the engine.

The engine only publishes typed ``AuthEvent`` values; subscribers (audit
trail, notification senders) run on a worker thread and never affect the
outcome of the call that emitted the event.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from gatekeeper.logging import get_logger
from gatekeeper.storage.models import utcnow

logger = get_logger(__name__)


class EventName(str, Enum):
    LOGGED_IN = "logged_in"
    REGISTERED = "registered"
    TWO_FACTOR_VERIFIED = "two_factor_verified"
    TWO_FACTOR_CODE_SENT = "two_factor_code_sent"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    REFRESH_TOKEN = "refresh_token"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"
    LOGGED_OUT = "logged_out"
    LOGGED_OUT_ALL = "logged_out_all"
    EMAIL_VERIFICATION_REQUESTED = "email.verification.requested"
    EMAIL_VERIFIED = "email.verified"
    PHONE_VERIFICATION_REQUESTED = "phone.verification.requested"
    PHONE_VERIFIED = "phone.verified"
    SESSION_EVICTED = "session.evicted"


@dataclass(frozen=True)
class AuthEvent:
    name: EventName
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    session_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[AuthEvent], None]

_STOP = object()


class AuditEmitter:
    """Bounded queue between the engine and its event subscribers.

    ``emit`` never blocks: when the queue is full the event is dropped and a
    warning is logged. ``start`` runs delivery on a daemon thread; without it,
    ``drain`` delivers pending events on the caller's thread.
    """

    def __init__(self, *, maxsize: int = 10000) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._subscribers: List[tuple[Optional[EventName], Subscriber]] = []
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0

    def subscribe(self, handler: Subscriber, *, name: Optional[EventName] = None) -> None:
        """Register a handler for every event, or for one event name."""
        with self._lock:
            self._subscribers.append((name, handler))

    def unsubscribe(self, handler: Subscriber) -> None:
        with self._lock:
            self._subscribers = [(n, h) for n, h in self._subscribers if h is not handler]

    def emit(self, event: AuthEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "audit_event_dropped", event_name=event.name.value, user_id=event.user_id
            )

    def publish(self, name: EventName, **kwargs: Any) -> AuthEvent:
        event = AuthEvent(name=name, **kwargs)
        self.emit(event)
        return event

    def drain(self) -> int:
        """Deliver every queued event on the current thread; returns the count delivered."""
        delivered = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            if item is _STOP:
                self._queue.task_done()
                continue
            self._dispatch(item)
            self._queue.task_done()
            delivered += 1

    def start(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run, name="gatekeeper-audit", daemon=True
        )
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        if not self._worker:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._dispatch(item)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: AuthEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for name, handler in subscribers:
            if name is not None and name != event.name:
                continue
            try:
                handler(event)
            except Exception as exc:
                logger.error(
                    "audit_subscriber_failed",
                    event_name=event.name.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(exc),
                )
