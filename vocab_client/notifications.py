"""
Session notifications for the surrounding application.

The client emits exactly one kind of event: the session is gone and the user
must sign in again.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List

logger = logging.getLogger("notifications")


class SessionEventType(Enum):
    LOGOUT = "LOGOUT"


@dataclass(frozen=True)
class SessionEvent:
    type: SessionEventType
    reason: str
    emitted_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


Listener = Callable[[SessionEvent], None]


class SessionEvents:
    """Listener registry for session events."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that removes the listener again
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit_logout(self, reason: str) -> None:
        event = SessionEvent(type=SessionEventType.LOGOUT, reason=reason)
        with self._lock:
            listeners = list(self._listeners)
        logger.info(f"Emitting {event.type.value}: {reason}")
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                # A failing UI handler must not mask the session error
                logger.error(f"Logout listener failed: {e}")
