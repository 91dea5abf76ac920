"""
Request coalescing to prevent duplicate backend calls.

When multiple concurrent requests ask for the same key, only one call
sequence runs and all requesters share its outcome.
"""
import threading
import time
import logging
from typing import Dict, Optional, Callable, Any, Hashable
from dataclasses import dataclass, field

from ..errors import ClientError, Err, Ok, Result

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress call sequence."""
    event: threading.Event = field(default_factory=threading.Event)
    outcome: Optional[Result] = None
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one call sequence.

    Pattern:
    - First request for a key initiates the fetch
    - Subsequent requests for the same key wait on the Event
    - When fetch completes, all waiters receive the same outcome
    - The key is released when the fetch settles, on every exit path

    Usage:
        coalescer = RequestCoalescer()
        outcome = coalescer.run(("GET", "/subjects"), fetch_subjects)
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Max seconds a joiner waits for an in-flight request.
                None waits as long as the initiator runs.
        """
        self._in_flight: Dict[Hashable, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def run(self, key: Hashable, fetch_fn: Callable[[], Any]) -> Result:
        """
        Either join an existing in-flight request or initiate a new one.

        ClientErrors raised by fetch_fn become Err outcomes shared by every
        caller. Any other exception is a bug: it is shared too, and re-raised.
        """
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.waiter_count += 1
                logger.debug(
                    f"Coalescing request for {key} "
                    f"(waiters: {in_flight.waiter_count})"
                )
                is_initiator = False
            else:
                in_flight = InFlightRequest()
                self._in_flight[key] = in_flight
                is_initiator = True
                logger.debug(f"Initiating fetch for {key}")

        if is_initiator:
            try:
                in_flight.outcome = Ok(fetch_fn())
            except ClientError as e:
                in_flight.outcome = Err(e)
                logger.debug(f"Fetch failed for {key}: {e!r}")
            except BaseException as e:
                in_flight.outcome = Err(
                    ClientError.network(f"Unexpected failure: {e}", e)
                )
                raise
            finally:
                with self._lock:
                    self._in_flight.pop(key, None)
                in_flight.event.set()
            return in_flight.outcome

        completed = in_flight.event.wait(timeout=self._timeout)
        if not completed:
            logger.error(f"Timeout waiting for coalesced request: {key}")
            return Err(ClientError.timeout(
                f"Request for {key} timed out after {self._timeout}s"
            ))
        return in_flight.outcome

    def get_or_fetch(self, key: Hashable, fetch_fn: Callable[[], Any]) -> Any:
        """Like run(), but returns the value or raises the shared ClientError."""
        return self.run(key, fetch_fn).unwrap()

    def is_in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "waiters": {
                    key: in_flight.waiter_count
                    for key, in_flight in self._in_flight.items()
                },
            }
