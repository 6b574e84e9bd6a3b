"""
Cooperative cancellation for user-initiated lookups.

Every I/O-issuing call takes an optional CancelToken.  Tokens are checked
before and between upstream attempts; cancelling also fires registered
callbacks so an in-flight HTTP session can be closed.

ActionSlots gives each action class ("geocode", "overpass") a single live
token: starting a new action cancels the previous one, so a stale
response can never overwrite newer state.

DragThrottle bounds request volume while a map pin is dragged.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class CancelledError(Exception):
    """Raised when a lookup is abandoned because its token was cancelled.

    Not an upstream failure: callers must never retry on it and must keep
    it out of user-visible error surfaces.
    """

    pass


class CancelToken:
    """Thread-safe, one-shot cancellation flag."""

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason = ""
        if parent is not None:
            parent.on_cancel(lambda: self.cancel(parent.reason or "parent cancelled"))

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.debug("Cancel callback failed", exc_info=True)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; runs immediately if already cancelled.

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove():
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove
        callback()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self.reason or "cancelled")


def check_cancelled(token: Optional[CancelToken]) -> None:
    """raise_if_cancelled() that tolerates a missing token."""
    if token is not None:
        token.raise_if_cancelled()


class ActionSlots:
    """One live CancelToken per action class."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancelToken] = {}

    def begin(self, action_class: str, parent: Optional[CancelToken] = None) -> CancelToken:
        """Cancel the in-flight token of *action_class* and start a new one.

        A *parent* token cancels the new one along with it.
        """
        token = CancelToken(parent=parent)
        with self._lock:
            previous = self._tokens.get(action_class)
            self._tokens[action_class] = token
        if previous is not None and not previous.cancelled:
            logger.debug("Superseding in-flight %s action", action_class)
            previous.cancel(f"superseded {action_class}")
        return token

    def is_current(self, action_class: str, token: CancelToken) -> bool:
        with self._lock:
            return self._tokens.get(action_class) is token

    def cancel_all(self) -> None:
        with self._lock:
            tokens = list(self._tokens.values())
            self._tokens.clear()
        for token in tokens:
            token.cancel("session closed")


class DragThrottle:
    """Minimum spacing between pin-drag resolutions.

    Intermediate drag events closer than *min_interval_s* to the last
    accepted one are dropped.  Drag-end always passes and resets the clock.
    """

    def __init__(self, min_interval_s: float = 1.1, clock: Callable[[], float] = time.monotonic):
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._last_accepted: Optional[float] = None

    def allow(self, source: str) -> bool:
        """Return True when an event from *source* should be resolved."""
        now = self._clock()
        with self._lock:
            if source == "dragend":
                self._last_accepted = None
                return True
            if source != "drag":
                return True
            if self._last_accepted is not None and now - self._last_accepted < self.min_interval_s:
                return False
            self._last_accepted = now
            return True
