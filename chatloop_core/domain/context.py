"""Turn-scoped cancellation context."""

from __future__ import annotations

import threading
import time
from typing import Optional

from chatloop_core.domain.exceptions import TurnCancelled


class TurnContext:
    """Cancellation token handed to the Model Adapter and Tool Dispatcher.

    Backed by a ``threading.Event`` so any thread may cancel it. An optional
    deadline (monotonic seconds) makes the context report itself cancelled
    once it has passed. A child context is cancelled whenever its parent is.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional["TurnContext"] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._parent = parent
        self.reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TurnCancelled()

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, ``None`` when there is none."""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; returns ``cancelled``."""

        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    def child(self, timeout: Optional[float] = None) -> "TurnContext":
        return TurnContext(timeout=timeout, parent=self)
