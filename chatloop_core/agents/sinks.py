"""Event Sink implementations.

The engine only calls ``emit(event)``; it never blocks on a consumer and
never runs caller code on its worker thread. Every turn delivers exactly
one terminal event (TurnDone or TurnError), always last.
"""

import logging
import queue
import threading
from typing import Callable, Iterator, Optional, Protocol

from chatloop_core.domain.events import StreamEvent


class EventSink(Protocol):
    def emit(self, event: StreamEvent) -> None:
        ...


class QueueEventSink:
    """Unbounded queue; the consumer drains it with ``iter_events``."""

    def __init__(self) -> None:
        self._queue: "queue.Queue[StreamEvent]" = queue.Queue()

    def emit(self, event: StreamEvent) -> None:
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> StreamEvent:
        return self._queue.get(timeout=timeout)

    def iter_events(self, timeout: Optional[float] = None) -> Iterator[StreamEvent]:
        """Yield events until the terminal one.

        ``timeout`` bounds the wait for each event; ``queue.Empty`` propagates
        when it elapses.
        """

        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if event.terminal:
                return


class CallbackEventSink:
    """Delivers events to ``callback`` on a dedicated dispatcher thread.

    Callback exceptions are logged and do not stop delivery of later events.
    The dispatcher thread exits after the terminal event or on ``close()``.
    """

    _STOP = object()

    def __init__(self, callback: Callable[[StreamEvent], None], logger: Optional[logging.Logger] = None):
        self._callback = callback
        self._logger = logger or logging.getLogger("chatloop_core.sinks")
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="event-sink", daemon=True)
        self._thread.start()

    def emit(self, event: StreamEvent) -> None:
        self._queue.put_nowait(event)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            try:
                self._callback(item)  # type: ignore[arg-type]
            except Exception:
                self._logger.exception("event callback failed", extra={"extra": {"event": getattr(item, "kind", None)}})
            if getattr(item, "terminal", False):
                return

    def close(self) -> None:
        self._queue.put_nowait(self._STOP)

    def join(self, timeout: Optional[float] = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()


class LoggingEventSink:
    def __init__(self, logger: logging.Logger, level: int = logging.DEBUG):
        self._logger = logger
        self._level = level

    def emit(self, event: StreamEvent) -> None:
        level = logging.WARNING if event.kind == "turn_error" else self._level
        fields = {"event": event.kind, "payload": dict(vars(event))}
        self._logger.log(level, f"event {event.kind}", extra={"extra": fields})


class FanoutEventSink:
    def __init__(self, *sinks: EventSink):
        self._sinks = sinks

    def emit(self, event: StreamEvent) -> None:
        for sink in self._sinks:
            sink.emit(event)
