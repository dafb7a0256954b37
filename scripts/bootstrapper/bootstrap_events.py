from __future__ import annotations

import contextlib
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, TextIO

from .models import EventListener

logger = logging.getLogger(__name__)

DEFAULT_NOISE_LOGGERS = ("scripts.bootstrapper.transport",)


def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class EventPublisher:
    """Fans progress messages out to listeners in registration order.

    ``None`` is a heartbeat and is delivered like any other message. A listener
    that raises is logged and skipped; the remaining listeners still run.
    """

    def __init__(self, listeners: Iterable[EventListener] = ()) -> None:
        self._listeners: list[EventListener] = list(listeners)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    @property
    def listeners(self) -> tuple[EventListener, ...]:
        return tuple(self._listeners)

    def publish(self, message: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.warning("event listener %r failed", listener, exc_info=True)


class EventSink:
    def __init__(self, path: Optional[Path], stream: Optional[TextIO] = None) -> None:
        self.path = path
        self.stream = stream if stream is not None else sys.stdout

    def emit(self, event_type: str, message: str, **extra: Any) -> None:
        payload = {
            "time": now_iso(),
            "event": event_type,
            "message": message,
            **extra,
        }
        if self.path is not None:
            line = json.dumps(payload, sort_keys=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        print(f"[{payload['time']}] {event_type}: {message}", file=self.stream)

    def __call__(self, message: Optional[str]) -> None:
        if message is None:
            return
        self.emit("progress", message)


class HeartbeatPrinter:
    """Prints a dot per heartbeat so long waits never look stalled."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def __call__(self, message: Optional[str]) -> None:
        if message is not None:
            return
        self.stream.write(".")
        self.stream.flush()


class _ConnectionNoiseFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno > logging.WARNING


@contextlib.contextmanager
def suppress_connection_noise(logger_names: Iterable[str] = DEFAULT_NOISE_LOGGERS) -> Iterator[None]:
    """Drop WARNING-and-below records from transport loggers for the block."""
    noise_filter = _ConnectionNoiseFilter()
    targets = [logging.getLogger(name) for name in logger_names]
    for target in targets:
        target.addFilter(noise_filter)
    try:
        yield
    finally:
        for target in targets:
            target.removeFilter(noise_filter)
