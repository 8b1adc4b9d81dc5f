from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from .models import AppRecord, AppsEvent, EventKind, OperationError

logger = logging.getLogger("appsd.events")

Listener = Callable[[AppsEvent], None]


class AppsEventBus:
    """In-process fan-out of lifecycle events, with a bounded recent history."""

    def __init__(self, max_events: int = 100):
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._recent: Deque[AppsEvent] = deque(maxlen=max_events)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        kind: EventKind,
        name: str,
        record: Optional[AppRecord] = None,
        error: Optional[OperationError] = None,
    ) -> AppsEvent:
        event = AppsEvent(kind=kind, name=name, record=record, error=error)
        with self._lock:
            self._recent.append(event)
            listeners = list(self._listeners)

        logger.debug(f"Event {kind} for app '{name}'")
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # a broken listener must not fail the operation that emitted
                logger.exception(f"Event listener failed on {kind} for app '{name}'")
        return event

    def recent(self, name: Optional[str] = None) -> List[AppsEvent]:
        with self._lock:
            events = list(self._recent)
        if name is not None:
            events = [e for e in events if e.name == name]
        return events
