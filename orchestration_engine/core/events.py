"""Event emitters for the orchestrator."""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable, List, Optional

from orchestration_engine.core.events_model import OrchestratorEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "service.state_changed",
    "service.failed",
    "certificate.state_changed",
    "certificate.warning",
    "router.reconfigured",
    "router.reconfigure_failed",
    "backup.completed",
    "backup.failed",
    "backup.pruned",
}


def _validate(event: OrchestratorEvent) -> None:
    if event.event_type not in ALLOWED_EVENTS:
        raise ValueError(f"Invalid event type: {event.event_type}")
    if not event.subject:
        raise ValueError("Event must have a subject")


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes every event to the log."""

    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        for event in events:
            _validate(event)
            level = logging.WARNING if event.event_type in (
                "service.failed",
                "certificate.warning",
                "router.reconfigure_failed",
                "backup.failed",
            ) else logging.INFO
            logger.log(level, f"[EVENT] {event.event_type} | {event.subject} | {event.metadata}")


class RecordingEventEmitter(EventEmitter):
    """Keeps a bounded in-memory history (status surface and tests)."""

    def __init__(self, max_events: int = 500):
        self._events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        for event in events:
            _validate(event)
            with self._lock:
                self._events.append(event)

    def recent(
        self,
        event_type: Optional[str] = None,
        prefix: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[OrchestratorEvent]:
        with self._lock:
            events = list(self._events)
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if prefix:
            events = [e for e in events if e.event_type.startswith(prefix)]
        if limit is not None:
            events = events[-limit:]
        return events

    @property
    def events(self) -> List[OrchestratorEvent]:
        return self.recent()


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        events = list(events)
        for emitter in self._emitters:
            try:
                emitter.emit(events)
            except Exception as e:
                logger.error(f"Event emitter {type(emitter).__name__} failed: {e}", exc_info=True)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        pass
