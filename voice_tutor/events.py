"""Typed events emitted by a tutoring session, and the bus that delivers them."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, TypeVar

from voice_tutor.models import ConceptMap, ConversationStatus, PivotEntry, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    pass


@dataclass(frozen=True)
class TranscriptFinalized(Event):
    text: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StateChanged(Event):
    status: ConversationStatus
    previous: Optional[ConversationStatus] = None


@dataclass(frozen=True)
class ConceptMapUpdated(Event):
    concept_map: ConceptMap


@dataclass(frozen=True)
class PivotQueueUpdated(Event):
    queue: list[PivotEntry]


@dataclass(frozen=True)
class ConfidenceReached(Event):
    guidance: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent(Event):
    message: str


E = TypeVar("E", bound=Event)
Handler = Callable[[E], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event type.

    Handlers subscribed to a base class receive every subclass too, so
    ``subscribe(Event, ...)`` sees everything.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[Event], list[Callable[[Event], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    # A broken subscriber must not stall the turn loop.
                    log.exception(f"Event handler failed for {type(event).__name__}")

    def channel(self, event_type: type[Event] = Event, maxsize: int = 0) -> asyncio.Queue:
        """Return a queue that receives every matching event from now on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def _put(event: Event) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning(f"Event channel full, dropping {type(event).__name__}")

        self.subscribe(event_type, _put)
        return queue
