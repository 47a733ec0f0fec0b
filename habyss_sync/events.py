"""In-process event bus for cross-screen refresh.

Events are typed dataclasses; subscribers register for an event class rather
than a string topic, so two features cannot collide on the same name.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

__all__ = [
    "EventBus",
    "DomainEvent",
    "HabitCreated",
    "HabitUpdated",
    "HabitDeleted",
    "CompletionChanged",
    "RoutineChanged",
    "SyncCompleted",
    "DataPulled",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    """Base class for every published event."""


@dataclass(frozen=True)
class HabitCreated(DomainEvent):
    habit_id: str
    owner_id: str
    name: str
    is_goal: bool = False


@dataclass(frozen=True)
class HabitUpdated(DomainEvent):
    habit_id: str
    owner_id: str
    source: str = "local"  # "local" or "remote"


@dataclass(frozen=True)
class HabitDeleted(DomainEvent):
    habit_id: str
    owner_id: str
    source: str = "local"


@dataclass(frozen=True)
class CompletionChanged(DomainEvent):
    habit_id: str
    date: str
    done: bool
    owner_id: str
    source: str = "local"


@dataclass(frozen=True)
class RoutineChanged(DomainEvent):
    routine_id: str
    owner_id: str
    deleted: bool = False
    source: str = "local"


@dataclass(frozen=True)
class SyncCompleted(DomainEvent):
    owner_id: str
    mode: str  # "pass" or "full"
    pulled: int = 0
    pushed: int = 0
    conflicts_discarded: int = 0
    errors: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DataPulled(DomainEvent):
    owner_id: str
    counts: tuple[tuple[str, int], ...] = field(default_factory=tuple)


E = TypeVar("E", bound=DomainEvent)
Handler = Callable[[Any], None]


class EventBus:
    """Thread-safe publish/subscribe keyed by event class.

    Subscribing to ``DomainEvent`` receives every event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Subscribe a handler to an event type.

        Returns:
            A callable that removes the subscription
        """
        with self._lock:
            self._subscribers[event_type].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, event: DomainEvent) -> None:
        """Deliver an event to its subscribers. Handler errors are logged, not raised."""
        handlers: list[Handler] = []
        with self._lock:
            for event_type in type(event).__mro__:
                handlers.extend(self._subscribers.get(event_type, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.error(f"EventBus handler failed for {type(event).__name__}: {exc}")

    def clear(self, event_type: Optional[type] = None) -> None:
        """Drop subscribers for one event type, or all of them."""
        with self._lock:
            if event_type is None:
                self._subscribers.clear()
            else:
                self._subscribers.pop(event_type, None)
