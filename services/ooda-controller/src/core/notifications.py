"""
ChronoHeal - Event Bus
======================

Explicit publish/subscribe channel for knowledge-base and run events.

Components that produce notifications take an EventBus; components that
care subscribe to a topic. Producers never know who is listening.
"""

from collections import defaultdict
from threading import Lock
from typing import Callable

from shared.constants import EventTopic
from shared.schemas.events import BaseEvent
from shared.utils.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[[BaseEvent], None]


class EventBus:
    """
    Synchronous in-process event bus.

    Listeners run in subscription order on the publisher's thread. A
    listener that raises is logged and skipped; it never breaks the
    publisher or the other listeners.
    """

    def __init__(self):
        self._listeners: dict[EventTopic, list[Listener]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, topic: EventTopic, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners[topic].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[topic]:
                    self._listeners[topic].remove(listener)

        return unsubscribe

    def publish(self, event: BaseEvent) -> int:
        """Deliver an event; returns the number of listeners that accepted it."""
        with self._lock:
            listeners = list(self._listeners[event.topic])

        delivered = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Listener failed for {event.topic.value}: {e}",
                    extra={"topic": event.topic.value, "event_id": event.event_id},
                    exc_info=True
                )
        return delivered

    def listener_count(self, topic: EventTopic) -> int:
        with self._lock:
            return len(self._listeners[topic])
