"""
In-process publish/subscribe fan-out of reservation lifecycle events.

Delivery is best-effort: a subscriber that raises is logged and skipped, and
nothing is persisted or retried. Correctness never depends on delivery.
"""

import inspect
from typing import Awaitable, Callable, Dict, Optional, Union

from config import settings
from models.event import Event, EventFilter
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=settings.log_level, log_file="events.log"
)

EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class EventNotifier:
    """Fan-out of lifecycle events to filtered subscribers."""

    def __init__(self):
        self._subscribers: Dict[int, tuple] = {}
        self._next_id = 0

    def subscribe(
        self, handler: EventHandler, event_filter: Optional[EventFilter] = None
    ) -> Callable[[], None]:
        """
        Register a handler for events matching the filter.

        Args:
            handler: Plain or async callable receiving the Event
            event_filter: Filter to apply; None receives every event

        Returns:
            Callable that removes the subscription (safe to call twice)
        """
        subscription_id = self._next_id
        self._next_id += 1
        self._subscribers[subscription_id] = (handler, event_filter or EventFilter())

        def unsubscribe() -> None:
            self._subscribers.pop(subscription_id, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: Event) -> int:
        """
        Deliver an event to every matching subscriber.

        Returns:
            Number of subscribers that received the event without error
        """
        delivered = 0
        # Snapshot: handlers may unsubscribe while being called
        for handler, event_filter in list(self._subscribers.values()):
            if not event_filter.matches(event):
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Subscriber failed for {event.topic.value} "
                    f"(reservation {event.reservation_id}): {e}",
                    exc_info=True,
                )

        logger.debug(
            f"Published {event.topic.value} for reservation {event.reservation_id} "
            f"to {delivered} subscriber(s)"
        )
        return delivered


# Global notifier instance
_notifier: Optional[EventNotifier] = None


def get_notifier() -> EventNotifier:
    """Get or create the process-wide notifier."""
    global _notifier
    if _notifier is None:
        _notifier = EventNotifier()
    return _notifier
