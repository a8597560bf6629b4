"""Lifecycle event models published to subscribers."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from utils.datetime_utils import utc_now


class EventTopic(str, Enum):
    """Reservation and booking lifecycle topics."""

    SLOT_RESERVED = "slot_reserved"
    HOLD_EXPIRED = "hold_expired"
    HOLD_RELEASED = "hold_released"
    BOOKING_CONFIRMED = "booking_confirmed"


class Event(BaseModel):
    """Fire-and-forget lifecycle notification."""

    topic: EventTopic
    reservation_id: str
    customer_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)

    def to_message(self) -> Dict[str, Any]:
        """JSON-ready representation for WebSocket subscribers."""
        return self.model_dump(mode="json")


class EventFilter(BaseModel):
    """Subscriber filter. Unset fields match everything."""

    reservation_id: Optional[str] = None
    customer_id: Optional[str] = None
    topics: Optional[FrozenSet[EventTopic]] = None

    def matches(self, event: Event) -> bool:
        if self.reservation_id and event.reservation_id != self.reservation_id:
            return False
        if self.customer_id and event.customer_id != self.customer_id:
            return False
        if self.topics is not None and event.topic not in self.topics:
            return False
        return True
