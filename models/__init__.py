"""Pydantic models for data validation and serialization."""

from .booking import Booking, BookingCreate, BookingStatus
from .event import Event, EventFilter, EventTopic
from .payment import Payment, PaymentStatus
from .reservation import Reservation, ReservationStatus
from .results import (
    CheckoutResult,
    ConfirmResult,
    ReleaseResult,
    ReserveResult,
    ResultStatus,
    TransitionResult,
)
from .slot import Slot, SlotCreate, SlotStatus

__all__ = [
    "Booking",
    "BookingCreate",
    "BookingStatus",
    "CheckoutResult",
    "ConfirmResult",
    "Event",
    "EventFilter",
    "EventTopic",
    "Payment",
    "PaymentStatus",
    "ReleaseResult",
    "Reservation",
    "ReservationStatus",
    "ReserveResult",
    "ResultStatus",
    "Slot",
    "SlotCreate",
    "SlotStatus",
    "TransitionResult",
]
