"""Booking models for confirmed, paid slot purchases."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from utils.datetime_utils import ensure_utc


class BookingStatus(str, Enum):
    """Booking status. Bookings only move PAID -> CANCELLED -> REFUNDED."""

    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    def can_transition_to(self, new_status: "BookingStatus") -> bool:
        return new_status in _BOOKING_TRANSITIONS[self]


_BOOKING_TRANSITIONS = {
    BookingStatus.PAID: {BookingStatus.CANCELLED, BookingStatus.REFUNDED},
    BookingStatus.CANCELLED: {BookingStatus.REFUNDED},
    BookingStatus.REFUNDED: set(),
}



class Booking(BaseModel):
    """Durable record of a completed slot purchase."""

    id: str
    reservation_id: str
    customer_id: str
    provider_id: str
    slot_id: str
    status: BookingStatus = BookingStatus.PAID
    transaction_id: str = Field(..., description="Stripe payment intent ID")
    amount_cents: int = Field(default=0, ge=0)
    currency: str = "usd"
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "booking-uuid",
                "reservation_id": "reservation-uuid",
                "customer_id": "customer-uuid",
                "provider_id": "provider-uuid",
                "slot_id": "slot-uuid",
                "status": "PAID",
                "transaction_id": "pi_123",
                "amount_cents": 4500,
                "currency": "usd",
            }
        }

    @field_validator("created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class BookingCreate(BaseModel):
    """Booking creation model."""

    reservation_id: str
    customer_id: str
    provider_id: str
    slot_id: str
    transaction_id: str
    amount_cents: int = Field(..., ge=0)
    currency: str = "usd"
    status: BookingStatus = BookingStatus.PAID
