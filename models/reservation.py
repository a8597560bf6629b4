"""Reservation (hold) models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator

from utils.datetime_utils import ensure_utc


class ReservationStatus(str, Enum):
    """Reservation lifecycle status. Everything except HOLD is terminal."""

    HOLD = "HOLD"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    RELEASED = "RELEASED"


class Reservation(BaseModel):
    """Temporary exclusive claim on a slot pending payment."""

    id: str
    slot_id: str
    customer_id: str
    status: ReservationStatus = ReservationStatus.HOLD
    hold_expires_at: datetime
    payment_session_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("hold_expires_at", "created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def is_expired_at(self, now: datetime) -> bool:
        """A hold is expired from hold_expires_at onwards."""
        return ensure_utc(now) >= self.hold_expires_at
