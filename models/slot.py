"""Slot models for bookable provider time intervals."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from utils.datetime_utils import ensure_utc


class SlotStatus(str, Enum):
    """Slot availability status."""

    AVAILABLE = "AVAILABLE"
    HELD = "HELD"
    BOOKED = "BOOKED"


class Slot(BaseModel):
    """Time slot offered by a provider for one service."""

    id: str
    provider_id: str
    service_id: str
    start_time: datetime
    end_time: datetime
    status: SlotStatus = SlotStatus.AVAILABLE
    price_cents: int = Field(..., ge=0)
    currency: str = "usd"
    version: int = Field(default=0, ge=0)
    reservation_id: Optional[str] = Field(
        default=None, description="Reservation currently holding or owning the slot"
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "slot-uuid",
                "provider_id": "provider-uuid",
                "service_id": "service-uuid",
                "start_time": "2026-01-15T10:00:00+00:00",
                "end_time": "2026-01-15T11:00:00+00:00",
                "status": "AVAILABLE",
                "price_cents": 4500,
                "currency": "usd",
                "version": 0,
            }
        }

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def _check_interval(self) -> "Slot":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def is_held_by(self, reservation_id: str) -> bool:
        """True while this slot is HELD on behalf of the given reservation."""
        return (
            self.status == SlotStatus.HELD and self.reservation_id == reservation_id
        )


class SlotCreate(BaseModel):
    """Slot creation model, fed by the provider availability source."""

    provider_id: str
    service_id: str
    start_time: datetime
    end_time: datetime
    price_cents: int = Field(..., ge=0)
    currency: str = "usd"

    @model_validator(mode="after")
    def _check_interval(self) -> "SlotCreate":
        if ensure_utc(self.end_time) <= ensure_utc(self.start_time):
            raise ValueError("end_time must be after start_time")
        return self
