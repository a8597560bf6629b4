"""Payment ledger models: one row per Stripe payment intent."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from utils.datetime_utils import ensure_utc


class PaymentStatus(str, Enum):
    """Payment status as last reported by Stripe or by our own refunds."""

    SUCCEEDED = "SUCCEEDED"
    REFUNDED = "REFUNDED"


class Payment(BaseModel):
    """
    Durable record of money received for a reservation.

    Keyed by transaction_id, so webhook retries overwrite the same row.
    """

    transaction_id: str = Field(..., description="Stripe payment intent ID")
    reservation_id: str
    status: PaymentStatus = PaymentStatus.SUCCEEDED
    amount_cents: int = Field(default=0, ge=0)
    currency: str = "usd"
    refund_id: Optional[str] = None
    refund_amount_cents: Optional[int] = Field(default=None, ge=0)
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "transaction_id": "pi_123",
                "reservation_id": "reservation-uuid",
                "status": "REFUNDED",
                "amount_cents": 4500,
                "currency": "usd",
                "refund_id": "re_123",
                "refund_amount_cents": 4500,
                "refund_reason": "requested_by_customer",
            }
        }

    @field_validator("created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None
