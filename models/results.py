"""
Typed outcomes of reservation and checkout operations.

Contention, expiry, ownership and missing-record outcomes are routine branches
of the booking protocol, so they are returned as values instead of raised.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .booking import Booking
from .slot import Slot


class ResultStatus(str, Enum):
    """Outcome of a protocol operation."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    ALREADY_HELD = "already_held"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    EXPIRED = "expired"


class _Result(BaseModel):
    status: ResultStatus
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.SUCCESS


class TransitionResult(_Result):
    """Result of a compare-and-swap slot transition."""

    slot: Optional[Slot] = None


class ReserveResult(_Result):
    reservation_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class ReleaseResult(_Result):
    pass


class CheckoutResult(_Result):
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None


class ConfirmResult(_Result):
    """
    Result of a payment confirmation.

    refund_required is set whenever money was taken for a hold that could not
    be turned into a booking; the caller owns the refund.
    """

    booking: Optional[Booking] = None
    refund_required: bool = False
