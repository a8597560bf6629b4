"""Payment processing with Stripe Checkout."""

from .stripe import (
    create_checkout_session,
    expire_checkout_session,
    refund_payment,
    session_expiry_for_hold,
)

__all__ = [
    "create_checkout_session",
    "expire_checkout_session",
    "refund_payment",
    "session_expiry_for_hold",
]
