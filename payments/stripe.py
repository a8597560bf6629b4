"""
Stripe Checkout integration for slot payments.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import stripe

from config import settings
from utils.constants import (
    MAX_RETRIES,
    METADATA_CUSTOMER_ID,
    METADATA_RESERVATION_ID,
    RETRY_BACKOFF,
    RETRY_DELAY_SECONDS,
    STRIPE_SESSION_MIN_EXPIRY_MINUTES,
)
from utils.datetime_utils import ensure_utc
from utils.exceptions import CheckoutSessionError, PaymentError, RefundError
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=settings.log_level, log_file="payments.log"
)

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key


def _is_client_error(error: stripe.StripeError) -> bool:
    return bool(error.http_status and 400 <= error.http_status < 500)


async def _call_stripe(
    func: Callable[..., Any],
    operation: str,
    error_cls: type = PaymentError,
    **kwargs: Any,
) -> Any:
    """
    Run a synchronous Stripe call off the event loop.

    Transient failures (network, 5xx) are retried with exponential backoff;
    client errors (4xx) fail immediately.

    Raises:
        error_cls: When the call fails for good
    """
    delay = RETRY_DELAY_SECONDS

    for attempt in range(MAX_RETRIES):
        try:
            return await asyncio.to_thread(func, **kwargs)
        except stripe.StripeError as e:
            if _is_client_error(e):
                logger.error(f"Stripe rejected {operation}: {e}")
                raise error_cls(f"Payment processing error: {e}") from e

            if attempt < MAX_RETRIES - 1:
                logger.warning(
                    f"Stripe error during {operation} (attempt {attempt + 1}/{MAX_RETRIES}): "
                    f"{e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= RETRY_BACKOFF
            else:
                logger.error(
                    f"Stripe error during {operation} after {MAX_RETRIES} attempts: {e}",
                    exc_info=True,
                )
                raise error_cls(
                    f"Payment processing error after {MAX_RETRIES} attempts: {e}"
                ) from e

    # Should never reach here, but satisfy type checker
    raise error_cls(f"{operation} failed")


def session_expiry_for_hold(hold_expires_at: datetime) -> datetime:
    """
    Checkout session expiry for a hold.

    Stripe refuses sessions that expire sooner than 30 minutes out, so the
    session outlives the hold by that much; late payments are refunded when
    the booking cannot be confirmed.
    """
    return ensure_utc(hold_expires_at) + timedelta(
        minutes=STRIPE_SESSION_MIN_EXPIRY_MINUTES
    )


async def create_checkout_session(
    amount_cents: int,
    currency: str,
    reservation_id: str,
    customer_id: str,
    description: str,
    hold_expires_at: Optional[datetime] = None,
) -> stripe.checkout.Session:
    """
    Create a hosted Stripe Checkout session for a held slot.

    Args:
        amount_cents: Price in the currency's minor unit (must be positive)
        currency: ISO currency code
        reservation_id: Correlation ID echoed back by the webhook
        customer_id: Authenticated customer ID
        description: Line item name shown on the hosted page
        hold_expires_at: Expiry of the hold being paid for

    Returns:
        Stripe Checkout Session (its ``url`` is the redirect target)

    Raises:
        ValueError: If input validation fails
        CheckoutSessionError: If Stripe API call fails after retries
    """
    if amount_cents <= 0:
        raise ValueError(f"Invalid amount: {amount_cents} must be positive")

    if not reservation_id:
        raise ValueError("Reservation ID is required")

    metadata = {
        METADATA_RESERVATION_ID: reservation_id,
        METADATA_CUSTOMER_ID: customer_id,
    }
    params: Dict[str, Any] = {
        "mode": "payment",
        "line_items": [
            {
                "quantity": 1,
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": amount_cents,
                    "product_data": {"name": description},
                },
            }
        ],
        "client_reference_id": reservation_id,
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
        "success_url": (
            f"{settings.checkout_success_url}?session_id={{CHECKOUT_SESSION_ID}}"
        ),
        "cancel_url": f"{settings.checkout_cancel_url}?reservation_id={reservation_id}",
        # Same reservation, same session: a double-clicked checkout never opens two
        "idempotency_key": f"checkout-{reservation_id}",
    }
    if hold_expires_at is not None:
        params["expires_at"] = int(session_expiry_for_hold(hold_expires_at).timestamp())

    session = await _call_stripe(
        stripe.checkout.Session.create,
        f"checkout session for reservation {reservation_id}",
        error_cls=CheckoutSessionError,
        **params,
    )
    logger.info(f"Created checkout session {session.id} for reservation {reservation_id}")
    return session


async def expire_checkout_session(session_id: str) -> bool:
    """
    Expire an open checkout session so it can no longer be paid.

    Returns:
        True if Stripe expired the session, False if it was already
        completed or expired

    Raises:
        CheckoutSessionError: If Stripe could not be reached
    """
    if not session_id:
        raise ValueError("Session ID is required")

    try:
        await _call_stripe(
            stripe.checkout.Session.expire,
            f"expiry of checkout session {session_id}",
            error_cls=CheckoutSessionError,
            session=session_id,
        )
    except CheckoutSessionError as e:
        if isinstance(e.__cause__, stripe.StripeError) and _is_client_error(e.__cause__):
            logger.debug(f"Checkout session {session_id} not open: {e}")
            return False
        raise

    logger.info(f"Expired checkout session {session_id}")
    return True


async def refund_payment(
    payment_intent_id: str, reservation_id: str, reason: str = "requested_by_customer"
) -> stripe.Refund:
    """
    Refund a payment that could not be turned into a booking.

    Raises:
        RefundError: If Stripe API call fails after retries
    """
    if not payment_intent_id:
        raise ValueError("Payment intent ID is required")

    refund = await _call_stripe(
        stripe.Refund.create,
        f"refund of {payment_intent_id}",
        error_cls=RefundError,
        payment_intent=payment_intent_id,
        reason=reason,
        metadata={METADATA_RESERVATION_ID: reservation_id},
        idempotency_key=f"refund-{payment_intent_id}",
    )
    logger.warning(
        f"Refunded {payment_intent_id} for unconfirmable reservation {reservation_id} "
        f"(refund {refund.id})"
    )
    return refund
