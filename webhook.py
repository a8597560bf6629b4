"""
Stripe webhook handler.

Stripe delivers events at least once, so the handler is idempotent twice over:
event ids seen recently are acknowledged without work, and the checkout
coordinator itself keys confirmations on (reservation_id, transaction_id).
"""

import json
import time
from collections import Counter, deque
from typing import Dict, Optional

import stripe
from aiohttp import web
from aiohttp.web import Request, Response

from config import settings
from utils.constants import METADATA_RESERVATION_ID
from utils.exceptions import (
    DatabaseError,
    PaymentError,
    ValidationError,
    WebhookVerificationError,
)
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=settings.log_level, log_file="webhook.log"
)

MAX_REQUEST_BODY_SIZE = 1024 * 1024  # 1MB
_RECENT_EVENTS = 1000
_EVENT_ID_TTL_SECONDS = 24 * 3600
_EVENT_ID_EVICT_EVERY_SECONDS = 3600

PAYMENT_SUCCEEDED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
# payment_intent.payment_failed is not final on a hosted Checkout page; the
# session stays open for another card
PAYMENT_FAILED_EVENTS = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
}
REFUND_EVENTS = {"charge.refunded"}

METRIC_NAMES = (
    "total_events",
    "successful_events",
    "failed_events",
    "verification_failures",
    "validation_failures",
    "duplicate_events",
    "refunds_requested",
    "refunds_recorded",
)


class EventIdCache:
    """Stripe event ids handled recently, evicted after a TTL."""

    def __init__(
        self,
        ttl_seconds: float = _EVENT_ID_TTL_SECONDS,
        evict_every_seconds: float = _EVENT_ID_EVICT_EVERY_SECONDS,
    ):
        self.ttl_seconds = ttl_seconds
        self.evict_every_seconds = evict_every_seconds
        self._seen: Dict[str, float] = {}
        self._last_eviction = time.monotonic()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def mark(self, event_id: str) -> bool:
        """
        Record an event id.

        Returns:
            False if the id was already recorded
        """
        self.evict()
        if event_id in self._seen:
            return False
        self._seen[event_id] = time.monotonic()
        return True

    def forget(self, event_id: str) -> None:
        """Drop an id so a redelivery of the event is processed again."""
        self._seen.pop(event_id, None)

    def clear(self) -> None:
        self._seen.clear()

    def evict(self) -> None:
        now = time.monotonic()
        if now - self._last_eviction < self.evict_every_seconds:
            return
        self._last_eviction = now

        stale = [eid for eid, seen_at in self._seen.items() if now - seen_at > self.ttl_seconds]
        for event_id in stale:
            del self._seen[event_id]
        if stale:
            logger.debug(f"Evicted {len(stale)} stale webhook event ids")


processed_event_ids = EventIdCache()
recent_events: deque = deque(maxlen=_RECENT_EVENTS)
metrics: Counter = Counter()
_started_at = time.time()


def verify_stripe_signature(payload: bytes, signature: Optional[str]) -> Dict:
    """
    Verify Stripe webhook signature.

    Args:
        payload: Raw request body bytes
        signature: Stripe-Signature header value

    Returns:
        Parsed event data

    Raises:
        WebhookVerificationError: If signature verification fails
        ValidationError: If no secret is configured outside test mode
    """
    if not settings.stripe_webhook_secret:
        # Unverified webhooks are only tolerated with Stripe test keys
        if not settings.stripe_secret_key.startswith("sk_test_"):
            raise ValidationError(
                "STRIPE_WEBHOOK_SECRET is required to accept live webhooks"
            )
        logger.warning(
            "STRIPE_WEBHOOK_SECRET not set, accepting unsigned test-mode webhook"
        )
        try:
            return json.loads(payload.decode("utf-8"))
        except ValueError as e:
            raise ValidationError(f"Invalid JSON payload: {e}") from e

    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(
            payload, signature, settings.stripe_webhook_secret
        )
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(f"Invalid signature: {e}") from e

    # StripeObject -> plain dict so downstream code sees one shape
    return event.to_dict() if hasattr(event, "to_dict") else event


def validate_webhook_payload(payload: Dict) -> None:
    """
    Check the envelope fields the router relies on.

    Raises:
        ValidationError: If payload structure is invalid
    """
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    for field in ("id", "type"):
        value = payload.get(field)
        if not isinstance(value, str) or not value:
            raise ValidationError(f"Webhook '{field}' must be a non-empty string")

    data = payload.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise ValidationError("Webhook payload 'data.object' must be an object")


def _reservation_id_of(obj: Dict) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    return metadata.get(METADATA_RESERVATION_ID) or obj.get("client_reference_id")


async def handle_stripe_event(payload: Dict, coordinator) -> Dict:
    """
    Route a verified Stripe event to the checkout coordinator.

    Args:
        payload: Verified event payload
        coordinator: CheckoutCoordinator instance

    Returns:
        Summary of what was done, echoed in the webhook response
    """
    event_type = payload["type"]
    obj = payload["data"]["object"]

    if event_type in REFUND_EVENTS:
        return await _handle_refund(obj, coordinator)

    if event_type not in PAYMENT_SUCCEEDED_EVENTS | PAYMENT_FAILED_EVENTS:
        return {"status": "ignored", "event_type": event_type}

    reservation_id = _reservation_id_of(obj)
    if not reservation_id:
        logger.warning(f"Webhook {event_type} received without reservation_id")
        return {"status": "ignored", "message": "No reservation_id in metadata"}

    if event_type in PAYMENT_FAILED_EVENTS:
        result = await coordinator.handle_payment_failure(reservation_id)
        return {
            "status": "released",
            "release": result.status.value,
            "reservation_id": reservation_id,
        }

    if obj.get("payment_status") != "paid":
        # Delayed payment methods complete later via async_payment_succeeded
        return {"status": "pending", "reservation_id": reservation_id}

    transaction_id = obj.get("payment_intent")
    if not transaction_id:
        raise ValidationError("Completed checkout session has no payment_intent")

    result = await coordinator.handle_payment_succeeded(
        reservation_id,
        transaction_id,
        amount_cents=obj.get("amount_total") or 0,
        currency=obj.get("currency") or "usd",
    )
    if result.refund_required:
        metrics["refunds_requested"] += 1
    return {
        "status": result.status.value,
        "reservation_id": reservation_id,
        "booking_id": result.booking.id if result.booking else None,
        "refunded": result.refund_required,
    }


async def _handle_refund(charge: Dict, coordinator) -> Dict:
    transaction_id = charge.get("payment_intent")
    if not transaction_id:
        return {"status": "ignored", "message": "Charge has no payment_intent"}

    refunds = (charge.get("refunds") or {}).get("data") or []
    booking = await coordinator.handle_payment_refunded(
        transaction_id,
        refund_id=refunds[0].get("id") if refunds else None,
        refund_amount_cents=charge.get("amount_refunded"),
        reservation_id=_reservation_id_of(charge),
    )
    metrics["refunds_recorded"] += 1
    return {
        "status": "refunded",
        "transaction_id": transaction_id,
        "booking_id": booking.id if booking else None,
    }


@web.middleware
async def security_headers_middleware(request: Request, handler):
    """Add security headers to all responses."""
    response = await handler(request)

    response.headers.update(
        {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        }
    )
    if request.path.startswith("/webhook/"):
        response.headers["Allow"] = "POST"

    return response


def _error(error: str, message: str, status: int) -> Response:
    return web.json_response(
        {"status": "error", "error": error, "message": message}, status=status
    )


def _too_large() -> Response:
    metrics["validation_failures"] += 1
    return _error(
        "request_too_large",
        f"Request body exceeds maximum size of {MAX_REQUEST_BODY_SIZE} bytes",
        413,
    )


async def stripe_webhook_handler(request: Request) -> Response:
    """
    POST /webhook/stripe

    Non-2xx responses make Stripe redeliver, so infrastructure failures answer
    500 and forget the event id.
    """
    if (request.content_length or 0) > MAX_REQUEST_BODY_SIZE:
        logger.warning(f"Webhook body too large: {request.content_length} bytes")
        return _too_large()

    event_id: Optional[str] = None
    event_type: Optional[str] = None

    try:
        raw_body = await request.read()
        if len(raw_body) > MAX_REQUEST_BODY_SIZE:
            return _too_large()
        if not raw_body:
            metrics["validation_failures"] += 1
            return _error("empty_payload", "Empty payload", 400)

        payload = verify_stripe_signature(raw_body, request.headers.get("Stripe-Signature"))
        validate_webhook_payload(payload)
        event_id, event_type = payload["id"], payload["type"]
        logger.info(f"Stripe webhook {event_id} ({event_type})")

        if not processed_event_ids.mark(event_id):
            metrics["duplicate_events"] += 1
            logger.info(f"Duplicate webhook event {event_id} ({event_type}) ignored")
            return web.json_response(
                {"status": "success", "message": "Event already processed", "event_id": event_id}
            )

        metrics["total_events"] += 1
        try:
            result = await handle_stripe_event(payload, request.app["coordinator"])
        except Exception:
            processed_event_ids.forget(event_id)
            raise

    except WebhookVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        metrics["verification_failures"] += 1
        return _error("verification_failed", "Invalid webhook signature", 401)

    except ValidationError as e:
        logger.warning(f"Invalid webhook payload ({event_id or 'unknown'}): {e}")
        metrics["validation_failures"] += 1
        return _error("validation_failed", str(e), 400)

    except (DatabaseError, PaymentError) as e:
        logger.error(
            f"Infrastructure failure processing webhook {event_id} ({event_type}): {e}",
            exc_info=True,
        )
        metrics["failed_events"] += 1
        return _error("processing_failed", "Temporary failure, retry later", 500)

    except Exception as e:
        logger.error(f"Unexpected webhook error ({event_id or 'unknown'}): {e}", exc_info=True)
        metrics["failed_events"] += 1
        return _error("processing_failed", "Internal server error while processing webhook", 500)

    recent_events.append({"id": event_id, "type": event_type, "timestamp": time.time()})
    metrics["successful_events"] += 1
    return web.json_response(
        {"status": "success", "event_id": event_id, "event_type": event_type, "result": result}
    )


async def health_check(request: Request) -> Response:
    """GET /health: service status and webhook counters."""
    processed_event_ids.evict()
    notifier = request.app.get("notifier")

    return web.json_response(
        {
            "status": "ok",
            "service": "slot-reservation-engine",
            "timestamp": time.time(),
            "uptime_hours": round((time.time() - _started_at) / 3600, 2),
            "metrics": {
                **{name: metrics[name] for name in METRIC_NAMES},
                "recent_events_count": len(recent_events),
                "event_ids_tracked": len(processed_event_ids),
                "event_subscribers": notifier.subscriber_count if notifier else 0,
            },
            "configuration": {
                "webhook_secret_configured": bool(settings.stripe_webhook_secret),
                "store_backend": settings.store_backend,
                "sweep_interval_seconds": settings.sweep_interval_seconds,
            },
        }
    )


def register_webhook_routes(app: web.Application) -> None:
    """Mount the Stripe webhook and health endpoints."""
    app.router.add_post("/webhook/stripe", stripe_webhook_handler)
    app.router.add_get("/health", health_check)
