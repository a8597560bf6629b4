"""
Customer-facing HTTP and WebSocket API.

Every route resolves the caller's identity first; protocol outcomes map to
HTTP statuses, infrastructure failures to 502/503 so a client never reads an
unreachable store as a free slot.
"""

import asyncio
import contextlib
from datetime import timedelta
from typing import Optional

from aiohttp import WSMsgType, web
from aiohttp.web import Request, Response

from auth import SupabaseIdentityProvider, authenticate
from checkout import CheckoutCoordinator
from config import Settings, settings as default_settings
from db import SlotStore, get_store
from events import EventNotifier, get_notifier
from models.event import Event, EventFilter
from models.results import ResultStatus
from reservations import ReservationManager
from scheduler import ExpirySweeper
from utils.constants import MAX_SLOT_WINDOW_DAYS
from utils.datetime_utils import parse_iso_datetime
from utils.exceptions import (
    AuthenticationError,
    DatabaseError,
    PaymentError,
    ValidationError,
)
from utils.logging_config import setup_logging
from webhook import register_webhook_routes, security_headers_middleware

logger = setup_logging(
    name=__name__, log_level=default_settings.log_level, log_file="api.log"
)

_STATUS_CODES = {
    ResultStatus.SUCCESS: 200,
    ResultStatus.ALREADY_HELD: 409,
    ResultStatus.CONFLICT: 409,
    ResultStatus.NOT_FOUND: 404,
    ResultStatus.FORBIDDEN: 403,
    ResultStatus.EXPIRED: 410,
}

_EVENT_QUEUE_SIZE = 100


def _result_response(result, success_status: int = 200) -> Response:
    status = success_status if result.ok else _STATUS_CODES[result.status]
    return web.json_response(result.model_dump(mode="json", exclude_none=True), status=status)


@web.middleware
async def error_middleware(request: Request, handler):
    """Translate exceptions into JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except AuthenticationError as e:
        return web.json_response({"status": "error", "message": str(e)}, status=401)
    except ValidationError as e:
        return web.json_response({"status": "error", "message": str(e)}, status=400)
    except DatabaseError as e:
        logger.error(f"Store failure on {request.method} {request.path}: {e}", exc_info=True)
        return web.json_response(
            {"status": "error", "message": "Booking store unavailable, try again"},
            status=503,
        )
    except PaymentError as e:
        logger.error(f"Payment failure on {request.method} {request.path}: {e}", exc_info=True)
        return web.json_response(
            {"status": "error", "message": "Payment provider unavailable, try again"},
            status=502,
        )


async def _json_body(request: Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ========== Routes ==========


async def list_slots(request: Request) -> Response:
    """GET /slots?provider_id&service_id&start[&end]"""
    await authenticate(request)

    provider_id = request.query.get("provider_id")
    service_id = request.query.get("service_id")
    if not provider_id or not service_id:
        raise ValidationError("provider_id and service_id are required")

    try:
        start = parse_iso_datetime(request.query["start"])
        end = (
            parse_iso_datetime(request.query["end"])
            if "end" in request.query
            else start + timedelta(days=1)
        )
    except KeyError as e:
        raise ValidationError("start is required") from e
    except ValueError as e:
        raise ValidationError(str(e)) from e

    if end <= start:
        raise ValidationError("end must be after start")
    if end - start > timedelta(days=MAX_SLOT_WINDOW_DAYS):
        raise ValidationError(f"Window may span at most {MAX_SLOT_WINDOW_DAYS} days")

    slots = await request.app["store"].list_available(provider_id, service_id, start, end)
    return web.json_response([slot.model_dump(mode="json") for slot in slots])


async def create_reservation(request: Request) -> Response:
    """POST /reservations {slot_id, hold_minutes?}"""
    customer_id = await authenticate(request)
    body = await _json_body(request)

    hold_minutes = body.get("hold_minutes")
    if hold_minutes is not None and (
        isinstance(hold_minutes, bool) or not isinstance(hold_minutes, int)
    ):
        raise ValidationError("hold_minutes must be an integer")

    result = await request.app["manager"].reserve(
        customer_id, body.get("slot_id") or "", hold_minutes
    )
    return _result_response(result, success_status=201)


async def release_reservation(request: Request) -> Response:
    """DELETE /reservations/{reservation_id}"""
    customer_id = await authenticate(request)
    result = await request.app["manager"].release(
        request.match_info["reservation_id"], customer_id
    )
    return _result_response(result)


async def start_checkout(request: Request) -> Response:
    """POST /reservations/{reservation_id}/checkout"""
    customer_id = await authenticate(request)
    result = await request.app["coordinator"].initiate_checkout(
        request.match_info["reservation_id"], customer_id
    )
    return _result_response(result)


async def cancel_checkout(request: Request) -> Response:
    """POST /reservations/{reservation_id}/cancel"""
    customer_id = await authenticate(request)
    result = await request.app["coordinator"].cancel_checkout(
        request.match_info["reservation_id"], customer_id
    )
    return _result_response(result)


async def _pump_events(
    ws: web.WebSocketResponse, queue: "asyncio.Queue[Event]", customer_id: str
) -> None:
    """Forward queued events to the socket until it goes away."""
    while True:
        event = await queue.get()
        try:
            await ws.send_json(event.to_message())
        except ConnectionResetError:
            logger.info(f"Event stream for {customer_id} lost its connection")
            return


async def event_stream(request: Request) -> web.StreamResponse:
    """
    GET /events[?reservation_id=...] upgraded to a WebSocket.

    Streams lifecycle events for one of the caller's reservations, or for all
    of the caller's reservations when no reservation_id is given.
    """
    customer_id = await authenticate(request)

    reservation_id = request.query.get("reservation_id")
    if reservation_id:
        reservation = await request.app["store"].get_reservation(reservation_id)
        if reservation is None:
            raise web.HTTPNotFound(text="Reservation not found")
        if reservation.customer_id != customer_id:
            raise web.HTTPForbidden(text="Not your reservation")
        event_filter = EventFilter(reservation_id=reservation_id)
    else:
        event_filter = EventFilter(customer_id=customer_id)

    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=_EVENT_QUEUE_SIZE)

    def enqueue(event: Event) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Dropping {event.topic.value} for slow subscriber {customer_id}")

    unsubscribe = request.app["notifier"].subscribe(enqueue, event_filter)
    sender = asyncio.create_task(_pump_events(ws, queue, customer_id))
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.info(f"Event stream for {customer_id} closed with {ws.exception()}")
                break
    finally:
        unsubscribe()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, ConnectionResetError):
            await sender

    return ws


# ========== Application ==========


def create_app(
    store: Optional[SlotStore] = None,
    notifier: Optional[EventNotifier] = None,
    identity=None,
    config: Optional[Settings] = None,
    run_sweeper: bool = True,
) -> web.Application:
    """
    Create the aiohttp application with all components wired together.

    Args:
        store: Slot store; defaults to the backend selected by STORE_BACKEND
        notifier: Event notifier; defaults to the process-wide instance
        identity: Object with ``async resolve(token) -> customer_id``
        config: Settings override
        run_sweeper: Start the expiry sweeper with the application

    Returns:
        Configured web application
    """
    config = config or default_settings
    store = store or get_store()
    notifier = notifier or get_notifier()

    manager = ReservationManager(store=store, notifier=notifier, config=config)
    coordinator = CheckoutCoordinator(
        manager=manager, store=store, notifier=notifier, config=config
    )
    sweeper = ExpirySweeper(store=store, notifier=notifier, config=config)

    app = web.Application(middlewares=[security_headers_middleware, error_middleware])
    app["config"] = config
    app["store"] = store
    app["notifier"] = notifier
    app["identity"] = identity or SupabaseIdentityProvider()
    app["manager"] = manager
    app["coordinator"] = coordinator
    app["sweeper"] = sweeper

    app.router.add_get("/slots", list_slots)
    app.router.add_post("/reservations", create_reservation)
    app.router.add_delete("/reservations/{reservation_id}", release_reservation)
    app.router.add_post("/reservations/{reservation_id}/checkout", start_checkout)
    app.router.add_post("/reservations/{reservation_id}/cancel", cancel_checkout)
    app.router.add_get("/events", event_stream)
    register_webhook_routes(app)

    if run_sweeper:

        async def start_sweeper(app: web.Application) -> None:
            app["sweeper"].start()

        async def stop_sweeper(app: web.Application) -> None:
            app["sweeper"].shutdown()

        app.on_startup.append(start_sweeper)
        app.on_cleanup.append(stop_sweeper)

    return app
