"""
Checkout coordinator: from a held slot to a paid booking.

Confirmation and expiry race for the same HELD slot; both go through
SlotStore.try_transition with the version they read, so whichever lands first
is final and the other observes a conflict. A payment that cannot be turned
into a booking is never dropped silently: the result asks for a refund.
"""

import asyncio
from typing import Dict, Optional

from config import Settings, settings as default_settings
from db import SlotStore, get_store
from events import EventNotifier, get_notifier
from models.booking import Booking, BookingCreate, BookingStatus
from models.event import Event, EventTopic
from models.payment import Payment, PaymentStatus
from models.reservation import Reservation, ReservationStatus
from models.results import CheckoutResult, ConfirmResult, ReleaseResult, ResultStatus
from models.slot import Slot, SlotStatus
from payments import create_checkout_session, expire_checkout_session, refund_payment
from reservations import ReservationManager
from utils.datetime_utils import Clock, utc_now
from utils.exceptions import DuplicateBookingError, PaymentError
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=default_settings.log_level, log_file="checkout.log"
)


class CheckoutCoordinator:
    """Bridges a held reservation to a paid, confirmed booking."""

    def __init__(
        self,
        manager: Optional[ReservationManager] = None,
        store: Optional[SlotStore] = None,
        notifier: Optional[EventNotifier] = None,
        config: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.store = store or (manager.store if manager else get_store())
        self.notifier = notifier or (manager.notifier if manager else get_notifier())
        self.config = config or default_settings
        self.clock = clock
        self.manager = manager or ReservationManager(
            store=self.store, notifier=self.notifier, config=self.config, clock=clock
        )
        # Serializes webhook retries for one reservation within this process
        self._confirm_locks: Dict[str, asyncio.Lock] = {}
        self._confirm_waiters: Dict[str, int] = {}

    # ========== Checkout ==========

    async def initiate_checkout(
        self, reservation_id: str, customer_id: str
    ) -> CheckoutResult:
        """
        Start a hosted payment for a held reservation.

        Returns:
            SUCCESS with checkout_url, NOT_FOUND, FORBIDDEN or EXPIRED

        Raises:
            CheckoutSessionError: If the payment processor cannot be reached
        """
        reservation = await self.store.get_reservation(reservation_id)
        if reservation is None:
            return CheckoutResult(
                status=ResultStatus.NOT_FOUND, message="Reservation not found"
            )
        if reservation.customer_id != customer_id:
            return CheckoutResult(
                status=ResultStatus.FORBIDDEN, message="Not your reservation"
            )
        if reservation.status != ReservationStatus.HOLD or reservation.is_expired_at(
            self.clock()
        ):
            return CheckoutResult(
                status=ResultStatus.EXPIRED, message="Reservation has expired"
            )

        slot = await self.store.get_slot(reservation.slot_id)
        if slot is None:
            return CheckoutResult(status=ResultStatus.NOT_FOUND, message="Slot not found")
        if not slot.is_held_by(reservation.id):
            return CheckoutResult(
                status=ResultStatus.EXPIRED, message="Slot is no longer held"
            )

        session = await create_checkout_session(
            amount_cents=slot.price_cents,
            currency=slot.currency,
            reservation_id=reservation.id,
            customer_id=customer_id,
            description=f"Service booking {slot.start_time:%Y-%m-%d %H:%M} UTC",
            hold_expires_at=reservation.hold_expires_at,
        )

        updated = await self.store.update_reservation(
            reservation.id, ReservationStatus.HOLD, payment_session_id=session.id
        )
        if updated is None:
            # The hold ended while Stripe was creating the session
            await self._abandon_session(session.id)
            return CheckoutResult(
                status=ResultStatus.EXPIRED, message="Reservation has expired"
            )

        logger.info(f"Checkout {session.id} started for reservation {reservation.id}")
        return CheckoutResult(
            status=ResultStatus.SUCCESS, checkout_url=session.url, session_id=session.id
        )

    async def cancel_checkout(
        self, reservation_id: str, customer_id: str
    ) -> ReleaseResult:
        """Customer backs out before paying: release the hold and close the session."""
        reservation = await self.store.get_reservation(reservation_id)
        result = await self.manager.release(reservation_id, customer_id)
        if result.ok and reservation is not None and reservation.payment_session_id:
            await self._abandon_session(reservation.payment_session_id)
        return result

    # ========== Payment callbacks ==========

    async def confirm_payment(
        self, reservation_id: str, transaction_id: str
    ) -> ConfirmResult:
        """
        Turn a held reservation into a PAID booking.

        Idempotent per (reservation_id, transaction_id): a repeated callback
        returns the booking created by the first one.

        Returns:
            SUCCESS with the booking, or NOT_FOUND, EXPIRED or CONFLICT with
            refund_required set when the payment must be returned

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        lock = self._confirm_locks.setdefault(reservation_id, asyncio.Lock())
        self._confirm_waiters[reservation_id] = (
            self._confirm_waiters.get(reservation_id, 0) + 1
        )
        try:
            async with lock:
                return await self._confirm(reservation_id, transaction_id)
        finally:
            self._confirm_waiters[reservation_id] -= 1
            if not self._confirm_waiters[reservation_id]:
                del self._confirm_waiters[reservation_id]
                self._confirm_locks.pop(reservation_id, None)

    async def _confirm(self, reservation_id: str, transaction_id: str) -> ConfirmResult:
        reservation = await self.store.get_reservation(reservation_id)
        if reservation is None:
            logger.error(f"Payment {transaction_id} references unknown reservation {reservation_id}")
            return ConfirmResult(
                status=ResultStatus.NOT_FOUND,
                message="Reservation not found",
                refund_required=True,
            )

        if reservation.status == ReservationStatus.CONFIRMED:
            return await self._replayed_confirmation(reservation, transaction_id)
        if reservation.status != ReservationStatus.HOLD:
            return self._too_late(reservation, transaction_id)

        slot = await self.store.get_slot(reservation.slot_id)
        if slot is None:
            logger.error(
                f"Slot {reservation.slot_id} of reservation {reservation_id} is missing; "
                f"payment {transaction_id} must be refunded"
            )
            return ConfirmResult(
                status=ResultStatus.NOT_FOUND,
                message="Slot not found",
                refund_required=True,
            )
        if self._booked_for(slot, reservation):
            # Another instance is confirming this reservation right now
            return await self._replayed_confirmation(reservation, transaction_id, slot)

        if reservation.is_expired_at(self.clock()):
            return self._too_late(reservation, transaction_id)
        if not slot.is_held_by(reservation.id):
            return self._lost_race(reservation, transaction_id)

        transition = await self.store.try_transition(
            slot.id,
            SlotStatus.HELD,
            SlotStatus.BOOKED,
            slot.version,
            reservation_id=reservation.id,
        )
        if not transition.ok:
            if transition.slot is not None and self._booked_for(transition.slot, reservation):
                return await self._replayed_confirmation(
                    reservation, transaction_id, transition.slot
                )
            return self._lost_race(reservation, transaction_id)

        return await self._record_booking(reservation, transition.slot, transaction_id)

    async def _record_booking(
        self, reservation: Reservation, slot: Slot, transaction_id: str
    ) -> ConfirmResult:
        """Confirm the reservation and write its booking once its slot is BOOKED."""
        # The slot is ours; from here on nothing else may move this reservation
        confirmed = await self.store.update_reservation(
            reservation.id, ReservationStatus.HOLD, status=ReservationStatus.CONFIRMED
        )
        if confirmed is None:
            logger.debug(f"Reservation {reservation.id} was already confirmed")

        try:
            booking = await self.store.create_booking(
                BookingCreate(
                    reservation_id=reservation.id,
                    customer_id=reservation.customer_id,
                    provider_id=slot.provider_id,
                    slot_id=slot.id,
                    transaction_id=transaction_id,
                    amount_cents=slot.price_cents,
                    currency=slot.currency,
                    status=BookingStatus.PAID,
                )
            )
        except DuplicateBookingError:
            # Another instance finished the same confirmation first
            return await self._replayed_confirmation(reservation, transaction_id, slot)

        logger.info(
            f"Booking {booking.id} confirmed for reservation {reservation.id} "
            f"(slot {slot.id}, transaction {transaction_id})"
        )
        await self.notifier.publish(
            Event(
                topic=EventTopic.BOOKING_CONFIRMED,
                reservation_id=reservation.id,
                customer_id=reservation.customer_id,
                payload={
                    "booking_id": booking.id,
                    "slot_id": slot.id,
                    "provider_id": slot.provider_id,
                    "transaction_id": transaction_id,
                },
            )
        )
        return ConfirmResult(status=ResultStatus.SUCCESS, booking=booking)

    async def _replayed_confirmation(
        self,
        reservation: Reservation,
        transaction_id: str,
        slot: Optional[Slot] = None,
    ) -> ConfirmResult:
        booking = await self.store.get_booking_by_reservation(reservation.id)
        if booking is None:
            slot = slot or await self.store.get_slot(reservation.slot_id)
            if slot is not None and self._booked_for(slot, reservation):
                # Slot already booked but the booking row is not written yet
                return await self._record_booking(reservation, slot, transaction_id)
            logger.error(
                f"Reservation {reservation.id} is {reservation.status.value} "
                f"without a booked slot or booking"
            )
            return ConfirmResult(
                status=ResultStatus.CONFLICT,
                message="Reservation is in an inconsistent state",
                refund_required=True,
            )

        if booking.transaction_id == transaction_id:
            logger.info(
                f"Duplicate confirmation for reservation {reservation.id}, "
                f"returning booking {booking.id}"
            )
            return ConfirmResult(status=ResultStatus.SUCCESS, booking=booking)

        logger.warning(
            f"Reservation {reservation.id} already paid by another transaction; "
            f"{transaction_id} must be refunded"
        )
        return ConfirmResult(
            status=ResultStatus.CONFLICT,
            message="Reservation already confirmed by another payment",
            refund_required=True,
        )

    @staticmethod
    def _booked_for(slot: Slot, reservation: Reservation) -> bool:
        return slot.status == SlotStatus.BOOKED and slot.reservation_id == reservation.id

    def _too_late(self, reservation: Reservation, transaction_id: str) -> ConfirmResult:
        logger.info(
            f"Payment {transaction_id} arrived for reservation {reservation.id} "
            f"after its hold ended ({reservation.status.value})"
        )
        return ConfirmResult(
            status=ResultStatus.EXPIRED,
            message="Reservation has expired",
            refund_required=True,
        )

    def _lost_race(self, reservation: Reservation, transaction_id: str) -> ConfirmResult:
        logger.info(
            f"Payment {transaction_id} lost the slot of reservation {reservation.id} "
            f"to a concurrent transition"
        )
        return ConfirmResult(
            status=ResultStatus.CONFLICT,
            message="Slot is no longer held by this reservation",
            refund_required=True,
        )

    async def handle_payment_succeeded(
        self,
        reservation_id: str,
        transaction_id: str,
        amount_cents: int = 0,
        currency: str = "usd",
    ) -> ConfirmResult:
        """
        Webhook entry point for a completed payment.

        Records the payment in the ledger, confirms the booking and refunds
        the payment when it cannot be confirmed. A payment the ledger already
        shows as refunded is not refunded again.
        """
        payment = await self.store.get_payment(transaction_id)
        if payment is None or payment.status != PaymentStatus.REFUNDED:
            payment = await self.store.upsert_payment(
                Payment(
                    transaction_id=transaction_id,
                    reservation_id=reservation_id,
                    status=PaymentStatus.SUCCEEDED,
                    amount_cents=amount_cents,
                    currency=currency,
                )
            )

        result = await self.confirm_payment(reservation_id, transaction_id)
        if result.refund_required and payment.status != PaymentStatus.REFUNDED:
            refund = await refund_payment(transaction_id, reservation_id)
            await self.store.upsert_payment(
                payment.model_copy(
                    update={
                        "status": PaymentStatus.REFUNDED,
                        "refund_id": refund.id,
                        "refund_amount_cents": refund.amount,
                        "refund_reason": result.message,
                    }
                )
            )
        return result

    async def handle_payment_refunded(
        self,
        transaction_id: str,
        refund_id: Optional[str] = None,
        refund_amount_cents: Optional[int] = None,
        reservation_id: Optional[str] = None,
    ) -> Optional[Booking]:
        """
        Record a refund reported by Stripe, including ones issued from the dashboard.

        Marks the ledger row REFUNDED and moves the booking paid by the
        transaction, if any, to REFUNDED. The slot stays BOOKED.

        Returns:
            The booking paid by the transaction, or None if there is none
        """
        payment = await self.store.get_payment(transaction_id)
        booking = await self.store.get_booking_by_transaction(transaction_id)
        reservation_id = (
            reservation_id
            or (payment.reservation_id if payment else None)
            or (booking.reservation_id if booking else None)
        )
        if reservation_id is None:
            logger.warning(f"Refund of unknown payment {transaction_id} ignored")
            return None

        recorded = payment or Payment(
            transaction_id=transaction_id, reservation_id=reservation_id
        )
        await self.store.upsert_payment(
            recorded.model_copy(
                update={
                    "status": PaymentStatus.REFUNDED,
                    "refund_id": refund_id or recorded.refund_id,
                    "refund_amount_cents": (
                        refund_amount_cents
                        if refund_amount_cents is not None
                        else recorded.refund_amount_cents
                    ),
                }
            )
        )

        if booking is None or booking.status == BookingStatus.REFUNDED:
            return booking

        updated = await self.store.update_booking_status(
            booking.id, booking.status, BookingStatus.REFUNDED
        )
        if updated is None:
            # Moved on concurrently; report what the store holds now
            return await self.store.get_booking_by_transaction(transaction_id)
        logger.info(f"Booking {booking.id} refunded (transaction {transaction_id})")
        return updated

    async def handle_payment_failure(self, reservation_id: str) -> ReleaseResult:
        """Release the hold behind a failed or abandoned payment."""
        reservation = await self.store.get_reservation(reservation_id)
        if reservation is None:
            return ReleaseResult(
                status=ResultStatus.NOT_FOUND, message="Reservation not found"
            )
        result = await self.manager.release_hold(reservation)
        logger.info(
            f"Payment for reservation {reservation_id} failed; release: {result.status.value}"
        )
        return result

    async def _abandon_session(self, session_id: str) -> None:
        try:
            await expire_checkout_session(session_id)
        except PaymentError as e:
            # Late payments on this session are refunded by confirm_payment
            logger.warning(f"Could not expire checkout session {session_id}: {e}")
