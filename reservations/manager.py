"""
Reservation manager: time-bounded holds on slots.

The manager is the only component that moves a slot into HELD, and it never
retries a lost race: when two customers reserve the same slot, exactly one
observes the pre-transition version and the other is told the slot is taken.
"""

import uuid
from typing import Optional

from config import Settings, settings as default_settings
from db import SlotStore, get_store
from events import EventNotifier, get_notifier
from models.event import Event, EventTopic
from models.reservation import Reservation, ReservationStatus
from models.results import ReleaseResult, ReserveResult, ResultStatus
from models.slot import SlotStatus
from utils.datetime_utils import Clock, minutes_from, utc_now
from utils.exceptions import DatabaseError, ValidationError
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=default_settings.log_level, log_file="reservations.log"
)


class ReservationManager:
    """Creates and releases holds on behalf of customers."""

    def __init__(
        self,
        store: Optional[SlotStore] = None,
        notifier: Optional[EventNotifier] = None,
        config: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.store = store or get_store()
        self.notifier = notifier or get_notifier()
        self.config = config or default_settings
        self.clock = clock

    async def reserve(
        self, customer_id: str, slot_id: str, hold_minutes: Optional[int] = None
    ) -> ReserveResult:
        """
        Hold a slot for a customer.

        Args:
            customer_id: Authenticated customer ID
            slot_id: Slot to hold
            hold_minutes: Requested hold length; defaults to the configured
                default and is capped at the configured maximum

        Returns:
            SUCCESS with reservation_id and expires_at, ALREADY_HELD or NOT_FOUND

        Raises:
            ValidationError: If customer_id is empty or hold_minutes is not positive
            StoreUnavailableError: If the store cannot be reached
        """
        if not customer_id:
            raise ValidationError("customer_id is required")
        if not slot_id:
            raise ValidationError("slot_id is required")
        try:
            minutes = self.config.effective_hold_minutes(hold_minutes)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        slot = await self.store.get_slot(slot_id)
        if slot is None:
            return ReserveResult(status=ResultStatus.NOT_FOUND, message="Slot not found")
        if slot.status != SlotStatus.AVAILABLE:
            logger.info(f"Slot {slot_id} is {slot.status.value}, refusing hold for {customer_id}")
            return ReserveResult(
                status=ResultStatus.ALREADY_HELD, message="Slot no longer available"
            )

        now = self.clock()
        reservation_id = str(uuid.uuid4())
        expires_at = minutes_from(now, minutes)

        transition = await self.store.try_transition(
            slot_id,
            SlotStatus.AVAILABLE,
            SlotStatus.HELD,
            slot.version,
            reservation_id=reservation_id,
        )
        if transition.status == ResultStatus.NOT_FOUND:
            return ReserveResult(status=ResultStatus.NOT_FOUND, message="Slot not found")
        if not transition.ok:
            logger.info(f"Customer {customer_id} lost the race for slot {slot_id}")
            return ReserveResult(
                status=ResultStatus.ALREADY_HELD, message="Slot no longer available"
            )

        reservation = Reservation(
            id=reservation_id,
            slot_id=slot_id,
            customer_id=customer_id,
            status=ReservationStatus.HOLD,
            hold_expires_at=expires_at,
            created_at=now,
        )
        try:
            reservation = await self.store.create_reservation(reservation)
        except DatabaseError:
            # The slot is HELD with no reservation row behind it; give it back
            await self._undo_hold(slot_id, transition.slot.version)
            raise

        logger.info(
            f"Reservation {reservation.id} holds slot {slot_id} for customer "
            f"{customer_id} until {expires_at.isoformat()}"
        )
        await self.notifier.publish(
            Event(
                topic=EventTopic.SLOT_RESERVED,
                reservation_id=reservation.id,
                customer_id=customer_id,
                payload={
                    "slot_id": slot_id,
                    "provider_id": slot.provider_id,
                    "service_id": slot.service_id,
                    "expires_at": expires_at.isoformat(),
                },
            )
        )
        return ReserveResult(
            status=ResultStatus.SUCCESS,
            reservation_id=reservation.id,
            expires_at=expires_at,
        )

    async def release(self, reservation_id: str, customer_id: str) -> ReleaseResult:
        """
        Release a hold at the owning customer's request.

        Returns:
            SUCCESS, NOT_FOUND, FORBIDDEN, EXPIRED or CONFLICT
        """
        reservation = await self.store.get_reservation(reservation_id)
        if reservation is None:
            return ReleaseResult(
                status=ResultStatus.NOT_FOUND, message="Reservation not found"
            )
        if reservation.customer_id != customer_id:
            logger.warning(
                f"Customer {customer_id} tried to release reservation "
                f"{reservation_id} owned by {reservation.customer_id}"
            )
            return ReleaseResult(
                status=ResultStatus.FORBIDDEN, message="Not your reservation"
            )
        return await self.release_hold(reservation)

    async def release_hold(self, reservation: Reservation) -> ReleaseResult:
        """
        Return a held slot to AVAILABLE without an ownership check.

        Used internally when a payment fails or a checkout is abandoned.
        """
        if reservation.status == ReservationStatus.RELEASED:
            return ReleaseResult(status=ResultStatus.SUCCESS, message="Already released")
        if reservation.status == ReservationStatus.EXPIRED:
            return ReleaseResult(status=ResultStatus.EXPIRED, message="Hold expired")
        if reservation.status == ReservationStatus.CONFIRMED:
            return ReleaseResult(
                status=ResultStatus.CONFLICT, message="Reservation already confirmed"
            )

        slot = await self.store.get_slot(reservation.slot_id)
        if slot is not None:
            if not slot.is_held_by(reservation.id):
                return ReleaseResult(
                    status=ResultStatus.CONFLICT, message="Slot is no longer held"
                )
            transition = await self.store.try_transition(
                slot.id, SlotStatus.HELD, SlotStatus.AVAILABLE, slot.version
            )
            if not transition.ok:
                logger.info(
                    f"Release of reservation {reservation.id} lost to a concurrent "
                    f"transition on slot {slot.id}"
                )
                return ReleaseResult(
                    status=ResultStatus.CONFLICT, message="Slot is no longer held"
                )

        updated = await self.store.update_reservation(
            reservation.id, ReservationStatus.HOLD, status=ReservationStatus.RELEASED
        )
        if updated is None:
            # The sweeper expired it in between and has already reported the end
            current = await self.store.get_reservation(reservation.id)
            logger.info(
                f"Reservation {reservation.id} left HOLD while its slot was being released "
                f"({current.status.value if current else 'deleted'})"
            )
            if current is not None and current.status == ReservationStatus.EXPIRED:
                return ReleaseResult(status=ResultStatus.EXPIRED, message="Hold expired")
            return ReleaseResult(
                status=ResultStatus.CONFLICT, message="Reservation is no longer held"
            )

        logger.info(f"Reservation {reservation.id} released, slot {reservation.slot_id} available")
        await self.notifier.publish(
            Event(
                topic=EventTopic.HOLD_RELEASED,
                reservation_id=reservation.id,
                customer_id=reservation.customer_id,
                payload={"slot_id": reservation.slot_id},
            )
        )
        return ReleaseResult(status=ResultStatus.SUCCESS)

    async def _undo_hold(self, slot_id: str, version: int) -> None:
        try:
            result = await self.store.try_transition(
                slot_id, SlotStatus.HELD, SlotStatus.AVAILABLE, version
            )
        except DatabaseError as e:
            logger.error(
                f"Could not return slot {slot_id} after failed reservation insert: {e}",
                exc_info=True,
            )
            return
        if not result.ok:
            logger.error(f"Slot {slot_id} changed before its orphaned hold could be undone")
