"""
In-process slot store.

Used for local development (STORE_BACKEND=memory) and tests. Every operation
yields to the event loop before touching state, so concurrent callers
interleave the same way they would against a remote store; transitions are
serialized by a single lock.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from models.booking import Booking, BookingCreate, BookingStatus
from models.payment import Payment
from models.reservation import Reservation, ReservationStatus
from models.results import ResultStatus, TransitionResult
from models.slot import Slot, SlotCreate, SlotStatus
from utils.datetime_utils import ensure_utc, utc_now
from utils.exceptions import DuplicateBookingError

from .base import SlotStore, check_booking_transition


class InMemoryStore(SlotStore):
    """Dictionary-backed store with compare-and-swap slot transitions."""

    def __init__(self, latency: float = 0.0):
        """
        Args:
            latency: Seconds to sleep before each operation, to widen race windows
        """
        self._latency = latency
        self._lock = asyncio.Lock()
        self._slots: Dict[str, Slot] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._bookings: Dict[str, Booking] = {}
        self._payments: Dict[str, Payment] = {}

    async def _yield(self) -> None:
        await asyncio.sleep(self._latency)

    # ========== Slot Operations ==========

    async def create_slot(self, slot_data: SlotCreate) -> Slot:
        await self._yield()
        now = utc_now()
        slot = Slot(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            **slot_data.model_dump(),
        )
        async with self._lock:
            self._slots[slot.id] = slot
        return slot.model_copy()

    async def add_slot(self, slot: Slot) -> Slot:
        """Insert a fully specified slot (fixtures and availability imports)."""
        async with self._lock:
            self._slots[slot.id] = slot.model_copy()
        return slot.model_copy()

    async def get_slot(self, slot_id: str) -> Optional[Slot]:
        await self._yield()
        slot = self._slots.get(slot_id)
        return slot.model_copy() if slot else None

    async def list_available(
        self,
        provider_id: str,
        service_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Slot]:
        await self._yield()
        start, end = ensure_utc(window_start), ensure_utc(window_end)
        slots = [
            slot.model_copy()
            for slot in self._slots.values()
            if slot.provider_id == provider_id
            and slot.service_id == service_id
            and slot.status == SlotStatus.AVAILABLE
            and start <= slot.start_time < end
        ]
        return sorted(slots, key=lambda s: s.start_time)

    async def try_transition(
        self,
        slot_id: str,
        expected_status: SlotStatus,
        new_status: SlotStatus,
        expected_version: int,
        reservation_id: Optional[str] = None,
    ) -> TransitionResult:
        await self._yield()
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None:
                return TransitionResult(status=ResultStatus.NOT_FOUND)

            if slot.status != expected_status or slot.version != expected_version:
                return TransitionResult(
                    status=ResultStatus.CONFLICT,
                    slot=slot.model_copy(),
                    message=(
                        f"expected {expected_status.value}@{expected_version}, "
                        f"found {slot.status.value}@{slot.version}"
                    ),
                )

            updated = slot.model_copy(
                update={
                    "status": new_status,
                    "version": slot.version + 1,
                    "reservation_id": (
                        None if new_status == SlotStatus.AVAILABLE else reservation_id
                    ),
                    "updated_at": utc_now(),
                }
            )
            self._slots[slot_id] = updated
            return TransitionResult(status=ResultStatus.SUCCESS, slot=updated.model_copy())

    # ========== Reservation Operations ==========

    async def create_reservation(self, reservation: Reservation) -> Reservation:
        await self._yield()
        async with self._lock:
            self._reservations[reservation.id] = reservation.model_copy()
        return reservation.model_copy()

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        await self._yield()
        reservation = self._reservations.get(reservation_id)
        return reservation.model_copy() if reservation else None

    async def update_reservation(
        self,
        reservation_id: str,
        expected_status: ReservationStatus,
        status: Optional[ReservationStatus] = None,
        payment_session_id: Optional[str] = None,
    ) -> Optional[Reservation]:
        await self._yield()
        async with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None or reservation.status != expected_status:
                return None

            changes = {"updated_at": utc_now()}
            if status is not None:
                changes["status"] = status
            if payment_session_id is not None:
                changes["payment_session_id"] = payment_session_id

            updated = reservation.model_copy(update=changes)
            self._reservations[reservation_id] = updated
            return updated.model_copy()

    async def list_expired_holds(
        self, now: datetime, limit: int = 100
    ) -> List[Reservation]:
        await self._yield()
        now = ensure_utc(now)
        expired = [
            r.model_copy()
            for r in self._reservations.values()
            if r.status == ReservationStatus.HOLD and r.hold_expires_at <= now
        ]
        expired.sort(key=lambda r: r.hold_expires_at)
        return expired[:limit]

    # ========== Booking Operations ==========

    async def create_booking(self, booking_data: BookingCreate) -> Booking:
        await self._yield()
        async with self._lock:
            for existing in self._bookings.values():
                if existing.reservation_id == booking_data.reservation_id:
                    raise DuplicateBookingError(
                        f"Reservation {booking_data.reservation_id} already has "
                        f"booking {existing.id}"
                    )

            booking = Booking(
                id=str(uuid.uuid4()),
                created_at=utc_now(),
                **booking_data.model_dump(),
            )
            self._bookings[booking.id] = booking
            return booking.model_copy()

    async def get_booking_by_reservation(
        self, reservation_id: str
    ) -> Optional[Booking]:
        await self._yield()
        for booking in self._bookings.values():
            if booking.reservation_id == reservation_id:
                return booking.model_copy()
        return None

    async def get_booking_by_transaction(
        self, transaction_id: str
    ) -> Optional[Booking]:
        await self._yield()
        for booking in self._bookings.values():
            if booking.transaction_id == transaction_id:
                return booking.model_copy()
        return None

    async def update_booking_status(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
    ) -> Optional[Booking]:
        check_booking_transition(expected_status, new_status)
        await self._yield()
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is None or booking.status != expected_status:
                return None

            updated = booking.model_copy(
                update={"status": new_status, "updated_at": utc_now()}
            )
            self._bookings[booking_id] = updated
            return updated.model_copy()

    # ========== Payment Operations ==========

    async def upsert_payment(self, payment: Payment) -> Payment:
        await self._yield()
        async with self._lock:
            now = utc_now()
            existing = self._payments.get(payment.transaction_id)
            stored = payment.model_copy(
                update={
                    "created_at": existing.created_at if existing else now,
                    "updated_at": now,
                }
            )
            self._payments[payment.transaction_id] = stored
            return stored.model_copy()

    async def get_payment(self, transaction_id: str) -> Optional[Payment]:
        await self._yield()
        payment = self._payments.get(transaction_id)
        return payment.model_copy() if payment else None
