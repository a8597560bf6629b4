"""
Supabase slot store.
Handles all database interactions for slots, reservations and bookings.

Optimistic concurrency:
=======================
try_transition is a single conditional UPDATE through PostgREST:

    UPDATE service_slots
       SET status = :new, version = :v + 1, reservation_id = :rid
     WHERE id = :id AND status = :expected AND version = :v
    RETURNING *;

Postgres row locking makes the WHERE re-check atomic, so two callers that read
the same version can never both get a row back. An empty result means the
caller lost the race (or the slot does not exist).

Required schema constraints (SQL):
----------------------------------
ALTER TABLE service_slots ADD COLUMN version integer NOT NULL DEFAULT 0;
ALTER TABLE service_slots ADD COLUMN reservation_id uuid NULL;
CREATE UNIQUE INDEX slot_bookings_reservation_uniq ON slot_bookings (reservation_id);
CREATE UNIQUE INDEX slot_payments_transaction_uniq ON slot_payments (transaction_id);
CREATE INDEX slot_reservations_hold_expiry
    ON slot_reservations (hold_expires_at) WHERE status = 'HOLD';

This client uses the service_role key which bypasses RLS; customer identity is
checked by the API layer before any call reaches the store.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from postgrest.exceptions import APIError
from supabase import Client as SupabaseClientType
from supabase import create_client

from config import settings
from models.booking import Booking, BookingCreate, BookingStatus
from models.payment import Payment
from models.reservation import Reservation, ReservationStatus
from models.results import ResultStatus, TransitionResult
from models.slot import Slot, SlotCreate, SlotStatus
from utils.constants import (
    BOOKINGS_TABLE,
    PAYMENTS_TABLE,
    RESERVATIONS_TABLE,
    SLOTS_TABLE,
)
from utils.datetime_utils import parse_iso_datetime, to_iso_string, utc_now
from utils.exceptions import DuplicateBookingError, StoreUnavailableError

from .base import SlotStore, check_booking_transition

_UNIQUE_VIOLATION = "23505"


class SupabaseStore(SlotStore):
    """
    Supabase-backed slot store.

    Every infrastructure failure is re-raised as StoreUnavailableError so that
    callers can never mistake "store unreachable" for "slot available".
    """

    def __init__(self, client: Optional[SupabaseClientType] = None):
        self.client: SupabaseClientType = client or create_client(
            settings.supabase_url, settings.supabase_key
        )

    # ========== Slot Operations ==========

    async def create_slot(self, slot_data: SlotCreate) -> Slot:
        try:
            data = slot_data.model_dump(exclude_none=True)
            data["id"] = str(uuid.uuid4())
            data["start_time"] = to_iso_string(slot_data.start_time)
            data["end_time"] = to_iso_string(slot_data.end_time)
            data["status"] = SlotStatus.AVAILABLE.value
            data["version"] = 0

            response = self.client.table(SLOTS_TABLE).insert(data).execute()
        except Exception as e:
            raise StoreUnavailableError(f"Failed to create slot: {e}") from e

        if not response.data:
            raise StoreUnavailableError("Failed to create slot: no data returned")
        return self._parse_slot(response.data[0])

    async def get_slot(self, slot_id: str) -> Optional[Slot]:
        try:
            response = (
                self.client.table(SLOTS_TABLE).select("*").eq("id", slot_id).execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to get slot: {e}") from e

        if response.data:
            return self._parse_slot(response.data[0])
        return None

    async def list_available(
        self,
        provider_id: str,
        service_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Slot]:
        try:
            response = (
                self.client.table(SLOTS_TABLE)
                .select("*")
                .eq("provider_id", provider_id)
                .eq("service_id", service_id)
                .eq("status", SlotStatus.AVAILABLE.value)
                .gte("start_time", to_iso_string(window_start))
                .lt("start_time", to_iso_string(window_end))
                .order("start_time", desc=False)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to list available slots: {e}") from e

        return [self._parse_slot(item) for item in response.data]

    async def try_transition(
        self,
        slot_id: str,
        expected_status: SlotStatus,
        new_status: SlotStatus,
        expected_version: int,
        reservation_id: Optional[str] = None,
    ) -> TransitionResult:
        update_data = {
            "status": new_status.value,
            "version": expected_version + 1,
            "reservation_id": (
                None if new_status == SlotStatus.AVAILABLE else reservation_id
            ),
            "updated_at": to_iso_string(utc_now()),
        }

        try:
            response = (
                self.client.table(SLOTS_TABLE)
                .update(update_data)
                .eq("id", slot_id)
                .eq("status", expected_status.value)
                .eq("version", expected_version)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to transition slot: {e}") from e

        if response.data:
            return TransitionResult(
                status=ResultStatus.SUCCESS, slot=self._parse_slot(response.data[0])
            )

        # Nothing matched: tell a lost race apart from a missing slot
        current = await self.get_slot(slot_id)
        if current is None:
            return TransitionResult(status=ResultStatus.NOT_FOUND)
        return TransitionResult(
            status=ResultStatus.CONFLICT,
            slot=current,
            message=(
                f"expected {expected_status.value}@{expected_version}, "
                f"found {current.status.value}@{current.version}"
            ),
        )

    # ========== Reservation Operations ==========

    async def create_reservation(self, reservation: Reservation) -> Reservation:
        try:
            data = reservation.model_dump(mode="json", exclude_none=True)
            response = self.client.table(RESERVATIONS_TABLE).insert(data).execute()
        except Exception as e:
            raise StoreUnavailableError(f"Failed to create reservation: {e}") from e

        if not response.data:
            raise StoreUnavailableError("Failed to create reservation: no data returned")
        return self._parse_reservation(response.data[0])

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        try:
            response = (
                self.client.table(RESERVATIONS_TABLE)
                .select("*")
                .eq("id", reservation_id)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to get reservation: {e}") from e

        if response.data:
            return self._parse_reservation(response.data[0])
        return None

    async def update_reservation(
        self,
        reservation_id: str,
        expected_status: ReservationStatus,
        status: Optional[ReservationStatus] = None,
        payment_session_id: Optional[str] = None,
    ) -> Optional[Reservation]:
        update_data = {"updated_at": to_iso_string(utc_now())}
        if status is not None:
            update_data["status"] = status.value
        if payment_session_id is not None:
            update_data["payment_session_id"] = payment_session_id

        try:
            response = (
                self.client.table(RESERVATIONS_TABLE)
                .update(update_data)
                .eq("id", reservation_id)
                .eq("status", expected_status.value)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to update reservation: {e}") from e

        if not response.data:
            return None
        return self._parse_reservation(response.data[0])

    async def list_expired_holds(
        self, now: datetime, limit: int = 100
    ) -> List[Reservation]:
        try:
            response = (
                self.client.table(RESERVATIONS_TABLE)
                .select("*")
                .eq("status", ReservationStatus.HOLD.value)
                .lte("hold_expires_at", to_iso_string(now))
                .order("hold_expires_at", desc=False)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to list expired holds: {e}") from e

        return [self._parse_reservation(item) for item in response.data]

    # ========== Booking Operations ==========

    async def create_booking(self, booking_data: BookingCreate) -> Booking:
        data = booking_data.model_dump(mode="json", exclude_none=True)
        data["id"] = str(uuid.uuid4())

        try:
            response = self.client.table(BOOKINGS_TABLE).insert(data).execute()
        except APIError as e:
            if e.code == _UNIQUE_VIOLATION:
                raise DuplicateBookingError(
                    f"Reservation {booking_data.reservation_id} already has a booking"
                ) from e
            raise StoreUnavailableError(f"Failed to create booking: {e}") from e
        except Exception as e:
            raise StoreUnavailableError(f"Failed to create booking: {e}") from e

        if not response.data:
            raise StoreUnavailableError("Failed to create booking: no data returned")
        return self._parse_booking(response.data[0])

    async def get_booking_by_reservation(
        self, reservation_id: str
    ) -> Optional[Booking]:
        return await self._get_booking_by("reservation_id", reservation_id)

    async def get_booking_by_transaction(
        self, transaction_id: str
    ) -> Optional[Booking]:
        return await self._get_booking_by("transaction_id", transaction_id)

    async def _get_booking_by(self, column: str, value: str) -> Optional[Booking]:
        try:
            response = (
                self.client.table(BOOKINGS_TABLE)
                .select("*")
                .eq(column, value)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to get booking: {e}") from e

        if response.data:
            return self._parse_booking(response.data[0])
        return None

    async def update_booking_status(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
    ) -> Optional[Booking]:
        check_booking_transition(expected_status, new_status)
        update_data = {
            "status": new_status.value,
            "updated_at": to_iso_string(utc_now()),
        }

        try:
            response = (
                self.client.table(BOOKINGS_TABLE)
                .update(update_data)
                .eq("id", booking_id)
                .eq("status", expected_status.value)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to update booking: {e}") from e

        if not response.data:
            return None
        return self._parse_booking(response.data[0])

    # ========== Payment Operations ==========

    async def upsert_payment(self, payment: Payment) -> Payment:
        data = payment.model_dump(mode="json", exclude={"created_at"})
        data["updated_at"] = to_iso_string(utc_now())

        try:
            response = (
                self.client.table(PAYMENTS_TABLE)
                .upsert(data, on_conflict="transaction_id")
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to record payment: {e}") from e

        if not response.data:
            raise StoreUnavailableError("Failed to record payment: no data returned")
        return self._parse_payment(response.data[0])

    async def get_payment(self, transaction_id: str) -> Optional[Payment]:
        try:
            response = (
                self.client.table(PAYMENTS_TABLE)
                .select("*")
                .eq("transaction_id", transaction_id)
                .execute()
            )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to get payment: {e}") from e

        if response.data:
            return self._parse_payment(response.data[0])
        return None

        return None

    # ========== Helper Methods ==========

    def _parse_slot(self, item: dict) -> Slot:
        """
        Parse slot data from database response.

        Args:
            item: Raw slot data from database

        Returns:
            Parsed Slot object
        """
        item = item.copy()
        for field in ["start_time", "end_time", "created_at", "updated_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return Slot(**item)

    def _parse_reservation(self, item: dict) -> Reservation:
        item = item.copy()
        for field in ["hold_expires_at", "created_at", "updated_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return Reservation(**item)

    def _parse_booking(self, item: dict) -> Booking:
        item = item.copy()
        for field in ["created_at", "updated_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return Booking(**item)

    def _parse_payment(self, item: dict) -> Payment:
        item = item.copy()
        for field in ["created_at", "updated_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return Payment(**item)
