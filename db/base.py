"""
Slot store interface.

The store is the single serialization point of the reservation engine: every
slot status change goes through try_transition, which only succeeds for a
caller presenting the (status, version) pair it last read.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from models.booking import Booking, BookingCreate, BookingStatus
from models.payment import Payment
from models.reservation import Reservation, ReservationStatus
from models.results import TransitionResult
from models.slot import Slot, SlotCreate, SlotStatus


class SlotStore(ABC):
    """Persistence for slots, reservations and bookings."""

    # ========== Slot Operations ==========

    @abstractmethod
    async def create_slot(self, slot_data: SlotCreate) -> Slot:
        """Create an AVAILABLE slot at version 0."""

    @abstractmethod
    async def get_slot(self, slot_id: str) -> Optional[Slot]:
        """Get slot by ID."""

    @abstractmethod
    async def list_available(
        self,
        provider_id: str,
        service_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Slot]:
        """AVAILABLE slots starting inside [window_start, window_end), by start_time."""

    @abstractmethod
    async def try_transition(
        self,
        slot_id: str,
        expected_status: SlotStatus,
        new_status: SlotStatus,
        expected_version: int,
        reservation_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Compare-and-swap the slot status.

        Succeeds only if the slot currently has expected_status and
        expected_version; the version is then incremented. reservation_id is
        recorded on the slot, and cleared when new_status is AVAILABLE.

        Returns:
            SUCCESS with the updated slot, CONFLICT with the current slot, or
            NOT_FOUND. Mismatches never raise.
        """

    # ========== Reservation Operations ==========

    @abstractmethod
    async def create_reservation(self, reservation: Reservation) -> Reservation:
        """Persist a new reservation."""

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        """Get reservation by ID."""

    @abstractmethod
    async def update_reservation(
        self,
        reservation_id: str,
        expected_status: ReservationStatus,
        status: Optional[ReservationStatus] = None,
        payment_session_id: Optional[str] = None,
    ) -> Optional[Reservation]:
        """
        Update a reservation that is still in expected_status.

        Returns:
            The updated reservation, or None if it no longer exists or has
            moved on from expected_status.
        """

    @abstractmethod
    async def list_expired_holds(
        self, now: datetime, limit: int = 100
    ) -> List[Reservation]:
        """HOLD reservations with hold_expires_at <= now, oldest first."""

    # ========== Booking Operations ==========

    @abstractmethod
    async def create_booking(self, booking_data: BookingCreate) -> Booking:
        """
        Create a booking.

        Raises:
            DuplicateBookingError: If the reservation already has a booking
        """

    @abstractmethod
    async def get_booking_by_reservation(
        self, reservation_id: str
    ) -> Optional[Booking]:
        """Get the booking created from a reservation."""

    @abstractmethod
    async def get_booking_by_transaction(
        self, transaction_id: str
    ) -> Optional[Booking]:
        """Get the booking paid by a payment transaction."""

    @abstractmethod
    async def update_booking_status(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
    ) -> Optional[Booking]:
        """
        Move a booking that is still in expected_status to new_status.

        Only PAID -> CANCELLED and PAID/CANCELLED -> REFUNDED are accepted.

        Returns:
            The updated booking, or None if it no longer exists or has moved
            on from expected_status.

        Raises:
            ValueError: If the transition is not allowed
        """

    # ========== Payment Operations ==========

    @abstractmethod
    async def upsert_payment(self, payment: Payment) -> Payment:
        """Insert or overwrite the ledger row for payment.transaction_id."""

    @abstractmethod
    async def get_payment(self, transaction_id: str) -> Optional[Payment]:
        """Get the ledger row of a payment transaction."""


def check_booking_transition(
    expected_status: BookingStatus, new_status: BookingStatus
) -> None:
    """Raise ValueError unless expected_status may move to new_status."""
    if not expected_status.can_transition_to(new_status):
        raise ValueError(
            f"Booking cannot move from {expected_status.value} to {new_status.value}"
        )
