"""
Unit tests for the checkout coordinator.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from models.booking import BookingStatus
from models.event import EventTopic
from models.payment import PaymentStatus
from models.reservation import ReservationStatus
from models.results import ResultStatus
from models.slot import SlotStatus
from utils.exceptions import CheckoutSessionError


@pytest.fixture
async def held(manager, slot):
    """A fresh 15 minute hold on the default slot for alice."""
    return await manager.reserve("alice", slot.id)


class TestInitiateCheckout:
    """Starting hosted payments."""

    @pytest.mark.asyncio
    async def test_creates_session_for_held_slot(
        self, coordinator, store, held, checkout_session
    ):
        with patch(
            "checkout.coordinator.create_checkout_session",
            new=AsyncMock(return_value=checkout_session),
        ) as mock_create:
            result = await coordinator.initiate_checkout(held.reservation_id, "alice")

        assert result.ok
        assert result.checkout_url == checkout_session.url
        assert result.session_id == "cs_test_123"

        kwargs = mock_create.call_args.kwargs
        assert kwargs["amount_cents"] == 4500
        assert kwargs["currency"] == "usd"
        assert kwargs["reservation_id"] == held.reservation_id
        assert kwargs["hold_expires_at"] == held.expires_at

        reservation = await store.get_reservation(held.reservation_id)
        assert reservation.payment_session_id == "cs_test_123"
        assert reservation.status == ReservationStatus.HOLD

    @pytest.mark.asyncio
    async def test_other_customer_is_forbidden(self, coordinator, held):
        with patch("checkout.coordinator.create_checkout_session", new=AsyncMock()) as mock_create:
            result = await coordinator.initiate_checkout(held.reservation_id, "bob")

        assert result.status == ResultStatus.FORBIDDEN
        mock_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, coordinator):
        result = await coordinator.initiate_checkout("missing", "alice")

        assert result.status == ResultStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_hold_past_expiry(self, coordinator, clock, held):
        clock.advance(minutes=15)

        with patch("checkout.coordinator.create_checkout_session", new=AsyncMock()) as mock_create:
            result = await coordinator.initiate_checkout(held.reservation_id, "alice")

        assert result.status == ResultStatus.EXPIRED
        mock_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_released_hold(self, coordinator, manager, held):
        await manager.release(held.reservation_id, "alice")

        result = await coordinator.initiate_checkout(held.reservation_id, "alice")

        assert result.status == ResultStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_stripe_failure_propagates(self, coordinator, store, held):
        with patch(
            "checkout.coordinator.create_checkout_session",
            new=AsyncMock(side_effect=CheckoutSessionError("Stripe down")),
        ):
            with pytest.raises(CheckoutSessionError):
                await coordinator.initiate_checkout(held.reservation_id, "alice")

        # The hold itself is untouched
        assert (await store.get_slot("slot-1")).status == SlotStatus.HELD

    @pytest.mark.asyncio
    async def test_hold_ending_during_session_creation(
        self, coordinator, store, held, checkout_session
    ):
        async def expire_meanwhile(**kwargs):
            await store.update_reservation(
                held.reservation_id,
                ReservationStatus.HOLD,
                status=ReservationStatus.EXPIRED,
            )
            return checkout_session

        with patch(
            "checkout.coordinator.create_checkout_session",
            new=AsyncMock(side_effect=expire_meanwhile),
        ), patch(
            "checkout.coordinator.expire_checkout_session",
            new=AsyncMock(return_value=True),
        ) as mock_expire:
            result = await coordinator.initiate_checkout(held.reservation_id, "alice")

        assert result.status == ResultStatus.EXPIRED
        mock_expire.assert_awaited_once_with("cs_test_123")


class TestCancelCheckout:
    """Customer backing out of a checkout."""

    @pytest.mark.asyncio
    async def test_cancel_releases_and_expires_session(
        self, coordinator, store, held, checkout_session
    ):
        with patch(
            "checkout.coordinator.create_checkout_session",
            new=AsyncMock(return_value=checkout_session),
        ):
            await coordinator.initiate_checkout(held.reservation_id, "alice")

        with patch(
            "checkout.coordinator.expire_checkout_session",
            new=AsyncMock(return_value=True),
        ) as mock_expire:
            result = await coordinator.cancel_checkout(held.reservation_id, "alice")

        assert result.ok
        mock_expire.assert_awaited_once_with("cs_test_123")
        assert (await store.get_slot("slot-1")).status == SlotStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_cancel_without_session(self, coordinator, held):
        with patch(
            "checkout.coordinator.expire_checkout_session", new=AsyncMock()
        ) as mock_expire:
            result = await coordinator.cancel_checkout(held.reservation_id, "alice")

        assert result.ok
        mock_expire.assert_not_called()

    @pytest.mark.asyncio
    async def test_session_expiry_failure_is_logged_not_raised(
        self, coordinator, store, held
    ):
        await store.update_reservation(
            held.reservation_id, ReservationStatus.HOLD, payment_session_id="cs_1"
        )

        with patch(
            "checkout.coordinator.expire_checkout_session",
            new=AsyncMock(side_effect=CheckoutSessionError("Stripe down")),
        ):
            result = await coordinator.cancel_checkout(held.reservation_id, "alice")

        assert result.ok

    @pytest.mark.asyncio
    async def test_cancel_by_other_customer(self, coordinator, held):
        result = await coordinator.cancel_checkout(held.reservation_id, "bob")

        assert result.status == ResultStatus.FORBIDDEN


class TestConfirmPayment:
    """Turning held reservations into bookings."""

    @pytest.mark.asyncio
    async def test_confirm_books_slot(self, coordinator, store, published, held):
        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.ok
        assert not result.refund_required
        assert result.booking.status == BookingStatus.PAID
        assert result.booking.transaction_id == "pi_1"
        assert result.booking.amount_cents == 4500

        slot = await store.get_slot("slot-1")
        assert slot.status == SlotStatus.BOOKED
        assert slot.version == 2
        assert slot.reservation_id == held.reservation_id
        reservation = await store.get_reservation(held.reservation_id)
        assert reservation.status == ReservationStatus.CONFIRMED

        assert [e.topic for e in published] == [
            EventTopic.SLOT_RESERVED,
            EventTopic.BOOKING_CONFIRMED,
        ]
        assert published[-1].payload["booking_id"] == result.booking.id

    @pytest.mark.asyncio
    async def test_duplicate_callback_returns_same_booking(
        self, coordinator, store, held, published
    ):
        first = await coordinator.confirm_payment(held.reservation_id, "pi_1")
        second = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert second.ok
        assert second.booking.id == first.booking.id
        assert not second.refund_required
        assert len([e for e in published if e.topic == EventTopic.BOOKING_CONFIRMED]) == 1

    @pytest.mark.asyncio
    async def test_second_payment_is_refunded(self, coordinator, held):
        await coordinator.confirm_payment(held.reservation_id, "pi_1")

        result = await coordinator.confirm_payment(held.reservation_id, "pi_2")

        assert result.status == ResultStatus.CONFLICT
        assert result.refund_required

    @pytest.mark.asyncio
    async def test_payment_after_expiry_time(self, coordinator, store, clock, held):
        clock.advance(minutes=15)

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.status == ResultStatus.EXPIRED
        assert result.refund_required
        assert (await store.get_slot("slot-1")).status == SlotStatus.HELD
        assert await store.get_booking_by_reservation(held.reservation_id) is None

    @pytest.mark.asyncio
    async def test_payment_after_sweep(self, coordinator, sweeper, clock, held):
        clock.advance(minutes=16)
        with patch("scheduler.sweeper.expire_checkout_session", new=AsyncMock()):
            await sweeper.sweep()

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.status == ResultStatus.EXPIRED
        assert result.refund_required

    @pytest.mark.asyncio
    async def test_payment_for_released_hold(self, coordinator, manager, held):
        await manager.release(held.reservation_id, "alice")

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.status == ResultStatus.EXPIRED
        assert result.refund_required

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, coordinator):
        result = await coordinator.confirm_payment("missing", "pi_1")

        assert result.status == ResultStatus.NOT_FOUND
        assert result.refund_required

    @pytest.mark.asyncio
    async def test_slot_taken_by_concurrent_transition(self, coordinator, store, held):
        # Sweeper-style release lands between the reservation and slot reads
        await store.try_transition("slot-1", SlotStatus.HELD, SlotStatus.AVAILABLE, 1)

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.status == ResultStatus.CONFLICT
        assert result.refund_required
        assert (await store.get_slot("slot-1")).status == SlotStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_missing_slot_is_refunded(self, coordinator, store, held):
        store._slots.pop("slot-1")

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.status == ResultStatus.NOT_FOUND
        assert result.refund_required

    @pytest.mark.asyncio
    async def test_locks_are_cleaned_up(self, coordinator, held):
        await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert coordinator._confirm_locks == {}
        assert coordinator._confirm_waiters == {}


class TestPaymentCallbacks:
    """Webhook-facing entry points."""

    @pytest.mark.asyncio
    async def test_succeeded_does_not_refund_on_success(self, coordinator, held):
        with patch("checkout.coordinator.refund_payment", new=AsyncMock()) as mock_refund:
            result = await coordinator.handle_payment_succeeded(held.reservation_id, "pi_1")

        assert result.ok
        mock_refund.assert_not_called()

    @pytest.mark.asyncio
    async def test_succeeded_refunds_late_payment(self, coordinator, clock, held):
        clock.advance(minutes=20)

        with patch("checkout.coordinator.refund_payment", new=AsyncMock()) as mock_refund:
            result = await coordinator.handle_payment_succeeded(held.reservation_id, "pi_1")

        assert result.status == ResultStatus.EXPIRED
        mock_refund.assert_awaited_once_with("pi_1", held.reservation_id)

    @pytest.mark.asyncio
    async def test_succeeded_payment_is_recorded(self, coordinator, store, held):
        with patch("checkout.coordinator.refund_payment", new=AsyncMock()):
            await coordinator.handle_payment_succeeded(
                held.reservation_id, "pi_1", amount_cents=4500, currency="usd"
            )

        payment = await store.get_payment("pi_1")
        assert payment.reservation_id == held.reservation_id
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.amount_cents == 4500
        assert payment.refund_id is None

    @pytest.mark.asyncio
    async def test_refund_is_recorded_in_ledger(self, coordinator, store, clock, held):
        clock.advance(minutes=20)
        refund = MagicMock(id="re_1", amount=4500)

        with patch("checkout.coordinator.refund_payment", new=AsyncMock(return_value=refund)):
            await coordinator.handle_payment_succeeded(
                held.reservation_id, "pi_1", amount_cents=4500
            )

        payment = await store.get_payment("pi_1")
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.reservation_id == held.reservation_id
        assert payment.refund_id == "re_1"
        assert payment.refund_amount_cents == 4500
        assert payment.refund_reason == "Reservation has expired"

    @pytest.mark.asyncio
    async def test_redelivered_payment_is_refunded_once(self, coordinator, store, clock, held):
        clock.advance(minutes=20)
        refund = MagicMock(id="re_1", amount=4500)

        with patch(
            "checkout.coordinator.refund_payment", new=AsyncMock(return_value=refund)
        ) as mock_refund:
            await coordinator.handle_payment_succeeded(held.reservation_id, "pi_1", 4500)
            second = await coordinator.handle_payment_succeeded(held.reservation_id, "pi_1", 4500)

        assert second.refund_required
        mock_refund.assert_awaited_once()
        assert (await store.get_payment("pi_1")).status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_failure_releases_hold(self, coordinator, store, held, published):
        result = await coordinator.handle_payment_failure(held.reservation_id)

        assert result.ok
        assert (await store.get_slot("slot-1")).status == SlotStatus.AVAILABLE
        assert published[-1].topic == EventTopic.HOLD_RELEASED

    @pytest.mark.asyncio
    async def test_failure_after_confirmation_keeps_booking(self, coordinator, store, held):
        await coordinator.confirm_payment(held.reservation_id, "pi_1")

        result = await coordinator.handle_payment_failure(held.reservation_id)

        assert result.status == ResultStatus.CONFLICT
        assert (await store.get_slot("slot-1")).status == SlotStatus.BOOKED

    @pytest.mark.asyncio
    async def test_failure_for_unknown_reservation(self, coordinator):
        result = await coordinator.handle_payment_failure("missing")

        assert result.status == ResultStatus.NOT_FOUND


class TestConcurrentConfirmation:
    """A confirmation that finds its slot already booked for the same reservation."""

    @pytest.mark.asyncio
    async def test_finishes_interrupted_confirmation(self, coordinator, store, held, published):
        # Another instance booked the slot and stopped before writing anything else
        await store.try_transition(
            "slot-1", SlotStatus.HELD, SlotStatus.BOOKED, 1, reservation_id=held.reservation_id
        )

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.ok
        assert not result.refund_required
        assert (await store.get_reservation(held.reservation_id)).status == ReservationStatus.CONFIRMED
        assert published[-1].topic == EventTopic.BOOKING_CONFIRMED

    @pytest.mark.asyncio
    async def test_booked_slot_counts_even_past_expiry(self, coordinator, store, clock, held):
        await store.try_transition(
            "slot-1", SlotStatus.HELD, SlotStatus.BOOKED, 1, reservation_id=held.reservation_id
        )
        clock.advance(minutes=20)

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.ok

    @pytest.mark.asyncio
    async def test_confirmed_without_booking_or_slot_is_refunded(self, coordinator, store, held):
        await store.update_reservation(
            held.reservation_id, ReservationStatus.HOLD, status=ReservationStatus.CONFIRMED
        )

        result = await coordinator.confirm_payment(held.reservation_id, "pi_1")

        assert result.status == ResultStatus.CONFLICT
        assert result.refund_required


class TestPaymentRefunded:
    """Refunds reported back by Stripe."""

    @pytest.mark.asyncio
    async def test_refund_moves_booking_to_refunded(self, coordinator, store, held):
        with patch("checkout.coordinator.refund_payment", new=AsyncMock()):
            await coordinator.handle_payment_succeeded(held.reservation_id, "pi_1", 4500)

        booking = await coordinator.handle_payment_refunded(
            "pi_1", refund_id="re_9", refund_amount_cents=4500
        )

        assert booking.status == BookingStatus.REFUNDED
        payment = await store.get_payment("pi_1")
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_id == "re_9"
        assert payment.amount_cents == 4500
        # The slot is not put back on sale
        assert (await store.get_slot("slot-1")).status == SlotStatus.BOOKED

    @pytest.mark.asyncio
    async def test_refund_is_idempotent(self, coordinator, store, held):
        await coordinator.confirm_payment(held.reservation_id, "pi_1")

        await coordinator.handle_payment_refunded("pi_1", refund_id="re_9")
        booking = await coordinator.handle_payment_refunded("pi_1", refund_id="re_9")

        assert booking.status == BookingStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_refund_of_our_own_refund_keeps_ledger(self, coordinator, store, clock, held):
        clock.advance(minutes=20)
        refund = MagicMock(id="re_1", amount=4500)
        with patch("checkout.coordinator.refund_payment", new=AsyncMock(return_value=refund)):
            await coordinator.handle_payment_succeeded(held.reservation_id, "pi_1", 4500)

        booking = await coordinator.handle_payment_refunded("pi_1", refund_amount_cents=4500)

        assert booking is None
        payment = await store.get_payment("pi_1")
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_id == "re_1"

    @pytest.mark.asyncio
    async def test_refund_of_unknown_payment(self, coordinator, store):
        assert await coordinator.handle_payment_refunded("pi_unknown") is None
        assert await store.get_payment("pi_unknown") is None
