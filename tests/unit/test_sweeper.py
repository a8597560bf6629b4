"""
Unit tests for the expiry sweeper.
Store-backed sweeps run against the in-memory store; scheduling is mocked.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from models.event import EventTopic
from models.reservation import Reservation, ReservationStatus
from models.slot import SlotStatus
from scheduler.sweeper import SWEEP_JOB_ID
from tests.conftest import T0, make_slot
from utils.exceptions import CheckoutSessionError, StoreUnavailableError


@pytest.fixture(autouse=True)
def mock_session_expiry():
    """Sweeps never reach Stripe."""
    with patch(
        "scheduler.sweeper.expire_checkout_session", new=AsyncMock(return_value=True)
    ) as mock_expire:
        yield mock_expire


class TestSweep:
    """Expiring abandoned holds."""

    @pytest.mark.asyncio
    async def test_nothing_due(self, sweeper, manager, slot, clock):
        await manager.reserve("alice", slot.id)
        clock.advance(minutes=14, seconds=59)

        report = await sweeper.sweep()

        assert report.scanned == 0
        assert report.expired == 0

    @pytest.mark.asyncio
    async def test_expires_hold_at_deadline(self, sweeper, manager, store, slot, clock, published):
        held = await manager.reserve("alice", slot.id)
        clock.advance(minutes=15)

        report = await sweeper.sweep()

        assert report.expired == 1
        freed = await store.get_slot(slot.id)
        assert freed.status == SlotStatus.AVAILABLE
        assert freed.version == 2
        assert freed.reservation_id is None
        reservation = await store.get_reservation(held.reservation_id)
        assert reservation.status == ReservationStatus.EXPIRED
        assert published[-1].topic == EventTopic.HOLD_EXPIRED
        assert published[-1].reservation_id == held.reservation_id
        assert published[-1].customer_id == "alice"

    @pytest.mark.asyncio
    async def test_expired_slot_can_be_reserved_again(self, sweeper, manager, slot, clock):
        await manager.reserve("alice", slot.id)
        clock.advance(minutes=20)
        await sweeper.sweep()

        result = await manager.reserve("bob", slot.id)

        assert result.ok

    @pytest.mark.asyncio
    async def test_second_sweep_is_noop(self, sweeper, manager, slot, clock, published):
        await manager.reserve("alice", slot.id)
        clock.advance(minutes=20)
        await sweeper.sweep()

        report = await sweeper.sweep()

        assert report.scanned == 0
        assert len([e for e in published if e.topic == EventTopic.HOLD_EXPIRED]) == 1

    @pytest.mark.asyncio
    async def test_only_due_holds_expire(self, sweeper, manager, store, clock):
        await store.add_slot(make_slot("slot-a", hours_from_t0=1))
        await store.add_slot(make_slot("slot-b", hours_from_t0=2))
        short = await manager.reserve("alice", "slot-a", hold_minutes=5)
        long = await manager.reserve("bob", "slot-b", hold_minutes=30)
        clock.advance(minutes=10)

        report = await sweeper.sweep()

        assert report.expired == 1
        assert (await store.get_reservation(short.reservation_id)).status == ReservationStatus.EXPIRED
        assert (await store.get_reservation(long.reservation_id)).status == ReservationStatus.HOLD
        assert (await store.get_slot("slot-b")).status == SlotStatus.HELD

    @pytest.mark.asyncio
    async def test_confirmed_slot_is_left_alone(self, sweeper, coordinator, manager, store, slot, clock):
        held = await manager.reserve("alice", slot.id)
        await coordinator.confirm_payment(held.reservation_id, "pi_1")
        # Reservation row lagging behind its booked slot
        await store.create_reservation(
            (await store.get_reservation(held.reservation_id)).model_copy(
                update={"status": ReservationStatus.HOLD}
            )
        )
        clock.advance(minutes=20)

        report = await sweeper.sweep()

        assert report.expired == 0
        assert report.skipped == 1
        assert (await store.get_slot(slot.id)).status == SlotStatus.BOOKED

    @pytest.mark.asyncio
    async def test_stale_row_for_reassigned_slot(self, sweeper, store, slot, published):
        """A hold row whose slot now belongs to someone else expires without touching the slot."""
        await store.try_transition(slot.id, SlotStatus.AVAILABLE, SlotStatus.HELD, 0, "res-new")
        await store.create_reservation(
            Reservation(
                id="res-old",
                slot_id=slot.id,
                customer_id="alice",
                hold_expires_at=T0 - timedelta(minutes=1),
                created_at=T0 - timedelta(minutes=16),
            )
        )

        report = await sweeper.sweep()

        assert report.expired == 1
        current = await store.get_slot(slot.id)
        assert current.reservation_id == "res-new"
        assert current.status == SlotStatus.HELD
        assert published[-1].reservation_id == "res-old"

    @pytest.mark.asyncio
    async def test_respects_batch_size(self, sweeper, manager, store, clock, test_settings):
        for i in range(3):
            await store.add_slot(make_slot(f"slot-{i}", hours_from_t0=i + 1))
            await manager.reserve(f"customer-{i}", f"slot-{i}")
        clock.advance(minutes=20)
        sweeper.config = test_settings.model_copy(update={"sweep_batch_size": 2})

        first = await sweeper.sweep()
        second = await sweeper.sweep()

        assert first.expired == 2
        assert second.expired == 1

    @pytest.mark.asyncio
    async def test_expires_open_checkout_session(
        self, sweeper, manager, store, slot, clock, mock_session_expiry
    ):
        held = await manager.reserve("alice", slot.id)
        await store.update_reservation(
            held.reservation_id, ReservationStatus.HOLD, payment_session_id="cs_1"
        )
        clock.advance(minutes=20)

        await sweeper.sweep()

        mock_session_expiry.assert_awaited_once_with("cs_1")

    @pytest.mark.asyncio
    async def test_session_expiry_failure_does_not_undo_expiry(
        self, sweeper, manager, store, slot, clock, mock_session_expiry
    ):
        held = await manager.reserve("alice", slot.id)
        await store.update_reservation(
            held.reservation_id, ReservationStatus.HOLD, payment_session_id="cs_1"
        )
        mock_session_expiry.side_effect = CheckoutSessionError("Stripe down")
        clock.advance(minutes=20)

        report = await sweeper.sweep()

        assert report.expired == 1
        assert (await store.get_slot(slot.id)).status == SlotStatus.AVAILABLE


class TestRunTick:
    """Scheduled entry point."""

    @pytest.mark.asyncio
    async def test_retries_store_errors(self, sweeper):
        report = MagicMock()
        sweeper.sweep = AsyncMock(side_effect=[StoreUnavailableError("down"), report])

        with patch("scheduler.sweeper.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            result = await sweeper.run_tick()

        assert result is report
        assert sweeper.sweep.await_count == 2
        mock_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_quietly(self, sweeper):
        sweeper.sweep = AsyncMock(side_effect=StoreUnavailableError("down"))

        with patch("scheduler.sweeper.asyncio.sleep", new=AsyncMock()):
            result = await sweeper.run_tick()

        assert result is None
        assert sweeper.sweep.await_count == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_is_swallowed(self, sweeper):
        sweeper.sweep = AsyncMock(side_effect=RuntimeError("bug"))

        result = await sweeper.run_tick()

        assert result is None
        assert sweeper.sweep.await_count == 1


class TestScheduling:
    """APScheduler wiring."""

    def test_start_adds_interval_job(self, sweeper):
        scheduler = MagicMock()
        sweeper.scheduler = scheduler

        sweeper.start()

        scheduler.add_job.assert_called_once()
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == SWEEP_JOB_ID
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert kwargs["trigger"].interval == timedelta(seconds=30)
        scheduler.start.assert_called_once()

    def test_shutdown(self, sweeper):
        scheduler = MagicMock()
        scheduler.running = True
        sweeper.scheduler = scheduler

        sweeper.shutdown()

        scheduler.shutdown.assert_called_once_with(wait=False)

    def test_shutdown_without_start(self, sweeper):
        sweeper.shutdown()
