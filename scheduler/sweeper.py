"""
Expiry sweeper for abandoned holds, scheduled with APScheduler.

Each expiry goes through the same optimistic-concurrency gate as payment
confirmation, so running several sweepers (one per instance) only produces
redundant no-ops, and a confirmation that lands first always wins.
"""

import asyncio
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from config import Settings, settings as default_settings
from db import SlotStore, get_store
from events import EventNotifier, get_notifier
from models.event import Event, EventTopic
from models.reservation import Reservation, ReservationStatus
from models.slot import SlotStatus
from payments import expire_checkout_session
from utils.constants import MAX_RETRIES, RETRY_BACKOFF, RETRY_DELAY_SECONDS
from utils.datetime_utils import Clock, utc_now
from utils.exceptions import DatabaseError, PaymentError
from utils.logging_config import setup_logging

logger = setup_logging(
    name=__name__, log_level=default_settings.log_level, log_file="sweeper.log"
)

SWEEP_JOB_ID = "expire_holds"


class SweepReport(BaseModel):
    """Counters for one sweep."""

    scanned: int = 0
    expired: int = 0
    skipped: int = 0


class ExpirySweeper:
    """Periodically returns slots behind expired holds to AVAILABLE."""

    def __init__(
        self,
        store: Optional[SlotStore] = None,
        notifier: Optional[EventNotifier] = None,
        config: Optional[Settings] = None,
        clock: Clock = utc_now,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.store = store or get_store()
        self.notifier = notifier or get_notifier()
        self.config = config or default_settings
        self.clock = clock
        self.scheduler = scheduler

    async def sweep(self) -> SweepReport:
        """
        Expire every HOLD reservation whose hold_expires_at has passed.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        now = self.clock()
        report = SweepReport()
        holds = await self.store.list_expired_holds(now, limit=self.config.sweep_batch_size)

        for reservation in holds:
            report.scanned += 1
            # The store filter is only a hint; never expire a hold early
            if not reservation.is_expired_at(now):
                report.skipped += 1
                continue
            if await self._expire(reservation):
                report.expired += 1
            else:
                report.skipped += 1

        if report.scanned:
            logger.info(
                f"Sweep complete: {report.expired} expired, {report.skipped} skipped "
                f"of {report.scanned} scanned"
            )
        return report

    async def _expire(self, reservation: Reservation) -> bool:
        slot = await self.store.get_slot(reservation.slot_id)

        if slot is not None and slot.reservation_id == reservation.id:
            if slot.status != SlotStatus.HELD:
                # Confirmation booked the slot; it will finish the reservation
                return False
            transition = await self.store.try_transition(
                slot.id, SlotStatus.HELD, SlotStatus.AVAILABLE, slot.version
            )
            if not transition.ok:
                logger.debug(
                    f"Reservation {reservation.id} changed under the sweeper "
                    f"({transition.status.value}); leaving it alone"
                )
                return False
        else:
            # Slot purged or already serving another reservation: only the row is stale
            logger.warning(
                f"Reservation {reservation.id} no longer owns slot {reservation.slot_id}"
            )

        updated = await self.store.update_reservation(
            reservation.id, ReservationStatus.HOLD, status=ReservationStatus.EXPIRED
        )
        if updated is None:
            return False

        logger.info(
            f"Hold {reservation.id} on slot {reservation.slot_id} expired "
            f"(was due {reservation.hold_expires_at.isoformat()})"
        )
        await self.notifier.publish(
            Event(
                topic=EventTopic.HOLD_EXPIRED,
                reservation_id=reservation.id,
                customer_id=reservation.customer_id,
                payload={
                    "slot_id": reservation.slot_id,
                    "expired_at": reservation.hold_expires_at.isoformat(),
                },
            )
        )

        if reservation.payment_session_id:
            try:
                await expire_checkout_session(reservation.payment_session_id)
            except PaymentError as e:
                logger.warning(
                    f"Could not expire checkout session {reservation.payment_session_id}: {e}"
                )
        return True

    async def run_tick(self) -> Optional[SweepReport]:
        """
        Scheduled entry point. Retries store failures with backoff and never raises.

        Returns:
            The sweep report, or None if every attempt failed
        """
        delay = RETRY_DELAY_SECONDS

        for attempt in range(MAX_RETRIES):
            try:
                return await self.sweep()
            except DatabaseError as e:
                if attempt < MAX_RETRIES - 1:
                    logger.warning(
                        f"Store error during sweep (attempt {attempt + 1}/{MAX_RETRIES}): "
                        f"{e}. Retrying in {delay}s..."
                    )
                    await asyncio.sleep(delay)
                    delay *= RETRY_BACKOFF
                else:
                    logger.error(
                        f"Sweep failed after {MAX_RETRIES} attempts, "
                        f"retrying next tick: {e}",
                        exc_info=True,
                    )
            except Exception as e:
                logger.error(f"Unexpected error during sweep: {e}", exc_info=True)
                return None
        return None

    def start(self) -> None:
        """Schedule run_tick on a fixed interval. Needs a running event loop."""
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone="UTC")

        self.scheduler.add_job(
            self.run_tick,
            trigger=IntervalTrigger(seconds=self.config.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            name="Expire abandoned slot holds",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            f"Expiry sweeper started (every {self.config.sweep_interval_seconds}s)"
        )

    def shutdown(self) -> None:
        """Stop the scheduler."""
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Expiry sweeper stopped")
