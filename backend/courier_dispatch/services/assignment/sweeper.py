"""
Timeout sweeper.

Finds assigned leases past their deadline, expires them through the
engine (which releases capacity and re-attempts) and returns how many it
processed. Overlapping sweeps, and sweeps racing accept/reject, are safe:
the expire transition only matches a row that is still assigned to the
same partner with ``timeout_at <= now``, so exactly one actor wins.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from courier_dispatch.core.exceptions import (
    AppException,
    AssignmentNotFoundException,
    InvalidTransitionException,
)
from courier_dispatch.core.metrics import SWEEP_DURATION, SWEEP_EXPIRED
from courier_dispatch.models.base import utcnow
from courier_dispatch.services.assignment.engine import AssignmentEngine
from courier_dispatch.services.assignment.ledger import ReconciliationReport

logger = logging.getLogger(__name__)


class TimeoutSweeper:
    """Periodic lease-expiry scan."""

    def __init__(
        self,
        engine: AssignmentEngine,
        batch_size: int = 100,
        pending_retry_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            engine: Assignment engine driving the transitions
            batch_size: Max leases expired per sweep
            pending_retry_seconds: Re-attempt pending orders idle this long
                (None disables)
            clock: Source of "now"
        """
        self.engine = engine
        self.batch_size = batch_size
        self.pending_retry_seconds = pending_retry_seconds
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

        self.sweeps_run = 0
        self.leases_expired = 0

    async def sweep(self) -> int:
        """
        Expire every lapsed lease once.

        Returns:
            Number of assignments this sweep expired
        """
        start = time.perf_counter()
        now = self._clock()
        expired = await self.engine.store.list_expired(now, limit=self.batch_size)

        processed = 0
        for lease in expired:
            try:
                await self.engine.expire_lease(
                    lease.order_id,
                    lease.partner_id,
                    now,
                    attempt=lease.attempt,
                )
            except (InvalidTransitionException, AssignmentNotFoundException) as e:
                # Accepted, rejected, cancelled or expired by someone else
                logger.debug(f"Lease on order {lease.order_id} no longer expirable: {e.message}")
                continue
            except AppException as e:
                logger.error(
                    f"Could not expire lease on order {lease.order_id}: {e.message}",
                    extra={"order_id": lease.order_id, "partner_id": lease.partner_id},
                )
                continue
            processed += 1

            try:
                result = await self.engine.attempt(lease.order_id)
            except AppException as e:
                # Left pending; retry_stalled picks it up
                logger.error(
                    f"Re-attempt of order {lease.order_id} after timeout failed: {e.message}",
                    extra={"order_id": lease.order_id},
                )
                continue
            logger.info(
                f"Order {lease.order_id}: lease of {lease.partner_id} expired, "
                f"re-attempt {result.outcome.value}",
                extra={"order_id": lease.order_id, "partner_id": lease.partner_id},
            )

        duration = time.perf_counter() - start
        SWEEP_DURATION.observe(duration)
        SWEEP_EXPIRED.inc(processed)
        self.sweeps_run += 1
        self.leases_expired += processed

        if expired:
            logger.info(
                f"Timeout sweep: {processed}/{len(expired)} leases expired in {duration * 1000:.1f}ms"
            )
        return processed

    async def retry_stalled(self) -> int:
        """Re-attempt pending assignments nobody has tried recently."""
        if self.pending_retry_seconds is None:
            return 0

        checked_before = self._clock() - timedelta(seconds=self.pending_retry_seconds)
        order_ids = await self.engine.store.list_stalled_pending(checked_before, limit=self.batch_size)

        reserved = 0
        for order_id in order_ids:
            try:
                result = await self.engine.attempt(order_id)
            except AppException as e:
                logger.error(f"Retry of pending order {order_id} failed: {e.message}", extra={"order_id": order_id})
                continue
            if result.partner_id:
                reserved += 1

        if order_ids:
            logger.info(f"Stalled pending retry: {reserved}/{len(order_ids)} reserved")
        return len(order_ids)

    async def reconcile(self) -> ReconciliationReport:
        """Rebuild partner load accounting from the current lease holders."""
        return await self.engine.ledger.reconcile()

    async def run_forever(
        self,
        interval_seconds: float = 5.0,
        reconcile_interval_seconds: Optional[float] = None,
    ) -> None:
        """In-process loop: sweep every interval, reconcile less often."""
        self._running = True
        last_reconcile = time.monotonic()
        logger.info(f"Timeout sweeper started (interval {interval_seconds}s)")

        while self._running:
            try:
                await self.sweep()
                await self.retry_stalled()
                if (
                    reconcile_interval_seconds
                    and time.monotonic() - last_reconcile >= reconcile_interval_seconds
                ):
                    await self.reconcile()
                    last_reconcile = time.monotonic()
            except AppException as e:
                logger.warning(f"Timeout sweep failed: {e.message}")
            except Exception as e:
                logger.error(f"Timeout sweep error: {e}", exc_info=True)

            await asyncio.sleep(interval_seconds)

    def start(
        self,
        interval_seconds: float = 5.0,
        reconcile_interval_seconds: Optional[float] = None,
    ) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(
                self.run_forever(interval_seconds, reconcile_interval_seconds)
            )
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Timeout sweeper stopped")

    def get_metrics(self) -> dict:
        return {
            "sweeps_run": self.sweeps_run,
            "leases_expired": self.leases_expired,
            "running": self._running,
        }
