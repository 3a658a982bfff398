"""
Partner capacity ledger.

The one owner of partner load accounting. A partner's load is the set of
``partner_order_claims`` rows it holds, one per (order, attempt);
``current_load`` mirrors the count and is only changed here:

- claim:   conditional increment (``current_load < max_concurrent_orders``)
           plus a claim row for one attempt, in one transaction
- release: delete that attempt's claim row, decrement only if a row
           was deleted
- reconcile: rebuild claims and counters from the assignments that
             actually hold a partner

The engine claims before it reserves and releases after it transitions,
so a crash between the two steps can only leave a surplus claim. The
reconciliation pass removes those.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.core.exceptions import DependencyException
from courier_dispatch.core.metrics import CAPACITY_DRIFT
from courier_dispatch.models.base import utcnow
from courier_dispatch.models.partner_capacity import PartnerCapacity, PartnerOrderClaim
from courier_dispatch.services.assignment.store import lease_holders_query

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """What a reconciliation pass changed."""

    orphan_claims_removed: list[tuple[str, str]] = field(default_factory=list)
    missing_claims_restored: list[tuple[str, str]] = field(default_factory=list)
    loads_corrected: dict[str, tuple[int, int]] = field(default_factory=dict)  # partner -> (was, now)
    active_orders_cleared: list[str] = field(default_factory=list)

    @property
    def drift_found(self) -> bool:
        return bool(
            self.orphan_claims_removed
            or self.missing_claims_restored
            or self.loads_corrected
            or self.active_orders_cleared
        )

    def to_dict(self) -> dict:
        return {
            "orphan_claims_removed": [
                {"partner_id": p, "order_id": o} for p, o in self.orphan_claims_removed
            ],
            "missing_claims_restored": [
                {"partner_id": p, "order_id": o} for p, o in self.missing_claims_restored
            ],
            "loads_corrected": {
                partner: {"was": was, "now": now} for partner, (was, now) in self.loads_corrected.items()
            },
            "active_orders_cleared": self.active_orders_cleared,
            "drift_found": self.drift_found,
        }


class PartnerLedger:
    """Owned partner-capacity resource."""

    # Claims younger than this may belong to a reserve still in flight
    RECONCILE_GRACE_SECONDS = 60

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError) as e:
            raise DependencyException("partner ledger", str(e)) from e

    async def ensure_partner(self, partner_id: str, max_concurrent_orders: int) -> PartnerCapacity:
        """Create the capacity row or update its ceiling."""
        try:
            async with self._transaction() as session:
                capacity = await session.get(PartnerCapacity, partner_id)
                if capacity is None:
                    capacity = PartnerCapacity(
                        partner_id=partner_id,
                        max_concurrent_orders=max_concurrent_orders,
                        current_load=0,
                    )
                    session.add(capacity)
                else:
                    capacity.max_concurrent_orders = max_concurrent_orders
        except IntegrityError:
            # Created concurrently; fall through and read it back
            logger.debug(f"Capacity row for partner {partner_id} created concurrently")
        return await self.get(partner_id)

    async def get(self, partner_id: str) -> Optional[PartnerCapacity]:
        async with self._transaction() as session:
            return await session.get(PartnerCapacity, partner_id)

    async def loads(self, partner_ids: Iterable[str]) -> dict[str, int]:
        """Current load per partner; partners without a row are absent."""
        ids = list(partner_ids)
        if not ids:
            return {}
        async with self._transaction() as session:
            result = await session.execute(
                select(PartnerCapacity.partner_id, PartnerCapacity.current_load).where(
                    PartnerCapacity.partner_id.in_(ids)
                )
            )
            return {row.partner_id: row.current_load for row in result}

    async def claimed_orders(self, partner_id: str) -> list[str]:
        async with self._transaction() as session:
            result = await session.execute(
                select(PartnerOrderClaim.order_id)
                .where(PartnerOrderClaim.partner_id == partner_id)
                .order_by(PartnerOrderClaim.claimed_at, PartnerOrderClaim.attempt)
            )
            return list(dict.fromkeys(result.scalars().all()))

    async def claims(self, partner_id: str) -> list[tuple[str, int]]:
        """(order_id, attempt) of every claim the partner holds."""
        async with self._transaction() as session:
            result = await session.execute(
                select(PartnerOrderClaim.order_id, PartnerOrderClaim.attempt)
                .where(PartnerOrderClaim.partner_id == partner_id)
                .order_by(PartnerOrderClaim.claimed_at, PartnerOrderClaim.attempt)
            )
            return [(row.order_id, row.attempt) for row in result]

    async def claim(
        self,
        partner_id: str,
        order_id: str,
        attempt: int,
        max_concurrent_orders: int = 1,
    ) -> bool:
        """
        Count attempt ``attempt`` on ``order_id`` against the partner's capacity.

        Returns True only when this call created the claim. False means the
        partner is at capacity, or another actor already claimed the same
        attempt; in both cases nothing was written and the caller owns
        nothing to release.
        """
        await self._ensure_row(partner_id, max_concurrent_orders)

        try:
            async with self._transaction() as session:
                existing = await session.get(PartnerOrderClaim, (partner_id, order_id, attempt))
                if existing is not None:
                    logger.info(
                        f"Attempt {attempt} on order {order_id} already claimed partner {partner_id}",
                        extra={"partner_id": partner_id, "order_id": order_id, "attempt": attempt},
                    )
                    return False

                result = await session.execute(
                    update(PartnerCapacity)
                    .where(
                        PartnerCapacity.partner_id == partner_id,
                        PartnerCapacity.current_load < PartnerCapacity.max_concurrent_orders,
                    )
                    .values(current_load=PartnerCapacity.current_load + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.info(
                        f"Partner {partner_id} at capacity, cannot claim order {order_id}",
                        extra={"partner_id": partner_id, "order_id": order_id},
                    )
                    return False

                session.add(
                    PartnerOrderClaim(
                        partner_id=partner_id,
                        order_id=order_id,
                        attempt=attempt,
                        claimed_at=self._clock(),
                    )
                )
                await session.flush()
        except IntegrityError:
            # Same attempt claimed concurrently; the increment rolled back with it
            logger.info(f"Attempt {attempt} on order {order_id} claimed concurrently for partner {partner_id}")
            return False

        logger.debug(f"Partner {partner_id} claimed order {order_id} (attempt {attempt})")
        return True

    async def release(self, partner_id: str, order_id: str, attempt: int) -> bool:
        """
        Return the capacity held by one attempt on ``order_id``.

        Returns False when that claim does not exist; the counter is left
        untouched. Claims of other attempts on the same order are kept.
        """
        async with self._transaction() as session:
            await self._lock_capacity(session, [partner_id])
            result = await session.execute(
                delete(PartnerOrderClaim).where(
                    PartnerOrderClaim.partner_id == partner_id,
                    PartnerOrderClaim.order_id == order_id,
                    PartnerOrderClaim.attempt == attempt,
                )
            )
            if result.rowcount != 1:
                return False

            await session.execute(
                update(PartnerCapacity)
                .where(
                    PartnerCapacity.partner_id == partner_id,
                    PartnerCapacity.current_load > 0,
                )
                .values(current_load=PartnerCapacity.current_load - 1)
                .execution_options(synchronize_session=False)
            )
            still_held = await session.scalar(
                select(func.count())
                .select_from(PartnerOrderClaim)
                .where(
                    PartnerOrderClaim.partner_id == partner_id,
                    PartnerOrderClaim.order_id == order_id,
                )
            )
            if not still_held:
                await session.execute(
                    update(PartnerCapacity)
                    .where(
                        PartnerCapacity.partner_id == partner_id,
                        PartnerCapacity.active_order_id == order_id,
                    )
                    .values(active_order_id=None)
                    .execution_options(synchronize_session=False)
                )

        logger.debug(f"Partner {partner_id} released order {order_id} (attempt {attempt})")
        return True

    async def activate(self, partner_id: str, order_id: str) -> None:
        """Record the order the partner is now working on."""
        async with self._transaction() as session:
            await session.execute(
                update(PartnerCapacity)
                .where(PartnerCapacity.partner_id == partner_id)
                .values(active_order_id=order_id)
                .execution_options(synchronize_session=False)
            )

    async def reconcile(
        self,
        lease_holders: Optional[Iterable[tuple[str, str, int]]] = None,
        grace_seconds: Optional[int] = None,
    ) -> ReconciliationReport:
        """
        Rebuild load accounting from the assignments that hold a partner.

        Every capacity row is locked first, so claim and release wait for
        the pass to commit, and the lease holders are read inside the same
        transaction.

        Args:
            lease_holders: (order_id, partner_id, attempt) of every
                assignment in assigned, accepted or in_transit; read from
                the assignments table when omitted
            grace_seconds: claims younger than this are left alone
        """
        grace = self.RECONCILE_GRACE_SECONDS if grace_seconds is None else grace_seconds
        cutoff = self._clock() - timedelta(seconds=grace)
        report = ReconciliationReport()

        async with self._transaction() as session:
            partners = {
                capacity.partner_id: capacity
                for capacity in (
                    await session.execute(select(PartnerCapacity).with_for_update())
                ).scalars().all()
            }
            if lease_holders is None:
                lease_holders = [tuple(row) for row in await session.execute(lease_holders_query())]
            expected = {(partner_id, order_id, attempt) for order_id, partner_id, attempt in lease_holders}

            claims = (await session.execute(select(PartnerOrderClaim))).scalars().all()
            held = {(c.partner_id, c.order_id, c.attempt) for c in claims}

            for claim in claims:
                key = (claim.partner_id, claim.order_id, claim.attempt)
                if key not in expected and claim.claimed_at <= cutoff:
                    await session.delete(claim)
                    held.discard(key)
                    report.orphan_claims_removed.append((claim.partner_id, claim.order_id))

            for partner_id, order_id, attempt in sorted(expected - held):
                if partner_id not in partners:
                    capacity = PartnerCapacity(partner_id=partner_id, max_concurrent_orders=1, current_load=0)
                    session.add(capacity)
                    await session.flush()
                    partners[partner_id] = capacity
                session.add(
                    PartnerOrderClaim(
                        partner_id=partner_id,
                        order_id=order_id,
                        attempt=attempt,
                        claimed_at=self._clock(),
                    )
                )
                held.add((partner_id, order_id, attempt))
                report.missing_claims_restored.append((partner_id, order_id))

            counts: dict[str, int] = {}
            held_orders: set[tuple[str, str]] = set()
            for partner_id, order_id, _ in held:
                counts[partner_id] = counts.get(partner_id, 0) + 1
                held_orders.add((partner_id, order_id))

            for capacity in partners.values():
                actual = counts.get(capacity.partner_id, 0)
                if capacity.current_load != actual:
                    report.loads_corrected[capacity.partner_id] = (capacity.current_load, actual)
                    capacity.current_load = actual
                if capacity.active_order_id and (capacity.partner_id, capacity.active_order_id) not in held_orders:
                    report.active_orders_cleared.append(capacity.partner_id)
                    capacity.active_order_id = None

        if report.orphan_claims_removed:
            CAPACITY_DRIFT.labels(kind="orphan_claim").inc(len(report.orphan_claims_removed))
        if report.missing_claims_restored:
            CAPACITY_DRIFT.labels(kind="missing_claim").inc(len(report.missing_claims_restored))
        if report.loads_corrected:
            CAPACITY_DRIFT.labels(kind="load_counter").inc(len(report.loads_corrected))

        if report.drift_found:
            logger.warning(
                "Partner capacity drift repaired",
                extra={
                    "orphans": len(report.orphan_claims_removed),
                    "restored": len(report.missing_claims_restored),
                    "corrected": len(report.loads_corrected),
                },
            )
        else:
            logger.debug("Partner capacity reconciliation found no drift")
        return report

    @staticmethod
    async def _lock_capacity(session: AsyncSession, partner_ids: list[str]) -> None:
        await session.execute(
            select(PartnerCapacity.partner_id)
            .where(PartnerCapacity.partner_id.in_(partner_ids))
            .with_for_update()
        )

    async def _ensure_row(self, partner_id: str, max_concurrent_orders: int) -> None:
        if await self.get(partner_id) is None:
            await self.ensure_partner(partner_id, max_concurrent_orders)
