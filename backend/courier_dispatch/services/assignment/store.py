"""
Assignment store and state machine.

Every transition is one conditional UPDATE keyed by ``order_id`` (a
compare-and-swap on ``status`` plus whatever else the transition
requires) executed together with its history write in a single
transaction. When the condition does not match, nothing is written and
the caller gets ``InvalidTransitionException`` or
``AssignmentNotFoundException``.

    pending   --reserve-->        assigned
    assigned  --accept-->         accepted
    assigned  --reject-->         pending
    assigned  --expire-->         pending
    pending   --fail-->           failed      (attempt budget spent)
    accepted  --start_transit-->  in_transit
    in_transit --deliver-->       delivered
    non-terminal --cancel-->      cancelled
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.core.exceptions import (
    AssignmentNotFoundException,
    DependencyException,
    DuplicateAssignmentException,
    InvalidTransitionException,
)
from courier_dispatch.core.metrics import record_transition
from courier_dispatch.models.base import utcnow
from courier_dispatch.models.order_assignment import (
    LEASE_HOLDING_STATUSES,
    AssignmentHistoryEntry,
    AssignmentStatus,
    HistoryOutcome,
    OrderAssignment,
)

logger = logging.getLogger(__name__)

# Cancel re-reads and retries when another actor moved the row in between
CANCEL_MAX_RETRIES = 5


@dataclass(frozen=True)
class ExpiredLease:
    """An assigned row whose lease deadline has passed."""

    order_id: str
    partner_id: str
    timeout_at: datetime
    attempt: Optional[int] = None


@dataclass(frozen=True)
class CancelOutcome:
    """Result of a cancel call."""

    assignment: OrderAssignment
    changed: bool
    released_partner_id: Optional[str] = None
    released_attempt: Optional[int] = None


def lease_holders_query():
    """(order_id, partner_id, attempt) of every assignment that holds a partner."""
    return select(
        OrderAssignment.order_id,
        OrderAssignment.assigned_to,
        OrderAssignment.current_attempt,
    ).where(
        OrderAssignment.status.in_(list(LEASE_HOLDING_STATUSES)),
        OrderAssignment.assigned_to.is_not(None),
    )


class AssignmentStore:
    """Durable OrderAssignment records with atomic state transitions."""

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
            raise DependencyException("assignment store", str(e)) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find(self, order_id: str) -> Optional[OrderAssignment]:
        async with self._transaction() as session:
            result = await session.execute(
                select(OrderAssignment).where(OrderAssignment.order_id == order_id)
            )
            return result.scalar_one_or_none()

    async def get(self, order_id: str) -> OrderAssignment:
        assignment = await self.find(order_id)
        if assignment is None:
            raise AssignmentNotFoundException(order_id)
        return assignment

    async def list_for_partner(
        self,
        partner_id: str,
        statuses: Sequence[AssignmentStatus] = (AssignmentStatus.ASSIGNED, AssignmentStatus.ACCEPTED),
    ) -> list[OrderAssignment]:
        """Assignments currently held by a partner, most recent first."""
        async with self._transaction() as session:
            result = await session.execute(
                select(OrderAssignment)
                .where(
                    OrderAssignment.assigned_to == partner_id,
                    OrderAssignment.status.in_(list(statuses)),
                )
                .order_by(OrderAssignment.assigned_at.desc(), OrderAssignment.order_id)
            )
            return list(result.scalars().all())

    async def list_expired(
        self,
        now: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ExpiredLease]:
        now = now or self._clock()
        async with self._transaction() as session:
            result = await session.execute(
                select(
                    OrderAssignment.order_id,
                    OrderAssignment.assigned_to,
                    OrderAssignment.timeout_at,
                    OrderAssignment.current_attempt,
                )
                .where(
                    OrderAssignment.status == AssignmentStatus.ASSIGNED,
                    OrderAssignment.timeout_at <= now,
                )
                .order_by(OrderAssignment.timeout_at, OrderAssignment.priority.desc())
                .limit(limit)
            )
            return [
                ExpiredLease(
                    order_id=row.order_id,
                    partner_id=row.assigned_to,
                    timeout_at=row.timeout_at,
                    attempt=row.current_attempt,
                )
                for row in result
            ]

    async def list_stalled_pending(
        self,
        checked_before: datetime,
        limit: int = 100,
    ) -> list[str]:
        """Order ids of pending rows not attempted since ``checked_before``."""
        async with self._transaction() as session:
            result = await session.execute(
                select(OrderAssignment.order_id)
                .where(
                    OrderAssignment.status == AssignmentStatus.PENDING,
                    or_(
                        OrderAssignment.last_assignment_check.is_(None),
                        OrderAssignment.last_assignment_check <= checked_before,
                    ),
                )
                .order_by(OrderAssignment.priority.desc(), OrderAssignment.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_lease_holders(self) -> list[tuple[str, str, int]]:
        """(order_id, partner_id, attempt) for every assignment that holds a partner."""
        async with self._transaction() as session:
            result = await session.execute(lease_holders_query())
            return [(row.order_id, row.assigned_to, row.current_attempt) for row in result]

    async def list_assignments(
        self,
        status: Optional[AssignmentStatus] = None,
        assigned_to: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[OrderAssignment], int]:
        """Filtered page of assignments plus the total match count."""
        conditions = []
        if status:
            conditions.append(OrderAssignment.status == status)
        if assigned_to:
            conditions.append(OrderAssignment.assigned_to == assigned_to)

        async with self._transaction() as session:
            total = await session.scalar(
                select(func.count()).select_from(OrderAssignment).where(*conditions)
            )
            result = await session.execute(
                select(OrderAssignment)
                .where(*conditions)
                .order_by(OrderAssignment.priority.desc(), OrderAssignment.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total or 0

    async def summary(self, now: Optional[datetime] = None) -> dict:
        """Per-status counts and response statistics."""
        now = now or self._clock()
        async with self._transaction() as session:
            by_status = {
                row[0]: row[1]
                for row in await session.execute(
                    select(OrderAssignment.status, func.count())
                    .group_by(OrderAssignment.status)
                )
            }
            avg_attempts = await session.scalar(select(func.avg(OrderAssignment.current_attempt)))
            timed_out = await session.scalar(
                select(func.count())
                .select_from(OrderAssignment)
                .where(
                    OrderAssignment.status == AssignmentStatus.ASSIGNED,
                    OrderAssignment.timeout_at < now,
                )
            )
            responses = await session.execute(
                select(AssignmentHistoryEntry.assigned_at, AssignmentHistoryEntry.responded_at).where(
                    AssignmentHistoryEntry.outcome == HistoryOutcome.ACCEPTED,
                    AssignmentHistoryEntry.responded_at.is_not(None),
                )
            )
            response_seconds = [
                (row.responded_at - row.assigned_at).total_seconds() for row in responses
            ]

        counts = {s.value: by_status.get(s, 0) for s in AssignmentStatus}
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "avg_attempts": round(float(avg_attempts), 2) if avg_attempts is not None else 0.0,
            "avg_response_seconds": (
                round(sum(response_seconds) / len(response_seconds), 1) if response_seconds else None
            ),
            "timed_out": timed_out or 0,
        }

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, assignment: OrderAssignment) -> OrderAssignment:
        """Persist a new pending assignment. One per order."""
        assignment.status = AssignmentStatus.PENDING
        assignment.current_attempt = 0
        assignment.assigned_to = None
        assignment.timeout_at = None
        try:
            async with self._transaction() as session:
                session.add(assignment)
        except IntegrityError as e:
            raise DuplicateAssignmentException(assignment.order_id) from e

        logger.info(
            f"Assignment created for order {assignment.order_id}",
            extra={"order_id": assignment.order_id, "priority": assignment.priority},
        )
        return await self.get(assignment.order_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def reserve(
        self,
        order_id: str,
        partner_id: str,
        lease_seconds: int,
        ranked_candidates: Optional[list[dict]] = None,
        attempt: Optional[int] = None,
    ) -> OrderAssignment:
        """
        pending -> assigned; opens history entry #current_attempt+1.

        With ``attempt`` set, only reserves when that is the attempt number
        the reservation would open.
        """
        now = self._clock()
        conditions = [
            OrderAssignment.status == AssignmentStatus.PENDING,
            OrderAssignment.current_attempt < OrderAssignment.max_assignment_attempts,
        ]
        if attempt is not None:
            conditions.append(OrderAssignment.current_attempt == attempt - 1)
        async with self._transaction() as session:
            matched = await self._compare_and_set(
                session,
                order_id,
                "reserve",
                conditions=conditions,
                values={
                    "status": AssignmentStatus.ASSIGNED,
                    "assigned_to": partner_id,
                    "assigned_at": now,
                    "timeout_at": now + timedelta(seconds=lease_seconds),
                    "current_attempt": OrderAssignment.current_attempt + 1,
                    "ranked_candidates": ranked_candidates,
                    "last_assignment_check": now,
                },
                partner_id=partner_id,
            )
            session.add(
                AssignmentHistoryEntry(
                    assignment_id=matched.id,
                    attempt=matched.current_attempt,
                    partner_id=partner_id,
                    assigned_at=now,
                    outcome=HistoryOutcome.ASSIGNED,
                )
            )

        logger.info(
            f"Order {order_id} reserved for partner {partner_id} "
            f"(attempt {matched.current_attempt}, lease {lease_seconds}s)",
            extra={"order_id": order_id, "partner_id": partner_id, "attempt": matched.current_attempt},
        )
        return await self.get(order_id)

    async def accept(self, order_id: str, partner_id: str) -> OrderAssignment:
        """assigned -> accepted, only by the lease holder."""
        now = self._clock()
        async with self._transaction() as session:
            matched = await self._compare_and_set(
                session,
                order_id,
                "accept",
                conditions=[
                    OrderAssignment.status == AssignmentStatus.ASSIGNED,
                    OrderAssignment.assigned_to == partner_id,
                ],
                values={
                    "status": AssignmentStatus.ACCEPTED,
                    "accepted_at": now,
                    "timeout_at": None,
                },
                partner_id=partner_id,
            )
            await self._finalize_open_entry(session, matched.id, HistoryOutcome.ACCEPTED, now)

        logger.info(
            f"Order {order_id} accepted by partner {partner_id}",
            extra={"order_id": order_id, "partner_id": partner_id},
        )
        return await self.get(order_id)

    async def reject(
        self,
        order_id: str,
        partner_id: str,
        reason: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> OrderAssignment:
        """assigned -> pending, only by the lease holder (of ``attempt``, when given)."""
        now = self._clock()
        async with self._transaction() as session:
            matched = await self._compare_and_set(
                session,
                order_id,
                "reject",
                conditions=self._holder_conditions(AssignmentStatus.ASSIGNED, partner_id, attempt),
                values=self._release_values(),
                partner_id=partner_id,
            )
            await self._finalize_open_entry(session, matched.id, HistoryOutcome.REJECTED, now, reason)

        logger.info(
            f"Order {order_id} rejected by partner {partner_id}. Reason: {reason}",
            extra={"order_id": order_id, "partner_id": partner_id, "reason": reason},
        )
        return await self.get(order_id)

    async def expire(
        self,
        order_id: str,
        partner_id: str,
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> OrderAssignment:
        """assigned -> pending once ``timeout_at`` has passed."""
        now = now or self._clock()
        async with self._transaction() as session:
            matched = await self._compare_and_set(
                session,
                order_id,
                "expire",
                conditions=[
                    *self._holder_conditions(AssignmentStatus.ASSIGNED, partner_id, attempt),
                    OrderAssignment.timeout_at <= now,
                ],
                values=self._release_values(),
                partner_id=partner_id,
            )
            await self._finalize_open_entry(session, matched.id, HistoryOutcome.TIMEOUT, now)

        logger.info(
            f"Lease of partner {partner_id} on order {order_id} timed out",
            extra={"order_id": order_id, "partner_id": partner_id},
        )
        return await self.get(order_id)

    async def fail(self, order_id: str, reason: str) -> OrderAssignment:
        """pending -> failed when the attempt budget is spent."""
        async with self._transaction() as session:
            await self._compare_and_set(
                session,
                order_id,
                "fail",
                conditions=[
                    OrderAssignment.status == AssignmentStatus.PENDING,
                    OrderAssignment.current_attempt >= OrderAssignment.max_assignment_attempts,
                ],
                values={
                    "status": AssignmentStatus.FAILED,
                    "failure_reason": reason,
                    "last_assignment_check": self._clock(),
                },
            )

        logger.warning(
            f"Assignment for order {order_id} failed: {reason}",
            extra={"order_id": order_id},
        )
        return await self.get(order_id)

    async def start_transit(self, order_id: str, partner_id: str) -> OrderAssignment:
        """accepted -> in_transit (order picked up)."""
        async with self._transaction() as session:
            await self._compare_and_set(
                session,
                order_id,
                "start_transit",
                conditions=[
                    OrderAssignment.status == AssignmentStatus.ACCEPTED,
                    OrderAssignment.assigned_to == partner_id,
                ],
                values={
                    "status": AssignmentStatus.IN_TRANSIT,
                    "picked_up_at": self._clock(),
                },
                partner_id=partner_id,
            )

        logger.info(f"Order {order_id} picked up by partner {partner_id}")
        return await self.get(order_id)

    async def deliver(
        self,
        order_id: str,
        partner_id: str,
        attempt: Optional[int] = None,
    ) -> OrderAssignment:
        """in_transit -> delivered; the partner's lease ends."""
        async with self._transaction() as session:
            await self._compare_and_set(
                session,
                order_id,
                "deliver",
                conditions=self._holder_conditions(AssignmentStatus.IN_TRANSIT, partner_id, attempt),
                values={
                    "status": AssignmentStatus.DELIVERED,
                    "assigned_to": None,
                    "delivered_at": self._clock(),
                },
                partner_id=partner_id,
            )

        logger.info(f"Order {order_id} delivered by partner {partner_id}")
        return await self.get(order_id)

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> CancelOutcome:
        """
        Any non-terminal status -> cancelled.

        Idempotent: a terminal assignment is returned unchanged. An open
        lease is closed in the history as a timeout.
        """
        for _ in range(CANCEL_MAX_RETRIES):
            current = await self.get(order_id)
            if current.is_terminal:
                return CancelOutcome(assignment=current, changed=False)

            now = self._clock()
            held_by = current.assigned_to
            holder_condition = (
                OrderAssignment.assigned_to.is_(None)
                if held_by is None
                else OrderAssignment.assigned_to == held_by
            )
            async with self._transaction() as session:
                result = await session.execute(
                    update(OrderAssignment)
                    .where(
                        OrderAssignment.order_id == order_id,
                        OrderAssignment.status == current.status,
                        OrderAssignment.current_attempt == current.current_attempt,
                        holder_condition,
                    )
                    .values(
                        status=AssignmentStatus.CANCELLED,
                        assigned_to=None,
                        timeout_at=None,
                        cancelled_at=now,
                        cancellation_reason=reason,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    record_transition("cancel", False)
                    continue
                if current.status == AssignmentStatus.ASSIGNED:
                    await self._finalize_open_entry(
                        session, current.id, HistoryOutcome.TIMEOUT, now, reason or "cancelled"
                    )

            record_transition("cancel", True)
            logger.info(
                f"Assignment for order {order_id} cancelled from {current.status.value}",
                extra={"order_id": order_id, "reason": reason},
            )
            return CancelOutcome(
                assignment=await self.get(order_id),
                changed=True,
                released_partner_id=held_by,
                released_attempt=current.current_attempt if held_by else None,
            )

        current = await self.get(order_id)
        raise InvalidTransitionException(order_id, "cancel", current.status.value)

    async def record_no_candidates(
        self,
        order_id: str,
        next_radius_km: Optional[float] = None,
    ) -> OrderAssignment:
        """Note an empty attempt on a pending row. Consumes no attempt."""
        values: dict = {"last_assignment_check": self._clock(), "ranked_candidates": []}
        if next_radius_km is not None:
            values["assignment_radius_km"] = next_radius_km
        async with self._transaction() as session:
            await session.execute(
                update(OrderAssignment)
                .where(
                    OrderAssignment.order_id == order_id,
                    OrderAssignment.status == AssignmentStatus.PENDING,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return await self.get(order_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _holder_conditions(
        status: AssignmentStatus,
        partner_id: str,
        attempt: Optional[int] = None,
    ) -> list:
        conditions = [
            OrderAssignment.status == status,
            OrderAssignment.assigned_to == partner_id,
        ]
        if attempt is not None:
            conditions.append(OrderAssignment.current_attempt == attempt)
        return conditions

    @staticmethod
    def _release_values() -> dict:
        return {
            "status": AssignmentStatus.PENDING,
            "assigned_to": None,
            "assigned_at": None,
            "timeout_at": None,
        }

    async def _compare_and_set(
        self,
        session: AsyncSession,
        order_id: str,
        transition: str,
        conditions: list,
        values: dict,
        partner_id: Optional[str] = None,
    ):
        """
        Run one conditional UPDATE. Returns the (id, current_attempt) row
        of the updated assignment or raises without writing anything.
        """
        result = await session.execute(
            update(OrderAssignment)
            .where(OrderAssignment.order_id == order_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            record_transition(transition, False)
            current_status = await session.scalar(
                select(OrderAssignment.status).where(OrderAssignment.order_id == order_id)
            )
            if current_status is None:
                raise AssignmentNotFoundException(order_id)
            raise InvalidTransitionException(
                order_id,
                transition,
                current_status=current_status.value,
                partner_id=partner_id,
            )

        record_transition(transition, True)
        row = await session.execute(
            select(OrderAssignment.id, OrderAssignment.current_attempt).where(
                OrderAssignment.order_id == order_id
            )
        )
        return row.one()

    @staticmethod
    async def _finalize_open_entry(
        session: AsyncSession,
        assignment_id,
        outcome: HistoryOutcome,
        responded_at: datetime,
        reason: Optional[str] = None,
    ) -> None:
        await session.execute(
            update(AssignmentHistoryEntry)
            .where(
                AssignmentHistoryEntry.assignment_id == assignment_id,
                AssignmentHistoryEntry.outcome == HistoryOutcome.ASSIGNED,
            )
            .values(outcome=outcome, responded_at=responded_at, reason=reason)
            .execution_options(synchronize_session=False)
        )
