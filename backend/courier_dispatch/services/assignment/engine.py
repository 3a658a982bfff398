"""
Assignment engine.

Orchestrates the store, the partner ledger and the geo index:

- create_and_assign: persist a pending record, then run one attempt
- accept / reject / cancel / start_transit / mark_delivered
- attempt: find, score and reserve the best eligible partner

Capacity ordering:
- the ledger claim is taken before ``reserve`` and given back if the
  reserve loses its race
- every other transition commits first and releases capacity after

so a crash in between can only leave a surplus claim, which
``PartnerLedger.reconcile`` removes.
"""

import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from courier_dispatch.core.config import Settings
from courier_dispatch.core.exceptions import (
    AssignmentExhaustedException,
    DependencyException,
    InvalidTransitionException,
    NoCandidatesException,
)
from courier_dispatch.core.metrics import record_attempt
from courier_dispatch.models.base import utcnow
from courier_dispatch.models.order_assignment import AssignmentStatus, OrderAssignment
from courier_dispatch.services.assignment.events import (
    AssignmentEvent,
    AssignmentEventType,
    EventPublisher,
)
from courier_dispatch.services.assignment.ledger import PartnerLedger
from courier_dispatch.services.assignment.scoring import PartnerScore, PartnerScorer
from courier_dispatch.services.assignment.store import AssignmentStore
from courier_dispatch.services.geo.geometry import GeoPoint
from courier_dispatch.services.geo.partner_index import (
    DeliveryPartnerSnapshot,
    PartnerAvailability,
    PartnerIndex,
)

logger = logging.getLogger(__name__)


CUSTOMER_MESSAGES = {
    AssignmentStatus.PENDING: "We're looking for a delivery partner for your order.",
    AssignmentStatus.ASSIGNED: "A delivery partner is reviewing your order.",
    AssignmentStatus.ACCEPTED: "Your delivery partner is heading to the restaurant.",
    AssignmentStatus.IN_TRANSIT: "Your order is on its way.",
    AssignmentStatus.DELIVERED: "Your order has been delivered.",
    AssignmentStatus.CANCELLED: "Delivery for this order was cancelled.",
    AssignmentStatus.FAILED: (
        "We couldn't find a delivery partner for your order. "
        "Please try again later or contact support."
    ),
}


def customer_message(status: AssignmentStatus) -> str:
    """Customer-facing text for an assignment status."""
    return CUSTOMER_MESSAGES[status]


class AttemptOutcome(str, enum.Enum):
    RESERVED = "reserved"
    NO_CANDIDATES = "no_candidates"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"  # assignment not pending


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one assignment attempt."""

    outcome: AttemptOutcome
    assignment: OrderAssignment
    partner_id: Optional[str] = None
    candidates: list[PartnerScore] = field(default_factory=list)


@dataclass(frozen=True)
class RadiusPolicy:
    """
    Search radius growth after an attempt finds nobody.

    ``step_km = 0`` keeps the radius fixed.
    """

    step_km: float = 0.0
    max_km: float = 50.0

    def next_radius(self, current_km: float) -> Optional[float]:
        """Widened radius, or None when it stays as it is."""
        if self.step_km <= 0:
            return None
        widened = min(current_km + self.step_km, self.max_km)
        return widened if widened > current_km else None


@dataclass(frozen=True)
class AssignmentRequest:
    """Order context supplied by the order-placement flow."""

    order_id: str
    customer_id: str
    restaurant_id: str
    restaurant_location: GeoPoint
    customer_location: GeoPoint
    order_total_amount: Decimal
    order_item_count: int
    special_instructions: Optional[str] = None
    estimated_preparation_minutes: Optional[int] = None
    priority: int = 1
    assignment_radius_km: Optional[float] = None
    max_assignment_attempts: Optional[int] = None


class AssignmentEngine:
    """Dispatch lifecycle orchestration."""

    def __init__(
        self,
        store: AssignmentStore,
        ledger: PartnerLedger,
        index: PartnerIndex,
        scorer: Optional[PartnerScorer] = None,
        publisher: Optional[EventPublisher] = None,
        lease_seconds: int = 30,
        default_radius_km: float = 5.0,
        max_attempts: int = 3,
        radius_policy: Optional[RadiusPolicy] = None,
        max_location_age_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.index = index
        self.scorer = scorer or PartnerScorer()
        self.publisher = publisher or EventPublisher()
        self.lease_seconds = lease_seconds
        self.default_radius_km = default_radius_km
        self.max_attempts = max_attempts
        self.radius_policy = radius_policy or RadiusPolicy()
        self.max_location_age_seconds = max_location_age_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: AssignmentStore,
        ledger: PartnerLedger,
        index: PartnerIndex,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AssignmentEngine":
        return cls(
            store=store,
            ledger=ledger,
            index=index,
            publisher=publisher,
            lease_seconds=settings.ASSIGNMENT_LEASE_SECONDS,
            default_radius_km=settings.ASSIGNMENT_DEFAULT_RADIUS_KM,
            max_attempts=settings.ASSIGNMENT_MAX_ATTEMPTS,
            radius_policy=RadiusPolicy(
                step_km=settings.ASSIGNMENT_RADIUS_STEP_KM,
                max_km=settings.ASSIGNMENT_MAX_RADIUS_KM,
            ),
            max_location_age_seconds=settings.PARTNER_LOCATION_MAX_AGE_SECONDS,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_and_assign(self, request: AssignmentRequest) -> OrderAssignment:
        """
        Persist a pending assignment and run the first attempt.

        The pending record is committed before the geo index is queried;
        if the index is unavailable the record stays pending with no
        attempt consumed and the DependencyException propagates.
        """
        assignment = OrderAssignment(
            order_id=request.order_id,
            customer_id=request.customer_id,
            restaurant_id=request.restaurant_id,
            restaurant_latitude=request.restaurant_location.latitude,
            restaurant_longitude=request.restaurant_location.longitude,
            restaurant_address=request.restaurant_location.address,
            customer_latitude=request.customer_location.latitude,
            customer_longitude=request.customer_location.longitude,
            customer_address=request.customer_location.address,
            order_total_amount=request.order_total_amount,
            order_item_count=request.order_item_count,
            special_instructions=request.special_instructions,
            estimated_preparation_minutes=request.estimated_preparation_minutes,
            priority=request.priority,
            assignment_radius_km=request.assignment_radius_km or self.default_radius_km,
            max_assignment_attempts=request.max_assignment_attempts or self.max_attempts,
        )
        created = await self.store.create(assignment)
        await self._publish(AssignmentEventType.CREATED, created)

        result = await self.attempt(created.order_id)
        return result.assignment

    async def get(self, order_id: str) -> OrderAssignment:
        return await self.store.get(order_id)

    async def get_partner_assignments(self, partner_id: str) -> list[OrderAssignment]:
        """Assignments the partner holds in assigned or accepted."""
        return await self.store.list_for_partner(partner_id)

    async def accept(self, order_id: str, partner_id: str) -> OrderAssignment:
        """
        Lease holder accepts the order.

        Load is unchanged (it was counted at reserve); the order becomes
        the partner's active order and the partner turns busy.
        """
        accepted = await self.store.accept(order_id, partner_id)
        await self.ledger.activate(partner_id, order_id)
        await self._set_availability(partner_id, PartnerAvailability.BUSY)
        await self._publish(AssignmentEventType.ACCEPTED, accepted, partner_id)
        return accepted

    async def reject(
        self,
        order_id: str,
        partner_id: str,
        reason: Optional[str] = None,
    ) -> OrderAssignment:
        """Lease holder declines; capacity is released and the next attempt runs."""
        lease_attempt = (await self.store.get(order_id)).current_attempt
        rejected = await self.store.reject(order_id, partner_id, reason, attempt=lease_attempt)
        await self.ledger.release(partner_id, order_id, lease_attempt)
        await self._publish(AssignmentEventType.REJECTED, rejected, partner_id, {"reason": reason})

        result = await self.attempt(order_id)
        return result.assignment

    async def handle_timeout(
        self,
        order_id: str,
        partner_id: str,
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> AttemptResult:
        """Expire a lapsed lease, release its capacity and re-attempt."""
        await self.expire_lease(order_id, partner_id, now, attempt)
        return await self.attempt(order_id)

    async def expire_lease(
        self,
        order_id: str,
        partner_id: str,
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> OrderAssignment:
        """Expire a lapsed lease and release its capacity, without re-attempting."""
        if attempt is None:
            attempt = (await self.store.get(order_id)).current_attempt
        expired = await self.store.expire(order_id, partner_id, now, attempt=attempt)
        await self.ledger.release(partner_id, order_id, attempt)
        await self._publish(AssignmentEventType.TIMEOUT, expired, partner_id)
        return expired

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> OrderAssignment:
        """
        Cancel from any non-terminal status.

        Releases a held partner exactly like a timeout. Cancelling a
        terminal assignment returns it unchanged.
        """
        outcome = await self.store.cancel(order_id, reason)
        if not outcome.changed:
            logger.debug(f"Cancel of order {order_id} ignored, already {outcome.assignment.status.value}")
            return outcome.assignment

        if outcome.released_partner_id:
            await self._release_and_free(outcome.released_partner_id, order_id, outcome.released_attempt)
        await self._publish(
            AssignmentEventType.CANCELLED,
            outcome.assignment,
            outcome.released_partner_id,
            {"reason": reason},
        )
        return outcome.assignment

    async def start_transit(self, order_id: str, partner_id: str) -> OrderAssignment:
        """Order picked up by the accepted partner."""
        picked_up = await self.store.start_transit(order_id, partner_id)
        await self._publish(AssignmentEventType.IN_TRANSIT, picked_up, partner_id)
        return picked_up

    async def mark_delivered(self, order_id: str, partner_id: str) -> OrderAssignment:
        """Order handed to the customer; the partner's capacity is returned."""
        lease_attempt = (await self.store.get(order_id)).current_attempt
        delivered = await self.store.deliver(order_id, partner_id, attempt=lease_attempt)
        await self._release_and_free(partner_id, order_id, lease_attempt)
        await self._publish(AssignmentEventType.DELIVERED, delivered, partner_id)
        return delivered

    async def retry(self, order_id: str) -> OrderAssignment:
        """
        Run an attempt on request and report the result as an error when
        nothing was reserved.

        Raises:
            NoCandidatesException: nobody eligible right now (retryable)
            AssignmentExhaustedException: attempt budget spent
        """
        result = await self.attempt(order_id)
        if result.outcome == AttemptOutcome.NO_CANDIDATES:
            raise NoCandidatesException(order_id, result.assignment.assignment_radius_km)
        if result.outcome == AttemptOutcome.EXHAUSTED:
            raise AssignmentExhaustedException(order_id, result.assignment.current_attempt)
        return result.assignment

    # ------------------------------------------------------------------
    # Attempt algorithm
    # ------------------------------------------------------------------

    async def attempt(self, order_id: str) -> AttemptResult:
        """
        One assignment attempt.

        1. Not pending: nothing to do.
        2. Attempt budget spent: fail the assignment.
        3. Rank eligible partners within the assignment radius.
        4. Nobody: stay pending without consuming an attempt.
        5. Claim capacity of the best partner that still has room and
           reserve it under a lease.
        """
        assignment = await self.store.get(order_id)

        if assignment.status != AssignmentStatus.PENDING:
            record_attempt(AttemptOutcome.SKIPPED.value)
            return AttemptResult(AttemptOutcome.SKIPPED, assignment)

        if assignment.current_attempt >= assignment.max_assignment_attempts:
            return await self._exhaust(assignment)

        center = GeoPoint(
            assignment.restaurant_latitude,
            assignment.restaurant_longitude,
            assignment.restaurant_address,
        )
        snapshots = await self.index.find_candidates(
            center,
            assignment.assignment_radius_km,
            max_age_seconds=self.max_location_age_seconds,
            now=self._clock(),
        )
        snapshots = await self._with_ledger_loads(snapshots)
        ranked = self.scorer.rank(snapshots, center)

        if not ranked:
            return await self._no_candidates(assignment, ranked)

        by_id = {s.partner_id: s for s in snapshots}
        ranked_payload = [candidate.to_dict() for candidate in ranked]
        # Claims and the reservation are tied to the attempt this read would open
        next_attempt = assignment.current_attempt + 1

        for candidate in ranked:
            claimed = await self.ledger.claim(
                candidate.partner_id,
                order_id,
                next_attempt,
                by_id[candidate.partner_id].max_concurrent_orders,
            )
            if not claimed:
                continue

            try:
                reserved = await self.store.reserve(
                    order_id,
                    candidate.partner_id,
                    self.lease_seconds,
                    ranked_payload,
                    attempt=next_attempt,
                )
            except InvalidTransitionException:
                # Another actor moved the assignment since it was read
                await self.ledger.release(candidate.partner_id, order_id, next_attempt)
                record_attempt(AttemptOutcome.SKIPPED.value, len(ranked))
                return AttemptResult(
                    AttemptOutcome.SKIPPED,
                    await self.store.get(order_id),
                    candidates=ranked,
                )

            record_attempt(AttemptOutcome.RESERVED.value, len(ranked))
            await self._publish(
                AssignmentEventType.RESERVED,
                reserved,
                candidate.partner_id,
                {"score": candidate.score, "lease_expires_at": reserved.timeout_at.isoformat()},
            )
            return AttemptResult(
                AttemptOutcome.RESERVED,
                reserved,
                partner_id=candidate.partner_id,
                candidates=ranked,
            )

        logger.info(
            f"No ranked partner for order {order_id} could be claimed",
            extra={"order_id": order_id, "candidates": len(ranked)},
        )
        current = await self.store.get(order_id)
        if current.status != AssignmentStatus.PENDING or current.current_attempt != assignment.current_attempt:
            record_attempt(AttemptOutcome.SKIPPED.value, len(ranked))
            return AttemptResult(AttemptOutcome.SKIPPED, current, candidates=ranked)
        return await self._no_candidates(assignment, ranked)

    async def _exhaust(self, assignment: OrderAssignment) -> AttemptResult:
        order_id = assignment.order_id
        reason = f"No partner accepted within {assignment.max_assignment_attempts} attempts"
        try:
            failed = await self.store.fail(order_id, reason)
        except InvalidTransitionException:
            record_attempt(AttemptOutcome.SKIPPED.value)
            return AttemptResult(AttemptOutcome.SKIPPED, await self.store.get(order_id))

        record_attempt(AttemptOutcome.EXHAUSTED.value)
        await self._publish(
            AssignmentEventType.FAILED,
            failed,
            data={"reason": reason, "customer_message": customer_message(failed.status)},
        )
        return AttemptResult(AttemptOutcome.EXHAUSTED, failed)

    async def _no_candidates(
        self,
        assignment: OrderAssignment,
        ranked: list[PartnerScore],
    ) -> AttemptResult:
        next_radius = self.radius_policy.next_radius(assignment.assignment_radius_km)
        updated = await self.store.record_no_candidates(assignment.order_id, next_radius)

        record_attempt(AttemptOutcome.NO_CANDIDATES.value, len(ranked))
        logger.info(
            f"No eligible partner for order {assignment.order_id} "
            f"within {assignment.assignment_radius_km} km"
            + (f", radius widened to {next_radius} km" if next_radius else ""),
            extra={"order_id": assignment.order_id, "radius_km": assignment.assignment_radius_km},
        )
        return AttemptResult(AttemptOutcome.NO_CANDIDATES, updated, candidates=ranked)

    async def _with_ledger_loads(
        self,
        snapshots: list[DeliveryPartnerSnapshot],
    ) -> list[DeliveryPartnerSnapshot]:
        """Overlay the ledger's load on the feed's snapshots."""
        loads = await self.ledger.loads(s.partner_id for s in snapshots)
        return [
            replace(s, current_load=loads[s.partner_id]) if s.partner_id in loads else s
            for s in snapshots
        ]

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _release_and_free(self, partner_id: str, order_id: str, attempt: int) -> None:
        await self.ledger.release(partner_id, order_id, attempt)
        if not await self.ledger.claimed_orders(partner_id):
            snapshot = await self._get_snapshot(partner_id)
            if snapshot and snapshot.availability_status == PartnerAvailability.BUSY:
                await self._set_availability(partner_id, PartnerAvailability.ONLINE)

    async def _get_snapshot(self, partner_id: str) -> Optional[DeliveryPartnerSnapshot]:
        try:
            return await self.index.get(partner_id)
        except DependencyException as e:
            logger.warning(f"Could not read partner {partner_id} from the index: {e.message}")
            return None

    async def _set_availability(self, partner_id: str, status: PartnerAvailability) -> None:
        # The transition is already committed; the feed will correct the
        # index on the partner's next report.
        try:
            await self.index.set_availability(partner_id, status)
        except DependencyException as e:
            logger.warning(
                f"Could not mark partner {partner_id} {status.value}: {e.message}",
                extra={"partner_id": partner_id},
            )

    async def _publish(
        self,
        event_type: AssignmentEventType,
        assignment: OrderAssignment,
        partner_id: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> None:
        await self.publisher.publish(
            AssignmentEvent(
                event_type=event_type,
                order_id=assignment.order_id,
                status=assignment.status.value,
                partner_id=partner_id,
                attempt=assignment.current_attempt,
                data=data or {},
                timestamp=self._clock(),
            )
        )
