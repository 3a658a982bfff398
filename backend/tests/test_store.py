"""
Tests for the assignment store state machine.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from courier_dispatch.core.exceptions import (
    AssignmentNotFoundException,
    DuplicateAssignmentException,
    InvalidTransitionException,
)
from courier_dispatch.models.order_assignment import AssignmentStatus, HistoryOutcome, OrderAssignment


def _assignment(order_id: str = "order-1", priority: int = 1, max_attempts: int = 3) -> OrderAssignment:
    return OrderAssignment(
        order_id=order_id,
        customer_id="customer-1",
        restaurant_id="restaurant-1",
        restaurant_latitude=12.97,
        restaurant_longitude=77.59,
        customer_latitude=12.93,
        customer_longitude=77.62,
        order_total_amount=Decimal("18.00"),
        order_item_count=2,
        priority=priority,
        assignment_radius_km=5.0,
        max_assignment_attempts=max_attempts,
    )


@pytest.fixture
async def pending(store):
    return await store.create(_assignment())


@pytest.fixture
async def reserved(store, pending):
    return await store.reserve("order-1", "p1", lease_seconds=30, ranked_candidates=[{"partner_id": "p1"}])


class TestCreate:
    """Tests for assignment creation."""

    @pytest.mark.asyncio
    async def test_create_pending(self, store):
        created = await store.create(_assignment())

        assert created.status == AssignmentStatus.PENDING
        assert created.current_attempt == 0
        assert created.assigned_to is None
        assert created.order_total_amount == Decimal("18.00")

    @pytest.mark.asyncio
    async def test_one_assignment_per_order(self, store, pending):
        with pytest.raises(DuplicateAssignmentException) as exc_info:
            await store.create(_assignment())

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_get_unknown(self, store):
        assert await store.find("missing") is None
        with pytest.raises(AssignmentNotFoundException):
            await store.get("missing")


class TestTransitions:
    """Tests for conditional transitions."""

    @pytest.mark.asyncio
    async def test_reserve(self, reserved, clock):
        assert reserved.status == AssignmentStatus.ASSIGNED
        assert reserved.assigned_to == "p1"
        assert reserved.assigned_at == clock.now
        assert reserved.timeout_at == clock.now + timedelta(seconds=30)
        assert reserved.current_attempt == 1
        assert reserved.ranked_candidates == [{"partner_id": "p1"}]
        assert reserved.open_history_entry.partner_id == "p1"

    @pytest.mark.asyncio
    async def test_reserve_requires_pending(self, store, reserved):
        """Test a second reservation writes nothing."""
        with pytest.raises(InvalidTransitionException) as exc_info:
            await store.reserve("order-1", "p2", lease_seconds=30)

        assert exc_info.value.current_status == "assigned"
        stored = await store.get("order-1")
        assert stored.assigned_to == "p1"
        assert stored.current_attempt == 1
        assert len(stored.history) == 1

    @pytest.mark.asyncio
    async def test_reserve_respects_budget(self, store):
        await store.create(_assignment(max_attempts=1))
        await store.reserve("order-1", "p1", lease_seconds=30)
        await store.reject("order-1", "p1")

        with pytest.raises(InvalidTransitionException):
            await store.reserve("order-1", "p2", lease_seconds=30)

    @pytest.mark.asyncio
    async def test_reserve_unknown(self, store):
        with pytest.raises(AssignmentNotFoundException):
            await store.reserve("missing", "p1", lease_seconds=30)

    @pytest.mark.asyncio
    async def test_accept(self, store, reserved, clock):
        clock.advance(8)

        accepted = await store.accept("order-1", "p1")

        assert accepted.status == AssignmentStatus.ACCEPTED
        assert accepted.timeout_at is None
        assert accepted.open_history_entry is None
        assert accepted.history[0].outcome == HistoryOutcome.ACCEPTED
        assert accepted.history[0].responded_at == clock.now

    @pytest.mark.asyncio
    async def test_accept_wrong_partner(self, store, reserved):
        with pytest.raises(InvalidTransitionException) as exc_info:
            await store.accept("order-1", "p2")

        assert exc_info.value.details["partner_id"] == "p2"

    @pytest.mark.asyncio
    async def test_reject_returns_to_pending(self, store, reserved):
        rejected = await store.reject("order-1", "p1", reason="Vehicle issue")

        assert rejected.status == AssignmentStatus.PENDING
        assert rejected.assigned_to is None
        assert rejected.assigned_at is None
        assert rejected.timeout_at is None
        assert rejected.current_attempt == 1
        assert rejected.history[0].outcome == HistoryOutcome.REJECTED
        assert rejected.history[0].reason == "Vehicle issue"

    @pytest.mark.asyncio
    async def test_expire_requires_deadline(self, store, reserved, clock):
        with pytest.raises(InvalidTransitionException):
            await store.expire("order-1", "p1")

        clock.advance(30)
        expired = await store.expire("order-1", "p1")

        assert expired.status == AssignmentStatus.PENDING
        assert expired.history[0].outcome == HistoryOutcome.TIMEOUT

    @pytest.mark.asyncio
    async def test_expire_only_once(self, store, reserved, clock):
        """Test two sweepers racing on the same lease: exactly one wins."""
        clock.advance(31)
        await store.expire("order-1", "p1")

        with pytest.raises(InvalidTransitionException):
            await store.expire("order-1", "p1")

        stored = await store.get("order-1")
        assert [h.outcome for h in stored.history] == [HistoryOutcome.TIMEOUT]

    @pytest.mark.asyncio
    async def test_accept_and_expire_race(self, store, reserved, clock):
        clock.advance(31)
        await store.accept("order-1", "p1")

        with pytest.raises(InvalidTransitionException):
            await store.expire("order-1", "p1")

        assert (await store.get("order-1")).status == AssignmentStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_reserve_pinned_to_attempt(self, store, pending):
        """Test a reservation read against an older attempt number loses."""
        await store.reserve("order-1", "p1", lease_seconds=30, attempt=1)
        await store.reject("order-1", "p1")

        with pytest.raises(InvalidTransitionException):
            await store.reserve("order-1", "p2", lease_seconds=30, attempt=1)

        second = await store.reserve("order-1", "p2", lease_seconds=30, attempt=2)
        assert second.current_attempt == 2

    @pytest.mark.asyncio
    async def test_stale_reject_after_same_partner_reserved_again(self, store, reserved):
        """Test a reject aimed at attempt 1 leaves the partner's attempt 2 lease alone."""
        await store.reject("order-1", "p1", attempt=1)
        await store.reserve("order-1", "p1", lease_seconds=30, attempt=2)

        with pytest.raises(InvalidTransitionException):
            await store.reject("order-1", "p1", attempt=1)

        stored = await store.get("order-1")
        assert stored.status == AssignmentStatus.ASSIGNED
        assert stored.current_attempt == 2

    @pytest.mark.asyncio
    async def test_expire_and_deliver_pinned_to_attempt(self, store, reserved, clock):
        clock.advance(31)
        with pytest.raises(InvalidTransitionException):
            await store.expire("order-1", "p1", attempt=2)
        await store.expire("order-1", "p1", attempt=1)

        await store.reserve("order-1", "p1", lease_seconds=30, attempt=2)
        await store.accept("order-1", "p1")
        await store.start_transit("order-1", "p1")
        with pytest.raises(InvalidTransitionException):
            await store.deliver("order-1", "p1", attempt=1)

        delivered = await store.deliver("order-1", "p1", attempt=2)
        assert delivered.status == AssignmentStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_fail_requires_spent_budget(self, store, pending):
        with pytest.raises(InvalidTransitionException):
            await store.fail("order-1", "no partner")

    @pytest.mark.asyncio
    async def test_fail(self, store):
        await store.create(_assignment(max_attempts=1))
        await store.reserve("order-1", "p1", lease_seconds=30)
        await store.reject("order-1", "p1")

        failed = await store.fail("order-1", "No partner accepted within 1 attempts")

        assert failed.status == AssignmentStatus.FAILED
        assert failed.failure_reason == "No partner accepted within 1 attempts"
        assert failed.is_terminal

    @pytest.mark.asyncio
    async def test_pickup_and_delivery(self, store, reserved):
        await store.accept("order-1", "p1")

        in_transit = await store.start_transit("order-1", "p1")
        delivered = await store.deliver("order-1", "p1")

        assert in_transit.status == AssignmentStatus.IN_TRANSIT
        assert delivered.status == AssignmentStatus.DELIVERED
        assert delivered.assigned_to is None
        assert delivered.delivered_at is not None

    @pytest.mark.asyncio
    async def test_terminal_rejects_everything(self, store, reserved):
        await store.cancel("order-1")

        for call in (
            store.accept("order-1", "p1"),
            store.reject("order-1", "p1"),
            store.start_transit("order-1", "p1"),
            store.deliver("order-1", "p1"),
        ):
            with pytest.raises(InvalidTransitionException):
                await call


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_assigned(self, store, reserved):
        outcome = await store.cancel("order-1", reason="Restaurant closed")

        assert outcome.changed is True
        assert outcome.released_partner_id == "p1"
        assert outcome.released_attempt == 1
        assert outcome.assignment.status == AssignmentStatus.CANCELLED
        entry = outcome.assignment.history[0]
        assert entry.outcome == HistoryOutcome.TIMEOUT
        assert entry.reason == "Restaurant closed"

    @pytest.mark.asyncio
    async def test_cancel_without_reason(self, store, reserved):
        outcome = await store.cancel("order-1")

        assert outcome.assignment.history[0].reason == "cancelled"
        assert outcome.assignment.cancellation_reason is None

    @pytest.mark.asyncio
    async def test_cancel_accepted_keeps_history(self, store, reserved):
        await store.accept("order-1", "p1")

        outcome = await store.cancel("order-1")

        assert outcome.released_partner_id == "p1"
        assert outcome.assignment.history[0].outcome == HistoryOutcome.ACCEPTED

    @pytest.mark.asyncio
    async def test_cancel_pending(self, store, pending):
        outcome = await store.cancel("order-1")

        assert outcome.changed is True
        assert outcome.released_partner_id is None
        assert outcome.released_attempt is None

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, store, reserved):
        await store.cancel("order-1")

        outcome = await store.cancel("order-1")

        assert outcome.changed is False
        assert outcome.released_partner_id is None


class TestQueries:
    """Tests for listing and summary queries."""

    @pytest.mark.asyncio
    async def test_list_expired(self, store, clock):
        await store.create(_assignment("order-1"))
        await store.create(_assignment("order-2"))
        await store.reserve("order-1", "p1", lease_seconds=30)
        clock.advance(10)
        await store.reserve("order-2", "p2", lease_seconds=30)

        clock.advance(25)
        expired = await store.list_expired()

        assert [(e.order_id, e.partner_id) for e in expired] == [("order-1", "p1")]

        clock.advance(10)
        assert [e.order_id for e in await store.list_expired()] == ["order-1", "order-2"]
        assert [e.order_id for e in await store.list_expired(limit=1)] == ["order-1"]

    @pytest.mark.asyncio
    async def test_list_stalled_pending(self, store, clock):
        await store.create(_assignment("order-low", priority=1))
        await store.create(_assignment("order-high", priority=5))
        await store.create(_assignment("order-fresh"))
        await store.record_no_candidates("order-fresh")
        await store.create(_assignment("order-held"))
        await store.reserve("order-held", "p1", lease_seconds=30)

        stalled = await store.list_stalled_pending(clock.now - timedelta(seconds=1))

        assert stalled == ["order-high", "order-low"]

    @pytest.mark.asyncio
    async def test_record_no_candidates(self, store, pending, clock):
        updated = await store.record_no_candidates("order-1", next_radius_km=7.5)

        assert updated.assignment_radius_km == 7.5
        assert updated.current_attempt == 0
        assert updated.last_assignment_check == clock.now

    @pytest.mark.asyncio
    async def test_list_for_partner_and_lease_holders(self, store):
        for order_id in ("order-1", "order-2", "order-3"):
            await store.create(_assignment(order_id))
        await store.reserve("order-1", "p1", lease_seconds=30)
        await store.reserve("order-2", "p1", lease_seconds=30)
        await store.accept("order-2", "p1")
        await store.start_transit("order-2", "p1")
        await store.reserve("order-3", "p2", lease_seconds=30)

        held = await store.list_for_partner("p1")
        holders = await store.list_lease_holders()

        assert [a.order_id for a in held] == ["order-1"]
        assert sorted(holders) == [("order-1", "p1", 1), ("order-2", "p1", 1), ("order-3", "p2", 1)]

    @pytest.mark.asyncio
    async def test_list_assignments(self, store):
        await store.create(_assignment("order-1", priority=1))
        await store.create(_assignment("order-2", priority=3))
        await store.reserve("order-1", "p1", lease_seconds=30)

        everything, total = await store.list_assignments()
        assigned, assigned_total = await store.list_assignments(status=AssignmentStatus.ASSIGNED)
        by_partner, _ = await store.list_assignments(assigned_to="p1")
        page, page_total = await store.list_assignments(limit=1, offset=1)

        assert total == 2
        assert [a.order_id for a in everything] == ["order-2", "order-1"]
        assert assigned_total == 1
        assert [a.order_id for a in assigned] == ["order-1"]
        assert [a.order_id for a in by_partner] == ["order-1"]
        assert page_total == 2
        assert [a.order_id for a in page] == ["order-1"]

    @pytest.mark.asyncio
    async def test_summary(self, store, clock):
        for order_id in ("order-1", "order-2", "order-3"):
            await store.create(_assignment(order_id))
        await store.reserve("order-1", "p1", lease_seconds=30)
        clock.advance(20)
        await store.accept("order-1", "p1")
        await store.reserve("order-2", "p2", lease_seconds=30)
        await store.cancel("order-3")
        clock.advance(60)

        summary = await store.summary()

        assert summary["total"] == 3
        assert summary["by_status"]["accepted"] == 1
        assert summary["by_status"]["assigned"] == 1
        assert summary["by_status"]["cancelled"] == 1
        assert summary["by_status"]["failed"] == 0
        assert summary["timed_out"] == 1
        assert summary["avg_response_seconds"] == 20.0
        assert summary["avg_attempts"] == pytest.approx(0.67, abs=0.01)
