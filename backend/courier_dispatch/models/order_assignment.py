"""
Order assignment model.

One row per order. The row is the aggregate root of the dispatch
lifecycle; its status column is only ever changed through the conditional
updates in ``services.assignment.store``.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from courier_dispatch.core.database import Base
from courier_dispatch.models.base import TimestampMixin, UUIDMixin, utcnow


class AssignmentStatus(str, enum.Enum):
    """Assignment lifecycle status."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {AssignmentStatus.DELIVERED, AssignmentStatus.CANCELLED, AssignmentStatus.FAILED}
)

# assigned_to is set iff status is one of these
LEASE_HOLDING_STATUSES = frozenset(
    {AssignmentStatus.ASSIGNED, AssignmentStatus.ACCEPTED, AssignmentStatus.IN_TRANSIT}
)


class HistoryOutcome(str, enum.Enum):
    """Outcome of a single assignment attempt."""

    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class OrderAssignment(Base, UUIDMixin, TimestampMixin):
    """
    Dispatch record for a single order.
    """

    __tablename__ = "order_assignments"

    order_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
    )
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    restaurant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Locations
    restaurant_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    restaurant_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    restaurant_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    customer_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    customer_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    customer_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Lease
    assigned_to: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    status: Mapped[AssignmentStatus] = mapped_column(
        Enum(
            AssignmentStatus,
            values_callable=_enum_values,
            native_enum=False,
            length=20,
        ),
        default=AssignmentStatus.PENDING,
        nullable=False,
        index=True,
    )
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    timeout_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        index=True,
    )

    # Attempt budget
    current_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_assignment_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    assignment_radius_km: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)

    # Order summary shown to the partner
    order_total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    order_item_count: Mapped[int] = mapped_column(Integer, nullable=False)
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    estimated_preparation_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Tracking
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    last_assignment_check: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Ranked candidates of the latest attempt: [{partner_id, score, distance_km}]
    ranked_candidates: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    history: Mapped[list["AssignmentHistoryEntry"]] = relationship(
        "AssignmentHistoryEntry",
        back_populates="assignment",
        order_by="AssignmentHistoryEntry.attempt",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_order_assignments_status_timeout", "status", "timeout_at"),
        Index("ix_order_assignments_assigned_to_status", "assigned_to", "status"),
    )

    def __repr__(self) -> str:
        return f"<OrderAssignment {self.order_id} {self.status.value}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def open_history_entry(self) -> Optional["AssignmentHistoryEntry"]:
        """The attempt still waiting for a response, if any."""
        for entry in self.history:
            if entry.outcome == HistoryOutcome.ASSIGNED:
                return entry
        return None


class AssignmentHistoryEntry(Base, UUIDMixin):
    """
    One assignment attempt.

    Rows are append-only. ``outcome`` starts as ``assigned`` and is
    finalized exactly once to accepted, rejected or timeout.
    """

    __tablename__ = "assignment_history"

    assignment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("order_assignments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    partner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    outcome: Mapped[HistoryOutcome] = mapped_column(
        Enum(
            HistoryOutcome,
            values_callable=_enum_values,
            native_enum=False,
            length=20,
        ),
        default=HistoryOutcome.ASSIGNED,
        nullable=False,
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    assignment: Mapped["OrderAssignment"] = relationship(
        "OrderAssignment",
        back_populates="history",
    )

    __table_args__ = (
        UniqueConstraint("assignment_id", "attempt", name="uq_assignment_history_attempt"),
    )

    def __repr__(self) -> str:
        return f"<AssignmentHistoryEntry #{self.attempt} {self.partner_id} {self.outcome.value}>"
