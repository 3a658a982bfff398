"""
Database models.
"""
from courier_dispatch.models.base import TimestampMixin, UUIDMixin, utcnow
from courier_dispatch.models.order_assignment import (
    LEASE_HOLDING_STATUSES,
    TERMINAL_STATUSES,
    AssignmentHistoryEntry,
    AssignmentStatus,
    HistoryOutcome,
    OrderAssignment,
)
from courier_dispatch.models.partner_capacity import PartnerCapacity, PartnerOrderClaim

__all__ = [
    "TimestampMixin",
    "UUIDMixin",
    "utcnow",
    "AssignmentStatus",
    "HistoryOutcome",
    "TERMINAL_STATUSES",
    "LEASE_HOLDING_STATUSES",
    "OrderAssignment",
    "AssignmentHistoryEntry",
    "PartnerCapacity",
    "PartnerOrderClaim",
]
