"""
Pydantic schemas for API request/response models.
"""

from courier_dispatch.schemas.assignment import (
    AssignmentCreate,
    AssignmentListResponse,
    AssignmentResponse,
    AssignmentSummary,
    CancelRequest,
    HistoryEntryResponse,
    LocationSchema,
    OrderSummary,
    PartnerActionRequest,
    PartnerAssignmentsResponse,
    RankedCandidate,
    ReconcileResponse,
    RejectRequest,
    SweepResponse,
)
from courier_dispatch.schemas.partner import (
    PartnerStatusResponse,
    PartnerStatusUpdate,
    PerformanceSchema,
)

__all__ = [
    "AssignmentCreate",
    "AssignmentListResponse",
    "AssignmentResponse",
    "AssignmentSummary",
    "CancelRequest",
    "HistoryEntryResponse",
    "LocationSchema",
    "OrderSummary",
    "PartnerActionRequest",
    "PartnerAssignmentsResponse",
    "RankedCandidate",
    "ReconcileResponse",
    "RejectRequest",
    "SweepResponse",
    "PartnerStatusResponse",
    "PartnerStatusUpdate",
    "PerformanceSchema",
]
