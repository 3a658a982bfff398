"""
Order assignment schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from courier_dispatch.models.order_assignment import (
    AssignmentStatus,
    HistoryOutcome,
    OrderAssignment,
)
from courier_dispatch.services.assignment.engine import AssignmentRequest, customer_message
from courier_dispatch.services.geo.geometry import GeoPoint


class LocationSchema(BaseModel):
    """WGS84 point."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)

    def to_point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude, self.address)


class OrderSummary(BaseModel):
    """What the partner sees before accepting."""

    total_amount: Decimal = Field(..., ge=0, decimal_places=2)
    item_count: int = Field(..., ge=1)
    special_instructions: Optional[str] = Field(None, max_length=1000)
    estimated_preparation_minutes: Optional[int] = Field(None, ge=0, le=240)


class AssignmentCreate(BaseModel):
    """Order context from the order-placement flow."""

    order_id: str = Field(..., min_length=1, max_length=100)
    customer_id: str = Field(..., min_length=1, max_length=100)
    restaurant_id: str = Field(..., min_length=1, max_length=100)
    restaurant_location: LocationSchema
    customer_location: LocationSchema
    order_summary: OrderSummary
    priority: int = Field(default=1, ge=1, le=10)
    assignment_radius_km: Optional[float] = Field(None, ge=1, le=50)
    max_assignment_attempts: Optional[int] = Field(None, ge=1, le=10)

    def to_request(self) -> AssignmentRequest:
        return AssignmentRequest(
            order_id=self.order_id,
            customer_id=self.customer_id,
            restaurant_id=self.restaurant_id,
            restaurant_location=self.restaurant_location.to_point(),
            customer_location=self.customer_location.to_point(),
            order_total_amount=self.order_summary.total_amount,
            order_item_count=self.order_summary.item_count,
            special_instructions=self.order_summary.special_instructions,
            estimated_preparation_minutes=self.order_summary.estimated_preparation_minutes,
            priority=self.priority,
            assignment_radius_km=self.assignment_radius_km,
            max_assignment_attempts=self.max_assignment_attempts,
        )


class PartnerActionRequest(BaseModel):
    """Accept, pick up or deliver, sent by the lease holder."""

    partner_id: str = Field(..., min_length=1, max_length=100)


class RejectRequest(PartnerActionRequest):
    reason: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class HistoryEntryResponse(BaseModel):
    """One assignment attempt."""

    attempt: int
    partner_id: str
    assigned_at: datetime
    outcome: HistoryOutcome
    responded_at: Optional[datetime]
    reason: Optional[str]

    class Config:
        from_attributes = True


class RankedCandidate(BaseModel):
    partner_id: str
    score: int
    distance_km: float


class AssignmentResponse(BaseModel):
    """Assignment state as exposed to the order-status display."""

    order_id: str
    customer_id: str
    restaurant_id: str
    restaurant_location: LocationSchema
    customer_location: LocationSchema
    order_summary: OrderSummary
    status: AssignmentStatus
    customer_message: str
    assigned_to: Optional[str]
    priority: int
    current_attempt: int
    max_assignment_attempts: int
    assignment_radius_km: float
    timeout_at: Optional[datetime]
    assigned_at: Optional[datetime]
    accepted_at: Optional[datetime]
    picked_up_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    failure_reason: Optional[str]
    cancellation_reason: Optional[str]
    last_assignment_check: Optional[datetime]
    ranked_candidates: list[RankedCandidate] = []
    history: list[HistoryEntryResponse] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, assignment: OrderAssignment) -> "AssignmentResponse":
        return cls(
            order_id=assignment.order_id,
            customer_id=assignment.customer_id,
            restaurant_id=assignment.restaurant_id,
            restaurant_location=LocationSchema(
                latitude=assignment.restaurant_latitude,
                longitude=assignment.restaurant_longitude,
                address=assignment.restaurant_address,
            ),
            customer_location=LocationSchema(
                latitude=assignment.customer_latitude,
                longitude=assignment.customer_longitude,
                address=assignment.customer_address,
            ),
            order_summary=OrderSummary(
                total_amount=assignment.order_total_amount,
                item_count=assignment.order_item_count,
                special_instructions=assignment.special_instructions,
                estimated_preparation_minutes=assignment.estimated_preparation_minutes,
            ),
            status=assignment.status,
            customer_message=customer_message(assignment.status),
            assigned_to=assignment.assigned_to,
            priority=assignment.priority,
            current_attempt=assignment.current_attempt,
            max_assignment_attempts=assignment.max_assignment_attempts,
            assignment_radius_km=assignment.assignment_radius_km,
            timeout_at=assignment.timeout_at,
            assigned_at=assignment.assigned_at,
            accepted_at=assignment.accepted_at,
            picked_up_at=assignment.picked_up_at,
            delivered_at=assignment.delivered_at,
            cancelled_at=assignment.cancelled_at,
            failure_reason=assignment.failure_reason,
            cancellation_reason=assignment.cancellation_reason,
            last_assignment_check=assignment.last_assignment_check,
            ranked_candidates=[RankedCandidate(**c) for c in (assignment.ranked_candidates or [])],
            history=[HistoryEntryResponse.model_validate(h) for h in assignment.history],
            created_at=assignment.created_at,
            updated_at=assignment.updated_at,
        )


class PartnerAssignmentsResponse(BaseModel):
    partner_id: str
    assignments: list[AssignmentResponse]
    total: int


class AssignmentSummary(BaseModel):
    """Admin statistics over all assignments."""

    total: int
    by_status: dict[str, int]
    avg_attempts: float
    avg_response_seconds: Optional[float]
    timed_out: int


class AssignmentListResponse(BaseModel):
    """Admin listing."""

    items: list[AssignmentResponse]
    total: int
    limit: int
    offset: int
    summary: AssignmentSummary


class SweepResponse(BaseModel):
    expired: int
    stalled_retried: int


class ReconcileResponse(BaseModel):
    orphan_claims_removed: list[dict[str, str]]
    missing_claims_restored: list[dict[str, str]]
    loads_corrected: dict[str, dict[str, int]]
    active_orders_cleared: list[str]
    drift_found: bool
