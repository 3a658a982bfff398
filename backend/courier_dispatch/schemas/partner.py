"""
Delivery partner feed schemas.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from courier_dispatch.schemas.assignment import LocationSchema
from courier_dispatch.services.geo.partner_index import (
    DeliveryPartnerSnapshot,
    PartnerAvailability,
    PartnerPerformance,
)


class PerformanceSchema(BaseModel):
    acceptance_rate: float = Field(default=100.0, ge=0, le=100)
    avg_response_time_seconds: Optional[float] = Field(default=30.0, ge=0)
    avg_delivery_time_minutes: Optional[float] = Field(None, ge=0)


class PartnerStatusUpdate(BaseModel):
    """Location and status report from the partner-location feed."""

    location: LocationSchema
    availability_status: PartnerAvailability = PartnerAvailability.ONLINE
    performance: PerformanceSchema = Field(default_factory=PerformanceSchema)
    max_concurrent_orders: int = Field(default=1, ge=1, le=10)
    reported_at: Optional[datetime] = None

    def to_snapshot(self, partner_id: str, now: datetime) -> DeliveryPartnerSnapshot:
        reported_at = self.reported_at or now
        if reported_at.tzinfo is not None:
            # Stored timestamps are naive UTC
            reported_at = reported_at.astimezone(timezone.utc).replace(tzinfo=None)
        return DeliveryPartnerSnapshot(
            partner_id=partner_id,
            location=self.location.to_point(),
            reported_at=reported_at,
            availability_status=self.availability_status,
            performance=PartnerPerformance(**self.performance.model_dump()),
            max_concurrent_orders=self.max_concurrent_orders,
        )


class PartnerStatusResponse(BaseModel):
    partner_id: str
    availability_status: PartnerAvailability
    latitude: float
    longitude: float
    reported_at: datetime
    current_load: int
    max_concurrent_orders: int
    active_order_id: Optional[str] = None
