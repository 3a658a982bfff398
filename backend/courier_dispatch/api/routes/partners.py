"""
Delivery partner API routes.
"""
from fastapi import APIRouter, Depends

from courier_dispatch.api.deps import get_services
from courier_dispatch.models.base import utcnow
from courier_dispatch.schemas.assignment import AssignmentResponse, PartnerAssignmentsResponse
from courier_dispatch.schemas.partner import PartnerStatusResponse, PartnerStatusUpdate
from courier_dispatch.services.container import DispatchServices

router = APIRouter(prefix="/partners", tags=["partners"])


@router.get("/{partner_id}/assignments", response_model=PartnerAssignmentsResponse)
async def get_partner_assignments(
    partner_id: str,
    services: DispatchServices = Depends(get_services),
) -> PartnerAssignmentsResponse:
    """Assignments the partner holds in assigned or accepted."""
    assignments = await services.engine.get_partner_assignments(partner_id)
    return PartnerAssignmentsResponse(
        partner_id=partner_id,
        assignments=[AssignmentResponse.from_model(a) for a in assignments],
        total=len(assignments),
    )


@router.put("/{partner_id}/status", response_model=PartnerStatusResponse)
async def update_partner_status(
    partner_id: str,
    data: PartnerStatusUpdate,
    services: DispatchServices = Depends(get_services),
) -> PartnerStatusResponse:
    """
    Partner-location feed: record the partner's location, availability
    and capacity ceiling.
    """
    snapshot = data.to_snapshot(partner_id, utcnow())
    capacity = await services.ledger.ensure_partner(partner_id, snapshot.max_concurrent_orders)
    await services.index.upsert(snapshot)

    return PartnerStatusResponse(
        partner_id=partner_id,
        availability_status=snapshot.availability_status,
        latitude=snapshot.location.latitude,
        longitude=snapshot.location.longitude,
        reported_at=snapshot.reported_at,
        current_load=capacity.current_load,
        max_concurrent_orders=capacity.max_concurrent_orders,
        active_order_id=capacity.active_order_id,
    )
