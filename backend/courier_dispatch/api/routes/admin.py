"""
Operations API routes: listing, manual sweep and reconciliation.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from courier_dispatch.api.deps import get_services
from courier_dispatch.models.order_assignment import AssignmentStatus
from courier_dispatch.schemas.assignment import (
    AssignmentListResponse,
    AssignmentResponse,
    AssignmentSummary,
    ReconcileResponse,
    SweepResponse,
)
from courier_dispatch.services.container import DispatchServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/assignments", response_model=AssignmentListResponse)
async def list_assignments(
    status: Optional[AssignmentStatus] = Query(None),
    partner_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: DispatchServices = Depends(get_services),
) -> AssignmentListResponse:
    """Filtered assignments with overall statistics."""
    items, total = await services.store.list_assignments(
        status=status,
        assigned_to=partner_id,
        limit=limit,
        offset=offset,
    )
    summary = await services.store.summary()
    return AssignmentListResponse(
        items=[AssignmentResponse.from_model(a) for a in items],
        total=total,
        limit=limit,
        offset=offset,
        summary=AssignmentSummary(**summary),
    )


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    services: DispatchServices = Depends(get_services),
) -> SweepResponse:
    """Expire lapsed leases and retry stalled pending orders now."""
    expired = await services.sweeper.sweep()
    retried = await services.sweeper.retry_stalled()
    logger.info(f"Manual sweep: expired={expired}, stalled_retried={retried}")
    return SweepResponse(expired=expired, stalled_retried=retried)


@router.post("/reconcile", response_model=ReconcileResponse)
async def run_reconciliation(
    services: DispatchServices = Depends(get_services),
) -> ReconcileResponse:
    """Rebuild partner load accounting from the active assignments."""
    report = await services.sweeper.reconcile()
    return ReconcileResponse(**report.to_dict())
