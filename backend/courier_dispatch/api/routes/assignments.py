"""
Order assignment API routes.
"""
from fastapi import APIRouter, Depends

from courier_dispatch.api.deps import get_engine
from courier_dispatch.schemas.assignment import (
    AssignmentCreate,
    AssignmentResponse,
    CancelRequest,
    PartnerActionRequest,
    RejectRequest,
)
from courier_dispatch.services.assignment.engine import AssignmentEngine

router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.post("", response_model=AssignmentResponse, status_code=201)
async def create_assignment(
    data: AssignmentCreate,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    """
    Create the assignment for a new order and run the first attempt.

    The response is ``assigned`` when a partner was reserved and
    ``pending`` when nobody eligible was found yet.
    """
    assignment = await engine.create_and_assign(data.to_request())
    return AssignmentResponse.from_model(assignment)


@router.get("/{order_id}", response_model=AssignmentResponse)
async def get_assignment(
    order_id: str,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    """Get assignment state, history and customer message."""
    return AssignmentResponse.from_model(await engine.get(order_id))


@router.post("/{order_id}/accept", response_model=AssignmentResponse)
async def accept_assignment(
    order_id: str,
    data: PartnerActionRequest,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    """Lease holder accepts the order."""
    return AssignmentResponse.from_model(await engine.accept(order_id, data.partner_id))


@router.post("/{order_id}/reject", response_model=AssignmentResponse)
async def reject_assignment(
    order_id: str,
    data: RejectRequest,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    """Lease holder declines; the next candidate is tried immediately."""
    assignment = await engine.reject(order_id, data.partner_id, data.reason)
    return AssignmentResponse.from_model(assignment)


@router.post("/{order_id}/cancel", response_model=AssignmentResponse)
async def cancel_assignment(
    order_id: str,
    data: CancelRequest,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    """Cancel the assignment. Cancelling a finished one is a no-op."""
    return AssignmentResponse.from_model(await engine.cancel(order_id, data.reason))


@router.post("/{order_id}/pickup", response_model=AssignmentResponse)
async def pickup_assignment(
    order_id: str,
    data: PartnerActionRequest,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    return AssignmentResponse.from_model(await engine.start_transit(order_id, data.partner_id))


@router.post("/{order_id}/deliver", response_model=AssignmentResponse)
async def deliver_assignment(
    order_id: str,
    data: PartnerActionRequest,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    return AssignmentResponse.from_model(await engine.mark_delivered(order_id, data.partner_id))


@router.post("/{order_id}/retry", response_model=AssignmentResponse)
async def retry_assignment(
    order_id: str,
    engine: AssignmentEngine = Depends(get_engine),
) -> AssignmentResponse:
    """
    Run an assignment attempt for a pending order now.

    503 NO_CANDIDATES (retryable) when nobody is eligible,
    422 ASSIGNMENT_EXHAUSTED when the attempt budget is spent.
    """
    return AssignmentResponse.from_model(await engine.retry(order_id))
