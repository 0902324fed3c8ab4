"""Allocation endpoints used by the subscription lifecycle."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.api.dependencies.common import get_allocation_engine, get_performed_by, raise_for_result
from src.models.subscription import SubscriptionStatus
from src.schemas.allocation import (
    AllocationRequest,
    AllocationResponse,
    PendingAllocationRequest,
    ReassignRequest,
    ReleaseRequest,
)
from src.schemas.port import PortResource
from src.services.allocation_engine import AllocationEngine
from src.services.business_rules import AllocationErrorKind

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "",
    response_model=AllocationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={202: {"model": AllocationResponse, "description": "Waiting for a free port"}},
)
async def allocate_port(
    request: AllocationRequest,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """
    Allocate an available port to a subscription.

    When the pool is empty the subscription stays PENDING_ALLOCATION and the
    response is 202 Accepted.
    """
    result = await engine.allocate_port_to_subscription(request.subscription_id, performed_by)

    if result.error == AllocationErrorKind.NO_AVAILABLE_PORTS:
        body = AllocationResponse(
            meta={
                "subscription_id": str(request.subscription_id),
                "status": SubscriptionStatus.PENDING_ALLOCATION.value,
                "message": "Pending port allocation",
            }
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(mode="json"))

    raise_for_result(result)
    return AllocationResponse(
        data=PortResource.from_model(result.port),
        meta={"subscription_id": str(request.subscription_id), "status": SubscriptionStatus.ACTIVE.value},
    )


@router.post("/release", response_model=AllocationResponse)
async def release_port(
    request: ReleaseRequest,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Return the subscription's port to the pool. No port assigned is not an error."""
    result = await engine.release_port_result(request.subscription_id, performed_by)
    raise_for_result(result)
    return AllocationResponse(
        data=PortResource.from_model(result.port) if result.port else None,
        meta={
            "subscription_id": str(request.subscription_id),
            "released": result.port is not None,
        },
    )


@router.post("/reassign", response_model=AllocationResponse)
async def reassign_port(
    request: ReassignRequest,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Move a subscription from its current port to a specific available port."""
    result = await engine.reassign_port(request.subscription_id, request.new_port_id, performed_by)
    raise_for_result(result)
    return AllocationResponse(
        data=PortResource.from_model(result.port),
        meta={
            "subscription_id": str(request.subscription_id),
            "old_port_id": str(result.details["old_port_id"]),
        },
    )


@router.post("/pending", response_model=AllocationResponse)
async def allocate_pending(
    request: PendingAllocationRequest,
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Retry allocation for subscriptions waiting for a port, oldest first."""
    results = await engine.allocate_pending_subscriptions(limit=request.limit)
    allocated = [r for r in results if r.success]
    return AllocationResponse(
        meta={
            "processed": len(results),
            "allocated": len(allocated),
            "still_pending": len(results) - len(allocated),
            "allocations": [
                {"subscription_id": str(r.subscription_id), "port_id": str(r.port.id)}
                for r in allocated
            ],
        }
    )
