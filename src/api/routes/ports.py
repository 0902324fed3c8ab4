"""Port pool administration endpoints."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.common import (
    get_allocation_engine,
    get_pagination_params,
    get_performed_by,
    raise_for_result,
)
from src.core.database import get_db_session
from src.models.port import PortStatus
from src.schemas.allocation import AllocationResponse
from src.schemas.allocation_log import AllocationLogCollectionResponse
from src.schemas.base import PaginationMeta
from src.schemas.port import (
    PortAssignRequest,
    PortAvailabilityResponse,
    PortCollectionResponse,
    PortCreateRequest,
    PortImportResponse,
    PortResource,
    PortResponse,
    PortStatusChangeRequest,
    PortTransferRequest,
    PortUpdateRequest,
)
from src.services.allocation_engine import AllocationEngine
from src.services.audit_trail import AuditTrail
from src.services.port_store import PortStore
from src.utils.port_import import parse_ports_csv

from .allocation_logs import log_resource

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=PortCollectionResponse)
async def list_ports(
    status_filter: Optional[PortStatus] = Query(None, alias="status", description="Filter by status"),
    server_region: Optional[str] = Query(None, description="Filter by region"),
    search: Optional[str] = Query(None, description="Search URL, database name or host"),
    pagination: dict = Depends(get_pagination_params),
    session: AsyncSession = Depends(get_db_session),
):
    """List ports, newest first."""
    filters = {
        "status": status_filter.value if status_filter else None,
        "server_region": server_region,
        "search": search,
    }
    store = PortStore(session)
    ports = await store.find_all(filters, limit=pagination["limit"], offset=pagination["offset"])
    total = await store.count_all(filters)

    return PortCollectionResponse(
        data=[PortResource.from_model(port) for port in ports],
        meta={
            "pagination": PaginationMeta.build(
                pagination["page"], pagination["per_page"], total
            ).model_dump()
        },
    )


@router.post("", response_model=PortResponse, status_code=status.HTTP_201_CREATED)
async def create_port(
    request: PortCreateRequest,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Add a port to the pool in AVAILABLE or RESERVED state."""
    result = await engine.create_port(request.data.attributes.model_dump(), performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.get("/availability", response_model=PortAvailabilityResponse)
async def port_availability(engine: AllocationEngine = Depends(get_allocation_engine)):
    """
    Advisory pool availability.

    The answer is not a reservation; allocation may still find no port.
    """
    count = await engine.available_ports_count()
    return PortAvailabilityResponse(available=count > 0, available_count=count)


@router.post("/import", response_model=PortImportResponse)
async def import_ports(
    request: Request,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """
    Bulk import ports from a CSV request body.

    Each row is created independently; failures are reported per row.
    """
    body = await request.body()
    try:
        content = body.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "VALIDATION_ERROR", "message": "CSV body must be UTF-8 encoded"},
        )

    parsed = parse_ports_csv(content)
    if not parsed.rows and parsed.errors:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "VALIDATION_ERROR", "message": "; ".join(parsed.errors)},
        )

    summary = await engine.bulk_import_ports(parsed.rows, performed_by=performed_by)
    return PortImportResponse(
        data=[PortResource.from_model(port) for port in summary.imported_ports],
        meta={
            "imported": summary.imported,
            "failed": summary.failed,
            "errors": {str(index): message for index, message in summary.errors.items()},
            "parse_errors": parsed.errors,
        },
    )


@router.get("/{port_id}", response_model=PortResponse)
async def get_port(port_id: UUID, session: AsyncSession = Depends(get_db_session)):
    """Get a port by id."""
    port = await PortStore(session).find_by_id(port_id)
    if not port:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": f"Port {port_id} not found"},
        )
    return PortResponse(data=PortResource.from_model(port))


@router.patch("/{port_id}", response_model=PortResponse)
async def update_port(
    port_id: UUID,
    request: PortUpdateRequest,
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Update connection descriptor fields. Use the action endpoints to change status."""
    fields = request.data.attributes.model_dump(exclude_unset=True)
    result = await engine.update_port(port_id, fields)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.delete("/{port_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_port(
    port_id: UUID,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Delete a port that is not assigned. Its allocation history is kept."""
    result = await engine.delete_port(port_id, performed_by=performed_by)
    raise_for_result(result)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{port_id}/logs", response_model=AllocationLogCollectionResponse)
async def port_history(
    port_id: UUID,
    pagination: dict = Depends(get_pagination_params),
    session: AsyncSession = Depends(get_db_session),
):
    """Allocation history of one port, newest first."""
    audit = AuditTrail(session)
    filters = {"port_id": port_id}
    entries = await audit.find_all_with_relations(
        filters, limit=pagination["limit"], offset=pagination["offset"]
    )
    total = await audit.count_all_with_relations(filters)
    return AllocationLogCollectionResponse(
        data=[log_resource(entry) for entry in entries],
        meta={
            "pagination": PaginationMeta.build(
                pagination["page"], pagination["per_page"], total
            ).model_dump()
        },
    )


# Status actions

@router.post("/{port_id}/disable", response_model=PortResponse)
async def disable_port(
    port_id: UUID,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Take an AVAILABLE or RESERVED port out of service."""
    result = await engine.disable_port(port_id, performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/enable", response_model=PortResponse)
async def enable_port(
    port_id: UUID,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Return a DISABLED port to the pool."""
    result = await engine.enable_port(port_id, performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/reserve", response_model=PortResponse)
async def reserve_port(
    port_id: UUID,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Hold an AVAILABLE port back from automatic allocation."""
    result = await engine.reserve_port(port_id, performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/make-available", response_model=PortResponse)
async def make_port_available(
    port_id: UUID,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Release a RESERVED port to automatic allocation."""
    result = await engine.make_available(port_id, performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/status", response_model=PortResponse)
async def change_port_status(
    port_id: UUID,
    request: PortStatusChangeRequest,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Apply any allowed administrative status transition."""
    result = await engine.change_status(
        port_id, request.status, performed_by=performed_by, notes=request.notes
    )
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/release", response_model=PortResponse)
async def release_port(
    port_id: UUID,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Release an ASSIGNED port from its subscription."""
    result = await engine.release_port_by_id(port_id, performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/assign", response_model=PortResponse)
async def assign_port(
    port_id: UUID,
    request: PortAssignRequest,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Manually assign an AVAILABLE or RESERVED port to a subscription."""
    result = await engine.assign_port(port_id, request.subscription_id, performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/transfer", response_model=PortResponse)
async def transfer_port(
    port_id: UUID,
    request: PortTransferRequest,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Move an ASSIGNED port to another subscription in one step."""
    result = await engine.transfer_port(port_id, request.subscription_id, performed_by=performed_by)
    raise_for_result(result)
    return PortResponse(data=PortResource.from_model(result.port))


@router.post("/{port_id}/unlink", response_model=AllocationResponse)
async def unlink_subscription(
    port_id: UUID,
    performed_by: Optional[UUID] = Depends(get_performed_by),
    engine: AllocationEngine = Depends(get_allocation_engine),
):
    """Clear a subscription that still references this port without holding it."""
    result = await engine.release_stale_link(port_id, performed_by=performed_by)
    raise_for_result(result)
    return AllocationResponse(
        data=PortResource.from_model(result.port) if result.port else None,
        meta={"subscription_id": str(result.subscription_id), "unlinked": True},
    )
