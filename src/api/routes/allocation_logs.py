"""Port allocation log reporting endpoints."""

import logging
from datetime import date
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.common import get_pagination_params
from src.core.database import get_db_session
from src.models.port_allocation_log import AllocationAction
from src.schemas.allocation_log import (
    ActionListResponse,
    ActionOption,
    AllocationLogAttributes,
    AllocationLogCollectionResponse,
    AllocationLogResource,
)
from src.schemas.base import PaginationMeta
from src.services.allocation_log_export import action_label, export_allocation_logs, export_filename
from src.services.audit_trail import AuditTrail

logger = logging.getLogger(__name__)
router = APIRouter()


def log_resource(entry: Dict[str, Any]) -> AllocationLogResource:
    """JSON:API resource for a ``find_all_with_relations`` row."""
    attributes = {key: value for key, value in entry.items() if key != "id"}
    attributes["action_label"] = action_label(entry["action"])
    return AllocationLogResource(
        id=entry["id"],
        attributes=AllocationLogAttributes(**attributes),
    )


def get_log_filters(
    action: Optional[AllocationAction] = Query(None, description="Filter by action"),
    plan_id: Optional[UUID] = Query(None, description="Filter by subscription plan"),
    customer_id: Optional[UUID] = Query(None, description="Filter by customer"),
    port_id: Optional[UUID] = Query(None, description="Filter by port"),
    date_from: Optional[date] = Query(None, description="First day included"),
    date_to: Optional[date] = Query(None, description="Last day included"),
    search: Optional[str] = Query(None, max_length=255, description="Search URL, names, emails and notes"),
) -> Dict[str, Any]:
    """Collect log filters from the query string."""
    return {
        "action": action.value if action else None,
        "plan_id": plan_id,
        "customer_id": customer_id,
        "port_id": port_id,
        "date_from": date_from,
        "date_to": date_to,
        "search": search.strip() if search else None,
    }


@router.get("", response_model=AllocationLogCollectionResponse)
async def list_allocation_logs(
    filters: Dict[str, Any] = Depends(get_log_filters),
    pagination: dict = Depends(get_pagination_params),
    session: AsyncSession = Depends(get_db_session),
):
    """
    List allocation log entries, newest first.

    Entries of deleted ports, customers or plans are still returned; the
    related fields are null.
    """
    audit = AuditTrail(session)
    entries = await audit.find_all_with_relations(
        filters, limit=pagination["limit"], offset=pagination["offset"]
    )
    total = await audit.count_all_with_relations(filters)

    return AllocationLogCollectionResponse(
        data=[log_resource(entry) for entry in entries],
        meta={
            "pagination": PaginationMeta.build(
                pagination["page"], pagination["per_page"], total
            ).model_dump(),
            "filters": {k: str(v) for k, v in filters.items() if v is not None},
        },
    )


@router.get("/actions", response_model=ActionListResponse)
async def list_actions(session: AsyncSession = Depends(get_db_session)):
    """Actions present in the log, for filter drop-downs."""
    actions = await AuditTrail(session).get_distinct_actions()
    return ActionListResponse(
        data=[ActionOption(value=action, label=action_label(action)) for action in actions]
    )


@router.get("/export")
async def export_logs(
    filters: Dict[str, Any] = Depends(get_log_filters),
    session: AsyncSession = Depends(get_db_session),
):
    """Download the filtered log as CSV."""
    content = await export_allocation_logs(session, filters)
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )
