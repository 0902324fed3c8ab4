"""Common FastAPI dependencies."""

from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.core.database import get_session_factory
from src.core.settings import get_settings
from src.services.allocation_engine import AllocationEngine
from src.services.business_rules import AllocationErrorKind, AllocationResult
from src.services.events import get_event_publisher

# HTTP status for each business outcome
ERROR_STATUS = {
    AllocationErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AllocationErrorKind.PORT_IN_USE: status.HTTP_409_CONFLICT,
    AllocationErrorKind.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    AllocationErrorKind.DUPLICATE_INSTANCE: status.HTTP_409_CONFLICT,
    AllocationErrorKind.NO_AVAILABLE_PORTS: status.HTTP_409_CONFLICT,
    AllocationErrorKind.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AllocationErrorKind.LOCK_TIMEOUT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_allocation_engine(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AllocationEngine:
    """Get allocation engine instance."""
    return AllocationEngine(session_factory, get_event_publisher())


def validate_uuid_param(uuid_str: str, param_name: str = "id") -> UUID:
    """Validate and parse UUID parameter."""
    try:
        return UUID(uuid_str)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_uuid",
                "message": f"Invalid UUID format for {param_name}",
                "code": "INVALID_UUID_FORMAT"
            }
        )


def get_performed_by(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID", description="Acting administrator"),
) -> Optional[UUID]:
    """Identity of the caller, supplied by the upstream portal. None means automatic."""
    if not x_user_id:
        return None
    return validate_uuid_param(x_user_id, "X-User-ID")


def get_pagination_params(
    page: int = Query(1, ge=1, le=1000, description="Page number"),
    per_page: Optional[int] = Query(None, ge=1, le=100, description="Items per page"),
) -> dict:
    """Get pagination parameters from query string."""
    per_page = per_page or get_settings().allocation_log_page_size
    return {
        "page": page,
        "per_page": per_page,
        "offset": (page - 1) * per_page,
        "limit": per_page,
    }


def raise_for_result(result: AllocationResult) -> None:
    """Translate a failed engine result into a JSON:API error response."""
    if result.success:
        return

    headers = None
    if result.error == AllocationErrorKind.LOCK_TIMEOUT:
        headers = {"Retry-After": str(get_settings().lock_timeout_retry_after_seconds)}

    raise HTTPException(
        status_code=ERROR_STATUS.get(result.error, status.HTTP_400_BAD_REQUEST),
        detail={
            "code": result.error.value,
            "message": result.message,
        },
        headers=headers,
    )
