"""Pydantic schemas for request/response validation."""

from .base import *
from .port import *
from .allocation import *
from .allocation_log import *

__all__ = [
    # Base schemas
    "BaseSchema",
    "PaginationMeta",
    "JSONAPIResponse",
    "JSONAPICollectionResponse",
    "JSONAPIError",
    "JSONAPIErrorResponse",
    "HealthCheckResponse",

    # Port schemas
    "PortAttributes",
    "PortResource",
    "PortCreateAttributes",
    "PortUpdateAttributes",
    "PortCreateRequest",
    "PortUpdateRequest",
    "PortStatusChangeRequest",
    "PortAssignRequest",
    "PortTransferRequest",
    "PortResponse",
    "PortCollectionResponse",
    "PortImportResponse",
    "PortAvailabilityResponse",

    # Allocation schemas
    "AllocationRequest",
    "ReleaseRequest",
    "ReassignRequest",
    "PendingAllocationRequest",
    "AllocationResponse",

    # Allocation log schemas
    "AllocationLogAttributes",
    "AllocationLogResource",
    "AllocationLogCollectionResponse",
    "ActionOption",
    "ActionListResponse",
]
