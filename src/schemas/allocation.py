"""Allocation request and response schemas."""

from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import Field

from .base import BaseSchema
from .port import PortResource


class AllocationRequest(BaseSchema):
    """Allocate any available port to a subscription."""

    subscription_id: UUID = Field(description="Subscription to allocate for")


class ReleaseRequest(BaseSchema):
    """Release the port held by a subscription."""

    subscription_id: UUID = Field(description="Subscription whose port is released")


class ReassignRequest(BaseSchema):
    """Move a subscription to a specific available port."""

    subscription_id: UUID = Field(description="Subscription to move")
    new_port_id: UUID = Field(description="AVAILABLE port to move to")


class PendingAllocationRequest(BaseSchema):
    """Retry allocation for subscriptions waiting for a port."""

    limit: int = Field(100, ge=1, le=1000, description="Maximum subscriptions to process")


class AllocationResponse(BaseSchema):
    """Outcome of an allocation, release or reassignment."""

    data: Optional[PortResource] = Field(None, description="Port now holding the subscription, if any")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Outcome details")
