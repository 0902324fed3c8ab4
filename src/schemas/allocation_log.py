"""Port allocation log schemas."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import Field

from .base import BaseSchema, JSONAPICollectionResponse


class AllocationLogAttributes(BaseSchema):
    """A log entry with its related entities resolved."""

    action: str = Field(description="Action code")
    action_label: str = Field(description="Human readable action")
    port_id: UUID
    subscription_id: Optional[UUID] = None
    customer_id: Optional[UUID] = None
    performed_by: Optional[UUID] = Field(None, description="Acting admin; null for automatic actions")
    notes: Optional[str] = None
    created_at: datetime

    port_instance_url: Optional[str] = Field(None, description="Null once the port is deleted")
    port_status: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    plan_id: Optional[UUID] = None
    plan_name: Optional[str] = None
    performed_by_name: Optional[str] = None
    performed_by_email: Optional[str] = None


class AllocationLogResource(BaseSchema):
    type: str = Field("port_allocation_log", description="Resource type")
    id: UUID
    attributes: AllocationLogAttributes


class AllocationLogCollectionResponse(JSONAPICollectionResponse):
    """Paged allocation log."""

    data: List[AllocationLogResource]


class ActionOption(BaseSchema):
    value: str
    label: str


class ActionListResponse(BaseSchema):
    """Actions present in the log, for filter drop-downs."""

    data: List[ActionOption]
