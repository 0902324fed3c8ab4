"""Port-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import Field, field_validator

from src.models.port import PortStatus

from .base import BaseSchema, JSONAPICollectionResponse, JSONAPIResponse


class PortAttributes(BaseSchema):
    """Attributes of a port resource. The database password is never exposed."""

    instance_url: str = Field(description="Public URL of the provisioned instance")
    db_host: Optional[str] = Field(None, description="Database host")
    db_name: Optional[str] = Field(None, description="Database name")
    db_username: Optional[str] = Field(None, description="Database user")
    server_region: Optional[str] = Field(None, description="Hosting region")
    setup_instructions: Optional[str] = Field(None, description="Setup notes shown to the customer")
    notes: Optional[str] = Field(None, description="Internal administrator notes")
    status: PortStatus = Field(description="AVAILABLE, RESERVED, ASSIGNED or DISABLED")
    assigned_subscription_id: Optional[UUID] = Field(None, description="Subscription holding the port")
    assigned_at: Optional[datetime] = Field(None, description="When the current assignment was made")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class PortResource(BaseSchema):
    """JSON:API port resource."""

    type: str = Field("port", description="Resource type")
    id: UUID = Field(description="Port identifier")
    attributes: PortAttributes

    @classmethod
    def from_model(cls, port) -> "PortResource":
        return cls(
            id=port.id,
            attributes=PortAttributes.model_validate(port),
        )


class PortCreateAttributes(BaseSchema):
    """Attributes accepted when creating a port."""

    instance_url: str = Field(min_length=1, max_length=500, description="Public URL of the instance")
    db_host: Optional[str] = Field(None, max_length=255)
    db_name: Optional[str] = Field(None, max_length=255)
    db_username: Optional[str] = Field(None, max_length=255)
    db_password: Optional[str] = Field(None, max_length=255)
    server_region: Optional[str] = Field(None, max_length=100)
    setup_instructions: Optional[str] = None
    notes: Optional[str] = None
    status: PortStatus = Field(PortStatus.AVAILABLE, description="AVAILABLE or RESERVED")


class PortUpdateAttributes(BaseSchema):
    """Descriptor fields accepted when updating a port."""

    instance_url: Optional[str] = Field(None, min_length=1, max_length=500)
    db_host: Optional[str] = Field(None, max_length=255)
    db_name: Optional[str] = Field(None, max_length=255)
    db_username: Optional[str] = Field(None, max_length=255)
    db_password: Optional[str] = Field(None, max_length=255)
    server_region: Optional[str] = Field(None, max_length=100)
    setup_instructions: Optional[str] = None
    notes: Optional[str] = None


class PortCreateData(BaseSchema):
    type: str = Field("port", description="Resource type")
    attributes: PortCreateAttributes

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v != "port":
            raise ValueError("Resource type must be 'port'")
        return v


class PortUpdateData(BaseSchema):
    type: str = Field("port", description="Resource type")
    attributes: PortUpdateAttributes


class PortCreateRequest(BaseSchema):
    """Request to create a port."""

    data: PortCreateData


class PortUpdateRequest(BaseSchema):
    """Request to update port descriptor fields."""

    data: PortUpdateData


class PortStatusChangeRequest(BaseSchema):
    """Request an administrative status change."""

    status: PortStatus = Field(description="Target status")
    notes: Optional[str] = Field(None, max_length=1000, description="Audit note")


class PortAssignRequest(BaseSchema):
    """Manually assign a port to a subscription."""

    subscription_id: UUID = Field(description="Subscription to receive the port")


class PortTransferRequest(BaseSchema):
    """Move an assigned port to another subscription."""

    subscription_id: UUID = Field(description="Subscription taking over the port")


class PortResponse(JSONAPIResponse):
    """Single port response."""

    data: PortResource


class PortCollectionResponse(JSONAPICollectionResponse):
    """Port collection response."""

    data: List[PortResource]


class PortImportResponse(BaseSchema):
    """Outcome of a bulk CSV import."""

    data: List[PortResource] = Field(description="Created ports")
    meta: Dict[str, Any] = Field(description="imported, failed, errors and parse_errors")


class PortAvailabilityResponse(BaseSchema):
    """Advisory availability of the port pool."""

    available: bool = Field(description="Whether at least one port is AVAILABLE")
    available_count: int = Field(description="Number of AVAILABLE ports")
