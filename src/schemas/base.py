"""Base Pydantic schemas following JSON:API specification."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    class Config:
        from_attributes = True
        populate_by_name = True
        str_strip_whitespace = True
        validate_assignment = True


class PaginationMeta(BaseSchema):
    """Pagination metadata for collection responses."""

    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")
    total_items: int = Field(description="Total number of items")
    total_pages: int = Field(description="Total number of pages")
    has_next: bool = Field(description="Whether there is a next page")
    has_prev: bool = Field(description="Whether there is a previous page")

    @classmethod
    def build(cls, page: int, per_page: int, total_items: int) -> "PaginationMeta":
        total_pages = (total_items + per_page - 1) // per_page if total_items else 0
        return cls(
            page=page,
            per_page=per_page,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class JSONAPIError(BaseSchema):
    """JSON:API error object."""

    id: Optional[str] = Field(None, description="Unique error identifier")
    status: Optional[str] = Field(None, description="HTTP status code")
    code: Optional[str] = Field(None, description="Application-specific error code")
    title: Optional[str] = Field(None, description="Short, human-readable summary")
    detail: Optional[str] = Field(None, description="Human-readable explanation")
    source: Optional[Dict[str, str]] = Field(
        None, description="References to the source of the error"
    )
    meta: Optional[Dict[str, Any]] = Field(
        None, description="Additional metadata about the error"
    )


class JSONAPIErrorResponse(BaseSchema):
    """JSON:API error response."""

    errors: List[JSONAPIError] = Field(description="Array of error objects")
    meta: Optional[Dict[str, Any]] = Field(
        None, description="Metadata about the error response"
    )


class JSONAPIResponse(BaseSchema):
    """Base JSON:API response for single resources."""

    data: Optional[Dict[str, Any]] = Field(None, description="Primary data")
    meta: Optional[Dict[str, Any]] = Field(None, description="Metadata")
    links: Optional[Dict[str, str]] = Field(None, description="Links")


class JSONAPICollectionResponse(BaseSchema):
    """Base JSON:API response for resource collections."""

    data: List[Dict[str, Any]] = Field(description="Primary data array")
    meta: Optional[Dict[str, Any]] = Field(None, description="Metadata")
    links: Optional[Dict[str, str]] = Field(None, description="Links")


class HealthCheckResponse(BaseSchema):
    """Health check response schema."""

    status: str = Field(description="Service status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(description="Health check timestamp")
    version: str = Field(description="Service version")
    environment: str = Field(description="Environment name")

    dependencies: Dict[str, Dict[str, Any]] = Field(
        description="Dependency health status"
    )

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid_statuses = {"healthy", "degraded", "unhealthy"}
        if v not in valid_statuses:
            raise ValueError(f"Status must be one of: {valid_statuses}")
        return v
