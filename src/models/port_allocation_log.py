"""Port allocation audit log model."""

import uuid
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, Index, String, Text, Uuid, event

from src.core.database import Base

from .base import utcnow


class AllocationAction(str, Enum):
    """Actions recorded in the allocation audit log."""
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    REASSIGNED = "REASSIGNED"
    RELEASED = "RELEASED"
    UNASSIGNED = "UNASSIGNED"
    DISABLED = "DISABLED"
    ENABLED = "ENABLED"
    RESERVED = "RESERVED"
    MADE_AVAILABLE = "MADE_AVAILABLE"
    STATUS_CHANGED = "STATUS_CHANGED"


class ImmutableLogError(Exception):
    """Raised when code tries to modify a written audit entry."""
    pass


class PortAllocationLog(Base):
    """
    Immutable record of one port state transition.

    Entries are append-only. ``port_id`` carries no foreign key so the
    history of a deleted port survives; ``performed_by`` is null for
    automatic (system) actions.
    """

    __tablename__ = "port_allocation_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    port_id = Column(Uuid(as_uuid=True), nullable=False, comment="Port the action applied to")
    subscription_id = Column(Uuid(as_uuid=True), nullable=True, comment="Subscription involved, if any")
    customer_id = Column(Uuid(as_uuid=True), nullable=True, comment="Customer owning the subscription")
    action = Column(String(30), nullable=False)
    performed_by = Column(Uuid(as_uuid=True), nullable=True, comment="Acting user; null for system actions")
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "action IN ('CREATED', 'ASSIGNED', 'REASSIGNED', 'RELEASED', 'UNASSIGNED', "
            "'DISABLED', 'ENABLED', 'RESERVED', 'MADE_AVAILABLE', 'STATUS_CHANGED')",
            name="valid_allocation_action",
        ),
        Index("idx_port_allocation_logs_port_id", "port_id"),
        Index("idx_port_allocation_logs_subscription_id", "subscription_id"),
        Index("idx_port_allocation_logs_customer_id", "customer_id"),
        Index("idx_port_allocation_logs_created_at", "created_at"),
    )

    def to_dict(self):
        """Convert log entry to dictionary."""
        return {
            "id": str(self.id),
            "port_id": str(self.port_id),
            "subscription_id": str(self.subscription_id) if self.subscription_id else None,
            "customer_id": str(self.customer_id) if self.customer_id else None,
            "action": self.action,
            "performed_by": str(self.performed_by) if self.performed_by else None,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<PortAllocationLog(port_id={self.port_id}, action={self.action})>"


@event.listens_for(PortAllocationLog, "before_update")
def _refuse_log_update(mapper, connection, target):
    raise ImmutableLogError(f"Allocation log entry {target.id} is append-only")


@event.listens_for(PortAllocationLog, "before_delete")
def _refuse_log_delete(mapper, connection, target):
    raise ImmutableLogError(f"Allocation log entry {target.id} cannot be deleted")
