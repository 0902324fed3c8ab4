"""Port model: a provisioned backend service instance."""

from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String, Text, Uuid

from .base import BaseModel


class PortStatus(str, Enum):
    """Lifecycle states of a port."""
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    ASSIGNED = "ASSIGNED"
    DISABLED = "DISABLED"


# Statuses an administrator may create a port with
CREATABLE_STATUSES = (PortStatus.AVAILABLE, PortStatus.RESERVED)

# Descriptor fields editable through a plain update; status and assignment
# fields only change through the allocation engine.
UPDATABLE_FIELDS = (
    "instance_url",
    "db_host",
    "db_name",
    "db_username",
    "db_password",
    "server_region",
    "notes",
    "setup_instructions",
)


class Port(BaseModel):
    """
    Provisioned backend instance, bound to at most one subscription.

    ``assigned_subscription_id`` is non-null exactly when the status is
    ASSIGNED, and mirrors ``Subscription.assigned_port_id``.
    """

    __tablename__ = "ports"
    __private_fields__ = ("db_password",)

    # Connection descriptor
    instance_url = Column(
        String(500),
        nullable=False,
        unique=True,
        comment="Public URL of the provisioned instance"
    )
    db_host = Column(String(255), comment="Database host of the instance")
    db_name = Column(String(255), comment="Database name of the instance")
    db_username = Column(String(255), comment="Database user of the instance")
    db_password = Column(String(255), comment="Database password of the instance")
    server_region = Column(String(100), comment="Hosting region")

    setup_instructions = Column(Text, comment="Free-text setup notes shown to the customer")
    notes = Column(Text, comment="Internal administrator notes")

    status = Column(
        String(20),
        default=PortStatus.AVAILABLE.value,
        nullable=False,
        comment="AVAILABLE, RESERVED, ASSIGNED or DISABLED"
    )
    assigned_subscription_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("subscriptions.id"),
        nullable=True,
        unique=True,
        comment="Subscription currently holding this port"
    )
    assigned_at = Column(DateTime(timezone=True), comment="When the current assignment was made")

    __table_args__ = (
        CheckConstraint(
            "status IN ('AVAILABLE', 'RESERVED', 'ASSIGNED', 'DISABLED')",
            name="valid_port_status",
        ),
        CheckConstraint(
            "(status = 'ASSIGNED') = (assigned_subscription_id IS NOT NULL)",
            name="assigned_port_has_subscription",
        ),
        Index("idx_ports_status_created_at", "status", "created_at"),
    )

    @property
    def is_assigned(self) -> bool:
        """Whether the port is currently bound to a subscription."""
        return self.status == PortStatus.ASSIGNED.value

    @property
    def is_available(self) -> bool:
        """Whether the port can be allocated."""
        return self.status == PortStatus.AVAILABLE.value
