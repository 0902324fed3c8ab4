"""Database models for the port allocation service."""

from .base import BaseModel, TimestampMixin
from .user import User
from .plan import Plan
from .subscription import Subscription, SubscriptionStatus
from .port import Port, PortStatus
from .port_allocation_log import AllocationAction, ImmutableLogError, PortAllocationLog

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "User",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "Port",
    "PortStatus",
    "AllocationAction",
    "ImmutableLogError",
    "PortAllocationLog",
]
