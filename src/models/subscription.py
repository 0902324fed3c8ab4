"""Subscription model: the external entity ports are bound to.

The subscription lifecycle is owned by the billing side of the portal; this
service only reads ``id``, ``status`` and ``customer_id`` and writes
``assigned_port_id`` and ``status``.
"""

from enum import Enum

from sqlalchemy import Column, ForeignKey, String, Uuid

from .base import BaseModel


class SubscriptionStatus(str, Enum):
    """Subscription statuses this service reads or writes."""
    ACTIVE = "ACTIVE"
    PENDING_ALLOCATION = "PENDING_ALLOCATION"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Subscription(BaseModel):
    """Customer subscription holding at most one port."""

    __tablename__ = "subscriptions"

    customer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    plan_id = Column(Uuid(as_uuid=True), ForeignKey("plans.id"), nullable=True)
    status = Column(String(30), default=SubscriptionStatus.ACTIVE.value, nullable=False)
    # Weak reference; the port side owns the foreign key
    assigned_port_id = Column(Uuid(as_uuid=True), nullable=True, unique=True)
