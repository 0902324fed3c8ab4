"""Subscription gateway: the narrow surface this service uses on subscriptions."""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.base import utcnow
from src.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class SubscriptionGateway:
    """Reads subscription identity and writes ``assigned_port_id`` / ``status``."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        """Get subscription by id."""
        return await self.db.get(Subscription, subscription_id)

    async def lock(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        """Fetch a subscription under an exclusive row lock."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_assigned_port(
        self,
        subscription_id: uuid.UUID,
        port_id: Optional[uuid.UUID],
        expected_port_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """
        Point the subscription at ``port_id`` (or clear it with None).

        The write only applies while the subscription still references
        ``expected_port_id``, so a concurrent writer is detected.

        Returns:
            bool: True if the row was updated
        """
        stmt = update(Subscription).where(Subscription.id == subscription_id)
        if expected_port_id is None:
            stmt = stmt.where(Subscription.assigned_port_id.is_(None))
        else:
            stmt = stmt.where(Subscription.assigned_port_id == expected_port_id)
        stmt = stmt.values(assigned_port_id=port_id, updated_at=utcnow()).execution_options(
            synchronize_session=False
        )

        result = await self.db.execute(stmt)
        changed = result.rowcount == 1
        if not changed:
            logger.warning(
                f"Subscription {subscription_id} no longer references port {expected_port_id}"
            )
        return changed

    async def set_status(
        self,
        subscription_id: uuid.UUID,
        status: SubscriptionStatus,
        expected_status: Optional[SubscriptionStatus] = None,
    ) -> bool:
        """Set the subscription status, optionally only from ``expected_status``."""
        stmt = update(Subscription).where(Subscription.id == subscription_id)
        if expected_status is not None:
            stmt = stmt.where(Subscription.status == expected_status.value)
        stmt = stmt.values(status=status.value, updated_at=utcnow()).execution_options(
            synchronize_session=False
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def find_pending(self, limit: int = 100) -> List[Subscription]:
        """Subscriptions waiting for a port, oldest first."""
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.PENDING_ALLOCATION.value,
                Subscription.assigned_port_id.is_(None),
            )
            .order_by(Subscription.created_at.asc(), Subscription.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_by_port(self, port_id: uuid.UUID) -> Optional[Subscription]:
        """The subscription whose ``assigned_port_id`` points at a port, if any."""
        result = await self.db.execute(
            select(Subscription).where(Subscription.assigned_port_id == port_id)
        )
        return result.scalar_one_or_none()
