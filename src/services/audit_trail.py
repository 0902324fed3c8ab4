"""Audit trail: append-only allocation log writer and reporting reader."""

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from src.models.plan import Plan
from src.models.port import Port
from src.models.port_allocation_log import AllocationAction, PortAllocationLog
from src.models.subscription import Subscription
from src.models.user import User

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]


def _as_datetime(value: DateLike, end_of_day: bool = False) -> datetime:
    """Normalise a date filter; a plain date covers the whole day."""
    if isinstance(value, str):
        value = date.fromisoformat(value) if len(value) == 10 else datetime.fromisoformat(value)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if end_of_day:
        value = value + timedelta(days=1)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


class AuditTrail:
    """
    Writer and reader for ``port_allocation_logs``.

    ``record`` only adds the entry to the caller's session, so the entry
    commits or rolls back together with the state change it describes.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def record(
        self,
        action: AllocationAction,
        port_id: uuid.UUID,
        subscription_id: Optional[uuid.UUID] = None,
        customer_id: Optional[uuid.UUID] = None,
        performed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> PortAllocationLog:
        """Append an entry to the current transaction."""
        entry = PortAllocationLog(
            port_id=port_id,
            subscription_id=subscription_id,
            customer_id=customer_id,
            action=AllocationAction(action).value,
            performed_by=performed_by,
            notes=notes,
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info(
            f"Recorded {entry.action} for port {port_id}"
            + (f" / subscription {subscription_id}" if subscription_id else "")
        )
        return entry

    # Simple lookups

    async def _find_by(self, column, value, limit: int, offset: int) -> List[PortAllocationLog]:
        result = await self.db.execute(
            select(PortAllocationLog)
            .where(column == value)
            .order_by(PortAllocationLog.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def find_by_port(self, port_id: uuid.UUID, limit: int = 100, offset: int = 0) -> List[PortAllocationLog]:
        """Entries for one port, newest first."""
        return await self._find_by(PortAllocationLog.port_id, port_id, limit, offset)

    async def find_by_subscription(
        self, subscription_id: uuid.UUID, limit: int = 100, offset: int = 0
    ) -> List[PortAllocationLog]:
        """Entries for one subscription, newest first."""
        return await self._find_by(PortAllocationLog.subscription_id, subscription_id, limit, offset)

    async def find_by_customer(
        self, customer_id: uuid.UUID, limit: int = 100, offset: int = 0
    ) -> List[PortAllocationLog]:
        """Entries for one customer, newest first."""
        return await self._find_by(PortAllocationLog.customer_id, customer_id, limit, offset)

    async def count_by_action(self, action: AllocationAction) -> int:
        """Number of entries with a given action."""
        result = await self.db.execute(
            select(func.count(PortAllocationLog.id)).where(
                PortAllocationLog.action == AllocationAction(action).value
            )
        )
        return result.scalar_one()

    async def get_distinct_actions(self) -> List[str]:
        """Actions present in the log, alphabetically."""
        result = await self.db.execute(
            select(PortAllocationLog.action).distinct().order_by(PortAllocationLog.action)
        )
        return list(result.scalars().all())

    # Reporting

    def _relations_query(self, columns):
        customer = aliased(User, name="customer")
        performer = aliased(User, name="performer")
        query = (
            select(*columns(customer, performer))
            .select_from(PortAllocationLog)
            .outerjoin(Port, Port.id == PortAllocationLog.port_id)
            .outerjoin(Subscription, Subscription.id == PortAllocationLog.subscription_id)
            .outerjoin(customer, customer.id == PortAllocationLog.customer_id)
            .outerjoin(Plan, Plan.id == Subscription.plan_id)
            .outerjoin(performer, performer.id == PortAllocationLog.performed_by)
        )
        return query, customer, performer

    def _apply_filters(self, query, filters: Dict[str, Any], customer, performer):
        if filters.get("action"):
            query = query.where(PortAllocationLog.action == filters["action"])
        if filters.get("plan_id"):
            query = query.where(Subscription.plan_id == filters["plan_id"])
        if filters.get("customer_id"):
            query = query.where(PortAllocationLog.customer_id == filters["customer_id"])
        if filters.get("port_id"):
            query = query.where(PortAllocationLog.port_id == filters["port_id"])
        if filters.get("date_from"):
            query = query.where(PortAllocationLog.created_at >= _as_datetime(filters["date_from"]))
        if filters.get("date_to"):
            query = query.where(
                PortAllocationLog.created_at < _as_datetime(filters["date_to"], end_of_day=True)
            )
        if filters.get("search"):
            term = f"%{filters['search']}%"
            query = query.where(or_(
                Port.instance_url.ilike(term),
                customer.name.ilike(term),
                customer.email.ilike(term),
                Plan.name.ilike(term),
                performer.name.ilike(term),
                PortAllocationLog.notes.ilike(term),
            ))
        return query

    async def find_all_with_relations(
        self, filters: Optional[Dict[str, Any]] = None, limit: int = 100, offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Log entries joined to port, subscription, customer, plan and performer.

        Related values are None when the related row no longer exists.

        Args:
            filters: action, plan_id, customer_id, port_id, date_from, date_to, search
            limit: Maximum rows
            offset: Rows to skip

        Returns:
            List of flat dictionaries, newest first
        """
        def columns(customer, performer):
            return (
                PortAllocationLog,
                Port.instance_url.label("port_instance_url"),
                Port.status.label("port_status"),
                customer.name.label("customer_name"),
                customer.email.label("customer_email"),
                Subscription.plan_id.label("plan_id"),
                Plan.name.label("plan_name"),
                performer.name.label("performed_by_name"),
                performer.email.label("performed_by_email"),
            )

        query, customer, performer = self._relations_query(columns)
        query = self._apply_filters(query, filters or {}, customer, performer)
        query = (
            query.order_by(PortAllocationLog.created_at.desc(), PortAllocationLog.id.desc())
            .limit(limit)
            .offset(offset)
        )

        result = await self.db.execute(query)
        rows = []
        for row in result.all():
            entry = row[0]
            data = {
                "id": entry.id,
                "port_id": entry.port_id,
                "subscription_id": entry.subscription_id,
                "customer_id": entry.customer_id,
                "action": entry.action,
                "performed_by": entry.performed_by,
                "notes": entry.notes,
                "created_at": entry.created_at,
                "port_instance_url": row.port_instance_url,
                "port_status": row.port_status,
                "customer_name": row.customer_name,
                "customer_email": row.customer_email,
                "plan_id": row.plan_id,
                "plan_name": row.plan_name,
                "performed_by_name": row.performed_by_name,
                "performed_by_email": row.performed_by_email,
            }
            rows.append(data)
        return rows

    async def count_all_with_relations(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Total rows ``find_all_with_relations`` would return without paging."""
        query, customer, performer = self._relations_query(
            lambda customer, performer: (func.count(PortAllocationLog.id),)
        )
        query = self._apply_filters(query, filters or {}, customer, performer)
        result = await self.db.execute(query)
        return result.scalar_one()
