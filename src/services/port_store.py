"""Port store: persistence and row locking for the port pool.

Every mutating method here runs inside the caller's transaction; the store
never commits. Callers that need mutual exclusion must lock a row with
``lock_and_fetch_one_available``, ``lock_by_id`` or ``lock_many`` before
calling ``update_status`` on it.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.settings import get_settings
from src.models.port import UPDATABLE_FIELDS, Port, PortStatus
from src.models.base import utcnow
from src.services.business_rules import AllocationErrorKind

logger = logging.getLogger(__name__)


class PortStoreError(Exception):
    """Base exception for port store errors."""

    def __init__(self, kind: AllocationErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class PortStore:
    """Persisted port rows with locked reads and guarded writes."""

    def __init__(self, db_session: AsyncSession, skip_locked: Optional[bool] = None):
        self.db = db_session
        if skip_locked is None:
            skip_locked = get_settings().port_lock_skip_locked
        self.skip_locked = skip_locked

    # Selection

    def _available_query(self):
        return (
            select(Port)
            .where(Port.status == PortStatus.AVAILABLE.value)
            .order_by(Port.created_at.asc(), Port.id.asc())
        )

    async def find_available(self, limit: int = 1) -> List[Port]:
        """Up to ``limit`` AVAILABLE ports, oldest first. Unlocked."""
        result = await self.db.execute(self._available_query().limit(limit))
        return list(result.scalars().all())

    async def lock_and_fetch_one_available(self) -> Optional[Port]:
        """
        Select one AVAILABLE port and hold an exclusive row lock on it.

        The lock is held until the enclosing transaction ends. Competing
        transactions block on the same row (or skip it in skip-locked mode).
        Returns None when no AVAILABLE port exists.
        """
        query = (
            self._available_query()
            .limit(1)
            .with_for_update(skip_locked=self.skip_locked)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        port = result.scalars().first()
        if port is not None:
            logger.debug(f"Locked available port {port.id}")
        return port

    async def lock_by_id(self, port_id: uuid.UUID) -> Optional[Port]:
        """Fetch one port by id under an exclusive row lock."""
        query = (
            select(Port)
            .where(Port.id == port_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def lock_many(self, port_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Port]:
        """Lock several ports at once, always in id order to avoid deadlocks."""
        query = (
            select(Port)
            .where(Port.id.in_(list(port_ids)))
            .order_by(Port.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return {port.id: port for port in result.scalars().all()}

    # Guarded writes

    async def update_status(
        self,
        port_id: uuid.UUID,
        new_status: PortStatus,
        assigned_subscription_id: Optional[uuid.UUID] = None,
        expected_status: Optional[PortStatus] = None,
    ) -> bool:
        """
        Conditionally move a locked port to ``new_status``.

        The assignment reference and ``assigned_at`` are set when moving to
        ASSIGNED and cleared otherwise. When ``expected_status`` is given the
        row only changes if it still has that status.

        Returns:
            bool: True if the row was updated
        """
        now = utcnow()
        assigned = new_status == PortStatus.ASSIGNED
        if assigned and assigned_subscription_id is None:
            raise ValueError("An ASSIGNED port requires a subscription id")

        stmt = (
            update(Port)
            .where(Port.id == port_id)
            .values(
                status=new_status.value,
                assigned_subscription_id=assigned_subscription_id if assigned else None,
                assigned_at=now if assigned else None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if expected_status is not None:
            stmt = stmt.where(Port.status == expected_status.value)

        result = await self.db.execute(stmt)
        changed = result.rowcount == 1
        if not changed:
            logger.info(
                f"Conditional update of port {port_id} to {new_status.value} matched no row"
            )
        return changed

    async def refresh(self, port: Port) -> Port:
        """Reload a port after a core-level update."""
        await self.db.refresh(port)
        return port

    # CRUD

    async def create(self, port_data: Dict[str, Any]) -> Port:
        """Insert a new port and flush to obtain its id."""
        port = Port(**port_data)
        if port.status is None:
            port.status = PortStatus.AVAILABLE.value
        self.db.add(port)
        await self.db.flush()
        logger.info(f"Created port {port.id} ({port.instance_url})")
        return port

    async def update(self, port_id: uuid.UUID, fields: Dict[str, Any]) -> Optional[Port]:
        """Update descriptor fields; status and assignment fields are ignored."""
        port = await self.find_by_id(port_id)
        if port is None:
            return None

        allowed = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        ignored = set(fields) - set(allowed)
        if ignored:
            logger.warning(f"Ignoring non-updatable port fields: {sorted(ignored)}")

        port.update_from_dict(allowed)
        port.updated_at = utcnow()
        await self.db.flush()
        return port

    async def find_by_id(self, port_id: uuid.UUID) -> Optional[Port]:
        """Get port by id."""
        return await self.db.get(Port, port_id)

    def _filtered(self, query, filters: Dict[str, Any]):
        if filters.get("status"):
            query = query.where(Port.status == filters["status"])
        if filters.get("assigned_subscription_id"):
            query = query.where(Port.assigned_subscription_id == filters["assigned_subscription_id"])
        if filters.get("server_region"):
            query = query.where(Port.server_region == filters["server_region"])
        if filters.get("search"):
            term = f"%{filters['search']}%"
            query = query.where(
                Port.instance_url.ilike(term) | Port.db_name.ilike(term) | Port.db_host.ilike(term)
            )
        return query

    async def find_all(
        self, filters: Optional[Dict[str, Any]] = None, limit: int = 100, offset: int = 0
    ) -> List[Port]:
        """List ports newest first with optional filters."""
        query = self._filtered(select(Port), filters or {})
        query = query.order_by(Port.created_at.desc(), Port.id.asc()).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_all(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count ports matching filters."""
        query = self._filtered(select(func.count(Port.id)), filters or {})
        result = await self.db.execute(query)
        return result.scalar_one()

    async def count_available(self) -> int:
        """Count AVAILABLE ports. Unlocked and advisory."""
        result = await self.db.execute(
            select(func.count(Port.id)).where(Port.status == PortStatus.AVAILABLE.value)
        )
        return result.scalar_one()

    async def instance_url_exists(
        self, instance_url: str, exclude_id: Optional[uuid.UUID] = None
    ) -> bool:
        """Check whether another port already uses ``instance_url``."""
        query = select(func.count(Port.id)).where(Port.instance_url == instance_url)
        if exclude_id is not None:
            query = query.where(Port.id != exclude_id)
        result = await self.db.execute(query)
        return result.scalar_one() > 0

    async def delete(self, port_id: uuid.UUID) -> None:
        """
        Hard delete a port unless it is ASSIGNED.

        Raises:
            PortStoreError: NOT_FOUND if absent, PORT_IN_USE if assigned
        """
        port = await self.lock_by_id(port_id)
        if port is None:
            raise PortStoreError(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")
        if port.is_assigned:
            raise PortStoreError(
                AllocationErrorKind.PORT_IN_USE,
                "Cannot delete port that is currently assigned to a subscription",
            )

        await self.db.execute(
            delete(Port)
            .where(Port.id == port_id, Port.status != PortStatus.ASSIGNED.value)
            .execution_options(synchronize_session=False)
        )
        self.db.expunge(port)
        logger.info(f"Deleted port {port_id}")
