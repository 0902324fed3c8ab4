"""Allocation engine: the port allocation state machine.

Every public operation runs in its own session and transaction taken from
the session factory. Inside the transaction the engine locks the rows it
touches, mutates the port and the subscription reference, and writes the
audit entry; either all of it commits or none of it does. Expected business
outcomes come back as ``AllocationResult`` values. Database failures other
than lock-wait timeouts propagate after rollback.

Lock order is always subscription first, then ports in id order.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.database import apply_lock_timeout, is_lock_timeout
from src.core.settings import Settings, get_settings
from src.models.port import UPDATABLE_FIELDS, Port, PortStatus
from src.models.port_allocation_log import AllocationAction
from src.models.subscription import Subscription, SubscriptionStatus
from src.services.audit_trail import AuditTrail
from src.services.business_rules import (
    AllocationErrorKind,
    AllocationResult,
    PortTransitionRules,
    PortValidator,
)
from src.services.events import EventPublisher, EventType
from src.services.port_store import PortStore, PortStoreError
from src.services.subscription_gateway import SubscriptionGateway

logger = logging.getLogger(__name__)

# Subscription statuses that may hold a port
ALLOCATABLE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PENDING_ALLOCATION.value,
)


class _Rollback(Exception):
    """Carries a failed result out of a transaction so it rolls back."""

    def __init__(self, result: AllocationResult):
        super().__init__(result.message)
        self.result = result


@dataclass
class _Tx:
    """Per-transaction collaborators."""
    session: AsyncSession
    ports: PortStore
    audit: AuditTrail
    subscriptions: SubscriptionGateway


@dataclass
class BulkImportSummary:
    """Outcome of a bulk port import."""
    imported: int = 0
    failed: int = 0
    imported_ports: List[Port] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)


class AllocationEngine:
    """
    Stateless orchestrator of port allocation, release, reassignment and
    administrative status changes.

    The session factory must be configured with ``expire_on_commit=False``
    so returned ports stay readable after their transaction ends.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.events = event_publisher
        self.settings = settings or get_settings()
        self.validator = PortValidator()

    # Transaction plumbing

    @asynccontextmanager
    async def _transaction(self):
        async with self.session_factory() as session:
            async with session.begin():
                await apply_lock_timeout(session, self.settings.port_lock_timeout_ms)
                yield _Tx(
                    session=session,
                    ports=PortStore(session, skip_locked=self.settings.port_lock_skip_locked),
                    audit=AuditTrail(session),
                    subscriptions=SubscriptionGateway(session),
                )

    async def _run(
        self,
        operation: str,
        work: Callable[[_Tx], Awaitable[AllocationResult]],
        integrity_error: AllocationErrorKind = AllocationErrorKind.INVALID_STATE_TRANSITION,
    ) -> AllocationResult:
        """Run ``work`` in one transaction; a failed result rolls everything back."""
        try:
            async with self._transaction() as tx:
                result = await work(tx)
                if not result.success:
                    raise _Rollback(result)
            return result
        except _Rollback as rollback:
            logger.info(f"{operation} rolled back: {rollback.result.error.value} - {rollback.result.message}")
            return rollback.result
        except IntegrityError as e:
            logger.warning(f"{operation} rejected by a database constraint: {e.orig}")
            return AllocationResult.fail(integrity_error, "Conflicting concurrent change; nothing was applied")
        except DBAPIError as e:
            if is_lock_timeout(e):
                logger.warning(f"{operation} timed out waiting for a row lock")
                return AllocationResult.fail(
                    AllocationErrorKind.LOCK_TIMEOUT,
                    "Timed out waiting for a port lock; retry the request",
                )
            logger.error(f"{operation} failed: {e}")
            raise

    async def _publish(self, event_type: EventType, port: Port, data: Dict[str, Any], user_id=None) -> None:
        if self.events is None:
            return
        await self.events.publish_port_event(event_type, port.id, data, user_id=user_id)

    @staticmethod
    def _subscription_error(subscription: Optional[Subscription], subscription_id) -> Optional[AllocationResult]:
        if subscription is None:
            return AllocationResult.fail(
                AllocationErrorKind.NOT_FOUND, f"Subscription {subscription_id} not found"
            )
        if subscription.status not in ALLOCATABLE_SUBSCRIPTION_STATUSES:
            return AllocationResult.fail(
                AllocationErrorKind.INVALID_STATE_TRANSITION,
                f"Subscription status {subscription.status} cannot hold a port",
            )
        return None

    # Allocation

    async def _mark_pending(self, subscription_id: uuid.UUID) -> AllocationResult:
        """Commit the PENDING_ALLOCATION marker ahead of the allocation transaction."""
        async def work(tx: _Tx) -> AllocationResult:
            subscription = await tx.subscriptions.get(subscription_id)
            if (
                subscription is not None
                and subscription.assigned_port_id is None
                and subscription.status == SubscriptionStatus.ACTIVE.value
            ):
                await tx.subscriptions.set_status(
                    subscription_id,
                    SubscriptionStatus.PENDING_ALLOCATION,
                    expected_status=SubscriptionStatus.ACTIVE,
                )
                logger.info(f"Subscription {subscription_id} marked PENDING_ALLOCATION")
            return AllocationResult.ok()

        return await self._run("mark_pending", work)

    async def _claim_available_port(self, tx: _Tx, subscription_id: uuid.UUID) -> Optional[Port]:
        """Lock one AVAILABLE port and move it to ASSIGNED, retrying lost races."""
        attempts = self.settings.allocation_max_attempts
        for attempt in range(1, attempts + 1):
            port = await tx.ports.lock_and_fetch_one_available()
            if port is None:
                # A blocked FOR UPDATE ... LIMIT 1 can come back empty after the
                # row it waited on was taken while other ports remain free.
                if attempt < attempts and await tx.ports.count_available() > 0:
                    continue
                return None

            claimed = await tx.ports.update_status(
                port.id,
                PortStatus.ASSIGNED,
                assigned_subscription_id=subscription_id,
                expected_status=PortStatus.AVAILABLE,
            )
            if claimed:
                return await tx.ports.refresh(port)
            logger.warning(
                f"Port {port.id} was taken concurrently (attempt {attempt}/{attempts})"
            )
        return None

    async def allocate_port_to_subscription(
        self, subscription_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None
    ) -> AllocationResult:
        """
        Bind one AVAILABLE port to a subscription.

        The subscription is first marked PENDING_ALLOCATION in its own
        transaction. The allocation itself locks the subscription and one
        available port, assigns the port, writes the ASSIGNED audit entry and
        the reciprocal subscription reference, and commits all of it at once.

        Args:
            subscription_id: Subscription to allocate for
            performed_by: Acting admin, None for automatic allocation

        Returns:
            AllocationResult: ``port`` on success; NO_AVAILABLE_PORTS, NOT_FOUND,
            INVALID_STATE_TRANSITION or LOCK_TIMEOUT otherwise
        """
        logger.info(f"Allocating port for subscription {subscription_id}")

        marked = await self._mark_pending(subscription_id)
        if not marked.success:
            return marked

        customer_ids: Dict[str, Any] = {}

        async def work(tx: _Tx) -> AllocationResult:
            subscription = await tx.subscriptions.lock(subscription_id)
            error = self._subscription_error(subscription, subscription_id)
            if error:
                return error
            customer_ids["customer_id"] = subscription.customer_id
            if subscription.assigned_port_id is not None:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription already has an assigned port",
                    subscription_id=subscription_id,
                )

            port = await self._claim_available_port(tx, subscription.id)
            if port is None:
                return AllocationResult.fail(
                    AllocationErrorKind.NO_AVAILABLE_PORTS,
                    "No available ports. Subscription marked as PENDING_ALLOCATION.",
                    subscription_id=subscription_id,
                )

            await tx.audit.record(
                AllocationAction.ASSIGNED,
                port_id=port.id,
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                performed_by=performed_by,
            )

            if not await tx.subscriptions.set_assigned_port(subscription.id, port.id):
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription was assigned a port concurrently",
                    subscription_id=subscription_id,
                )
            await tx.subscriptions.set_status(
                subscription.id,
                SubscriptionStatus.ACTIVE,
                expected_status=SubscriptionStatus.PENDING_ALLOCATION,
            )
            return AllocationResult.ok(port, subscription_id=subscription.id)

        result = await self._run("allocate_port_to_subscription", work)

        if result.success:
            logger.info(f"Assigned port {result.port.id} to subscription {subscription_id}")
            await self._publish(
                EventType.PORT_ASSIGNED,
                result.port,
                {"subscription_id": str(subscription_id), "instance_url": result.port.instance_url},
                user_id=performed_by,
            )
        elif result.error == AllocationErrorKind.NO_AVAILABLE_PORTS and self.events is not None:
            await self.events.publish_pending_allocation(subscription_id, customer_ids.get("customer_id"))
        return result

    async def allocate_pending_subscriptions(self, limit: int = 100) -> List[AllocationResult]:
        """Retry allocation for waiting subscriptions, oldest first, until the pool runs dry."""
        async with self.session_factory() as session:
            pending = await SubscriptionGateway(session).find_pending(limit)
            pending_ids = [subscription.id for subscription in pending]

        results = []
        for subscription_id in pending_ids:
            result = await self.allocate_port_to_subscription(subscription_id)
            results.append(result)
            if result.error == AllocationErrorKind.NO_AVAILABLE_PORTS:
                break
        logger.info(
            f"Processed {len(results)} pending subscriptions, "
            f"{sum(1 for r in results if r.success)} allocated"
        )
        return results

    async def assign_port(
        self,
        port_id: uuid.UUID,
        subscription_id: uuid.UUID,
        performed_by: Optional[uuid.UUID] = None,
    ) -> AllocationResult:
        """Manually allot a specific AVAILABLE or RESERVED port to a subscription."""
        async def work(tx: _Tx) -> AllocationResult:
            subscription = await tx.subscriptions.lock(subscription_id)
            error = self._subscription_error(subscription, subscription_id)
            if error:
                return error
            if subscription.assigned_port_id is not None:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription already has an assigned port",
                )

            port = await tx.ports.lock_by_id(port_id)
            if port is None:
                return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")
            if port.is_assigned:
                return AllocationResult.fail(
                    AllocationErrorKind.PORT_IN_USE, "Port is already assigned to a subscription"
                )
            if port.status not in (PortStatus.AVAILABLE.value, PortStatus.RESERVED.value):
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Cannot assign a {port.status} port",
                )

            await tx.ports.update_status(
                port.id,
                PortStatus.ASSIGNED,
                assigned_subscription_id=subscription.id,
                expected_status=PortStatus(port.status),
            )
            await tx.audit.record(
                AllocationAction.ASSIGNED,
                port_id=port.id,
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                performed_by=performed_by,
                notes="Assigned manually",
            )
            if not await tx.subscriptions.set_assigned_port(subscription.id, port.id):
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription was assigned a port concurrently",
                )
            await tx.subscriptions.set_status(
                subscription.id,
                SubscriptionStatus.ACTIVE,
                expected_status=SubscriptionStatus.PENDING_ALLOCATION,
            )
            return AllocationResult.ok(await tx.ports.refresh(port), subscription_id=subscription.id)

        result = await self._run("assign_port", work)
        if result.success:
            await self._publish(
                EventType.PORT_ASSIGNED,
                result.port,
                {"subscription_id": str(subscription_id), "manual": True},
                user_id=performed_by,
            )
        return result

    # Release

    async def _release(
        self, tx: _Tx, subscription: Subscription, port: Port, performed_by, notes=None
    ) -> AllocationResult:
        if port.assigned_subscription_id != subscription.id:
            return AllocationResult.fail(
                AllocationErrorKind.INVALID_STATE_TRANSITION,
                f"Port {port.id} is not assigned to subscription {subscription.id}",
            )
        released = await tx.ports.update_status(
            port.id, PortStatus.AVAILABLE, expected_status=PortStatus.ASSIGNED
        )
        if not released:
            return AllocationResult.fail(
                AllocationErrorKind.INVALID_STATE_TRANSITION, f"Port {port.id} is no longer assigned"
            )
        if not await tx.subscriptions.set_assigned_port(subscription.id, None, expected_port_id=port.id):
            return AllocationResult.fail(
                AllocationErrorKind.INVALID_STATE_TRANSITION,
                f"Subscription {subscription.id} no longer references port {port.id}",
            )
        await tx.audit.record(
            AllocationAction.RELEASED,
            port_id=port.id,
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            performed_by=performed_by,
            notes=notes,
        )
        return AllocationResult.ok(await tx.ports.refresh(port), subscription_id=subscription.id)

    async def release_port_result(
        self, subscription_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None
    ) -> AllocationResult:
        """
        Release the port held by a subscription, with the structured outcome.

        A subscription without a port is a successful no-op (``port`` is None).
        """
        async def work(tx: _Tx) -> AllocationResult:
            subscription = await tx.subscriptions.lock(subscription_id)
            if subscription is None:
                return AllocationResult.fail(
                    AllocationErrorKind.NOT_FOUND, f"Subscription {subscription_id} not found"
                )
            if subscription.assigned_port_id is None:
                return AllocationResult.ok(None, subscription_id=subscription_id, message="No port assigned")

            port = await tx.ports.lock_by_id(subscription.assigned_port_id)
            if port is None:
                return AllocationResult.fail(
                    AllocationErrorKind.NOT_FOUND,
                    f"Port {subscription.assigned_port_id} referenced by subscription not found",
                )
            return await self._release(tx, subscription, port, performed_by)

        result = await self._run("release_port", work)
        if result.success and result.port is not None:
            logger.info(f"Released port {result.port.id} from subscription {subscription_id}")
            await self._publish(
                EventType.PORT_RELEASED,
                result.port,
                {"subscription_id": str(subscription_id)},
                user_id=performed_by,
            )
        return result

    async def release_port(
        self, subscription_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None
    ) -> bool:
        """Release the subscription's port. True on success or when there was nothing to release."""
        result = await self.release_port_result(subscription_id, performed_by)
        if not result.success:
            logger.warning(f"Release for subscription {subscription_id} failed: {result.message}")
        return result.success

    async def release_port_by_id(
        self, port_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None
    ) -> AllocationResult:
        """Release an ASSIGNED port from whichever subscription holds it."""
        async with self.session_factory() as session:
            port = await PortStore(session).find_by_id(port_id)
            subscription_id = port.assigned_subscription_id if port else None
            status = port.status if port else None

        if port is None:
            return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")
        if status != PortStatus.ASSIGNED.value or subscription_id is None:
            return AllocationResult.fail(
                AllocationErrorKind.INVALID_STATE_TRANSITION, f"Port {port_id} is not assigned"
            )

        async def work(tx: _Tx) -> AllocationResult:
            subscription = await tx.subscriptions.lock(subscription_id)
            locked_port = await tx.ports.lock_by_id(port_id)
            if locked_port is None:
                return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")
            if subscription is None:
                return AllocationResult.fail(
                    AllocationErrorKind.NOT_FOUND, f"Subscription {subscription_id} not found"
                )
            return await self._release(tx, subscription, locked_port, performed_by, notes="Released by admin")

        result = await self._run("release_port_by_id", work)
        if result.success:
            await self._publish(
                EventType.PORT_RELEASED,
                result.port,
                {"subscription_id": str(subscription_id)},
                user_id=performed_by,
            )
        return result

    async def release_stale_link(
        self, port_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None
    ) -> AllocationResult:
        """
        Clear a subscription that still points at a port not assigned to it.

        Repairs a one-sided reference. When the port really is assigned to
        the subscription the link is consistent and ``release_port_by_id``
        must be used instead.
        """
        async with self.session_factory() as session:
            linked = await SubscriptionGateway(session).find_by_port(port_id)
            subscription_id = linked.id if linked else None

        if subscription_id is None:
            return AllocationResult.fail(
                AllocationErrorKind.NOT_FOUND, f"No subscription references port {port_id}"
            )

        async def work(tx: _Tx) -> AllocationResult:
            subscription = await tx.subscriptions.lock(subscription_id)
            if subscription is None or subscription.assigned_port_id != port_id:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Subscription {subscription_id} no longer references port {port_id}",
                )
            port = await tx.ports.lock_by_id(port_id)
            if port is not None and port.assigned_subscription_id == subscription.id:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Port is assigned to this subscription; release the port instead",
                )

            if not await tx.subscriptions.set_assigned_port(subscription.id, None, expected_port_id=port_id):
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Subscription {subscription.id} no longer references port {port_id}",
                )
            await tx.audit.record(
                AllocationAction.RELEASED,
                port_id=port_id,
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                performed_by=performed_by,
                notes="Subscription link removed by admin",
            )
            return AllocationResult.ok(port, subscription_id=subscription.id)

        result = await self._run("release_stale_link", work)
        if result.success:
            logger.info(f"Removed stale link from subscription {subscription_id} to port {port_id}")
            if self.events is not None:
                await self.events.publish_port_event(
                    EventType.PORT_RELEASED,
                    port_id,
                    {"subscription_id": str(subscription_id), "stale_link": True},
                    user_id=performed_by,
                )
        return result

    # Reassignment

    async def reassign_port(
        self,
        subscription_id: uuid.UUID,
        new_port_id: uuid.UUID,
        performed_by: Optional[uuid.UUID] = None,
    ) -> AllocationResult:
        """
        Swap a subscription's port for a specific AVAILABLE port, atomically.

        The current port returns to AVAILABLE (UNASSIGNED entry) and the new
        port becomes ASSIGNED (REASSIGNED entry) in the same transaction, so
        the subscription never holds zero or two ports. Any failure leaves
        the original assignment untouched.
        """
        logger.info(f"Reassigning subscription {subscription_id} to port {new_port_id}")

        async def work(tx: _Tx) -> AllocationResult:
            subscription = await tx.subscriptions.lock(subscription_id)
            error = self._subscription_error(subscription, subscription_id)
            if error:
                return error
            old_port_id = subscription.assigned_port_id
            if old_port_id is None:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription has no assigned port to reassign",
                )
            if old_port_id == new_port_id:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription already holds this port",
                )

            locked = await tx.ports.lock_many([old_port_id, new_port_id])
            new_port = locked.get(new_port_id)
            old_port = locked.get(old_port_id)
            if new_port is None:
                return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {new_port_id} not found")
            if new_port.is_assigned:
                return AllocationResult.fail(
                    AllocationErrorKind.PORT_IN_USE, f"Port {new_port_id} is assigned to another subscription"
                )
            if not new_port.is_available:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Port {new_port_id} is {new_port.status}, not AVAILABLE",
                )
            if old_port is None or old_port.assigned_subscription_id != subscription.id:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Port {old_port_id} is not assigned to subscription {subscription.id}",
                )

            # Free the old row first so the unique subscription reference never doubles up
            await tx.ports.update_status(old_port.id, PortStatus.AVAILABLE, expected_status=PortStatus.ASSIGNED)
            await tx.audit.record(
                AllocationAction.UNASSIGNED,
                port_id=old_port.id,
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                performed_by=performed_by,
                notes=f"Reassigned to port {new_port.id}",
            )

            claimed = await tx.ports.update_status(
                new_port.id,
                PortStatus.ASSIGNED,
                assigned_subscription_id=subscription.id,
                expected_status=PortStatus.AVAILABLE,
            )
            if not claimed:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION, f"Port {new_port_id} was taken concurrently"
                )
            await tx.audit.record(
                AllocationAction.REASSIGNED,
                port_id=new_port.id,
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                performed_by=performed_by,
                notes=f"Reassigned from port {old_port.id}",
            )

            if not await tx.subscriptions.set_assigned_port(
                subscription.id, new_port.id, expected_port_id=old_port.id
            ):
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription port reference changed concurrently",
                )
            return AllocationResult.ok(
                await tx.ports.refresh(new_port),
                subscription_id=subscription.id,
                details={"old_port_id": old_port.id},
            )

        result = await self._run("reassign_port", work)
        if result.success:
            await self._publish(
                EventType.PORT_REASSIGNED,
                result.port,
                {
                    "subscription_id": str(subscription_id),
                    "old_port_id": str(result.details["old_port_id"]),
                },
                user_id=performed_by,
            )
        return result

    async def transfer_port(
        self,
        port_id: uuid.UUID,
        new_subscription_id: uuid.UUID,
        performed_by: Optional[uuid.UUID] = None,
    ) -> AllocationResult:
        """
        Move an ASSIGNED port from its subscription to another one, atomically.

        The previous holder's reference is cleared (UNASSIGNED entry) and the
        new subscription takes the port (REASSIGNED entry) in one
        transaction. The new subscription must not hold a port already.

        Returns:
            AllocationResult: ``port`` on success with ``old_subscription_id``
            in ``details``; NOT_FOUND, INVALID_STATE_TRANSITION or
            LOCK_TIMEOUT otherwise
        """
        logger.info(f"Transferring port {port_id} to subscription {new_subscription_id}")

        async with self.session_factory() as session:
            port = await PortStore(session).find_by_id(port_id)
            old_subscription_id = port.assigned_subscription_id if port else None
            status = port.status if port else None

        if port is None:
            return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")
        if status != PortStatus.ASSIGNED.value or old_subscription_id is None:
            return AllocationResult.fail(
                AllocationErrorKind.INVALID_STATE_TRANSITION,
                f"Port {port_id} is not assigned; assign it instead",
            )
        if old_subscription_id == new_subscription_id:
            return AllocationResult.fail(
                AllocationErrorKind.INVALID_STATE_TRANSITION,
                "Port is already assigned to this subscription",
            )

        async def work(tx: _Tx) -> AllocationResult:
            locked = {}
            for subscription_id in sorted([old_subscription_id, new_subscription_id]):
                locked[subscription_id] = await tx.subscriptions.lock(subscription_id)
            old_subscription = locked[old_subscription_id]
            new_subscription = locked[new_subscription_id]

            error = self._subscription_error(new_subscription, new_subscription_id)
            if error:
                return error
            if new_subscription.assigned_port_id is not None:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription already has an assigned port",
                )

            locked_port = await tx.ports.lock_by_id(port_id)
            if locked_port is None:
                return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")
            if old_subscription is None or locked_port.assigned_subscription_id != old_subscription.id:
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Port {port_id} changed hands concurrently",
                )

            # Clear the previous holder first so the unique port reference never doubles up
            if not await tx.subscriptions.set_assigned_port(
                old_subscription.id, None, expected_port_id=port_id
            ):
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Subscription {old_subscription.id} no longer references port {port_id}",
                )
            await tx.audit.record(
                AllocationAction.UNASSIGNED,
                port_id=port_id,
                subscription_id=old_subscription.id,
                customer_id=old_subscription.customer_id,
                performed_by=performed_by,
                notes=f"Transferred to subscription {new_subscription.id}",
            )

            await tx.ports.update_status(
                port_id,
                PortStatus.ASSIGNED,
                assigned_subscription_id=new_subscription.id,
                expected_status=PortStatus.ASSIGNED,
            )
            if not await tx.subscriptions.set_assigned_port(new_subscription.id, port_id):
                return AllocationResult.fail(
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    "Subscription was assigned a port concurrently",
                )
            await tx.audit.record(
                AllocationAction.REASSIGNED,
                port_id=port_id,
                subscription_id=new_subscription.id,
                customer_id=new_subscription.customer_id,
                performed_by=performed_by,
                notes=f"Transferred from subscription {old_subscription.id}",
            )
            await tx.subscriptions.set_status(
                new_subscription.id,
                SubscriptionStatus.ACTIVE,
                expected_status=SubscriptionStatus.PENDING_ALLOCATION,
            )
            return AllocationResult.ok(
                await tx.ports.refresh(locked_port),
                subscription_id=new_subscription.id,
                details={"old_subscription_id": old_subscription.id},
            )

        result = await self._run("transfer_port", work)
        if result.success:
            await self._publish(
                EventType.PORT_REASSIGNED,
                result.port,
                {
                    "subscription_id": str(new_subscription_id),
                    "old_subscription_id": str(old_subscription_id),
                },
                user_id=performed_by,
            )
        return result

    # Administrative operations

    async def create_port(
        self, port_data: Dict[str, Any], performed_by: Optional[uuid.UUID] = None
    ) -> AllocationResult:
        """Create a port in AVAILABLE or RESERVED state with a CREATED entry."""
        data = {
            k: v for k, v in port_data.items()
            if v is not None and (k in UPDATABLE_FIELDS or k == "status")
        }
        data.setdefault("status", PortStatus.AVAILABLE.value)
        if isinstance(data["status"], PortStatus):
            data["status"] = data["status"].value
        if isinstance(data.get("instance_url"), str):
            data["instance_url"] = data["instance_url"].strip()

        validation = self.validator.validate_port_creation(data)
        if not validation.is_valid:
            return AllocationResult.fail(
                AllocationErrorKind.VALIDATION_ERROR,
                "; ".join(error.message for error in validation.errors),
                details={"errors": [error.__dict__ for error in validation.errors]},
            )

        async def work(tx: _Tx) -> AllocationResult:
            if await tx.ports.instance_url_exists(data["instance_url"]):
                return AllocationResult.fail(
                    AllocationErrorKind.DUPLICATE_INSTANCE, "Port with this instance URL already exists"
                )
            port = await tx.ports.create(data)
            await tx.audit.record(
                AllocationAction.CREATED,
                port_id=port.id,
                performed_by=performed_by,
                notes=f"Port created with status {port.status}",
            )
            return AllocationResult.ok(port)

        result = await self._run("create_port", work, integrity_error=AllocationErrorKind.DUPLICATE_INSTANCE)
        if result.success:
            await self._publish(
                EventType.PORT_CREATED,
                result.port,
                {"instance_url": result.port.instance_url, "status": result.port.status},
                user_id=performed_by,
            )
        return result

    async def update_port(self, port_id: uuid.UUID, fields: Dict[str, Any]) -> AllocationResult:
        """Update connection descriptor fields. Status is never changed here."""
        fields = dict(fields)
        if isinstance(fields.get("instance_url"), str):
            fields["instance_url"] = fields["instance_url"].strip()

        validation = self.validator.validate_port_update(fields)
        if not validation.is_valid:
            return AllocationResult.fail(
                AllocationErrorKind.VALIDATION_ERROR,
                "; ".join(error.message for error in validation.errors),
            )

        async def work(tx: _Tx) -> AllocationResult:
            port = await tx.ports.lock_by_id(port_id)
            if port is None:
                return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")
            instance_url = fields.get("instance_url")
            if instance_url and await tx.ports.instance_url_exists(instance_url, exclude_id=port_id):
                return AllocationResult.fail(
                    AllocationErrorKind.DUPLICATE_INSTANCE, "Port with this instance URL already exists"
                )
            return AllocationResult.ok(await tx.ports.update(port_id, fields))

        return await self._run("update_port", work, integrity_error=AllocationErrorKind.DUPLICATE_INSTANCE)

    async def _transition(
        self,
        port_id: uuid.UUID,
        target: PortStatus,
        performed_by: Optional[uuid.UUID],
        action: AllocationAction,
        allowed_sources: Optional[Sequence[PortStatus]] = None,
        notes: Optional[str] = None,
    ) -> AllocationResult:
        """Locked read-modify-write of an administrative status change plus its audit entry."""
        async def work(tx: _Tx) -> AllocationResult:
            port = await tx.ports.lock_by_id(port_id)
            if port is None:
                return AllocationResult.fail(AllocationErrorKind.NOT_FOUND, f"Port {port_id} not found")

            current = port.status
            rejected = PortTransitionRules.check(current, target)
            if rejected is None and allowed_sources is not None and PortStatus(current) not in allowed_sources:
                rejected = (
                    AllocationErrorKind.INVALID_STATE_TRANSITION,
                    f"Cannot change port status from {current} to {target.value}",
                )
            if rejected:
                kind, message = rejected
                return AllocationResult.fail(kind, message)

            await tx.ports.update_status(port.id, target, expected_status=PortStatus(current))
            await tx.audit.record(
                action,
                port_id=port.id,
                performed_by=performed_by,
                notes=notes or f"Status changed from {current} to {target.value}",
            )
            return AllocationResult.ok(await tx.ports.refresh(port), details={"previous_status": current})

        result = await self._run(f"change port status to {target.value}", work)
        if result.success:
            await self._publish(
                EventType.PORT_STATUS_CHANGED,
                result.port,
                {"from": result.details["previous_status"], "to": target.value},
                user_id=performed_by,
            )
        return result

    async def disable_port(self, port_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None) -> AllocationResult:
        """AVAILABLE or RESERVED to DISABLED. An ASSIGNED port is rejected with PORT_IN_USE."""
        return await self._transition(
            port_id,
            PortStatus.DISABLED,
            performed_by,
            allowed_sources=(PortStatus.AVAILABLE, PortStatus.RESERVED),
            action=AllocationAction.DISABLED,
        )

    async def enable_port(self, port_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None) -> AllocationResult:
        """DISABLED to AVAILABLE."""
        return await self._transition(
            port_id,
            PortStatus.AVAILABLE,
            performed_by,
            allowed_sources=(PortStatus.DISABLED,),
            action=AllocationAction.ENABLED,
        )

    async def reserve_port(self, port_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None) -> AllocationResult:
        """AVAILABLE to RESERVED."""
        return await self._transition(
            port_id,
            PortStatus.RESERVED,
            performed_by,
            allowed_sources=(PortStatus.AVAILABLE,),
            action=AllocationAction.RESERVED,
        )

    async def make_available(self, port_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None) -> AllocationResult:
        """RESERVED to AVAILABLE."""
        return await self._transition(
            port_id,
            PortStatus.AVAILABLE,
            performed_by,
            allowed_sources=(PortStatus.RESERVED,),
            action=AllocationAction.MADE_AVAILABLE,
        )

    async def change_status(
        self,
        port_id: uuid.UUID,
        new_status: PortStatus,
        performed_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> AllocationResult:
        """Any allowed administrative transition, recorded as STATUS_CHANGED."""
        return await self._transition(
            port_id,
            PortStatus(new_status),
            performed_by,
            action=AllocationAction.STATUS_CHANGED,
            notes=notes,
        )

    async def delete_port(self, port_id: uuid.UUID, performed_by: Optional[uuid.UUID] = None) -> AllocationResult:
        """Hard delete a port that is not ASSIGNED. Its audit history is kept."""
        async def work(tx: _Tx) -> AllocationResult:
            try:
                await tx.ports.delete(port_id)
            except PortStoreError as e:
                return AllocationResult.fail(e.kind, str(e))
            return AllocationResult.ok()

        result = await self._run("delete_port", work, integrity_error=AllocationErrorKind.PORT_IN_USE)
        if result.success and self.events is not None:
            await self.events.publish_port_event(
                EventType.PORT_DELETED, port_id, {"deleted": True}, user_id=performed_by
            )
        return result

    async def bulk_import_ports(
        self, rows: List[Dict[str, Any]], performed_by: Optional[uuid.UUID] = None
    ) -> BulkImportSummary:
        """Create each row independently; one bad row never blocks the others."""
        summary = BulkImportSummary()
        for index, row in enumerate(rows):
            result = await self.create_port(row, performed_by=performed_by)
            if result.success:
                summary.imported += 1
                summary.imported_ports.append(result.port)
            else:
                summary.failed += 1
                summary.errors[index] = result.message
        logger.info(f"Bulk import finished: {summary.imported} imported, {summary.failed} failed")
        return summary

    # Advisory reads

    async def available_ports_count(self) -> int:
        """Unlocked count of AVAILABLE ports."""
        async with self.session_factory() as session:
            return await PortStore(session).count_available()

    async def has_available_ports(self) -> bool:
        """
        Unlocked hint that allocation may succeed.

        Not a reservation: the port seen here may be taken before
        ``allocate_port_to_subscription`` runs.
        """
        return await self.available_ports_count() > 0
