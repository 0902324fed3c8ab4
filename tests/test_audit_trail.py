"""Tests for the allocation audit trail."""

import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from src.models.port_allocation_log import AllocationAction, ImmutableLogError, PortAllocationLog
from src.services.audit_trail import AuditTrail


async def _allocated(allocation_engine, seed, customer_name="Ada Lovelace", plan_name="Pro"):
    customer = await seed.user(name=customer_name)
    plan = await seed.plan(name=plan_name)
    port = await seed.port()
    subscription = await seed.subscription(customer=customer, plan=plan)
    await allocation_engine.allocate_port_to_subscription(subscription.id)
    return customer, plan, port, subscription


@pytest.mark.asyncio
async def test_log_entries_refuse_update(allocation_engine, seed, session_factory):
    await _allocated(allocation_engine, seed)

    async with session_factory() as session:
        entry = (await session.execute(select(PortAllocationLog))).scalars().first()
        entry.notes = "rewritten"
        with pytest.raises(ImmutableLogError):
            await session.flush()


@pytest.mark.asyncio
async def test_log_entries_refuse_delete(allocation_engine, seed, session_factory):
    await _allocated(allocation_engine, seed)

    async with session_factory() as session:
        entry = (await session.execute(select(PortAllocationLog))).scalars().first()
        await session.delete(entry)
        with pytest.raises(ImmutableLogError):
            await session.flush()


@pytest.mark.asyncio
async def test_lookups_by_port_subscription_and_customer(allocation_engine, seed, session_factory):
    customer, _, port, subscription = await _allocated(allocation_engine, seed)
    await allocation_engine.release_port(subscription.id)

    async with session_factory() as session:
        audit = AuditTrail(session)
        by_port = await audit.find_by_port(port.id)
        by_subscription = await audit.find_by_subscription(subscription.id)
        by_customer = await audit.find_by_customer(customer.id)
        assigned = await audit.count_by_action(AllocationAction.ASSIGNED)
        actions = await audit.get_distinct_actions()

    # Newest first
    assert [e.action for e in by_port] == ["RELEASED", "ASSIGNED"]
    assert len(by_subscription) == 2
    assert len(by_customer) == 2
    assert assigned == 1
    assert actions == ["ASSIGNED", "RELEASED"]


@pytest.mark.asyncio
async def test_find_all_with_relations_resolves_names(allocation_engine, seed, session_factory):
    admin = await seed.user(name="Grace Admin", email="grace@example.com", role="ADMIN")
    customer, plan, port, subscription = await _allocated(allocation_engine, seed)
    await allocation_engine.release_port(subscription.id, performed_by=admin.id)

    async with session_factory() as session:
        rows = await AuditTrail(session).find_all_with_relations()

    released, assigned = rows
    assert released["action"] == "RELEASED"
    assert released["performed_by_name"] == "Grace Admin"
    assert released["performed_by_email"] == "grace@example.com"
    assert assigned["performed_by"] is None
    assert assigned["port_instance_url"] == port.instance_url
    assert assigned["port_status"] == "AVAILABLE"
    assert assigned["customer_name"] == "Ada Lovelace"
    assert assigned["plan_id"] == plan.id
    assert assigned["plan_name"] == "Pro"


@pytest.mark.asyncio
async def test_entries_of_deleted_port_are_still_listed(allocation_engine, seed, session_factory):
    _, _, port, subscription = await _allocated(allocation_engine, seed)
    await allocation_engine.release_port(subscription.id)
    await allocation_engine.delete_port(port.id)

    async with session_factory() as session:
        rows = await AuditTrail(session).find_all_with_relations({"port_id": port.id})

    assert len(rows) == 2
    assert all(row["port_instance_url"] is None for row in rows)
    assert all(row["port_status"] is None for row in rows)


@pytest.mark.asyncio
async def test_filters(allocation_engine, seed, session_factory):
    ada, pro, _, ada_sub = await _allocated(allocation_engine, seed, "Ada Lovelace", "Pro")
    alan, basic, _, _ = await _allocated(allocation_engine, seed, "Alan Turing", "Basic")
    await allocation_engine.release_port(ada_sub.id)

    async with session_factory() as session:
        audit = AuditTrail(session)

        assert await audit.count_all_with_relations() == 3
        assert await audit.count_all_with_relations({"action": "RELEASED"}) == 1
        assert await audit.count_all_with_relations({"customer_id": alan.id}) == 1
        assert await audit.count_all_with_relations({"plan_id": pro.id}) == 2
        assert await audit.count_all_with_relations({"search": "turing"}) == 1
        assert await audit.count_all_with_relations({"search": "BASIC"}) == 1
        assert await audit.count_all_with_relations({"customer_id": uuid.uuid4()}) == 0

        today = datetime.now(timezone.utc).date()
        assert await audit.count_all_with_relations({"date_from": today, "date_to": today}) == 3
        assert await audit.count_all_with_relations({"date_to": date(2000, 1, 1)}) == 0

        page = await audit.find_all_with_relations(limit=2, offset=2)
        assert len(page) == 1
