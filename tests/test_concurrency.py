"""Tests for lock contention and lost races on the port pool."""

import asyncio
import os

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import src.models  # noqa: F401
from src.core.database import Base
from src.core.settings import Settings, get_settings
from src.models.port import Port, PortStatus
from src.models.subscription import Subscription
from src.services.allocation_engine import AllocationEngine
from src.services.business_rules import AllocationErrorKind
from src.services.port_store import PortStore

from conftest import RecordingEventPublisher, Seeder

POSTGRES_URL = os.environ.get("TEST_POSTGRES_URL")


@pytest.mark.asyncio
async def test_losing_a_race_for_the_last_port(allocation_engine, seed, fetch, audit_entries, monkeypatch):
    """
    Two requests see the same last port; the second one loses.

    The loser's candidate selection returns the port the winner already
    took, as it would after waiting on the winner's row lock. Its
    conditional update must fail and it must report NO_AVAILABLE_PORTS.
    """
    last_port = await seed.port()
    winner = await seed.subscription()
    loser = await seed.subscription()

    first = await allocation_engine.allocate_port_to_subscription(winner.id)
    assert first.success

    original = PortStore.lock_and_fetch_one_available
    stale_calls = []

    async def stale_then_real(self):
        if not stale_calls:
            stale_calls.append(True)
            result = await self.db.execute(select(Port).where(Port.id == last_port.id))
            return result.scalar_one()
        return await original(self)

    monkeypatch.setattr(PortStore, "lock_and_fetch_one_available", stale_then_real)

    second = await allocation_engine.allocate_port_to_subscription(loser.id)

    assert stale_calls == [True]
    assert second.error == AllocationErrorKind.NO_AVAILABLE_PORTS
    port = await fetch(Port, last_port.id)
    assert port.assigned_subscription_id == winner.id
    assert (await fetch(Subscription, loser.id)).assigned_port_id is None
    assert len(await audit_entries(action="ASSIGNED")) == 1


@pytest.mark.asyncio
async def test_lost_race_retries_with_next_port(allocation_engine, seed, fetch, monkeypatch):
    """A lost conditional update moves on to another available port."""
    taken = await seed.port()
    spare = await seed.port()
    winner = await seed.subscription()
    loser = await seed.subscription()
    await allocation_engine.allocate_port_to_subscription(winner.id)

    original = PortStore.lock_and_fetch_one_available
    calls = []

    async def stale_then_real(self):
        calls.append(True)
        if len(calls) == 1:
            return await self.find_by_id(taken.id)
        return await original(self)

    monkeypatch.setattr(PortStore, "lock_and_fetch_one_available", stale_then_real)

    result = await allocation_engine.allocate_port_to_subscription(loser.id)

    assert result.success
    assert result.port.id == spare.id
    assert len(calls) == 2
    assert (await fetch(Port, taken.id)).assigned_subscription_id == winner.id


def _lock_wait_expires(monkeypatch):
    async def locked(self):
        raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("database is locked"))

    monkeypatch.setattr(PortStore, "lock_and_fetch_one_available", locked)


@pytest.mark.asyncio
async def test_lock_timeout_rolls_back_and_is_retryable(allocation_engine, seed, fetch, audit_entries, monkeypatch):
    port = await seed.port()
    subscription = await seed.subscription()
    _lock_wait_expires(monkeypatch)

    result = await allocation_engine.allocate_port_to_subscription(subscription.id)

    assert result.error == AllocationErrorKind.LOCK_TIMEOUT
    assert result.retryable
    assert (await fetch(Port, port.id)).status == PortStatus.AVAILABLE.value
    assert (await fetch(Subscription, subscription.id)).assigned_port_id is None
    assert await audit_entries(action="ASSIGNED") == []


@pytest.mark.asyncio
async def test_lock_timeout_answers_503_with_retry_after(client, seed, monkeypatch):
    await seed.port()
    subscription = await seed.subscription()
    _lock_wait_expires(monkeypatch)

    response = await client.post("/api/v1/allocations", json={"subscription_id": str(subscription.id)})

    assert response.status_code == 503
    assert response.headers["retry-after"] == str(get_settings().lock_timeout_retry_after_seconds)
    assert response.json()["errors"][0]["code"] == "LOCK_TIMEOUT"


@pytest.mark.asyncio
async def test_other_database_errors_propagate(allocation_engine, seed, monkeypatch):
    await seed.port()
    subscription = await seed.subscription()

    async def connection_lost(self):
        raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("server closed the connection"))

    monkeypatch.setattr(PortStore, "lock_and_fetch_one_available", connection_lost)

    with pytest.raises(OperationalError):
        await allocation_engine.allocate_port_to_subscription(subscription.id)


# PostgreSQL: real row locks

@pytest_asyncio.fixture
async def postgres_factory():
    engine = create_async_engine(POSTGRES_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.mark.asyncio
@pytest.mark.skipif(not POSTGRES_URL, reason="TEST_POSTGRES_URL not set")
async def test_concurrent_allocation_on_postgres(postgres_factory, monkeypatch):
    """Both requests reach the lock at once; exactly one wins the last port."""
    seed = Seeder(postgres_factory)
    await seed.port()
    subscriptions = [await seed.subscription(), await seed.subscription()]

    barrier = asyncio.Barrier(2)
    original = PortStore.lock_and_fetch_one_available

    async def synchronized(self):
        await barrier.wait()
        return await original(self)

    monkeypatch.setattr(PortStore, "lock_and_fetch_one_available", synchronized)

    # One attempt each, so only the first selection waits at the barrier
    engine = AllocationEngine(
        postgres_factory,
        RecordingEventPublisher(),
        settings=Settings(allocation_max_attempts=1),
    )
    results = await asyncio.gather(*(
        engine.allocate_port_to_subscription(subscription.id) for subscription in subscriptions
    ))

    assert sorted(r.success for r in results) == [False, True]
    loser = next(r for r in results if not r.success)
    assert loser.error == AllocationErrorKind.NO_AVAILABLE_PORTS

    async with postgres_factory() as session:
        assigned = (await session.execute(
            select(Port).where(Port.status == PortStatus.ASSIGNED.value)
        )).scalars().all()
        holders = (await session.execute(
            select(Subscription).where(Subscription.assigned_port_id.is_not(None))
        )).scalars().all()
    assert len(assigned) == 1
    assert len(holders) == 1
    assert assigned[0].assigned_subscription_id == holders[0].id
