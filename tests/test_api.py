"""Tests for the HTTP API."""

import csv
import io
import uuid

import pytest
from httpx import AsyncClient

from src.models.port import Port, PortStatus
from src.models.subscription import Subscription, SubscriptionStatus

PORTS = "/api/v1/ports"
ALLOCATIONS = "/api/v1/allocations"
LOGS = "/api/v1/port-allocation-logs"


def _port_payload(instance_url="https://api.example.com", **attributes):
    return {"data": {"type": "port", "attributes": {"instance_url": instance_url, **attributes}}}


@pytest.mark.asyncio
async def test_create_and_get_port(client: AsyncClient, admin_id):
    response = await client.post(
        PORTS,
        json=_port_payload(db_host="db.internal", db_password="s3cret", server_region="us-east-1"),
        headers={"X-User-ID": admin_id},
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["type"] == "port"
    assert data["attributes"]["status"] == "AVAILABLE"
    assert "db_password" not in data["attributes"]

    fetched = await client.get(f"{PORTS}/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["attributes"]["instance_url"] == "https://api.example.com"


@pytest.mark.asyncio
async def test_create_duplicate_port(client: AsyncClient, seed):
    await seed.port(instance_url="https://api.example.com")

    response = await client.post(PORTS, json=_port_payload())

    assert response.status_code == 409
    assert response.json()["errors"][0]["code"] == "DUPLICATE_INSTANCE"


@pytest.mark.asyncio
async def test_create_port_invalid_url(client: AsyncClient):
    response = await client.post(PORTS, json=_port_payload("not-a-url"))

    assert response.status_code == 422
    assert response.json()["errors"][0]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_invalid_performer_header(client: AsyncClient):
    response = await client.post(PORTS, json=_port_payload(), headers={"X-User-ID": "nope"})

    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "INVALID_UUID_FORMAT"


@pytest.mark.asyncio
async def test_get_missing_port(client: AsyncClient):
    response = await client.get(f"{PORTS}/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_list_ports_with_filters(client: AsyncClient, seed):
    await seed.port(instance_url="https://one.example.com")
    await seed.port(instance_url="https://two.example.com", status=PortStatus.RESERVED)

    response = await client.get(PORTS, params={"status": "RESERVED"})

    assert response.status_code == 200
    body = response.json()
    assert [p["attributes"]["instance_url"] for p in body["data"]] == ["https://two.example.com"]
    assert body["meta"]["pagination"]["total_items"] == 1


@pytest.mark.asyncio
async def test_update_port(client: AsyncClient, seed):
    port = await seed.port()

    response = await client.patch(
        f"{PORTS}/{port.id}",
        json={"data": {"type": "port", "attributes": {"notes": "rack 7"}}},
    )

    assert response.status_code == 200
    assert response.json()["data"]["attributes"]["notes"] == "rack 7"


@pytest.mark.asyncio
async def test_status_actions(client: AsyncClient, seed, audit_entries, admin_id):
    port = await seed.port()
    headers = {"X-User-ID": admin_id}

    reserved = await client.post(f"{PORTS}/{port.id}/reserve", headers=headers)
    assert reserved.json()["data"]["attributes"]["status"] == "RESERVED"

    available = await client.post(f"{PORTS}/{port.id}/make-available", headers=headers)
    assert available.json()["data"]["attributes"]["status"] == "AVAILABLE"

    disabled = await client.post(f"{PORTS}/{port.id}/disable", headers=headers)
    assert disabled.json()["data"]["attributes"]["status"] == "DISABLED"

    again = await client.post(f"{PORTS}/{port.id}/disable", headers=headers)
    assert again.status_code == 409
    assert again.json()["errors"][0]["code"] == "INVALID_STATE_TRANSITION"

    enabled = await client.post(f"{PORTS}/{port.id}/enable", headers=headers)
    assert enabled.json()["data"]["attributes"]["status"] == "AVAILABLE"

    changed = await client.post(
        f"{PORTS}/{port.id}/status", json={"status": "RESERVED", "notes": "held for migration"}, headers=headers
    )
    assert changed.status_code == 200

    entries = await audit_entries(port_id=port.id)
    assert [e.action for e in entries] == [
        "RESERVED", "MADE_AVAILABLE", "DISABLED", "ENABLED", "STATUS_CHANGED"
    ]
    assert all(str(e.performed_by) == admin_id for e in entries)
    assert entries[-1].notes == "held for migration"


@pytest.mark.asyncio
async def test_allocation_lifecycle(client: AsyncClient, seed, fetch):
    """Allocate, reassign and release through the API."""
    p1 = await seed.port()
    subscription = await seed.subscription()

    allocated = await client.post(ALLOCATIONS, json={"subscription_id": str(subscription.id)})
    assert allocated.status_code == 201
    assert allocated.json()["data"]["id"] == str(p1.id)

    p2 = await seed.port()
    reassigned = await client.post(
        f"{ALLOCATIONS}/reassign",
        json={"subscription_id": str(subscription.id), "new_port_id": str(p2.id)},
    )
    assert reassigned.status_code == 200
    assert reassigned.json()["meta"]["old_port_id"] == str(p1.id)

    released = await client.post(f"{ALLOCATIONS}/release", json={"subscription_id": str(subscription.id)})
    assert released.status_code == 200
    assert released.json()["meta"]["released"] is True

    assert (await fetch(Port, p2.id)).status == PortStatus.AVAILABLE.value
    assert (await fetch(Subscription, subscription.id)).assigned_port_id is None


@pytest.mark.asyncio
async def test_allocation_without_ports_is_pending(client: AsyncClient, seed, fetch):
    subscription = await seed.subscription()

    response = await client.post(ALLOCATIONS, json={"subscription_id": str(subscription.id)})

    assert response.status_code == 202
    assert response.json()["meta"]["status"] == "PENDING_ALLOCATION"
    assert (await fetch(Subscription, subscription.id)).status == SubscriptionStatus.PENDING_ALLOCATION.value


@pytest.mark.asyncio
async def test_pending_allocations_are_served(client: AsyncClient, seed):
    subscription = await seed.subscription()
    await client.post(ALLOCATIONS, json={"subscription_id": str(subscription.id)})
    await seed.port()

    response = await client.post(f"{ALLOCATIONS}/pending", json={})

    assert response.status_code == 200
    assert response.json()["meta"]["allocated"] == 1


@pytest.mark.asyncio
async def test_delete_assigned_port_is_rejected(client: AsyncClient, seed):
    port = await seed.port()
    subscription = await seed.subscription()
    await client.post(ALLOCATIONS, json={"subscription_id": str(subscription.id)})

    response = await client.delete(f"{PORTS}/{port.id}")

    assert response.status_code == 409
    assert response.json()["errors"][0]["code"] == "PORT_IN_USE"

    await client.post(f"{PORTS}/{port.id}/release")
    deleted = await client.delete(f"{PORTS}/{port.id}")
    assert deleted.status_code == 204


@pytest.mark.asyncio
async def test_manual_assignment(client: AsyncClient, seed):
    port = await seed.port(status=PortStatus.RESERVED)
    subscription = await seed.subscription()

    response = await client.post(f"{PORTS}/{port.id}/assign", json={"subscription_id": str(subscription.id)})

    assert response.status_code == 200
    attributes = response.json()["data"]["attributes"]
    assert attributes["status"] == "ASSIGNED"
    assert attributes["assigned_subscription_id"] == str(subscription.id)


@pytest.mark.asyncio
async def test_availability(client: AsyncClient, seed):
    empty = await client.get(f"{PORTS}/availability")
    assert empty.json() == {"available": False, "available_count": 0}

    await seed.port()
    response = await client.get(f"{PORTS}/availability")
    assert response.json() == {"available": True, "available_count": 1}


@pytest.mark.asyncio
async def test_import_ports_csv(client: AsyncClient, seed):
    await seed.port(instance_url="https://dup.example.com")
    body = (
        "Instance_URL,server_region,status,unknown\n"
        "https://a.example.com,us-east-1,,x\n"
        ",eu-west-1,,\n"
        "https://dup.example.com,,,\n"
        "https://b.example.com,,reserved,\n"
    )

    response = await client.post(f"{PORTS}/import", content=body, headers={"Content-Type": "text/csv"})

    assert response.status_code == 200
    meta = response.json()["meta"]
    assert meta["imported"] == 2
    assert meta["failed"] == 1
    assert meta["parse_errors"] == ["Line 3: instance_url is required"]
    statuses = {p["attributes"]["instance_url"]: p["attributes"]["status"] for p in response.json()["data"]}
    assert statuses == {"https://a.example.com": "AVAILABLE", "https://b.example.com": "RESERVED"}


@pytest.mark.asyncio
async def test_import_without_instance_url_column(client: AsyncClient):
    response = await client.post(f"{PORTS}/import", content="url\nhttps://a.example.com\n")

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_allocation_logs_listing(client: AsyncClient, seed):
    customer = await seed.user(name="Ada Lovelace")
    await seed.port()
    subscription = await seed.subscription(customer=customer)
    await client.post(ALLOCATIONS, json={"subscription_id": str(subscription.id)})
    await client.post(f"{ALLOCATIONS}/release", json={"subscription_id": str(subscription.id)})

    response = await client.get(LOGS, params={"action": "ASSIGNED"})

    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 1
    attributes = body["data"][0]["attributes"]
    assert attributes["action_label"] == "Assigned"
    assert attributes["customer_name"] == "Ada Lovelace"
    assert body["meta"]["pagination"]["total_items"] == 1

    actions = await client.get(f"{LOGS}/actions")
    assert actions.json()["data"] == [
        {"value": "ASSIGNED", "label": "Assigned"},
        {"value": "RELEASED", "label": "Released"},
    ]


@pytest.mark.asyncio
async def test_allocation_logs_reject_unknown_action(client: AsyncClient):
    response = await client.get(LOGS, params={"action": "EXPLODED"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_allocation_logs_export(client: AsyncClient, seed):
    await seed.port()
    subscription = await seed.subscription()
    await client.post(ALLOCATIONS, json={"subscription_id": str(subscription.id)})

    response = await client.get(f"{LOGS}/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    disposition = response.headers["content-disposition"]
    assert 'filename="port_allocation_logs_' in disposition
    assert response.content.startswith(b"\xef\xbb\xbf")

    rows = list(csv.DictReader(io.StringIO(response.content.decode("utf-8-sig"))))
    assert [row["Action"] for row in rows] == ["Assigned"]


@pytest.mark.asyncio
async def test_port_history(client: AsyncClient, seed):
    port = await seed.port()
    await client.post(f"{PORTS}/{port.id}/reserve")

    response = await client.get(f"{PORTS}/{port.id}/logs")

    assert response.status_code == 200
    assert [e["attributes"]["action"] for e in response.json()["data"]] == ["RESERVED"]


@pytest.mark.asyncio
async def test_transfer_port(client: AsyncClient, seed, fetch):
    port = await seed.port()
    old = await seed.subscription()
    new = await seed.subscription()
    await client.post(ALLOCATIONS, json={"subscription_id": str(old.id)})

    response = await client.post(f"{PORTS}/{port.id}/transfer", json={"subscription_id": str(new.id)})

    assert response.status_code == 200
    assert response.json()["data"]["attributes"]["assigned_subscription_id"] == str(new.id)
    assert (await fetch(Subscription, old.id)).assigned_port_id is None

    again = await client.post(f"{PORTS}/{port.id}/transfer", json={"subscription_id": str(new.id)})
    assert again.status_code == 409
    assert again.json()["errors"][0]["code"] == "INVALID_STATE_TRANSITION"


@pytest.mark.asyncio
async def test_unlink_stale_subscription(client: AsyncClient, seed, fetch):
    port = await seed.port()
    subscription = await seed.subscription(assigned_port_id=port.id)

    response = await client.post(f"{PORTS}/{port.id}/unlink")

    assert response.status_code == 200
    assert response.json()["meta"] == {"subscription_id": str(subscription.id), "unlinked": True}
    assert (await fetch(Subscription, subscription.id)).assigned_port_id is None

    nothing_left = await client.post(f"{PORTS}/{port.id}/unlink")
    assert nothing_left.status_code == 404
