"""Tests for the allocation log CSV export."""

import csv
import io
import uuid
from datetime import datetime

import pytest

from src.services.allocation_log_export import (
    CSV_HEADER,
    action_label,
    build_row,
    export_allocation_logs,
    export_filename,
    render_csv,
)


def _entry(**overrides):
    entry = {
        "id": uuid.UUID("00000000-0000-0000-0000-000000000001"),
        "port_id": uuid.UUID("00000000-0000-0000-0000-000000000002"),
        "subscription_id": uuid.UUID("00000000-0000-0000-0000-000000000003"),
        "customer_id": uuid.UUID("00000000-0000-0000-0000-000000000004"),
        "action": "ASSIGNED",
        "performed_by": None,
        "notes": None,
        "created_at": datetime(2024, 5, 1, 9, 30, 15),
        "port_instance_url": "https://one.example.com",
        "port_status": "ASSIGNED",
        "customer_name": "Ada Lovelace",
        "customer_email": "ada@example.com",
        "plan_id": None,
        "plan_name": "Pro",
        "performed_by_name": None,
        "performed_by_email": None,
    }
    entry.update(overrides)
    return entry


def _row(entry):
    return dict(zip(CSV_HEADER, build_row(entry)))


def test_action_labels():
    assert action_label("MADE_AVAILABLE") == "Made Available"
    assert action_label("STATUS_CHANGED") == "Status Changed"
    assert action_label("SOMETHING_NEW") == "SOMETHING_NEW"


def test_row_with_all_relations_present():
    row = _row(_entry(performed_by=uuid.uuid4(), performed_by_name="Grace Admin",
                      performed_by_email="grace@example.com", notes="Assigned manually"))

    assert row["Timestamp"] == "2024-05-01 09:30:15"
    assert row["Action"] == "Assigned"
    assert row["Port URL"] == "https://one.example.com"
    assert row["Port Status"] == "ASSIGNED"
    assert row["Customer Name"] == "Ada Lovelace"
    assert row["Plan"] == "Pro"
    assert row["Performed By"] == "Grace Admin"
    assert row["Performer Email"] == "grace@example.com"
    assert row["Notes"] == "Assigned manually"
    assert row["Subscription ID"] == "00000000-0000-0000-0000-000000000003"


def test_row_for_deleted_relations():
    row = _row(_entry(
        port_instance_url=None,
        port_status=None,
        customer_name=None,
        customer_email=None,
        plan_name=None,
        performed_by=uuid.uuid4(),
    ))

    assert row["Port URL"] == "Deleted"
    assert row["Port Status"] == "N/A"
    assert row["Customer Name"] == "Deleted"
    assert row["Customer Email"] == ""
    assert row["Plan"] == "Deleted"
    assert row["Performed By"] == "Deleted"


def test_row_for_absent_relations():
    row = _row(_entry(
        action="CREATED",
        subscription_id=None,
        customer_id=None,
        customer_name=None,
        customer_email=None,
        plan_name=None,
    ))

    assert row["Customer Name"] == ""
    assert row["Plan"] == ""
    assert row["Subscription ID"] == ""
    assert row["Customer ID"] == ""
    assert row["Performed By"] == "Automatic"


def test_render_csv_has_bom_and_header():
    content = render_csv([_entry(notes='says "hi", twice')])

    assert content.startswith("\ufeff")
    rows = list(csv.reader(io.StringIO(content.lstrip("\ufeff"))))
    assert rows[0] == CSV_HEADER
    assert rows[1][CSV_HEADER.index("Notes")] == 'says "hi", twice'


def test_export_filename():
    assert export_filename(datetime(2024, 5, 1, 9, 30, 15)) == "port_allocation_logs_2024-05-01_093015.csv"


@pytest.mark.asyncio
async def test_export_allocation_logs(allocation_engine, seed, db_session):
    port = await seed.port(instance_url="https://exported.example.com")
    subscription = await seed.subscription()
    await allocation_engine.allocate_port_to_subscription(subscription.id)
    await allocation_engine.release_port(subscription.id)

    content = await export_allocation_logs(db_session, {"action": "RELEASED"})

    rows = list(csv.DictReader(io.StringIO(content.lstrip("\ufeff"))))
    assert len(rows) == 1
    assert rows[0]["Action"] == "Released"
    assert rows[0]["Port URL"] == port.instance_url
    assert rows[0]["Port Status"] == "AVAILABLE"
    assert rows[0]["Performed By"] == "Automatic"
