"""CSV export of the port allocation log."""

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.settings import get_settings
from src.services.audit_trail import AuditTrail

logger = logging.getLogger(__name__)

ACTION_LABELS = {
    "ASSIGNED": "Assigned",
    "REASSIGNED": "Reassigned",
    "RELEASED": "Released",
    "UNASSIGNED": "Unassigned",
    "CREATED": "Created",
    "DISABLED": "Disabled",
    "ENABLED": "Enabled",
    "RESERVED": "Reserved",
    "MADE_AVAILABLE": "Made Available",
    "STATUS_CHANGED": "Status Changed",
}

CSV_HEADER = [
    "Timestamp",
    "Action",
    "Port URL",
    "Port Status",
    "Customer Name",
    "Customer Email",
    "Plan",
    "Subscription ID",
    "Performed By",
    "Performer Email",
    "Notes",
    "Log ID",
    "Port ID",
    "Customer ID",
]

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
BOM = "\ufeff"


def action_label(action: str) -> str:
    """Human label of an action; unknown actions pass through."""
    return ACTION_LABELS.get(action, action)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _related(name: Optional[str], foreign_id: Any, absent: str = "") -> str:
    """Name of a related row, "Deleted" if it is gone, ``absent`` if never set."""
    if name:
        return name
    return "Deleted" if foreign_id else absent


def build_row(entry: Dict[str, Any]) -> List[str]:
    """One CSV row from a ``find_all_with_relations`` dictionary."""
    created_at = entry.get("created_at")
    return [
        created_at.strftime(TIMESTAMP_FORMAT) if created_at else "",
        action_label(entry["action"]),
        _related(entry.get("port_instance_url"), entry.get("port_id")),
        entry.get("port_status") or "N/A",
        _related(entry.get("customer_name"), entry.get("customer_id")),
        _text(entry.get("customer_email")),
        _related(entry.get("plan_name"), entry.get("subscription_id")),
        _text(entry.get("subscription_id")),
        _related(entry.get("performed_by_name"), entry.get("performed_by"), absent="Automatic"),
        _text(entry.get("performed_by_email")),
        _text(entry.get("notes")),
        _text(entry.get("id")),
        _text(entry.get("port_id")),
        _text(entry.get("customer_id")),
    ]


def render_csv(entries: Iterable[Dict[str, Any]]) -> str:
    """Render entries as CSV text prefixed with a UTF-8 byte order mark."""
    buffer = io.StringIO()
    buffer.write(BOM)
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow(build_row(entry))
    return buffer.getvalue()


def export_filename(now: Optional[datetime] = None) -> str:
    """Download name, e.g. ``port_allocation_logs_2024-05-01_093000.csv``."""
    now = now or datetime.now(timezone.utc)
    return f"port_allocation_logs_{now.strftime('%Y-%m-%d_%H%M%S')}.csv"


async def export_allocation_logs(
    db_session: AsyncSession, filters: Optional[Dict[str, Any]] = None
) -> str:
    """Query the filtered log, capped at ``export_max_rows``, and render it."""
    max_rows = get_settings().export_max_rows
    entries = await AuditTrail(db_session).find_all_with_relations(filters, limit=max_rows)
    if len(entries) == max_rows:
        logger.warning(f"Allocation log export truncated at {max_rows} rows")
    logger.info(f"Exporting {len(entries)} allocation log entries")
    return render_csv(entries)
