"""Parsing of port bulk-import CSV files."""

import csv
import io
from dataclasses import dataclass, field
from typing import Any, Dict, List

from src.models.port import UPDATABLE_FIELDS

IMPORT_COLUMNS = UPDATABLE_FIELDS + ("status",)


@dataclass
class ParsedImport:
    """Rows ready for ``AllocationEngine.bulk_import_ports`` plus parse errors."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def parse_ports_csv(content: str) -> ParsedImport:
    """
    Parse CSV text with a header row.

    Headers are matched case-insensitively; ``instance_url`` is required.
    Unknown columns are ignored and blank cells are dropped. Rows without an
    instance URL are reported by their line number and skipped.
    """
    parsed = ParsedImport()
    content = content.lstrip("\ufeff")
    if not content.strip():
        parsed.errors.append("CSV file is empty")
        return parsed

    reader = csv.DictReader(io.StringIO(content))
    headers = [(h or "").strip().lower() for h in (reader.fieldnames or [])]
    if "instance_url" not in headers:
        parsed.errors.append("Missing required column: instance_url")
        return parsed
    reader.fieldnames = headers

    for line_number, record in enumerate(reader, start=2):
        row = {
            key: value.strip()
            for key, value in record.items()
            if key in IMPORT_COLUMNS and isinstance(value, str) and value.strip()
        }
        if not row:
            continue
        if "status" in row:
            row["status"] = row["status"].upper()
        if not row.get("instance_url"):
            parsed.errors.append(f"Line {line_number}: instance_url is required")
            continue
        parsed.rows.append(row)

    return parsed
