"""Horimeter history combined from the database and the ``Horimetros`` sheet.

Readings imported into the worksheet by hand may also exist in the database.
Both sides are reduced to the database shape and merged by vehicle and day,
keeping the database reading whenever the two collide.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

from fleetsync.dedup import RecordSource, format_time, horimeter_key, merge_records, parse_ptbr_number, parse_sheet_date
from fleetsync.schema import HORIMETER_FIELDS, NOT_FOUND, resolve_headers, row_to_record
from fleetsync.sheets_client import FULL_WIDTH, a1_range

logger = logging.getLogger(__name__)

HORIMETER_TABLE = "horimeter_readings"


def sheet_reading(values: Mapping[str, str]) -> Dict[str, Any]:
    """Convert one resolved sheet row into a ``horimeter_readings`` shaped dict."""

    moment = parse_sheet_date(values.get("date"))
    return {
        "vehicle_code": values.get("vehicle_code", ""),
        "reading_date": moment.date().isoformat() if moment else values.get("date", ""),
        "reading_time": format_time(values.get("time")),
        "previous_value": parse_ptbr_number(values.get("horimeter_previous")),
        "current_value": parse_ptbr_number(values.get("horimeter_current")),
        "previous_km": parse_ptbr_number(values.get("km_previous")),
        "current_km": parse_ptbr_number(values.get("km_current")),
        "operator": values.get("operator", ""),
        "observations": values.get("notes", ""),
    }


def sheet_readings(rows: Sequence[Sequence[str]]) -> List[Dict[str, Any]]:
    if not rows:
        return []
    header_map = resolve_headers(rows[0], HORIMETER_FIELDS)
    if header_map["vehicle_code"] == NOT_FOUND or header_map["date"] == NOT_FOUND:
        logger.warning("Horimeter sheet lacks vehicle or date columns; ignoring it")
        return []
    readings = []
    for row in rows[1:]:
        if not any(str(cell).strip() for cell in row):
            continue
        readings.append(sheet_reading(row_to_record(header_map, row)))
    return readings


def load_horimeter_history(
    store: Any,
    client: Any,
    sheet_title: str = "Horimetros",
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    page_size: int = 1000,
) -> List[Dict[str, Any]]:
    """Return the merged horimeter readings, most recent first."""

    database: List[Dict[str, Any]] = []
    offset = 0
    while True:
        page = store.fetch_page(HORIMETER_TABLE, offset, page_size)
        database.extend(page)
        offset += len(page)
        if len(page) < page_size:
            break

    sheet = sheet_readings(client.read_range(a1_range(sheet_title, f"A:{FULL_WIDTH}")))
    logger.info("Merging %d database and %d sheet horimeter readings", len(database), len(sheet))
    return merge_records(
        [
            RecordSource(database, authoritative=True, name="database"),
            RecordSource(sheet, name="sheet"),
        ],
        horimeter_key,
        start=start,
        end=end,
    )


__all__ = ["load_horimeter_history", "sheet_reading", "sheet_readings"]
