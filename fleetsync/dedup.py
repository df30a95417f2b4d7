"""Merge and de-duplicate fleet records coming from the database and sheets."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

SERIAL_EPOCH = datetime(1899, 12, 30)
_MAX_SERIAL = 2958465  # 9999-12-31

_BR_DATE_RE = re.compile(
    r"^(?P<d>\d{1,2})/(?P<m>\d{1,2})/(?P<y>\d{4})(?:[ T](?P<time>\d{1,2}:\d{2}(?::\d{2})?))?$"
)
_ISO_DATE_RE = re.compile(
    r"^(?P<y>\d{4})-(?P<m>\d{1,2})-(?P<d>\d{1,2})"
    r"(?:[ T](?P<time>\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?)(?:Z|[+-]\d{2}:?\d{2})?)?$"
)
_SERIAL_RE = re.compile(r"^\d+(?:[.,]\d+)?$")
_TIME_RE = re.compile(r"^(?P<h>\d{1,2}):(?P<m>\d{2})(?::\d{2}(?:\.\d+)?)?$")
_THOUSANDS_RE = re.compile(r"^-?\d{1,3}(?:\.\d{3})+$")

RecordKey = Tuple[Hashable, ...]


def normalise_vehicle_code(code: object) -> str:
    """Uppercase ``code`` with every whitespace character removed."""

    return re.sub(r"\s+", "", str(code or "")).upper()


def parse_ptbr_number(value: object) -> Optional[float]:
    """Parse numbers written either as ``1.234,56`` or ``1234.56``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(" ", "")
    if not text:
        return None
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    elif _THOUSANDS_RE.fullmatch(text):
        text = text.replace(".", "")
    try:
        return float(text)
    except ValueError:
        return None


def _parse_clock(text: Optional[str]) -> Tuple[int, int, int]:
    if not text:
        return 0, 0, 0
    parts = text.split(":")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(float(parts[2])) if len(parts) > 2 else 0
    return hour, minute, second


def parse_sheet_date(value: object) -> Optional[datetime]:
    """Return the timestamp encoded in ``value`` or ``None``.

    Accepts ``dd/mm/yyyy`` and ``yyyy-mm-dd`` (each optionally followed by a
    time), ``date``/``datetime`` objects and spreadsheet serial numbers where
    the fraction is the time of day. Anything else is treated as unparseable;
    no guessing.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return _from_serial(float(value))

    text = str(value).strip()
    if not text:
        return None
    try:
        match = _BR_DATE_RE.match(text)
        if match:
            hour, minute, second = _parse_clock(match.group("time"))
            return datetime(
                int(match.group("y")), int(match.group("m")), int(match.group("d")), hour, minute, second
            )
        match = _ISO_DATE_RE.match(text)
        if match:
            hour, minute, second = _parse_clock(match.group("time"))
            return datetime(
                int(match.group("y")), int(match.group("m")), int(match.group("d")), hour, minute, second
            )
    except ValueError:
        return None
    if _SERIAL_RE.fullmatch(text):
        return _from_serial(float(text.replace(",", ".")))
    return None


def _from_serial(serial: float) -> Optional[datetime]:
    if serial <= 0 or serial > _MAX_SERIAL:
        return None
    result = SERIAL_EPOCH + timedelta(days=serial)
    # Sheets stores times with float noise; round to the nearest second.
    if result.microsecond >= 500000:
        result += timedelta(seconds=1)
    return result.replace(microsecond=0)


def parse_time(value: object) -> Optional[Tuple[int, int]]:
    """Return ``(hour, minute)`` for ``HH:MM[:SS]`` text, else ``None``."""

    if value is None:
        return None
    if isinstance(value, float) and 0 <= value < 1:
        minutes = int(round(value * 24 * 60))
        return (minutes // 60) % 24, minutes % 60
    match = _TIME_RE.match(str(value).strip())
    if not match:
        return None
    hour, minute = int(match.group("h")), int(match.group("m"))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def format_time(value: object) -> str:
    parsed = parse_time(value)
    return "" if parsed is None else f"{parsed[0]:02d}:{parsed[1]:02d}"


def _first(record: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return None


def record_timestamp(record: Mapping[str, Any]) -> Optional[datetime]:
    """Combine the date and time fields of a database or sheet record."""

    moment = parse_sheet_date(_first(record, "record_date", "reading_date", "date"))
    if moment is None:
        return None
    clock = parse_time(_first(record, "record_time", "reading_time", "time"))
    if clock is not None:
        moment = moment.replace(hour=clock[0], minute=clock[1], second=0)
    return moment


def horimeter_key(record: Mapping[str, Any]) -> Optional[RecordKey]:
    moment = parse_sheet_date(_first(record, "reading_date", "record_date", "date"))
    code = normalise_vehicle_code(_first(record, "vehicle_code", "vehicle"))
    if moment is None or not code:
        return None
    return code, moment.date()


def fuel_key(record: Mapping[str, Any]) -> Optional[RecordKey]:
    moment = parse_sheet_date(_first(record, "record_date", "date"))
    if moment is None:
        return None
    quantity = parse_ptbr_number(_first(record, "fuel_quantity", "quantity"))
    return (
        moment.date(),
        format_time(_first(record, "record_time", "time")),
        round(quantity or 0.0, 2),
    )


@dataclass
class RecordSource:
    """A list of records plus whether its source is authoritative."""

    records: Sequence[Mapping[str, Any]]
    authoritative: bool = False
    name: str = ""


def merge_records(
    sources: Iterable[RecordSource],
    key_func: Callable[[Mapping[str, Any]], Optional[RecordKey]],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Return one de-duplicated list, most recent first.

    On a key collision the authoritative record always wins, whatever order
    the sources are given in. Among secondary sources the first record seen
    for a key is kept. Records with an unparseable date or key are dropped.
    ``start`` and ``end`` bound the record date inclusively.
    """

    ordered = sorted(enumerate(sources), key=lambda item: (not item[1].authoritative, item[0]))
    merged: Dict[RecordKey, Dict[str, Any]] = {}
    stamps: Dict[RecordKey, datetime] = {}
    skipped = 0

    for _, source in ordered:
        for record in source.records:
            key = key_func(record)
            moment = record_timestamp(record)
            if key is None or moment is None:
                skipped += 1
                logger.debug("Skipping record with unparseable key from %s: %r", source.name, record)
                continue
            if start is not None and moment.date() < start:
                continue
            if end is not None and moment.date() > end:
                continue
            if key in merged:
                continue
            entry = dict(record)
            entry["_source"] = source.name or ("database" if source.authoritative else "sheet")
            merged[key] = entry
            stamps[key] = moment

    if skipped:
        logger.info("Ignored %d records without a usable date", skipped)

    # reverse=True keeps equal stamps in insertion order, authoritative first.
    keys = list(merged)
    keys.sort(key=lambda item: stamps[item], reverse=True)
    return [merged[key] for key in keys]


def find_duplicate_groups(
    records: Sequence[Mapping[str, Any]],
    *,
    window_minutes: int = 5,
) -> List[List[Dict[str, Any]]]:
    """Group fuel records that look like the same fill entered twice.

    Records match when vehicle, date, quantity and type agree and their
    times fall within ``window_minutes`` of the first record of the group.
    Each group is ordered oldest ``created_at`` first; the first entry is the
    one to keep.
    """

    buckets: Dict[Tuple[Any, ...], List[Tuple[datetime, Dict[str, Any]]]] = {}
    for record in records:
        moment = record_timestamp(record)
        if moment is None:
            continue
        quantity = parse_ptbr_number(_first(record, "fuel_quantity", "quantity")) or 0.0
        bucket = (
            normalise_vehicle_code(_first(record, "vehicle_code", "vehicle")),
            moment.date(),
            round(quantity, 2),
            str(_first(record, "record_type", "type") or "").lower(),
        )
        buckets.setdefault(bucket, []).append((moment, dict(record)))

    window = timedelta(minutes=window_minutes)
    groups: List[List[Dict[str, Any]]] = []
    for entries in buckets.values():
        entries.sort(key=lambda item: item[0])
        current: List[Tuple[datetime, Dict[str, Any]]] = []
        for moment, record in entries:
            if current and moment - current[0][0] > window:
                if len(current) > 1:
                    groups.append(_oldest_first(current))
                current = []
            current.append((moment, record))
        if len(current) > 1:
            groups.append(_oldest_first(current))
    return groups


def _oldest_first(entries: Sequence[Tuple[datetime, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return sorted((record for _, record in entries), key=lambda item: str(item.get("created_at") or ""))


def duplicate_ids_to_remove(records: Sequence[Mapping[str, Any]], *, window_minutes: int = 5) -> List[str]:
    ids: List[str] = []
    for group in find_duplicate_groups(records, window_minutes=window_minutes):
        ids.extend(str(record.get("id")) for record in group[1:] if record.get("id"))
    return ids


def _fill_signature(record: Mapping[str, Any]) -> Optional[Tuple[str, date, float, str]]:
    moment = record_timestamp(record)
    quantity = parse_ptbr_number(_first(record, "fuel_quantity", "quantity"))
    if moment is None or quantity is None:
        return None
    return (
        normalise_vehicle_code(_first(record, "vehicle_code", "vehicle")),
        moment.date(),
        round(quantity, 2),
        str(_first(record, "record_type", "type") or "").lower(),
    )


def find_duplicate_of(
    record: Mapping[str, Any],
    existing: Iterable[Mapping[str, Any]],
    *,
    window_minutes: int = 5,
) -> Optional[Dict[str, Any]]:
    """Return the stored fuel record that ``record`` would duplicate, if any.

    Candidates share vehicle, day and quantity, and the type when ``record``
    has one. A candidate within ``window_minutes`` of ``record`` is preferred;
    otherwise the first same-day candidate is returned. Records without a
    usable date or quantity never match.
    """

    signature = _fill_signature(record)
    if signature is None:
        return None
    vehicle, day, quantity, kind = signature
    moment = record_timestamp(record)
    timed = parse_time(_first(record, "record_time", "time")) is not None
    window = timedelta(minutes=window_minutes)

    fallback: Optional[Mapping[str, Any]] = None
    for candidate in existing:
        other = _fill_signature(candidate)
        if other is None or other[:3] != (vehicle, day, quantity):
            continue
        if kind and other[3] != kind:
            continue
        if timed and abs(record_timestamp(candidate) - moment) <= window:
            return dict(candidate)
        if fallback is None:
            fallback = candidate
    return dict(fallback) if fallback is not None else None


__all__ = [
    "RecordSource",
    "SERIAL_EPOCH",
    "duplicate_ids_to_remove",
    "find_duplicate_of",
    "find_duplicate_groups",
    "format_time",
    "fuel_key",
    "horimeter_key",
    "merge_records",
    "normalise_vehicle_code",
    "parse_ptbr_number",
    "parse_sheet_date",
    "parse_time",
    "record_timestamp",
]
