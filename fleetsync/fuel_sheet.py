"""Fuel records in the ``AbastecimentoCanteiro01`` worksheet.

Fuel records are saved with ``synced_to_sheet`` unset, after a check that
the same fill was not already entered. The push below appends each pending
record as one row, laid out under the sheet's current header, and flags it as
synced once the append succeeded.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from fleetsync.dedup import find_duplicate_of, format_time, parse_ptbr_number, parse_sheet_date
from fleetsync.schema import normalise_header
from fleetsync.sheets_client import FULL_WIDTH, TRANSPORT_ERRORS, SheetsClientError, a1_range

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10


def format_ptbr_number(value: object) -> str:
    """Format ``value`` as ``1.234,56``; zero or missing values give ``""``."""

    number = parse_ptbr_number(value)
    if not number:
        return ""
    text = f"{number:,.2f}"
    return text.replace(",", "\x00").replace(".", ",").replace("\x00", ".")


def _number(value: object) -> float:
    return parse_ptbr_number(value) or 0.0


def _yes(value: object) -> str:
    return "Sim" if _number(value) > 0 else ""


def build_fuel_sheet_row(record: Mapping[str, Any]) -> Dict[str, str]:
    """Return the sheet values of one fuel record keyed by header label."""

    record_type = str(record.get("record_type") or "")
    hor_prev = _number(record.get("horimeter_previous"))
    hor_curr = _number(record.get("horimeter_current"))
    km_prev = _number(record.get("km_previous"))
    km_curr = _number(record.get("km_current"))
    quantity = _number(record.get("fuel_quantity"))
    unit_price = _number(record.get("unit_price"))
    record_date = parse_sheet_date(record.get("record_date"))

    return {
        "id": str(record.get("id") or ""),
        "DATA": record_date.strftime("%d/%m/%Y") if record_date else str(record.get("record_date") or ""),
        "HORA": format_time(record.get("record_time")),
        "TIPO": "Entrada" if record_type.lower() == "entrada" else "Saida",
        "CATEGORIA": str(record.get("category") or ""),
        "VEICULO": str(record.get("vehicle_code") or ""),
        "POTENCIA": "",
        "DESCRICAO": str(record.get("vehicle_description") or ""),
        "MOTORISTA": str(record.get("operator_name") or ""),
        "EMPRESA": str(record.get("company") or ""),
        "OBRA": str(record.get("work_site") or ""),
        "HORIMETRO ANTERIOR": format_ptbr_number(hor_prev),
        "HORIMETRO ATUAL": format_ptbr_number(hor_curr),
        "INTERVALO HORAS": format_ptbr_number(hor_curr - hor_prev) if hor_curr > hor_prev else "",
        "KM ANTERIOR": format_ptbr_number(km_prev),
        "KM ATUAL": format_ptbr_number(km_curr),
        "INTERVALO KM": format_ptbr_number(km_curr - km_prev) if km_curr > km_prev else "",
        "QUANTIDADE": format_ptbr_number(quantity),
        "TIPO DE COMBUSTIVEL": str(record.get("fuel_type") or "Diesel"),
        "LOCAL": str(record.get("location") or ""),
        "ARLA": _yes(record.get("arla_quantity")),
        "QUANTIDADE DE ARLA": format_ptbr_number(record.get("arla_quantity")),
        "FORNECEDOR": str(record.get("supplier") or ""),
        "NOTA FISCAL": str(record.get("invoice_number") or ""),
        "VALOR UNITÁRIO": format_ptbr_number(unit_price),
        "VALOR TOTAL": format_ptbr_number(unit_price * quantity) if unit_price > 0 and quantity > 0 else "",
        "OBSERVAÇÃO": str(record.get("observations") or ""),
        "LUBRIFICAR": _yes(record.get("oil_quantity")),
        "LUBRIFICANTE": str(record.get("lubricant") or ""),
        "COMPLETAR ÓLEO": _yes(record.get("oil_quantity")),
        "TIPO ÓLEO": str(record.get("oil_type") or ""),
        "QUANTIDADE ÓLEO": format_ptbr_number(record.get("oil_quantity")),
        "SOPRA FILTRO": "Sim" if record.get("filter_blow") else "",
    }


def layout_row(header: List[str], values: Mapping[str, str]) -> List[str]:
    """Place ``values`` under ``header`` comparing labels after normalisation."""

    by_key = {normalise_header(label): value for label, value in values.items()}
    return [by_key.get(normalise_header(label), "") for label in header]


def push_pending_fuel(
    store: Any,
    client: Any,
    sheet_title: str = "AbastecimentoCanteiro01",
    *,
    limit: int = 100,
    delay: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Append unsynced fuel records to the sheet one at a time.

    Returns ``{"success", "synced", "failed", "total", "errors"}`` with at most
    ten error strings. A record that fails to append stays unsynced and is
    retried by the next push.
    """

    pending = store.fetch_unsynced_fuel(limit)
    if not pending:
        return {
            "success": True,
            "synced": 0,
            "failed": 0,
            "total": 0,
            "errors": [],
            "message": "No pending records to sync",
        }

    logger.info("Found %d pending fuel records to sync", len(pending))
    header_rows = client.read_range(a1_range(sheet_title, "1:1"))
    header = header_rows[0] if header_rows else []
    if not header:
        raise SheetsClientError(f"No headers found in {sheet_title} sheet")

    synced = 0
    failed = 0
    errors: List[str] = []
    for position, record in enumerate(pending):
        label = f"{record.get('vehicle_code')} ({record.get('record_date')})"
        try:
            row = layout_row(header, build_fuel_sheet_row(record))
            client.append_row(a1_range(sheet_title, f"A:{FULL_WIDTH}"), row)
        except (SheetsClientError, *TRANSPORT_ERRORS) as exc:
            logger.error("Failed to sync fuel record %s: %s", record.get("id"), exc)
            errors.append(f"{label}: {exc}")
            failed += 1
        else:
            if store.mark_fuel_synced(record["id"]):
                synced += 1
                logger.info("Synced fuel record %s %s", record.get("id"), label)
            else:
                logger.error("Could not flag fuel record %s as synced", record.get("id"))
        if position < len(pending) - 1:
            sleep(delay)

    return {
        "success": True,
        "synced": synced,
        "failed": failed,
        "total": len(pending),
        "errors": errors[:MAX_REPORTED_ERRORS],
    }


def save_fuel_record(
    store: Any,
    values: Mapping[str, Any],
    *,
    window_minutes: int = 5,
    allow_duplicate: bool = False,
) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
    """Insert a fuel record unless the same fill is already stored.

    Returns ``(record_id, None)`` after an insert, or ``(None, existing)``
    when ``existing`` looks like the same fill. The new record starts
    unsynced so the next push appends it to the sheet.
    """

    payload = dict(values)
    record_date = parse_sheet_date(payload.get("record_date"))
    if record_date is None:
        raise ValueError(f"Unparseable record date: {payload.get('record_date')!r}")
    payload["record_date"] = record_date.date().isoformat()
    payload["synced_to_sheet"] = False

    if not allow_duplicate:
        existing = find_duplicate_of(
            payload, store.fetch_fuel_on(payload["record_date"]), window_minutes=window_minutes
        )
        if existing is not None:
            logger.warning(
                "Fuel record for %s on %s duplicates %s; not saved",
                payload.get("vehicle_code"),
                payload["record_date"],
                existing.get("id"),
            )
            return None, existing

    record_id = store.insert_record("field_fuel_records", payload)
    logger.info("Saved fuel record %s for %s", record_id, payload.get("vehicle_code"))
    return record_id, None


__all__ = [
    "build_fuel_sheet_row",
    "format_ptbr_number",
    "layout_row",
    "parse_ptbr_number",
    "push_pending_fuel",
    "save_fuel_record",
]
