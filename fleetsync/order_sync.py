"""Full batch sync of service orders into the ``Ordem_Servico`` worksheet.

A run is a strict sequence of stages, each finishing before the next starts:

1. page through every service order in the database;
2. read the vehicle registry sheet once and index it by vehicle code;
3. read the destination header and synthesise one row per order;
4. make sure the destination has enough rows;
5. clear the data area and write the rows back in chunks;
6. report how many records were read and how many rows were written.

Nothing destructive happens before stage 5. A failure during stage 5 leaves
the sheet holding only a prefix of the data, so it is raised as
:class:`PartialWriteError` with the chunk and row range involved. There are no
retries: the next full run clears and rewrites everything again.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from db import DatabaseError, FleetDatabase
from fleetsync.dedup import format_time, normalise_vehicle_code, parse_sheet_date, parse_time
from fleetsync.google_credentials import CredentialsError, ServiceAccountTokenProvider
from fleetsync.schema import (
    NOT_FOUND,
    SERVICE_ORDER_FIELDS,
    VEHICLE_FIELDS,
    record_to_row,
    resolve_headers,
    row_to_record,
)
from fleetsync.sheets_client import FULL_WIDTH, TRANSPORT_ERRORS, SheetsClientError, a1_range, build_client
from fleetsync.single_instance import SingleInstanceError, single_run
from settings import ConfigurationError

logger = logging.getLogger(__name__)

ORDER_TABLE = "service_orders"
FINALIZED_MARKER = "Finalizada"


class SheetsSyncError(RuntimeError):
    """Raised when a batch sync cannot complete."""


class PartialWriteError(SheetsSyncError):
    """Raised when a chunk write fails after the data range was cleared."""

    def __init__(
        self,
        message: str,
        *,
        chunk_index: int,
        first_row: int,
        last_row: int,
        rows_written: int,
    ) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
        self.first_row = first_row
        self.last_row = last_row
        self.rows_written = rows_written


@dataclass
class VehicleInfo:
    company: str = ""
    operator: str = ""


@dataclass
class SyncReport:
    total_records: int
    rows_written: int
    sheet_title: str

    @property
    def complete(self) -> bool:
        return self.total_records == self.rows_written

    @property
    def message(self) -> str:
        return f"{self.rows_written} service orders synced to sheet {self.sheet_title}"

    def as_payload(self) -> Dict[str, Any]:
        return {
            "success": self.complete,
            "totalOrders": self.total_records,
            "rowsWritten": self.rows_written,
            "message": self.message,
        }


def format_date(value: object) -> str:
    parsed = parse_sheet_date(value)
    return parsed.strftime("%d/%m/%Y") if parsed else ""


def _clock_of(value: object) -> str:
    """Return ``HH:MM`` from a timestamp only when it carries a time."""

    text = str(value or "")
    if ":" not in text:
        return ""
    parsed = parse_sheet_date(text)
    return parsed.strftime("%H:%M") if parsed else ""


def is_finalized(order: Mapping[str, Any]) -> bool:
    return FINALIZED_MARKER in str(order.get("status") or "")


def compute_downtime(
    entry_date: object,
    entry_time: object,
    end: object,
    *,
    finalized: bool,
    now: datetime,
) -> str:
    """Return elapsed downtime as ``"{d}d {h}h"`` or ``"{h}h"``.

    The span runs from the entry date and time to the recorded end when the
    order is finalised, otherwise to ``now``. Whole hours are counted. Missing
    or unparseable timestamps and non-positive spans give ``""`` so that an
    unknown downtime never reads as zero.
    """

    entry_day = parse_sheet_date(entry_date)
    clock = parse_time(entry_time)
    if entry_day is None or clock is None:
        return ""
    entry = entry_day.replace(hour=clock[0], minute=clock[1], second=0)

    if finalized and end:
        reference = parse_sheet_date(end)
        if reference is None:
            return ""
    else:
        reference = now

    seconds = (reference - entry).total_seconds()
    if seconds <= 0:
        return ""
    total_hours = int(seconds // 3600)
    days, hours = divmod(total_hours, 24)
    return f"{days}d {hours}h" if days > 0 else f"{hours}h"


def build_vehicle_index(rows: Sequence[Sequence[str]]) -> Dict[str, VehicleInfo]:
    """Index registry rows by normalised vehicle code.

    A registry without a code column yields an empty index; missing operator
    or company columns yield empty strings.
    """

    if not rows:
        return {}
    header_map = resolve_headers(rows[0], VEHICLE_FIELDS)
    if header_map["code"] == NOT_FOUND:
        logger.warning("Vehicle registry has no code column; lookups will be empty")
        return {}

    index: Dict[str, VehicleInfo] = {}
    for row in rows[1:]:
        record = row_to_record(header_map, row)
        code = normalise_vehicle_code(record["code"])
        if code:
            index[code] = VehicleInfo(company=record["company"], operator=record["operator"])
    return index


def build_order_values(
    order: Mapping[str, Any],
    vehicles: Mapping[str, VehicleInfo],
    *,
    now: datetime,
) -> Dict[str, str]:
    """Compute every destination field for one service order."""

    info = vehicles.get(normalise_vehicle_code(order.get("vehicle_code")), VehicleInfo())
    finalized = is_finalized(order)
    end_date = order.get("end_date") or ""
    downtime = compute_downtime(
        order.get("entry_date"),
        order.get("entry_time"),
        end_date,
        finalized=finalized,
        now=now,
    )
    return {
        "Data": format_date(order.get("entry_date") or order.get("order_date")),
        "Veiculo": str(order.get("vehicle_code") or ""),
        "Empresa": info.company,
        "Motorista": info.operator or str(order.get("created_by") or ""),
        "Potencia": str(order.get("vehicle_description") or ""),
        "Problema": str(order.get("problem_description") or ""),
        "Servico": str(order.get("solution_description") or ""),
        "Mecanico": str(order.get("mechanic_name") or ""),
        "Data_Entrada": format_date(order.get("entry_date")),
        "Data_Saida": format_date(end_date) if finalized else "",
        "Hora_Entrada": format_time(order.get("entry_time")),
        "Hora_Saida": _clock_of(end_date) if finalized else "",
        "Horas_Parado": downtime if finalized else "",
        "Observacao": str(order.get("notes") or ""),
        "Status": str(order.get("status") or ""),
    }


class ServiceOrderSync:
    """Clear-and-rewrite sync of every service order into one worksheet."""

    def __init__(
        self,
        store: Any,
        client: Any,
        *,
        sheet_title: str = "Ordem_Servico",
        vehicle_sheet: str = "Veiculo",
        page_size: int = 1000,
        chunk_size: int = 500,
        chunk_delay: float = 0.5,
        capacity_buffer: int = 100,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if page_size <= 0 or chunk_size <= 0:
            raise ValueError("page_size and chunk_size must be positive")
        self.store = store
        self.client = client
        self.sheet_title = sheet_title
        self.vehicle_sheet = vehicle_sheet
        self.page_size = page_size
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.capacity_buffer = capacity_buffer
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def fetch_all(self) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = self.store.fetch_page(ORDER_TABLE, offset, self.page_size)
            if not page:
                break
            records.extend(page)
            offset += len(page)
            if len(page) < self.page_size:
                break
        logger.info("Fetched %d service orders from the database", len(records))
        return records

    def load_vehicles(self) -> Dict[str, VehicleInfo]:
        rows = self.client.read_range(a1_range(self.vehicle_sheet, f"A1:{FULL_WIDTH}"))
        index = build_vehicle_index(rows)
        logger.info("Built vehicle lookup with %d entries", len(index))
        return index

    def read_header(self) -> List[str]:
        rows = self.client.read_range(a1_range(self.sheet_title, f"A1:{FULL_WIDTH}1"))
        header = rows[0] if rows else []
        if not any(cell.strip() for cell in header):
            raise SheetsSyncError(f"No headers found in {self.sheet_title} sheet")
        return header

    def build_rows(
        self,
        orders: Sequence[Mapping[str, Any]],
        header: Sequence[str],
        vehicles: Mapping[str, VehicleInfo],
    ) -> List[List[str]]:
        header_map = resolve_headers(header, SERVICE_ORDER_FIELDS)
        missing = [field for field, index in header_map.items() if index == NOT_FOUND]
        if missing:
            logger.info("Columns not present in %s: %s", self.sheet_title, ", ".join(missing))
        now = self._clock()
        return [
            record_to_row(header_map, build_order_values(order, vehicles, now=now), len(header))
            for order in orders
        ]

    def write_rows(self, rows: Sequence[Sequence[str]]) -> int:
        self.client.clear_range(a1_range(self.sheet_title, f"A2:{FULL_WIDTH}"))
        logger.info("Cleared existing data in %s", self.sheet_title)

        written = 0
        total = len(rows)
        for chunk_index, start in enumerate(range(0, total, self.chunk_size)):
            chunk = rows[start : start + self.chunk_size]
            first_row = start + 2
            last_row = first_row + len(chunk) - 1
            range_ref = a1_range(self.sheet_title, f"A{first_row}:{FULL_WIDTH}{last_row}")
            try:
                self.client.write_block(range_ref, chunk)
            except (SheetsClientError, *TRANSPORT_ERRORS) as exc:
                logger.error(
                    "Chunk %d (rows %d-%d) failed after clearing %s; %d of %d rows written: %s",
                    chunk_index,
                    first_row,
                    last_row,
                    self.sheet_title,
                    written,
                    total,
                    exc,
                )
                raise PartialWriteError(
                    f"Write failed for chunk {chunk_index} (rows {first_row}-{last_row}) "
                    f"after {written} of {total} rows: {exc}",
                    chunk_index=chunk_index,
                    first_row=first_row,
                    last_row=last_row,
                    rows_written=written,
                ) from exc
            written += len(chunk)
            logger.info("Written %d/%d rows", written, total)
            if start + self.chunk_size < total:
                self._sleep(self.chunk_delay)
        return written

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self) -> SyncReport:
        logger.info("Starting batch sync into %s", self.sheet_title)
        orders = self.fetch_all()
        vehicles = self.load_vehicles()
        header = self.read_header()
        rows = self.build_rows(orders, header, vehicles)
        self.client.ensure_capacity(self.sheet_title, len(orders) + 2, buffer=self.capacity_buffer)

        written = self.write_rows(rows)
        report = SyncReport(total_records=len(orders), rows_written=written, sheet_title=self.sheet_title)
        if not report.complete:
            logger.error(
                "Batch sync incomplete: %d records read but %d rows written",
                report.total_records,
                report.rows_written,
            )
        else:
            logger.info("Batch sync completed: %s", report.message)
        return report


def run_batch_sync(
    settings: Any,
    *,
    store: Any = None,
    client: Any = None,
    lock_directory: Optional[Path] = None,
) -> Dict[str, Any]:
    """Run one batch sync and return the trigger payload.

    Returns ``{"success", "totalOrders", "rowsWritten", "message"}`` or
    ``{"error": message}``. Overlapping runs against the same sheet are
    refused through the run lock.
    """

    try:
        with single_run(f"sync-{settings.service_order_sheet}", directory=lock_directory):
            if client is None:
                settings.require_google()
                provider = ServiceAccountTokenProvider(
                    settings.service_account_email,
                    settings.private_key,
                    scopes=settings.scopes,
                )
                client = build_client(settings.spreadsheet_id, provider)
            if store is None:
                store = FleetDatabase(Path(settings.db_path))

            report = ServiceOrderSync(
                store,
                client,
                sheet_title=settings.service_order_sheet,
                vehicle_sheet=settings.vehicle_sheet,
                page_size=settings.page_size,
                chunk_size=settings.chunk_size,
                chunk_delay=settings.chunk_delay,
                capacity_buffer=settings.capacity_buffer,
            ).run()
    except (
        ConfigurationError,
        CredentialsError,
        SheetsClientError,
        SheetsSyncError,
        SingleInstanceError,
        DatabaseError,
        sqlite3.Error,
        *TRANSPORT_ERRORS,
    ) as exc:
        logger.error("Batch sync error: %s", exc)
        return {"error": str(exc)}

    payload = report.as_payload()
    if not report.complete:
        payload["error"] = (
            f"Only {report.rows_written} of {report.total_records} rows were written to "
            f"{report.sheet_title}"
        )
    return payload


__all__ = [
    "PartialWriteError",
    "ServiceOrderSync",
    "SheetsSyncError",
    "SyncReport",
    "VehicleInfo",
    "build_order_values",
    "build_vehicle_index",
    "compute_downtime",
    "format_date",
    "is_finalized",
    "run_batch_sync",
]
