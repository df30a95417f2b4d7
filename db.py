"""SQLite-backed data access layer for FleetSync.

The database is the authoritative store. The sync core only reads it in
pages and issues single-row writes. There is one :class:`FleetDatabase`
object per path and no module-level connection state.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from fleetsync import app_paths

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(
    os.environ.get("FLEETSYNC_DB_PATH", str(app_paths.data_path("fleetsync.db")))
)

# ---------------------------------------------------------------------------
# Table metadata
# ---------------------------------------------------------------------------
SERVICE_ORDER_COLUMNS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "order_number": "TEXT",
    "vehicle_code": "TEXT",
    "vehicle_description": "TEXT",
    "order_date": "TEXT",
    "order_type": "TEXT",
    "priority": "TEXT",
    "status": "TEXT",
    "problem_description": "TEXT",
    "solution_description": "TEXT",
    "mechanic_name": "TEXT",
    "start_date": "TEXT",
    "end_date": "TEXT",
    "notes": "TEXT",
    "created_by": "TEXT",
    "entry_date": "TEXT",
    "entry_time": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
}

FUEL_RECORD_COLUMNS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "record_date": "TEXT",
    "record_time": "TEXT",
    "record_type": "TEXT",
    "category": "TEXT",
    "vehicle_code": "TEXT",
    "vehicle_description": "TEXT",
    "operator_name": "TEXT",
    "company": "TEXT",
    "work_site": "TEXT",
    "horimeter_previous": "REAL",
    "horimeter_current": "REAL",
    "km_previous": "REAL",
    "km_current": "REAL",
    "fuel_quantity": "REAL",
    "fuel_type": "TEXT",
    "location": "TEXT",
    "arla_quantity": "REAL",
    "supplier": "TEXT",
    "invoice_number": "TEXT",
    "unit_price": "REAL",
    "oil_type": "TEXT",
    "oil_quantity": "REAL",
    "lubricant": "TEXT",
    "filter_blow": "INTEGER NOT NULL DEFAULT 0",
    "observations": "TEXT",
    "synced_to_sheet": "INTEGER NOT NULL DEFAULT 0",
    "created_by": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
}

HORIMETER_COLUMNS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "vehicle_code": "TEXT",
    "reading_date": "TEXT",
    "reading_time": "TEXT",
    "previous_value": "REAL",
    "current_value": "REAL",
    "previous_km": "REAL",
    "current_km": "REAL",
    "operator": "TEXT",
    "observations": "TEXT",
    "source": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
}

VEHICLE_COLUMNS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "code": "TEXT NOT NULL",
    "description": "TEXT",
    "category": "TEXT",
    "company": "TEXT",
    "operator": "TEXT",
    "status": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
}

REQUEST_COLUMNS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "record_id": "TEXT NOT NULL",
    "record_table": "TEXT NOT NULL",
    "request_type": "TEXT NOT NULL",
    "proposed_changes": "TEXT",
    "requested_by": "TEXT",
    "request_reason": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'pending'",
    "requested_at": "TEXT NOT NULL",
    "reviewer_name": "TEXT",
    "reviewed_at": "TEXT",
    "review_notes": "TEXT",
}

TABLES: Dict[str, Dict[str, str]] = {
    "service_orders": SERVICE_ORDER_COLUMNS,
    "field_fuel_records": FUEL_RECORD_COLUMNS,
    "horimeter_readings": HORIMETER_COLUMNS,
    "vehicles": VEHICLE_COLUMNS,
    "field_record_requests": REQUEST_COLUMNS,
}

# Stable sort keys so pagination never skips or repeats a row.
TABLE_ORDER: Dict[str, str] = {
    "service_orders": "entry_date IS NOT NULL, entry_date, order_date, id",
    "field_fuel_records": "record_date, record_time, id",
    "horimeter_readings": "reading_date, reading_time, id",
    "vehicles": "code, id",
    "field_record_requests": "requested_at DESC, id",
}

BOOL_FIELDS = {"filter_blow", "synced_to_sheet"}
JSON_FIELDS = {"proposed_changes"}


class DatabaseError(RuntimeError):
    """Raised for invalid table/column access on the authoritative store."""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def generate_id() -> str:
    return str(uuid.uuid4())


def _columns(table: str) -> Dict[str, str]:
    try:
        return TABLES[table]
    except KeyError:
        raise DatabaseError(f"Unknown table: {table}") from None


def _check_fields(table: str, fields: Mapping[str, Any]) -> None:
    unknown = sorted(set(fields) - set(_columns(table)))
    if unknown:
        raise DatabaseError(f"Unknown columns for {table}: {', '.join(unknown)}")


def _encode(field: str, value: Any) -> Any:
    if field in BOOL_FIELDS:
        return 1 if value else 0
    if field in JSON_FIELDS and value is not None and not isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return value


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = {key: row[key] for key in row.keys()}
    for field in BOOL_FIELDS & data.keys():
        data[field] = bool(data[field])
    for field in JSON_FIELDS & data.keys():
        raw = data[field]
        if isinstance(raw, str) and raw:
            try:
                data[field] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Stored %s is not valid JSON; returning raw text", field)
    return data


class FleetDatabase:
    """Access to one SQLite file holding the fleet records."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path or DEFAULT_DB_PATH).resolve()
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for table, definitions in TABLES.items():
            columns = ",\n        ".join(f"{column} {definition}" for column, definition in definitions.items())
            conn.execute(f"CREATE TABLE IF NOT EXISTS {table} (\n        {columns}\n    )")

            existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
            for column, definition in definitions.items():
                if column not in existing:
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

        conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_entry ON service_orders(entry_date, order_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_fuel_synced ON field_fuel_records(synced_to_sheet)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_fuel_date ON field_fuel_records(record_date, record_time)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_status ON field_record_requests(status)")

    def initialize(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path)
            try:
                self._ensure_schema(conn)
                conn.commit()
            finally:
                conn.close()
            self._schema_ready = True

    def get_connection(self) -> sqlite3.Connection:
        self.initialize()
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Generic record access
    # ------------------------------------------------------------------
    def fetch_page(self, table: str, offset: int, limit: int) -> List[Dict[str, Any]]:
        """Return rows ``[offset, offset + limit)`` in the table's stable order."""

        _columns(table)
        if limit <= 0:
            return []
        with self.connection() as conn:
            cursor = conn.execute(
                f"SELECT * FROM {table} ORDER BY {TABLE_ORDER[table]} LIMIT ? OFFSET ?",
                (int(limit), max(0, int(offset))),
            )
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def fetch_record(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        _columns(table)
        with self.connection() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return _row_to_dict(row) if row else None

    def insert_record(self, table: str, values: Mapping[str, Any]) -> str:
        payload = dict(values)
        payload.setdefault("id", generate_id())
        if "created_at" in _columns(table):
            payload.setdefault("created_at", _utc_now_iso())
        if "updated_at" in _columns(table):
            payload.setdefault("updated_at", payload.get("created_at") or _utc_now_iso())
        _check_fields(table, payload)

        columns = list(payload)
        placeholders = ", ".join("?" for _ in columns)
        with self.connection() as conn:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                [_encode(column, payload[column]) for column in columns],
            )
        return str(payload["id"])

    def update_record(self, table: str, record_id: str, changes: Mapping[str, Any]) -> bool:
        """Apply ``changes`` to one row; untouched columns keep their values."""

        updates = {key: value for key, value in changes.items() if key != "id"}
        if not updates:
            return self.fetch_record(table, record_id) is not None
        if "updated_at" in _columns(table):
            updates.setdefault("updated_at", _utc_now_iso())
        _check_fields(table, updates)

        assignments = ", ".join(f"{column} = ?" for column in updates)
        params = [_encode(column, value) for column, value in updates.items()]
        params.append(record_id)
        with self.connection() as conn:
            cursor = conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)
            return cursor.rowcount > 0

    def delete_record(self, table: str, record_id: str) -> bool:
        _columns(table)
        with self.connection() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Fuel records
    # ------------------------------------------------------------------
    def fetch_unsynced_fuel(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM field_fuel_records WHERE synced_to_sheet = 0 "
                f"ORDER BY {TABLE_ORDER['field_fuel_records']} LIMIT ?",
                (int(limit),),
            )
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def mark_fuel_synced(self, record_id: str) -> bool:
        return self.update_record("field_fuel_records", record_id, {"synced_to_sheet": True})

    def fetch_fuel_on(self, record_date: str) -> List[Dict[str, Any]]:
        """Return the fuel records of one ``yyyy-mm-dd`` day, oldest first."""

        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM field_fuel_records WHERE record_date = ? ORDER BY created_at, id",
                (record_date,),
            )
            return [_row_to_dict(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Record requests
    # ------------------------------------------------------------------
    def insert_request(self, values: Mapping[str, Any]) -> str:
        payload = dict(values)
        payload.setdefault("requested_at", _utc_now_iso())
        payload.setdefault("status", "pending")
        return self.insert_record("field_record_requests", payload)

    def fetch_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_record("field_record_requests", request_id)

    def fetch_requests(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM field_record_requests"
        params: List[Any] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += f" ORDER BY {TABLE_ORDER['field_record_requests']}"
        with self.connection() as conn:
            return [_row_to_dict(row) for row in conn.execute(sql, params).fetchall()]

    def resolve_request(
        self,
        request_id: str,
        status: str,
        *,
        reviewer_name: str,
        reviewed_at: str,
        review_notes: Optional[str],
    ) -> bool:
        """Move a pending request to ``status``; returns ``False`` when it was not pending."""

        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE field_record_requests SET status = ?, reviewer_name = ?, reviewed_at = ?, "
                "review_notes = ? WHERE id = ? AND status = 'pending'",
                (status, reviewer_name, reviewed_at, review_notes, request_id),
            )
            return cursor.rowcount > 0


def open_database(path: Optional[Path] = None) -> FleetDatabase:
    database = FleetDatabase(path)
    database.initialize()
    return database


__all__: Tuple[str, ...] = (
    "DatabaseError",
    "FleetDatabase",
    "TABLES",
    "generate_id",
    "open_database",
)
