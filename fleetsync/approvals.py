"""Approval workflow for field requests to delete or edit a fuel record.

A request moves ``pending -> approved`` or ``pending -> rejected`` exactly
once. Approving a delete removes the database row and then, best effort,
the matching row of the fuel worksheet. The sheet has no foreign key, so the
row is located by vehicle code, date, time and a quantity within
:data:`QUANTITY_TOLERANCE`. Failing to find or remove it is logged and does
not undo the approval: the database is the source of truth.

Approved edits only touch the database. The worksheet picks them up on the
next full sync; deletes are propagated immediately and edits are not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from fleetsync.dedup import format_time, normalise_vehicle_code, parse_ptbr_number, parse_sheet_date
from fleetsync.google_credentials import CredentialsError
from fleetsync.schema import FUEL_FIELDS, NOT_FOUND, resolve_headers, row_to_record
from fleetsync.sheets_client import FULL_WIDTH, TRANSPORT_ERRORS, SheetsClientError, a1_range
from settings import ConfigurationError

logger = logging.getLogger(__name__)

QUANTITY_TOLERANCE = 0.01
FUEL_TABLE = "field_fuel_records"
REQUEST_TYPES = ("delete", "edit")
EDITABLE_FIELDS = (
    "fuel_quantity",
    "horimeter_current",
    "km_current",
    "arla_quantity",
    "observations",
)
_MATCH_FIELDS = ("vehicle_code", "date", "time", "quantity")


class ApprovalError(RuntimeError):
    """Base error for the request workflow."""


class RequestNotFoundError(ApprovalError):
    """Raised when a request id does not exist."""


class InvalidTransitionError(ApprovalError):
    """Raised when a resolved request is approved or rejected again."""


@dataclass
class RecordRequest:
    id: str
    record_id: str
    request_type: str
    status: str
    requested_by: str = ""
    request_reason: str = ""
    proposed_changes: Dict[str, Any] = field(default_factory=dict)
    requested_at: str = ""
    reviewer_name: Optional[str] = None
    reviewed_at: Optional[str] = None
    review_notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RecordRequest":
        proposed = row.get("proposed_changes")
        return cls(
            id=str(row["id"]),
            record_id=str(row["record_id"]),
            request_type=str(row["request_type"]),
            status=str(row["status"]),
            requested_by=str(row.get("requested_by") or ""),
            request_reason=str(row.get("request_reason") or ""),
            proposed_changes=dict(proposed) if isinstance(proposed, Mapping) else {},
            requested_at=str(row.get("requested_at") or ""),
            reviewer_name=row.get("reviewer_name"),
            reviewed_at=row.get("reviewed_at"),
            review_notes=row.get("review_notes"),
        )


@dataclass
class ApprovalOutcome:
    request: RecordRequest
    message: str
    sheet_row_removed: Optional[bool] = None


def editable_changes(proposed: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the proposed values that may be written to the record.

    Requests store either a flat mapping or ``{"original": ..., "proposed": ...}``.
    Only fields present in the proposal are returned.
    """

    source = proposed.get("proposed") if isinstance(proposed.get("proposed"), Mapping) else proposed
    return {key: source[key] for key in EDITABLE_FIELDS if key in source}


def find_matching_row(
    rows: Sequence[Sequence[str]],
    header_map: Mapping[str, int],
    record: Mapping[str, Any],
) -> Optional[int]:
    """Return the index in ``rows`` of the first row matching ``record``.

    Vehicle codes are compared after normalisation, dates as ``dd/mm/yyyy``,
    times as ``HH:MM`` and quantities within :data:`QUANTITY_TOLERANCE`.
    """

    record_date = parse_sheet_date(record.get("record_date"))
    if record_date is None:
        return None
    wanted_date = record_date.strftime("%d/%m/%Y")
    wanted_code = normalise_vehicle_code(record.get("vehicle_code"))
    wanted_time = format_time(record.get("record_time"))
    wanted_qty = parse_ptbr_number(record.get("fuel_quantity")) or 0.0

    for index, row in enumerate(rows):
        values = row_to_record(header_map, row)
        if normalise_vehicle_code(values["vehicle_code"]) != wanted_code:
            continue
        row_date = parse_sheet_date(values["date"])
        if row_date is None or row_date.strftime("%d/%m/%Y") != wanted_date:
            continue
        if format_time(values["time"]) != wanted_time:
            continue
        quantity = parse_ptbr_number(values["quantity"])
        if quantity is None or abs(quantity - wanted_qty) >= QUANTITY_TOLERANCE:
            continue
        return index
    return None


class ApprovalWorkflow:
    """Submit, approve and reject record requests."""

    def __init__(
        self,
        store: Any,
        client_factory: Callable[[], Any],
        *,
        sheet_title: str = "AbastecimentoCanteiro01",
        record_table: str = FUEL_TABLE,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self._client_factory = client_factory
        self.sheet_title = sheet_title
        self.record_table = record_table
        self._clock = clock

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def submit(
        self,
        record_id: str,
        request_type: str,
        requested_by: str,
        *,
        reason: str = "",
        proposed_changes: Optional[Mapping[str, Any]] = None,
    ) -> RecordRequest:
        if request_type not in REQUEST_TYPES:
            raise ApprovalError(f"Unknown request type: {request_type}")
        if self.store.fetch_record(self.record_table, record_id) is None:
            raise ApprovalError(f"Record {record_id} does not exist")
        proposed = dict(proposed_changes or {})
        if request_type == "edit" and not editable_changes(proposed):
            raise ApprovalError("An edit request needs at least one editable field")

        request_id = self.store.insert_request(
            {
                "record_id": record_id,
                "record_table": self.record_table,
                "request_type": request_type,
                "proposed_changes": proposed,
                "requested_by": requested_by,
                "request_reason": reason,
                "requested_at": self._now(),
            }
        )
        logger.info("Request %s (%s) submitted for record %s", request_id, request_type, record_id)
        return self.get(request_id)

    def get(self, request_id: str) -> RecordRequest:
        row = self.store.fetch_request(request_id)
        if row is None:
            raise RequestNotFoundError(f"Request {request_id} not found")
        return RecordRequest.from_row(row)

    def pending(self) -> List[RecordRequest]:
        return [RecordRequest.from_row(row) for row in self.store.fetch_requests("pending")]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def approve(self, request_id: str, reviewer: str, notes: Optional[str] = None) -> ApprovalOutcome:
        request = self._pending_request(request_id)
        removed: Optional[bool] = None

        if request.request_type == "delete":
            record = self.store.fetch_record(self.record_table, request.record_id)
            self.store.delete_record(self.record_table, request.record_id)
            if record is None:
                logger.warning("Record %s was already gone from the database", request.record_id)
                removed = False
            else:
                removed = self._remove_sheet_row(record)
            if removed:
                message = "Deletion approved; record removed from the database and the sheet"
            else:
                message = "Deletion approved; record was not found on the sheet (already removed)"
        else:
            changes = editable_changes(request.proposed_changes)
            if not self.store.update_record(self.record_table, request.record_id, changes):
                raise ApprovalError(f"Record {request.record_id} no longer exists; edit not applied")
            logger.info("Applied %s to record %s", ", ".join(sorted(changes)), request.record_id)
            message = "Edit approved; changes applied and will reach the sheet on the next sync"

        resolved = self._resolve(request, "approved", reviewer, notes)
        return ApprovalOutcome(request=resolved, message=message, sheet_row_removed=removed)

    def reject(self, request_id: str, reviewer: str, notes: Optional[str] = None) -> ApprovalOutcome:
        request = self._pending_request(request_id)
        resolved = self._resolve(request, "rejected", reviewer, notes)
        return ApprovalOutcome(request=resolved, message="Request rejected")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _now(self) -> str:
        return self._clock().replace(microsecond=0).isoformat()

    def _pending_request(self, request_id: str) -> RecordRequest:
        request = self.get(request_id)
        if request.status != "pending":
            raise InvalidTransitionError(f"Request {request_id} is already {request.status}")
        return request

    def _resolve(
        self,
        request: RecordRequest,
        status: str,
        reviewer: str,
        notes: Optional[str],
    ) -> RecordRequest:
        updated = self.store.resolve_request(
            request.id,
            status,
            reviewer_name=reviewer or "Admin",
            reviewed_at=self._now(),
            review_notes=notes or None,
        )
        if not updated:
            raise InvalidTransitionError(f"Request {request.id} was resolved concurrently")
        logger.info("Request %s %s by %s", request.id, status, reviewer)
        return self.get(request.id)

    def _remove_sheet_row(self, record: Mapping[str, Any]) -> bool:
        try:
            client = self._client_factory()
            rows = client.read_range(a1_range(self.sheet_title, f"A:{FULL_WIDTH}"))
            if not rows:
                logger.warning("Sheet %s is empty; nothing to remove", self.sheet_title)
                return False
            header_map = resolve_headers(rows[0], FUEL_FIELDS)
            missing = [name for name in _MATCH_FIELDS if header_map[name] == NOT_FOUND]
            if missing:
                logger.warning(
                    "Sheet %s lacks columns %s; cannot locate record %s",
                    self.sheet_title,
                    ", ".join(missing),
                    record.get("id"),
                )
                return False
            index = find_matching_row(rows[1:], header_map, record)
            if index is None:
                logger.warning("Record %s not found on sheet %s", record.get("id"), self.sheet_title)
                return False
            client.delete_row(self.sheet_title, index + 2)
            return True
        except (SheetsClientError, CredentialsError, ConfigurationError, *TRANSPORT_ERRORS) as exc:
            logger.error("Could not propagate deletion of %s to the sheet: %s", record.get("id"), exc)
            return False


__all__ = [
    "ApprovalError",
    "ApprovalOutcome",
    "ApprovalWorkflow",
    "EDITABLE_FIELDS",
    "InvalidTransitionError",
    "QUANTITY_TOLERANCE",
    "RecordRequest",
    "RequestNotFoundError",
    "editable_changes",
    "find_matching_row",
]
