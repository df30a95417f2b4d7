"""Google Sheets client primitives with A1 range handling.

This module is the only place that talks to the Sheets API directly. It
exposes a handful of primitives (read, clear, grow, write, delete a row,
append a row) and knows nothing about fleet records. Each public method is
a single HTTP call; sequencing them safely is the job of the callers in
:mod:`fleetsync.order_sync` and :mod:`fleetsync.approvals`.

Worksheet titles are quoted according to A1 rules so that titles with spaces
or punctuation never produce "Unable to parse range" errors. All failures
surface as subclasses of :class:`SheetsClientError`, whether the API answered
with an error or the connection broke before it could. There is no retry loop
here: a failed call ends the current run.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Sequence

import httplib2
from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

FULL_WIDTH = "ZZ"
_SIMPLE_TITLE_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Timeouts, resets and DNS failures raised below googleapiclient.
TRANSPORT_ERRORS = (OSError, httplib2.HttpLib2Error, TransportError)


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class SheetsApiResponseError(SheetsClientError):
    """Raised when the Google API returns an error response."""

    def __init__(self, message: str, *, status: int = 0, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class SheetsTransportError(SheetsClientError):
    """Raised when a request fails without any API response."""


class SheetNotFoundError(SheetsClientError):
    """Raised when a worksheet title is absent from the spreadsheet."""


def quote_sheet_title(title: str) -> str:
    """Return ``title`` formatted for A1 notation."""

    normalised = (title or "").strip()
    if not normalised:
        raise SheetsClientError("Worksheet title must not be empty.")
    if _SIMPLE_TITLE_RE.fullmatch(normalised):
        return normalised
    escaped = normalised.replace("'", "''")
    return f"'{escaped}'"


def a1_range(title: str, cells: str = f"A:{FULL_WIDTH}") -> str:
    return f"{quote_sheet_title(title)}!{cells}"


def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", 0)
    try:
        return int(status or 0)
    except (TypeError, ValueError):
        return 0


def _http_body(exc: HttpError) -> str:
    content = getattr(exc, "content", b"")
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return str(content or "")


def _api_error(action: str, exc: HttpError) -> SheetsApiResponseError:
    status = _http_status(exc)
    body = _http_body(exc)
    logger.error("Sheets %s failed (HTTP %s): %s", action, status, body or exc)
    return SheetsApiResponseError(f"Sheet {action} error: {exc}", status=status, body=body)


def _transport_error(action: str, exc: Exception) -> SheetsTransportError:
    logger.error("Sheets %s failed without a response: %s: %s", action, type(exc).__name__, exc)
    return SheetsTransportError(f"Sheet {action} error: {type(exc).__name__}: {exc}")


def build_service(token_provider) -> Any:
    """Build a Sheets v4 service authorised with a freshly exchanged token."""

    token = token_provider.fetch_token()
    credentials = Credentials(token)
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


class GoogleSheetsClient:
    """Primitive operations over one spreadsheet."""

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        service: Any = None,
        token_provider: Any = None,
    ) -> None:
        if not spreadsheet_id:
            raise SheetsClientError("Spreadsheet id must be configured.")
        if service is None and token_provider is None:
            raise SheetsClientError("Either a service or a token provider is required.")
        self._spreadsheet_id = spreadsheet_id
        self._service = service if service is not None else build_service(token_provider)

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    def _execute(self, action: str, request: Any) -> Any:
        try:
            return request.execute()
        except HttpError as exc:
            raise _api_error(action, exc) from exc
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(action, exc) from exc

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------
    def read_range(self, range_ref: str) -> List[List[str]]:
        """Return the cells of ``range_ref`` as strings; ``[]`` when empty."""

        response = self._execute(
            "read",
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=self._spreadsheet_id, range=range_ref, majorDimension="ROWS"),
        )
        values = response.get("values", []) if isinstance(response, Mapping) else []
        return [["" if cell is None else str(cell) for cell in row] for row in values]

    def clear_range(self, range_ref: str) -> None:
        """Empty the cells of ``range_ref``; rows and columns are kept."""

        self._execute(
            "clear",
            self._service.spreadsheets()
            .values()
            .clear(spreadsheetId=self._spreadsheet_id, range=range_ref, body={}),
        )
        logger.debug("Cleared %s", range_ref)

    def write_block(self, range_ref: str, rows: Sequence[Sequence[Any]]) -> int:
        """Write ``rows`` at ``range_ref`` with user-entered interpretation."""

        body = {"majorDimension": "ROWS", "values": [list(row) for row in rows]}
        self._execute(
            "write",
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=range_ref,
                valueInputOption="USER_ENTERED",
                body=body,
            ),
        )
        return len(body["values"])

    def append_row(self, range_ref: str, row: Sequence[Any]) -> None:
        self._execute(
            "append",
            self._service.spreadsheets()
            .values()
            .append(
                spreadsheetId=self._spreadsheet_id,
                range=range_ref,
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [list(row)]},
            ),
        )

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------
    def _sheet_properties(self, sheet_title: str) -> Dict[str, Any]:
        metadata = self._execute(
            "metadata",
            self._service.spreadsheets().get(
                spreadsheetId=self._spreadsheet_id,
                includeGridData=False,
                fields="sheets.properties",
            ),
        )
        for sheet in metadata.get("sheets", []) if isinstance(metadata, Mapping) else []:
            props = sheet.get("properties", {}) if isinstance(sheet, Mapping) else {}
            if props.get("title") == sheet_title:
                return dict(props)
        raise SheetNotFoundError(f'Sheet "{sheet_title}" not found')

    def _batch_update(self, action: str, requests: List[Dict[str, Any]]) -> None:
        self._execute(
            action,
            self._service.spreadsheets().batchUpdate(
                spreadsheetId=self._spreadsheet_id, body={"requests": requests}
            ),
        )

    def ensure_capacity(self, sheet_title: str, needed_rows: int, *, buffer: int = 100) -> int:
        """Grow ``sheet_title`` to at least ``needed_rows`` rows.

        When growth is needed, ``buffer`` extra rows are appended so the next
        few syncs do not need another resize. Returns the resulting row count.
        """

        props = self._sheet_properties(sheet_title)
        grid = props.get("gridProperties", {}) or {}
        current = int(grid.get("rowCount", 0) or 0)
        if current >= needed_rows:
            return current

        rows_to_add = needed_rows - current + max(0, buffer)
        logger.info(
            "Expanding sheet %s from %d to %d rows", sheet_title, current, current + rows_to_add
        )
        self._batch_update(
            "expand rows",
            [
                {
                    "appendDimension": {
                        "sheetId": props.get("sheetId"),
                        "dimension": "ROWS",
                        "length": rows_to_add,
                    }
                }
            ],
        )
        return current + rows_to_add

    def delete_row(self, sheet_title: str, row_index: int) -> None:
        """Remove the 1-based ``row_index`` from ``sheet_title``."""

        if row_index < 2:
            raise ValueError("Refusing to delete the header row")
        props = self._sheet_properties(sheet_title)
        self._batch_update(
            "delete row",
            [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": props.get("sheetId"),
                            "dimension": "ROWS",
                            "startIndex": row_index - 1,
                            "endIndex": row_index,
                        }
                    }
                }
            ],
        )
        logger.info("Deleted row %d from sheet %s", row_index, sheet_title)


def build_client(spreadsheet_id: str, token_provider: Any) -> GoogleSheetsClient:
    """Factory used per session: every call exchanges a new token."""

    return GoogleSheetsClient(spreadsheet_id, token_provider=token_provider)


__all__ = [
    "FULL_WIDTH",
    "GoogleSheetsClient",
    "SheetNotFoundError",
    "SheetsApiResponseError",
    "SheetsClientError",
    "SheetsTransportError",
    "TRANSPORT_ERRORS",
    "a1_range",
    "build_client",
    "build_service",
    "quote_sheet_title",
]
