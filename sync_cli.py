"""Command line entry point for FleetSync sync and approval tasks."""

from __future__ import annotations

import argparse
import base64
import json
import logging
import mimetypes
import sqlite3
import sys
from datetime import date
from pathlib import Path
from typing import Callable

from db import DatabaseError, FleetDatabase
from fleetsync import approvals, dedup, fuel_sheet, horimeters, ocr, order_sync
from fleetsync.google_credentials import CredentialsError, ServiceAccountTokenProvider
from fleetsync.logging_config import configure_logging
from fleetsync.sheets_client import GoogleSheetsClient, SheetsClientError, build_client
from fleetsync.single_instance import SingleInstanceError, single_run
from settings import ConfigurationError, FleetSyncSettings, load_settings

logger = logging.getLogger(__name__)

_HANDLED_ERRORS = (
    ConfigurationError,
    CredentialsError,
    SheetsClientError,
    DatabaseError,
    sqlite3.Error,
    approvals.ApprovalError,
    SingleInstanceError,
    ocr.OcrError,
)


def _client_factory(settings: FleetSyncSettings) -> Callable[[], GoogleSheetsClient]:
    def factory() -> GoogleSheetsClient:
        settings.require_google()
        provider = ServiceAccountTokenProvider(
            settings.service_account_email,
            settings.private_key,
            scopes=settings.scopes,
        )
        return build_client(settings.spreadsheet_id, provider)

    return factory


def _workflow(settings: FleetSyncSettings) -> approvals.ApprovalWorkflow:
    return approvals.ApprovalWorkflow(
        FleetDatabase(Path(settings.db_path)),
        _client_factory(settings),
        sheet_title=settings.fuel_sheet,
    )


def command_sync_orders(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    result = order_sync.run_batch_sync(settings)
    if "error" in result:
        print(f"Error: {result['error']}", file=sys.stderr)
        return 1
    print(result["message"])
    print(f"Orders read  : {result['totalOrders']}")
    print(f"Rows written : {result['rowsWritten']}")
    return 0


def command_push_fuel(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    with single_run(f"push-{settings.fuel_sheet}"):
        client = _client_factory(settings)()
        result = fuel_sheet.push_pending_fuel(
            FleetDatabase(Path(settings.db_path)),
            client,
            settings.fuel_sheet,
            limit=args.limit,
        )
    print(f"Synced {result['synced']} of {result['total']} pending records ({result['failed']} failed)")
    for error in result["errors"]:
        print(f"  {error}", file=sys.stderr)
    return 0 if result["failed"] == 0 else 1


def command_requests(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    pending = _workflow(settings).pending()
    if not pending:
        print("No pending requests.")
        return 0
    for request in pending:
        reason = f" - {request.request_reason}" if request.request_reason else ""
        print(
            f"{request.id}  {request.request_type:<6}  record={request.record_id}  "
            f"by={request.requested_by or '?'}  at={request.requested_at}{reason}"
        )
    return 0


def command_approve(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    outcome = _workflow(settings).approve(args.request_id, args.reviewer, args.notes)
    print(outcome.message)
    return 0


def command_reject(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    outcome = _workflow(settings).reject(args.request_id, args.reviewer, args.notes)
    print(outcome.message)
    return 0


def command_duplicates(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    store = FleetDatabase(Path(settings.db_path))
    records = []
    offset = 0
    page_size = settings.page_size
    while True:
        page = store.fetch_page("field_fuel_records", offset, page_size)
        records.extend(page)
        offset += len(page)
        if len(page) < page_size:
            break

    groups = dedup.find_duplicate_groups(records, window_minutes=args.window)
    if not groups:
        print("No duplicate fuel records found.")
        return 0
    for group in groups:
        keep, *drop = group
        print(
            f"{keep.get('vehicle_code')} {keep.get('record_date')}: keep {keep.get('id')}, "
            f"drop {', '.join(str(record.get('id')) for record in drop)}"
        )
    if args.apply:
        removed = 0
        for record_id in dedup.duplicate_ids_to_remove(records, window_minutes=args.window):
            if store.delete_record("field_fuel_records", record_id):
                removed += 1
        print(f"Removed {removed} duplicate records.")
    return 0


def command_add_fuel(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    values = {
        "vehicle_code": args.vehicle,
        "record_date": args.date,
        "record_time": args.time,
        "record_type": args.type,
        "fuel_quantity": args.quantity,
        "operator_name": args.operator,
        "observations": args.notes,
    }
    try:
        record_id, existing = fuel_sheet.save_fuel_record(
            FleetDatabase(Path(settings.db_path)),
            {key: value for key, value in values.items() if value is not None},
            window_minutes=args.window,
            allow_duplicate=args.force,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if existing is not None:
        print(
            f"Error: same fill already saved as {existing.get('id')} "
            f"at {existing.get('record_time') or '--:--'}; use --force to save anyway",
            file=sys.stderr,
        )
        return 1
    print(f"Saved fuel record {record_id}")
    return 0


def command_horimeters(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    readings = horimeters.load_horimeter_history(
        FleetDatabase(Path(settings.db_path)),
        _client_factory(settings)(),
        settings.horimeter_sheet,
        start=args.start,
        end=args.end,
        page_size=settings.page_size,
    )
    for reading in readings:
        print(
            f"{reading.get('reading_date')} {reading.get('reading_time') or '--:--'}  "
            f"{reading.get('vehicle_code')}  {reading.get('current_value')}  [{reading['_source']}]"
        )
    print(f"{len(readings)} readings")
    return 0


def command_ocr(args: argparse.Namespace, settings: FleetSyncSettings) -> int:
    image_path = Path(args.image)
    try:
        content = image_path.read_bytes()
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    mime = mimetypes.guess_type(image_path.name)[0] or "image/jpeg"
    data_url = f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"

    result = ocr.OcrClient(settings.ocr_service_url, settings.ocr_api_key).recognise(data_url, args.type)
    print(json.dumps({"success": result.success, "value": result.value, "rawText": result.raw_text}))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FleetSync database to Google Sheets tool")
    parser.add_argument("--settings", help="Path to a JSON settings file")
    parser.add_argument("--verbose", action="store_true", help="Also log to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync-orders", help="Rewrite the service order sheet from the database")
    sync_parser.set_defaults(func=command_sync_orders)

    push_parser = subparsers.add_parser("push-fuel", help="Append unsynced fuel records to the fuel sheet")
    push_parser.add_argument("--limit", type=int, default=100, help="Maximum records per run")
    push_parser.set_defaults(func=command_push_fuel)

    requests_parser = subparsers.add_parser("requests", help="List pending delete/edit requests")
    requests_parser.set_defaults(func=command_requests)

    for name, func, help_text in (
        ("approve", command_approve, "Approve a pending request"),
        ("reject", command_reject, "Reject a pending request"),
    ):
        action_parser = subparsers.add_parser(name, help=help_text)
        action_parser.add_argument("request_id")
        action_parser.add_argument("--reviewer", default="Admin", help="Name recorded on the request")
        action_parser.add_argument("--notes", help="Review notes")
        action_parser.set_defaults(func=func)

    dup_parser = subparsers.add_parser("duplicates", help="Find fuel records entered twice")
    dup_parser.add_argument("--window", type=int, default=5, help="Time window in minutes")
    dup_parser.add_argument("--apply", action="store_true", help="Delete the newer copies")
    dup_parser.set_defaults(func=command_duplicates)

    add_parser = subparsers.add_parser("add-fuel", help="Save a fuel record unless it was already entered")
    add_parser.add_argument("--vehicle", required=True, help="Vehicle code")
    add_parser.add_argument("--date", required=True, help="Fill date (dd/mm/yyyy or YYYY-MM-DD)")
    add_parser.add_argument("--time", help="Fill time (HH:MM)")
    add_parser.add_argument("--quantity", type=float, required=True, help="Litres")
    add_parser.add_argument("--type", default="saida", help="Record type")
    add_parser.add_argument("--operator", help="Operator name")
    add_parser.add_argument("--notes", help="Observations")
    add_parser.add_argument("--window", type=int, default=5, help="Time window in minutes")
    add_parser.add_argument("--force", action="store_true", help="Save even when a duplicate exists")
    add_parser.set_defaults(func=command_add_fuel)

    hor_parser = subparsers.add_parser("horimeters", help="List horimeter readings from the database and the sheet")
    hor_parser.add_argument("--from", dest="start", type=date.fromisoformat, help="First day (YYYY-MM-DD)")
    hor_parser.add_argument("--to", dest="end", type=date.fromisoformat, help="Last day (YYYY-MM-DD)")
    hor_parser.set_defaults(func=command_horimeters)

    ocr_parser = subparsers.add_parser("ocr", help="Read a meter photo through the OCR service")
    ocr_parser.add_argument("image", help="Path to the photo")
    ocr_parser.add_argument("--type", choices=ocr.KINDS, default="horimeter")
    ocr_parser.set_defaults(func=command_ocr)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.verbose)

    try:
        settings = load_settings(args.settings)
        return args.func(args, settings)
    except _HANDLED_ERRORS as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
