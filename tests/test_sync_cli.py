from __future__ import annotations

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

import sync_cli
from db import open_database
from fleetsync import app_paths


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for name in ("GOOGLE_SERVICE_ACCOUNT_EMAIL", "GOOGLE_PRIVATE_KEY", "GOOGLE_SHEET_ID"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(sync_cli, "configure_logging", lambda *args, **kwargs: tmp_path / "log")
    monkeypatch.setattr(app_paths, "LOCKS_DIR", tmp_path / "locks")

    db_path = tmp_path / "fleet.db"
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(json.dumps({"db_path": str(db_path)}), encoding="utf-8")
    return open_database(db_path), str(settings_path)


def _fuel(database, time: str, created_at: str) -> str:
    return database.insert_record(
        "field_fuel_records",
        {
            "vehicle_code": "EQ01",
            "record_date": "2024-03-15",
            "record_time": time,
            "record_type": "saida",
            "fuel_quantity": 100.0,
            "created_at": created_at,
        },
    )


def test_requests_lists_pending(cli_env, capsys) -> None:
    database, settings_path = cli_env
    record_id = _fuel(database, "08:00", "2024-03-15T08:01:00")
    database.insert_request(
        {
            "record_id": record_id,
            "record_table": "field_fuel_records",
            "request_type": "delete",
            "requested_by": "Operador 1",
            "request_reason": "duplicado",
        }
    )

    assert sync_cli.main(["--settings", settings_path, "requests"]) == 0

    output = capsys.readouterr().out
    assert record_id in output
    assert "Operador 1" in output
    assert "duplicado" in output


def test_approve_delete_without_google_still_succeeds(cli_env, capsys) -> None:
    database, settings_path = cli_env
    record_id = _fuel(database, "08:00", "2024-03-15T08:01:00")
    request_id = database.insert_request(
        {"record_id": record_id, "record_table": "field_fuel_records", "request_type": "delete"}
    )

    code = sync_cli.main(["--settings", settings_path, "approve", request_id, "--reviewer", "Supervisor"])

    assert code == 0
    assert "Deletion approved" in capsys.readouterr().out
    assert database.fetch_record("field_fuel_records", record_id) is None
    assert database.fetch_request(request_id)["reviewer_name"] == "Supervisor"


def test_unknown_request_is_reported(cli_env, capsys) -> None:
    _, settings_path = cli_env

    assert sync_cli.main(["--settings", settings_path, "reject", "nope"]) == 1
    assert "Error: Request nope not found" in capsys.readouterr().err


def test_sync_orders_reports_missing_configuration(cli_env, capsys) -> None:
    _, settings_path = cli_env

    assert sync_cli.main(["--settings", settings_path, "sync-orders"]) == 1
    assert "Missing Google configuration" in capsys.readouterr().err


def test_duplicates_apply_removes_newer_copies(cli_env, capsys) -> None:
    database, settings_path = cli_env
    keep = _fuel(database, "08:00", "2024-03-15T08:01:00")
    drop = _fuel(database, "08:02", "2024-03-15T08:03:00")

    assert sync_cli.main(["--settings", settings_path, "duplicates", "--apply"]) == 0

    assert "Removed 1 duplicate records." in capsys.readouterr().out
    assert database.fetch_record("field_fuel_records", keep) is not None
    assert database.fetch_record("field_fuel_records", drop) is None


def test_add_fuel_refuses_duplicate_unless_forced(cli_env, capsys) -> None:
    database, settings_path = cli_env
    existing = _fuel(database, "08:00", "2024-03-15T08:01:00")
    args = ["--settings", settings_path, "add-fuel", "--vehicle", "eq 01", "--date", "15/03/2024"]
    args += ["--time", "08:03", "--quantity", "100"]

    assert sync_cli.main(args) == 1
    assert f"already saved as {existing}" in capsys.readouterr().err
    assert len(database.fetch_fuel_on("2024-03-15")) == 1

    assert sync_cli.main(args + ["--force"]) == 0
    assert "Saved fuel record" in capsys.readouterr().out
    saved = database.fetch_fuel_on("2024-03-15")
    assert len(saved) == 2
    assert all(row["synced_to_sheet"] is False for row in saved)
