from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from db import FleetDatabase
from fake_sheets import FakeSheetsClient
from fleetsync.fuel_sheet import (
    build_fuel_sheet_row,
    format_ptbr_number,
    layout_row,
    push_pending_fuel,
    save_fuel_record,
)
from fleetsync.sheets_client import SheetsClientError

SHEET = "AbastecimentoCanteiro01"
HEADER = ["DATA", "HORA", "TIPO", "VEICULO", "QUANTIDADE", "HORIMETRO ATUAL", "INTERVALO HORAS", "Observação"]


class _FlakyClient(FakeSheetsClient):
    def __init__(self, fail_for: str) -> None:
        super().__init__()
        self.fail_for = fail_for

    def append_row(self, range_ref, row):
        if self.fail_for in row:
            raise SheetsClientError("append rejected")
        super().append_row(range_ref, row)


@pytest.fixture()
def store(tmp_path: Path) -> FleetDatabase:
    database = FleetDatabase(tmp_path / "fleet.db")
    database.initialize()
    return database


def _insert(store: FleetDatabase, code: str, **overrides) -> str:
    values = {
        "record_date": "2024-03-15",
        "record_time": "08:15:00",
        "record_type": "saida",
        "vehicle_code": code,
        "fuel_quantity": 1250.5,
        "horimeter_previous": 1000.0,
        "horimeter_current": 1008.5,
    }
    values.update(overrides)
    return store.insert_record("field_fuel_records", values)


@pytest.mark.parametrize(
    "value, expected",
    [(1234.56, "1.234,56"), (1250.5, "1.250,50"), (7, "7,00"), (0, ""), (None, ""), ("1.000,5", "1.000,50")],
)
def test_format_ptbr_number(value, expected: str) -> None:
    assert format_ptbr_number(value) == expected


def test_build_fuel_sheet_row_derives_intervals_and_totals() -> None:
    row = build_fuel_sheet_row(
        {
            "id": "f1",
            "record_date": "2024-03-15",
            "record_time": "08:15:00",
            "record_type": "Entrada",
            "vehicle_code": "EQ01",
            "fuel_quantity": 100,
            "unit_price": 5.5,
            "horimeter_previous": 1000,
            "horimeter_current": 1008.5,
            "km_previous": 200,
            "km_current": 150,
            "filter_blow": True,
        }
    )

    assert row["DATA"] == "15/03/2024"
    assert row["HORA"] == "08:15"
    assert row["TIPO"] == "Entrada"
    assert row["INTERVALO HORAS"] == "8,50"
    assert row["INTERVALO KM"] == ""
    assert row["VALOR TOTAL"] == "550,00"
    assert row["SOPRA FILTRO"] == "Sim"
    assert row["TIPO DE COMBUSTIVEL"] == "Diesel"


def test_layout_row_follows_live_header() -> None:
    values = {"DATA": "15/03/2024", "VEICULO": "EQ01", "OBSERVAÇÃO": "ok"}

    assert layout_row(["Veículo", "Extra", "observacao", "data"], values) == ["EQ01", "", "ok", "15/03/2024"]


def test_push_appends_pending_records_and_flags_them(store: FleetDatabase) -> None:
    _insert(store, "EQ01")
    _insert(store, "EQ02", record_date="2024-03-16")
    client = FakeSheetsClient()
    client.add_sheet(SHEET, [HEADER])
    sleeps = []

    result = push_pending_fuel(store, client, SHEET, sleep=sleeps.append)

    assert result == {"success": True, "synced": 2, "failed": 0, "total": 2, "errors": []}
    rows = client.values(SHEET)
    assert rows[1] == ["15/03/2024", "08:15", "Saida", "EQ01", "1.250,50", "1.008,50", "8,50", ""]
    assert rows[2][3] == "EQ02"
    assert sleeps == [0.2]
    assert store.fetch_unsynced_fuel() == []


def test_failed_append_leaves_record_pending(store: FleetDatabase) -> None:
    _insert(store, "EQ01")
    _insert(store, "BAD9", record_date="2024-03-16")
    client = _FlakyClient("BAD9")
    client.add_sheet(SHEET, [HEADER])

    result = push_pending_fuel(store, client, SHEET, sleep=lambda seconds: None)

    assert result["synced"] == 1
    assert result["failed"] == 1
    assert result["errors"] == ["BAD9 (2024-03-16): append rejected"]
    assert [row["vehicle_code"] for row in store.fetch_unsynced_fuel()] == ["BAD9"]


def test_push_without_pending_records_reads_nothing(store: FleetDatabase) -> None:
    client = FakeSheetsClient()

    result = push_pending_fuel(store, client, SHEET)

    assert result["total"] == 0
    assert result["message"] == "No pending records to sync"
    assert client.calls == []


def test_push_requires_a_header(store: FleetDatabase) -> None:
    _insert(store, "EQ01")
    client = FakeSheetsClient()
    client.add_sheet(SHEET, [])

    with pytest.raises(SheetsClientError):
        push_pending_fuel(store, client, SHEET)

    assert len(store.fetch_unsynced_fuel()) == 1


def test_save_fuel_record_skips_same_fill(store: FleetDatabase) -> None:
    first = _insert(store, "EQ01")

    record_id, existing = save_fuel_record(
        store,
        {"vehicle_code": "EQ 01", "record_date": "15/03/2024", "record_time": "08:17", "record_type": "saida", "fuel_quantity": "1.250,50"},
    )

    assert record_id is None
    assert existing["id"] == first
    assert len(store.fetch_fuel_on("2024-03-15")) == 1


def test_save_fuel_record_inserts_new_fill_as_pending(store: FleetDatabase) -> None:
    _insert(store, "EQ01")

    record_id, existing = save_fuel_record(
        store,
        {"vehicle_code": "EQ01", "record_date": "2024-03-15", "record_time": "10:00", "record_type": "saida", "fuel_quantity": 300.0},
    )

    assert existing is None
    assert [row["id"] for row in store.fetch_unsynced_fuel()][-1] == record_id


def test_save_fuel_record_rejects_unparseable_date(store: FleetDatabase) -> None:
    with pytest.raises(ValueError):
        save_fuel_record(store, {"vehicle_code": "EQ01", "record_date": "ontem", "fuel_quantity": 10.0})
