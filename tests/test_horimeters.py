from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fake_sheets import FakeSheetsClient, ListStore
from fleetsync.horimeters import load_horimeter_history, sheet_readings

HEADER = ["Data", "Hora", "Veículo", "Operador", "Hor_Anterior", "Hor_Atual", "Observação"]


def _client(rows) -> FakeSheetsClient:
    client = FakeSheetsClient()
    client.add_sheet("Horimetros", [HEADER, *rows])
    return client


def test_sheet_rows_take_database_shape() -> None:
    readings = sheet_readings([HEADER, ["15/03/2024", "7:05", "eq 01", "João", "1.000,0", "1.008,5", "ok"], ["", "", ""]])

    assert readings == [
        {
            "vehicle_code": "eq 01",
            "reading_date": "2024-03-15",
            "reading_time": "07:05",
            "previous_value": 1000.0,
            "current_value": 1008.5,
            "previous_km": None,
            "current_km": None,
            "operator": "João",
            "observations": "ok",
        }
    ]


def test_sheet_without_key_columns_is_ignored() -> None:
    assert sheet_readings([["Nome", "Valor"], ["x", "1"]]) == []


def test_database_reading_wins_over_sheet_copy() -> None:
    store = ListStore(
        {
            "horimeter_readings": [
                {"id": "h1", "vehicle_code": "EQ01", "reading_date": "2024-03-15", "current_value": 1008.0},
            ]
        }
    )
    client = _client(
        [
            ["15/03/2024", "07:00", "EQ 01", "", "", "1.007,0", ""],
            ["16/03/2024", "07:00", "EQ01", "", "", "1.016,0", ""],
            ["sem data", "07:00", "EQ01", "", "", "1.020,0", ""],
        ]
    )

    merged = load_horimeter_history(store, client)

    assert [(r["reading_date"], r["current_value"], r["_source"]) for r in merged] == [
        ("2024-03-16", 1016.0, "sheet"),
        ("2024-03-15", 1008.0, "database"),
    ]


def test_history_honours_date_bounds() -> None:
    store = ListStore({"horimeter_readings": []})
    client = _client([[f"{day:02d}/03/2024", "", "EQ01", "", "", "1", ""] for day in (1, 10, 20)])

    merged = load_horimeter_history(store, client, start=date(2024, 3, 5), end=date(2024, 3, 15))

    assert [reading["reading_date"] for reading in merged] == ["2024-03-10"]
