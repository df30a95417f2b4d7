from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from fake_sheets import FakeSheetsClient, ListStore, split_range
from fleetsync.order_sync import (
    PartialWriteError,
    ServiceOrderSync,
    SheetsSyncError,
    build_vehicle_index,
    compute_downtime,
    run_batch_sync,
)
from fleetsync.single_instance import single_run
from settings import FleetSyncSettings

HEADER = [
    "Data",
    "Veiculo",
    "Empresa",
    "Motorista",
    "Potencia",
    "Problema",
    "Servico",
    "Mecanico",
    "Data_Entrada",
    "Data_Saida",
    "Hora_Entrada",
    "Hora_Saida",
    "Horas_Parado",
    "Observacao",
    "Status",
]

NOW = datetime(2024, 1, 2, 10, 0)


def _order(index: int, **overrides):
    order = {
        "id": f"os-{index:05d}",
        "vehicle_code": "EQ01",
        "vehicle_description": "Escavadeira",
        "order_date": "2024-01-01",
        "entry_date": "2024-01-01",
        "entry_time": "08:00:00",
        "status": "Em Andamento",
        "problem_description": f"Problema {index}",
        "solution_description": "",
        "mechanic_name": "Carlos",
        "end_date": None,
        "notes": "",
        "created_by": "Ana",
    }
    order.update(overrides)
    return order


def _client(header=HEADER, *, row_count: int = 1000) -> FakeSheetsClient:
    client = FakeSheetsClient()
    client.add_sheet("Ordem_Servico", [header], row_count=row_count)
    client.add_sheet(
        "Veiculo",
        [
            ["Código", "Descrição", "Motorista", "Empresa"],
            ["eq 01", "Escavadeira", "João", "Construtora A"],
            ["CM-02", "Caminhão", "", "Transportes B"],
        ],
    )
    return client


def _engine(store, client, **kwargs) -> ServiceOrderSync:
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("sleep", lambda seconds: None)
    return ServiceOrderSync(store, client, **kwargs)


def _column(name: str, header=HEADER) -> int:
    return header.index(name)


# ---------------------------------------------------------------------------
# Downtime
# ---------------------------------------------------------------------------
def test_downtime_for_open_order_uses_current_time() -> None:
    assert compute_downtime("2024-01-01", "08:00", None, finalized=False, now=NOW) == "1d 2h"


def test_downtime_for_finalized_order_uses_end_timestamp() -> None:
    value = compute_downtime(
        "2024-01-01", "08:00", "2024-01-01T20:00:00", finalized=True, now=NOW
    )
    assert value == "12h"


@pytest.mark.parametrize(
    "entry_date, entry_time",
    [(None, "08:00"), ("", "08:00"), ("2024-01-01", None), ("ontem", "08:00")],
)
def test_downtime_is_empty_when_entry_is_unknown(entry_date, entry_time) -> None:
    assert compute_downtime(entry_date, entry_time, None, finalized=False, now=NOW) == ""


def test_downtime_is_empty_for_non_positive_span() -> None:
    assert compute_downtime("2024-01-03", "08:00", None, finalized=False, now=NOW) == ""


# ---------------------------------------------------------------------------
# Cross reference
# ---------------------------------------------------------------------------
def test_vehicle_index_normalises_codes_and_tolerates_missing_columns() -> None:
    index = build_vehicle_index([["COD", "Empresa"], [" eq 01 ", "Construtora A"]])

    assert index["EQ01"].company == "Construtora A"
    assert index["EQ01"].operator == ""


def test_vehicle_index_without_code_column_is_empty() -> None:
    assert build_vehicle_index([["Nome"], ["x"]]) == {}


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------
def test_run_writes_one_row_per_order_with_lookups() -> None:
    orders = [
        _order(1, vehicle_code="EQ 01"),
        _order(
            2,
            vehicle_code="XX99",
            status="Finalizada",
            end_date="2024-01-01T20:00:00",
        ),
    ]
    client = _client()
    report = _engine(ListStore({"service_orders": orders}), client).run()

    assert report.total_records == 2
    assert report.rows_written == 2
    assert report.complete

    rows = client.values("Ordem_Servico")
    assert rows[0] == HEADER
    first, second = rows[1], rows[2]
    assert first[_column("Data")] == "01/01/2024"
    assert first[_column("Empresa")] == "Construtora A"
    assert first[_column("Motorista")] == "João"
    assert first[_column("Hora_Entrada")] == "08:00"
    assert first[_column("Horas_Parado")] == ""
    assert first[_column("Data_Saida")] == ""
    # Unknown vehicle falls back to the order's author and empty company.
    assert second[_column("Empresa")] == ""
    assert second[_column("Motorista")] == "Ana"
    assert second[_column("Data_Saida")] == "01/01/2024"
    assert second[_column("Hora_Saida")] == "20:00"
    assert second[_column("Horas_Parado")] == "12h"


def test_run_is_idempotent() -> None:
    orders = [_order(index) for index in range(7)]
    client = _client()
    store = ListStore({"service_orders": orders})

    _engine(store, client).run()
    first = client.values("Ordem_Servico")
    _engine(store, client).run()

    assert client.values("Ordem_Servico") == first


def test_stale_rows_are_cleared_when_fewer_orders_remain() -> None:
    client = _client()
    _engine(ListStore({"service_orders": [_order(i) for i in range(5)]}), client).run()
    _engine(ListStore({"service_orders": [_order(i) for i in range(2)]}), client).run()

    assert len(client.values("Ordem_Servico")) == 3


def test_shuffled_header_keeps_fields_in_their_columns() -> None:
    shuffled = list(reversed(HEADER))
    shuffled[0], shuffled[5] = shuffled[5], shuffled[0]
    client = _client(shuffled)
    order = _order(1, problem_description="Vazamento", mechanic_name="Pedro")

    _engine(ListStore({"service_orders": [order]}), client).run()

    row = client.values("Ordem_Servico")[1]
    assert row[shuffled.index("Problema")] == "Vazamento"
    assert row[shuffled.index("Mecanico")] == "Pedro"
    assert row[shuffled.index("Veiculo")] == "EQ01"
    assert row[shuffled.index("Empresa")] == "Construtora A"


def test_header_spelling_drift_is_tolerated() -> None:
    header = ["VEÍCULO", "data entrada", "Observação", "Extra"]
    client = _client(header)
    order = _order(1, notes="Troca de óleo")

    _engine(ListStore({"service_orders": [order]}), client).run()

    assert client.values("Ordem_Servico")[1] == ["EQ01", "01/01/2024", "Troca de óleo", ""]


def test_pagination_reads_until_short_page() -> None:
    orders = [_order(index) for index in range(25)]
    store = ListStore({"service_orders": orders})

    fetched = _engine(store, _client(), page_size=10).fetch_all()

    assert len(fetched) == 25
    assert store.page_requests == [(0, 10), (10, 10), (20, 10)]


def test_capacity_is_grown_before_any_write() -> None:
    orders = [_order(index) for index in range(200)]
    client = _client(row_count=50)

    _engine(ListStore({"service_orders": orders}), client).run()

    names = client.call_names()
    capacity_call = names.index("ensure_capacity")
    assert capacity_call < names.index("clear") < names.index("write")
    assert client.row_counts["Ordem_Servico"] >= 300


def test_chunked_writes_cover_rows_without_gaps() -> None:
    orders = [_order(index) for index in range(1234)]
    client = _client(row_count=2000)
    sleeps = []

    report = _engine(
        ListStore({"service_orders": orders}), client, sleep=sleeps.append
    ).run()

    writes = [split_range(ref) for name, ref in client.calls if name == "write"]
    assert [(first, last) for _, first, last in writes] == [(2, 501), (502, 1001), (1002, 1235)]
    assert sleeps == [0.5, 0.5]
    assert report.rows_written == 1234


def test_missing_header_aborts_before_clearing() -> None:
    client = _client([])
    client.sheets["Ordem_Servico"] = [[], ["old", "data"]]

    with pytest.raises(SheetsSyncError):
        _engine(ListStore({"service_orders": [_order(1)]}), client).run()

    assert "clear" not in client.call_names()
    assert client.sheets["Ordem_Servico"][1] == ["old", "data"]


def test_failed_chunk_reports_row_range() -> None:
    orders = [_order(index) for index in range(1234)]
    client = _client(row_count=2000)
    client.fail_on_write = 2

    with pytest.raises(PartialWriteError) as excinfo:
        _engine(ListStore({"service_orders": orders}), client).run()

    error = excinfo.value
    assert error.chunk_index == 1
    assert (error.first_row, error.last_row) == (502, 1001)
    assert error.rows_written == 500


def test_timeout_after_clear_is_reported_as_partial_write(tmp_path: Path, caplog) -> None:
    settings = FleetSyncSettings(db_path=str(tmp_path / "fleet.db"), chunk_delay=0)
    store = ListStore({"service_orders": [_order(index) for index in range(600)]})
    client = _client()
    client.fail_on_write = 2
    client.write_error = TimeoutError("The read operation timed out")

    with caplog.at_level(logging.ERROR, logger="fleetsync.order_sync"):
        result = run_batch_sync(settings, store=store, client=client, lock_directory=tmp_path)

    assert "success" not in result
    assert "chunk 1 (rows 502-601)" in result["error"]
    assert "after 500 of 600 rows" in result["error"]
    assert "timed out" in result["error"]
    assert any("rows 502-601" in record.getMessage() for record in caplog.records)
    assert len(client.values("Ordem_Servico")) == 501


def test_run_batch_sync_returns_trigger_payload(tmp_path: Path) -> None:
    settings = FleetSyncSettings(db_path=str(tmp_path / "fleet.db"), chunk_delay=0)
    store = ListStore({"service_orders": [_order(1), _order(2)]})

    result = run_batch_sync(settings, store=store, client=_client(), lock_directory=tmp_path)

    assert result["success"] is True
    assert result["totalOrders"] == 2
    assert result["rowsWritten"] == 2
    assert "Ordem_Servico" in result["message"]


def test_run_batch_sync_reports_missing_configuration(tmp_path: Path) -> None:
    settings = FleetSyncSettings(db_path=str(tmp_path / "fleet.db"))

    result = run_batch_sync(settings, lock_directory=tmp_path)

    assert "GOOGLE_PRIVATE_KEY" in result["error"]


def test_run_batch_sync_refuses_overlapping_runs(tmp_path: Path) -> None:
    settings = FleetSyncSettings(db_path=str(tmp_path / "fleet.db"))
    store = ListStore({"service_orders": [_order(1)]})

    with single_run("sync-Ordem_Servico", directory=tmp_path):
        result = run_batch_sync(settings, store=store, client=_client(), lock_directory=tmp_path)

    assert "already in progress" in result["error"]
