"""Header resolution between record fields and worksheet columns.

Worksheets are edited by people, so column order and spelling drift over
time. Every sync resolves the live header row against a table of accepted
synonyms per field instead of trusting fixed positions. Matching is exact
after normalisation (accents, case, whitespace and hyphens are ignored);
there is no edit-distance guessing.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Dict, List, Mapping, Sequence, Tuple

__all__ = [
    "FUEL_FIELDS",
    "HORIMETER_FIELDS",
    "NOT_FOUND",
    "SERVICE_ORDER_FIELDS",
    "SynonymTable",
    "VEHICLE_FIELDS",
    "normalise_header",
    "record_to_row",
    "resolve_headers",
    "row_to_record",
]

NOT_FOUND = -1

SynonymTable = Mapping[str, Tuple[str, ...]]

_SEPARATOR_RE = re.compile(r"[\s\-]+")


def normalise_header(text: object) -> str:
    """Return the canonical comparison form of a header cell.

    >>> normalise_header("  Código  do-Veículo ")
    'CODIGO_DO_VEICULO'
    """

    decomposed = unicodedata.normalize("NFD", str(text or ""))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _SEPARATOR_RE.sub("_", stripped.upper().strip())


def resolve_headers(header_row: Sequence[object], synonyms: SynonymTable) -> Dict[str, int]:
    """Map each field of ``synonyms`` to a 0-based column of ``header_row``.

    Synonyms are tried in order and the first header cell matching one wins.
    Fields without a matching column map to :data:`NOT_FOUND`.
    """

    normalised = [normalise_header(cell) for cell in header_row]
    mapping: Dict[str, int] = {}
    for field, candidates in synonyms.items():
        index = NOT_FOUND
        for candidate in candidates:
            wanted = normalise_header(candidate)
            if wanted in normalised:
                index = normalised.index(wanted)
                break
        mapping[field] = index
    return mapping


def row_to_record(header_map: Mapping[str, int], row: Sequence[object]) -> Dict[str, str]:
    record: Dict[str, str] = {}
    for field, index in header_map.items():
        if 0 <= index < len(row) and row[index] is not None:
            record[field] = str(row[index]).strip()
        else:
            record[field] = ""
    return record


def record_to_row(
    header_map: Mapping[str, int],
    values: Mapping[str, object],
    width: int,
) -> List[str]:
    """Lay ``values`` out in column order; unmapped columns stay empty."""

    row = [""] * max(width, 0)
    for field, index in header_map.items():
        if index < 0 or index >= len(row):
            continue
        value = values.get(field)
        row[index] = "" if value is None else str(value)
    return row


SERVICE_ORDER_FIELDS: SynonymTable = {
    "Data": ("Data",),
    "Veiculo": ("Veiculo", "Codigo", "Cod"),
    "Empresa": ("Empresa",),
    "Motorista": ("Motorista", "Operador"),
    "Potencia": ("Potencia", "Descricao"),
    "Problema": ("Problema",),
    "Servico": ("Servico", "Solucao"),
    "Mecanico": ("Mecanico",),
    "Data_Entrada": ("Data_Entrada", "Data Entrada"),
    "Data_Saida": ("Data_Saida", "Data Saida"),
    "Hora_Entrada": ("Hora_Entrada", "Hora Entrada"),
    "Hora_Saida": ("Hora_Saida", "Hora Saida"),
    "Horas_Parado": ("Horas_Parado", "Horas Parado", "Tempo Parado"),
    "Observacao": ("Observacao", "Observacoes", "Obs"),
    "Status": ("Status", "Situacao"),
}

VEHICLE_FIELDS: SynonymTable = {
    "code": ("CODIGO", "COD", "VEICULO"),
    "operator": ("MOTORISTA", "OPERADOR"),
    "company": ("EMPRESA",),
    "description": ("DESCRICAO", "DESCRIÇÃO"),
    "category": ("CATEGORIA",),
}

FUEL_FIELDS: SynonymTable = {
    "id": ("id",),
    "date": ("DATA",),
    "time": ("HORA",),
    "record_type": ("TIPO",),
    "category": ("CATEGORIA",),
    "vehicle_code": ("VEICULO", "CODIGO"),
    "vehicle_description": ("DESCRICAO",),
    "operator": ("MOTORISTA", "OPERADOR"),
    "company": ("EMPRESA",),
    "work_site": ("OBRA",),
    "horimeter_previous": ("HORIMETRO ANTERIOR",),
    "horimeter_current": ("HORIMETRO ATUAL",),
    "horimeter_interval": ("INTERVALO HORAS",),
    "km_previous": ("KM ANTERIOR",),
    "km_current": ("KM ATUAL",),
    "km_interval": ("INTERVALO KM",),
    "quantity": ("QUANTIDADE", "QTD", "LITROS"),
    "fuel_type": ("TIPO DE COMBUSTIVEL", "COMBUSTIVEL"),
    "location": ("LOCAL",),
    "arla": ("ARLA",),
    "arla_quantity": ("QUANTIDADE DE ARLA",),
    "supplier": ("FORNECEDOR",),
    "invoice_number": ("NOTA FISCAL",),
    "unit_price": ("VALOR UNITARIO",),
    "total_value": ("VALOR TOTAL",),
    "notes": ("OBSERVACAO",),
}

HORIMETER_FIELDS: SynonymTable = {
    "date": ("DATA",),
    "time": ("HORA",),
    "vehicle_code": ("VEICULO", "CODIGO"),
    "category": ("CATEGORIA",),
    "description": ("DESCRICAO",),
    "company": ("EMPRESA",),
    "operator": ("OPERADOR", "MOTORISTA"),
    "horimeter_previous": ("HOR_ANTERIOR", "HORIMETRO ANTERIOR"),
    "horimeter_current": ("HOR_ATUAL", "HORIMETRO ATUAL", "HORIMETRO"),
    "km_previous": ("KM_ANTERIOR", "KM ANTERIOR"),
    "km_current": ("KM_ATUAL", "KM ATUAL"),
    "notes": ("OBSERVACAO",),
}
