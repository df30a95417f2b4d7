import json
import sys
import urllib.error
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from fleetsync.ocr import OcrClient, OcrError, parse_ocr_value


class _FakeResponse:
    def __init__(self, payload) -> None:
        self._payload = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._payload

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def _client(payload=None, error=None):
    requests = []

    def urlopen(request, timeout=None):
        requests.append(request)
        if error is not None:
            raise error
        return _FakeResponse(payload)

    return OcrClient("https://ocr.example.com/read", "secret", urlopen=urlopen), requests


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1234.5", 1234.5),
        ("1234,5", 1234.5),
        ("Horímetro: 0815,7 h", 815.7),
        ("12.34.5", 12.34),
        ("ERRO", None),
        ("", None),
        ("0", None),
        ("sem leitura", None),
    ],
)
def test_parse_ocr_value(text: str, expected) -> None:
    assert parse_ocr_value(text) == expected


def test_recognise_sends_image_and_type() -> None:
    client, requests = _client({"rawText": "1234,5"})

    result = client.recognise("data:image/jpeg;base64,AAAA", "quantity")

    assert result.success is True
    assert result.value == 1234.5
    assert result.raw_text == "1234,5"
    body = json.loads(requests[0].data.decode("utf-8"))
    assert body == {"image": "data:image/jpeg;base64,AAAA", "type": "quantity"}
    assert requests[0].get_header("Authorization") == "Bearer secret"


def test_recognise_reports_unreadable_display() -> None:
    client, _ = _client({"rawText": "ERRO"})

    result = client.recognise("data:image/jpeg;base64,AAAA")

    assert result.success is False
    assert result.value is None


def test_recognise_falls_back_to_numeric_value() -> None:
    client, _ = _client({"value": 812.25})

    assert client.recognise("data:image/png;base64,AAAA").value == 812.25


def test_recognise_rejects_unknown_type() -> None:
    client, _ = _client({"rawText": "1"})

    with pytest.raises(ValueError):
        client.recognise("data:image/png;base64,AAAA", "fuel")


def test_unreachable_service_raises() -> None:
    client, _ = _client(error=urllib.error.URLError("timed out"))

    with pytest.raises(OcrError):
        client.recognise("data:image/png;base64,AAAA")


def test_invalid_json_raises() -> None:
    client, _ = _client(b"<html>")

    with pytest.raises(OcrError):
        client.recognise("data:image/png;base64,AAAA")


def test_url_is_required() -> None:
    with pytest.raises(OcrError):
        OcrClient("")
