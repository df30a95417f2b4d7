"""Client for the meter-reading recognition service."""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ERROR_SENTINEL = "ERRO"
KINDS = ("horimeter", "quantity")
_LEADING_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")


class OcrError(RuntimeError):
    """Raised when the recognition service cannot be reached or answers badly."""


@dataclass
class OcrResult:
    success: bool
    value: Optional[float]
    raw_text: str


def parse_ocr_value(text: Optional[str]) -> Optional[float]:
    """Return the positive number read by the service, else ``None``.

    The service answers ``ERRO`` when it cannot read the display. Any other
    answer is reduced to digits and separators, the first comma becomes the
    decimal point and the leading number is taken.
    """

    if not text:
        return None
    stripped = text.strip()
    if not stripped or stripped == ERROR_SENTINEL:
        return None
    cleaned = re.sub(r"[^\d.,]", "", stripped).replace(",", ".", 1)
    match = _LEADING_NUMBER_RE.match(cleaned)
    if not match:
        return None
    value = float(match.group(0))
    return value if value > 0 else None


class OcrClient:
    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        timeout: float = 30,
        urlopen: Optional[Callable[..., object]] = None,
    ) -> None:
        if not url:
            raise OcrError("OCR service URL is not configured")
        self.url = url
        self._api_key = api_key
        self.timeout = timeout
        self._urlopen = urlopen or urllib.request.urlopen

    def recognise(self, image: str, kind: str = "horimeter") -> OcrResult:
        """Send a ``data:`` URL image and return the recognised value."""

        if kind not in KINDS:
            raise ValueError(f"Unknown reading type: {kind}")
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        request = urllib.request.Request(
            self.url,
            data=json.dumps({"image": image, "type": kind}).encode("utf-8"),
            headers=headers,
            method="POST",
        )

        try:
            with self._urlopen(request, timeout=self.timeout) as response:  # type: ignore[attr-defined]
                payload = response.read()
        except urllib.error.URLError as exc:
            raise OcrError(f"Unable to contact OCR service: {exc}") from exc

        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise OcrError(f"Unexpected response from OCR service: {exc}") from exc

        raw_text = str(data.get("rawText") or "").strip()
        if raw_text:
            value = parse_ocr_value(raw_text)
        else:
            reported = data.get("value")
            numeric = isinstance(reported, (int, float)) and not isinstance(reported, bool)
            value = float(reported) if numeric and reported > 0 else None
        logger.debug("OCR %s read %r -> %s", kind, raw_text, value)
        return OcrResult(success=value is not None, value=value, raw_text=raw_text)


__all__ = ["OcrClient", "OcrError", "OcrResult", "parse_ocr_value"]
