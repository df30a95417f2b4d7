"""Application configuration helpers for FleetSync."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from fleetsync import app_paths


logger = logging.getLogger(__name__)


DEFAULT_SETTINGS_PATH = str(app_paths.data_path("settings.json"))
DEFAULT_DB_PATH = os.getenv("FLEETSYNC_DB_PATH", str(app_paths.data_path("fleetsync.db")))

SERVICE_ACCOUNT_EMAIL_ENV = "GOOGLE_SERVICE_ACCOUNT_EMAIL"
PRIVATE_KEY_ENV = "GOOGLE_PRIVATE_KEY"
SHEET_ID_ENV = "GOOGLE_SHEET_ID"

DEFAULT_SERVICE_ORDER_SHEET = "Ordem_Servico"
DEFAULT_VEHICLE_SHEET = "Veiculo"
DEFAULT_FUEL_SHEET = "AbastecimentoCanteiro01"
DEFAULT_HORIMETER_SHEET = "Horimetros"

DEFAULT_PAGE_SIZE = 1000
DEFAULT_CHUNK_SIZE = 500
DEFAULT_CHUNK_DELAY = 0.5
DEFAULT_CAPACITY_BUFFER = 100


class ConfigurationError(RuntimeError):
    """Raised when a required secret or setting is missing or malformed."""


@dataclass
class FleetSyncSettings:
    """Runtime configuration for one sync session.

    Secrets come from the environment; every other value can be overridden
    through the JSON settings file.
    """

    service_account_email: str = ""
    private_key: str = ""
    spreadsheet_id: str = ""
    db_path: str = DEFAULT_DB_PATH
    service_order_sheet: str = DEFAULT_SERVICE_ORDER_SHEET
    vehicle_sheet: str = DEFAULT_VEHICLE_SHEET
    fuel_sheet: str = DEFAULT_FUEL_SHEET
    horimeter_sheet: str = DEFAULT_HORIMETER_SHEET
    page_size: int = DEFAULT_PAGE_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_delay: float = DEFAULT_CHUNK_DELAY
    capacity_buffer: int = DEFAULT_CAPACITY_BUFFER
    ocr_service_url: str = ""
    ocr_api_key: str = ""
    scopes: List[str] = field(
        default_factory=lambda: ["https://www.googleapis.com/auth/spreadsheets"]
    )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FleetSyncSettings":
        env = os.environ if environ is None else environ
        return cls(
            service_account_email=(env.get(SERVICE_ACCOUNT_EMAIL_ENV) or "").strip(),
            private_key=env.get(PRIVATE_KEY_ENV) or "",
            spreadsheet_id=parse_spreadsheet_id(env.get(SHEET_ID_ENV) or ""),
            db_path=env.get("FLEETSYNC_DB_PATH") or DEFAULT_DB_PATH,
            ocr_service_url=(env.get("OCR_SERVICE_URL") or "").strip(),
            ocr_api_key=env.get("OCR_API_KEY") or "",
        )

    def require_google(self) -> None:
        """Fail fast when any Google secret is absent."""

        missing = []
        if not self.service_account_email:
            missing.append(SERVICE_ACCOUNT_EMAIL_ENV)
        if not self.private_key.strip():
            missing.append(PRIVATE_KEY_ENV)
        if not self.spreadsheet_id:
            missing.append(SHEET_ID_ENV)
        if missing:
            raise ConfigurationError(f"Missing Google configuration: {', '.join(missing)}")

    def apply_overrides(self, overrides: Mapping[str, object]) -> None:
        known = {item.name: item for item in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown setting %r", key)
                continue
            if key in {"private_key", "service_account_email"}:
                logger.warning("Secret %r must come from the environment; ignoring file value", key)
                continue
            current = getattr(self, key)
            try:
                if isinstance(current, bool):
                    value = bool(value)
                elif isinstance(current, int):
                    value = int(value)  # type: ignore[arg-type]
                elif isinstance(current, float):
                    value = float(value)  # type: ignore[arg-type]
                elif isinstance(current, str):
                    value = str(value)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid value for {key}: {value!r}") from exc
            setattr(self, key, value)
        if self.page_size <= 0 or self.chunk_size <= 0:
            raise ConfigurationError("page_size and chunk_size must be positive")

    def to_json(self) -> Dict[str, object]:
        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        payload.pop("private_key", None)
        payload.pop("service_account_email", None)
        return payload


def parse_spreadsheet_id(value: str) -> str:
    """Normalise a spreadsheet identifier from raw input or URL."""

    if not value:
        return ""
    value = value.strip()
    if "/spreadsheets/d/" in value:
        value = value.split("/spreadsheets/d/", 1)[1]
        value = value.split("/", 1)[0]
    if "?" in value:
        value = value.split("?", 1)[0]
    if "#" in value:
        value = value.split("#", 1)[0]
    return value


def load_settings(
    path: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> FleetSyncSettings:
    """Build settings from the environment plus the optional JSON overrides file."""

    settings = FleetSyncSettings.from_env(environ)
    settings_path = Path(path or DEFAULT_SETTINGS_PATH)
    if settings_path.exists():
        try:
            with settings_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Settings file could not be read: {settings_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file must contain a JSON object: {settings_path}")
        settings.apply_overrides(data)
    return settings


def save_settings(settings: FleetSyncSettings, path: Optional[str] = None) -> Path:
    settings_path = Path(path or DEFAULT_SETTINGS_PATH)
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with settings_path.open("w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2, ensure_ascii=False)
    return settings_path


__all__ = [
    "ConfigurationError",
    "FleetSyncSettings",
    "load_settings",
    "parse_spreadsheet_id",
    "save_settings",
]
