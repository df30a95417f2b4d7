"""Service account credentials: key normalisation, JWT signing and token exchange."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

from google.auth import crypt
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

__all__ = [
    "CredentialsError",
    "CredentialsFileInvalidError",
    "InvalidPrivateKeyError",
    "REQUIRED_FIELDS",
    "ServiceAccountTokenProvider",
    "TOKEN_URI",
    "TokenExchangeError",
    "load_service_account_data",
    "load_signer",
    "normalise_private_key",
]

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"

_PEM_BLOCK_RE = re.compile(
    r"-----BEGIN (?P<label>(?:RSA )?PRIVATE KEY)-----(?P<body>.*?)-----END (?P=label)-----",
    re.DOTALL,
)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_MIN_BARE_KEY_LENGTH = 100


class CredentialsError(Exception):
    """Base error for service account credential problems."""


class InvalidPrivateKeyError(CredentialsError):
    """Raised when private key material cannot be turned into a usable PEM key."""


class TokenExchangeError(CredentialsError):
    """Raised when the token endpoint rejects the signed assertion."""

    def __init__(self, message: str, *, body: str = "") -> None:
        super().__init__(message)
        self.body = body


class CredentialsFileInvalidError(CredentialsError):
    """Raised when a service account JSON file is missing required data."""


REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
)


# ---------------------------------------------------------------------------
# Private key normalisation
# ---------------------------------------------------------------------------
def _wrap_pem(label: str, body: str) -> str:
    compact = re.sub(r"\s+", "", body)
    if not compact or not _BASE64_RE.fullmatch(compact):
        raise InvalidPrivateKeyError("Invalid private key format: PEM body is not base64")
    lines = [compact[i : i + 64] for i in range(0, len(compact), 64)]
    return f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----\n"


def _from_json(text: str) -> Optional[str]:
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, Mapping):
        return None
    key = payload.get("private_key")
    if not isinstance(key, str) or not key.strip():
        raise InvalidPrivateKeyError("Invalid private key format: JSON has no private_key field")
    return key


def _unescape(text: str) -> str:
    cleaned = text.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in {'"', "'"}:
        cleaned = cleaned[1:-1]
    cleaned = cleaned.replace("\\\\n", "\n").replace("\\n", "\n").replace("\\r", "")
    return cleaned.replace("\r\n", "\n").replace("\r", "\n")


def _from_escaped_pem(text: str) -> Optional[str]:
    if "\\n" not in text and not text.strip().startswith(('"', "'")):
        return None
    return _from_raw_pem(_unescape(text))


def _from_raw_pem(text: str) -> Optional[str]:
    match = _PEM_BLOCK_RE.search(text.replace("\r\n", "\n"))
    if match is None:
        return None
    return _wrap_pem(match.group("label"), match.group("body"))


def _from_bare_base64(text: str) -> Optional[str]:
    compact = re.sub(r"\s+", "", text)
    if len(compact) < _MIN_BARE_KEY_LENGTH or not _BASE64_RE.fullmatch(compact):
        return None
    try:
        base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        return None
    return _wrap_pem("PRIVATE KEY", compact)


_DETECTORS: Sequence[Callable[[str], Optional[str]]] = (
    _from_escaped_pem,
    _from_raw_pem,
    _from_bare_base64,
)


def normalise_private_key(raw: str) -> str:
    """Return ``raw`` as canonical PEM text.

    Accepted inputs, tried in order: a JSON document carrying ``private_key``,
    PEM with escaped newlines (optionally quoted), raw PEM, and a bare base64
    PKCS#8 body. Anything else raises :class:`InvalidPrivateKeyError`.
    """

    if not isinstance(raw, str) or not raw.strip():
        raise InvalidPrivateKeyError("Invalid private key format: key is empty")

    text = raw
    wrapped = _from_json(text)
    if wrapped is not None:
        logger.debug("Private key supplied as JSON document")
        text = wrapped

    for detector in _DETECTORS:
        result = detector(text)
        if result is not None:
            logger.debug("Private key recognised by %s", detector.__name__)
            return result

    raise InvalidPrivateKeyError(
        "Invalid private key format: expected PEM, escaped PEM, JSON or base64 key material"
    )


# ---------------------------------------------------------------------------
# Signing and token exchange
# ---------------------------------------------------------------------------
def load_signer(private_key: str) -> crypt.RSASigner:
    """Return an RS256 signer for ``private_key`` in any accepted encoding."""

    pem = normalise_private_key(private_key)
    try:
        return crypt.RSASigner.from_string(pem)
    except (ValueError, TypeError, IndexError) as exc:
        raise InvalidPrivateKeyError(f"Invalid private key format: {exc}") from exc


def _refresh_body(exc: RefreshError) -> str:
    if len(exc.args) > 1:
        detail = exc.args[1]
        if isinstance(detail, Mapping):
            return json.dumps(detail)
        return str(detail or "")
    return ""


class ServiceAccountTokenProvider:
    """Exchange a signed service account assertion for a bearer token.

    The assertion carries ``iss``, ``scope``, ``aud``, ``iat`` and ``exp``
    claims and is posted as a JWT-bearer grant by google-auth. Nothing is
    cached; every :meth:`fetch_token` call builds new credentials and
    exchanges a fresh assertion.
    """

    def __init__(
        self,
        principal: str,
        private_key: str,
        *,
        token_uri: str = TOKEN_URI,
        scopes: Sequence[str] = (SHEETS_SCOPE,),
        request_factory: Callable[[], Any] = Request,
    ) -> None:
        if not principal:
            raise CredentialsError("Service account principal is required")
        self.principal = principal
        self._private_key = private_key
        self.token_uri = token_uri
        self.scopes = tuple(scopes)
        self._request_factory = request_factory

    def credentials(self) -> service_account.Credentials:
        return service_account.Credentials(
            load_signer(self._private_key),
            self.principal,
            self.token_uri,
            scopes=list(self.scopes),
        )

    def fetch_token(self) -> str:
        credentials = self.credentials()
        try:
            credentials.refresh(self._request_factory())
        except RefreshError as exc:
            body = _refresh_body(exc)
            logger.error("Token exchange rejected for %s: %s", self.principal, body or exc)
            raise TokenExchangeError(f"Token exchange failed: {exc}", body=body) from exc
        except (TransportError, OSError) as exc:
            logger.error("Token endpoint unreachable: %s", exc)
            raise TokenExchangeError(f"Token endpoint unreachable: {exc}") from exc
        except (ValueError, TypeError) as exc:
            # google-auth cannot index a body that is not a JSON object.
            raise TokenExchangeError(f"Token endpoint returned an unusable response: {exc}") from exc

        if not credentials.token:
            raise TokenExchangeError("Token endpoint response has no access_token")
        logger.info("Obtained access token for %s", self.principal)
        return credentials.token


# ---------------------------------------------------------------------------
# Service account JSON files
# ---------------------------------------------------------------------------
def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read JSON file: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")

    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise CredentialsFileInvalidError("Service account JSON must be an object.")
    return payload


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data with a normalised private key."""

    data: Dict[str, object] = dict(_load_json(Path(path)))
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"JSON missing fields: {ordered}")

    try:
        data["private_key"] = normalise_private_key(str(data["private_key"]))
    except InvalidPrivateKeyError as exc:
        raise CredentialsFileInvalidError(str(exc)) from exc
    return data
