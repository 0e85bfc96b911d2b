"""Environment configuration for the Checklist API.

All settings are resolved once, at startup, by ``load_config``. Anything
required that is missing or unreadable raises ``ConfigError`` so the process
refuses to start instead of failing on the first request.

Credential precedence:
    Firebase: FIREBASE_SERVICE_ACCOUNT_JSON (inline JSON or path)
              -> GOOGLE_APPLICATION_CREDENTIALS (path)
              -> ./serviceAccountKey.json
    Drive:    DRIVE_OAUTH_CREDENTIALS_JSON and DRIVE_OAUTH_TOKEN_JSON
              (each inline JSON or path, relative paths resolved from base_dir)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigError

logger = logging.getLogger("checklist_api.config")

DEFAULT_PORTAL_ORIGIN = "https://portalchecklist.netlify.app"
DEFAULT_SERVICE_ACCOUNT_FILE = "serviceAccountKey.json"
DRIVE_SCOPES = ("https://www.googleapis.com/auth/drive",)


@dataclass(frozen=True)
class DriveCredentials:
    """OAuth installed/web client plus the user token obtained by drive_auth_setup."""

    client_id: str
    client_secret: str
    token_uri: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    scopes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    port: int = 3000
    public_base_url: str = "http://localhost:3000"
    signing_secret: Optional[str] = None
    signed_url_ttl_seconds: int = 900
    signed_urls_require_auth: bool = False
    firebase_credentials: Optional[Dict[str, Any]] = None
    drive_credentials: Optional[DriveCredentials] = None
    drive_root_folder_id: Optional[str] = None
    mp_access_token: Optional[str] = None
    mp_currency: str = "BRL"
    mp_webhook_sync: bool = False
    cors_origins: Tuple[str, ...] = (DEFAULT_PORTAL_ORIGIN,)
    max_upload_bytes: int = 10 * 1024 * 1024
    http_timeout_seconds: float = 15.0
    rate_limit_enabled: bool = True
    trust_proxy: bool = False
    security_log_dir: Optional[str] = None
    debug: bool = False


def _bool_env(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = str(environ.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = str(environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer", details={"value": raw}) from exc


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = str(environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number", details={"value": raw}) from exc


def _optional_str(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = str(environ.get(name) or "").strip()
    return value or None


def read_json_flexible(value: str, *, base_dir: Path, name: str) -> Dict[str, Any]:
    """Parse ``value`` as inline JSON when it looks like an object, else as a file path."""
    trimmed = str(value).strip()
    try:
        if trimmed.startswith("{") and trimmed.endswith("}"):
            parsed = json.loads(trimmed)
        else:
            path = Path(trimmed)
            if not path.is_absolute():
                path = base_dir / path
            if not path.exists():
                raise ConfigError(f"{name}: file not found", details={"path": str(path)})
            parsed = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{name}: invalid JSON", details={"reason": str(exc)}) from exc
    if not isinstance(parsed, dict):
        raise ConfigError(f"{name}: expected a JSON object")
    return parsed


def resolve_firebase_credentials(environ: Mapping[str, str], base_dir: Path) -> Dict[str, Any]:
    inline_or_path = _optional_str(environ, "FIREBASE_SERVICE_ACCOUNT_JSON")
    if inline_or_path:
        return read_json_flexible(inline_or_path, base_dir=base_dir, name="FIREBASE_SERVICE_ACCOUNT_JSON")

    adc_path = _optional_str(environ, "GOOGLE_APPLICATION_CREDENTIALS")
    if adc_path:
        return read_json_flexible(adc_path, base_dir=base_dir, name="GOOGLE_APPLICATION_CREDENTIALS")

    default_file = base_dir / DEFAULT_SERVICE_ACCOUNT_FILE
    if default_file.exists():
        return read_json_flexible(str(default_file), base_dir=base_dir, name=DEFAULT_SERVICE_ACCOUNT_FILE)

    raise ConfigError(
        "Missing Firebase Admin credential",
        details={"tried": ["FIREBASE_SERVICE_ACCOUNT_JSON", "GOOGLE_APPLICATION_CREDENTIALS", str(default_file)]},
    )


def resolve_drive_credentials(environ: Mapping[str, str], base_dir: Path) -> DriveCredentials:
    creds_var = _optional_str(environ, "DRIVE_OAUTH_CREDENTIALS_JSON")
    token_var = _optional_str(environ, "DRIVE_OAUTH_TOKEN_JSON")
    if not creds_var or not token_var:
        raise ConfigError("Missing DRIVE_OAUTH_CREDENTIALS_JSON or DRIVE_OAUTH_TOKEN_JSON")

    client = read_json_flexible(creds_var, base_dir=base_dir, name="DRIVE_OAUTH_CREDENTIALS_JSON")
    token = read_json_flexible(token_var, base_dir=base_dir, name="DRIVE_OAUTH_TOKEN_JSON")

    installed = client.get("installed") or client.get("web") or {}
    client_id = str(installed.get("client_id") or "").strip()
    client_secret = str(installed.get("client_secret") or "").strip()
    if not client_id or not client_secret:
        raise ConfigError("DRIVE_OAUTH_CREDENTIALS_JSON has no installed/web client_id and client_secret")

    refresh_token = token.get("refresh_token")
    access_token = token.get("access_token") or token.get("token")
    if not refresh_token and not access_token:
        raise ConfigError("DRIVE_OAUTH_TOKEN_JSON has neither refresh_token nor access_token")

    raw_scopes = token.get("scope") or token.get("scopes") or ""
    scopes = tuple(raw_scopes.split()) if isinstance(raw_scopes, str) else tuple(raw_scopes)
    scopes = scopes or DRIVE_SCOPES

    return DriveCredentials(
        client_id=client_id,
        client_secret=client_secret,
        token_uri=str(installed.get("token_uri") or "https://oauth2.googleapis.com/token"),
        access_token=access_token,
        refresh_token=refresh_token,
        scopes=scopes,
    )


def resolve_cors_origins(environ: Mapping[str, str]) -> Tuple[str, ...]:
    origins: List[str] = [DEFAULT_PORTAL_ORIGIN]
    for name in ("PORTAL_ORIGIN", "APP_ORIGIN"):
        value = _optional_str(environ, name)
        if value:
            origins.append(value.rstrip("/"))
    for value in str(environ.get("CORS_ALLOWED_ORIGINS", "")).split(","):
        if value.strip():
            origins.append(value.strip().rstrip("/"))
    # Keep order, drop duplicates
    return tuple(dict.fromkeys(origins))


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    base_dir: Optional[Path] = None,
) -> AppConfig:
    """Resolve the full application configuration.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)
        base_dir: Directory for relative credential paths (defaults to cwd)

    Raises:
        ConfigError: a required credential is missing or malformed
    """
    env = os.environ if environ is None else environ
    base = Path(base_dir) if base_dir is not None else Path.cwd()

    port = _int_env(env, "PORT", 3000)
    public_base_url = (_optional_str(env, "PUBLIC_BASE_URL") or f"http://localhost:{port}").rstrip("/")

    signing_secret = _optional_str(env, "SIGNING_SECRET")
    if not signing_secret:
        logger.warning("SIGNING_SECRET not set: /signed-urls and /drive-file will refuse requests")

    mp_access_token = _optional_str(env, "MP_ACCESS_TOKEN")
    if not mp_access_token:
        logger.warning("MP_ACCESS_TOKEN not set: Mercado Pago routes are disabled")

    ttl = _int_env(env, "SIGNED_URL_TTL_SECONDS", 900)
    if ttl <= 0:
        raise ConfigError("SIGNED_URL_TTL_SECONDS must be positive")

    return AppConfig(
        port=port,
        public_base_url=public_base_url,
        signing_secret=signing_secret,
        signed_url_ttl_seconds=ttl,
        signed_urls_require_auth=_bool_env(env, "SIGNED_URLS_REQUIRE_AUTH"),
        firebase_credentials=resolve_firebase_credentials(env, base),
        drive_credentials=resolve_drive_credentials(env, base),
        drive_root_folder_id=_optional_str(env, "DRIVE_ROOT_FOLDER_ID"),
        mp_access_token=mp_access_token,
        mp_currency=_optional_str(env, "MP_CURRENCY") or "BRL",
        mp_webhook_sync=_bool_env(env, "MP_WEBHOOK_SYNC"),
        cors_origins=resolve_cors_origins(env),
        max_upload_bytes=_int_env(env, "MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        http_timeout_seconds=_float_env(env, "HTTP_TIMEOUT_SECONDS", 15.0),
        rate_limit_enabled=_bool_env(env, "RATE_LIMIT_ENABLED", True),
        trust_proxy=_bool_env(env, "TRUST_PROXY"),
        security_log_dir=_optional_str(env, "SECURITY_LOG_DIR"),
        debug=_bool_env(env, "DEBUG"),
    )
