#!/usr/bin/env python3
"""One-time Google Drive OAuth authorization.

Prints a consent URL for the OAuth client in DRIVE_OAUTH_CREDENTIALS_JSON,
exchanges the pasted authorization code for tokens and writes them where
the API expects DRIVE_OAUTH_TOKEN_JSON.

Usage:
    python scripts/drive_auth_setup.py --credentials ./driveCredentials.json
    python scripts/drive_auth_setup.py --credentials ./driveCredentials.json --out ./driveToken.json
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlencode

import requests

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from checklist_api.config import DRIVE_SCOPES, read_json_flexible  # noqa: E402
from checklist_api.errors import ConfigError  # noqa: E402

AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"


def client_section(client: Dict[str, Any]) -> Dict[str, Any]:
    section = client.get("installed") or client.get("web") or {}
    if not section.get("client_id") or not section.get("client_secret"):
        raise ConfigError("OAuth client JSON has no installed/web client_id and client_secret")
    return section


def build_consent_url(section: Dict[str, Any], redirect_uri: str) -> str:
    params = {
        "client_id": section["client_id"],
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(DRIVE_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{section.get('auth_uri') or AUTH_URI}?{urlencode(params)}"


def exchange_code(section: Dict[str, Any], code: str, redirect_uri: str, timeout: float) -> Dict[str, Any]:
    resp = requests.post(
        section.get("token_uri") or DEFAULT_TOKEN_URI,
        data={
            "code": code,
            "client_id": section["client_id"],
            "client_secret": section["client_secret"],
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        timeout=timeout,
    )
    if resp.status_code >= 400:
        raise RuntimeError(f"Token exchange failed ({resp.status_code}): {resp.text[:300]}")
    return resp.json()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Authorize Google Drive access for the checklist API")
    parser.add_argument(
        "--credentials",
        default=os.getenv("DRIVE_OAUTH_CREDENTIALS_JSON"),
        help="OAuth client JSON (inline or path). Defaults to DRIVE_OAUTH_CREDENTIALS_JSON.",
    )
    parser.add_argument(
        "--out",
        default=os.getenv("DRIVE_OAUTH_TOKEN_JSON") or "driveToken.json",
        help="Where to write the token JSON (default: DRIVE_OAUTH_TOKEN_JSON or ./driveToken.json)",
    )
    parser.add_argument("--timeout", type=float, default=15.0, help="HTTP timeout in seconds")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if not args.credentials:
        print("❌ Pass --credentials or set DRIVE_OAUTH_CREDENTIALS_JSON")
        return 2

    try:
        client = read_json_flexible(args.credentials, base_dir=Path.cwd(), name="credentials")
        section = client_section(client)
    except ConfigError as e:
        print(f"❌ {e.error}")
        return 2

    redirect_uris = section.get("redirect_uris") or []
    redirect_uri = redirect_uris[0] if redirect_uris else "http://localhost"

    print("Open this URL, approve access, then paste the `code` parameter from the redirect:\n")
    print(build_consent_url(section, redirect_uri))
    print()
    code = input("Authorization code: ").strip()
    if not code:
        print("❌ No code entered")
        return 1

    try:
        token = exchange_code(section, code, redirect_uri, args.timeout)
    except (requests.RequestException, RuntimeError) as e:
        print(f"❌ {e}")
        return 1

    if not token.get("refresh_token"):
        print("⚠️  No refresh_token returned; revoke the app's access and run again")

    out_path = Path(args.out)
    out_path.write_text(json.dumps(token, indent=2), encoding="utf-8")
    print(f"✅ Token saved to {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
