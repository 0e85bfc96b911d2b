"""Google Drive v3 client for checklist photos.

Uses the OAuth user token produced by ``scripts/drive_auth_setup.py``; the
``AuthorizedSession`` refreshes the access token from the refresh token as
needed. Photos are stored under::

    [DRIVE_ROOT_FOLDER_ID]/CHECKLISTS/{ownerKey}/{batchId}/{itemId}_{millis}.{ext}
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2.credentials import Credentials

from .config import DriveCredentials
from .errors import NotFoundError, UpstreamError

logger = logging.getLogger("checklist_api.drive")

DRIVE_API = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME = "application/vnd.google-apps.folder"
BASE_FOLDER_NAME = "CHECKLISTS"
STREAM_CHUNK_BYTES = 64 * 1024


def extension_for_mime(mime: Optional[str]) -> str:
    if mime == "image/png":
        return "png"
    if mime == "image/webp":
        return "webp"
    return "jpg"


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveFileStore:
    """Thin wrapper over the Drive REST API used by uploads and retrieval."""

    def __init__(
        self,
        session: requests.Session,
        *,
        root_folder_id: Optional[str] = None,
        timeout: float = 15.0,
    ):
        self.session = session
        self.root_folder_id = root_folder_id
        self.timeout = timeout

    @classmethod
    def from_credentials(
        cls,
        creds: DriveCredentials,
        *,
        root_folder_id: Optional[str] = None,
        timeout: float = 15.0,
    ) -> "DriveFileStore":
        credentials = Credentials(
            token=creds.access_token,
            refresh_token=creds.refresh_token,
            token_uri=creds.token_uri,
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            scopes=list(creds.scopes) or None,
        )
        return cls(AuthorizedSession(credentials), root_folder_id=root_folder_id, timeout=timeout)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamError(
                "Unable to reach Google Drive",
                code="DRIVE_UNREACHABLE",
                details={"reason": str(exc)},
            ) from exc

        if response.status_code == 404:
            response.close()
            raise NotFoundError("Drive file not found", code="DRIVE_NOT_FOUND")
        if response.status_code >= 400:
            message = ""
            try:
                parsed = response.json()
                error = parsed.get("error") if isinstance(parsed, dict) else None
                if isinstance(error, dict):
                    message = str(error.get("message") or "")
            except ValueError:
                message = ""
            response.close()
            raise UpstreamError(
                "Google Drive request failed",
                code="DRIVE_HTTP_ERROR",
                details={"httpStatus": response.status_code, "driveMessage": message},
            )
        return response

    def _json(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        response = self._request(method, url, **kwargs)
        try:
            parsed = response.json()
        except ValueError as exc:
            raise UpstreamError("Invalid response from Google Drive", code="DRIVE_INVALID_RESPONSE") from exc
        return parsed if isinstance(parsed, dict) else {}

    # -------------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------------

    def find_or_create_folder(self, name: str, parent_id: Optional[str]) -> str:
        q_parts = [
            f"mimeType='{FOLDER_MIME}'",
            f"name='{_escape_query_value(name)}'",
            "trashed=false",
        ]
        if parent_id:
            q_parts.append(f"'{_escape_query_value(parent_id)}' in parents")

        listing = self._json(
            "GET",
            f"{DRIVE_API}/files",
            params={"q": " and ".join(q_parts), "fields": "files(id,name)", "spaces": "drive"},
        )
        files = listing.get("files") or []
        if files:
            return str(files[0]["id"])

        body: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id:
            body["parents"] = [parent_id]
        created = self._json("POST", f"{DRIVE_API}/files", params={"fields": "id"}, json=body)
        logger.info(f"Created Drive folder {name!r} under {parent_id or 'root'}")
        return str(created["id"])

    def ensure_folder_path(self, names: List[str]) -> str:
        parent = self.root_folder_id
        for name in names:
            parent = self.find_or_create_folder(name, parent)
        return parent

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def upload_bytes(self, data: bytes, *, mime: str, filename: str, parent_id: Optional[str]) -> str:
        """Multipart upload: JSON metadata part followed by the media part."""
        metadata: Dict[str, Any] = {"name": filename}
        if parent_id:
            metadata["parents"] = [parent_id]

        boundary = f"checklist-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode("utf-8"),
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\nContent-Type: {mime}\r\n\r\n".encode("utf-8"),
                data,
                f"\r\n--{boundary}--\r\n".encode("utf-8"),
            ]
        )
        created = self._json(
            "POST",
            f"{DRIVE_UPLOAD_API}/files",
            params={"uploadType": "multipart", "fields": "id"},
            data=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )
        file_id = created.get("id")
        if not file_id:
            raise UpstreamError("Drive upload returned no file id", code="DRIVE_INVALID_RESPONSE")
        return str(file_id)

    def upload_photo(
        self,
        *,
        owner_key: str,
        batch_id: str,
        item_id: str,
        data: bytes,
        mime: Optional[str],
    ) -> str:
        mime = mime or "image/jpeg"
        folder_id = self.ensure_folder_path([BASE_FOLDER_NAME, owner_key, batch_id])
        filename = f"{item_id}_{int(time.time() * 1000)}.{extension_for_mime(mime)}"
        file_id = self.upload_bytes(data, mime=mime, filename=filename, parent_id=folder_id)
        logger.info(f"Uploaded {filename} ({len(data)} bytes) as {file_id}")
        return file_id

    def get_metadata(self, file_id: str) -> Dict[str, Any]:
        return self._json("GET", f"{DRIVE_API}/files/{quote(file_id, safe='')}", params={"fields": "mimeType,name"})

    def open_media(self, file_id: str) -> Iterator[bytes]:
        """Start a streamed download; errors before the first byte raise here."""
        response = self._request(
            "GET",
            f"{DRIVE_API}/files/{quote(file_id, safe='')}",
            params={"alt": "media"},
            stream=True,
        )
        return self._iter_body(response, file_id)

    def _iter_body(self, response: requests.Response, file_id: str) -> Iterator[bytes]:
        try:
            for chunk in response.iter_content(chunk_size=STREAM_CHUNK_BYTES):
                if chunk:
                    yield chunk
        except requests.RequestException as exc:
            logger.error(f"Drive stream error for {file_id}: {exc}")
            raise UpstreamError("Drive stream interrupted", code="DRIVE_STREAM_ERROR") from exc
        finally:
            # Closing on client disconnect stops the upstream transfer
            response.close()
