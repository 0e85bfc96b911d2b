"""Files router - photo uploads and signed read access.

Endpoints:
    POST /upload-foto            - JSON upload (base64 body), kept for older app builds
    POST /upload-foto-multipart  - multipart upload (faster, no base64 inflation)
    POST /signed-urls            - batch of expiring drive-file URLs
    GET  /drive-file/{id}?t=...  - verify capability and stream the photo
"""

import base64
import binascii
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials
from google.api_core import exceptions as gcp_exceptions

from ..capabilities import ROLE_SUPER_ADMIN, AccessPolicy, CapabilityBroker, dedupe_ids, owner_key_filter
from ..dependencies import Services, authenticate, bearer_scheme, get_broker, get_services, load_profile
from ..errors import ApiError, AuthError, ConfigError, NotFoundError, UpstreamError, ValidationError
from ..middleware.rate_limit import rate_limit_upload
from ..models import ErrorResponse, PhotoUploadRequest, PhotoUploadResponse, SignedUrlsRequest, SignedUrlsResponse
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

router = APIRouter()
logger = logging.getLogger("checklist_api.files")

UPLOAD_READ_CHUNK = 1024 * 1024


def _require_signing(broker: CapabilityBroker) -> None:
    if not broker.configured:
        raise ConfigError("SIGNING_SECRET not configured", code="SIGNING_SECRET_MISSING")


def _store_photo(
    services: Services,
    *,
    owner_key: str,
    batch_id: str,
    item_id: str,
    data: bytes,
    mime: str,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """Upload to Drive, then record provenance in Firestore."""
    try:
        file_id = services.file_store.upload_photo(
            owner_key=owner_key,
            batch_id=batch_id,
            item_id=item_id,
            data=data,
            mime=mime,
        )
        services.files.create(
            file_id,
            owner_key=owner_key,
            batch_id=batch_id,
            item_id=item_id,
            extra=extra,
        )
    except NotFoundError as exc:
        # e.g. DRIVE_ROOT_FOLDER_ID no longer exists
        raise UpstreamError("Failed to upload photo", code="UPLOAD_FAILED", details={"reason": exc.error}) from exc
    except gcp_exceptions.GoogleAPICallError as exc:
        raise UpstreamError("Failed to record photo", code="UPLOAD_RECORD_FAILED", details={"reason": str(exc)}) from exc
    return file_id


# =============================================================================
# UPLOADS
# =============================================================================

@router.post(
    "/upload-foto",
    response_model=PhotoUploadResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@rate_limit_upload
def upload_photo(
    request: Request,
    payload: PhotoUploadRequest,
    services: Services = Depends(get_services),
) -> PhotoUploadResponse:
    try:
        data = base64.b64decode(payload.base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("invalid base64", code="INVALID_BASE64") from exc
    if not data:
        raise ValidationError("empty photo", code="EMPTY_FILE")

    mime = payload.mime or "image/jpeg"
    file_id = _store_photo(
        services,
        owner_key=payload.ownerKey,
        batch_id=payload.batchId,
        item_id=payload.itemId,
        data=data,
        mime=mime,
    )
    return PhotoUploadResponse(fileId=file_id)


@router.post(
    "/upload-foto-multipart",
    response_model=PhotoUploadResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@rate_limit_upload
def upload_photo_multipart(
    request: Request,
    ownerKey: str = Form(...),
    batchId: str = Form(...),
    itemId: str = Form(...),
    file: UploadFile = File(...),
    services: Services = Depends(get_services),
) -> PhotoUploadResponse:
    owner_key, batch_id, item_id = ownerKey.strip(), batchId.strip(), itemId.strip()
    if not owner_key or not batch_id or not item_id:
        raise ValidationError("missing ownerKey/batchId/itemId/file", code="MISSING_FIELDS")

    max_bytes = services.config.max_upload_bytes
    chunks = []
    total = 0
    while True:
        chunk = file.file.read(UPLOAD_READ_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise ApiError(
                "File exceeds max upload size",
                status_code=413,
                code="PAYLOAD_TOO_LARGE",
                details={"maxBytes": max_bytes},
            )
        chunks.append(chunk)
    if total == 0:
        raise ValidationError("missing ownerKey/batchId/itemId/file", code="MISSING_FIELDS")

    mime = file.content_type or "image/jpeg"
    file_id = _store_photo(
        services,
        owner_key=owner_key,
        batch_id=batch_id,
        item_id=item_id,
        data=b"".join(chunks),
        mime=mime,
        extra={"originalName": file.filename or None, "size": total, "mime": mime},
    )
    return PhotoUploadResponse(fileId=file_id)


# =============================================================================
# SIGNED URLS
# =============================================================================

@router.post(
    "/signed-urls",
    response_model=SignedUrlsResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def create_signed_urls(
    request: Request,
    payload: SignedUrlsRequest,
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> SignedUrlsResponse:
    """Sign every requested file id with one shared 15 minute expiry.

    With SIGNED_URLS_REQUIRE_AUTH the caller must be a portal user, and
    files outside the caller's owner keys are left out of ``urls``.
    """
    broker = services.broker
    _require_signing(broker)
    file_ids = dedupe_ids(payload.fileIds)

    allow = None
    if services.config.signed_urls_require_auth:
        decoded = authenticate(request, bearer, services)
        policy = AccessPolicy(load_profile(services, decoded["uid"]))
        owner_keys = {} if policy.role == ROLE_SUPER_ADMIN else services.files.owner_keys(file_ids)
        allow = owner_key_filter(policy, owner_keys)

    urls = broker.issue_urls(file_ids, allow=allow)
    if allow is not None and len(urls) < len(file_ids):
        logger.info(f"signed-urls: omitted {len(file_ids) - len(urls)} of {len(file_ids)} ids for {decoded['uid']}")
    return SignedUrlsResponse(urls=urls)


@router.get(
    "/drive-file/{file_id}",
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def get_drive_file(
    request: Request,
    file_id: str,
    t: str = Query(default=""),
    broker: CapabilityBroker = Depends(get_broker),
):
    """Stream a photo for a valid capability.

    Expired, tampered and wrong-resource tokens all get the same 403, and
    every fetch failure the same 404.
    """
    _require_signing(broker)
    try:
        chunks, mime_type = broker.retrieve(file_id, t)
    except AuthError:
        security_logger.capability_rejected(ip=get_client_ip(request), path=request.url.path, resource_id=file_id)
        raise

    return StreamingResponse(
        chunks,
        media_type=mime_type,
        headers={"Cache-Control": f"public, max-age={broker.default_ttl_seconds}"},
    )
