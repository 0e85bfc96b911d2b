"""Portal router - web portal identity and access management.

Endpoints:
    GET  /portal/ping        - liveness for the portal frontend
    GET  /portal/me          - verify token and return role, owner keys and plan
    POST /portal/set-access  - grant admin/super_admin (super_admin only)
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from ..capabilities import PORTAL_ROLES, ROLE_SUPER_ADMIN
from ..dependencies import Services, get_services, load_profile, require_super_admin, verify_firebase_token
from ..errors import ValidationError
from ..middleware.rate_limit import rate_limit_portal_write
from ..models import ErrorResponse, OkResponse, SetAccessRequest
from ..records import is_document_id

router = APIRouter()
logger = logging.getLogger("checklist_api.portal")


@router.get("/portal/ping")
async def ping() -> Dict[str, Any]:
    return {"ok": True, "name": "portal-api"}


@router.get("/portal/me", responses={401: {"model": ErrorResponse}})
def whoami(
    decoded_token: Dict[str, Any] = Depends(verify_firebase_token),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Return the caller's portal role and subscription state.

    Always read from the user document; token claims only supply uid/email.
    """
    uid = decoded_token["uid"]
    profile = load_profile(services, uid)

    expires_at = profile.get("expiresAt")
    return {
        "uid": uid,
        "email": decoded_token.get("email") or profile.get("email"),
        "portalRole": profile.get("portalRole"),
        "allowedOwnerKeys": profile.get("allowedOwnerKeys") or [],
        "authorized": bool(profile.get("authorized")),
        "plan": profile.get("plan"),
        "expiresAt": expires_at.isoformat() if hasattr(expires_at, "isoformat") else expires_at,
        "allowedAccessCount": profile.get("allowedAccessCount"),
    }


@router.post(
    "/portal/set-access",
    response_model=OkResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
    },
)
@rate_limit_portal_write
def set_access(
    request: Request,
    payload: SetAccessRequest,
    decoded_token: Dict[str, Any] = Depends(require_super_admin),
    services: Services = Depends(get_services),
) -> OkResponse:
    """Set a user's portal role.

    super_admin is unscoped, so its owner-key list is always stored empty.
    """
    role = payload.role.strip()
    if role not in PORTAL_ROLES:
        raise ValidationError("invalid role", code="INVALID_ROLE", details={"roles": list(PORTAL_ROLES)})

    owner_keys = []
    if role != ROLE_SUPER_ADMIN:
        owner_keys = list(dict.fromkeys(k.strip() for k in payload.allowedOwnerKeys if k.strip()))

    target_uid = payload.targetUid.strip()
    if not is_document_id(target_uid):
        raise ValidationError("invalid targetUid", code="INVALID_TARGET_UID")
    services.users.set_portal_access(target_uid, role, owner_keys)
    logger.info(
        "PortalAccessSet by=%s target=%s role=%s ownerKeys=%d",
        decoded_token["uid"],
        target_uid,
        role,
        len(owner_keys),
    )
    return OkResponse()
