"""Pydantic models for the Checklist API.

Field names follow the camelCase keys the mobile app and the web portal
already send.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# INPUT VALIDATION PATTERNS
# =============================================================================

KEY_PATTERN = r"^[\w\-. ]{1,128}$"
MIME_PATTERN = r"^image/(jpeg|jpg|png|webp|heic)$"


# =============================================================================
# FILES
# =============================================================================

class SignedUrlsRequest(BaseModel):
    """Request a batch of signed drive-file URLs."""
    fileIds: List[Any] = Field(..., max_length=500)


class SignedUrlsResponse(BaseModel):
    urls: Dict[str, str]


class PhotoUploadRequest(BaseModel):
    """Legacy JSON upload with a base64 body."""
    ownerKey: str = Field(..., pattern=KEY_PATTERN, description="Site code the photo belongs to")
    batchId: str = Field(..., pattern=KEY_PATTERN, description="Checklist run id")
    itemId: str = Field(..., pattern=KEY_PATTERN, description="Checklist item id")
    mime: Optional[str] = Field(default=None, pattern=MIME_PATTERN)
    base64: str = Field(..., min_length=1)

    @field_validator("base64")
    @classmethod
    def strip_data_url(cls, v: str) -> str:
        # Accept "data:image/jpeg;base64,...." as sent by some web clients
        if v.startswith("data:") and "," in v:
            return v.split(",", 1)[1]
        return v


class PhotoUploadResponse(BaseModel):
    fileId: str


# =============================================================================
# PAYMENTS
# =============================================================================

class CheckoutRequest(BaseModel):
    """Create a Mercado Pago checkout for a plan."""
    plan: str = Field(..., min_length=1, max_length=32)
    uid: str = Field(..., min_length=1, max_length=128)
    email: Optional[str] = Field(default=None, max_length=256)
    siteName: Optional[str] = Field(default=None, max_length=200)


class CheckoutResponse(BaseModel):
    id: str
    checkout_url: Optional[str] = None
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    id: Any
    status: Optional[str] = None
    status_detail: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    payer: Optional[str] = None
    transaction_amount: Optional[float] = None


# =============================================================================
# PORTAL
# =============================================================================

class SetAccessRequest(BaseModel):
    """Grant a portal role; admins are scoped to ``allowedOwnerKeys``."""
    targetUid: str = Field(..., min_length=1, max_length=128)
    role: str = Field(..., min_length=1, max_length=32)
    allowedOwnerKeys: List[str] = Field(default_factory=list, max_length=1000)


class OkResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    """Common error body."""
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
