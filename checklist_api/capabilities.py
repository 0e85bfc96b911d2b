"""Capability broker: short-lived signed URLs for stored checklist photos.

A capability is ``{expires_at}.{hex_signature}`` where the signature is
HMAC-SHA256 over ``"{resource_id}.{expires_at}"``. Both the resource id and
the expiry are covered, so neither can be swapped independently. Nothing is
persisted; a capability dies at ``expires_at`` or when the secret rotates.

Verification never raises. Every failure mode (malformed token, missing
secret, expiry, wrong resource) collapses to ``False`` so the retrieval
boundary is fail-closed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote

from .errors import AuthError, ConfigError, NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger("checklist_api.capabilities")

DEFAULT_TTL_SECONDS = 15 * 60

ROLE_SUPER_ADMIN = "super_admin"
ROLE_ADMIN = "admin"
PORTAL_ROLES = (ROLE_ADMIN, ROLE_SUPER_ADMIN)


@dataclass(frozen=True)
class SignedCapability:
    resource_id: str
    expires_at: int  # epoch millis
    signature: str  # hex

    @property
    def token(self) -> str:
        return f"{self.expires_at}.{self.signature}"


class FileSource(Protocol):
    """What retrieval needs from the storage provider."""

    def get_metadata(self, file_id: str) -> Dict[str, Any]: ...

    def open_media(self, file_id: str) -> Iterator[bytes]: ...


def _system_clock_ms() -> int:
    return int(time.time() * 1000)


class CapabilityBroker:
    """Issues and verifies capabilities and proxies verified reads."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        public_base_url: str = "",
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        file_source: Optional[FileSource] = None,
        clock_ms: Callable[[], int] = _system_clock_ms,
    ):
        self._secret = secret.encode("utf-8") if secret else None
        self.public_base_url = public_base_url.rstrip("/")
        self.default_ttl_seconds = default_ttl_seconds
        self.file_source = file_source
        self._clock_ms = clock_ms

    @property
    def configured(self) -> bool:
        return self._secret is not None

    def _signature(self, resource_id: str, expires_at: int) -> str:
        payload = f"{resource_id}.{expires_at}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def expiry_from_now(self, ttl_seconds: Optional[int] = None) -> int:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("ttl_seconds must be positive")
        return self._clock_ms() + ttl * 1000

    def sign(self, resource_id: str, expires_at: int) -> SignedCapability:
        if self._secret is None:
            raise ConfigError("SIGNING_SECRET not configured", code="SIGNING_SECRET_MISSING")
        return SignedCapability(
            resource_id=resource_id,
            expires_at=expires_at,
            signature=self._signature(resource_id, expires_at),
        )

    def issue(self, resource_id: str, ttl_seconds: Optional[int] = None) -> SignedCapability:
        return self.sign(resource_id, self.expiry_from_now(ttl_seconds))

    def verify(self, resource_id: str, token: Optional[str]) -> bool:
        if self._secret is None or not token:
            return False

        exp_str, sep, signature = str(token).partition(".")
        if not sep or not exp_str.isdigit() or not signature:
            return False
        try:
            expires_at = int(exp_str)
        except ValueError:
            return False
        if self._clock_ms() > expires_at:
            return False

        expected = self._signature(resource_id, expires_at)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def signed_url(self, capability: SignedCapability) -> str:
        return (
            f"{self.public_base_url}/drive-file/{quote(capability.resource_id, safe='')}"
            f"?t={quote(capability.token, safe='')}"
        )

    def issue_urls(
        self,
        resource_ids: Iterable[Any],
        *,
        ttl_seconds: Optional[int] = None,
        allow: Optional[Callable[[str], bool]] = None,
    ) -> Dict[str, str]:
        """Sign a batch of ids with one shared expiry.

        Empty ids are skipped, and so is every id ``allow`` rejects: a
        requester gets URLs for what it may see, not an error for the batch.
        """
        expires_at = self.expiry_from_now(ttl_seconds)
        urls: Dict[str, str] = {}
        for raw_id in resource_ids:
            if raw_id is None or raw_id == "":
                continue
            resource_id = str(raw_id)
            if allow is not None and not allow(resource_id):
                logger.debug(f"Skipping capability for {resource_id}: requester not allowed")
                continue
            urls[resource_id] = self.signed_url(self.sign(resource_id, expires_at))
        return urls

    def retrieve(self, resource_id: str, token: Optional[str]) -> Tuple[Iterator[bytes], str]:
        """Verify the token, then open a streamed read from the file source.

        Raises:
            AuthError: 403 for any token problem
            NotFoundError: 404 for any fetch failure before streaming starts
        """
        if not self.verify(resource_id, token):
            raise AuthError.forbidden("forbidden")
        if self.file_source is None:
            raise NotFoundError("not found")

        try:
            meta = self.file_source.get_metadata(resource_id)
            chunks = self.file_source.open_media(resource_id)
        except (UpstreamError, NotFoundError) as exc:
            logger.warning(f"drive-file fetch failed for {resource_id}: {exc}")
            raise NotFoundError("not found") from exc

        mime_type = str(meta.get("mimeType") or "image/jpeg")
        return chunks, mime_type


class AccessPolicy:
    """Portal permission predicate keyed by role.

    super_admin sees every owner key; admin only the keys listed in its
    ``allowedOwnerKeys``; anybody else sees nothing.
    """

    def __init__(self, profile: Optional[Mapping[str, Any]]):
        profile = profile or {}
        self.role = str(profile.get("portalRole") or "").strip()
        self.allowed_owner_keys = {
            str(key) for key in (profile.get("allowedOwnerKeys") or []) if key is not None
        }

    def can_access(self, owner_key: Optional[str]) -> bool:
        if self.role == ROLE_SUPER_ADMIN:
            return True
        if self.role == ROLE_ADMIN and owner_key:
            return str(owner_key) in self.allowed_owner_keys
        return False


def owner_key_filter(policy: AccessPolicy, owner_keys: Mapping[str, Optional[str]]) -> Callable[[str], bool]:
    """Build an ``allow`` callback for ``issue_urls`` from file id -> owner key lookups."""

    def allow(file_id: str) -> bool:
        if policy.role == ROLE_SUPER_ADMIN:
            return True
        return policy.can_access(owner_keys.get(file_id))

    return allow


def dedupe_ids(file_ids: Iterable[Any]) -> List[str]:
    return list(dict.fromkeys(str(i) for i in file_ids if i is not None and i != ""))
