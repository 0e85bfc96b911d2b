"""FastAPI dependencies for authentication, provider clients, and shared resources.

Provider clients (Firebase, Firestore, Drive, Mercado Pago) are built once by
``build_services`` at startup and hung on ``app.state.services``. Endpoints
reach them through these dependencies for:
- Firebase ID token verification
- Portal role checks (super_admin)
- The capability broker and entitlement reconciler
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import firebase_admin
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth, credentials, firestore
from firebase_admin import exceptions as firebase_exceptions

from .capabilities import ROLE_SUPER_ADMIN, CapabilityBroker
from .config import AppConfig
from .drive import DriveFileStore
from .entitlements import EntitlementReconciler
from .errors import AuthError, ConfigError, UpstreamError
from .payments import MercadoPagoClient
from .records import FileRecords, UserDirectory
from .utils.client_ip import get_client_ip
from .utils.security_logger import security_logger

logger = logging.getLogger("checklist_api.dependencies")

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# IDENTITY
# =============================================================================

class FirebaseIdentity:
    """Verifies Firebase ID tokens against one initialized Admin app."""

    def __init__(self, app: firebase_admin.App):
        self.app = app

    def verify(self, token: str) -> Dict[str, Any]:
        """Return decoded claims (including ``uid``).

        Raises:
            AuthError: 401 for revoked, expired or invalid tokens
        """
        try:
            return auth.verify_id_token(token, app=self.app, check_revoked=True)
        except auth.RevokedIdTokenError as exc:
            raise AuthError("Token has been revoked", code="TOKEN_REVOKED") from exc
        except auth.ExpiredIdTokenError as exc:
            raise AuthError("Token has expired", code="TOKEN_EXPIRED") from exc
        except auth.InvalidIdTokenError as exc:
            raise AuthError("Invalid token", code="INVALID_TOKEN") from exc
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            raise AuthError("Authentication failed", code="AUTH_FAILED") from exc


def init_firebase_app(service_account: Optional[Dict[str, Any]]) -> firebase_admin.App:
    """Get or initialize the default Firebase Admin app."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    if not service_account:
        raise ConfigError("Missing Firebase Admin credential")
    app = firebase_admin.initialize_app(credentials.Certificate(service_account))
    logger.info("Firebase Admin initialized")
    return app


# =============================================================================
# SERVICES
# =============================================================================

@dataclass
class Services:
    config: AppConfig
    identity: Any
    users: Any
    files: Any
    file_store: Any
    payments: Optional[Any]
    broker: CapabilityBroker
    reconciler: EntitlementReconciler


def assemble_services(
    config: AppConfig,
    *,
    identity: Any,
    users: Any,
    files: Any,
    file_store: Any,
    payments: Optional[Any],
) -> Services:
    """Wire the broker and reconciler around already-built provider clients."""
    broker = CapabilityBroker(
        config.signing_secret,
        public_base_url=config.public_base_url,
        default_ttl_seconds=config.signed_url_ttl_seconds,
        file_source=file_store,
    )
    reconciler = EntitlementReconciler(payments, users)
    return Services(
        config=config,
        identity=identity,
        users=users,
        files=files,
        file_store=file_store,
        payments=payments,
        broker=broker,
        reconciler=reconciler,
    )


def build_services(config: AppConfig) -> Services:
    """Construct every provider client once, at startup."""
    firebase_app = init_firebase_app(config.firebase_credentials)
    db = firestore.client(app=firebase_app)
    logger.info("Firestore client initialized")

    if config.drive_credentials is None:
        raise ConfigError("Missing Google Drive OAuth credentials")
    file_store = DriveFileStore.from_credentials(
        config.drive_credentials,
        root_folder_id=config.drive_root_folder_id,
        timeout=config.http_timeout_seconds,
    )

    payments = None
    if config.mp_access_token:
        payments = MercadoPagoClient(config.mp_access_token, timeout=config.http_timeout_seconds)

    return assemble_services(
        config,
        identity=FirebaseIdentity(firebase_app),
        users=UserDirectory(db),
        files=FileRecords(db),
        file_store=file_store,
        payments=payments,
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigError("Services not initialized")
    return services


def get_broker(services: Services = Depends(get_services)) -> CapabilityBroker:
    return services.broker


def get_payments(services: Services = Depends(get_services)) -> MercadoPagoClient:
    """Mercado Pago client, or 500 when MP_ACCESS_TOKEN is not configured."""
    if services.payments is None:
        raise ConfigError("MP_ACCESS_TOKEN not configured", code="MP_NOT_CONFIGURED")
    return services.payments


# =============================================================================
# AUTHENTICATION
# =============================================================================

def authenticate(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials],
    services: Services,
) -> Dict[str, Any]:
    """Verify the bearer token on ``request`` and log failures."""
    if bearer is None or not bearer.credentials:
        _log_auth_failure(request, "missing_auth_header")
        raise AuthError("missing token", code="MISSING_TOKEN")
    try:
        return services.identity.verify(bearer.credentials)
    except AuthError as exc:
        _log_auth_failure(request, exc.code.lower())
        raise


def verify_firebase_token(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Verify Firebase ID token from Authorization header.

    Returns:
        Decoded token claims including 'uid'

    Raises:
        AuthError 401 on any auth failure
    """
    return authenticate(request, bearer, services)


def _log_auth_failure(request: Request, reason: str) -> None:
    security_logger.auth_failure(
        ip=get_client_ip(request),
        reason=reason,
        path=request.url.path,
        user_agent=request.headers.get("user-agent", "unknown"),
    )


# =============================================================================
# AUTHORIZATION (Portal roles)
# =============================================================================

def load_profile(services: Services, uid: str) -> Dict[str, Any]:
    """Fresh user document from Firestore; token claims are never trusted for roles."""
    try:
        return services.users.get_user(uid) or {}
    except Exception as exc:
        logger.error(f"role check failed for {uid}: {exc}")
        raise UpstreamError("role check failed", code="ROLE_CHECK_FAILED") from exc


def require_super_admin(
    request: Request,
    decoded_token: Dict[str, Any] = Depends(verify_firebase_token),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Allow only portal super admins.

    Returns:
        Decoded token claims of the caller

    Raises:
        AuthError 403 if the caller is not super_admin
    """
    uid = decoded_token["uid"]
    profile = load_profile(services, uid)
    if profile.get("portalRole") != ROLE_SUPER_ADMIN:
        security_logger.access_denied(
            ip=get_client_ip(request),
            uid=uid,
            path=request.url.path,
            reason="not_super_admin",
        )
        raise AuthError.forbidden("only super_admin", code="SUPER_ADMIN_REQUIRED")
    return decoded_token
