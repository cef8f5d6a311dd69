"""
Authentication module for document owners.

Owners authenticate with a Google ID Token, or (service-to-service) with
X-Admin-Secret + X-User-ID. Signers never authenticate here: the signing
token in the request body is their only credential.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from google.oauth2 import id_token as google_id_token
from google.auth.transport import requests as google_requests

from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import get_settings, Settings
from app.models import Document, OwnerIdentity
from app.utils.datetime_utils import utc_now
from app.utils.logging import set_context

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


class AuthenticationError(HTTPException):
    """Custom authentication error."""
    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(
            status_code=401,
            detail={"code": code, "message": message}
        )


class AuthorizationError(HTTPException):
    """Custom authorization error."""
    def __init__(self, message: str, code: str = "FORBIDDEN"):
        super().__init__(
            status_code=403,
            detail={"code": code, "message": message}
        )


@dataclass
class RequestContext:
    """Audit data captured from the signer's HTTP request."""
    ip_address: str
    user_agent: str
    timestamp: datetime


def verify_google_id_token(token: str, settings: Settings) -> dict:
    """
    Verifies a Google ID Token against Google's public keys.
    Returns the decoded payload if valid.
    """
    audience = settings.oauth_client_id
    if not audience:
        logger.error("OAUTH_CLIENT_ID is not configured.")
        raise AuthenticationError(
            "Authentication is not configured correctly.", "AUTH_CONFIG_ERROR"
        )

    try:
        return google_id_token.verify_oauth2_token(
            token, google_requests.Request(), audience=audience
        )
    except ValueError as e:
        # Raised by the library for bad format, expiry, wrong audience
        logger.warning(f"Google ID token verification failed: {e}")
        raise AuthenticationError("Invalid or expired token", "INVALID_TOKEN")
    except Exception as e:
        logger.error(f"Unexpected error during token verification: {e}")
        raise AuthenticationError("Authentication service error", "AUTH_SERVICE_ERROR")


def verify_admin_secret(request: Request, settings: Settings) -> None:
    """
    Verify admin API secret from X-Admin-Secret header.
    """
    admin_secret = request.headers.get("X-Admin-Secret")

    if not admin_secret:
        raise AuthenticationError("Admin secret required", "MISSING_ADMIN_SECRET")

    if not settings.admin_api_secret:
        logger.error("ADMIN_API_SECRET not configured")
        raise AuthenticationError("Admin authentication not configured", "ADMIN_NOT_CONFIGURED")

    if not secrets.compare_digest(admin_secret, settings.admin_api_secret):
        raise AuthenticationError("Invalid admin secret", "INVALID_ADMIN_SECRET")


async def get_current_owner(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> OwnerIdentity:
    """
    Dependency that resolves the calling document owner.
    """
    if request.headers.get("X-Admin-Secret"):
        verify_admin_secret(request, settings)
        user_id_header = request.headers.get("X-User-ID")
        if not user_id_header:
            raise AuthenticationError("X-User-ID header required with admin secret", "MISSING_USER_ID")

        owner = OwnerIdentity(
            user_id=user_id_header,
            email=request.headers.get("X-User-Email"),
            name=request.headers.get("X-User-Name"),
        )
        logger.info(f"Admin call with X-User-ID: {user_id_header[:8]}...")
        set_context(user_id=owner.user_id)
        return owner

    if not credentials:
        raise AuthenticationError("Authorization header required", "MISSING_AUTH")

    payload = verify_google_id_token(credentials.credentials, settings)

    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise AuthenticationError("Invalid token: missing user ID or email", "INVALID_TOKEN")

    owner = OwnerIdentity(user_id=user_id, email=email, name=payload.get("name"))
    set_context(user_id=owner.user_id)
    return owner


async def get_optional_owner(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> Optional[OwnerIdentity]:
    """Like get_current_owner, but None when the request carries no owner credentials."""
    if not credentials and not request.headers.get("X-Admin-Secret"):
        return None
    return await get_current_owner(request, credentials, settings)


def ensure_owner(document: Document, owner: OwnerIdentity) -> None:
    """Raise AuthorizationError unless `owner` created `document`."""
    if document.owner_id != owner.user_id:
        logger.warning(
            f"Owner mismatch on document {document.id}: caller {owner.user_id[:8]}..."
        )
        raise AuthorizationError("You don't have access to this document", "NOT_DOCUMENT_OWNER")


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address, handling proxies and Cloud Run.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First entry is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def get_request_context(request: Request) -> RequestContext:
    """Dependency capturing IP, user agent and time of the current request."""
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=(request.headers.get("User-Agent") or "unknown")[:500],
        timestamp=utc_now(),
    )
