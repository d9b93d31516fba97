"""
Request identity helpers.

The upstream auth layer (session/JWT) resolves the caller and forwards it as
headers; this service only reads them:
- X-User-Id: signed-in user
- X-Pseudo-User-Id (+ optional X-Device-Fingerprint): anonymous identity
- X-Admin-Key: shared secret for admin routes (ADMIN_KEY)
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from flavr.core.config import settings
from flavr.core.errors import ConfigurationError, UnauthorizedError
from flavr.features.usage.service import Identity, PseudoIdentity, UserIdentity


@dataclass
class AdminActor:
    """Authenticated admin caller (key fingerprint only, never the key)."""
    actor_id: str
    auth_mechanism: str = "x_admin_key"


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthorizedError("Authentication required")
    return user_id


def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_pseudo_user_id: Optional[str] = Header(None),
    x_device_fingerprint: Optional[str] = Header(None),
) -> Identity:
    """Signed-in user wins over a pseudo identity when both are sent."""
    if x_user_id and x_user_id.strip():
        return UserIdentity(user_id=x_user_id.strip())
    if x_pseudo_user_id and x_pseudo_user_id.strip():
        return PseudoIdentity(pseudo_id=x_pseudo_user_id.strip(), fingerprint=x_device_fingerprint)
    raise UnauthorizedError("X-User-Id or X-Pseudo-User-Id header required")


def require_admin(request: Request) -> AdminActor:
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        raise ConfigurationError("ADMIN_KEY not configured; admin routes disabled")

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode("utf-8"), expected_key.encode("utf-8")):
        raise UnauthorizedError("Invalid admin key")

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")
