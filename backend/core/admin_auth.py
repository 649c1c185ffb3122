"""
Admin authentication for the admin API.

Shared-secret API key, accepted from either header:
- X-Admin-API-Key: <key>
- Authorization: Bearer <key>

Missing key -> 401, wrong key -> 403, ADMIN_API_KEY unset -> 503.
Admin actions are audited with a hashed actor identity, never the key.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from backend.core.config import settings
from backend.core.errors import AppError, AuthenticationError, PermissionError


@dataclass
class AdminActor:
    """Represents an authenticated admin caller."""
    actor_id: str  # "key:<sha256 prefix>"
    auth_mechanism: str  # "x_admin_api_key" or "bearer"


def get_admin_api_key() -> Optional[str]:
    return settings.ADMIN_API_KEY


def extract_admin_key(request: Request) -> tuple:
    """Return (key, mechanism) from the request headers, or (None, None)."""
    header_key = request.headers.get("x-admin-api-key", "").strip()
    if header_key:
        return header_key, "x_admin_api_key"

    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token, "bearer"
    return None, None


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require a valid admin API key.

    Usage:
        @router.get("/admin/users")
        def list_users(actor: AdminActor = Depends(require_admin)):
            ...
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
        )

    provided, mechanism = extract_admin_key(request)
    if not provided:
        raise AuthenticationError(
            "Admin authentication required. Provide the x-admin-api-key header."
        )

    if not hmac.compare_digest(provided.encode(), expected_key.encode()):
        raise PermissionError("Invalid admin API key", code="admin_forbidden")

    key_hash = hashlib.sha256(provided.encode()).hexdigest()[:16]
    actor = AdminActor(actor_id=f"key:{key_hash}", auth_mechanism=mechanism)
    request.state.admin_actor = actor.actor_id
    return actor
