"""
Actor resolution for the HTTP layer.

Authentication itself is handled upstream; requests reach the service with
the acting account in X-User-Id. Admin review routes additionally require
X-Admin-Key to match ADMIN_KEY.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from backend.core.config import settings
from backend.core.errors import ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)


@dataclass
class AdminActor:
    """Represents an authenticated admin reviewer."""
    actor_id: str  # "admin:<key hash>" or "admin:<hash>:<X-User-Id>"
    auth_mechanism: str = "x_admin_key"


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency: acting account id from X-User-Id."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthorizedError("X-User-Id header is required")
    return user_id


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> AdminActor:
    """FastAPI dependency: shared-secret admin gate."""
    expected_key = settings.ADMIN_KEY
    header_key = (x_admin_key or "").strip()
    if not expected_key or not header_key or not hmac.compare_digest(header_key, expected_key):
        logger.warning(
            "[auth] invalid admin key attempt",
            extra={"has_key": bool(header_key), "configured": bool(expected_key)},
        )
        raise ForbiddenError("Invalid or missing X-Admin-Key header")

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    reviewer = (x_user_id or "").strip()
    actor_id = f"admin:{key_hash}:{reviewer}" if reviewer else f"admin:{key_hash}"
    return AdminActor(actor_id=actor_id)
