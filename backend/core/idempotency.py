"""
backend/core/idempotency.py
Payment-reference dedupe for non-idempotent grant creation.
"""

import logging
from datetime import datetime
from typing import Optional

from backend.core.errors import ValidationError


logger = logging.getLogger(__name__)


def normalize_key(key: Optional[str]) -> str:
    """Strip a caller-supplied reference; blank references are rejected."""
    value = (key or "").strip()
    if not value:
        raise ValidationError("payment_ref is required", details={"field": "payment_ref"})
    return value


def check_and_set(payment_ref: str, purpose: str, owner_id: str, now: datetime, store=None) -> bool:
    """
    Record a payment reference, atomically.

    Args:
        payment_ref: Opaque reference from the payment collaborator
        purpose: What the payment buys (boost, verification)
        owner_id: Paying account
        now: Receipt time
        store: EntitlementStore override (defaults to the process store)

    Returns:
        True if the reference was already seen (duplicate signal)
        False if it is new
    """
    if store is None:
        from backend.features.store.service import get_store

        store = get_store()

    first_seen = store.record_payment(payment_ref, purpose, owner_id, now)
    if not first_seen:
        logger.info(
            "[idempotency] duplicate payment reference",
            extra={"payment_ref": payment_ref, "purpose": purpose, "owner_id": owner_id},
        )
    return not first_seen
