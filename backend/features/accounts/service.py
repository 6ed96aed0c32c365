"""
backend/features/accounts/service.py

Account registry: signup hook, tier changes from billing, phone verification.
"""

import logging
from datetime import datetime
from typing import Optional

from backend.core.clock import ensure_utc
from backend.core.errors import ConflictError, NotFoundError, ValidationError
from backend.features.store.base import DuplicateRecordError
from backend.features.store.service import get_store, with_cas_retry
from backend.models.account import Account, AccountRole, Tier


logger = logging.getLogger(__name__)


def register_account(
    account_id: str,
    role: AccountRole,
    now: datetime,
    tier: Optional[Tier] = None,
    display_name: Optional[str] = None,
) -> Account:
    account_id = (account_id or "").strip()
    if not account_id:
        raise ValidationError("account_id is required")
    role = AccountRole(role)
    if role == AccountRole.CREATOR and tier is not None:
        raise ValidationError("Creators do not have a subscription tier")
    if role == AccountRole.BRAND and tier is None:
        tier = Tier.NONE

    account = Account(
        account_id=account_id,
        role=role,
        tier=tier,
        display_name=display_name,
        created_at=ensure_utc(now),
    )
    try:
        stored = get_store().insert_account(account)
    except DuplicateRecordError as exc:
        raise ConflictError(f"Account {account_id} already exists", details={"account_id": account_id}) from exc

    logger.info(
        "[accounts] registered",
        extra={"account_id": account_id, "role": role.value, "tier": stored.tier.value if stored.tier else None},
    )
    return stored


def get_account(account_id: str) -> Account:
    account = get_store().get_account(account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found", details={"account_id": account_id})
    return account


def set_tier(account_id: str, tier: Tier, now: datetime) -> Account:
    """Billing collaborator hook. Brands only."""
    tier = Tier(tier)

    def attempt() -> Account:
        account = get_account(account_id)
        if account.role != AccountRole.BRAND:
            raise ValidationError("Only brand accounts carry a tier", details={"account_id": account_id})
        if account.tier == tier:
            return account
        return get_store().cas_account(account.model_copy(update={"tier": tier}), account.version)

    updated = with_cas_retry(attempt, operation="set_tier", entity_id=account_id)
    logger.info(
        "[accounts] tier changed",
        extra={"account_id": account_id, "tier": tier.value, "at": ensure_utc(now).isoformat()},
    )
    return updated


def mark_phone_verified(account_id: str, now: datetime) -> Account:
    def attempt() -> Account:
        account = get_account(account_id)
        if account.phone_verified:
            return account
        return get_store().cas_account(account.model_copy(update={"phone_verified": True}), account.version)

    updated = with_cas_retry(attempt, operation="mark_phone_verified", entity_id=account_id)
    logger.info(
        "[accounts] phone verified",
        extra={"account_id": account_id, "at": ensure_utc(now).isoformat()},
    )
    return updated
