"""
backend/features/verification/service.py

Verification Case Controller: a brand's paid verification badge.

none / rejected --payment--> pending_review --approve--> approved
pending_review --reject--> rejected
approved --renewal payment--> pending_review (current grant keeps running)

Review status and benefit are independent: an approved case whose grant has
ended still reports `approved`, but is_verified is False.
"""

from datetime import datetime
from typing import List, Optional
import logging

from backend.core.clock import ensure_utc
from backend.core.config import settings
from backend.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    PreconditionFailedError,
    ValidationError,
)
from backend.core.idempotency import normalize_key
from backend.features.accounts.service import get_account
from backend.features.events.service import emit_event
from backend.features.grants import service as grants
from backend.features.store.base import DuplicateRecordError
from backend.features.store.service import get_store, with_cas_retry
from backend.models.account import Account, AccountRole
from backend.models.events import EventType
from backend.models.grant import GrantKind, TemporalGrant
from backend.models.verification import ReviewStatus, VerificationCase, VerificationView


logger = logging.getLogger(__name__)


def _require_brand(owner_id: str) -> Account:
    account = get_account(owner_id)
    if account.role != AccountRole.BRAND:
        raise ForbiddenError("Only brand accounts can be verified", details={"owner_id": owner_id})
    return account


def _case_id(owner_id: str) -> str:
    # One case per brand, so the id is derived from the owner
    return f"vc_{owner_id}"


def _blank_case(owner_id: str, now: datetime) -> VerificationCase:
    return VerificationCase(case_id=_case_id(owner_id), owner_id=owner_id, created_at=now)


def _get_or_create_case(owner_id: str, now: datetime) -> VerificationCase:
    store = get_store()
    case = store.get_verification_case(owner_id)
    if case is not None:
        return case
    try:
        return store.insert_verification_case(_blank_case(owner_id, now))
    except DuplicateRecordError:
        # Lost a creation race; the winner's row is authoritative
        return store.get_verification_case(owner_id)


def _linked_grant(case: VerificationCase) -> Optional[TemporalGrant]:
    if not case.grant_id:
        return None
    return get_store().get_grant(case.grant_id)


def _badge_grants(owner_id: str) -> List[TemporalGrant]:
    return get_store().list_grants(owner_id=owner_id, kind=GrantKind.VERIFICATION_BADGE)


def missing_preconditions(account: Account) -> List[str]:
    missing = []
    if settings.VERIFICATION_REQUIRE_PHONE and not account.phone_verified:
        missing.append("phone_verified")
    if account.effective_tier.value not in settings.verification_eligible_tiers():
        missing.append("paid_tier")
    return missing


def submit_payment(owner_id: str, payment_ref: str, now: datetime) -> VerificationCase:
    """
    Payment succeeded: move the case into pending_review.

    The payment receipt and the case transition are written together, so a
    refused transition leaves the reference unspent for a later retry.

    Raises:
        PreconditionFailedError: phone not verified or tier not eligible
        InvalidTransitionError: a review is already pending
        ConflictError: the reference was already spent elsewhere
    """
    now = ensure_utc(now)
    payment_ref = normalize_key(payment_ref)
    account = _require_brand(owner_id)

    missing = missing_preconditions(account)
    if missing:
        logger.warning(
            "[verification] preconditions not met",
            extra={"owner_id": owner_id, "missing": ",".join(missing)},
        )
        raise PreconditionFailedError(
            "Verification requires a verified phone and an active paid tier",
            details={"missing": missing},
        )

    store = get_store()
    outcome = {"replay": False, "renewal": False}

    def attempt() -> VerificationCase:
        current = _get_or_create_case(owner_id, now)
        if current.payment_ref == payment_ref:
            outcome["replay"] = True
            return current
        if current.review_status == ReviewStatus.PENDING_REVIEW:
            raise InvalidTransitionError(
                "A verification review is already pending",
                details={"from": current.review_status.value, "event": "payment"},
            )
        outcome["replay"] = False
        outcome["renewal"] = bool(current.grant_id)
        updated = current.model_copy(
            update={
                "review_status": ReviewStatus.PENDING_REVIEW,
                "payment_ref": payment_ref,
                "submitted_at": now,
                "rejection_reason": None,
            }
        )
        return store.submit_verification_payment(updated, current.version, now)

    try:
        submitted = with_cas_retry(attempt, operation="verification.submit_payment", entity_id=owner_id)
    except DuplicateRecordError as exc:
        receipt = store.get_payment(payment_ref)
        logger.warning(
            "[verification] payment reference already spent",
            extra={"owner_id": owner_id, "purpose": receipt.purpose if receipt else None},
        )
        raise ConflictError(
            "Payment reference was already used",
            code="payment_ref_reused",
            details={"payment_ref": payment_ref, "purpose": receipt.purpose if receipt else None},
        ) from exc

    if outcome["replay"]:
        return submitted

    logger.info(
        "[verification] submitted",
        extra={"owner_id": owner_id, "case_id": submitted.case_id, "renewal": outcome["renewal"]},
    )
    emit_event(
        EventType.VERIFICATION_SUBMITTED,
        account_ids=[owner_id],
        occurred_at=now,
        entity_id=submitted.case_id,
        payload={"renewal": outcome["renewal"]},
    )
    return submitted


def _pending_case(owner_id: str, event: str) -> VerificationCase:
    _require_brand(owner_id)
    case = get_store().get_verification_case(owner_id)
    if case is None or case.review_status != ReviewStatus.PENDING_REVIEW:
        status = case.review_status.value if case else ReviewStatus.NONE.value
        raise InvalidTransitionError(
            f"Cannot {event} a case in status {status}",
            details={"from": status, "event": event},
        )
    return case


def approve(owner_id: str, reviewer_id: str, now: datetime) -> VerificationCase:
    """Approve a pending case and start a fresh verification grant at `now`."""
    now = ensure_utc(now)
    case = _pending_case(owner_id, "approve")
    grant = grants.activate(
        owner_id,
        GrantKind.VERIFICATION_BADGE,
        settings.VERIFICATION_VALIDITY_DAYS,
        case.payment_ref,
        now,
    )
    store = get_store()
    superseded = {"grant_id": None}

    def attempt() -> VerificationCase:
        current = _pending_case(owner_id, "approve")
        superseded["grant_id"] = current.grant_id
        updated = current.model_copy(
            update={
                "review_status": ReviewStatus.APPROVED,
                "grant_id": grant.grant_id,
                "reviewed_at": now,
                "reviewed_by": reviewer_id,
                "rejection_reason": None,
            }
        )
        return store.cas_verification_case(updated, current.version)

    try:
        approved = with_cas_retry(attempt, operation="verification.approve", entity_id=owner_id)
    except InvalidTransitionError:
        # A concurrent review won; the grant just created must not confer benefit
        grants.revoke(grant.grant_id, reviewer_id, "superseded review", now)
        raise

    if superseded["grant_id"]:
        # Renewal: the new grant replaces the one it was renewed from
        grants.revoke(superseded["grant_id"], reviewer_id, "renewed", now)

    logger.info(
        "[verification] approved",
        extra={"owner_id": owner_id, "grant_id": grant.grant_id, "reviewer_id": reviewer_id},
    )
    emit_event(
        EventType.VERIFICATION_APPROVED,
        account_ids=[owner_id],
        occurred_at=now,
        entity_id=approved.case_id,
        payload={"grant_id": grant.grant_id, "verified_until": grant.end.isoformat()},
    )
    return approved


def reject(owner_id: str, reviewer_id: str, reason: str, now: datetime) -> VerificationCase:
    """Reject a pending case. Any earlier grant keeps running untouched."""
    now = ensure_utc(now)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required", details={"field": "reason"})
    store = get_store()

    def attempt() -> VerificationCase:
        current = _pending_case(owner_id, "reject")
        updated = current.model_copy(
            update={
                "review_status": ReviewStatus.REJECTED,
                "rejection_reason": reason,
                "reviewed_at": now,
                "reviewed_by": reviewer_id,
            }
        )
        return store.cas_verification_case(updated, current.version)

    rejected = with_cas_retry(attempt, operation="verification.reject", entity_id=owner_id)
    logger.info(
        "[verification] rejected",
        extra={"owner_id": owner_id, "reviewer_id": reviewer_id},
    )
    emit_event(
        EventType.VERIFICATION_REJECTED,
        account_ids=[owner_id],
        occurred_at=now,
        entity_id=rejected.case_id,
        payload={"reason": reason},
    )
    return rejected


def status(owner_id: str, now: datetime) -> VerificationView:
    """Read-only view; a brand that never applied gets an unsaved `none` case."""
    now = ensure_utc(now)
    _require_brand(owner_id)
    case = get_store().get_verification_case(owner_id) or _blank_case(owner_id, now)
    in_effect = [g for g in _badge_grants(owner_id) if g.is_in_effect(now)]
    linked = _linked_grant(case)
    return VerificationView(
        case=case,
        is_verified=bool(in_effect),
        verified_until=max(g.end for g in in_effect) if in_effect else None,
        expired=not in_effect and bool(linked and linked.active and linked.has_ended(now)),
    )


def is_verified(owner_id: str, now: datetime) -> bool:
    """Benefit predicate used by ranking/search collaborators."""
    return grants.is_in_effect(owner_id, GrantKind.VERIFICATION_BADGE, now)


def revoke_verification(owner_id: str, reviewer_id: str, reason: Optional[str], now: datetime) -> VerificationView:
    """Abuse path: revoke every active badge grant; review status stays for history."""
    now = ensure_utc(now)
    _require_brand(owner_id)
    case = get_store().get_verification_case(owner_id)
    if case is None or not case.grant_id:
        raise InvalidTransitionError(
            "No verification grant to revoke",
            details={"from": case.review_status.value if case else ReviewStatus.NONE.value, "event": "revoke"},
        )
    revoked = [g.grant_id for g in _badge_grants(owner_id) if g.active]
    for grant_id in revoked:
        grants.revoke(grant_id, reviewer_id, reason, now)
    logger.info(
        "[verification] revoked",
        extra={"owner_id": owner_id, "grant_ids": ",".join(revoked), "reviewer_id": reviewer_id},
    )
    return status(owner_id, now)
