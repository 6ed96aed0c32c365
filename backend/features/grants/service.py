"""
backend/features/grants/service.py

Temporal Grant Engine: start/end-dated entitlements (boosts, verification
badges).

Correctness never depends on a sweep: "in effect" is computed on every read
as `active and start <= now < end`. Sweeps only stamp grants so that
GrantExpired / GrantExpiringSoon notifications go out once per grant.
"""

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4
import logging
import math

from backend.core.clock import ensure_utc
from backend.core.config import settings
from backend.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from backend.core.idempotency import check_and_set, normalize_key
from backend.features.accounts.service import get_account
from backend.features.events.service import emit_event
from backend.features.store.service import get_store, with_cas_retry
from backend.models.account import AccountRole
from backend.models.events import EventType
from backend.models.grant import BOOST_KINDS, GrantKind, TemporalGrant


logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
MAX_WINDOW_DAYS = 366


def _check_window(window_days: int) -> int:
    if isinstance(window_days, bool) or not isinstance(window_days, int) or not 0 <= window_days <= MAX_WINDOW_DAYS:
        raise ValidationError(
            f"window_days must be between 0 and {MAX_WINDOW_DAYS}",
            details={"window_days": window_days, "max_window_days": MAX_WINDOW_DAYS},
        )
    return window_days


def _check_owner_role(owner_id: str, kind: GrantKind) -> None:
    account = get_account(owner_id)
    expected = AccountRole.BRAND if kind == GrantKind.VERIFICATION_BADGE else AccountRole.CREATOR
    if account.role != expected:
        raise ForbiddenError(
            f"{account.role.value} accounts cannot hold {kind.value}",
            details={"kind": kind.value, "role": account.role.value},
        )


def activate(
    owner_id: str,
    kind: GrantKind,
    duration_days: int,
    payment_ref: Optional[str],
    now: datetime,
) -> TemporalGrant:
    """
    Create a grant in effect over [now, now + duration_days).

    Not idempotent: grants of the same kind coexist. Callers dedupe by
    payment reference first (see purchase_boost).
    """
    kind = GrantKind(kind)
    if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days < 1:
        raise ValidationError("duration_days must be a positive integer", details={"duration_days": duration_days})
    _check_owner_role(owner_id, kind)

    now = ensure_utc(now)
    grant = TemporalGrant(
        grant_id=str(uuid4()),
        owner_id=owner_id,
        kind=kind,
        start=now,
        end=now + timedelta(days=duration_days),
        active=True,
        payment_ref=payment_ref,
        created_at=now,
    )
    stored = get_store().insert_grant(grant)

    logger.info(
        "[grants] activated",
        extra={
            "owner_id": owner_id,
            "grant_id": stored.grant_id,
            "kind": kind.value,
            "end": stored.end.isoformat(),
        },
    )
    emit_event(
        EventType.GRANT_ACTIVATED,
        account_ids=[owner_id],
        occurred_at=now,
        entity_id=stored.grant_id,
        payload={"kind": kind.value, "start": stored.start.isoformat(), "end": stored.end.isoformat()},
    )
    return stored


def get_grant(grant_id: str) -> TemporalGrant:
    grant = get_store().get_grant(grant_id)
    if grant is None:
        raise NotFoundError(f"Grant {grant_id} not found", details={"grant_id": grant_id})
    return grant


def is_in_effect(owner_id: str, kind: GrantKind, now: datetime) -> bool:
    now = ensure_utc(now)
    return any(g.is_in_effect(now) for g in get_store().list_grants(owner_id=owner_id, kind=GrantKind(kind)))


def expiring_within(owner_id: str, kind: GrantKind, now: datetime, window_days: int) -> Optional[TemporalGrant]:
    """In-effect grant whose end falls in (now, now + window_days], soonest first. Read-only."""
    now = ensure_utc(now)
    horizon = now + timedelta(days=_check_window(window_days))
    candidates = [
        g
        for g in get_store().list_grants(owner_id=owner_id, kind=GrantKind(kind), ending_by=horizon)
        if g.is_in_effect(now)
    ]
    return candidates[0] if candidates else None


def revoke(grant_id: str, actor_id: Optional[str], reason: Optional[str], now: datetime) -> TemporalGrant:
    """Clear `active` immediately, regardless of window. Irreversible for this grant."""
    now = ensure_utc(now)
    store = get_store()

    def attempt() -> TemporalGrant:
        grant = get_grant(grant_id)
        if not grant.active:
            return grant
        updated = grant.model_copy(update={"active": False, "revoked_at": now, "revoked_reason": reason})
        return store.cas_grant(updated, grant.version)

    revoked = with_cas_retry(attempt, operation="grants.revoke", entity_id=grant_id)
    logger.info(
        "[grants] revoked",
        extra={"grant_id": grant_id, "owner_id": revoked.owner_id, "actor_id": actor_id, "reason": reason},
    )
    return revoked


def _stamp_once(grant: TemporalGrant, field: str, now: datetime) -> bool:
    """Set a notification stamp if still unset. Returns True for the caller that set it."""
    store = get_store()
    state = {"stamped": False}

    def attempt() -> TemporalGrant:
        current = get_grant(grant.grant_id)
        if getattr(current, field) is not None:
            state["stamped"] = False
            return current
        state["stamped"] = True
        return store.cas_grant(current.model_copy(update={field: now}), current.version)

    with_cas_retry(attempt, operation=f"grants.stamp.{field}", entity_id=grant.grant_id)
    return state["stamped"]


def sweep_expired(now: datetime) -> int:
    """Emit GrantExpired once per grant whose end has passed. Returns events emitted."""
    now = ensure_utc(now)
    emitted = 0
    for grant in get_store().list_grants(ending_by=now):
        if not grant.active or grant.notified_expired_at is not None:
            continue
        if _stamp_once(grant, "notified_expired_at", now):
            emit_event(
                EventType.GRANT_EXPIRED,
                account_ids=[grant.owner_id],
                occurred_at=now,
                entity_id=grant.grant_id,
                payload={"kind": grant.kind.value, "end": grant.end.isoformat()},
            )
            emitted += 1
    if emitted:
        logger.info("[grants] sweep expired", extra={"emitted": emitted})
    return emitted


def sweep_expiring_soon(now: datetime, window_days: Optional[int] = None) -> int:
    """Emit GrantExpiringSoon once per in-effect grant ending within the window."""
    now = ensure_utc(now)
    days = settings.GRANT_EXPIRING_SOON_DAYS if window_days is None else window_days
    horizon = now + timedelta(days=_check_window(days))
    emitted = 0
    for grant in get_store().list_grants(ending_by=horizon):
        if not grant.is_in_effect(now) or grant.notified_expiring_at is not None:
            continue
        if _stamp_once(grant, "notified_expiring_at", now):
            emit_event(
                EventType.GRANT_EXPIRING_SOON,
                account_ids=[grant.owner_id],
                occurred_at=now,
                entity_id=grant.grant_id,
                payload={
                    "kind": grant.kind.value,
                    "end": grant.end.isoformat(),
                    "days_remaining": days_remaining(grant, now),
                },
            )
            emitted += 1
    if emitted:
        logger.info("[grants] sweep expiring soon", extra={"emitted": emitted, "window_days": days})
    return emitted


def purchase_boost(owner_id: str, kind: GrantKind, weeks: int, payment_ref: str, now: datetime) -> TemporalGrant:
    """
    Payment collaborator entry point for creator boosts.

    A replayed payment reference returns the grant created for it.
    """
    kind = GrantKind(kind)
    if kind not in BOOST_KINDS:
        raise ValidationError(f"{kind.value} is not a boost", details={"kind": kind.value})
    if isinstance(weeks, bool) or not isinstance(weeks, int) or not 1 <= weeks <= settings.MAX_BOOST_WEEKS:
        raise ValidationError(
            f"weeks must be between 1 and {settings.MAX_BOOST_WEEKS}",
            details={"weeks": weeks, "max_weeks": settings.MAX_BOOST_WEEKS},
        )
    payment_ref = normalize_key(payment_ref)
    _check_owner_role(owner_id, kind)

    now = ensure_utc(now)
    if check_and_set(payment_ref, "boost", owner_id, now):
        store = get_store()
        receipt = store.get_payment(payment_ref)
        if receipt is None or receipt.purpose != "boost" or receipt.owner_id != owner_id:
            logger.warning(
                "[grants] payment reference belongs elsewhere",
                extra={"owner_id": owner_id, "payment_ref": payment_ref},
            )
            raise ConflictError(
                "Payment reference was already used",
                code="payment_ref_reused",
                details={"payment_ref": payment_ref, "purpose": receipt.purpose if receipt else None},
            )
        existing = store.list_grants(owner_id=owner_id, payment_ref=payment_ref)
        if existing:
            if existing[0].kind != kind:
                raise ConflictError(
                    "Payment reference was already used for another boost",
                    code="payment_ref_reused",
                    details={"payment_ref": payment_ref, "kind": existing[0].kind.value},
                )
            return existing[0]
        # Receipt recorded by a caller that failed before activating
        logger.warning("[grants] payment replay without grant, activating", extra={"payment_ref": payment_ref})

    return activate(owner_id, kind, DAYS_PER_WEEK * weeks, payment_ref, now)


def days_remaining(grant: TemporalGrant, now: datetime) -> int:
    """Whole days left (rounded up) while in effect, else 0."""
    if not grant.is_in_effect(now):
        return 0
    return math.ceil((grant.end - now).total_seconds() / 86400)


def list_grants(owner_id: str, now: datetime, kind: Optional[GrantKind] = None) -> dict:
    now = ensure_utc(now)
    grants = get_store().list_grants(owner_id=owner_id, kind=GrantKind(kind) if kind else None)

    active: List[TemporalGrant] = [g for g in grants if g.is_in_effect(now)]
    history: List[TemporalGrant] = [g for g in grants if not g.active or g.has_ended(now)]
    active.sort(key=lambda g: g.end)
    history.sort(key=lambda g: g.end, reverse=True)

    return {
        "active": [_grant_view(g, now) for g in active],
        "history": [_grant_view(g, now) for g in history],
    }


def _grant_view(grant: TemporalGrant, now: datetime) -> dict:
    data = grant.model_dump(mode="json")
    data["in_effect"] = grant.is_in_effect(now)
    data["days_remaining"] = days_remaining(grant, now)
    return data
