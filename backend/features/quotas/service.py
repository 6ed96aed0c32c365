"""
backend/features/quotas/service.py

Quota Engine: monthly, tier-bounded action allowances.

Handles:
- Limit resolution from the account tier (UNBOUNDED sentinel for no cap)
- Lazy period reset: a counter anchored before the current month reads as 0
  and is only rewritten by the next consuming call
- Atomic consume-or-reject via compare-and-swap on the counter row
- Compensating release, clamped at zero

Periods are calendar months in UTC; an instant exactly at a month start
belongs to the new month.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple
import logging

from backend.core.clock import ensure_utc, month_start, next_month_start
from backend.core.errors import ConflictError, ForbiddenError, QuotaExceededError, ValidationError
from backend.features.accounts.service import get_account
from backend.features.events.service import emit_event
from backend.features.store.service import get_store, with_cas_retry
from backend.models.account import Account, AccountRole, Tier
from backend.models.events import EventType
from backend.models.quota import (
    UNBOUNDED,
    QuotaCounter,
    QuotaDecision,
    Remaining,
    is_unbounded,
    remaining_for_json,
)


logger = logging.getLogger(__name__)

APPROACHING_LIMIT_RATIO = 0.7


@dataclass(frozen=True)
class QuotaKind:
    key: str
    role: AccountRole
    limits: Dict[Tier, Optional[int]]  # None = no cap
    label: str


QUOTA_KINDS: Dict[str, QuotaKind] = {
    "new_creator_messages": QuotaKind(
        key="new_creator_messages",
        role=AccountRole.BRAND,
        limits={Tier.NONE: 1, Tier.BASIC: 10, Tier.PRO: None},
        label="New creator conversations",
    ),
    "campaigns_posted": QuotaKind(
        key="campaigns_posted",
        role=AccountRole.BRAND,
        limits={Tier.NONE: 0, Tier.BASIC: 0, Tier.PRO: 1},
        label="Campaigns posted",
    ),
}


def get_quota_kind(kind: str) -> QuotaKind:
    kind_def = QUOTA_KINDS.get(kind)
    if kind_def is None:
        raise ValidationError(f"Unknown quota kind: {kind}", details={"kind": kind})
    return kind_def


def _resolve(account_id: str, kind: str) -> Tuple[Account, QuotaKind]:
    account = get_account(account_id)
    kind_def = get_quota_kind(kind)
    if account.role != kind_def.role:
        logger.warning(
            "[quota] role not allowed for kind",
            extra={"account_id": account_id, "kind": kind, "role": account.role.value},
        )
        raise ForbiddenError(
            f"{account.role.value} accounts cannot use {kind}",
            details={"kind": kind, "role": account.role.value},
        )
    return account, kind_def


def limit_for(account: Account, kind_def: QuotaKind) -> Remaining:
    limit = kind_def.limits.get(account.effective_tier)
    return UNBOUNDED if limit is None else limit


def _effective_count(counter: Optional[QuotaCounter], period_start: datetime) -> int:
    # A count is valid only for [anchor, anchor + 1 month)
    if counter is None or not period_start <= counter.anchor < next_month_start(period_start):
        return 0
    return counter.count


def _check_not_closed(counter: Optional[QuotaCounter], account_id: str, kind: str, period_start: datetime) -> None:
    """Refuse writes for a period older than the stored counter's."""
    if counter is not None and counter.anchor >= next_month_start(period_start):
        logger.warning(
            "[quota] write for closed period refused",
            extra={"account_id": account_id, "kind": kind, "anchor": counter.anchor.isoformat()},
        )
        raise ConflictError(
            f"Quota period starting {period_start.date().isoformat()} is closed",
            code="period_closed",
            details={"kind": kind, "period_start": period_start.isoformat(), "current_period": counter.anchor.isoformat()},
        )


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise ValidationError("amount must be a positive integer", details={"amount": amount})
    return amount


def remaining(account_id: str, kind: str, now: datetime) -> Remaining:
    """Allowance left in the period containing `now`. Never writes."""
    account, kind_def = _resolve(account_id, kind)
    limit = limit_for(account, kind_def)
    if is_unbounded(limit):
        return UNBOUNDED
    now = ensure_utc(now)
    counter = get_store().get_quota_counter(account_id, kind)
    return max(0, limit - _effective_count(counter, month_start(now)))


def try_consume(account_id: str, kind: str, now: datetime, amount: int = 1) -> QuotaDecision:
    """
    Consume `amount` if allowed, as one atomic step.

    Refusals leave storage untouched and carry reason="quota_exceeded".
    """
    amount = _check_amount(amount)
    now = ensure_utc(now)
    period_start = month_start(now)
    reset_at = next_month_start(now)
    store = get_store()

    def attempt() -> QuotaDecision:
        # Tier is re-read on every attempt so an upgrade applies immediately
        account, kind_def = _resolve(account_id, kind)
        limit = limit_for(account, kind_def)
        counter = store.get_quota_counter(account_id, kind)
        _check_not_closed(counter, account_id, kind, period_start)
        used = _effective_count(counter, period_start)

        if not is_unbounded(limit) and limit - used < amount:
            return QuotaDecision(
                granted=False,
                remaining_after=max(0, limit - used),
                limit=limit,
                used=used,
                period_start=period_start,
                reset_at=reset_at,
                reason="quota_exceeded",
            )

        updated = QuotaCounter(account_id=account_id, kind=kind, count=used + amount, anchor=period_start)
        store.cas_quota_counter(updated, counter.version if counter else None)
        return QuotaDecision(
            granted=True,
            remaining_after=UNBOUNDED if is_unbounded(limit) else limit - used - amount,
            limit=limit,
            used=used + amount,
            period_start=period_start,
            reset_at=reset_at,
        )

    decision = with_cas_retry(attempt, operation="quota.try_consume", entity_id=f"{account_id}:{kind}")

    if decision.granted:
        logger.info(
            "[quota] consumed",
            extra={
                "account_id": account_id,
                "kind": kind,
                "amount": amount,
                "used": decision.used,
                "remaining": remaining_for_json(decision.remaining_after),
            },
        )
    else:
        logger.warning(
            "[quota] exceeded",
            extra={
                "account_id": account_id,
                "kind": kind,
                "amount": amount,
                "used": decision.used,
                "limit": remaining_for_json(decision.limit),
            },
        )
        emit_event(
            EventType.QUOTA_EXCEEDED,
            account_ids=[account_id],
            occurred_at=now,
            entity_id=kind,
            payload={
                "kind": kind,
                "limit": remaining_for_json(decision.limit),
                "used": decision.used,
                "reset_at": reset_at.isoformat(),
            },
        )
    return decision


def consume_or_raise(account_id: str, kind: str, now: datetime, amount: int = 1) -> QuotaDecision:
    decision = try_consume(account_id, kind, now, amount)
    if not decision.granted:
        account = get_account(account_id)
        raise QuotaExceededError(
            f"Monthly limit reached for {kind}",
            details={
                "kind": kind,
                "limit": remaining_for_json(decision.limit),
                "used": decision.used,
                "remaining": remaining_for_json(decision.remaining_after),
                "reset_at": decision.reset_at.isoformat(),
                "tier": account.effective_tier.value,
            },
        )
    return decision


def release(account_id: str, kind: str, now: datetime, amount: int = 1) -> Remaining:
    """Compensating decrement. Clamps at zero; stale-period counters are left alone."""
    amount = _check_amount(amount)
    now = ensure_utc(now)
    period_start = month_start(now)
    store = get_store()

    def attempt() -> int:
        _resolve(account_id, kind)
        counter = store.get_quota_counter(account_id, kind)
        used = _effective_count(counter, period_start)
        if counter is None or used == 0:
            return 0
        new_count = max(0, used - amount)
        store.cas_quota_counter(counter.model_copy(update={"count": new_count}), counter.version)
        return used - new_count

    released = with_cas_retry(attempt, operation="quota.release", entity_id=f"{account_id}:{kind}")
    logger.info(
        "[quota] released",
        extra={"account_id": account_id, "kind": kind, "requested": amount, "released": released},
    )
    return remaining(account_id, kind, now)


def quota_summary(account_id: str, kind: str, now: datetime) -> dict:
    """Banner data: limit, used, remaining, reset date and a coarse status."""
    account, kind_def = _resolve(account_id, kind)
    now = ensure_utc(now)
    limit = limit_for(account, kind_def)
    counter = get_store().get_quota_counter(account_id, kind)
    used = _effective_count(counter, month_start(now))

    if is_unbounded(limit):
        status = "unlimited"
        left: Remaining = UNBOUNDED
    else:
        left = max(0, limit - used)
        if left == 0:
            status = "at_limit"
        elif used >= APPROACHING_LIMIT_RATIO * limit:
            status = "approaching_limit"
        else:
            status = "ok"

    return {
        "kind": kind,
        "label": kind_def.label,
        "tier": account.effective_tier.value,
        "limit": remaining_for_json(limit),
        "used": used,
        "remaining": remaining_for_json(left),
        "period_start": month_start(now).isoformat(),
        "reset_at": next_month_start(now).isoformat(),
        "status": status,
    }
