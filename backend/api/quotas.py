"""
backend/api/quotas.py
Quota routes: banner summary, consume-or-reject, compensating release.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from backend.core.auth import get_current_user_id
from backend.core.clock import Clock, get_clock
from backend.features.quotas import service as quotas
from backend.models.quota import QuotaAmountRequest, remaining_for_json

router = APIRouter(tags=["quotas"])


@router.get("/v1/quotas/{kind}")
def get_quota(kind: str, user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    return {"data": quotas.quota_summary(user_id, kind, clock.now())}


@router.post("/v1/quotas/{kind}/consume")
def consume_quota(
    kind: str,
    request: Optional[QuotaAmountRequest] = None,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """
    Record one use of `kind` for the caller.

    Returns 403 quota_exceeded (with limit, used and reset_at) when the
    monthly allowance is spent.
    """
    amount = request.amount if request else 1
    decision = quotas.consume_or_raise(user_id, kind, clock.now(), amount)
    return {"data": decision.to_dict()}


@router.post("/v1/quotas/{kind}/release")
def release_quota(
    kind: str,
    request: Optional[QuotaAmountRequest] = None,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    amount = request.amount if request else 1
    left = quotas.release(user_id, kind, clock.now(), amount)
    return {"data": {"kind": kind, "remaining": remaining_for_json(left)}}
