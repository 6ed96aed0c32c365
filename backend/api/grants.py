"""
backend/api/grants.py
Boost purchase, grant listing/status, and admin revocation routes.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.core.auth import AdminActor, get_current_user_id, require_admin
from backend.core.clock import Clock, get_clock
from backend.core.config import settings
from backend.features.grants import service as grants
from backend.models.grant import BoostPurchaseRequest, GrantKind, RevokeGrantRequest

router = APIRouter(tags=["grants"])


@router.post("/v1/grants/boosts", status_code=201)
def purchase_boost(
    request: BoostPurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Payment succeeded for a creator boost. Replays with the same payment_ref return the same grant."""
    grant = grants.purchase_boost(user_id, request.kind, request.weeks, request.payment_ref, clock.now())
    return {"data": grant.model_dump(mode="json")}


@router.get("/v1/grants")
def list_grants(
    kind: Optional[GrantKind] = Query(None),
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    return {"data": grants.list_grants(user_id, clock.now(), kind=kind)}


@router.get("/v1/grants/{kind}/status")
def grant_status(
    kind: GrantKind,
    window_days: Optional[int] = Query(None, ge=0, le=grants.MAX_WINDOW_DAYS),
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    now = clock.now()
    window = settings.GRANT_EXPIRING_SOON_DAYS if window_days is None else window_days
    expiring = grants.expiring_within(user_id, kind, now, window)
    return {
        "data": {
            "kind": kind.value,
            "in_effect": grants.is_in_effect(user_id, kind, now),
            "expiring_soon": expiring.model_dump(mode="json") if expiring else None,
            "days_remaining": grants.days_remaining(expiring, now) if expiring else None,
        }
    }


@router.post("/v1/admin/grants/{grant_id}/revoke")
def revoke_grant(
    grant_id: str,
    request: Optional[RevokeGrantRequest] = None,
    admin: AdminActor = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    reason = request.reason if request else None
    grant = grants.revoke(grant_id, admin.actor_id, reason, clock.now())
    return {"data": grant.model_dump(mode="json")}
