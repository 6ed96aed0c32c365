"""
backend/api/accounts.py
Account registry routes (signup hook, billing tier changes, phone verification).
"""

from fastapi import APIRouter, Depends

from backend.core.auth import AdminActor, get_current_user_id, require_admin
from backend.core.clock import Clock, get_clock
from backend.core.errors import ForbiddenError
from backend.features.accounts import service as accounts
from backend.models.account import RegisterAccountRequest, SetTierRequest

router = APIRouter(tags=["accounts"])


@router.post("/v1/accounts", status_code=201)
def register_account(
    request: RegisterAccountRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Register the calling account. X-User-Id must match the body's account_id."""
    if request.account_id != user_id:
        raise ForbiddenError("Accounts can only be registered by their owner")
    account = accounts.register_account(
        request.account_id,
        request.role,
        clock.now(),
        tier=request.tier,
        display_name=request.display_name,
    )
    return {"data": account.model_dump(mode="json")}


@router.get("/v1/accounts/me")
def get_me(user_id: str = Depends(get_current_user_id)):
    return {"data": accounts.get_account(user_id).model_dump(mode="json")}


@router.put("/v1/accounts/{account_id}/tier")
def set_tier(
    account_id: str,
    request: SetTierRequest,
    admin: AdminActor = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    """Billing collaborator: apply a brand's new subscription tier."""
    account = accounts.set_tier(account_id, request.tier, clock.now())
    return {"data": account.model_dump(mode="json")}


@router.post("/v1/accounts/{account_id}/phone-verified")
def mark_phone_verified(
    account_id: str,
    admin: AdminActor = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    account = accounts.mark_phone_verified(account_id, clock.now())
    return {"data": account.model_dump(mode="json")}
