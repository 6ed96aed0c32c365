"""
backend/api/verification.py
Brand verification badge: status, payment submission, admin review.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from backend.core.auth import AdminActor, get_current_user_id, require_admin
from backend.core.clock import Clock, get_clock
from backend.features.verification import service as verification
from backend.models.verification import (
    RejectVerificationRequest,
    RevokeVerificationRequest,
    VerificationPaymentRequest,
)

router = APIRouter(tags=["verification"])


@router.get("/v1/verification")
def get_verification(user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    view = verification.status(user_id, clock.now())
    return {"data": view.model_dump(mode="json")}


@router.post("/v1/verification/payments")
def submit_payment(
    request: VerificationPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """
    Payment succeeded for verification.

    412 precondition_failed lists what is missing (phone_verified, paid_tier).
    """
    case = verification.submit_payment(user_id, request.payment_ref, clock.now())
    return {"data": case.model_dump(mode="json")}


@router.post("/v1/admin/verification/{owner_id}/approve")
def approve(owner_id: str, admin: AdminActor = Depends(require_admin), clock: Clock = Depends(get_clock)):
    case = verification.approve(owner_id, admin.actor_id, clock.now())
    return {"data": case.model_dump(mode="json")}


@router.post("/v1/admin/verification/{owner_id}/reject")
def reject(
    owner_id: str,
    request: RejectVerificationRequest,
    admin: AdminActor = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    case = verification.reject(owner_id, admin.actor_id, request.reason, clock.now())
    return {"data": case.model_dump(mode="json")}


@router.post("/v1/admin/verification/{owner_id}/revoke")
def revoke(
    owner_id: str,
    request: Optional[RevokeVerificationRequest] = None,
    admin: AdminActor = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    reason = request.reason if request else None
    view = verification.revoke_verification(owner_id, admin.actor_id, reason, clock.now())
    return {"data": view.model_dump(mode="json")}
