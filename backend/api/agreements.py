"""
backend/api/agreements.py
Agreement lifecycle routes and the confirmed-booking calendar.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.core.auth import get_current_user_id
from backend.core.clock import Clock, get_clock
from backend.features.agreements import service as agreements
from backend.models.agreement import (
    AgreementStatus,
    DeclineAgreementRequest,
    ProposeAgreementRequest,
    ReviseTermsRequest,
)

router = APIRouter(tags=["agreements"])


def _dump(agreement) -> dict:
    data = agreement.model_dump(mode="json")
    data["title"] = agreement.title
    return data


@router.post("/v1/agreements", status_code=201)
def propose_agreement(
    request: ProposeAgreementRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Creator proposes terms to a brand. Optional idempotency_key makes retries safe."""
    agreement = agreements.propose(
        user_id,
        request.brand_id,
        user_id,
        clock.now(),
        price_cents=request.price_cents,
        event_date=request.event_date,
        template=request.template,
        deliverables=request.deliverables,
        notes=request.notes,
        idempotency_key=request.idempotency_key,
    )
    return {"data": _dump(agreement)}


@router.get("/v1/agreements")
def list_agreements(
    status: Optional[AgreementStatus] = Query(None),
    user_id: str = Depends(get_current_user_id),
):
    return {"data": [_dump(a) for a in agreements.list_agreements(user_id, status)]}


@router.get("/v1/agreements/{agreement_id}")
def get_agreement(agreement_id: str, user_id: str = Depends(get_current_user_id)):
    return {"data": _dump(agreements.get_agreement(agreement_id, user_id))}


@router.patch("/v1/agreements/{agreement_id}/terms")
def revise_terms(
    agreement_id: str,
    request: ReviseTermsRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    agreement = agreements.revise_terms(
        agreement_id,
        user_id,
        clock.now(),
        price_cents=request.price_cents,
        deliverables=request.deliverables,
    )
    return {"data": _dump(agreement)}


@router.post("/v1/agreements/{agreement_id}/confirm")
def confirm_agreement(
    agreement_id: str,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Brand confirms. Safe to retry: a confirmed agreement is returned as-is."""
    return {"data": _dump(agreements.confirm(agreement_id, user_id, clock.now()))}


@router.post("/v1/agreements/{agreement_id}/decline")
def decline_agreement(
    agreement_id: str,
    request: Optional[DeclineAgreementRequest] = None,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    reason = request.reason if request else None
    return {"data": _dump(agreements.decline(agreement_id, user_id, clock.now(), reason))}


@router.post("/v1/agreements/{agreement_id}/complete")
def complete_agreement(
    agreement_id: str,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Either party. 425 too_early (details.available_at) before the event date."""
    return {"data": _dump(agreements.complete(agreement_id, user_id, clock.now()))}


@router.get("/v1/calendar")
def get_calendar(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
):
    entries = agreements.calendar_for(user_id, start, end)
    return {"data": [e.model_dump(mode="json") for e in entries]}
