"""
backend/features/agreements/service.py

Agreement Lifecycle Controller.

pending -> confirmed | declined; confirmed -> completed.
Terms (price, deliverables) are frozen once an agreement leaves pending.
Confirming writes the status change and the single CalendarEntry together;
confirm and complete are retry-safe.
"""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4
import logging

from backend.core.clock import ensure_utc
from backend.core.errors import (
    ForbiddenError,
    ImmutableError,
    InvalidTransitionError,
    NotFoundError,
    TooEarlyError,
    ValidationError,
)
from backend.features.accounts.service import get_account
from backend.features.events.service import emit_event
from backend.features.store.base import DuplicateRecordError
from backend.features.store.service import get_store, with_cas_retry
from backend.models.account import AccountRole
from backend.models.agreement import (
    DEFAULT_DELIVERABLES,
    Agreement,
    AgreementStatus,
    AgreementTemplate,
    CalendarEntry,
)
from backend.models.events import EventType


logger = logging.getLogger(__name__)


def _clean_deliverables(deliverables: Optional[List[str]], template: AgreementTemplate) -> tuple:
    if deliverables is None:
        cleaned = DEFAULT_DELIVERABLES.get(template, ())
    else:
        cleaned = tuple(d.strip() for d in deliverables if d and d.strip())
    if not cleaned:
        raise ValidationError("At least one deliverable is required", details={"field": "deliverables"})
    return tuple(cleaned)


def _check_price(price_cents: int) -> int:
    if isinstance(price_cents, bool) or not isinstance(price_cents, int) or price_cents < 0:
        raise ValidationError("price must be a non-negative integer", details={"price_cents": price_cents})
    return price_cents


def _load(agreement_id: str) -> Agreement:
    agreement = get_store().get_agreement(agreement_id)
    if agreement is None:
        raise NotFoundError(f"Agreement {agreement_id} not found", details={"agreement_id": agreement_id})
    return agreement


def _require_brand_actor(agreement: Agreement, actor_id: str, action: str) -> None:
    if actor_id != agreement.brand_id:
        logger.warning(
            "[agreements] forbidden",
            extra={"agreement_id": agreement.agreement_id, "actor_id": actor_id, "action": action},
        )
        raise ForbiddenError(
            f"Only the counterpart brand may {action} this agreement",
            details={"agreement_id": agreement.agreement_id, "action": action},
        )


def _invalid(agreement: Agreement, event: str) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"Cannot {event} an agreement in status {agreement.status.value}",
        details={"agreement_id": agreement.agreement_id, "from": agreement.status.value, "event": event},
    )


def propose(
    creator_id: str,
    brand_id: str,
    actor_id: str,
    now: datetime,
    *,
    price_cents: int,
    event_date: datetime,
    template: AgreementTemplate = AgreementTemplate.CUSTOM,
    deliverables: Optional[List[str]] = None,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Agreement:
    """
    Create a pending agreement from the creator to a brand.

    A repeated idempotency_key from the same creator returns the first agreement.
    """
    now = ensure_utc(now)
    if actor_id != creator_id:
        raise ForbiddenError("Only the proposing creator may create this agreement")

    creator = get_account(creator_id)
    if creator.role != AccountRole.CREATOR:
        raise ForbiddenError("Only creator accounts may propose agreements")
    brand = get_account(brand_id)
    if brand.role != AccountRole.BRAND:
        raise ValidationError("Counterpart must be a brand account", details={"brand_id": brand_id})

    store = get_store()
    if idempotency_key:
        existing = store.find_agreement_by_idempotency_key(creator_id, idempotency_key)
        if existing is not None:
            return existing

    template = AgreementTemplate(template)
    event_date = ensure_utc(event_date)
    if event_date < now:
        raise ValidationError("Event date cannot be in the past", details={"event_date": event_date.isoformat()})

    agreement = Agreement(
        agreement_id=str(uuid4()),
        creator_id=creator_id,
        brand_id=brand_id,
        template=template,
        price_cents=_check_price(price_cents),
        deliverables=_clean_deliverables(deliverables, template),
        event_date=event_date,
        notes=notes,
        created_at=now,
        idempotency_key=idempotency_key,
    )
    try:
        stored = store.insert_agreement(agreement)
    except DuplicateRecordError:
        if idempotency_key:
            existing = store.find_agreement_by_idempotency_key(creator_id, idempotency_key)
            if existing is not None:
                return existing
        raise

    logger.info(
        "[agreements] proposed",
        extra={
            "agreement_id": stored.agreement_id,
            "creator_id": creator_id,
            "brand_id": brand_id,
            "template": template.value,
        },
    )
    emit_event(
        EventType.AGREEMENT_PROPOSED,
        account_ids=stored.parties,
        occurred_at=now,
        entity_id=stored.agreement_id,
        payload={"template": template.value, "price_cents": stored.price_cents},
    )
    return stored


def revise_terms(
    agreement_id: str,
    actor_id: str,
    now: datetime,
    price_cents: Optional[int] = None,
    deliverables: Optional[List[str]] = None,
) -> Agreement:
    """Counter-offer: the proposing creator replaces terms while pending."""
    now = ensure_utc(now)
    store = get_store()

    def attempt() -> Agreement:
        agreement = _load(agreement_id)
        if actor_id not in agreement.parties:
            raise ForbiddenError("Not a party to this agreement")
        if agreement.status != AgreementStatus.PENDING:
            raise ImmutableError(
                "Terms are frozen once an agreement leaves pending",
                details={"agreement_id": agreement_id, "status": agreement.status.value},
            )
        if actor_id != agreement.creator_id:
            raise ForbiddenError("Only the proposing creator may revise terms")

        update = {}
        if price_cents is not None:
            update["price_cents"] = _check_price(price_cents)
        if deliverables is not None:
            update["deliverables"] = _clean_deliverables(deliverables, agreement.template)
        if not update:
            return agreement
        return store.cas_agreement(agreement.model_copy(update=update), agreement.version)

    revised = with_cas_retry(attempt, operation="agreements.revise_terms", entity_id=agreement_id)
    logger.info("[agreements] terms revised", extra={"agreement_id": agreement_id, "actor_id": actor_id})
    return revised


def confirm(agreement_id: str, actor_id: str, now: datetime) -> Agreement:
    """
    Brand accepts a pending agreement and the calendar entry is booked.

    Confirming an already confirmed agreement returns it unchanged.
    """
    now = ensure_utc(now)
    store = get_store()
    state = {"transitioned": False}

    def attempt() -> Agreement:
        agreement = _load(agreement_id)
        _require_brand_actor(agreement, actor_id, "confirm")
        if agreement.status == AgreementStatus.CONFIRMED:
            state["transitioned"] = False
            return agreement
        if agreement.status != AgreementStatus.PENDING:
            raise _invalid(agreement, "confirm")

        updated = agreement.model_copy(update={"status": AgreementStatus.CONFIRMED, "confirmed_at": now})
        entry = CalendarEntry(
            entry_id=str(uuid4()),
            agreement_id=agreement.agreement_id,
            parties=agreement.parties,
            event_date=agreement.event_date,
            title=agreement.title,
            created_at=now,
        )
        confirmed, _ = store.confirm_agreement(updated, agreement.version, entry)
        state["transitioned"] = True
        return confirmed

    confirmed = with_cas_retry(attempt, operation="agreements.confirm", entity_id=agreement_id)
    if not state["transitioned"]:
        return confirmed

    logger.info(
        "[agreements] confirmed",
        extra={"agreement_id": agreement_id, "brand_id": confirmed.brand_id, "creator_id": confirmed.creator_id},
    )
    emit_event(
        EventType.AGREEMENT_CONFIRMED,
        account_ids=confirmed.parties,
        occurred_at=now,
        entity_id=agreement_id,
        payload={"event_date": confirmed.event_date.isoformat(), "title": confirmed.title},
    )
    return confirmed


def decline(agreement_id: str, actor_id: str, now: datetime, reason: Optional[str] = None) -> Agreement:
    now = ensure_utc(now)
    store = get_store()

    def attempt() -> Agreement:
        agreement = _load(agreement_id)
        _require_brand_actor(agreement, actor_id, "decline")
        if agreement.status != AgreementStatus.PENDING:
            raise _invalid(agreement, "decline")
        updated = agreement.model_copy(
            update={"status": AgreementStatus.DECLINED, "declined_at": now, "decline_reason": reason}
        )
        return store.cas_agreement(updated, agreement.version)

    declined = with_cas_retry(attempt, operation="agreements.decline", entity_id=agreement_id)
    logger.info("[agreements] declined", extra={"agreement_id": agreement_id, "brand_id": declined.brand_id})
    emit_event(
        EventType.AGREEMENT_DECLINED,
        account_ids=declined.parties,
        occurred_at=now,
        entity_id=agreement_id,
        payload={"reason": reason},
    )
    return declined


def complete(agreement_id: str, actor_id: str, now: datetime) -> Agreement:
    """
    Either party marks a confirmed agreement done, once the event date is reached.

    Raises:
        TooEarlyError: now < event_date (retry after details['available_at'])
    """
    now = ensure_utc(now)
    store = get_store()
    state = {"transitioned": False}

    def attempt() -> Agreement:
        agreement = _load(agreement_id)
        if actor_id not in agreement.parties:
            raise ForbiddenError("Only a party to this agreement may complete it")
        if agreement.status == AgreementStatus.COMPLETED:
            state["transitioned"] = False
            return agreement
        if agreement.status != AgreementStatus.CONFIRMED:
            raise _invalid(agreement, "complete")
        if now < agreement.event_date:
            raise TooEarlyError(
                "Agreement cannot be completed before its event date",
                details={"agreement_id": agreement_id, "available_at": agreement.event_date.isoformat()},
            )
        updated = agreement.model_copy(
            update={"status": AgreementStatus.COMPLETED, "completed_at": now, "completed_by": actor_id}
        )
        state["transitioned"] = True
        return store.cas_agreement(updated, agreement.version)

    completed = with_cas_retry(attempt, operation="agreements.complete", entity_id=agreement_id)
    if not state["transitioned"]:
        return completed

    logger.info("[agreements] completed", extra={"agreement_id": agreement_id, "actor_id": actor_id})
    emit_event(
        EventType.AGREEMENT_COMPLETED,
        account_ids=completed.parties,
        occurred_at=now,
        entity_id=agreement_id,
        payload={"completed_by": actor_id},
    )
    return completed


def get_agreement(agreement_id: str, actor_id: str) -> Agreement:
    agreement = _load(agreement_id)
    if actor_id not in agreement.parties:
        raise ForbiddenError("Not a party to this agreement")
    return agreement


def list_agreements(account_id: str, status: Optional[AgreementStatus] = None) -> List[Agreement]:
    get_account(account_id)
    return get_store().list_agreements(account_id, AgreementStatus(status) if status else None)


def calendar_for(
    account_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[CalendarEntry]:
    get_account(account_id)
    return get_store().list_calendar_entries(
        account_id,
        ensure_utc(start) if start else None,
        ensure_utc(end) if end else None,
    )
