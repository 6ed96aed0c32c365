"""
backend/tests/test_agreement_lifecycle.py
Agreement state machine: actor checks, idempotent confirm, frozen terms, completion gate.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from backend.core.errors import (
    ForbiddenError,
    ImmutableError,
    InvalidTransitionError,
    NotFoundError,
    TooEarlyError,
    ValidationError,
)
from backend.features.accounts.service import register_account
from backend.features.agreements.service import (
    calendar_for,
    complete,
    confirm,
    decline,
    get_agreement,
    list_agreements,
    propose,
    revise_terms,
)
from backend.features.events.service import recorded_events
from backend.models.account import AccountRole, Tier
from backend.models.agreement import AgreementStatus, AgreementTemplate
from backend.models.events import EventType

NOW = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
EVENT_DATE = datetime(2025, 5, 20, 18, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def parties():
    register_account("creator-1", AccountRole.CREATOR, NOW)
    register_account("brand-1", AccountRole.BRAND, NOW, tier=Tier.BASIC)
    register_account("brand-2", AccountRole.BRAND, NOW, tier=Tier.BASIC)


def _propose(**overrides):
    kwargs = dict(price_cents=50_000, event_date=EVENT_DATE, deliverables=["1x Reel", "3x Stories"])
    kwargs.update(overrides)
    return propose("creator-1", "brand-1", "creator-1", NOW, **kwargs)


class TestPropose:
    def test_propose_creates_pending(self):
        agreement = _propose()
        assert agreement.status == AgreementStatus.PENDING
        assert agreement.deliverables == ("1x Reel", "3x Stories")
        assert recorded_events(EventType.AGREEMENT_PROPOSED)[0].account_ids == ("creator-1", "brand-1")

    def test_template_defaults_fill_deliverables(self):
        agreement = _propose(template=AgreementTemplate.UNBOX_REVIEW, deliverables=None)
        assert agreement.deliverables[0] == "1x Unboxing video (60-90 seconds)"
        assert agreement.title == "Unboxing & Review"

    def test_requires_a_deliverable(self):
        with pytest.raises(ValidationError):
            _propose(deliverables=["  "])

    def test_custom_template_has_no_defaults(self):
        with pytest.raises(ValidationError):
            _propose(template=AgreementTemplate.CUSTOM, deliverables=None)

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            _propose(price_cents=-1)

    def test_zero_price_allowed(self):
        assert _propose(price_cents=0).price_cents == 0

    def test_event_date_in_past_rejected(self):
        with pytest.raises(ValidationError):
            _propose(event_date=NOW - timedelta(seconds=1))

    def test_event_date_equal_to_now_allowed(self):
        assert _propose(event_date=NOW).event_date == NOW

    def test_only_named_creator_may_propose(self):
        with pytest.raises(ForbiddenError):
            propose("creator-1", "brand-1", "brand-1", NOW, price_cents=1, event_date=EVENT_DATE, deliverables=["x"])

    def test_counterpart_must_be_brand(self):
        register_account("creator-2", AccountRole.CREATOR, NOW)
        with pytest.raises(ValidationError):
            propose("creator-1", "creator-2", "creator-1", NOW, price_cents=1, event_date=EVENT_DATE, deliverables=["x"])

    def test_idempotency_key_returns_first_agreement(self, store):
        first = _propose(idempotency_key="offer-1")
        again = _propose(idempotency_key="offer-1", price_cents=99)
        assert again.agreement_id == first.agreement_id
        assert again.price_cents == 50_000
        assert len(store.list_agreements("creator-1")) == 1


class TestConfirm:
    def test_confirm_creates_one_calendar_entry(self):
        agreement = _propose()
        confirmed = confirm(agreement.agreement_id, "brand-1", NOW)
        assert confirmed.status == AgreementStatus.CONFIRMED
        assert confirmed.confirmed_at == NOW

        entries = calendar_for("creator-1")
        assert len(entries) == 1
        assert entries[0].agreement_id == agreement.agreement_id
        assert entries[0].parties == ("creator-1", "brand-1")
        assert entries[0].event_date == EVENT_DATE

    def test_confirm_twice_is_idempotent(self):
        """Second confirm returns the same agreement with no duplicate side effect"""
        agreement = _propose()
        first = confirm(agreement.agreement_id, "brand-1", NOW)
        second = confirm(agreement.agreement_id, "brand-1", NOW + timedelta(minutes=1))
        assert second == first
        assert len(calendar_for("brand-1")) == 1
        assert len(recorded_events(EventType.AGREEMENT_CONFIRMED)) == 1

    def test_creator_cannot_confirm_own_proposal(self):
        agreement = _propose()
        with pytest.raises(ForbiddenError):
            confirm(agreement.agreement_id, "creator-1", NOW)

    def test_other_brand_cannot_confirm(self):
        agreement = _propose()
        with pytest.raises(ForbiddenError):
            confirm(agreement.agreement_id, "brand-2", NOW)

    def test_confirm_after_decline_is_invalid(self):
        agreement = _propose()
        decline(agreement.agreement_id, "brand-1", NOW)
        with pytest.raises(InvalidTransitionError):
            confirm(agreement.agreement_id, "brand-1", NOW)

    def test_confirm_unknown_agreement(self):
        with pytest.raises(NotFoundError):
            confirm("missing", "brand-1", NOW)

    def test_concurrent_confirms_book_once(self):
        agreement = _propose()
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: confirm(agreement.agreement_id, "brand-1", NOW), range(16)))
        assert {r.status for r in results} == {AgreementStatus.CONFIRMED}
        assert len(calendar_for("brand-1")) == 1
        assert len(recorded_events(EventType.AGREEMENT_CONFIRMED)) == 1


class TestDecline:
    def test_decline_records_reason_and_emits(self):
        agreement = _propose()
        declined = decline(agreement.agreement_id, "brand-1", NOW, reason="Budget")
        assert declined.status == AgreementStatus.DECLINED
        assert declined.decline_reason == "Budget"
        assert calendar_for("brand-1") == []
        event = recorded_events(EventType.AGREEMENT_DECLINED)[0]
        assert event.payload["reason"] == "Budget"

    def test_decline_twice_is_invalid(self):
        agreement = _propose()
        decline(agreement.agreement_id, "brand-1", NOW)
        with pytest.raises(InvalidTransitionError):
            decline(agreement.agreement_id, "brand-1", NOW)

    def test_creator_cannot_decline(self):
        agreement = _propose()
        with pytest.raises(ForbiddenError):
            decline(agreement.agreement_id, "creator-1", NOW)


class TestTerms:
    def test_creator_revises_while_pending(self):
        agreement = _propose()
        revised = revise_terms(agreement.agreement_id, "creator-1", NOW, price_cents=60_000)
        assert revised.price_cents == 60_000
        assert revised.deliverables == agreement.deliverables

    def test_terms_frozen_after_confirm(self):
        agreement = _propose()
        confirm(agreement.agreement_id, "brand-1", NOW)
        with pytest.raises(ImmutableError):
            revise_terms(agreement.agreement_id, "creator-1", NOW, price_cents=1)
        with pytest.raises(ImmutableError):
            revise_terms(agreement.agreement_id, "creator-1", NOW, deliverables=["other"])

    def test_terms_frozen_after_decline(self):
        agreement = _propose()
        decline(agreement.agreement_id, "brand-1", NOW)
        with pytest.raises(ImmutableError):
            revise_terms(agreement.agreement_id, "creator-1", NOW, price_cents=1)

    def test_brand_cannot_revise(self):
        agreement = _propose()
        with pytest.raises(ForbiddenError):
            revise_terms(agreement.agreement_id, "brand-1", NOW, price_cents=1)


class TestComplete:
    def test_completion_gate(self):
        """Before the event date: TooEarly; at the event date: completed"""
        agreement = _propose()
        confirm(agreement.agreement_id, "brand-1", NOW)

        with pytest.raises(TooEarlyError) as exc_info:
            complete(agreement.agreement_id, "creator-1", EVENT_DATE - timedelta(days=1))
        assert exc_info.value.details["available_at"] == EVENT_DATE.isoformat()

        completed = complete(agreement.agreement_id, "creator-1", EVENT_DATE)
        assert completed.status == AgreementStatus.COMPLETED
        assert completed.completed_by == "creator-1"

    def test_either_party_may_complete(self):
        agreement = _propose()
        confirm(agreement.agreement_id, "brand-1", NOW)
        assert complete(agreement.agreement_id, "brand-1", EVENT_DATE).completed_by == "brand-1"

    def test_complete_twice_is_noop(self):
        agreement = _propose()
        confirm(agreement.agreement_id, "brand-1", NOW)
        first = complete(agreement.agreement_id, "creator-1", EVENT_DATE)
        second = complete(agreement.agreement_id, "brand-1", EVENT_DATE + timedelta(days=1))
        assert second == first
        assert len(recorded_events(EventType.AGREEMENT_COMPLETED)) == 1

    def test_complete_requires_confirmed(self):
        agreement = _propose()
        with pytest.raises(InvalidTransitionError):
            complete(agreement.agreement_id, "creator-1", EVENT_DATE)

    def test_outsider_cannot_complete(self):
        agreement = _propose()
        confirm(agreement.agreement_id, "brand-1", NOW)
        with pytest.raises(ForbiddenError):
            complete(agreement.agreement_id, "brand-2", EVENT_DATE)


class TestQueries:
    def test_get_agreement_is_party_only(self):
        agreement = _propose()
        assert get_agreement(agreement.agreement_id, "brand-1") == agreement
        with pytest.raises(ForbiddenError):
            get_agreement(agreement.agreement_id, "brand-2")

    def test_list_agreements_by_status(self):
        first = _propose()
        second = _propose()
        confirm(second.agreement_id, "brand-1", NOW)
        pending = list_agreements("creator-1", AgreementStatus.PENDING)
        assert [a.agreement_id for a in pending] == [first.agreement_id]
        assert len(list_agreements("brand-1")) == 2
        assert list_agreements("brand-2") == []

    def test_calendar_window(self):
        early = _propose(event_date=NOW + timedelta(days=2))
        late = _propose(event_date=NOW + timedelta(days=40))
        confirm(early.agreement_id, "brand-1", NOW)
        confirm(late.agreement_id, "brand-1", NOW)

        all_entries = calendar_for("creator-1")
        assert [e.agreement_id for e in all_entries] == [early.agreement_id, late.agreement_id]
        windowed = calendar_for("creator-1", start=NOW, end=NOW + timedelta(days=30))
        assert [e.agreement_id for e in windowed] == [early.agreement_id]
