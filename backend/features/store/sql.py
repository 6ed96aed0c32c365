"""
backend/features/store/sql.py

SQL-backed Entitlement Store (PostgreSQL in production, SQLite in tests).

Compare-and-swap is a conditional UPDATE on the `version` column; a zero
rowcount means another writer got there first.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from backend.core.clock import ensure_utc
from backend.core.database import (
    accounts,
    agreements,
    calendar_entries,
    get_session_factory,
    payment_receipts,
    quota_counters,
    session_scope,
    temporal_grants,
    verification_cases,
)
from backend.features.store.base import DuplicateRecordError, EntitlementStore, StaleWriteError
from backend.models.account import Account
from backend.models.agreement import Agreement, AgreementStatus, CalendarEntry
from backend.models.grant import GrantKind, PaymentReceipt, TemporalGrant
from backend.models.quota import QuotaCounter
from backend.models.verification import VerificationCase


logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; every stored value is UTC
    return ensure_utc(value) if value is not None else None


def _account_from_row(row) -> Account:
    return Account(
        account_id=row.account_id,
        role=row.role,
        tier=row.tier,
        phone_verified=row.phone_verified,
        display_name=row.display_name,
        created_at=_utc(row.created_at),
        version=row.version,
    )


def _counter_from_row(row) -> QuotaCounter:
    return QuotaCounter(
        account_id=row.account_id,
        kind=row.kind,
        count=row.count,
        anchor=_utc(row.anchor),
        version=row.version,
    )


def _grant_from_row(row) -> TemporalGrant:
    return TemporalGrant(
        grant_id=row.id,
        owner_id=row.owner_id,
        kind=row.kind,
        start=_utc(row.start),
        end=_utc(row.end),
        active=row.active,
        payment_ref=row.payment_ref,
        notified_expired_at=_utc(row.notified_expired_at),
        notified_expiring_at=_utc(row.notified_expiring_at),
        revoked_at=_utc(row.revoked_at),
        revoked_reason=row.revoked_reason,
        created_at=_utc(row.created_at),
        version=row.version,
    )


def _grant_values(grant: TemporalGrant) -> dict:
    return {
        "owner_id": grant.owner_id,
        "kind": grant.kind.value,
        "start": grant.start,
        "end": grant.end,
        "active": grant.active,
        "payment_ref": grant.payment_ref,
        "notified_expired_at": grant.notified_expired_at,
        "notified_expiring_at": grant.notified_expiring_at,
        "revoked_at": grant.revoked_at,
        "revoked_reason": grant.revoked_reason,
    }


def _case_from_row(row) -> VerificationCase:
    return VerificationCase(
        case_id=row.id,
        owner_id=row.owner_id,
        review_status=row.review_status,
        rejection_reason=row.rejection_reason,
        grant_id=row.grant_id,
        payment_ref=row.payment_ref,
        submitted_at=_utc(row.submitted_at),
        reviewed_at=_utc(row.reviewed_at),
        reviewed_by=row.reviewed_by,
        created_at=_utc(row.created_at),
        version=row.version,
    )


def _case_values(case: VerificationCase) -> dict:
    return {
        "review_status": case.review_status.value,
        "rejection_reason": case.rejection_reason,
        "grant_id": case.grant_id,
        "payment_ref": case.payment_ref,
        "submitted_at": case.submitted_at,
        "reviewed_at": case.reviewed_at,
        "reviewed_by": case.reviewed_by,
    }


def _agreement_from_row(row) -> Agreement:
    return Agreement(
        agreement_id=row.id,
        creator_id=row.creator_id,
        brand_id=row.brand_id,
        template=row.template,
        price_cents=row.price,
        deliverables=tuple(row.deliverables or ()),
        event_date=_utc(row.event_date),
        status=row.status,
        notes=row.notes,
        created_at=_utc(row.created_at),
        confirmed_at=_utc(row.confirmed_at),
        declined_at=_utc(row.declined_at),
        decline_reason=row.decline_reason,
        completed_at=_utc(row.completed_at),
        completed_by=row.completed_by,
        idempotency_key=row.idempotency_key,
        version=row.version,
    )


def _agreement_values(agreement: Agreement) -> dict:
    return {
        "template": agreement.template.value,
        "status": agreement.status.value,
        "price": agreement.price_cents,
        "deliverables": list(agreement.deliverables),
        "event_date": agreement.event_date,
        "notes": agreement.notes,
        "confirmed_at": agreement.confirmed_at,
        "declined_at": agreement.declined_at,
        "decline_reason": agreement.decline_reason,
        "completed_at": agreement.completed_at,
        "completed_by": agreement.completed_by,
    }


def _entry_from_row(row) -> CalendarEntry:
    return CalendarEntry(
        entry_id=row.id,
        agreement_id=row.agreement_id,
        parties=tuple(row.parties or ()),
        event_date=_utc(row.event_date),
        title=row.title,
        created_at=_utc(row.created_at),
    )


class SqlEntitlementStore(EntitlementStore):
    """
    Entitlement store on SQLAlchemy Core tables from backend.core.database.

    Args:
        session_factory: sessionmaker to use; defaults to the process factory
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session_factory()

    def _session(self):
        return session_scope(self._session_factory)

    # Accounts

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._session() as session:
            row = session.execute(select(accounts).where(accounts.c.account_id == account_id)).first()
            return _account_from_row(row) if row else None

    def insert_account(self, account: Account) -> Account:
        try:
            with self._session() as session:
                session.execute(
                    insert(accounts).values(
                        account_id=account.account_id,
                        role=account.role.value,
                        tier=account.tier.value if account.tier else None,
                        phone_verified=account.phone_verified,
                        display_name=account.display_name,
                        created_at=account.created_at,
                        version=0,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateRecordError(f"account {account.account_id} exists") from exc
        return account.model_copy(update={"version": 0})

    def cas_account(self, account: Account, expected_version: int) -> Account:
        with self._session() as session:
            result = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account.account_id)
                .where(accounts.c.version == expected_version)
                .values(
                    tier=account.tier.value if account.tier else None,
                    phone_verified=account.phone_verified,
                    display_name=account.display_name,
                    version=expected_version + 1,
                )
            )
            if result.rowcount != 1:
                raise StaleWriteError(f"account {account.account_id} changed")
        return account.model_copy(update={"version": expected_version + 1})

    # Quota counters

    def get_quota_counter(self, account_id: str, kind: str) -> Optional[QuotaCounter]:
        with self._session() as session:
            row = session.execute(
                select(quota_counters)
                .where(quota_counters.c.account_id == account_id)
                .where(quota_counters.c.kind == kind)
            ).first()
            return _counter_from_row(row) if row else None

    def cas_quota_counter(self, counter: QuotaCounter, expected_version: Optional[int]) -> QuotaCounter:
        if expected_version is None:
            try:
                with self._session() as session:
                    session.execute(
                        insert(quota_counters).values(
                            account_id=counter.account_id,
                            kind=counter.kind,
                            count=counter.count,
                            anchor=counter.anchor,
                            version=0,
                        )
                    )
            except IntegrityError as exc:
                raise StaleWriteError("quota counter already exists") from exc
            return counter.model_copy(update={"version": 0})

        with self._session() as session:
            result = session.execute(
                update(quota_counters)
                .where(quota_counters.c.account_id == counter.account_id)
                .where(quota_counters.c.kind == counter.kind)
                .where(quota_counters.c.version == expected_version)
                .values(count=counter.count, anchor=counter.anchor, version=expected_version + 1)
            )
            if result.rowcount != 1:
                raise StaleWriteError("quota counter changed")
        return counter.model_copy(update={"version": expected_version + 1})

    # Temporal grants

    def get_grant(self, grant_id: str) -> Optional[TemporalGrant]:
        with self._session() as session:
            row = session.execute(select(temporal_grants).where(temporal_grants.c.id == grant_id)).first()
            return _grant_from_row(row) if row else None

    def insert_grant(self, grant: TemporalGrant) -> TemporalGrant:
        try:
            with self._session() as session:
                session.execute(
                    insert(temporal_grants).values(
                        id=grant.grant_id,
                        created_at=grant.created_at,
                        version=0,
                        **_grant_values(grant),
                    )
                )
        except IntegrityError as exc:
            raise DuplicateRecordError(f"grant {grant.grant_id} exists") from exc
        return grant.model_copy(update={"version": 0})

    def cas_grant(self, grant: TemporalGrant, expected_version: int) -> TemporalGrant:
        with self._session() as session:
            result = session.execute(
                update(temporal_grants)
                .where(temporal_grants.c.id == grant.grant_id)
                .where(temporal_grants.c.version == expected_version)
                .values(version=expected_version + 1, **_grant_values(grant))
            )
            if result.rowcount != 1:
                raise StaleWriteError(f"grant {grant.grant_id} changed")
        return grant.model_copy(update={"version": expected_version + 1})

    def list_grants(
        self,
        owner_id: Optional[str] = None,
        kind: Optional[GrantKind] = None,
        ending_by: Optional[datetime] = None,
        payment_ref: Optional[str] = None,
    ) -> List[TemporalGrant]:
        query = select(temporal_grants)
        if owner_id is not None:
            query = query.where(temporal_grants.c.owner_id == owner_id)
        if kind is not None:
            query = query.where(temporal_grants.c.kind == GrantKind(kind).value)
        if ending_by is not None:
            query = query.where(temporal_grants.c.end <= ending_by)
        if payment_ref is not None:
            query = query.where(temporal_grants.c.payment_ref == payment_ref)
        query = query.order_by(temporal_grants.c.end, temporal_grants.c.id)
        with self._session() as session:
            return [_grant_from_row(row) for row in session.execute(query).all()]

    # Verification cases

    def get_verification_case(self, owner_id: str) -> Optional[VerificationCase]:
        with self._session() as session:
            row = session.execute(
                select(verification_cases).where(verification_cases.c.owner_id == owner_id)
            ).first()
            return _case_from_row(row) if row else None

    def insert_verification_case(self, case: VerificationCase) -> VerificationCase:
        try:
            with self._session() as session:
                session.execute(
                    insert(verification_cases).values(
                        id=case.case_id,
                        owner_id=case.owner_id,
                        created_at=case.created_at,
                        version=0,
                        **_case_values(case),
                    )
                )
        except IntegrityError as exc:
            raise DuplicateRecordError(f"verification case for {case.owner_id} exists") from exc
        return case.model_copy(update={"version": 0})

    def cas_verification_case(self, case: VerificationCase, expected_version: int) -> VerificationCase:
        with self._session() as session:
            result = session.execute(
                update(verification_cases)
                .where(verification_cases.c.owner_id == case.owner_id)
                .where(verification_cases.c.version == expected_version)
                .values(version=expected_version + 1, **_case_values(case))
            )
            if result.rowcount != 1:
                raise StaleWriteError(f"verification case for {case.owner_id} changed")
        return case.model_copy(update={"version": expected_version + 1})

    # Agreements and calendar

    def get_agreement(self, agreement_id: str) -> Optional[Agreement]:
        with self._session() as session:
            row = session.execute(select(agreements).where(agreements.c.id == agreement_id)).first()
            return _agreement_from_row(row) if row else None

    def find_agreement_by_idempotency_key(self, creator_id: str, key: str) -> Optional[Agreement]:
        with self._session() as session:
            row = session.execute(
                select(agreements)
                .where(agreements.c.creator_id == creator_id)
                .where(agreements.c.idempotency_key == key)
            ).first()
            return _agreement_from_row(row) if row else None

    def insert_agreement(self, agreement: Agreement) -> Agreement:
        try:
            with self._session() as session:
                session.execute(
                    insert(agreements).values(
                        id=agreement.agreement_id,
                        creator_id=agreement.creator_id,
                        brand_id=agreement.brand_id,
                        created_at=agreement.created_at,
                        idempotency_key=agreement.idempotency_key,
                        version=0,
                        **_agreement_values(agreement),
                    )
                )
        except IntegrityError as exc:
            raise DuplicateRecordError(f"agreement {agreement.agreement_id} exists") from exc
        return agreement.model_copy(update={"version": 0})

    def _update_agreement(self, session, agreement: Agreement, expected_version: int) -> None:
        result = session.execute(
            update(agreements)
            .where(agreements.c.id == agreement.agreement_id)
            .where(agreements.c.version == expected_version)
            .values(version=expected_version + 1, **_agreement_values(agreement))
        )
        if result.rowcount != 1:
            raise StaleWriteError(f"agreement {agreement.agreement_id} changed")

    def cas_agreement(self, agreement: Agreement, expected_version: int) -> Agreement:
        with self._session() as session:
            self._update_agreement(session, agreement, expected_version)
        return agreement.model_copy(update={"version": expected_version + 1})

    def confirm_agreement(
        self, agreement: Agreement, expected_version: int, entry: CalendarEntry
    ) -> Tuple[Agreement, CalendarEntry]:
        with self._session() as session:
            self._update_agreement(session, agreement, expected_version)
            row = session.execute(
                select(calendar_entries).where(calendar_entries.c.agreement_id == agreement.agreement_id)
            ).first()
            if row:
                stored_entry = _entry_from_row(row)
            else:
                session.execute(
                    insert(calendar_entries).values(
                        id=entry.entry_id,
                        agreement_id=entry.agreement_id,
                        parties=list(entry.parties),
                        event_date=entry.event_date,
                        title=entry.title,
                        created_at=entry.created_at,
                    )
                )
                stored_entry = entry
        return agreement.model_copy(update={"version": expected_version + 1}), stored_entry

    def list_agreements(self, account_id: str, status: Optional[AgreementStatus] = None) -> List[Agreement]:
        query = select(agreements).where(
            or_(agreements.c.creator_id == account_id, agreements.c.brand_id == account_id)
        )
        if status is not None:
            query = query.where(agreements.c.status == AgreementStatus(status).value)
        query = query.order_by(agreements.c.created_at.desc(), agreements.c.id.desc())
        with self._session() as session:
            return [_agreement_from_row(row) for row in session.execute(query).all()]

    def get_calendar_entry(self, agreement_id: str) -> Optional[CalendarEntry]:
        with self._session() as session:
            row = session.execute(
                select(calendar_entries).where(calendar_entries.c.agreement_id == agreement_id)
            ).first()
            return _entry_from_row(row) if row else None

    def list_calendar_entries(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CalendarEntry]:
        # parties is JSON; filter through the owning agreement instead
        query = select(calendar_entries).join(
            agreements, agreements.c.id == calendar_entries.c.agreement_id
        ).where(or_(agreements.c.creator_id == account_id, agreements.c.brand_id == account_id))
        if start is not None:
            query = query.where(calendar_entries.c.event_date >= start)
        if end is not None:
            query = query.where(calendar_entries.c.event_date < end)
        query = query.order_by(calendar_entries.c.event_date, calendar_entries.c.id)
        with self._session() as session:
            return [_entry_from_row(row) for row in session.execute(query).all()]

    # Payments

    def record_payment(self, payment_ref: str, purpose: str, owner_id: str, received_at: datetime) -> bool:
        try:
            with self._session() as session:
                session.execute(
                    insert(payment_receipts).values(
                        payment_ref=payment_ref,
                        purpose=purpose,
                        owner_id=owner_id,
                        received_at=received_at,
                    )
                )
        except IntegrityError:
            logger.info("[store] payment replay ignored", extra={"payment_ref": payment_ref})
            return False
        return True

    def get_payment(self, payment_ref: str) -> Optional[PaymentReceipt]:
        with self._session() as session:
            row = session.execute(
                select(payment_receipts).where(payment_receipts.c.payment_ref == payment_ref)
            ).first()
            if row is None:
                return None
            return PaymentReceipt(
                payment_ref=row.payment_ref,
                purpose=row.purpose,
                owner_id=row.owner_id,
                received_at=_utc(row.received_at),
            )

    def submit_verification_payment(
        self, case: VerificationCase, expected_version: int, received_at: datetime
    ) -> VerificationCase:
        try:
            with self._session() as session:
                session.execute(
                    insert(payment_receipts).values(
                        payment_ref=case.payment_ref,
                        purpose="verification",
                        owner_id=case.owner_id,
                        received_at=received_at,
                    )
                )
                result = session.execute(
                    update(verification_cases)
                    .where(verification_cases.c.owner_id == case.owner_id)
                    .where(verification_cases.c.version == expected_version)
                    .values(version=expected_version + 1, **_case_values(case))
                )
                if result.rowcount != 1:
                    raise StaleWriteError(f"verification case for {case.owner_id} changed")
        except IntegrityError as exc:
            raise DuplicateRecordError(f"payment {case.payment_ref} already recorded") from exc
        return case.model_copy(update={"version": expected_version + 1})
