"""
backend/features/store/memory.py

In-memory Entitlement Store. Default backend for development and tests.

One re-entrant lock guards every read-compare-write so CAS semantics match
the SQL store under threads.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from backend.features.store.base import DuplicateRecordError, EntitlementStore, StaleWriteError
from backend.models.account import Account
from backend.models.agreement import Agreement, AgreementStatus, CalendarEntry
from backend.models.grant import GrantKind, PaymentReceipt, TemporalGrant
from backend.models.quota import QuotaCounter
from backend.models.verification import VerificationCase


class InMemoryEntitlementStore(EntitlementStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._accounts: Dict[str, Account] = {}
        self._counters: Dict[Tuple[str, str], QuotaCounter] = {}
        self._grants: Dict[str, TemporalGrant] = {}
        self._cases: Dict[str, VerificationCase] = {}
        self._agreements: Dict[str, Agreement] = {}
        self._calendar: Dict[str, CalendarEntry] = {}
        self._payments: Dict[str, PaymentReceipt] = {}

    def clear(self) -> None:
        with self._lock:
            self._accounts.clear()
            self._counters.clear()
            self._grants.clear()
            self._cases.clear()
            self._agreements.clear()
            self._calendar.clear()
            self._payments.clear()

    @staticmethod
    def _check_version(current, expected_version: int, label: str) -> None:
        if current is None:
            raise StaleWriteError(f"{label} does not exist")
        if current.version != expected_version:
            raise StaleWriteError(
                f"{label} version {current.version} != expected {expected_version}"
            )

    # Accounts

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(account_id)

    def insert_account(self, account: Account) -> Account:
        with self._lock:
            if account.account_id in self._accounts:
                raise DuplicateRecordError(f"account {account.account_id} exists")
            stored = account.model_copy(update={"version": 0})
            self._accounts[account.account_id] = stored
            return stored

    def cas_account(self, account: Account, expected_version: int) -> Account:
        with self._lock:
            self._check_version(self._accounts.get(account.account_id), expected_version, "account")
            stored = account.model_copy(update={"version": expected_version + 1})
            self._accounts[account.account_id] = stored
            return stored

    # Quota counters

    def get_quota_counter(self, account_id: str, kind: str) -> Optional[QuotaCounter]:
        with self._lock:
            return self._counters.get((account_id, kind))

    def cas_quota_counter(self, counter: QuotaCounter, expected_version: Optional[int]) -> QuotaCounter:
        key = (counter.account_id, counter.kind)
        with self._lock:
            current = self._counters.get(key)
            if expected_version is None:
                if current is not None:
                    raise StaleWriteError("quota counter already exists")
                stored = counter.model_copy(update={"version": 0})
            else:
                self._check_version(current, expected_version, "quota counter")
                stored = counter.model_copy(update={"version": expected_version + 1})
            self._counters[key] = stored
            return stored

    # Temporal grants

    def get_grant(self, grant_id: str) -> Optional[TemporalGrant]:
        with self._lock:
            return self._grants.get(grant_id)

    def insert_grant(self, grant: TemporalGrant) -> TemporalGrant:
        with self._lock:
            if grant.grant_id in self._grants:
                raise DuplicateRecordError(f"grant {grant.grant_id} exists")
            stored = grant.model_copy(update={"version": 0})
            self._grants[grant.grant_id] = stored
            return stored

    def cas_grant(self, grant: TemporalGrant, expected_version: int) -> TemporalGrant:
        with self._lock:
            self._check_version(self._grants.get(grant.grant_id), expected_version, "grant")
            stored = grant.model_copy(update={"version": expected_version + 1})
            self._grants[grant.grant_id] = stored
            return stored

    def list_grants(
        self,
        owner_id: Optional[str] = None,
        kind: Optional[GrantKind] = None,
        ending_by: Optional[datetime] = None,
        payment_ref: Optional[str] = None,
    ) -> List[TemporalGrant]:
        with self._lock:
            grants = list(self._grants.values())
        if owner_id is not None:
            grants = [g for g in grants if g.owner_id == owner_id]
        if kind is not None:
            grants = [g for g in grants if g.kind == kind]
        if ending_by is not None:
            grants = [g for g in grants if g.end <= ending_by]
        if payment_ref is not None:
            grants = [g for g in grants if g.payment_ref == payment_ref]
        return sorted(grants, key=lambda g: (g.end, g.grant_id))

    # Verification cases

    def get_verification_case(self, owner_id: str) -> Optional[VerificationCase]:
        with self._lock:
            return self._cases.get(owner_id)

    def insert_verification_case(self, case: VerificationCase) -> VerificationCase:
        with self._lock:
            if case.owner_id in self._cases:
                raise DuplicateRecordError(f"verification case for {case.owner_id} exists")
            stored = case.model_copy(update={"version": 0})
            self._cases[case.owner_id] = stored
            return stored

    def cas_verification_case(self, case: VerificationCase, expected_version: int) -> VerificationCase:
        with self._lock:
            self._check_version(self._cases.get(case.owner_id), expected_version, "verification case")
            stored = case.model_copy(update={"version": expected_version + 1})
            self._cases[case.owner_id] = stored
            return stored

    # Agreements and calendar

    def get_agreement(self, agreement_id: str) -> Optional[Agreement]:
        with self._lock:
            return self._agreements.get(agreement_id)

    def find_agreement_by_idempotency_key(self, creator_id: str, key: str) -> Optional[Agreement]:
        with self._lock:
            for agreement in self._agreements.values():
                if agreement.creator_id == creator_id and agreement.idempotency_key == key:
                    return agreement
        return None

    def insert_agreement(self, agreement: Agreement) -> Agreement:
        with self._lock:
            if agreement.agreement_id in self._agreements:
                raise DuplicateRecordError(f"agreement {agreement.agreement_id} exists")
            if agreement.idempotency_key and self.find_agreement_by_idempotency_key(
                agreement.creator_id, agreement.idempotency_key
            ):
                raise DuplicateRecordError("idempotency key already used")
            stored = agreement.model_copy(update={"version": 0})
            self._agreements[agreement.agreement_id] = stored
            return stored

    def cas_agreement(self, agreement: Agreement, expected_version: int) -> Agreement:
        with self._lock:
            self._check_version(self._agreements.get(agreement.agreement_id), expected_version, "agreement")
            stored = agreement.model_copy(update={"version": expected_version + 1})
            self._agreements[agreement.agreement_id] = stored
            return stored

    def confirm_agreement(
        self, agreement: Agreement, expected_version: int, entry: CalendarEntry
    ) -> Tuple[Agreement, CalendarEntry]:
        with self._lock:
            stored = self.cas_agreement(agreement, expected_version)
            existing = self._calendar.get(agreement.agreement_id)
            if existing is None:
                self._calendar[agreement.agreement_id] = entry
                existing = entry
            return stored, existing

    def list_agreements(self, account_id: str, status: Optional[AgreementStatus] = None) -> List[Agreement]:
        with self._lock:
            found = [a for a in self._agreements.values() if account_id in a.parties]
        if status is not None:
            found = [a for a in found if a.status == status]
        return sorted(found, key=lambda a: (a.created_at, a.agreement_id), reverse=True)

    def get_calendar_entry(self, agreement_id: str) -> Optional[CalendarEntry]:
        with self._lock:
            return self._calendar.get(agreement_id)

    def list_calendar_entries(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CalendarEntry]:
        with self._lock:
            entries = [e for e in self._calendar.values() if account_id in e.parties]
        if start is not None:
            entries = [e for e in entries if e.event_date >= start]
        if end is not None:
            entries = [e for e in entries if e.event_date < end]
        return sorted(entries, key=lambda e: (e.event_date, e.entry_id))

    # Payments

    def record_payment(self, payment_ref: str, purpose: str, owner_id: str, received_at: datetime) -> bool:
        with self._lock:
            if payment_ref in self._payments:
                return False
            self._payments[payment_ref] = PaymentReceipt(
                payment_ref=payment_ref, purpose=purpose, owner_id=owner_id, received_at=received_at
            )
            return True

    def get_payment(self, payment_ref: str) -> Optional[PaymentReceipt]:
        with self._lock:
            return self._payments.get(payment_ref)

    def submit_verification_payment(
        self, case: VerificationCase, expected_version: int, received_at: datetime
    ) -> VerificationCase:
        with self._lock:
            if case.payment_ref in self._payments:
                raise DuplicateRecordError(f"payment {case.payment_ref} already recorded")
            stored = self.cas_verification_case(case, expected_version)
            self.record_payment(case.payment_ref, "verification", case.owner_id, received_at)
            return stored
