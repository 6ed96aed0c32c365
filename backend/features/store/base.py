"""
backend/features/store/base.py

Entitlement Store interface: the single source of truth for accounts, quota
counters, temporal grants, verification cases, agreements and calendar
entries.

Every record carries a `version`. `cas_*` writes succeed only when the stored
version equals `expected_version` and return the record with its version
bumped; otherwise they raise StaleWriteError and the caller re-reads and
retries. Engines never cache records across calls.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from backend.models.account import Account
from backend.models.agreement import Agreement, AgreementStatus, CalendarEntry
from backend.models.grant import GrantKind, PaymentReceipt, TemporalGrant
from backend.models.quota import QuotaCounter
from backend.models.verification import VerificationCase


class StaleWriteError(Exception):
    """Stored version moved since the caller read it."""


class DuplicateRecordError(Exception):
    """Insert collided with an existing id or unique key."""


class EntitlementStore(ABC):
    # Accounts

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    def insert_account(self, account: Account) -> Account:
        ...

    @abstractmethod
    def cas_account(self, account: Account, expected_version: int) -> Account:
        ...

    # Quota counters

    @abstractmethod
    def get_quota_counter(self, account_id: str, kind: str) -> Optional[QuotaCounter]:
        ...

    @abstractmethod
    def cas_quota_counter(self, counter: QuotaCounter, expected_version: Optional[int]) -> QuotaCounter:
        """Write a counter. `expected_version=None` means it must not exist yet."""

    # Temporal grants

    @abstractmethod
    def get_grant(self, grant_id: str) -> Optional[TemporalGrant]:
        ...

    @abstractmethod
    def insert_grant(self, grant: TemporalGrant) -> TemporalGrant:
        ...

    @abstractmethod
    def cas_grant(self, grant: TemporalGrant, expected_version: int) -> TemporalGrant:
        ...

    @abstractmethod
    def list_grants(
        self,
        owner_id: Optional[str] = None,
        kind: Optional[GrantKind] = None,
        ending_by: Optional[datetime] = None,
        payment_ref: Optional[str] = None,
    ) -> List[TemporalGrant]:
        """Filter grants, ordered by end ascending. `ending_by` keeps end <= value."""

    # Verification cases

    @abstractmethod
    def get_verification_case(self, owner_id: str) -> Optional[VerificationCase]:
        ...

    @abstractmethod
    def insert_verification_case(self, case: VerificationCase) -> VerificationCase:
        ...

    @abstractmethod
    def cas_verification_case(self, case: VerificationCase, expected_version: int) -> VerificationCase:
        ...

    # Agreements and calendar

    @abstractmethod
    def get_agreement(self, agreement_id: str) -> Optional[Agreement]:
        ...

    @abstractmethod
    def find_agreement_by_idempotency_key(self, creator_id: str, key: str) -> Optional[Agreement]:
        ...

    @abstractmethod
    def insert_agreement(self, agreement: Agreement) -> Agreement:
        ...

    @abstractmethod
    def cas_agreement(self, agreement: Agreement, expected_version: int) -> Agreement:
        ...

    @abstractmethod
    def confirm_agreement(
        self, agreement: Agreement, expected_version: int, entry: CalendarEntry
    ) -> Tuple[Agreement, CalendarEntry]:
        """Status CAS plus calendar insert as one unit.

        The calendar insert is idempotent per agreement id: when an entry
        already exists it is returned instead of creating a second one.
        """

    @abstractmethod
    def list_agreements(self, account_id: str, status: Optional[AgreementStatus] = None) -> List[Agreement]:
        ...

    @abstractmethod
    def get_calendar_entry(self, agreement_id: str) -> Optional[CalendarEntry]:
        ...

    @abstractmethod
    def list_calendar_entries(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CalendarEntry]:
        ...

    # Payments

    @abstractmethod
    def record_payment(self, payment_ref: str, purpose: str, owner_id: str, received_at: datetime) -> bool:
        """Return True on first sight of `payment_ref`, False on replay."""

    @abstractmethod
    def get_payment(self, payment_ref: str) -> Optional[PaymentReceipt]:
        ...

    @abstractmethod
    def submit_verification_payment(
        self, case: VerificationCase, expected_version: int, received_at: datetime
    ) -> VerificationCase:
        """Receipt for `case.payment_ref` plus the case CAS as one unit.

        Raises DuplicateRecordError (nothing written) when the reference was
        already recorded, StaleWriteError (nothing written) when the case moved.
        """
