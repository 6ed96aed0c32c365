"""
backend/models/events.py

Domain events handed to the notification collaborator.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    QUOTA_EXCEEDED = "QuotaExceeded"
    GRANT_ACTIVATED = "GrantActivated"
    GRANT_EXPIRING_SOON = "GrantExpiringSoon"
    GRANT_EXPIRED = "GrantExpired"
    VERIFICATION_SUBMITTED = "VerificationSubmitted"
    VERIFICATION_APPROVED = "VerificationApproved"
    VERIFICATION_REJECTED = "VerificationRejected"
    AGREEMENT_PROPOSED = "AgreementProposed"
    AGREEMENT_CONFIRMED = "AgreementConfirmed"
    AGREEMENT_DECLINED = "AgreementDeclined"
    AGREEMENT_COMPLETED = "AgreementCompleted"


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: EventType
    occurred_at: datetime
    account_ids: Tuple[str, ...]
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
