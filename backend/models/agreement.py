"""
backend/models/agreement.py

Agreement lifecycle: pending -> confirmed | declined; confirmed -> completed.

Terms (price, deliverables) are frozen once the agreement leaves `pending`.
Confirmation creates exactly one CalendarEntry per agreement.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


class AgreementStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({AgreementStatus.DECLINED, AgreementStatus.COMPLETED})


class AgreementTemplate(str, Enum):
    UNBOX_REVIEW = "unbox_review"
    SOCIAL_BOOST = "social_boost"
    MEET_GREET = "meet_greet"
    CONTENT_CREATION = "content_creation"
    CUSTOM = "custom"


TEMPLATE_NAMES = {
    AgreementTemplate.UNBOX_REVIEW: "Unboxing & Review",
    AgreementTemplate.SOCIAL_BOOST: "Social Media Boost",
    AgreementTemplate.MEET_GREET: "Meet & Greet",
    AgreementTemplate.CONTENT_CREATION: "Content Creation",
    AgreementTemplate.CUSTOM: "Custom Agreement",
}

# Used when a proposal omits deliverables
DEFAULT_DELIVERABLES = {
    AgreementTemplate.UNBOX_REVIEW: (
        "1x Unboxing video (60-90 seconds)",
        "3x Instagram Story posts",
        "1x Product review post",
    ),
    AgreementTemplate.SOCIAL_BOOST: (
        "5x Instagram Stories from event",
        "1x Instagram Feed post",
        "2x Event attendance (hours)",
    ),
    AgreementTemplate.MEET_GREET: (
        "2x Hours of appearance",
        "20x Photos with guests",
        "3x Social media story posts",
    ),
    AgreementTemplate.CONTENT_CREATION: (
        "1x Branded content video",
        "2x Behind-the-scenes content",
        "5x Product photos",
    ),
    AgreementTemplate.CUSTOM: (),
}


class Agreement(BaseModel):
    model_config = ConfigDict(frozen=True)

    agreement_id: str
    creator_id: str
    brand_id: str
    template: AgreementTemplate
    price_cents: int = Field(ge=0, description="Minor currency units")
    deliverables: Tuple[str, ...]
    event_date: datetime
    status: AgreementStatus = AgreementStatus.PENDING
    notes: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    idempotency_key: Optional[str] = None
    version: int = 0

    @property
    def parties(self) -> Tuple[str, str]:
        return (self.creator_id, self.brand_id)

    @property
    def title(self) -> str:
        return TEMPLATE_NAMES[self.template]


class CalendarEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_id: str
    agreement_id: str
    parties: Tuple[str, ...]
    event_date: datetime
    title: str
    created_at: datetime


class ProposeAgreementRequest(BaseModel):
    brand_id: str = Field(min_length=1)
    template: AgreementTemplate = AgreementTemplate.CUSTOM
    price_cents: int = Field(ge=0)
    deliverables: Optional[List[str]] = None
    event_date: datetime
    notes: Optional[str] = Field(default=None, max_length=5000)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class ReviseTermsRequest(BaseModel):
    price_cents: Optional[int] = Field(default=None, ge=0)
    deliverables: Optional[List[str]] = None


class DeclineAgreementRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)
