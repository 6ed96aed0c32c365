"""
backend/models/grant.py

TemporalGrant: a time-bounded paid entitlement (creator boosts, brand
verification badge).

A grant is in effect iff `active` and `start <= now < end`. Expiry is always
computed on read; records are never hard-deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class GrantKind(str, Enum):
    FEATURED_BADGE = "featured_badge"
    SPOTLIGHT = "spotlight"
    CATEGORY_BOOST = "category_boost"
    VERIFICATION_BADGE = "verification_badge"


BOOST_KINDS = frozenset({GrantKind.FEATURED_BADGE, GrantKind.SPOTLIGHT, GrantKind.CATEGORY_BOOST})


class TemporalGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    grant_id: str
    owner_id: str
    kind: GrantKind
    start: datetime
    end: datetime
    active: bool = True
    payment_ref: Optional[str] = None
    notified_expired_at: Optional[datetime] = None
    notified_expiring_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    created_at: datetime
    version: int = 0

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end <= self.start:
            raise ValueError("grant end must be after start")
        return self

    def is_in_effect(self, now: datetime) -> bool:
        return self.active and self.start <= now < self.end

    def has_ended(self, now: datetime) -> bool:
        return self.end <= now


class PaymentReceipt(BaseModel):
    """First sighting of a payment reference and what it paid for."""

    model_config = ConfigDict(frozen=True)

    payment_ref: str
    purpose: str  # "boost" | "verification"
    owner_id: str
    received_at: datetime


class BoostPurchaseRequest(BaseModel):
    """Payment collaborator's 'payment succeeded' signal for a boost."""

    kind: GrantKind
    weeks: int = Field(default=1, ge=1)
    payment_ref: str = Field(min_length=1, max_length=200)


class RevokeGrantRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
