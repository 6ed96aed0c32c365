"""
backend/models/verification.py

VerificationCase: a brand's verification badge review state.

Review status and effective benefit are independent: an `approved` case whose
grant has ended still reports `approved`, but confers nothing.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class ReviewStatus(str, Enum):
    NONE = "none"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class VerificationCase(BaseModel):
    model_config = ConfigDict(frozen=True)

    case_id: str
    owner_id: str
    review_status: ReviewStatus = ReviewStatus.NONE
    rejection_reason: Optional[str] = None
    grant_id: Optional[str] = Field(default=None, description="Grant created by the latest approval")
    payment_ref: Optional[str] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    created_at: datetime
    version: int = 0


class VerificationView(BaseModel):
    """Case plus derived effect at a given instant."""

    model_config = ConfigDict(frozen=True)

    case: VerificationCase
    is_verified: bool
    verified_until: Optional[datetime] = None
    expired: bool = False


class VerificationPaymentRequest(BaseModel):
    payment_ref: str = Field(min_length=1, max_length=200)


class RejectVerificationRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class RevokeVerificationRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)
