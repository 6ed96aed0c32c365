"""
backend/models/account.py

Account model: a party on the marketplace (creator or brand).

Accounts are created at signup and never deleted. Only brands carry a
subscription tier; creators have none.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class AccountRole(str, Enum):
    CREATOR = "creator"
    BRAND = "brand"


class Tier(str, Enum):
    """Brand subscription level, ordered none < basic < pro."""

    NONE = "none"
    BASIC = "basic"
    PRO = "pro"


TIER_ORDER = {Tier.NONE: 0, Tier.BASIC: 1, Tier.PRO: 2}


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    role: AccountRole
    tier: Optional[Tier] = Field(default=None, description="Brands only; None for creators")
    phone_verified: bool = False
    display_name: Optional[str] = None
    created_at: datetime
    version: int = 0

    @property
    def effective_tier(self) -> Tier:
        return self.tier or Tier.NONE


class RegisterAccountRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=100)
    role: AccountRole
    tier: Optional[Tier] = None
    display_name: Optional[str] = Field(default=None, max_length=200)


class SetTierRequest(BaseModel):
    tier: Tier
