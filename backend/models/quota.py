"""
backend/models/quota.py

Quota counter record and consume decisions.

A counter's `count` is only meaningful for the monthly period starting at
`anchor`; a counter whose anchor predates the current period reads as zero.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class _Unbounded:
    """Sentinel for tiers without a cap. Never compares equal to a number."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNBOUNDED"

    def __reduce__(self):
        return (_Unbounded, ())


UNBOUNDED = _Unbounded()

Remaining = Union[int, _Unbounded]


def is_unbounded(value: object) -> bool:
    return value is UNBOUNDED


def remaining_for_json(value: Remaining) -> Union[int, str]:
    return "unlimited" if is_unbounded(value) else value


class QuotaCounter(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    kind: str
    count: int = Field(ge=0)
    anchor: datetime
    version: int = 0


@dataclass(frozen=True)
class QuotaDecision:
    granted: bool
    remaining_after: Remaining
    limit: Remaining
    used: int
    period_start: datetime
    reset_at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "granted": self.granted,
            "remaining_after": remaining_for_json(self.remaining_after),
            "limit": remaining_for_json(self.limit),
            "used": self.used,
            "period_start": self.period_start.isoformat(),
            "reset_at": self.reset_at.isoformat(),
            "reason": self.reason,
        }


class QuotaAmountRequest(BaseModel):
    amount: int = Field(default=1, ge=1, le=1000)
