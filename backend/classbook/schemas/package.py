# backend/classbook/schemas/package.py
"""Entitlement schemas: granted allowance lines and balance views."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from ..core.enums import CREDIT_UNIT_MINUTES, ServiceType
from ._strict_base import StrictModel, StrictRequestModel


class AllowanceSpec(StrictRequestModel):
    """One quota line of a package being granted."""

    service_type: ServiceType
    teacher_tier: int = Field(0, ge=0, description="Required teacher tier, 0 for any")
    credit_unit_minutes: int = Field(60, description="Minutes of class one credit pays for")
    credits: int = Field(..., ge=1)

    @field_validator("credit_unit_minutes")
    @classmethod
    def _known_unit(cls, value: int) -> int:
        if value not in CREDIT_UNIT_MINUTES:
            raise ValueError(f"credit_unit_minutes must be one of {CREDIT_UNIT_MINUTES}")
        return value


class AllowanceBalance(StrictModel):
    allowance_id: str
    service_type: str
    teacher_tier: int
    credit_unit_minutes: int
    credits: int
    remaining_credits: int


class PackageBalance(StrictModel):
    """A student's package with per-allowance remaining credits."""

    package_id: str
    package_name: str
    purchased_at: datetime
    expires_at: Optional[datetime] = None
    is_expired: bool
    source_payment_ref: str
    allowances: List[AllowanceBalance]

    @property
    def total_remaining_credits(self) -> int:
        return sum(allowance.remaining_credits for allowance in self.allowances)
