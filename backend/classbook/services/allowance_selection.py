# backend/classbook/services/allowance_selection.py
"""
Allowance selection as a ranked list.

Among allowances of the session's service type, exact-tier allowances come
first, then any-tier (tier 0) ones. A higher-tier allowance is only usable
when the student explicitly picked it and confirmed the cross-tier spend; a
lower-tier allowance never pays for a higher-tier session.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import math
from typing import Iterable, List, Optional, Tuple

from ..core.enums import ANY_TEACHER_TIER
from ..core.exceptions import (
    AllowanceNotEligibleException,
    CrossTierConfirmationRequiredException,
)
from ..core.timezone_utils import ensure_utc
from ..models.package import PackageAllowance

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


class TierMatch(str, Enum):
    EXACT = "exact"
    ANY_TIER = "any-tier"
    HIGHER_TIER = "higher-tier"
    LOWER_TIER = "lower-tier"


def credits_required(duration_minutes: int, credit_unit_minutes: int) -> int:
    """Credits a session costs: whole credit units, rounded up, at least one."""
    if credit_unit_minutes <= 0:
        raise ValueError("credit_unit_minutes must be positive")
    return max(1, math.ceil(duration_minutes / credit_unit_minutes))


def classify_tier(allowance_tier: int, session_tier: int) -> TierMatch:
    if allowance_tier == session_tier:
        return TierMatch.EXACT
    if allowance_tier == ANY_TEACHER_TIER:
        return TierMatch.ANY_TIER
    if allowance_tier > session_tier:
        return TierMatch.HIGHER_TIER
    return TierMatch.LOWER_TIER


@dataclass(frozen=True)
class AllowanceCandidate:
    """An allowance evaluated against one session."""

    allowance: PackageAllowance
    match: TierMatch
    remaining: int
    required: int
    expires_at: Optional[datetime] = None
    purchased_at: Optional[datetime] = None

    @property
    def sufficient(self) -> bool:
        return self.remaining >= self.required

    @property
    def automatic(self) -> bool:
        return self.match in (TierMatch.EXACT, TierMatch.ANY_TIER)

    def rank_key(self) -> Tuple[int, datetime, datetime, str]:
        # Exact tier first, then soonest expiry, then oldest purchase
        return (
            0 if self.match == TierMatch.EXACT else 1,
            ensure_utc(self.expires_at) or _FAR_FUTURE,
            ensure_utc(self.purchased_at) or _FAR_FUTURE,
            str(self.allowance.id),
        )


def rank_candidates(candidates: Iterable[AllowanceCandidate]) -> List[AllowanceCandidate]:
    """Automatic candidates that can cover the cost, best first."""
    usable = [c for c in candidates if c.automatic and c.sufficient]
    return sorted(usable, key=lambda c: c.rank_key())


def select_allowance(candidates: Iterable[AllowanceCandidate]) -> Optional[AllowanceCandidate]:
    ranked = rank_candidates(candidates)
    return ranked[0] if ranked else None


def check_explicit_choice(
    candidate: AllowanceCandidate,
    session_service_type: str,
    session_tier: int,
    confirm_cross_tier: bool = False,
) -> None:
    """
    Validate an allowance the student picked by id.

    Raises:
        AllowanceNotEligibleException: Wrong service type or a lower tier
        CrossTierConfirmationRequiredException: Higher tier without confirmation
    """
    allowance = candidate.allowance
    if allowance.service_type != session_service_type:
        raise AllowanceNotEligibleException(
            "This package does not cover this kind of session",
            details={
                "allowance_id": allowance.id,
                "allowance_service_type": allowance.service_type,
                "session_service_type": session_service_type,
            },
        )
    if candidate.match == TierMatch.LOWER_TIER:
        raise AllowanceNotEligibleException(
            "This package cannot be used with this teacher",
            details={
                "allowance_id": allowance.id,
                "allowance_tier": allowance.teacher_tier,
                "session_tier": session_tier,
            },
        )
    if candidate.match == TierMatch.HIGHER_TIER and not confirm_cross_tier:
        raise CrossTierConfirmationRequiredException(allowance.teacher_tier, session_tier)
