# backend/classbook/services/cancellation_policy.py
"""
Cancellation Policy Service for the classbook ledger

Two halves:
- ``evaluate_cancellation`` / ``evaluate_reschedule``: pure functions of the
  policy, the session start, the booking and "now". No I/O, no clock reads.
- ``CancellationPolicyService``: the versioned single-active policy store
  (append-and-supersede).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import PolicyDenialReason
from ..core.exceptions import NotFoundException, PolicyDeniedException
from ..core.timezone_utils import ensure_utc, utc_now
from ..models.booking import ACTIVE_BOOKING_STATUSES
from ..models.cancellation_policy import CancellationPolicy
from ..repositories import RepositoryFactory
from ..repositories.cancellation_policy_repository import CancellationPolicyRepository
from ..schemas.cancellation import CancellationPolicyConfig
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyDecision:
    """Verdict of the evaluator for one booking at one instant."""

    allowed: bool
    refund_eligible: bool
    deadline: datetime
    reason: Optional[PolicyDenialReason] = None
    message: Optional[str] = None

    def raise_if_denied(self, **details: Any) -> None:
        if not self.allowed and self.reason is not None:
            raise PolicyDeniedException(
                self.reason.value,
                self.message or "This booking can no longer be changed",
                details={"deadline": self.deadline.isoformat(), **details},
            )


def _deny(reason: PolicyDenialReason, message: str, deadline: datetime) -> PolicyDecision:
    return PolicyDecision(
        allowed=False, refund_eligible=False, deadline=deadline, reason=reason, message=message
    )


def _hours_label(hours: int) -> str:
    return "1 hour" if hours == 1 else f"{hours} hours"


def evaluate_cancellation(policy: Any, session: Any, booking: Any, now: datetime) -> PolicyDecision:
    """
    Decide whether ``booking`` may be cancelled at ``now``.

    Rules, in order: the booking must still hold a seat; the policy must
    allow cancellation; ``now`` must not be past session start minus the
    deadline. The deadline hangs off the session's start, not the booking's
    creation. An allowed cancellation is refund-eligible iff the policy says so.
    """
    deadline = ensure_utc(session.start_at) - timedelta(hours=policy.cancellation_deadline_hours)

    if booking.status not in ACTIVE_BOOKING_STATUSES:
        return _deny(
            PolicyDenialReason.BOOKING_NOT_ACTIVE,
            "This booking is no longer active",
            deadline,
        )
    if not policy.allow_cancellation:
        return _deny(
            PolicyDenialReason.CANCELLATION_DISABLED,
            "Cancellations are not allowed",
            deadline,
        )
    if ensure_utc(now) > deadline:
        return _deny(
            PolicyDenialReason.PAST_DEADLINE,
            "Cancellations must be made at least "
            f"{_hours_label(policy.cancellation_deadline_hours)} before the session",
            deadline,
        )
    return PolicyDecision(
        allowed=True,
        refund_eligible=bool(policy.refund_credits_on_cancel),
        deadline=deadline,
    )


def evaluate_reschedule(policy: Any, session: Any, booking: Any, now: datetime) -> PolicyDecision:
    """Same shape as cancellation, plus the per-booking reschedule limit."""
    deadline = ensure_utc(session.start_at) - timedelta(hours=policy.rescheduling_deadline_hours)

    if booking.status not in ACTIVE_BOOKING_STATUSES:
        return _deny(
            PolicyDenialReason.BOOKING_NOT_ACTIVE,
            "This booking is no longer active",
            deadline,
        )
    if not policy.allow_rescheduling:
        return _deny(
            PolicyDenialReason.RESCHEDULING_DISABLED,
            "Rescheduling is not allowed",
            deadline,
        )
    if ensure_utc(now) > deadline:
        return _deny(
            PolicyDenialReason.PAST_DEADLINE,
            "Reschedules must be made at least "
            f"{_hours_label(policy.rescheduling_deadline_hours)} before the session",
            deadline,
        )
    if (booking.reschedule_count or 0) >= policy.max_reschedules_per_booking:
        return _deny(
            PolicyDenialReason.RESCHEDULE_LIMIT_REACHED,
            f"This booking has already been rescheduled {booking.reschedule_count} times",
            deadline,
        )
    return PolicyDecision(allowed=True, refund_eligible=False, deadline=deadline)


class CancellationPolicyService(BaseService):
    """Versioned store of the single active cancellation policy."""

    def __init__(self, db: Session, repository: Optional[CancellationPolicyRepository] = None):
        super().__init__(db)
        self.repository = repository or RepositoryFactory.create_cancellation_policy_repository(db)

    def get_active(self) -> CancellationPolicy:
        """
        Return the active policy.

        Raises:
            NotFoundException: If no policy was ever activated
        """
        policy = self.repository.get_active()
        if policy is None:
            raise NotFoundException("CancellationPolicy")
        return policy

    @BaseService.measure_operation("set_active_policy")
    def set_active(
        self, config: CancellationPolicyConfig, actor_id: Optional[str] = None
    ) -> CancellationPolicy:
        """
        Supersede the active policy with a new row.

        Deactivation and insert share one transaction; readers see either the
        old policy or the new one.
        """
        now = utc_now()
        with self.transaction():
            superseded = self.repository.deactivate_all(now)
            policy = self.repository.create(
                policy_name=config.policy_name,
                allow_cancellation=config.allow_cancellation,
                cancellation_deadline_hours=config.cancellation_deadline_hours,
                allow_rescheduling=config.allow_rescheduling,
                rescheduling_deadline_hours=config.rescheduling_deadline_hours,
                max_reschedules_per_booking=config.max_reschedules_per_booking,
                refund_credits_on_cancel=config.refund_credits_on_cancel,
                is_active=True,
                created_by=actor_id,
                created_at=now,
            )
        self.logger.info(
            "Activated cancellation policy %s (superseded %s)",
            policy.id,
            superseded,
            extra={"actor_id": actor_id},
        )
        return policy

    def ensure_active_policy(self) -> CancellationPolicy:
        """Return the active policy, seeding one from settings if none exists."""
        policy = self.repository.get_active()
        if policy is not None:
            return policy
        self.logger.info("No active cancellation policy; seeding defaults")
        return self.set_active(
            CancellationPolicyConfig(
                policy_name="Default policy",
                allow_cancellation=settings.default_allow_cancellation,
                cancellation_deadline_hours=settings.default_cancellation_deadline_hours,
                allow_rescheduling=settings.default_allow_rescheduling,
                rescheduling_deadline_hours=settings.default_rescheduling_deadline_hours,
                max_reschedules_per_booking=settings.default_max_reschedules_per_booking,
                refund_credits_on_cancel=settings.default_refund_credits_on_cancel,
            )
        )

    def list_policies(self) -> List[CancellationPolicy]:
        return self.repository.list_all()
