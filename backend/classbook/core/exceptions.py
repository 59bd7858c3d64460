# backend/classbook/core/exceptions.py
"""
Domain-specific exceptions for the classbook booking ledger.

Every denial carries its own code and details so calling layers can render
an actionable message. None of these are retried by the ledger itself.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, resource_id: Optional[str] = None) -> None:
        super().__init__(
            message=f"{resource} not found",
            code="NOT_FOUND",
            details={"resource": resource, "id": resource_id},
        )


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class InvalidIntervalException(ValidationException):
    """Raised for zero-length or inverted time windows."""

    def __init__(self, start: Any, end: Any) -> None:
        super().__init__(
            message="Session end must be after its start",
            code="INVALID_INTERVAL",
            details={"start": str(start), "end": str(end)},
        )


class BookingConflictException(ConflictException):
    """Raised when a booking overlaps an existing commitment."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot conflicts with an existing booking",
            code="BOOKING_CONFLICT",
            details=details or {},
        )


class SessionFullException(ConflictException):
    """Raised when a session has no free seat."""

    def __init__(self, session_id: str, capacity_max: int) -> None:
        super().__init__(
            message="This session is full",
            code="SESSION_FULL",
            details={"session_id": session_id, "capacity_max": capacity_max},
        )


class SessionNotBookableException(BusinessRuleException):
    """Raised when a session is not in the scheduled state."""

    def __init__(self, session_id: str, session_status: str) -> None:
        super().__init__(
            message="This session is no longer open for booking",
            code="SESSION_NOT_BOOKABLE",
            details={"session_id": session_id, "status": session_status},
        )


class SessionNotFullException(BusinessRuleException):
    """Raised when joining a waitlist for a session that still has seats."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            message="This session still has free seats; book it directly",
            code="SESSION_NOT_FULL",
            details={"session_id": session_id},
        )


class InsufficientCreditsException(BusinessRuleException):
    """Raised when an allowance cannot cover the credits a booking needs."""

    def __init__(
        self,
        required: int,
        available: int,
        allowance_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message="Your package has no remaining credits for this session",
            code="INSUFFICIENT_CREDITS",
            details={
                "required": required,
                "available": available,
                "allowance_id": allowance_id,
            },
        )


class PackageExpiredException(BusinessRuleException):
    """Raised when credits are drawn from an expired package."""

    def __init__(self, package_id: str, expires_at: Any) -> None:
        super().__init__(
            message="This package has expired",
            code="PACKAGE_EXPIRED",
            details={"package_id": package_id, "expires_at": str(expires_at)},
        )


class AllowanceNotEligibleException(BusinessRuleException):
    """Raised when no allowance of a package may pay for a session."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="ALLOWANCE_NOT_ELIGIBLE", details=details or {})


class CrossTierConfirmationRequiredException(BusinessRuleException):
    """Raised when a higher-tier credit is chosen for a lower-tier session without confirmation."""

    def __init__(self, allowance_tier: int, session_tier: int) -> None:
        super().__init__(
            message=(
                f"This uses a tier {allowance_tier} credit for a tier {session_tier} session; "
                "confirm to continue"
            ),
            code="CROSS_TIER_CONFIRMATION_REQUIRED",
            details={"allowance_tier": allowance_tier, "session_tier": session_tier},
        )


class PolicyDeniedException(BusinessRuleException):
    """Raised when the active cancellation policy forbids a modification."""

    def __init__(self, reason: str, message: str, *, details: Optional[Dict[str, Any]] = None):
        merged = {"reason": reason}
        merged.update(details or {})
        super().__init__(message=message, code="POLICY_DENIED", details=merged)
        self.reason = reason


class OwnershipException(ForbiddenException):
    """Raised when the actor does not own the referenced resource."""

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            message=f"You do not have access to this {resource.lower()}",
            code="OWNERSHIP_MISMATCH",
            details={"resource": resource, "id": resource_id},
        )


class DuplicateException(ConflictException):
    """Raised when an equivalent record already exists."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="DUPLICATE", details=details or {})


class AlreadyVoidedException(DomainException):
    """Raised by the ledger when voiding a use that is already void."""

    def __init__(self, package_use_id: str) -> None:
        super().__init__(
            message="Package use already voided",
            code="ALREADY_VOIDED",
            details={"package_use_id": package_use_id},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
