# backend/app/core/exceptions.py
"""
Domain-specific exceptions for the Tipu platform.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


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


class ConflictException(DomainException):
    """Raised for invalid state transitions and lost concurrent writes."""

    status_code = status.HTTP_409_CONFLICT


class UnauthorizedException(DomainException):
    """Raised when the caller is not authenticated."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when a role, ownership or age check fails."""

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


class UpstreamGatewayException(DomainException):
    """Raised when the payment gateway or the meeting provider fails."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        *,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.retryable = retryable


# Specific business exceptions


class InvalidTransitionException(ConflictException):
    """Raised when an operation is not allowed from the booking's current status."""

    def __init__(self, operation: str, current_status: str, allowed: Optional[list[str]] = None):
        super().__init__(
            message=f"Cannot {operation} a booking with status '{current_status}'",
            code="INVALID_TRANSITION",
            details={
                "operation": operation,
                "current_status": current_status,
                "allowed_statuses": allowed or [],
            },
        )


class StaleBookingException(ConflictException):
    """Raised when a conditional booking write loses a race."""

    def __init__(self, booking_id: str, expected_status: str):
        super().__init__(
            message="Booking was modified concurrently; reload and try again",
            code="STALE_BOOKING",
            details={"booking_id": booking_id, "expected_status": expected_status},
        )


class InsufficientNoticeException(ForbiddenException):
    """Raised when an action is attempted inside a role's notice window."""

    def __init__(self, action: str, required_hours: int, hours_remaining: float):
        super().__init__(
            message=(
                f"Cannot {action} within {required_hours} hours of lesson. "
                f"Only {hours_remaining:.1f} hours remaining."
            ),
            code="INSUFFICIENT_NOTICE",
            details={
                "required_hours": required_hours,
                "hours_remaining": round(hours_remaining, 2),
            },
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """


class DataIntegrityWarning(UserWarning):
    """
    A stored booking contradicts its own invariants.

    Never raised to callers; instances are logged and counted so the
    record can be reconciled by hand.
    """

    def __init__(self, booking_id: str, problem: str, **context: Any) -> None:
        self.booking_id = booking_id
        self.problem = problem
        self.context = context
        super().__init__(f"Booking {booking_id}: {problem}")
