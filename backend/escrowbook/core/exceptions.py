# backend/escrowbook/core/exceptions.py
"""
Domain-specific exceptions for the escrow booking core.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
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


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class UnauthorizedException(DomainException):
    """Raised when the caller is not identified."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when the caller lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Booking lifecycle errors


class InvalidTransition(BusinessRuleException):
    """Requested status change is not an edge of the booking lifecycle."""

    def __init__(
        self,
        booking_id: str,
        from_status: str,
        to_status: str,
        *,
        reason: Optional[str] = None,
    ) -> None:
        self.booking_id = booking_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message=reason or f"Cannot move booking from {from_status} to {to_status}",
            code="INVALID_TRANSITION",
            details={
                "booking_id": booking_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )


class StaleVersion(ConflictException):
    """The booking changed since the caller last read it."""

    def __init__(self, booking_id: str, expected_version: int, actual_version: int) -> None:
        self.booking_id = booking_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            message="Booking was modified concurrently; refetch and retry",
            code="STALE_VERSION",
            details={
                "booking_id": booking_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class SlotUnavailable(ConflictException):
    """The requested slot is no longer free."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        reason: str = "booked",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.reason = reason
        super().__init__(
            message=message or "This slot is no longer available",
            code="SLOT_UNAVAILABLE",
            details={"reason": reason, **(details or {})},
        )


class InsufficientPermission(ForbiddenException):
    """Actor is not allowed to perform the transition or ledger call."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, code="INSUFFICIENT_PERMISSION", details=details)


# Escrow ledger errors


class ChainCallFailed(ServiceException):
    """A ledger call failed synchronously (transport or validation)."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.operation = operation
        self.retryable = retryable
        self.upstream_status = status_code
        super().__init__(
            message=message,
            code="CHAIN_CALL_FAILED",
            details={
                "operation": operation,
                "retryable": retryable,
                "upstream_status": status_code,
                **(details or {}),
            },
        )


class EventUnresolvable(DomainException):
    """A ledger event references no known booking or cannot be decoded."""

    def __init__(self, event_key: str, reason: str) -> None:
        self.event_key = event_key
        self.reason = reason
        super().__init__(
            message=f"Ledger event {event_key} cannot be applied: {reason}",
            code="EVENT_UNRESOLVABLE",
            details={"event_key": event_key, "reason": reason},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as database connection
    issues, query failures, or constraint violations.
    """
