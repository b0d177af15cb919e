"""
Custom exceptions for the abuse guard service.

Policy outcomes (limited, cooldown, blocked, banned) are never raised; they
are returned as structured results. The exceptions here cover workflow misuse
and infrastructure failures.
"""

from typing import Any


class AbuseGuardError(Exception):
    """Base exception for all abuse guard errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}


class ConfigurationError(AbuseGuardError):
    """Raised when a policy or escalation configuration value is invalid."""

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        """Initialize configuration error.

        Args:
            message: Error message
            field: Name of the offending setting
            value: Rejected value
        """
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
            details["value"] = value
        super().__init__(message, "CONFIGURATION_ERROR", details)
        self.field = field


class PenaltyError(AbuseGuardError):
    """Base class for penalty workflow errors."""


class PenaltyNotFoundError(PenaltyError):
    """Raised when a penalty id does not exist."""

    def __init__(self, penalty_id: str) -> None:
        super().__init__("Penalty not found", "PENALTY_NOT_FOUND", {"penalty_id": penalty_id})
        self.penalty_id = penalty_id


class WhitelistedUserError(PenaltyError):
    """Raised when a penalty is applied to a whitelisted user."""

    def __init__(self, user_id: str) -> None:
        super().__init__("Cannot penalize whitelisted user", "USER_WHITELISTED", {"user_id": user_id})
        self.user_id = user_id


class AppealError(PenaltyError):
    """Base class for appeal workflow errors."""

    def __init__(self, message: str, error_code: str = "APPEAL_ERROR", penalty_id: str | None = None) -> None:
        """Initialize appeal error.

        Args:
            message: Error message
            error_code: Error code for categorization
            penalty_id: Penalty the appeal refers to
        """
        details = {"penalty_id": penalty_id} if penalty_id else {}
        super().__init__(message, error_code, details)
        self.penalty_id = penalty_id


class AppealNotAllowedError(AppealError):
    """Raised when appealing a penalty type that cannot be appealed, or when appeals are disabled."""

    def __init__(self, penalty_id: str | None = None, message: str = "Penalty is not appealable") -> None:
        super().__init__(message, "APPEAL_NOT_ALLOWED", penalty_id)


class DuplicateAppealError(AppealError):
    """Raised when a penalty has already been appealed."""

    def __init__(self, penalty_id: str) -> None:
        super().__init__("Penalty has already been appealed", "DUPLICATE_APPEAL", penalty_id)


class AppealLimitExceededError(AppealError):
    """Raised when a user has used up their appeals."""

    def __init__(self, user_id: str, max_appeals: int) -> None:
        super().__init__("User has exceeded maximum appeal limit", "APPEAL_LIMIT_EXCEEDED")
        self.details.update({"user_id": user_id, "max_appeals": max_appeals})
        self.user_id = user_id


class AppealNotFoundError(AppealError):
    """Raised when reviewing an appeal that does not exist."""

    def __init__(self, penalty_id: str) -> None:
        super().__init__("Appeal not found", "APPEAL_NOT_FOUND", penalty_id)


class AppealAlreadyReviewedError(AppealError):
    """Raised when reviewing an appeal that is no longer pending."""

    def __init__(self, penalty_id: str) -> None:
        super().__init__("Appeal has already been reviewed", "APPEAL_ALREADY_REVIEWED", penalty_id)


class CounterStoreError(AbuseGuardError):
    """Raised when a counter store backend fails."""

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize counter store error.

        Args:
            message: Error message
            backend: Name of the failing backend
            operation: Store operation that failed
            details: Additional error details
        """
        error_details = details or {}
        if backend:
            error_details["backend"] = backend
        if operation:
            error_details["operation"] = operation

        super().__init__(message, "COUNTER_STORE_ERROR", error_details)
        self.backend = backend
        self.operation = operation


class CounterStoreTimeoutError(CounterStoreError):
    """Raised when a counter store call exceeds its timeout."""
