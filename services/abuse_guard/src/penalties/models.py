"""Penalty, appeal and user standing data models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any


class PenaltyType(Enum):
    """Kinds of penalty, in escalation order."""

    WARNING = "warning"
    TEMPORARY_BLOCK = "temporary_block"
    PERMANENT_BAN = "permanent_ban"


class PenaltySeverity(IntEnum):
    """Severity attached to a violation."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class UserStatus(Enum):
    """Derived standing of a user."""

    NORMAL = "normal"
    WHITELISTED = "whitelisted"
    WARNED = "warned"
    TEMPORARILY_BLOCKED = "temporarily_blocked"
    PERMANENTLY_BANNED = "permanently_banned"


class AppealStatus(Enum):
    """Lifecycle of an appeal."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


@dataclass
class PenaltyEscalationConfig:
    """Escalation policy for repeated violations."""

    base_timeout_seconds: int = 300
    escalation_multiplier: float = 2.0
    max_timeout_seconds: int = 86400
    permanent_ban_threshold: int = 5
    violation_window_seconds: int = 604800  # 7 days
    violation_grace_period_seconds: int = 2592000  # 30 days
    allow_appeals: bool = True
    max_appeals_per_user: int = 3

    def validate(self) -> list[str]:
        """Validate escalation settings.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        if self.base_timeout_seconds <= 0:
            errors.append("base_timeout_seconds must be positive")
        if self.escalation_multiplier < 1:
            errors.append("escalation_multiplier must be at least 1")
        if self.max_timeout_seconds < self.base_timeout_seconds:
            errors.append("max_timeout_seconds cannot be less than base_timeout_seconds")
        if self.permanent_ban_threshold < 2:
            errors.append("permanent_ban_threshold must be at least 2")
        if self.violation_window_seconds <= 0:
            errors.append("violation_window_seconds must be positive")
        if self.violation_grace_period_seconds < self.violation_window_seconds:
            errors.append("violation_grace_period_seconds cannot be less than violation_window_seconds")
        if self.max_appeals_per_user < 0:
            errors.append("max_appeals_per_user must be non-negative")
        return errors


@dataclass
class PenaltyRecord:
    """A single penalty issued to a user."""

    id: str
    user_id: str
    type: PenaltyType
    severity: PenaltySeverity
    reason: str
    issued_at: datetime
    expires_at: datetime | None = None
    is_active: bool = True
    revoked_by: str | None = None
    revoked_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.expires_at is not None and self.expires_at < self.issued_at:
            raise ValueError("Penalty expires_at cannot be earlier than issued_at")

    @property
    def is_revoked(self) -> bool:
        """Whether an administrator or an approved appeal revoked this penalty."""
        return self.revoked_by is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the penalty has run out."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at

    def is_in_effect(self, now: datetime | None = None) -> bool:
        """Active and not yet expired."""
        return self.is_active and not self.is_expired(now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "severity": self.severity.name,
            "reason": self.reason,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
            "revoked_by": self.revoked_by,
            "revoked_reason": self.revoked_reason,
            "metadata": self.metadata,
        }


@dataclass
class AppealRequest:
    """An appeal against a single penalty."""

    penalty_id: str
    user_id: str
    reason: str
    submitted_at: datetime
    status: AppealStatus = AppealStatus.PENDING
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "penalty_id": self.penalty_id,
            "user_id": self.user_id,
            "reason": self.reason,
            "submitted_at": self.submitted_at.isoformat(),
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_notes": self.review_notes,
        }


@dataclass
class UserPenaltyStatus:
    """Derived view of a user's standing."""

    user_id: str
    status: UserStatus
    is_blocked: bool
    penalty_history: list[PenaltyRecord]
    warning_count: int
    block_count: int
    total_violations: int
    appeal_count: int = 0
    current_penalty: PenaltyRecord | None = None
    blocked_until: datetime | None = None
    next_penalty_type: PenaltyType | None = None

    @property
    def is_whitelisted(self) -> bool:
        return self.status == UserStatus.WHITELISTED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "is_blocked": self.is_blocked,
            "penalty_history": [p.to_dict() for p in self.penalty_history],
            "warning_count": self.warning_count,
            "block_count": self.block_count,
            "total_violations": self.total_violations,
            "appeal_count": self.appeal_count,
            "current_penalty": self.current_penalty.to_dict() if self.current_penalty else None,
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "next_penalty_type": self.next_penalty_type.value if self.next_penalty_type else None,
        }


@dataclass
class UserAccessDecision:
    """Answer to "may this user act at all"."""

    allowed: bool
    status: UserStatus
    reason: str | None = None
    blocked_until: datetime | None = None
    fail_open: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "allowed": self.allowed,
            "status": self.status.value,
            "reason": self.reason,
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "fail_open": self.fail_open,
        }
