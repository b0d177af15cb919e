"""Penalty escalation and appeals."""

from .manager import PenaltyManager
from .models import (
    AppealRequest,
    AppealStatus,
    PenaltyEscalationConfig,
    PenaltyRecord,
    PenaltySeverity,
    PenaltyType,
    UserAccessDecision,
    UserPenaltyStatus,
    UserStatus,
)

__all__ = [
    "AppealRequest",
    "AppealStatus",
    "PenaltyEscalationConfig",
    "PenaltyManager",
    "PenaltyRecord",
    "PenaltySeverity",
    "PenaltyType",
    "UserAccessDecision",
    "UserPenaltyStatus",
    "UserStatus",
]
