"""Behavioural activity monitoring."""

from .activity_monitor import ActivityMonitor
from .models import (
    ActivityAnalysisConfig,
    ActivityDetails,
    RequestPattern,
    ScoreWeights,
    SuspiciousActivityResult,
    UserActivityMetrics,
)

__all__ = [
    "ActivityAnalysisConfig",
    "ActivityDetails",
    "ActivityMonitor",
    "RequestPattern",
    "ScoreWeights",
    "SuspiciousActivityResult",
    "UserActivityMetrics",
]
