"""Activity monitoring data models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class ScoreWeights:
    """Policy constants for the suspicion score.

    Rapid and volume contributions scale with how far the count exceeds its
    threshold: ``min(max, (count / threshold) * scale)``.
    """

    rapid_requests_max: float = 30.0
    rapid_requests_scale: float = 20.0
    volume_max: float = 25.0
    volume_scale: float = 15.0
    bot_like_timing: float = 25.0
    extreme_timing_bonus: float = 15.0
    extreme_timing_interval_ms: float = 100.0
    low_variety: float = 10.0
    consistent_timing: float = 15.0
    max_score: int = 100


@dataclass
class ActivityAnalysisConfig:
    """Thresholds for the behavioural detectors."""

    rapid_request_window_seconds: int = 60
    rapid_request_threshold: int = 10
    volume_analysis_window_seconds: int = 300
    volume_threshold: int = 50
    min_human_interval_ms: float = 500.0
    max_identical_requests: int = 5
    suspicious_score_threshold: int = 70
    pattern_history_window_seconds: int = 3600
    max_patterns_per_user: int = 1000
    low_variety_min_samples: int = 10
    low_variety_max_unique_actions: int = 2
    timing_consistency_cv_threshold: float = 0.1
    timing_consistency_min_intervals: int = 5
    weights: ScoreWeights = field(default_factory=ScoreWeights)

    def validate(self) -> list[str]:
        """Validate detector settings.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        for name in (
            "rapid_request_window_seconds",
            "rapid_request_threshold",
            "volume_analysis_window_seconds",
            "volume_threshold",
            "max_identical_requests",
            "pattern_history_window_seconds",
            "max_patterns_per_user",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if not 0 <= self.suspicious_score_threshold <= self.weights.max_score:
            errors.append("suspicious_score_threshold must be within the score range")
        return errors


@dataclass
class RequestPattern:
    """One recorded user action."""

    user_id: str
    timestamp: datetime
    action: str
    channel: str | None = None
    job_type: str | None = None
    job_name: str | None = None

    def signature(self) -> tuple[str, str | None, str | None]:
        """Fields compared when looking for identical consecutive requests."""
        return (self.action, self.job_type, self.job_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "channel": self.channel,
            "job_type": self.job_type,
            "job_name": self.job_name,
        }


@dataclass
class RapidRequestDetails:
    """Result of the rapid request detector."""

    detected: bool
    count: int
    window_seconds: int


@dataclass
class VolumeDetails:
    """Result of the volume detector."""

    detected: bool
    count: int
    window_seconds: int


@dataclass
class BotBehaviorDetails:
    """Result of the bot-like behaviour detector."""

    detected: bool
    average_interval_ms: float | None
    identical_run: int
    timing_detected: bool = False
    identical_detected: bool = False


@dataclass
class PatternDetails:
    """Result of the variety and timing consistency detector."""

    unique_actions: int
    sample_size: int
    coefficient_of_variation: float | None
    low_variety: bool = False
    consistent_timing: bool = False


@dataclass
class ActivityDetails:
    """Per-detector breakdown of an analysis."""

    rapid_requests: RapidRequestDetails
    volume: VolumeDetails
    bot_behavior: BotBehaviorDetails
    patterns: PatternDetails

    def to_dict(self) -> dict[str, Any]:
        return {
            "rapid_requests": vars(self.rapid_requests),
            "volume": vars(self.volume),
            "bot_behavior": vars(self.bot_behavior),
            "patterns": vars(self.patterns),
        }


@dataclass
class SuspiciousActivityResult:
    """Outcome of analysing a user's recent activity."""

    user_id: str
    is_suspicious: bool
    score: int
    flags: list[str]
    analyzed_at: datetime
    request_count: int = 0
    details: ActivityDetails | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "is_suspicious": self.is_suspicious,
            "score": self.score,
            "flags": list(self.flags),
            "analyzed_at": self.analyzed_at.isoformat(),
            "request_count": self.request_count,
            "details": self.details.to_dict() if self.details else None,
        }


@dataclass
class UserActivityMetrics:
    """Accumulated per-user summary."""

    user_id: str
    total_requests: int = 0
    unique_actions: int = 0
    average_interval_ms: float | None = None
    first_activity: datetime | None = None
    last_activity: datetime | None = None
    suspicion_score: int = 0
    flag_count: int = 0
    recent_flags: list[str] = field(default_factory=list)
    last_analysis: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "total_requests": self.total_requests,
            "unique_actions": self.unique_actions,
            "average_interval_ms": self.average_interval_ms,
            "first_activity": self.first_activity.isoformat() if self.first_activity else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "suspicion_score": self.suspicion_score,
            "flag_count": self.flag_count,
            "recent_flags": list(self.recent_flags),
            "last_analysis": self.last_analysis.isoformat() if self.last_analysis else None,
        }
