"""Windowed rate limiting and job trigger policy."""

from .job_policy import (
    DEFAULT_JOB_TYPE,
    DEFAULT_JOB_TYPE_CONFIGS,
    CooldownStatus,
    JobTriggerPolicy,
    JobTriggerStatus,
    JobTypeConfig,
)
from .limiter import RateLimitConfig, RateLimitStatus, WindowedRateLimiter

__all__ = [
    "DEFAULT_JOB_TYPE",
    "DEFAULT_JOB_TYPE_CONFIGS",
    "CooldownStatus",
    "JobTriggerPolicy",
    "JobTriggerStatus",
    "JobTypeConfig",
    "RateLimitConfig",
    "RateLimitStatus",
    "WindowedRateLimiter",
]
