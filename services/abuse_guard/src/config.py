"""
Configuration management for the abuse guard service.

Provides centralized configuration for the counter store, the job trigger
policy table, penalty escalation, activity analysis and the admin API.
"""

import json
import os
from dataclasses import dataclass, field

from .penalties.models import PenaltyEscalationConfig
from .rate_limiting.job_policy import DEFAULT_JOB_TYPE_CONFIGS, JobTypeConfig
from .security.models import ActivityAnalysisConfig


def _as_bool(val: str) -> bool:
    return val.lower() in ("true", "1", "yes")


@dataclass
class RedisConfig:
    """Configuration for the shared Redis counter store."""

    enabled: bool = True
    url: str | None = None
    host: str = "localhost"
    port: int = 6379
    db: int = 2
    password: str | None = None
    key_prefix: str = "abuse_guard:"
    operation_timeout_seconds: float = 0.5
    socket_timeout_seconds: float = 2.0
    socket_connect_timeout_seconds: float = 2.0
    retry_interval_seconds: float = 5.0


@dataclass
class GateConfig:
    """Configuration for the gatekeeper that composes the three gates."""

    enabled: bool = True
    enable_activity_monitoring: bool = True
    enable_penalty_management: bool = True
    default_job_type: str = "default"
    auto_apply_penalties: bool = True
    auto_apply_threshold: int = 80
    max_event_history: int = 1000
    maintenance_interval_seconds: float = 300.0


@dataclass
class APIConfig:
    """Configuration for the admin/status API."""

    host: str = "0.0.0.0"
    port: int = 8010
    log_level: str = "info"
    api_prefix: str = "/api/v1"
    docs_enabled: bool = True


@dataclass
class ServiceConfig:
    """Main service configuration."""

    redis: RedisConfig = field(default_factory=RedisConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    penalties: PenaltyEscalationConfig = field(default_factory=PenaltyEscalationConfig)
    activity: ActivityAnalysisConfig = field(default_factory=ActivityAnalysisConfig)
    job_types: dict[str, JobTypeConfig] = field(default_factory=lambda: dict(DEFAULT_JOB_TYPE_CONFIGS))
    api: APIConfig = field(default_factory=APIConfig)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Create configuration from environment variables.

        Environment variables follow the pattern:
        ABUSE_GUARD_<SECTION>_<SETTING>

        For example:
        - ABUSE_GUARD_REDIS_HOST
        - ABUSE_GUARD_PENALTY_BASE_TIMEOUT_SECONDS
        - ABUSE_GUARD_ACTIVITY_WEIGHT_BOT_LIKE_TIMING
        """
        config = cls()

        # Redis configuration
        if val := os.getenv("ABUSE_GUARD_REDIS_ENABLED"):
            config.redis.enabled = _as_bool(val)
        config.redis.url = os.getenv("ABUSE_GUARD_REDIS_URL", config.redis.url)
        config.redis.host = os.getenv("ABUSE_GUARD_REDIS_HOST", config.redis.host)
        if val := os.getenv("ABUSE_GUARD_REDIS_PORT"):
            config.redis.port = int(val)
        if val := os.getenv("ABUSE_GUARD_REDIS_DB"):
            config.redis.db = int(val)
        config.redis.password = os.getenv("ABUSE_GUARD_REDIS_PASSWORD")
        config.redis.key_prefix = os.getenv("ABUSE_GUARD_REDIS_KEY_PREFIX", config.redis.key_prefix)
        if val := os.getenv("ABUSE_GUARD_REDIS_OPERATION_TIMEOUT_SECONDS"):
            config.redis.operation_timeout_seconds = float(val)
        if val := os.getenv("ABUSE_GUARD_REDIS_SOCKET_TIMEOUT_SECONDS"):
            config.redis.socket_timeout_seconds = float(val)
        if val := os.getenv("ABUSE_GUARD_REDIS_RETRY_INTERVAL_SECONDS"):
            config.redis.retry_interval_seconds = float(val)

        # Gate configuration
        if val := os.getenv("ABUSE_GUARD_GATE_ENABLED"):
            config.gate.enabled = _as_bool(val)
        if val := os.getenv("ABUSE_GUARD_GATE_ACTIVITY_MONITORING"):
            config.gate.enable_activity_monitoring = _as_bool(val)
        if val := os.getenv("ABUSE_GUARD_GATE_PENALTY_MANAGEMENT"):
            config.gate.enable_penalty_management = _as_bool(val)
        config.gate.default_job_type = os.getenv("ABUSE_GUARD_GATE_DEFAULT_JOB_TYPE", config.gate.default_job_type)
        if val := os.getenv("ABUSE_GUARD_GATE_AUTO_APPLY_PENALTIES"):
            config.gate.auto_apply_penalties = _as_bool(val)
        if val := os.getenv("ABUSE_GUARD_GATE_AUTO_APPLY_THRESHOLD"):
            config.gate.auto_apply_threshold = int(val)
        if val := os.getenv("ABUSE_GUARD_GATE_MAX_EVENT_HISTORY"):
            config.gate.max_event_history = int(val)
        if val := os.getenv("ABUSE_GUARD_GATE_MAINTENANCE_INTERVAL_SECONDS"):
            config.gate.maintenance_interval_seconds = float(val)

        # Penalty escalation
        if val := os.getenv("ABUSE_GUARD_PENALTY_BASE_TIMEOUT_SECONDS"):
            config.penalties.base_timeout_seconds = int(val)
        if val := os.getenv("ABUSE_GUARD_PENALTY_ESCALATION_MULTIPLIER"):
            config.penalties.escalation_multiplier = float(val)
        if val := os.getenv("ABUSE_GUARD_PENALTY_MAX_TIMEOUT_SECONDS"):
            config.penalties.max_timeout_seconds = int(val)
        if val := os.getenv("ABUSE_GUARD_PENALTY_PERMANENT_BAN_THRESHOLD"):
            config.penalties.permanent_ban_threshold = int(val)
        if val := os.getenv("ABUSE_GUARD_PENALTY_VIOLATION_WINDOW_SECONDS"):
            config.penalties.violation_window_seconds = int(val)
        if val := os.getenv("ABUSE_GUARD_PENALTY_GRACE_PERIOD_SECONDS"):
            config.penalties.violation_grace_period_seconds = int(val)
        if val := os.getenv("ABUSE_GUARD_PENALTY_ALLOW_APPEALS"):
            config.penalties.allow_appeals = _as_bool(val)
        if val := os.getenv("ABUSE_GUARD_PENALTY_MAX_APPEALS_PER_USER"):
            config.penalties.max_appeals_per_user = int(val)

        # Activity analysis
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_RAPID_WINDOW_SECONDS"):
            config.activity.rapid_request_window_seconds = int(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_RAPID_THRESHOLD"):
            config.activity.rapid_request_threshold = int(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_VOLUME_WINDOW_SECONDS"):
            config.activity.volume_analysis_window_seconds = int(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_VOLUME_THRESHOLD"):
            config.activity.volume_threshold = int(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_MIN_HUMAN_INTERVAL_MS"):
            config.activity.min_human_interval_ms = float(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_MAX_IDENTICAL_REQUESTS"):
            config.activity.max_identical_requests = int(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_SUSPICIOUS_THRESHOLD"):
            config.activity.suspicious_score_threshold = int(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_HISTORY_WINDOW_SECONDS"):
            config.activity.pattern_history_window_seconds = int(val)
        if val := os.getenv("ABUSE_GUARD_ACTIVITY_MAX_PATTERNS_PER_USER"):
            config.activity.max_patterns_per_user = int(val)

        # Score weights, e.g. ABUSE_GUARD_ACTIVITY_WEIGHT_LOW_VARIETY=12
        weights = config.activity.weights
        for name, current in list(vars(weights).items()):
            if val := os.getenv(f"ABUSE_GUARD_ACTIVITY_WEIGHT_{name.upper()}"):
                setattr(weights, name, type(current)(val))

        # Job type table, a JSON object keyed by job type
        if val := os.getenv("ABUSE_GUARD_JOB_TYPES"):
            for job_type, raw in json.loads(val).items():
                config.job_types[job_type] = JobTypeConfig(job_type=job_type, **raw)

        # API configuration
        config.api.host = os.getenv("ABUSE_GUARD_API_HOST", config.api.host)
        if val := os.getenv("ABUSE_GUARD_API_PORT"):
            config.api.port = int(val)
        config.api.log_level = os.getenv("ABUSE_GUARD_API_LOG_LEVEL", config.api.log_level)
        config.api.api_prefix = os.getenv("ABUSE_GUARD_API_PREFIX", config.api.api_prefix)
        if val := os.getenv("ABUSE_GUARD_API_DOCS_ENABLED"):
            config.api.docs_enabled = _as_bool(val)

        # Service-level settings
        config.log_level = os.getenv("ABUSE_GUARD_LOG_LEVEL", config.log_level)

        return config

    def validate(self) -> list[str]:
        """Validate configuration and return any errors.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not 1 <= self.redis.port <= 65535:
            errors.append("Redis port must be between 1 and 65535")
        if self.redis.operation_timeout_seconds <= 0:
            errors.append("Redis operation_timeout_seconds must be positive")
        if self.redis.retry_interval_seconds < 0:
            errors.append("Redis retry_interval_seconds must be non-negative")

        if not 0 <= self.gate.auto_apply_threshold <= 100:
            errors.append("Gate auto_apply_threshold must be between 0 and 100")
        if self.gate.max_event_history <= 0:
            errors.append("Gate max_event_history must be positive")
        if self.gate.maintenance_interval_seconds <= 0:
            errors.append("Gate maintenance_interval_seconds must be positive")
        if self.gate.default_job_type not in self.job_types:
            errors.append(f"Gate default_job_type '{self.gate.default_job_type}' has no job type config")

        errors.extend(f"Penalty {e}" for e in self.penalties.validate())
        errors.extend(f"Activity {e}" for e in self.activity.validate())
        for job_config in self.job_types.values():
            errors.extend(f"Job type {job_config.job_type}: {e}" for e in job_config.validate())

        if not 1 <= self.api.port <= 65535:
            errors.append("API port must be between 1 and 65535")

        return errors


# Global configuration instance
_config: ServiceConfig | None = None


def get_config() -> ServiceConfig:
    """Get the global configuration instance.

    Creates the configuration from environment variables on first call.
    """
    global _config  # noqa: PLW0603  # Global config pattern for application configuration
    if _config is None:
        _config = ServiceConfig.from_env()
    return _config


def set_config(config: ServiceConfig) -> None:
    """Set the global configuration instance.

    Useful for testing or when loading configuration from files.
    """
    global _config  # noqa: PLW0603  # Global config pattern for application configuration
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance.

    The next call to get_config() will recreate from environment.
    """
    global _config  # noqa: PLW0603  # Global config pattern for application configuration
    _config = None
