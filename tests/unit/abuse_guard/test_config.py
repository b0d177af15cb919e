"""Tests for abuse guard configuration."""

import json
import os
from unittest.mock import patch

from services.abuse_guard.src.config import (
    APIConfig,
    GateConfig,
    RedisConfig,
    ServiceConfig,
    get_config,
    reset_config,
    set_config,
)
from services.abuse_guard.src.penalties.models import PenaltyEscalationConfig
from services.abuse_guard.src.rate_limiting.job_policy import DEFAULT_JOB_TYPE_CONFIGS
from services.abuse_guard.src.security.models import ActivityAnalysisConfig


class TestSectionDefaults:
    """Test configuration section defaults."""

    def test_redis_defaults(self):
        """Test default Redis configuration values."""
        config = RedisConfig()

        assert config.enabled is True
        assert config.host == "localhost"
        assert config.port == 6379
        assert config.db == 2
        assert config.key_prefix == "abuse_guard:"
        assert config.operation_timeout_seconds == 0.5
        assert config.retry_interval_seconds == 5.0

    def test_gate_defaults(self):
        """Test default gate configuration values."""
        config = GateConfig()

        assert config.enabled is True
        assert config.auto_apply_penalties is True
        assert config.auto_apply_threshold == 80
        assert config.default_job_type == "default"

    def test_api_defaults(self):
        """Test default API configuration values."""
        config = APIConfig()

        assert config.port == 8010
        assert config.api_prefix == "/api/v1"

    def test_escalation_defaults(self):
        """Test default escalation policy."""
        config = PenaltyEscalationConfig()

        assert config.base_timeout_seconds == 300
        assert config.escalation_multiplier == 2.0
        assert config.max_timeout_seconds == 86400
        assert config.permanent_ban_threshold == 5
        assert config.validate() == []

    def test_activity_defaults(self):
        """Test default detector thresholds."""
        config = ActivityAnalysisConfig()

        assert config.rapid_request_threshold == 10
        assert config.min_human_interval_ms == 500.0
        assert config.suspicious_score_threshold == 70
        assert config.weights.bot_like_timing == 25.0
        assert config.validate() == []


class TestServiceConfig:
    """Test main service configuration."""

    def test_default_values(self):
        """Test default service configuration values."""
        config = ServiceConfig()

        assert set(config.job_types) == set(DEFAULT_JOB_TYPE_CONFIGS)
        assert config.log_level == "INFO"
        assert config.validate() == []

    @patch.dict(
        os.environ,
        {
            "ABUSE_GUARD_REDIS_ENABLED": "false",
            "ABUSE_GUARD_REDIS_PORT": "6380",
            "ABUSE_GUARD_GATE_AUTO_APPLY_THRESHOLD": "90",
            "ABUSE_GUARD_PENALTY_BASE_TIMEOUT_SECONDS": "60",
            "ABUSE_GUARD_PENALTY_ALLOW_APPEALS": "no",
            "ABUSE_GUARD_ACTIVITY_RAPID_THRESHOLD": "15",
            "ABUSE_GUARD_API_PORT": "9000",
            "ABUSE_GUARD_LOG_LEVEL": "DEBUG",
        },
    )
    def test_from_env(self):
        """Test configuration creation from environment variables."""
        config = ServiceConfig.from_env()

        assert config.redis.enabled is False
        assert config.redis.port == 6380
        assert config.gate.auto_apply_threshold == 90
        assert config.penalties.base_timeout_seconds == 60
        assert config.penalties.allow_appeals is False
        assert config.activity.rapid_request_threshold == 15
        assert config.api.port == 9000
        assert config.log_level == "DEBUG"

    @patch.dict(
        os.environ,
        {
            "ABUSE_GUARD_ACTIVITY_WEIGHT_LOW_VARIETY": "12.5",
            "ABUSE_GUARD_ACTIVITY_WEIGHT_MAX_SCORE": "120",
        },
    )
    def test_from_env_score_weights(self):
        """Test score weights keep their types when read from the environment."""
        config = ServiceConfig.from_env()

        assert config.activity.weights.low_variety == 12.5
        assert config.activity.weights.max_score == 120
        assert isinstance(config.activity.weights.max_score, int)
        assert ActivityAnalysisConfig().weights.low_variety == 10.0

    @patch.dict(
        os.environ,
        {
            "ABUSE_GUARD_JOB_TYPES": json.dumps(
                {
                    "release": {"max_requests_per_user": 1, "window_size_seconds": 3600, "cooldown_seconds": 900},
                    "build": {"max_requests_per_user": 8, "window_size_seconds": 300, "cooldown_seconds": 30},
                }
            )
        },
    )
    def test_from_env_job_types(self):
        """Test the job type table can be extended and overridden."""
        config = ServiceConfig.from_env()

        assert config.job_types["release"].cooldown_seconds == 900
        assert config.job_types["build"].max_requests_per_user == 8
        assert config.job_types["build"].global_max_requests is None
        assert "deploy" in config.job_types
        assert DEFAULT_JOB_TYPE_CONFIGS["build"].max_requests_per_user == 5

    def test_validate_invalid_config(self):
        """Test validation of invalid configuration."""
        config = ServiceConfig()

        config.redis.port = 0
        config.gate.auto_apply_threshold = 150
        config.penalties = PenaltyEscalationConfig(permanent_ban_threshold=1)
        config.activity = ActivityAnalysisConfig(volume_threshold=0)
        config.gate.default_job_type = "missing"

        errors = config.validate()

        assert "Redis port must be between 1 and 65535" in errors
        assert "Gate auto_apply_threshold must be between 0 and 100" in errors
        assert "Penalty permanent_ban_threshold must be at least 2" in errors
        assert "Activity volume_threshold must be positive" in errors
        assert any("default_job_type 'missing'" in error for error in errors)


class TestConfigGlobals:
    """Test global configuration functions."""

    def teardown_method(self):
        """Clean up after each test."""
        reset_config()

    def test_get_config_singleton(self):
        """Test that get_config returns the same instance."""
        assert get_config() is get_config()

    def test_set_and_reset_config(self):
        """Test replacing and resetting the global configuration."""
        custom_config = ServiceConfig()
        custom_config.log_level = "DEBUG"

        set_config(custom_config)
        assert get_config() is custom_config

        reset_config()
        assert get_config() is not custom_config
