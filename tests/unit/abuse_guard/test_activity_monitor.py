"""Unit tests for the activity monitor."""

from datetime import UTC, datetime, timedelta

import pytest

from services.abuse_guard.src.exceptions import ConfigurationError
from services.abuse_guard.src.security.activity_monitor import ActivityMonitor
from services.abuse_guard.src.security.models import ActivityAnalysisConfig, RequestPattern


@pytest.fixture
def monitor(memory_store, clock):
    """Create activity monitor with default thresholds."""
    return ActivityMonitor(memory_store, ActivityAnalysisConfig(), clock=clock)


async def replay(monitor, clock, user_id, steps):
    """Record ``(gap_seconds, action)`` steps, advancing the clock before each one.

    Timestamps are built from integer milliseconds so intervals are exact.
    """
    base = datetime.fromtimestamp(clock(), UTC)
    elapsed_ms = 0
    result = None
    for gap_ms, action in steps:
        elapsed_ms += gap_ms
        clock.advance(gap_ms / 1000)
        pattern = RequestPattern(
            user_id=user_id,
            timestamp=base + timedelta(milliseconds=elapsed_ms),
            action=action,
            job_type="build",
            job_name="nightly" if action == "trigger_job" else None,
        )
        result = await monitor.record_request(pattern)
    return result


class TestActivityMonitor:
    """Test ActivityMonitor detectors and scoring."""

    @pytest.mark.asyncio
    async def test_bot_pattern_is_suspicious(self, monitor, clock):
        """Test twenty identical requests 100ms apart are flagged as a bot."""
        result = await replay(monitor, clock, "U2", [(0, "trigger_job")] + [(100, "trigger_job")] * 19)

        assert result.is_suspicious is True
        assert result.score >= 70
        assert result.request_count == 20
        assert any(flag.startswith("Bot-like timing") for flag in result.flags)
        assert "Identical requests: 20 consecutive" in result.flags
        assert result.details.patterns.coefficient_of_variation == 0.0

    @pytest.mark.asyncio
    async def test_human_pattern_is_not_suspicious(self, monitor, clock):
        """Test irregular, varied activity scores zero."""
        steps = [
            (0, "list_jobs"),
            (5000, "view_logs"),
            (17000, "trigger_job"),
            (9000, "list_jobs"),
            (30000, "view_status"),
            (12000, "view_logs"),
            (8000, "cancel_job"),
            (25000, "list_jobs"),
            (14000, "trigger_job"),
            (40000, "view_status"),
        ]

        result = await replay(monitor, clock, "human", steps)

        assert result.is_suspicious is False
        assert result.score == 0
        assert result.flags == []
        assert result.details.rapid_requests.count == 3

    @pytest.mark.asyncio
    async def test_rapid_request_score_scales_with_count(self, memory_store, clock):
        """Test the rapid request contribution grows with the count and is capped."""
        config = ActivityAnalysisConfig(
            min_human_interval_ms=1, max_identical_requests=100, low_variety_min_samples=100
        )
        monitor = ActivityMonitor(memory_store, config, clock=clock)
        actions = ["a", "b", "c", "d", "e"]
        gaps = [1000, 3000, 2000, 5000, 4000]

        result = await replay(monitor, clock, "u", [(gaps[i % 5], actions[i % 5]) for i in range(10)])
        assert result.flags == ["Rapid requests: 10 in 60s"]
        assert result.score == 20

        result = await replay(monitor, clock, "u", [(gaps[i % 5], actions[i % 5]) for i in range(5)])
        assert result.score == 30

    @pytest.mark.asyncio
    async def test_zero_mean_interval_is_consistent(self, monitor, clock):
        """Test simultaneous requests count as perfectly regular timing."""
        result = await replay(monitor, clock, "burst", [(0, f"action{i}") for i in range(6)])

        assert result.details.patterns.coefficient_of_variation == 0.0
        assert result.details.patterns.consistent_timing is True

    @pytest.mark.asyncio
    async def test_history_window_prunes_old_patterns(self, monitor, clock):
        """Test patterns older than the history window are discarded."""
        await replay(monitor, clock, "u", [(0, "a"), (1000, "b")])

        await replay(monitor, clock, "u", [(3_601_000, "c")])

        assert [p.action for p in monitor.get_user_history("u")] == ["c"]

    @pytest.mark.asyncio
    async def test_history_is_capped(self, memory_store, clock):
        """Test only the most recent patterns are kept."""
        monitor = ActivityMonitor(memory_store, ActivityAnalysisConfig(max_patterns_per_user=5), clock=clock)

        await replay(monitor, clock, "u", [(1000, f"a{i}") for i in range(8)])

        history = monitor.get_user_history("u")
        assert len(history) == 5
        assert history[0].action == "a3"

    @pytest.mark.asyncio
    async def test_cleanup_expired_forgets_idle_users(self, monitor, clock):
        """Test maintenance drops stale patterns and users who went idle."""
        await replay(monitor, clock, "idle", [(0, "a"), (1000, "b")])
        clock.advance(3601)
        await replay(monitor, clock, "active", [(0, "c")])

        assert monitor.cleanup_expired() == 2
        assert monitor.get_user_history("idle") == []
        assert monitor.get_user_metrics("idle") is None
        assert [p.action for p in monitor.get_user_history("active")] == ["c"]
        assert monitor.get_statistics()["tracked_users"] == 1

    @pytest.mark.asyncio
    async def test_metrics_and_flagged_users(self, monitor, clock):
        """Test per-user metrics feed the flagged user listing."""
        await replay(monitor, clock, "bot", [(0, "trigger_job")] + [(100, "trigger_job")] * 19)
        await replay(monitor, clock, "human", [(0, "list_jobs"), (20000, "view_logs")])

        metrics = monitor.get_user_metrics("bot")
        assert metrics.total_requests == 20
        assert metrics.unique_actions == 1
        assert metrics.flag_count > 0
        assert len(metrics.recent_flags) <= 10

        flagged = monitor.get_flagged_users(limit=5)
        assert [m.user_id for m in flagged] == ["bot"]
        assert monitor.get_statistics()["suspicious_users"] == 1

    @pytest.mark.asyncio
    async def test_requests_counted_in_store(self, monitor, clock):
        """Test every request is mirrored to the counter store."""
        await replay(monitor, clock, "u", [(0, "a"), (1000, "b"), (1000, "c")])

        assert await monitor.get_recorded_request_count("u") == 3

    @pytest.mark.asyncio
    async def test_clear_cache(self, monitor, clock):
        """Test clearing one user leaves the others."""
        await replay(monitor, clock, "a", [(0, "x")])
        await replay(monitor, clock, "b", [(0, "x")])

        monitor.clear_cache("a")
        assert monitor.get_user_history("a") == []
        assert monitor.get_user_metrics("b") is not None

        monitor.clear_cache()
        assert monitor.get_statistics()["tracked_users"] == 0

    @pytest.mark.asyncio
    async def test_store_failure_still_analyses(self, failing_store, clock):
        """Test storage errors do not stop the analysis."""
        monitor = ActivityMonitor(failing_store, clock=clock)

        result = await replay(monitor, clock, "u", [(0, "a"), (1000, "b")])

        assert result.request_count == 2
        assert await monitor.get_recorded_request_count("u") == 0

    @pytest.mark.asyncio
    async def test_unknown_user_empty_result(self, monitor):
        """Test analysing a user with no history."""
        result = await monitor.analyze_activity("nobody")

        assert result.score == 0
        assert result.is_suspicious is False
        assert result.details is None

    def test_update_config(self, monitor):
        """Test threshold updates are validated."""
        assert monitor.update_config(rapid_request_threshold=20).rapid_request_threshold == 20

        with pytest.raises(ConfigurationError):
            monitor.update_config(rapid_request_threshold=0)
        with pytest.raises(ConfigurationError):
            monitor.update_config(bogus=True)
