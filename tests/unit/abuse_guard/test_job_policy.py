"""Unit tests for the job trigger policy."""

import pytest

from services.abuse_guard.src.exceptions import ConfigurationError
from services.abuse_guard.src.rate_limiting.job_policy import (
    DEFAULT_JOB_TYPE,
    DEFAULT_JOB_TYPE_CONFIGS,
    JobTriggerPolicy,
    JobTypeConfig,
)


@pytest.fixture
def policy(memory_store, clock):
    """Create job trigger policy with the default table."""
    return JobTriggerPolicy(memory_store, clock=clock)


class TestJobTypeConfig:
    """Test JobTypeConfig validation."""

    def test_default_table_is_valid(self):
        """Test every shipped policy validates."""
        for config in DEFAULT_JOB_TYPE_CONFIGS.values():
            assert config.validate() == []

    def test_global_limit_requires_both_fields(self):
        """Test a half-configured global quota is rejected."""
        config = JobTypeConfig("x", 1, 60, 0, global_max_requests=5)
        assert "global_max_requests and global_window_seconds must be set together" in config.validate()

    def test_negative_cooldown_rejected(self):
        """Test cooldowns cannot be negative."""
        config = JobTypeConfig("x", 1, 60, -1)
        assert config.validate() == ["cooldown_seconds must be non-negative"]


class TestJobTriggerPolicy:
    """Test JobTriggerPolicy decisions."""

    @pytest.mark.asyncio
    async def test_deploy_cooldown_cycle(self, policy, clock):
        """Test the deploy policy: allowed, then cooldown, then allowed with one quota left."""
        first = await policy.check_job_trigger("U1", "deploy", "deploy")
        assert first.can_proceed is True

        await policy.record_job_trigger("U1", "deploy", "deploy")
        second = await policy.check_job_trigger("U1", "deploy", "deploy")
        assert second.can_proceed is False
        assert "Cooldown" in second.block_reason
        assert second.retry_after_seconds == 300

        clock.advance(301)
        third = await policy.check_job_trigger("U1", "deploy", "deploy")
        assert third.can_proceed is True
        assert third.cooldown.in_cooldown is False
        assert third.user_rate_limit.remaining == 1

    @pytest.mark.asyncio
    async def test_check_does_not_consume_quota(self, policy):
        """Test repeated checks never use up the quota."""
        for _ in range(10):
            status = await policy.check_job_trigger("U1", "deploy", "deploy")

        assert status.can_proceed is True
        assert status.user_rate_limit.current_requests == 0

    @pytest.mark.asyncio
    async def test_user_quota_exhausted(self, policy, clock):
        """Test the per-user quota blocks once used up."""
        await policy.record_job_trigger("U1", "deploy-a", "deploy")
        await policy.record_job_trigger("U1", "deploy-b", "deploy")

        status = await policy.check_job_trigger("U1", "deploy-c", "deploy")

        assert status.can_proceed is False
        assert status.block_reason == "User rate limit exceeded for deploy jobs (2/2)"
        assert status.retry_after_seconds == 600

    @pytest.mark.asyncio
    async def test_global_quota_shared_across_users(self, policy):
        """Test the global quota counts every user's triggers."""
        for i in range(5):
            await policy.record_job_trigger(f"user{i}", "deploy", "deploy")

        status = await policy.check_job_trigger("newcomer", "deploy", "deploy")

        assert status.can_proceed is False
        assert status.block_reason == "Global rate limit exceeded for deploy jobs (5/5)"

    @pytest.mark.asyncio
    async def test_quota_is_per_job_type(self, policy):
        """Test one type's quota does not block another type."""
        await policy.record_job_trigger("U1", "deploy-a", "deploy")
        await policy.record_job_trigger("U1", "deploy-b", "deploy")

        status = await policy.check_job_trigger("U1", "build-a", "build")

        assert status.can_proceed is True

    @pytest.mark.asyncio
    async def test_unknown_type_uses_default(self, policy):
        """Test unknown job types fall back to the default policy."""
        status = await policy.check_job_trigger("U1", "mystery", "no-such-type")

        assert status.job_type == DEFAULT_JOB_TYPE
        assert status.user_rate_limit.max_requests == 3
        assert status.global_rate_limit is None

    @pytest.mark.asyncio
    async def test_reset_cooldown(self, policy):
        """Test an administrator can clear a cooldown."""
        await policy.record_job_trigger("U1", "deploy", "deploy")

        await policy.reset_cooldown("U1", "deploy")
        status = await policy.check_job_trigger("U1", "deploy", "deploy")

        assert status.can_proceed is True

    @pytest.mark.asyncio
    async def test_reset_user_limits(self, policy):
        """Test clearing a user's quota counters."""
        await policy.record_job_trigger("U1", "a", "deploy")
        await policy.record_job_trigger("U1", "b", "deploy")

        await policy.reset_user_limits("U1")
        status = await policy.check_job_trigger("U1", "c", "deploy")

        assert status.user_rate_limit.current_requests == 0
        assert status.can_proceed is True

    @pytest.mark.asyncio
    async def test_zero_cooldown_never_blocks(self, memory_store, clock):
        """Test a policy without cooldown skips the cooldown gate."""
        policy = JobTriggerPolicy(
            memory_store,
            job_configs={"lint": JobTypeConfig("lint", 10, 60, 0)},
            clock=clock,
        )

        await policy.record_job_trigger("U1", "lint", "lint")
        status = await policy.check_job_trigger("U1", "lint", "lint")

        assert status.can_proceed is True
        assert policy.get_job_config(None).job_type == DEFAULT_JOB_TYPE

    def test_set_job_config_validates(self, policy):
        """Test invalid policies are refused."""
        with pytest.raises(ConfigurationError):
            policy.set_job_config(JobTypeConfig("bad", 0, 60, 10))

        policy.set_job_config(JobTypeConfig("release", 1, 3600, 600))
        assert policy.get_job_config("release").max_requests_per_user == 1

    def test_policy_table_is_copied(self, policy):
        """Test mutating the policy never leaks into the shared defaults."""
        policy.set_job_config(JobTypeConfig("deploy", 9, 60, 0))
        assert DEFAULT_JOB_TYPE_CONFIGS["deploy"].max_requests_per_user == 2

    @pytest.mark.asyncio
    async def test_get_user_status_excludes_default(self, policy):
        """Test the per-type status report skips the fallback policy."""
        await policy.record_job_trigger("U1", "build", "build")

        status = await policy.get_user_status("U1")

        assert set(status) == {"build", "deploy", "test"}
        assert status["build"]["user_rate_limit"]["current_requests"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_allows_trigger(self, failing_store, clock):
        """Test an unreachable store never blocks triggers."""
        policy = JobTriggerPolicy(failing_store, clock=clock)

        await policy.record_job_trigger("U1", "deploy", "deploy")
        status = await policy.check_job_trigger("U1", "deploy", "deploy")

        assert status.can_proceed is True

    def test_storage_status(self, policy):
        """Test storage status for a plain store."""
        assert policy.get_storage_status() == {"active_backend": "memory", "available": True}
