"""Job trigger gate: per-user quota, per-type global quota and per-job cooldown."""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

import structlog

from ..exceptions import ConfigurationError, CounterStoreError
from ..storage.base import CounterStore
from .limiter import RateLimitConfig, RateLimitStatus, WindowedRateLimiter

logger = structlog.get_logger(__name__)

DEFAULT_JOB_TYPE = "default"


@dataclass
class JobTypeConfig:
    """Trigger policy for one job category."""

    job_type: str
    max_requests_per_user: int
    window_size_seconds: int
    cooldown_seconds: int
    global_max_requests: int | None = None
    global_window_seconds: int | None = None

    @property
    def has_global_limit(self) -> bool:
        return self.global_max_requests is not None and self.global_window_seconds is not None

    def validate(self) -> list[str]:
        """Validate the policy values.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        if not self.job_type:
            errors.append("job_type must not be empty")
        if self.max_requests_per_user <= 0:
            errors.append("max_requests_per_user must be positive")
        if self.window_size_seconds <= 0:
            errors.append("window_size_seconds must be positive")
        if self.cooldown_seconds < 0:
            errors.append("cooldown_seconds must be non-negative")
        if (self.global_max_requests is None) != (self.global_window_seconds is None):
            errors.append("global_max_requests and global_window_seconds must be set together")
        if self.global_max_requests is not None and self.global_max_requests <= 0:
            errors.append("global_max_requests must be positive")
        if self.global_window_seconds is not None and self.global_window_seconds <= 0:
            errors.append("global_window_seconds must be positive")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type,
            "max_requests_per_user": self.max_requests_per_user,
            "window_size_seconds": self.window_size_seconds,
            "cooldown_seconds": self.cooldown_seconds,
            "global_max_requests": self.global_max_requests,
            "global_window_seconds": self.global_window_seconds,
        }


DEFAULT_JOB_TYPE_CONFIGS: dict[str, JobTypeConfig] = {
    "build": JobTypeConfig(
        job_type="build",
        max_requests_per_user=5,
        window_size_seconds=300,
        cooldown_seconds=60,
        global_max_requests=20,
        global_window_seconds=300,
    ),
    "deploy": JobTypeConfig(
        job_type="deploy",
        max_requests_per_user=2,
        window_size_seconds=600,
        cooldown_seconds=300,
        global_max_requests=5,
        global_window_seconds=600,
    ),
    "test": JobTypeConfig(
        job_type="test",
        max_requests_per_user=10,
        window_size_seconds=300,
        cooldown_seconds=30,
        global_max_requests=50,
        global_window_seconds=300,
    ),
    DEFAULT_JOB_TYPE: JobTypeConfig(
        job_type=DEFAULT_JOB_TYPE,
        max_requests_per_user=3,
        window_size_seconds=300,
        cooldown_seconds=120,
    ),
}


@dataclass
class CooldownStatus:
    """Cooldown state of one (user, job) pair."""

    in_cooldown: bool
    remaining_seconds: int
    cooldown_seconds: int
    last_trigger: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_cooldown": self.in_cooldown,
            "remaining_seconds": self.remaining_seconds,
            "cooldown_seconds": self.cooldown_seconds,
            "last_trigger": self.last_trigger.isoformat() if self.last_trigger else None,
        }


@dataclass
class JobTriggerStatus:
    """Combined decision for a job trigger."""

    can_proceed: bool
    job_type: str
    user_rate_limit: RateLimitStatus
    cooldown: CooldownStatus
    global_rate_limit: RateLimitStatus | None = None
    block_reason: str | None = None
    retry_after_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "can_proceed": self.can_proceed,
            "job_type": self.job_type,
            "user_rate_limit": self.user_rate_limit.to_dict(),
            "global_rate_limit": self.global_rate_limit.to_dict() if self.global_rate_limit else None,
            "cooldown": self.cooldown.to_dict(),
            "block_reason": self.block_reason,
            "retry_after_seconds": self.retry_after_seconds,
        }


class JobTriggerPolicy:
    """Decides whether a user may trigger a job right now.

    Checking never consumes quota; ``record_job_trigger`` must be called once
    the job has actually been started. Callers may abort between the two.
    """

    def __init__(
        self,
        store: CounterStore,
        limiter: WindowedRateLimiter | None = None,
        job_configs: dict[str, JobTypeConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the policy.

        Args:
            store: Counter store for cooldown timestamps
            limiter: Rate limiter over the same store
            job_configs: Policy table; defaults to ``DEFAULT_JOB_TYPE_CONFIGS``
            clock: Source of epoch seconds
        """
        self.store = store
        self._clock = clock
        self.limiter = limiter or WindowedRateLimiter(store, clock=clock)
        source = job_configs if job_configs is not None else DEFAULT_JOB_TYPE_CONFIGS
        self._job_configs = {name: replace(cfg) for name, cfg in source.items()}
        if DEFAULT_JOB_TYPE not in self._job_configs:
            self._job_configs[DEFAULT_JOB_TYPE] = replace(DEFAULT_JOB_TYPE_CONFIGS[DEFAULT_JOB_TYPE])

    def get_job_config(self, job_type: str | None = None) -> JobTypeConfig:
        """Return the policy for a job type, falling back to ``default``."""
        return self._job_configs.get(job_type or DEFAULT_JOB_TYPE, self._job_configs[DEFAULT_JOB_TYPE])

    def get_job_configs(self) -> dict[str, JobTypeConfig]:
        return dict(self._job_configs)

    def set_job_config(self, config: JobTypeConfig) -> None:
        """Add or replace the policy for a job type.

        Raises:
            ConfigurationError: If the policy values are invalid
        """
        if errors := config.validate():
            raise ConfigurationError(f"Invalid job type config: {'; '.join(errors)}", "job_type", config.job_type)
        self._job_configs[config.job_type] = replace(config)
        logger.info("Job type config updated", **config.to_dict())

    @staticmethod
    def _user_limit(user_id: str, config: JobTypeConfig) -> RateLimitConfig:
        return RateLimitConfig(
            max_requests=config.max_requests_per_user,
            window_size_seconds=config.window_size_seconds,
            identifier=f"user:{user_id}:{config.job_type}",
            key_prefix="user_rate_limit",
        )

    @staticmethod
    def _global_limit(config: JobTypeConfig) -> RateLimitConfig | None:
        if not config.has_global_limit:
            return None
        return RateLimitConfig(
            max_requests=config.global_max_requests,  # type: ignore[arg-type]
            window_size_seconds=config.global_window_seconds,  # type: ignore[arg-type]
            identifier=f"job:{config.job_type}",
            key_prefix="job_rate_limit",
        )

    @staticmethod
    def _cooldown_key(user_id: str, job_name: str) -> str:
        return f"cooldown:{user_id}:{job_name}"

    async def check_cooldown(self, user_id: str, job_name: str, cooldown_seconds: int) -> CooldownStatus:
        """Check the cooldown for a (user, job) pair.

        Args:
            user_id: User identifier
            job_name: Job identifier
            cooldown_seconds: Required gap between triggers

        Returns:
            Cooldown status; storage errors read as no cooldown
        """
        now = self._clock()
        try:
            last = await self.store.get_window_start(self._cooldown_key(user_id, job_name))
        except CounterStoreError as e:
            logger.error("Cooldown read failed, treating as clear", user_id=user_id, job=job_name, error=e.message)
            return CooldownStatus(in_cooldown=False, remaining_seconds=0, cooldown_seconds=cooldown_seconds)

        if last is None:
            return CooldownStatus(in_cooldown=False, remaining_seconds=0, cooldown_seconds=cooldown_seconds)

        elapsed = now - last
        last_trigger = datetime.fromtimestamp(last, UTC)
        if elapsed >= cooldown_seconds:
            return CooldownStatus(
                in_cooldown=False, remaining_seconds=0, cooldown_seconds=cooldown_seconds, last_trigger=last_trigger
            )
        return CooldownStatus(
            in_cooldown=True,
            remaining_seconds=math.ceil(cooldown_seconds - elapsed),
            cooldown_seconds=cooldown_seconds,
            last_trigger=last_trigger,
        )

    async def set_cooldown(self, user_id: str, job_name: str, cooldown_seconds: int) -> None:
        """Start the cooldown for a (user, job) pair now."""
        if cooldown_seconds <= 0:
            return
        try:
            await self.store.set_window_start(self._cooldown_key(user_id, job_name), self._clock(), cooldown_seconds)
        except CounterStoreError as e:
            logger.error("Cooldown write failed", user_id=user_id, job=job_name, error=e.message)

    async def reset_cooldown(self, user_id: str, job_name: str) -> None:
        """Clear the cooldown for a (user, job) pair."""
        try:
            await self.store.reset(self._cooldown_key(user_id, job_name))
            logger.info("Cooldown reset", user_id=user_id, job=job_name)
        except CounterStoreError as e:
            logger.error("Cooldown reset failed", user_id=user_id, job=job_name, error=e.message)

    async def check_job_trigger(self, user_id: str, job_name: str, job_type: str | None = None) -> JobTriggerStatus:
        """Decide whether a user may trigger a job now, without consuming quota.

        The per-user quota, the global quota and the cooldown are all
        evaluated; the first failing one supplies the block reason.

        Args:
            user_id: User identifier
            job_name: Job identifier, used for the cooldown
            job_type: Job category; unknown or missing types use ``default``

        Returns:
            Combined trigger status
        """
        config = self.get_job_config(job_type)

        user_status = await self.limiter.check_limit_only(self._user_limit(user_id, config))
        global_config = self._global_limit(config)
        global_status = await self.limiter.check_limit_only(global_config) if global_config else None
        cooldown = await self.check_cooldown(user_id, job_name, config.cooldown_seconds)

        block_reason = None
        retry_after = None
        if user_status.is_limited:
            block_reason = (
                f"User rate limit exceeded for {config.job_type} jobs "
                f"({user_status.current_requests}/{user_status.max_requests})"
            )
            retry_after = user_status.reset_time_seconds
        elif global_status is not None and global_status.is_limited:
            block_reason = (
                f"Global rate limit exceeded for {config.job_type} jobs "
                f"({global_status.current_requests}/{global_status.max_requests})"
            )
            retry_after = global_status.reset_time_seconds
        elif cooldown.in_cooldown:
            block_reason = f'Cooldown period active for job "{job_name}" ({cooldown.remaining_seconds}s remaining)'
            retry_after = cooldown.remaining_seconds

        if block_reason:
            logger.info(
                "Job trigger blocked", user_id=user_id, job=job_name, job_type=config.job_type, reason=block_reason
            )

        return JobTriggerStatus(
            can_proceed=block_reason is None,
            job_type=config.job_type,
            user_rate_limit=user_status,
            global_rate_limit=global_status,
            cooldown=cooldown,
            block_reason=block_reason,
            retry_after_seconds=retry_after,
        )

    async def record_job_trigger(self, user_id: str, job_name: str, job_type: str | None = None) -> None:
        """Charge a started job against both quotas and start its cooldown.

        Args:
            user_id: User identifier
            job_name: Job identifier
            job_type: Job category; unknown or missing types use ``default``
        """
        config = self.get_job_config(job_type)

        await self.limiter.check_limit(self._user_limit(user_id, config))
        if global_config := self._global_limit(config):
            await self.limiter.check_limit(global_config)
        await self.set_cooldown(user_id, job_name, config.cooldown_seconds)

        logger.debug("Job trigger recorded", user_id=user_id, job=job_name, job_type=config.job_type)

    async def reset_user_limits(self, user_id: str, job_type: str | None = None) -> None:
        """Clear a user's per-type quota counters.

        Args:
            user_id: User identifier
            job_type: Single type to reset; all configured types when omitted
        """
        configs = [self.get_job_config(job_type)] if job_type else list(self._job_configs.values())
        for config in configs:
            await self.limiter.reset_limit(self._user_limit(user_id, config))

    async def get_user_status(self, user_id: str) -> dict[str, dict[str, Any]]:
        """Quota status for every configured job type except ``default``."""
        status: dict[str, dict[str, Any]] = {}
        for job_type, config in self._job_configs.items():
            if job_type == DEFAULT_JOB_TYPE:
                continue
            user_status = await self.limiter.check_limit_only(self._user_limit(user_id, config))
            global_config = self._global_limit(config)
            global_status = await self.limiter.check_limit_only(global_config) if global_config else None
            status[job_type] = {
                "config": config.to_dict(),
                "user_rate_limit": user_status.to_dict(),
                "global_rate_limit": global_status.to_dict() if global_status else None,
            }
        return status

    def get_storage_status(self) -> dict[str, Any]:
        """Report which counter store backend is serving calls."""
        status = getattr(self.store, "status", None)
        if callable(status):
            return status()
        return {"active_backend": self.store.name, "available": self.store.is_available()}
