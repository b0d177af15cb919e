"""Orchestrates the penalty, job trigger and activity gates for one request."""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from .config import GateConfig
from .exceptions import WhitelistedUserError
from .penalties.manager import PenaltyManager
from .penalties.models import PenaltyRecord, PenaltySeverity, PenaltyType, UserAccessDecision, UserStatus
from .rate_limiting.job_policy import JobTriggerPolicy, JobTriggerStatus
from .security.activity_monitor import ActivityMonitor
from .security.models import RequestPattern, SuspiciousActivityResult
from .storage.base import CounterStore

logger = structlog.get_logger(__name__)


@dataclass
class GateDecision:
    """Outcome of evaluating one request."""

    allowed: bool
    reason: str | None = None
    retry_after_seconds: int | None = None
    user_status: UserAccessDecision | None = None
    job_status: JobTriggerStatus | None = None
    activity: SuspiciousActivityResult | None = None
    penalty_applied: PenaltyRecord | None = None
    fail_open: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "retry_after_seconds": self.retry_after_seconds,
            "user_status": self.user_status.to_dict() if self.user_status else None,
            "job_status": self.job_status.to_dict() if self.job_status else None,
            "activity": self.activity.to_dict() if self.activity else None,
            "penalty_applied": self.penalty_applied.to_dict() if self.penalty_applied else None,
            "fail_open": self.fail_open,
        }


@dataclass
class GateEvent:
    """Entry in the recent decision history."""

    timestamp: datetime
    user_id: str
    action: str
    allowed: bool
    reason: str | None = None
    job_name: str | None = None
    job_type: str | None = None
    score: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "action": self.action,
            "allowed": self.allowed,
            "reason": self.reason,
            "job_name": self.job_name,
            "job_type": self.job_type,
            "score": self.score,
            **self.extra,
        }


def _severity_for_score(score: int) -> PenaltySeverity:
    if score >= 95:
        return PenaltySeverity.CRITICAL
    if score >= 85:
        return PenaltySeverity.HIGH
    return PenaltySeverity.MEDIUM


class AbuseGatekeeper:
    """Runs a request through every gate and keeps decision metrics.

    The gates stay usable on their own; this class only sequences them:
    penalty check, then the job trigger check (charged as soon as it
    passes), then activity recording with optional automatic penalties.
    """

    def __init__(
        self,
        store: CounterStore,
        job_policy: JobTriggerPolicy,
        penalties: PenaltyManager,
        activity: ActivityMonitor,
        config: GateConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the gatekeeper.

        Args:
            store: Counter store shared by the components
            job_policy: Job trigger gate
            penalties: Penalty gate
            activity: Activity monitor
            config: Gate settings
            clock: Source of epoch seconds
        """
        self.store = store
        self.job_policy = job_policy
        self.penalties = penalties
        self.activity = activity
        self.config = config or GateConfig()
        self._clock = clock

        self._events: deque[GateEvent] = deque(maxlen=self.config.max_event_history)
        self._metrics = self._empty_metrics()

    @staticmethod
    def _empty_metrics() -> dict[str, Any]:
        return {
            "total_requests": 0,
            "allowed_requests": 0,
            "blocked_requests": 0,
            "errors": 0,
            "penalties_applied": 0,
            "suspicious_activity_detected": 0,
            "whitelisted_requests": 0,
            "blacklisted_requests": 0,
            "average_response_time_ms": 0.0,
        }

    async def evaluate(
        self,
        user_id: str,
        action: str,
        job_name: str | None = None,
        job_type: str | None = None,
        channel: str | None = None,
    ) -> GateDecision:
        """Decide whether a request may proceed, recording it as a side effect.

        Args:
            user_id: User making the request
            action: Action being performed
            job_name: Job to trigger, if any
            job_type: Job category; the configured default when omitted
            channel: Originating channel

        Returns:
            Gate decision; unexpected errors yield an allowed, fail-open decision
        """
        started = time.perf_counter()
        self._metrics["total_requests"] += 1

        if not self.config.enabled:
            disabled = GateDecision(allowed=True, reason="Abuse protection disabled")
            return self._finish(disabled, user_id, action, started)

        job_type = job_type or self.config.default_job_type
        try:
            # 1. Penalty gate
            user_status = None
            if self.config.enable_penalty_management:
                user_status = await self.penalties.is_user_allowed(user_id)
                if user_status.status == UserStatus.WHITELISTED:
                    self._metrics["whitelisted_requests"] += 1
                if not user_status.allowed:
                    if self.penalties.is_blacklisted(user_id):
                        self._metrics["blacklisted_requests"] += 1
                    decision = GateDecision(
                        allowed=False,
                        reason=user_status.reason,
                        retry_after_seconds=self._seconds_until(user_status.blocked_until),
                        user_status=user_status,
                    )
                    return self._finish(decision, user_id, action, started, job_name, job_type)

            # 2. Job trigger gate
            job_status = None
            if job_name:
                job_status = await self.job_policy.check_job_trigger(user_id, job_name, job_type)
                # Charged before activity recording; later refusals keep the charge
                if job_status.can_proceed:
                    await self.job_policy.record_job_trigger(user_id, job_name, job_type)

            # 3. Activity monitoring
            activity = None
            penalty = None
            if self.config.enable_activity_monitoring:
                activity = await self.activity.record_request(
                    RequestPattern(
                        user_id=user_id,
                        timestamp=datetime.fromtimestamp(self._clock(), UTC),
                        action=action,
                        channel=channel,
                        job_type=job_type if job_name else None,
                        job_name=job_name,
                    )
                )
                if activity.is_suspicious:
                    self._metrics["suspicious_activity_detected"] += 1
                penalty = await self._maybe_apply_penalty(user_id, activity, user_status)

            decision = GateDecision(
                allowed=True, user_status=user_status, job_status=job_status, activity=activity, penalty_applied=penalty
            )
            if job_status is not None and not job_status.can_proceed:
                decision.allowed = False
                decision.reason = job_status.block_reason
                decision.retry_after_seconds = job_status.retry_after_seconds
            elif penalty is not None and penalty.type != PenaltyType.WARNING:
                decision.allowed = False
                decision.reason = f"Automatic {penalty.type.value.replace('_', ' ')}: {penalty.reason}"
                decision.retry_after_seconds = self._seconds_until(penalty.expires_at)

            return self._finish(decision, user_id, action, started, job_name, job_type)

        except Exception as e:
            self._metrics["errors"] += 1
            logger.error("Abuse gate evaluation failed, allowing request", user_id=user_id, action=action, error=str(e))
            decision = GateDecision(
                allowed=True, reason="Evaluation failed; allowed by fail-open policy", fail_open=True
            )
            return self._finish(decision, user_id, action, started, job_name, job_type)

    async def _maybe_apply_penalty(
        self, user_id: str, activity: SuspiciousActivityResult, user_status: UserAccessDecision | None
    ) -> PenaltyRecord | None:
        if not (self.config.auto_apply_penalties and self.config.enable_penalty_management):
            return None
        if activity.score < self.config.auto_apply_threshold:
            return None
        if user_status is not None and user_status.status == UserStatus.WHITELISTED:
            return None

        try:
            penalty = await self.penalties.apply_penalty(
                user_id,
                f"Automated detection: {', '.join(activity.flags)}",
                _severity_for_score(activity.score),
                metadata={"score": activity.score, "flags": list(activity.flags), "automatic": True},
            )
        except WhitelistedUserError:
            return None

        self._metrics["penalties_applied"] += 1
        return penalty

    def _seconds_until(self, moment: datetime | None) -> int | None:
        if moment is None:
            return None
        return max(0, int(moment.timestamp() - self._clock()))

    def _finish(
        self,
        decision: GateDecision,
        user_id: str,
        action: str,
        started: float,
        job_name: str | None = None,
        job_type: str | None = None,
    ) -> GateDecision:
        if decision.allowed:
            self._metrics["allowed_requests"] += 1
        else:
            self._metrics["blocked_requests"] += 1
            logger.info("Request blocked", user_id=user_id, action=action, reason=decision.reason)

        elapsed_ms = (time.perf_counter() - started) * 1000
        total = self._metrics["total_requests"]
        average = self._metrics["average_response_time_ms"]
        self._metrics["average_response_time_ms"] = average + (elapsed_ms - average) / total

        self._events.append(
            GateEvent(
                timestamp=datetime.fromtimestamp(self._clock(), UTC),
                user_id=user_id,
                action=action,
                allowed=decision.allowed,
                reason=decision.reason,
                job_name=job_name,
                job_type=job_type,
                score=decision.activity.score if decision.activity else None,
                extra={"penalty_id": decision.penalty_applied.id} if decision.penalty_applied else {},
            )
        )
        return decision

    def _system_health(self) -> str:
        total = self._metrics["total_requests"]
        if not total:
            return "healthy"
        error_rate = self._metrics["errors"] / total
        block_rate = self._metrics["blocked_requests"] / total
        if error_rate > 0.1 or block_rate > 0.5:
            return "critical"
        if error_rate > 0.05 or block_rate > 0.2:
            return "degraded"
        return "healthy"

    def get_metrics(self) -> dict[str, Any]:
        return {**self._metrics, "system_health": self._system_health()}

    def reset_metrics(self) -> None:
        self._metrics = self._empty_metrics()
        logger.info("Abuse gate metrics reset")

    def get_recent_events(self, limit: int = 100, user_id: str | None = None) -> list[GateEvent]:
        """Most recent decisions, newest last."""
        events = [e for e in self._events if user_id is None or e.user_id == user_id]
        return events[-limit:] if limit > 0 else []

    async def get_user_overview(self, user_id: str) -> dict[str, Any]:
        """Everything the gates know about a user."""
        metrics = self.activity.get_user_metrics(user_id)
        return {
            "user_id": user_id,
            "penalties": self.penalties.get_user_penalty_status(user_id).to_dict(),
            "job_limits": await self.job_policy.get_user_status(user_id),
            "activity": metrics.to_dict() if metrics else None,
        }

    async def health_check(self) -> dict[str, Any]:
        """Overall health from decision rates, plus storage status."""
        storage = await self.store.health_check()
        return {
            "status": self._system_health(),
            "enabled": self.config.enabled,
            "storage": storage,
            "penalties": await self.penalties.health_check(),
            "metrics": self.get_metrics(),
            "timestamp": datetime.fromtimestamp(self._clock(), UTC).isoformat(),
        }
