"""Behavioural analysis of per-user request history."""

import statistics
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from ..exceptions import ConfigurationError, CounterStoreError
from ..storage.base import CounterStore
from .models import (
    ActivityAnalysisConfig,
    ActivityDetails,
    BotBehaviorDetails,
    PatternDetails,
    RapidRequestDetails,
    RequestPattern,
    SuspiciousActivityResult,
    UserActivityMetrics,
    VolumeDetails,
)

logger = structlog.get_logger(__name__)

RECENT_FLAGS_LIMIT = 10


class ActivityMonitor:
    """Scores request patterns for bot-like or abusive behaviour.

    The score is an additive heuristic capped at ``weights.max_score``, not a
    probability. It is independent of the hard rate limits.
    """

    def __init__(
        self,
        store: CounterStore,
        config: ActivityAnalysisConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize activity monitor.

        Args:
            store: Counter store that receives a durable count of each request
            config: Detector thresholds and score weights
            clock: Source of epoch seconds
        """
        self.store = store
        self.config = config or ActivityAnalysisConfig()
        self._clock = clock

        self._patterns: dict[str, list[RequestPattern]] = {}
        self._metrics: dict[str, UserActivityMetrics] = {}

        self.activity_key = "activity"
        self.last_seen_key = "activity:last"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    async def record_request(self, pattern: RequestPattern) -> SuspiciousActivityResult:
        """Append a request to the user's history and re-analyse them.

        Args:
            pattern: The request to record

        Returns:
            Fresh analysis; a zero score if anything goes wrong
        """
        try:
            await self._store_pattern(pattern)
            self._update_history(pattern)
            result = await self.analyze_activity(pattern.user_id)
            self._update_metrics(pattern, result)
            return result
        except Exception as e:
            logger.error("Error recording request pattern", user_id=pattern.user_id, error=str(e))
            return self._empty_result(pattern.user_id)

    async def analyze_activity(self, user_id: str) -> SuspiciousActivityResult:
        """Run every detector over the user's current history.

        Args:
            user_id: User to analyse

        Returns:
            Combined flags and score; a zero score on error
        """
        try:
            now = self._now()
            patterns = sorted(self._patterns.get(user_id, []), key=lambda p: p.timestamp)
            if not patterns:
                return self._empty_result(user_id)

            flags: list[str] = []

            # 1. Rapid requests
            rapid = self._detect_rapid_requests(patterns, now)
            if rapid.detected:
                flags.append(f"Rapid requests: {rapid.count} in {rapid.window_seconds}s")

            # 2. Unusual volume
            volume = self._detect_unusual_volume(patterns, now)
            if volume.detected:
                flags.append(f"High volume: {volume.count} requests in {volume.window_seconds}s")

            # 3. Bot-like behaviour
            intervals = self._intervals_ms(patterns)
            bot = self._detect_bot_behavior(patterns, intervals)
            if bot.timing_detected:
                flags.append(f"Bot-like timing: {round(bot.average_interval_ms or 0)}ms average interval")
            if bot.identical_detected:
                flags.append(f"Identical requests: {bot.identical_run} consecutive")

            # 4. Variety and timing consistency
            variety = self._analyze_pattern_variety(patterns, intervals)
            if variety.low_variety:
                flags.append(f"Low variety: {variety.unique_actions} unique actions in {variety.sample_size} requests")
            if variety.consistent_timing:
                flags.append(f"Highly consistent timing: CV={variety.coefficient_of_variation:.3f}")

            details = ActivityDetails(rapid_requests=rapid, volume=volume, bot_behavior=bot, patterns=variety)
            score = self._calculate_score(details)

            return SuspiciousActivityResult(
                user_id=user_id,
                is_suspicious=score >= self.config.suspicious_score_threshold,
                score=score,
                flags=flags,
                analyzed_at=now,
                request_count=len(patterns),
                details=details,
            )

        except Exception as e:
            logger.error("Error analyzing user activity", user_id=user_id, error=str(e))
            return self._empty_result(user_id)

    def _detect_rapid_requests(self, patterns: list[RequestPattern], now: datetime) -> RapidRequestDetails:
        window = self.config.rapid_request_window_seconds
        cutoff = now - timedelta(seconds=window)
        count = sum(1 for p in patterns if p.timestamp >= cutoff)
        return RapidRequestDetails(
            detected=count >= self.config.rapid_request_threshold, count=count, window_seconds=window
        )

    def _detect_unusual_volume(self, patterns: list[RequestPattern], now: datetime) -> VolumeDetails:
        window = self.config.volume_analysis_window_seconds
        cutoff = now - timedelta(seconds=window)
        count = sum(1 for p in patterns if p.timestamp >= cutoff)
        return VolumeDetails(detected=count >= self.config.volume_threshold, count=count, window_seconds=window)

    @staticmethod
    def _intervals_ms(patterns: list[RequestPattern]) -> list[float]:
        return [
            (current.timestamp - previous.timestamp).total_seconds() * 1000
            for previous, current in zip(patterns, patterns[1:], strict=False)
        ]

    def _detect_bot_behavior(self, patterns: list[RequestPattern], intervals: list[float]) -> BotBehaviorDetails:
        if not intervals:
            return BotBehaviorDetails(detected=False, average_interval_ms=None, identical_run=len(patterns))

        average = statistics.fmean(intervals)
        timing_detected = average < self.config.min_human_interval_ms

        # Longest run of consecutive requests with the same signature
        longest = current = 1
        for previous, pattern in zip(patterns, patterns[1:], strict=False):
            current = current + 1 if pattern.signature() == previous.signature() else 1
            longest = max(longest, current)
        identical_detected = longest >= self.config.max_identical_requests

        return BotBehaviorDetails(
            detected=timing_detected or identical_detected,
            average_interval_ms=average,
            identical_run=longest,
            timing_detected=timing_detected,
            identical_detected=identical_detected,
        )

    def _analyze_pattern_variety(self, patterns: list[RequestPattern], intervals: list[float]) -> PatternDetails:
        unique_actions = len({p.action for p in patterns})
        low_variety = (
            len(patterns) >= self.config.low_variety_min_samples
            and unique_actions <= self.config.low_variety_max_unique_actions
        )

        cv = None
        consistent_timing = False
        if len(intervals) >= 2:
            mean = statistics.fmean(intervals)
            # Identical timestamps give a zero mean; treat that as perfectly regular.
            cv = statistics.pstdev(intervals) / mean if mean > 0 else 0.0
            consistent_timing = (
                cv < self.config.timing_consistency_cv_threshold
                and len(intervals) >= self.config.timing_consistency_min_intervals
            )

        return PatternDetails(
            unique_actions=unique_actions,
            sample_size=len(patterns),
            coefficient_of_variation=cv,
            low_variety=low_variety,
            consistent_timing=consistent_timing,
        )

    def _calculate_score(self, details: ActivityDetails) -> int:
        weights = self.config.weights
        score = 0.0

        if details.rapid_requests.detected:
            ratio = details.rapid_requests.count / self.config.rapid_request_threshold
            score += min(weights.rapid_requests_max, ratio * weights.rapid_requests_scale)

        if details.volume.detected:
            ratio = details.volume.count / self.config.volume_threshold
            score += min(weights.volume_max, ratio * weights.volume_scale)

        bot = details.bot_behavior
        if bot.detected:
            score += weights.bot_like_timing
            if bot.average_interval_ms is not None and bot.average_interval_ms < weights.extreme_timing_interval_ms:
                score += weights.extreme_timing_bonus

        if details.patterns.low_variety:
            score += weights.low_variety
        if details.patterns.consistent_timing:
            score += weights.consistent_timing

        return min(weights.max_score, round(score))

    def _empty_result(self, user_id: str) -> SuspiciousActivityResult:
        return SuspiciousActivityResult(
            user_id=user_id, is_suspicious=False, score=0, flags=[], analyzed_at=self._now()
        )

    async def _store_pattern(self, pattern: RequestPattern) -> None:
        """Mirror the request to the counter store; failures are logged only."""
        ttl = self.config.pattern_history_window_seconds
        try:
            await self.store.increment_count(f"{self.activity_key}:{pattern.user_id}", ttl)
            await self.store.set_window_start(
                f"{self.last_seen_key}:{pattern.user_id}", pattern.timestamp.timestamp(), ttl
            )
        except CounterStoreError as e:
            logger.warning("Error storing activity pattern", user_id=pattern.user_id, error=e.message)

    def _update_history(self, pattern: RequestPattern) -> None:
        cutoff = self._now() - timedelta(seconds=self.config.pattern_history_window_seconds)
        history = [p for p in self._patterns.get(pattern.user_id, []) if p.timestamp >= cutoff]
        history.append(pattern)
        # Keep only the most recent patterns
        if len(history) > self.config.max_patterns_per_user:
            history = history[-self.config.max_patterns_per_user :]
        self._patterns[pattern.user_id] = history

    def _update_metrics(self, pattern: RequestPattern, result: SuspiciousActivityResult) -> None:
        metrics = self._metrics.setdefault(pattern.user_id, UserActivityMetrics(user_id=pattern.user_id))
        metrics.total_requests += 1
        if metrics.first_activity is None or pattern.timestamp < metrics.first_activity:
            metrics.first_activity = pattern.timestamp
        if metrics.last_activity is None or pattern.timestamp > metrics.last_activity:
            metrics.last_activity = pattern.timestamp
        metrics.suspicion_score = result.score
        metrics.last_analysis = result.analyzed_at
        if result.details:
            metrics.unique_actions = result.details.patterns.unique_actions
            metrics.average_interval_ms = result.details.bot_behavior.average_interval_ms

        if result.flags:
            metrics.flag_count += 1
            metrics.recent_flags = (metrics.recent_flags + result.flags)[-RECENT_FLAGS_LIMIT:]

        if result.is_suspicious:
            logger.warning(
                "Suspicious activity detected",
                user_id=pattern.user_id,
                score=result.score,
                flags=result.flags,
            )

    def get_user_metrics(self, user_id: str) -> UserActivityMetrics | None:
        return self._metrics.get(user_id)

    def get_user_history(self, user_id: str) -> list[RequestPattern]:
        return list(self._patterns.get(user_id, []))

    async def get_recorded_request_count(self, user_id: str) -> int:
        """Requests recorded in the counter store within the history window."""
        try:
            return await self.store.get_count(f"{self.activity_key}:{user_id}")
        except CounterStoreError as e:
            logger.warning("Error reading activity count", user_id=user_id, error=e.message)
            return 0

    def get_flagged_users(self, limit: int | None = None) -> list[UserActivityMetrics]:
        """Users with any flags or a suspicious score, highest score first."""
        flagged = [
            m
            for m in self._metrics.values()
            if m.suspicion_score >= self.config.suspicious_score_threshold or m.flag_count > 0
        ]
        flagged.sort(key=lambda m: m.suspicion_score, reverse=True)
        return flagged[:limit] if limit is not None else flagged

    def get_config(self) -> ActivityAnalysisConfig:
        return replace(self.config, weights=replace(self.config.weights))

    def update_config(self, **changes: Any) -> ActivityAnalysisConfig:
        """Update detector thresholds.

        Raises:
            ConfigurationError: If a setting is unknown or the result is invalid
        """
        unknown = [name for name in changes if not hasattr(self.config, name)]
        if unknown:
            raise ConfigurationError(f"Unknown activity setting: {', '.join(unknown)}", unknown[0])

        candidate = replace(self.config, **changes)
        if errors := candidate.validate():
            raise ConfigurationError(f"Invalid activity config: {'; '.join(errors)}")

        self.config = candidate
        logger.info("Activity monitor configuration updated", settings=sorted(changes))
        return self.get_config()

    def clear_cache(self, user_id: str | None = None) -> None:
        """Forget recorded history and metrics for one user, or everyone."""
        if user_id is None:
            self._patterns.clear()
            self._metrics.clear()
        else:
            self._patterns.pop(user_id, None)
            self._metrics.pop(user_id, None)
        logger.info("Activity monitor cache cleared", user_id=user_id)

    def cleanup_expired(self) -> int:
        """Drop patterns older than the history window and forget idle users.

        Returns:
            Number of patterns removed
        """
        cutoff = self._now() - timedelta(seconds=self.config.pattern_history_window_seconds)
        removed = 0
        for user_id in list(self._patterns):
            history = self._patterns[user_id]
            kept = [p for p in history if p.timestamp >= cutoff]
            removed += len(history) - len(kept)
            if kept:
                self._patterns[user_id] = kept
            else:
                del self._patterns[user_id]
                self._metrics.pop(user_id, None)
        if removed:
            logger.debug("Expired activity patterns removed", removed=removed)
        return removed

    def get_statistics(self) -> dict[str, Any]:
        return {
            "tracked_users": len(self._patterns),
            "total_patterns": sum(len(p) for p in self._patterns.values()),
            "flagged_users": len(self.get_flagged_users()),
            "suspicious_users": sum(
                1 for m in self._metrics.values() if m.suspicion_score >= self.config.suspicious_score_threshold
            ),
        }
