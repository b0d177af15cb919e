"""Penalty escalation, whitelist/blacklist overrides and the appeal workflow."""

import math
import secrets
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from ..exceptions import (
    AppealAlreadyReviewedError,
    AppealLimitExceededError,
    AppealNotAllowedError,
    AppealNotFoundError,
    ConfigurationError,
    CounterStoreError,
    DuplicateAppealError,
    PenaltyNotFoundError,
    WhitelistedUserError,
)
from ..storage.base import CounterStore
from .models import (
    AppealRequest,
    AppealStatus,
    PenaltyEscalationConfig,
    PenaltyRecord,
    PenaltySeverity,
    PenaltyType,
    UserAccessDecision,
    UserPenaltyStatus,
    UserStatus,
)

logger = structlog.get_logger(__name__)

# List membership markers have no natural expiry.
LIST_MARKER_TTL_SECONDS = 10 * 365 * 86400


class PenaltyManager:
    """Tracks user standing and escalates penalties on repeated violations.

    Penalty records live in this manager's per-user history. Active blocks,
    bans and list membership are mirrored to the counter store so that
    ``is_user_allowed`` reflects decisions made by any instance sharing it.
    """

    def __init__(
        self,
        store: CounterStore,
        config: PenaltyEscalationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize penalty manager.

        Args:
            store: Counter store used for cross-instance markers
            config: Escalation policy
            clock: Source of epoch seconds
        """
        self.store = store
        self.config = config or PenaltyEscalationConfig()
        self._clock = clock

        self._penalties: dict[str, list[PenaltyRecord]] = {}
        self._index: dict[str, PenaltyRecord] = {}
        self._whitelist: dict[str, str | None] = {}
        self._blacklist: dict[str, str | None] = {}
        self._appeals: dict[str, AppealRequest] = {}
        self._appeal_counts: dict[str, int] = {}

        # Marker keys
        self.whitelist_key = "penalty:whitelist"
        self.blacklist_key = "penalty:blacklist"
        self.block_key = "penalty:block"
        self.ban_key = "penalty:ban"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    # Configuration

    def get_config(self) -> PenaltyEscalationConfig:
        return replace(self.config)

    def update_config(self, **changes: Any) -> PenaltyEscalationConfig:
        """Update escalation settings.

        Raises:
            ConfigurationError: If a setting is unknown or the result is invalid
        """
        unknown = [name for name in changes if not hasattr(self.config, name)]
        if unknown:
            raise ConfigurationError(f"Unknown escalation setting: {', '.join(unknown)}", unknown[0])

        candidate = replace(self.config, **changes)
        if errors := candidate.validate():
            raise ConfigurationError(f"Invalid escalation config: {'; '.join(errors)}")

        self.config = candidate
        logger.info("Penalty escalation config updated", **changes)
        return replace(candidate)

    # Access decisions

    async def is_user_allowed(self, user_id: str) -> UserAccessDecision:
        """Decide whether a user may act at all.

        Whitelist wins, then blacklist, then any active ban or temporary
        block. If the counter store cannot be read the user is allowed and
        the decision is marked ``fail_open``.

        Args:
            user_id: User identifier

        Returns:
            Access decision; never raises
        """
        if user_id in self._whitelist:
            return UserAccessDecision(allowed=True, status=UserStatus.WHITELISTED, reason="User is whitelisted")
        if user_id in self._blacklist:
            return UserAccessDecision(allowed=False, status=UserStatus.PERMANENTLY_BANNED, reason="User is blacklisted")

        try:
            if not self.store.is_available():
                raise CounterStoreError("Counter store unavailable", backend=self.store.name, operation="is_available")

            if await self.store.get_window_start(f"{self.whitelist_key}:{user_id}") is not None:
                return UserAccessDecision(allowed=True, status=UserStatus.WHITELISTED, reason="User is whitelisted")

            blacklist_marker = await self.store.get_window_start(f"{self.blacklist_key}:{user_id}")
            if blacklist_marker is not None:
                return UserAccessDecision(
                    allowed=False, status=UserStatus.PERMANENTLY_BANNED, reason="User is blacklisted"
                )

            now = self._now()
            decision, _ = self._evaluate_history(user_id, now)
            if decision.status == UserStatus.PERMANENTLY_BANNED:
                return decision
            if await self.store.get_window_start(f"{self.ban_key}:{user_id}") is not None:
                return UserAccessDecision(
                    allowed=False, status=UserStatus.PERMANENTLY_BANNED, reason="User is permanently banned"
                )

            marker = await self.store.get_window_start(f"{self.block_key}:{user_id}")
            if marker is not None and marker > now.timestamp():
                blocked_until = datetime.fromtimestamp(marker, UTC)
                if decision.blocked_until is None or blocked_until > decision.blocked_until:
                    return UserAccessDecision(
                        allowed=False,
                        status=UserStatus.TEMPORARILY_BLOCKED,
                        reason=f"User is temporarily blocked until {blocked_until.isoformat()}",
                        blocked_until=blocked_until,
                    )

            return decision

        except Exception as e:
            logger.error(
                "Access check failed, allowing user",
                user_id=user_id,
                error=str(e),
                fail_open=True,
            )
            return UserAccessDecision(
                allowed=True,
                status=UserStatus.NORMAL,
                reason="Access check unavailable; allowed by fail-open policy",
                fail_open=True,
            )

    def _expire(self, user_id: str, now: datetime) -> int:
        """Deactivate temporary blocks that have run out."""
        expired = 0
        for penalty in self._penalties.get(user_id, []):
            if penalty.is_active and penalty.type == PenaltyType.TEMPORARY_BLOCK and penalty.is_expired(now):
                penalty.is_active = False
                expired += 1
        return expired

    def _prune(self, user_id: str, now: datetime) -> int:
        """Drop history older than the grace period."""
        history = self._penalties.get(user_id)
        if not history:
            return 0
        horizon = now - timedelta(seconds=self.config.violation_grace_period_seconds)
        # Warnings never expire, so only blocks and bans outlive the horizon
        kept = [
            p
            for p in history
            if p.issued_at >= horizon or (p.type != PenaltyType.WARNING and p.is_in_effect(now))
        ]
        kept_ids = {p.id for p in kept}
        for penalty in history:
            if penalty.id not in kept_ids:
                self._index.pop(penalty.id, None)
                self._appeals.pop(penalty.id, None)
        self._penalties[user_id] = kept
        return len(history) - len(kept)

    def _evaluate_history(self, user_id: str, now: datetime) -> tuple[UserAccessDecision, PenaltyRecord | None]:
        """Derive standing from the local penalty history.

        Returns:
            Tuple of (decision, penalty that determines it)
        """
        self._expire(user_id, now)
        history = self._penalties.get(user_id, [])

        bans = [p for p in history if p.type == PenaltyType.PERMANENT_BAN and p.is_in_effect(now)]
        if bans:
            return (
                UserAccessDecision(
                    allowed=False,
                    status=UserStatus.PERMANENTLY_BANNED,
                    reason=f"User is permanently banned: {bans[-1].reason}",
                ),
                bans[-1],
            )

        blocks = [p for p in history if p.type == PenaltyType.TEMPORARY_BLOCK and p.is_in_effect(now)]
        if blocks:
            current = max(blocks, key=lambda p: p.expires_at or now)
            until = current.expires_at.isoformat() if current.expires_at else "unknown"
            return (
                UserAccessDecision(
                    allowed=False,
                    status=UserStatus.TEMPORARILY_BLOCKED,
                    reason=f"User is temporarily blocked until {until}: {current.reason}",
                    blocked_until=current.expires_at,
                ),
                current,
            )

        window_start = now - timedelta(seconds=self.config.violation_window_seconds)
        warnings = [
            p for p in history if p.type == PenaltyType.WARNING and p.is_active and p.issued_at >= window_start
        ]
        if warnings:
            return (
                UserAccessDecision(
                    allowed=True, status=UserStatus.WARNED, reason=f"User has been warned: {warnings[-1].reason}"
                ),
                warnings[-1],
            )

        return UserAccessDecision(allowed=True, status=UserStatus.NORMAL), None

    async def _sync_markers(self, user_id: str) -> None:
        """Mirror the user's active block and ban to the counter store."""
        now = self._now()
        decision, current = self._evaluate_history(user_id, now)
        ban_key = f"{self.ban_key}:{user_id}"
        block_key = f"{self.block_key}:{user_id}"
        try:
            if decision.status == UserStatus.PERMANENTLY_BANNED and current is not None:
                await self.store.set_window_start(ban_key, current.issued_at.timestamp(), LIST_MARKER_TTL_SECONDS)
            else:
                await self.store.reset(ban_key)

            if decision.status == UserStatus.TEMPORARILY_BLOCKED and decision.blocked_until is not None:
                ttl = max(1, math.ceil((decision.blocked_until - now).total_seconds()))
                await self.store.set_window_start(block_key, decision.blocked_until.timestamp(), ttl)
            else:
                await self.store.reset(block_key)
        except CounterStoreError as e:
            logger.error("Penalty marker sync failed", user_id=user_id, error=e.message)

    async def _set_list_marker(self, key: str, present: bool) -> None:
        try:
            if present:
                await self.store.set_window_start(key, self._clock(), LIST_MARKER_TTL_SECONDS)
            else:
                await self.store.reset(key)
        except CounterStoreError as e:
            logger.error("List marker update failed", key=key, error=e.message)

    # Penalties

    def _next_penalty(self, user_id: str, now: datetime) -> tuple[PenaltyType, datetime | None]:
        """Type and expiry the user's next violation would receive."""
        window_start = now - timedelta(seconds=self.config.violation_window_seconds)
        prior = [
            p for p in self._penalties.get(user_id, []) if not p.is_revoked and p.issued_at >= window_start
        ]

        # First offense is always a warning
        if not prior:
            return PenaltyType.WARNING, None

        if len(prior) + 1 >= self.config.permanent_ban_threshold:
            return PenaltyType.PERMANENT_BAN, None

        level = sum(1 for p in prior if p.type != PenaltyType.WARNING)
        timeout = min(
            self.config.max_timeout_seconds,
            self.config.base_timeout_seconds * self.config.escalation_multiplier**level,
        )
        return PenaltyType.TEMPORARY_BLOCK, now + timedelta(seconds=timeout)

    async def apply_penalty(
        self,
        user_id: str,
        reason: str,
        severity: PenaltySeverity = PenaltySeverity.MEDIUM,
        metadata: dict[str, Any] | None = None,
    ) -> PenaltyRecord:
        """Record a violation and issue the escalated penalty.

        The first violation in the window is a warning. Later ones become
        temporary blocks of growing length, and the violation that reaches
        ``permanent_ban_threshold`` becomes a permanent ban. Severity is
        recorded but does not change the penalty type.

        Args:
            user_id: User identifier
            reason: Why the penalty is issued
            severity: Severity of the violation
            metadata: Extra context stored with the record

        Returns:
            The new penalty record

        Raises:
            WhitelistedUserError: If the user is whitelisted
        """
        if user_id in self._whitelist:
            raise WhitelistedUserError(user_id)

        now = self._now()
        self._expire(user_id, now)
        self._prune(user_id, now)

        penalty_type, expires_at = self._next_penalty(user_id, now)
        record = PenaltyRecord(
            id=f"penalty_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}",
            user_id=user_id,
            type=penalty_type,
            severity=severity,
            reason=reason,
            issued_at=now,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
        )
        self._penalties.setdefault(user_id, []).append(record)
        self._index[record.id] = record

        await self._sync_markers(user_id)

        logger.warning(
            "Penalty applied",
            user_id=user_id,
            penalty_id=record.id,
            penalty_type=penalty_type.value,
            severity=severity.name,
            expires_at=expires_at.isoformat() if expires_at else None,
            reason=reason,
        )
        return record

    def get_penalty(self, penalty_id: str) -> PenaltyRecord | None:
        return self._index.get(penalty_id)

    async def revoke_penalty(self, penalty_id: str, revoked_by: str, reason: str) -> PenaltyRecord | None:
        """Deactivate a penalty.

        Revoking an unknown penalty does nothing and returns None.

        Args:
            penalty_id: Penalty to revoke
            revoked_by: Administrator or process responsible
            reason: Why the penalty is revoked

        Returns:
            The revoked record, or None if it does not exist
        """
        penalty = self._index.get(penalty_id)
        if penalty is None:
            logger.debug("Revoke requested for unknown penalty", penalty_id=penalty_id)
            return None

        penalty.is_active = False
        penalty.revoked_by = revoked_by
        penalty.revoked_reason = reason
        await self._sync_markers(penalty.user_id)

        logger.info("Penalty revoked", penalty_id=penalty_id, user_id=penalty.user_id, revoked_by=revoked_by)
        return penalty

    async def clear_user_penalties(self, user_id: str, cleared_by: str, reason: str) -> int:
        """Revoke every active penalty of a user.

        Returns:
            Number of penalties revoked
        """
        cleared = 0
        for penalty in self._penalties.get(user_id, []):
            if penalty.is_active:
                penalty.is_active = False
                penalty.revoked_by = cleared_by
                penalty.revoked_reason = reason
                cleared += 1
        await self._sync_markers(user_id)
        if cleared:
            logger.info("User penalties cleared", user_id=user_id, cleared=cleared, cleared_by=cleared_by)
        return cleared

    # Whitelist / blacklist

    async def add_to_whitelist(self, user_id: str, added_by: str | None = None, reason: str | None = None) -> None:
        """Whitelist a user, clearing their penalties and blacklist entry."""
        self._blacklist.pop(user_id, None)
        self._whitelist[user_id] = reason
        await self.clear_user_penalties(user_id, added_by or "system", "User whitelisted")
        await self._set_list_marker(f"{self.blacklist_key}:{user_id}", present=False)
        await self._set_list_marker(f"{self.whitelist_key}:{user_id}", present=True)
        logger.info("User whitelisted", user_id=user_id, added_by=added_by, reason=reason)

    async def remove_from_whitelist(self, user_id: str) -> bool:
        """Remove a user from the whitelist.

        Returns:
            True if the user was whitelisted
        """
        removed = user_id in self._whitelist
        self._whitelist.pop(user_id, None)
        await self._set_list_marker(f"{self.whitelist_key}:{user_id}", present=False)
        logger.info("User removed from whitelist", user_id=user_id)
        return removed

    async def add_to_blacklist(self, user_id: str, added_by: str | None = None, reason: str | None = None) -> None:
        """Blacklist a user; removes any whitelist entry."""
        self._whitelist.pop(user_id, None)
        self._blacklist[user_id] = reason
        await self._set_list_marker(f"{self.whitelist_key}:{user_id}", present=False)
        await self._set_list_marker(f"{self.blacklist_key}:{user_id}", present=True)
        logger.warning("User blacklisted", user_id=user_id, added_by=added_by, reason=reason)

    async def remove_from_blacklist(self, user_id: str, removed_by: str | None = None) -> bool:
        """Remove a user from the blacklist and clear their penalties.

        Returns:
            True if the user was blacklisted
        """
        was_listed = user_id in self._blacklist
        self._blacklist.pop(user_id, None)
        await self.clear_user_penalties(user_id, removed_by or "system", "Removed from blacklist")
        await self._set_list_marker(f"{self.blacklist_key}:{user_id}", present=False)
        logger.info("User removed from blacklist", user_id=user_id, removed_by=removed_by)
        return was_listed

    def is_whitelisted(self, user_id: str) -> bool:
        return user_id in self._whitelist

    def is_blacklisted(self, user_id: str) -> bool:
        return user_id in self._blacklist

    def get_whitelist(self) -> list[str]:
        return sorted(self._whitelist)

    def get_blacklist(self) -> list[str]:
        return sorted(self._blacklist)

    # Appeals

    async def submit_appeal(self, penalty_id: str, user_id: str, reason: str) -> AppealRequest:
        """File an appeal against a penalty.

        Args:
            penalty_id: Penalty being appealed
            user_id: User filing the appeal; must own the penalty
            reason: User's explanation

        Returns:
            The pending appeal

        Raises:
            PenaltyNotFoundError: If the penalty does not exist for this user
            AppealNotAllowedError: If appeals are disabled, the penalty is a
                warning, or it is no longer active
            DuplicateAppealError: If the penalty was already appealed
            AppealLimitExceededError: If the user has used up their appeals
        """
        penalty = self._index.get(penalty_id)
        if penalty is None or penalty.user_id != user_id:
            raise PenaltyNotFoundError(penalty_id)
        if not self.config.allow_appeals:
            raise AppealNotAllowedError(penalty_id, "Appeals are disabled")
        if penalty.type == PenaltyType.WARNING:
            raise AppealNotAllowedError(penalty_id)
        if penalty_id in self._appeals:
            raise DuplicateAppealError(penalty_id)
        if self._appeal_counts.get(user_id, 0) >= self.config.max_appeals_per_user:
            raise AppealLimitExceededError(user_id, self.config.max_appeals_per_user)
        if not penalty.is_in_effect(self._now()):
            raise AppealNotAllowedError(penalty_id, "Penalty is no longer active")

        appeal = AppealRequest(penalty_id=penalty_id, user_id=user_id, reason=reason, submitted_at=self._now())
        self._appeals[penalty_id] = appeal
        self._appeal_counts[user_id] = self._appeal_counts.get(user_id, 0) + 1

        logger.info("Appeal submitted", penalty_id=penalty_id, user_id=user_id)
        return appeal

    async def review_appeal(
        self, penalty_id: str, approved: bool, reviewed_by: str, notes: str | None = None
    ) -> AppealRequest:
        """Approve or deny a pending appeal.

        Approval revokes the penalty; denial leaves it in force.

        Raises:
            AppealNotFoundError: If no appeal exists for the penalty
            AppealAlreadyReviewedError: If the appeal is not pending
        """
        appeal = self._appeals.get(penalty_id)
        if appeal is None:
            raise AppealNotFoundError(penalty_id)
        if appeal.status != AppealStatus.PENDING:
            raise AppealAlreadyReviewedError(penalty_id)

        appeal.status = AppealStatus.APPROVED if approved else AppealStatus.DENIED
        appeal.reviewed_by = reviewed_by
        appeal.reviewed_at = self._now()
        appeal.review_notes = notes

        if approved:
            revoke_reason = f"Appeal approved: {notes}" if notes else "Appeal approved"
            await self.revoke_penalty(penalty_id, reviewed_by, revoke_reason)

        logger.info("Appeal reviewed", penalty_id=penalty_id, status=appeal.status.value, reviewed_by=reviewed_by)
        return appeal

    def get_appeal(self, penalty_id: str) -> AppealRequest | None:
        return self._appeals.get(penalty_id)

    def get_pending_appeals(self) -> list[AppealRequest]:
        pending = [a for a in self._appeals.values() if a.status == AppealStatus.PENDING]
        return sorted(pending, key=lambda a: a.submitted_at)

    # Queries

    def get_user_penalty_status(self, user_id: str) -> UserPenaltyStatus:
        """Derived view of a user's standing and history."""
        now = self._now()
        decision, current = self._evaluate_history(user_id, now)
        history = list(self._penalties.get(user_id, []))

        status = decision.status
        if user_id in self._whitelist:
            status = UserStatus.WHITELISTED
        elif user_id in self._blacklist:
            status = UserStatus.PERMANENTLY_BANNED

        return UserPenaltyStatus(
            user_id=user_id,
            status=status,
            is_blocked=status in (UserStatus.TEMPORARILY_BLOCKED, UserStatus.PERMANENTLY_BANNED),
            penalty_history=history,
            warning_count=sum(1 for p in history if p.type == PenaltyType.WARNING),
            block_count=sum(1 for p in history if p.type == PenaltyType.TEMPORARY_BLOCK),
            total_violations=len(history),
            appeal_count=self._appeal_counts.get(user_id, 0),
            current_penalty=current,
            blocked_until=decision.blocked_until,
            next_penalty_type=None if status == UserStatus.WHITELISTED else self._next_penalty(user_id, now)[0],
        )

    def get_statistics(self) -> dict[str, Any]:
        """Aggregate counts across all users."""
        now = self._now()
        by_type = {t.value: 0 for t in PenaltyType}
        active_by_type = {t.value: 0 for t in PenaltyType}
        blocked_users = 0

        for user_id, history in self._penalties.items():
            self._expire(user_id, now)
            for penalty in history:
                by_type[penalty.type.value] += 1
                if penalty.is_in_effect(now):
                    active_by_type[penalty.type.value] += 1
            if any(p.type != PenaltyType.WARNING and p.is_in_effect(now) for p in history):
                blocked_users += 1

        return {
            "total_penalties": sum(by_type.values()),
            "penalties_by_type": by_type,
            "active_penalties": active_by_type,
            "users_with_penalties": sum(1 for h in self._penalties.values() if h),
            "blocked_users": blocked_users,
            "whitelisted_users": len(self._whitelist),
            "blacklisted_users": len(self._blacklist),
            "total_appeals": len(self._appeals),
            "pending_appeals": sum(1 for a in self._appeals.values() if a.status == AppealStatus.PENDING),
        }

    async def cleanup_expired(self) -> int:
        """Deactivate expired blocks and drop history past the grace period.

        Returns:
            Number of records expired or removed
        """
        now = self._now()
        changed = 0
        for user_id in list(self._penalties):
            changed += self._expire(user_id, now)
            changed += self._prune(user_id, now)
            if not self._penalties[user_id]:
                del self._penalties[user_id]
        if changed:
            logger.info("Penalty cleanup completed", changed=changed)
        return changed

    async def health_check(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "store_available": self.store.is_available(),
            "tracked_users": len(self._penalties),
            "pending_appeals": sum(1 for a in self._appeals.values() if a.status == AppealStatus.PENDING),
        }
