from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from .errors import (
    ErrorContext,
    InvalidArgumentError,
    ProfileNotFoundError,
    QuotaExceededError,
    QuotaLedgerError,
)
from .logging import HoldLog, StructuredLogger, get_logger, since_ms
from .policy import AccessPolicyProvider
from .profiles.store import ProfileStore, ProfileTransaction
from .profiles.types import (
    AllocationEntry,
    HoldPlacement,
    HoldStatus,
    QuotaSnapshot,
    TokenHold,
    UserProfile,
    UserQuota,
    utc_now,
)

DEFAULT_ALLOCATION_REASON = "default-allocation"
ADMIN_ALLOCATION_REASON = "admin-allocation"
SYSTEM_ACTOR = "system"


class QuotaService:
    """Usage-credit ledger: reserve, commit, release and expire holds.

    Every mutating call is exactly one ``store.transact`` on the document of
    one uid, so concurrent calls for the same user are linearized by the
    store and calls for different users never contend.
    """

    def __init__(
        self,
        *,
        store: ProfileStore,
        policy_provider: AccessPolicyProvider,
        admin_email: str | None = None,
        admin_allocation: int = 1000,
        clock: Callable[[], datetime] = utc_now,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._store = store
        self._policies = policy_provider
        self._admin_email = (admin_email or "").strip().lower() or None
        self._admin_allocation = int(admin_allocation)
        self._clock = clock
        self._logger = logger or get_logger("quota_ledger.service")

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def ensure_profile(
        self,
        *,
        uid: str,
        email: str,
        display_name: str | None = None,
        photo_url: str | None = None,
    ) -> UserProfile:
        """Return the profile for ``uid``, creating it with the default grant on first login."""
        policy = await self._policies.get()
        is_admin = self._is_admin(email)
        allocation = self._admin_allocation if is_admin else policy.default_quota

        async def _ensure(tx: ProfileTransaction) -> tuple[UserProfile, bool]:
            existing = tx.get()
            if existing is not None:
                return existing, False

            now = self._clock()
            profile = UserProfile(
                uid=uid,
                email=email,
                display_name=display_name,
                photo_url=photo_url,
                created_at=now,
                updated_at=now,
                quota=UserQuota(
                    total_allocated=allocation,
                    remaining=allocation,
                    on_hold=0,
                    holds={},
                ),
                allocations=[
                    AllocationEntry(
                        amount=allocation,
                        reason=DEFAULT_ALLOCATION_REASON,
                        updated_by=SYSTEM_ACTOR,
                        timestamp=now,
                    )
                ],
            )
            tx.set(profile)
            return profile, True

        profile, created = await self._store.transact(uid, _ensure)
        if created:
            self._logger.info(
                "New user profile persisted",
                uid=uid,
                allocation=allocation,
                is_admin=is_admin,
            )
        else:
            self._logger.debug("User profile exists", uid=uid)
        return profile

    async def sync_profile(
        self,
        *,
        uid: str,
        email: str | None = None,
        display_name: str | None = None,
        photo_url: str | None = None,
    ) -> UserProfile:
        """Update descriptive fields that are given. Quota state is never touched."""
        updates = {
            "email": email,
            "display_name": display_name,
            "photo_url": photo_url,
        }

        async def _sync(tx: ProfileTransaction) -> tuple[UserProfile, list[str]]:
            profile = self._require_profile(tx, operation="sync_profile")
            changed = []
            for attr, value in updates.items():
                if value is not None and getattr(profile, attr) != value:
                    setattr(profile, attr, value)
                    changed.append(attr)
            if changed:
                profile.touch(self._clock())
                tx.set(profile)
            return profile, changed

        profile, changed = await self._store.transact(uid, _sync)
        if changed:
            self._logger.info("User profile synced", uid=uid, fields=changed)
        return profile

    async def get_quota(self, uid: str) -> QuotaSnapshot | None:
        """Display-only projection; None when the user has no profile yet."""
        profile = await self._store.get(uid)
        if profile is None:
            self._logger.info("Quota fetch: profile not found", uid=uid)
            return None
        return QuotaSnapshot(uid=profile.uid, quota=profile.quota)

    async def grant_allocation(
        self,
        *,
        uid: str,
        amount: int,
        reason: str | None = None,
        updated_by: str | None = None,
    ) -> UserQuota:
        """Add ``amount`` credits to a user's allocation and record the grant."""
        _require_positive_amount(amount, ErrorContext(uid=uid, operation="grant_allocation"))

        async def _grant(tx: ProfileTransaction) -> UserQuota:
            profile = self._require_profile(tx, operation="grant_allocation")
            now = self._clock()
            profile.quota.total_allocated += amount
            profile.quota.remaining += amount
            profile.allocations.append(
                AllocationEntry(
                    amount=amount,
                    reason=reason or ADMIN_ALLOCATION_REASON,
                    updated_by=updated_by,
                    timestamp=now,
                )
            )
            profile.touch(now)
            tx.set(profile)
            return profile.quota

        quota = await self._store.transact(uid, _grant)
        self._logger.info(
            "Allocation granted",
            uid=uid,
            amount=amount,
            reason=reason,
            updated_by=updated_by,
            **quota.summary(),
        )
        return quota

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def place_hold(
        self,
        *,
        uid: str,
        session_id: str,
        amount: int = 1,
        hold_duration_ms: int | None = None,
    ) -> HoldPlacement:
        """Reserve ``amount`` credits for ``session_id``.

        Expired holds are reclaimed first. An active hold for the same
        session is refreshed instead of reserving twice.

        Raises:
            InvalidArgumentError: If amount is not a positive integer
            ProfileNotFoundError: If the user has no profile
            QuotaExceededError: If fewer than ``amount`` credits remain
        """
        _require_positive_amount(
            amount,
            ErrorContext(uid=uid, session_id=session_id, operation="place_hold"),
        )
        if hold_duration_ms is None:
            policy = await self._policies.get()
            hold_duration_ms = policy.hold_timeout_ms
        duration = timedelta(milliseconds=hold_duration_ms)

        async def _place(tx: ProfileTransaction) -> tuple[HoldPlacement, str]:
            profile = self._require_profile(tx, operation="place_hold", session_id=session_id)
            now = self._clock()
            self._sweep_expired_holds(profile, now)
            quota = profile.quota

            existing = quota.active_hold(session_id)
            if existing is not None:
                existing.updated_at = now
                existing.expires_at = now + duration
                profile.touch(now)
                tx.set(profile)
                return HoldPlacement(hold=existing, quota=quota), "refreshed"

            if quota.remaining < amount:
                raise QuotaExceededError(
                    requested=amount,
                    remaining=quota.remaining,
                    context=ErrorContext(uid=uid, session_id=session_id, operation="place_hold"),
                )

            hold = TokenHold(
                session_id=session_id,
                amount=amount,
                status=HoldStatus.ACTIVE,
                placed_at=now,
                updated_at=now,
                expires_at=now + duration,
            )
            quota.remaining -= amount
            quota.on_hold += amount
            quota.holds[session_id] = hold
            profile.touch(now)
            tx.set(profile)
            return HoldPlacement(hold=hold, quota=quota), "placed"

        started = time.perf_counter()
        try:
            placement, action = await self._store.transact(uid, _place)
        except QuotaExceededError as exc:
            self._logger.log_hold(
                HoldLog(
                    uid=uid,
                    session_id=session_id,
                    action="rejected",
                    amount=amount,
                    remaining=exc.remaining,
                )
            )
            raise

        self._logger.log_hold(
            HoldLog(
                uid=uid,
                session_id=session_id,
                action=action,
                duration_ms=since_ms(started),
                amount=placement.hold.amount,
                remaining=placement.quota.remaining,
                on_hold=placement.quota.on_hold,
                expires_at=placement.hold.expires_at.isoformat() if placement.hold.expires_at else None,
            )
        )
        return placement

    async def commit_hold(self, uid: str, session_id: str) -> UserQuota:
        """Consume the credits of an active hold.

        A missing or inactive hold is a no-op that returns the current quota.
        """
        return await self._complete_hold(
            uid,
            session_id,
            status=HoldStatus.COMMITTED,
            refund=False,
        )

    async def release_hold(
        self,
        *,
        uid: str,
        session_id: str,
        refund: bool = True,
    ) -> UserQuota:
        """Cancel an active hold, returning its credits unless ``refund`` is False.

        A missing or inactive hold is a no-op that returns the current quota.
        """
        return await self._complete_hold(
            uid,
            session_id,
            status=HoldStatus.RELEASED,
            refund=refund,
        )

    @asynccontextmanager
    async def hold(
        self,
        *,
        uid: str,
        session_id: str,
        amount: int = 1,
        hold_duration_ms: int | None = None,
    ) -> AsyncIterator[HoldPlacement]:
        """Hold credits for the duration of a billable unit of work.

        Commits when the block exits normally; releases with a refund when it
        raises (cancellation included) and re-raises. A failed commit after
        successful work is logged, not raised: the work is already done and
        the hold is reclaimed by a later expiry sweep.
        """
        placement = await self.place_hold(
            uid=uid,
            session_id=session_id,
            amount=amount,
            hold_duration_ms=hold_duration_ms,
        )
        try:
            yield placement
        except (Exception, asyncio.CancelledError):
            try:
                await self.release_hold(uid=uid, session_id=session_id, refund=True)
            except QuotaLedgerError as release_exc:
                self._logger.log_error(
                    release_exc,
                    "Failed to release hold after failed work",
                    uid=uid,
                    session_id=session_id,
                )
            raise
        try:
            await self.commit_hold(uid, session_id)
        except QuotaLedgerError as commit_exc:
            self._logger.log_error(
                commit_exc,
                "Failed to commit hold after successful work",
                uid=uid,
                session_id=session_id,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _complete_hold(
        self,
        uid: str,
        session_id: str,
        *,
        status: HoldStatus,
        refund: bool,
    ) -> UserQuota:
        operation = "commit_hold" if status == HoldStatus.COMMITTED else "release_hold"

        async def _complete(tx: ProfileTransaction) -> tuple[UserQuota, TokenHold | None]:
            profile = self._require_profile(tx, operation=operation, session_id=session_id)
            quota = profile.quota
            hold = quota.active_hold(session_id)
            if hold is None:
                return quota, None

            now = self._clock()
            hold.status = status
            hold.updated_at = now
            quota.on_hold = max(0, quota.on_hold - hold.amount)
            if refund:
                quota.remaining += hold.amount
            del quota.holds[session_id]
            profile.touch(now)
            tx.set(profile)
            return quota, hold

        started = time.perf_counter()
        quota, hold = await self._store.transact(uid, _complete)

        if hold is None:
            self._logger.log_hold(
                HoldLog(
                    uid=uid,
                    session_id=session_id,
                    action="missing",
                    remaining=quota.remaining,
                    on_hold=quota.on_hold,
                )
            )
            return quota

        self._logger.log_hold(
            HoldLog(
                uid=uid,
                session_id=session_id,
                action=hold.status.value,
                duration_ms=since_ms(started),
                amount=hold.amount,
                refund=refund if status == HoldStatus.RELEASED else None,
                remaining=quota.remaining,
                on_hold=quota.on_hold,
            )
        )
        return quota

    def _sweep_expired_holds(self, profile: UserProfile, now: datetime) -> int:
        """Reclaim active holds whose ``expires_at`` has passed. Returns the refunded total."""
        quota = profile.quota
        refunded = 0
        expired: list[str] = []
        for key, hold in list(quota.holds.items()):
            try:
                if not hold.is_expired(now):
                    continue
            except TypeError as exc:
                # naive vs aware timestamps
                self._logger.warning(
                    "Skipping hold with incomparable expiry",
                    uid=profile.uid,
                    session_id=key,
                    error_message=str(exc),
                )
                continue
            refunded += hold.amount
            expired.append(key)
            del quota.holds[key]

        if not expired:
            return 0

        quota.on_hold = max(0, quota.on_hold - refunded)
        quota.remaining += refunded
        profile.touch(now)
        self._logger.warning(
            "Expired holds cleaned up",
            uid=profile.uid,
            sessions=expired,
            refunded=refunded,
            remaining=quota.remaining,
        )
        return refunded

    def _require_profile(
        self,
        tx: ProfileTransaction,
        *,
        operation: str,
        session_id: str | None = None,
    ) -> UserProfile:
        profile = tx.get()
        if profile is None:
            self._logger.error(
                "Profile not found",
                uid=tx.uid,
                session_id=session_id,
                operation=operation,
            )
            raise ProfileNotFoundError(
                tx.uid,
                context=ErrorContext(uid=tx.uid, session_id=session_id, operation=operation),
            )
        return profile

    def _is_admin(self, email: str | None) -> bool:
        if not self._admin_email or not email:
            return False
        return email.strip().lower() == self._admin_email


def _require_positive_amount(amount: Any, context: ErrorContext) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidArgumentError(
            f"Amount must be a positive integer, got {amount!r}",
            context=context,
        )



__all__ = [
    "QuotaService",
    "DEFAULT_ALLOCATION_REASON",
    "ADMIN_ALLOCATION_REASON",
    "SYSTEM_ACTOR",
]
