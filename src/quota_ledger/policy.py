"""
Access policy: default quota size and hold timeout.

The policy is read through an ``AccessPolicyProvider`` that caches the
value loaded from an ``AccessPolicySource`` for a fixed TTL (60 seconds by
default). When the source has no config or cannot be read, the provider
falls back to ``DEFAULT_ACCESS_POLICY`` and caches that instead, so a broken
config store never blocks reservations.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .logging import get_logger

logger = get_logger("quota_ledger.policy")


def _int_at_least(value: Any, default: int, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        return default
    return value


@dataclass(frozen=True)
class AccessPolicy:
    """Ledger-facing slice of the access-control config."""

    default_quota: int = 150
    hold_timeout_minutes: int = 60

    def __post_init__(self):
        if self.default_quota < 0:
            raise ValueError("default_quota cannot be negative")
        if self.hold_timeout_minutes <= 0:
            raise ValueError("hold_timeout_minutes must be positive")

    @property
    def hold_timeout_ms(self) -> int:
        return self.hold_timeout_minutes * 60_000

    def to_dict(self) -> dict[str, int]:
        return {
            "default_quota": self.default_quota,
            "hold_timeout_minutes": self.hold_timeout_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AccessPolicy:
        """Build a policy, falling back per field on missing or invalid values."""
        data = data or {}
        return cls(
            default_quota=_int_at_least(
                data.get("default_quota"),
                DEFAULT_ACCESS_POLICY.default_quota,
                0,
            ),
            hold_timeout_minutes=_int_at_least(
                data.get("hold_timeout_minutes"),
                DEFAULT_ACCESS_POLICY.hold_timeout_minutes,
                1,
            ),
        )


DEFAULT_ACCESS_POLICY = AccessPolicy()


class AccessPolicySource(ABC):
    """Backing config for the access policy."""

    @abstractmethod
    async def load(self) -> AccessPolicy | None:
        """Load the current policy, or None when no config exists."""
        ...


class StaticPolicySource(AccessPolicySource):
    """Policy fixed at construction (tests, `memory` deployments)."""

    def __init__(self, policy: AccessPolicy | None = None) -> None:
        self.policy = policy or DEFAULT_ACCESS_POLICY

    async def load(self) -> AccessPolicy | None:
        return self.policy


class AccessPolicyProvider:
    """Process-wide policy cache with an explicit TTL.

    Args:
        source: Where the policy is loaded from on a cache miss
        ttl_seconds: How long a loaded (or fallback) policy is served
        fallback: Policy used when the source is empty or unreadable
        clock: Monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        source: AccessPolicySource,
        *,
        ttl_seconds: float = 60.0,
        fallback: AccessPolicy = DEFAULT_ACCESS_POLICY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds cannot be negative")
        self._source = source
        self._ttl = ttl_seconds
        self._fallback = fallback
        self._clock = clock
        self._cached: AccessPolicy | None = None
        self._fetched_at = 0.0

    async def get(self) -> AccessPolicy:
        now = self._clock()
        if self._cached is not None and now - self._fetched_at < self._ttl:
            return self._cached

        logger.debug("Access policy cache miss")
        try:
            policy = await self._source.load()
        except Exception as exc:
            logger.warning(
                "Access policy unreadable; using defaults",
                error_type=type(exc).__name__,
                error_message=str(exc),
                fallback=self._fallback.to_dict(),
            )
            policy = None
        else:
            if policy is None:
                logger.warning("Access policy missing; using defaults", fallback=self._fallback.to_dict())

        self._cached = policy or self._fallback
        self._fetched_at = now
        return self._cached

    def invalidate(self) -> None:
        self._cached = None
        self._fetched_at = 0.0


__all__ = [
    "AccessPolicy",
    "DEFAULT_ACCESS_POLICY",
    "AccessPolicySource",
    "StaticPolicySource",
    "AccessPolicyProvider",
]
