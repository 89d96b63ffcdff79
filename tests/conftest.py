"""
Shared test fixtures for quota-ledger tests.

This module provides:
- Fake wall clock (service timestamps) and fake monotonic clock (policy TTL)
- In-memory profile store with retry backoff disabled
- A service factory and a profile seeding helper
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from quota_ledger import (
    AccessPolicy,
    AccessPolicyProvider,
    InMemoryProfileStore,
    QuotaService,
    StaticPolicySource,
    TokenHold,
    UserProfile,
    UserQuota,
)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def store() -> InMemoryProfileStore:
    return InMemoryProfileStore(retry_base_delay=0)


@pytest.fixture
def make_service(store, clock):
    def _make(
        *,
        policy: AccessPolicy | None = None,
        admin_email: str | None = None,
        admin_allocation: int = 1000,
    ) -> QuotaService:
        return QuotaService(
            store=store,
            policy_provider=AccessPolicyProvider(StaticPolicySource(policy or AccessPolicy())),
            admin_email=admin_email,
            admin_allocation=admin_allocation,
            clock=clock,
        )

    return _make


@pytest.fixture
def service(make_service) -> QuotaService:
    return make_service(policy=AccessPolicy(default_quota=10, hold_timeout_minutes=60))


@pytest.fixture
def seed_profile(store, clock):
    """Write a profile with a chosen ledger state straight into the store."""

    async def _seed(
        uid: str = "u1",
        *,
        remaining: int = 10,
        on_hold: int = 0,
        holds: dict[str, TokenHold] | None = None,
        email: str = "user@example.com",
    ) -> UserProfile:
        profile = UserProfile(
            uid=uid,
            email=email,
            created_at=clock(),
            updated_at=clock(),
            quota=UserQuota(
                total_allocated=remaining + on_hold,
                remaining=remaining,
                on_hold=on_hold,
                holds=dict(holds or {}),
            ),
        )
        await store.set(profile)
        return profile

    return _seed
