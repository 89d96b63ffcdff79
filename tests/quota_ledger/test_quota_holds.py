from __future__ import annotations

from datetime import timedelta

import pytest

from quota_ledger import (
    HoldStatus,
    InvalidArgumentError,
    ProfileNotFoundError,
    QuotaExceededError,
    TokenHold,
)


def _state(quota) -> tuple[int, int]:
    return quota.remaining, quota.on_hold


@pytest.mark.asyncio
async def test_place_hold_moves_credits_to_on_hold(service, seed_profile, clock):
    await seed_profile(remaining=10)

    placement = await service.place_hold(uid="u1", session_id="s1", amount=3)

    assert _state(placement.quota) == (7, 3)
    assert placement.hold.amount == 3
    assert placement.hold.status == HoldStatus.ACTIVE
    assert placement.hold.placed_at == clock()
    assert placement.hold.expires_at == clock() + timedelta(minutes=60)

    snapshot = await service.get_quota("u1")
    assert snapshot.summary() == {"uid": "u1", "total_allocated": 10, "remaining": 7, "on_hold": 3}
    assert "s1" in snapshot.quota.holds


@pytest.mark.asyncio
async def test_place_hold_uses_explicit_duration(service, seed_profile, clock):
    await seed_profile(remaining=2)

    placement = await service.place_hold(uid="u1", session_id="s1", hold_duration_ms=1500)

    assert placement.hold.expires_at == clock() + timedelta(milliseconds=1500)


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1, 1.5, True, "2"])
async def test_place_hold_rejects_invalid_amount(service, seed_profile, amount):
    await seed_profile(remaining=10)

    with pytest.raises(InvalidArgumentError):
        await service.place_hold(uid="u1", session_id="s1", amount=amount)

    snapshot = await service.get_quota("u1")
    assert _state(snapshot.quota) == (10, 0)


@pytest.mark.asyncio
async def test_place_hold_without_profile_fails(service):
    with pytest.raises(ProfileNotFoundError) as exc_info:
        await service.place_hold(uid="ghost", session_id="s1")

    assert exc_info.value.uid == "ghost"
    assert await service.get_quota("ghost") is None


@pytest.mark.asyncio
async def test_quota_exceeded_leaves_ledger_untouched(service, seed_profile, store):
    await seed_profile(remaining=2)
    version = store.version("u1")

    with pytest.raises(QuotaExceededError) as exc_info:
        await service.place_hold(uid="u1", session_id="s1", amount=3)

    assert exc_info.value.message == "You have reached your current allocation."
    assert exc_info.value.requested == 3
    assert exc_info.value.remaining == 2
    assert store.version("u1") == version
    snapshot = await service.get_quota("u1")
    assert _state(snapshot.quota) == (2, 0)
    assert snapshot.quota.holds == {}


@pytest.mark.asyncio
async def test_commit_consumes_without_refund(service, seed_profile):
    await seed_profile(remaining=10)
    await service.place_hold(uid="u1", session_id="s1", amount=5)

    quota = await service.commit_hold("u1", "s1")

    assert _state(quota) == (5, 0)
    assert quota.holds == {}


@pytest.mark.asyncio
async def test_release_refunds_by_default(service, seed_profile):
    await seed_profile(remaining=10)
    await service.place_hold(uid="u1", session_id="s1", amount=5)

    quota = await service.release_hold(uid="u1", session_id="s1")

    assert _state(quota) == (10, 0)
    assert quota.holds == {}


@pytest.mark.asyncio
async def test_release_without_refund_discards_credits(service, seed_profile):
    await seed_profile(remaining=10)
    await service.place_hold(uid="u1", session_id="s1", amount=5)

    quota = await service.release_hold(uid="u1", session_id="s1", refund=False)

    assert _state(quota) == (5, 0)


@pytest.mark.asyncio
async def test_second_commit_and_release_are_noops(service, seed_profile, store):
    await seed_profile(remaining=10)
    await service.place_hold(uid="u1", session_id="s1", amount=4)
    await service.commit_hold("u1", "s1")
    version = store.version("u1")

    again = await service.commit_hold("u1", "s1")
    released = await service.release_hold(uid="u1", session_id="s1")

    assert _state(again) == (6, 0)
    assert _state(released) == (6, 0)
    assert store.version("u1") == version


@pytest.mark.asyncio
async def test_complete_hold_without_profile_fails(service):
    with pytest.raises(ProfileNotFoundError):
        await service.commit_hold("ghost", "s1")
    with pytest.raises(ProfileNotFoundError):
        await service.release_hold(uid="ghost", session_id="s1")


@pytest.mark.asyncio
async def test_on_hold_never_goes_negative(service, seed_profile, clock):
    # Ledger drifted: the hold claims more than on_hold accounts for.
    hold = TokenHold(
        session_id="s1",
        amount=5,
        placed_at=clock(),
        updated_at=clock(),
        expires_at=clock() + timedelta(hours=1),
    )
    await seed_profile(remaining=3, on_hold=2, holds={"s1": hold})

    quota = await service.release_hold(uid="u1", session_id="s1")

    assert quota.on_hold == 0
    assert quota.remaining == 8


@pytest.mark.asyncio
async def test_refresh_extends_expiry_without_reserving_again(service, seed_profile, clock):
    await seed_profile(remaining=10)
    first = await service.place_hold(uid="u1", session_id="s1", amount=2)

    clock.advance(minutes=10)
    second = await service.place_hold(uid="u1", session_id="s1", amount=2)

    assert _state(second.quota) == (8, 2)
    assert second.hold.amount == 2
    assert second.hold.placed_at == first.hold.placed_at
    assert second.hold.expires_at == clock() + timedelta(minutes=60)
    assert second.hold.expires_at > first.hold.expires_at


@pytest.mark.asyncio
async def test_refresh_keeps_original_amount(service, seed_profile):
    await seed_profile(remaining=10)
    await service.place_hold(uid="u1", session_id="s1", amount=2)

    refreshed = await service.place_hold(uid="u1", session_id="s1", amount=9)

    assert refreshed.hold.amount == 2
    assert _state(refreshed.quota) == (8, 2)


@pytest.mark.asyncio
async def test_refresh_succeeds_with_zero_remaining(service, seed_profile):
    await seed_profile(remaining=1)
    await service.place_hold(uid="u1", session_id="s1")

    refreshed = await service.place_hold(uid="u1", session_id="s1")

    assert _state(refreshed.quota) == (0, 1)


@pytest.mark.asyncio
async def test_expired_hold_is_reclaimed_by_next_placement(service, seed_profile, clock):
    await seed_profile(remaining=5)
    await service.place_hold(uid="u1", session_id="stale", amount=5, hold_duration_ms=1)

    with pytest.raises(QuotaExceededError):
        await service.place_hold(uid="u1", session_id="other", amount=1, hold_duration_ms=60_000)

    clock.advance(milliseconds=1)
    placement = await service.place_hold(uid="u1", session_id="fresh", amount=5)

    assert _state(placement.quota) == (0, 5)
    assert set(placement.quota.holds) == {"fresh"}


@pytest.mark.asyncio
async def test_expiry_sweep_applies_all_expired_holds_once(service, seed_profile, clock):
    past = clock() - timedelta(minutes=1)
    holds = {
        "a": TokenHold(session_id="a", amount=2, placed_at=past, updated_at=past, expires_at=past),
        "b": TokenHold(session_id="b", amount=3, placed_at=past, updated_at=past, expires_at=past),
        "live": TokenHold(
            session_id="live",
            amount=1,
            placed_at=past,
            updated_at=past,
            expires_at=clock() + timedelta(minutes=5),
        ),
    }
    await seed_profile(remaining=0, on_hold=6, holds=holds)

    placement = await service.place_hold(uid="u1", session_id="new", amount=4)

    assert _state(placement.quota) == (1, 5)
    assert set(placement.quota.holds) == {"live", "new"}


@pytest.mark.asyncio
async def test_expired_hold_for_same_session_is_replaced(service, seed_profile, clock):
    await seed_profile(remaining=3)
    await service.place_hold(uid="u1", session_id="s1", amount=3, hold_duration_ms=1000)

    clock.advance(seconds=2)
    placement = await service.place_hold(uid="u1", session_id="s1", amount=2)

    assert _state(placement.quota) == (1, 2)
    assert placement.hold.amount == 2
    assert placement.hold.placed_at == clock()


@pytest.mark.asyncio
async def test_expired_hold_is_not_swept_by_commit(service, seed_profile, clock):
    await seed_profile(remaining=5)
    await service.place_hold(uid="u1", session_id="s1", amount=2, hold_duration_ms=1)
    clock.advance(seconds=1)

    # Only placement sweeps; a late commit still finalizes the hold.
    quota = await service.commit_hold("u1", "s1")

    assert _state(quota) == (3, 0)


@pytest.mark.asyncio
async def test_malformed_hold_is_skipped_by_sweep(service, seed_profile, clock):
    past = clock() - timedelta(minutes=1)
    holds = {
        # Naive timestamp cannot be compared with the aware clock.
        "broken": TokenHold(
            session_id="broken",
            amount=2,
            placed_at=past,
            updated_at=past,
            expires_at=past.replace(tzinfo=None),
        ),
        "expired": TokenHold(session_id="expired", amount=3, placed_at=past, updated_at=past, expires_at=past),
    }
    await seed_profile(remaining=0, on_hold=5, holds=holds)

    placement = await service.place_hold(uid="u1", session_id="new", amount=3)

    assert _state(placement.quota) == (0, 5)
    assert set(placement.quota.holds) == {"broken", "new"}


@pytest.mark.parametrize(
    "field,value",
    [("amount", None), ("status", "weird"), ("expires_at", "not-a-date")],
)
@pytest.mark.asyncio
async def test_unreadable_stored_hold_does_not_block_the_profile(service, seed_profile, store, clock, field, value):
    await seed_profile(remaining=5)
    version, doc = store._docs["u1"]
    bad = {"session_id": "bad", "amount": 2, "status": "active", "expires_at": clock().isoformat()}
    if value is None:
        del bad[field]
    else:
        bad[field] = value
    doc["quota"]["holds"]["bad"] = bad
    store._docs["u1"] = (version, doc)

    placement = await service.place_hold(uid="u1", session_id="s1")
    assert _state(placement.quota) == (4, 1)

    quota = await service.commit_hold("u1", "s1")
    assert _state(quota) == (4, 0)
    quota = await service.release_hold(uid="u1", session_id="bad")
    assert _state(quota) == (4, 0)

    _, stored = store._docs["u1"]
    assert stored["quota"]["holds"] == {"bad": bad}


@pytest.mark.asyncio
async def test_reserve_commit_release_walkthrough(service):
    profile = await service.ensure_profile(uid="u1", email="u1@example.com")
    assert _state(profile.quota) == (10, 0)

    placement = await service.place_hold(uid="u1", session_id="s1", amount=3)
    assert _state(placement.quota) == (7, 3)

    with pytest.raises(QuotaExceededError):
        await service.place_hold(uid="u1", session_id="s2", amount=10)

    quota = await service.commit_hold("u1", "s1")
    assert _state(quota) == (7, 0)

    placement = await service.place_hold(uid="u1", session_id="s2", amount=7)
    assert _state(placement.quota) == (0, 7)

    quota = await service.release_hold(uid="u1", session_id="s2", refund=True)
    assert _state(quota) == (7, 0)
