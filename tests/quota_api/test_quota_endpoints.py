from __future__ import annotations

import pytest

fastapi = pytest.importorskip("fastapi")
HTTPException = fastapi.HTTPException
Request = pytest.importorskip("starlette.requests").Request
app_module = pytest.importorskip("quota_api.app")

from quota_api.auth import AuthResult, TrustedHeaderAuthAdapter
from quota_api.settings import Settings
from quota_ledger import TransactionConflictError


def _request(*, uid: str | None = "u1", email: str | None = "user@example.com", token: str | None = None) -> Request:
    headers = []
    if uid is not None:
        headers.append((b"x-user-id", uid.encode()))
    if email is not None:
        headers.append((b"x-user-email", email.encode()))
    if token is not None:
        headers.append((b"x-internal-token", token.encode()))
    return Request({"type": "http", "method": "POST", "path": "/", "headers": headers})


class _AuthDenied:
    async def authenticate(self, **kwargs):
        _ = kwargs
        return AuthResult(ok=False, reason="invalid_internal_token", status_code=401)


class _ConflictingService:
    async def place_hold(self, **kwargs):
        raise TransactionConflictError(attempts=5)

    async def get_quota(self, uid):
        raise TransactionConflictError(attempts=5)


@pytest.fixture
def wired(monkeypatch, service):
    monkeypatch.setattr(app_module.app.state, "quota_service", service, raising=False)
    monkeypatch.setattr(
        app_module.app.state,
        "auth_adapter",
        TrustedHeaderAuthAdapter(internal_token="secret", allow_unsigned=False),
        raising=False,
    )
    monkeypatch.setattr(
        app_module.app.state,
        "settings",
        Settings(store_backend="memory", admin_email="owner@example.com"),
        raising=False,
    )
    return service


async def _ensure(uid: str = "u1", email: str = "user@example.com"):
    return await app_module.ensure_profile(
        app_module.EnsureProfileRequest(display_name="User"),
        _request(uid=uid, email=email, token="secret"),
    )


@pytest.mark.asyncio
async def test_healthz() -> None:
    assert await app_module.healthz() == {"status": "ok"}


@pytest.mark.asyncio
async def test_ensure_profile_bootstraps_caller(wired) -> None:
    resp = await _ensure()

    assert resp.uid == "u1"
    assert resp.display_name == "User"
    assert resp.quota.remaining == 10
    assert resp.quota.total_allocated == 10


@pytest.mark.asyncio
async def test_ensure_profile_requires_email(wired) -> None:
    with pytest.raises(HTTPException) as exc_info:
        await app_module.ensure_profile(
            app_module.EnsureProfileRequest(),
            _request(email=None, token="secret"),
        )
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_requests_are_rejected_when_auth_fails(monkeypatch, wired) -> None:
    monkeypatch.setattr(app_module.app.state, "auth_adapter", _AuthDenied(), raising=False)

    with pytest.raises(HTTPException) as exc_info:
        await app_module.get_quota(_request(token="secret"))
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "invalid_internal_token"


@pytest.mark.asyncio
async def test_get_quota_404_without_profile(wired) -> None:
    with pytest.raises(HTTPException) as exc_info:
        await app_module.get_quota(_request(token="secret"))
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_hold_lifecycle_over_http(wired) -> None:
    await _ensure()
    request = _request(token="secret")

    placed = await app_module.place_hold(app_module.PlaceHoldRequest(session_id="chat:1", amount=4), request)
    assert placed.status == "active"
    assert placed.amount == 4
    assert placed.expires_at is not None
    assert (placed.quota.remaining, placed.quota.on_hold) == (6, 4)

    committed = await app_module.commit_hold("chat:1", request)
    assert (committed.remaining, committed.on_hold) == (6, 0)

    await app_module.place_hold(app_module.PlaceHoldRequest(session_id="chat:2", amount=2), request)
    released = await app_module.release_hold("chat:2", request)
    assert (released.remaining, released.on_hold) == (6, 0)

    await app_module.place_hold(app_module.PlaceHoldRequest(session_id="chat:3", amount=2), request)
    discarded = await app_module.release_hold("chat:3", request, app_module.ReleaseHoldRequest(refund=False))
    assert (discarded.remaining, discarded.on_hold) == (4, 0)

    quota = await app_module.get_quota(request)
    assert quota.model_dump() == {"uid": "u1", "total_allocated": 10, "remaining": 4, "on_hold": 0}


@pytest.mark.asyncio
async def test_quota_exceeded_maps_to_429_with_message(wired) -> None:
    await _ensure()

    with pytest.raises(HTTPException) as exc_info:
        await app_module.place_hold(
            app_module.PlaceHoldRequest(session_id="big", amount=11),
            _request(token="secret"),
        )
    assert exc_info.value.status_code == 429
    assert exc_info.value.detail == "You have reached your current allocation."


@pytest.mark.asyncio
async def test_hold_without_profile_maps_to_404(wired) -> None:
    with pytest.raises(HTTPException) as exc_info:
        await app_module.place_hold(app_module.PlaceHoldRequest(session_id="s"), _request(token="secret"))
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_store_conflict_maps_to_503(monkeypatch, wired) -> None:
    monkeypatch.setattr(app_module.app.state, "quota_service", _ConflictingService(), raising=False)

    with pytest.raises(HTTPException) as exc_info:
        await app_module.place_hold(app_module.PlaceHoldRequest(session_id="s"), _request(token="secret"))
    assert exc_info.value.status_code == 503
    assert exc_info.value.detail == app_module.RETRY_MESSAGE


@pytest.mark.asyncio
async def test_sync_profile_updates_caller(wired) -> None:
    await _ensure()

    resp = await app_module.sync_profile(
        app_module.SyncProfileRequest(display_name="Renamed"),
        _request(token="secret"),
    )

    assert resp.display_name == "Renamed"
    assert resp.quota.remaining == 10


@pytest.mark.asyncio
async def test_admin_grant_requires_admin_email(wired) -> None:
    await _ensure()

    with pytest.raises(HTTPException) as exc_info:
        await app_module.grant_allocation(
            app_module.GrantAllocationRequest(uid="u1", amount=5),
            _request(email="user@example.com", token="secret"),
        )
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_admin_grant_adds_credits(wired) -> None:
    await _ensure()

    resp = await app_module.grant_allocation(
        app_module.GrantAllocationRequest(uid="u1", amount=5, reason="beta"),
        _request(uid="admin", email="Owner@Example.com", token="secret"),
    )

    assert resp.uid == "u1"
    assert resp.total_allocated == 15
    assert resp.remaining == 15


@pytest.mark.asyncio
async def test_admin_grant_for_unknown_user_is_404(wired) -> None:
    with pytest.raises(HTTPException) as exc_info:
        await app_module.grant_allocation(
            app_module.GrantAllocationRequest(uid="ghost", amount=5),
            _request(uid="admin", email="owner@example.com", token="secret"),
        )
    assert exc_info.value.status_code == 404
