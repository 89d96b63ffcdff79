from __future__ import annotations

from datetime import datetime
from typing import NoReturn

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from quota_ledger import (
    AccessPolicyProvider,
    InMemoryProfileStore,
    QuotaLedgerError,
    QuotaService,
    StaticPolicySource,
    StoreError,
    UserProfile,
    UserQuota,
    configure_logging,
    get_logger,
)
from quota_ledger.storage import PostgresPolicySource, PostgresProfileStore

from .auth import AuthResult, TrustedHeaderAuthAdapter
from .db import close_pool, get_pool
from .settings import get_settings


app = FastAPI(title="Quota Ledger", version="0.1.0")

logger = get_logger("quota_api")

RETRY_MESSAGE = "unable to process request, please retry"


class QuotaResponse(BaseModel):
    uid: str
    total_allocated: int
    remaining: int
    on_hold: int


class ProfileResponse(BaseModel):
    uid: str
    email: str
    display_name: str | None = None
    photo_url: str | None = None
    created_at: datetime
    quota: QuotaResponse


class EnsureProfileRequest(BaseModel):
    display_name: str | None = None
    photo_url: str | None = None


class SyncProfileRequest(BaseModel):
    email: str | None = None
    display_name: str | None = None
    photo_url: str | None = None


class PlaceHoldRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    amount: int = Field(default=1, ge=1)
    hold_duration_ms: int | None = Field(default=None, ge=1)


class HoldResponse(BaseModel):
    session_id: str
    amount: int
    status: str
    expires_at: datetime | None = None
    quota: QuotaResponse


class ReleaseHoldRequest(BaseModel):
    refund: bool = True


class GrantAllocationRequest(BaseModel):
    uid: str = Field(..., min_length=1)
    amount: int = Field(..., ge=1)
    reason: str | None = None


def _quota_response(uid: str, quota: UserQuota) -> QuotaResponse:
    return QuotaResponse(uid=uid, **quota.summary())


def _profile_response(profile: UserProfile) -> ProfileResponse:
    return ProfileResponse(
        uid=profile.uid,
        email=profile.email,
        display_name=profile.display_name,
        photo_url=profile.photo_url,
        created_at=profile.created_at,
        quota=_quota_response(profile.uid, profile.quota),
    )


def _raise_http(exc: QuotaLedgerError) -> NoReturn:
    if isinstance(exc, StoreError):
        logger.log_error(exc, "Store failure surfaced to caller")
        raise HTTPException(status_code=exc.http_status, detail=RETRY_MESSAGE) from exc
    raise HTTPException(status_code=exc.http_status, detail=exc.message) from exc


async def _authenticate(request: Request) -> AuthResult:
    auth_adapter: TrustedHeaderAuthAdapter = app.state.auth_adapter
    auth = await auth_adapter.authenticate(request=request)
    if not auth.ok or not auth.uid:
        raise HTTPException(status_code=auth.status_code, detail=auth.reason or "unauthorized")
    return auth


@app.on_event("startup")
async def _startup() -> None:
    settings = get_settings()
    configure_logging(
        level="DEBUG" if settings.debug else settings.log_level,
        json_output=settings.log_json,
    )

    if settings.store_backend == "memory":
        store = InMemoryProfileStore(
            max_attempts=settings.tx_max_attempts,
            retry_base_delay=settings.tx_retry_base_delay,
        )
        source = StaticPolicySource(settings.access_policy)
    else:
        pool = await get_pool(
            settings.pg_dsn,
            min_size=settings.pg_pool_min,
            max_size=settings.pg_pool_max,
        )
        store = PostgresProfileStore(
            pool,
            max_attempts=settings.tx_max_attempts,
            retry_base_delay=settings.tx_retry_base_delay,
        )
        await store.ensure_schema()
        source = PostgresPolicySource(pool, bootstrap_policy=settings.access_policy)

    app.state.settings = settings
    app.state.auth_adapter = TrustedHeaderAuthAdapter(
        internal_token=settings.internal_token,
        allow_unsigned=settings.auth_allow_unsigned,
    )
    app.state.quota_service = QuotaService(
        store=store,
        policy_provider=AccessPolicyProvider(
            source,
            ttl_seconds=settings.policy_cache_ttl_sec,
            fallback=settings.access_policy,
        ),
        admin_email=settings.admin_email,
        admin_allocation=settings.admin_allocation,
    )
    logger.info("Quota ledger started", store_backend=settings.store_backend)


@app.on_event("shutdown")
async def _shutdown() -> None:
    settings = getattr(app.state, "settings", None)
    if settings is not None and settings.store_backend == "postgres":
        await close_pool()


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/profiles/ensure", response_model=ProfileResponse)
async def ensure_profile(req: EnsureProfileRequest, request: Request) -> ProfileResponse:
    auth = await _authenticate(request)
    if not auth.email:
        raise HTTPException(status_code=400, detail="X-User-Email is required")
    service: QuotaService = app.state.quota_service
    try:
        profile = await service.ensure_profile(
            uid=auth.uid,
            email=auth.email,
            display_name=req.display_name,
            photo_url=req.photo_url,
        )
    except QuotaLedgerError as exc:
        _raise_http(exc)
    return _profile_response(profile)


@app.patch("/v1/profiles/me", response_model=ProfileResponse)
async def sync_profile(req: SyncProfileRequest, request: Request) -> ProfileResponse:
    auth = await _authenticate(request)
    service: QuotaService = app.state.quota_service
    try:
        profile = await service.sync_profile(
            uid=auth.uid,
            email=req.email,
            display_name=req.display_name,
            photo_url=req.photo_url,
        )
    except QuotaLedgerError as exc:
        _raise_http(exc)
    return _profile_response(profile)


@app.get("/v1/quota", response_model=QuotaResponse)
async def get_quota(request: Request) -> QuotaResponse:
    auth = await _authenticate(request)
    service: QuotaService = app.state.quota_service
    try:
        snapshot = await service.get_quota(auth.uid)
    except QuotaLedgerError as exc:
        _raise_http(exc)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return _quota_response(snapshot.uid, snapshot.quota)


@app.post("/v1/holds", response_model=HoldResponse)
async def place_hold(req: PlaceHoldRequest, request: Request) -> HoldResponse:
    auth = await _authenticate(request)
    service: QuotaService = app.state.quota_service
    try:
        placement = await service.place_hold(
            uid=auth.uid,
            session_id=req.session_id,
            amount=req.amount,
            hold_duration_ms=req.hold_duration_ms,
        )
    except QuotaLedgerError as exc:
        _raise_http(exc)
    hold = placement.hold
    return HoldResponse(
        session_id=hold.session_id,
        amount=hold.amount,
        status=hold.status.value,
        expires_at=hold.expires_at,
        quota=_quota_response(auth.uid, placement.quota),
    )


@app.post("/v1/holds/{session_id}/commit", response_model=QuotaResponse)
async def commit_hold(session_id: str, request: Request) -> QuotaResponse:
    auth = await _authenticate(request)
    service: QuotaService = app.state.quota_service
    try:
        quota = await service.commit_hold(auth.uid, session_id)
    except QuotaLedgerError as exc:
        _raise_http(exc)
    return _quota_response(auth.uid, quota)


@app.post("/v1/holds/{session_id}/release", response_model=QuotaResponse)
async def release_hold(
    session_id: str,
    request: Request,
    req: ReleaseHoldRequest | None = None,
) -> QuotaResponse:
    auth = await _authenticate(request)
    service: QuotaService = app.state.quota_service
    refund = req.refund if req is not None else True
    try:
        quota = await service.release_hold(uid=auth.uid, session_id=session_id, refund=refund)
    except QuotaLedgerError as exc:
        _raise_http(exc)
    return _quota_response(auth.uid, quota)


@app.post("/v1/admin/allocations", response_model=QuotaResponse)
async def grant_allocation(req: GrantAllocationRequest, request: Request) -> QuotaResponse:
    auth = await _authenticate(request)
    settings = app.state.settings
    admin_email = (settings.admin_email or "").strip().lower()
    if not admin_email or (auth.email or "").strip().lower() != admin_email:
        raise HTTPException(status_code=403, detail="forbidden")
    service: QuotaService = app.state.quota_service
    try:
        quota = await service.grant_allocation(
            uid=req.uid,
            amount=req.amount,
            reason=req.reason,
            updated_by=auth.email,
        )
    except QuotaLedgerError as exc:
        _raise_http(exc)
    return _quota_response(req.uid, quota)
