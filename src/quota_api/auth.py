from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Request


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    uid: str | None = None
    email: str | None = None
    unsigned: bool = False
    reason: str | None = None
    status_code: int = 401


class AuthAdapter:
    async def authenticate(self, *, request: Request) -> AuthResult:
        raise NotImplementedError


class TrustedHeaderAuthAdapter(AuthAdapter):
    """Identity asserted by the upstream web app that performed sign-in.

    The caller passes ``X-User-Id`` / ``X-User-Email`` and proves it is the
    trusted upstream with ``X-Internal-Token``. With ``allow_unsigned`` the
    token may be omitted entirely (local development only).
    """

    def __init__(self, *, internal_token: str | None, allow_unsigned: bool) -> None:
        self._internal_token = internal_token or None
        self._allow_unsigned = allow_unsigned

    async def authenticate(self, *, request: Request) -> AuthResult:
        uid = _header(request, "x-user-id")
        if not uid:
            return AuthResult(ok=False, reason="missing_identity", status_code=401)
        email = _header(request, "x-user-email")

        token = _header(request, "x-internal-token")
        if token is not None:
            if self._internal_token and hmac.compare_digest(token, self._internal_token):
                return AuthResult(ok=True, uid=uid, email=email)
            return AuthResult(ok=False, reason="invalid_internal_token", status_code=401)

        if self._allow_unsigned:
            return AuthResult(ok=True, uid=uid, email=email, unsigned=True)
        if not self._internal_token:
            return AuthResult(ok=False, reason="auth_not_configured", status_code=401)
        return AuthResult(ok=False, reason="missing_internal_token", status_code=401)


def _header(request: Request, name: str) -> str | None:
    value = request.headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None
