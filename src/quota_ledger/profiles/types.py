"""
Profile types for the quota ledger.

This module defines the HoldStatus enum and the UserProfile / UserQuota /
TokenHold / AllocationEntry dataclasses that make up one user's ledger
document, plus their dict (JSON) representation used by every store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..logging import get_logger

logger = get_logger("quota_ledger.profiles")


class HoldStatus(str, Enum):
    """Hold lifecycle states.

    State transitions:
    - ACTIVE -> COMMITTED (generation succeeded, credits consumed)
    - ACTIVE -> RELEASED (generation failed or was cancelled)

    Completing a hold removes it from the holds map, so COMMITTED and
    RELEASED are only observed during the transition itself.
    """
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    return datetime.fromisoformat(str(value))


@dataclass
class TokenHold:
    """Reservation of credits owned by one generation session."""
    session_id: str
    amount: int
    placed_at: datetime
    updated_at: datetime
    status: HoldStatus = HoldStatus.ACTIVE
    expires_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == HoldStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        """Active holds with an ``expires_at`` at or before ``now`` are stale."""
        if not self.is_active or self.expires_at is None:
            return False
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "amount": self.amount,
            "status": self.status.value,
            "placed_at": _format_datetime(self.placed_at),
            "updated_at": _format_datetime(self.updated_at),
            "expires_at": _format_datetime(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenHold:
        """Parse a stored hold.

        Raises:
            KeyError: If ``session_id`` or ``amount`` is missing
            TypeError: If ``amount`` is not an integer
            ValueError: If ``amount`` is not positive, or status or a timestamp is unreadable
        """
        amount = data["amount"]
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise TypeError(f"hold amount must be an integer, got {amount!r}")
        if amount <= 0:
            raise ValueError(f"hold amount must be positive, got {amount}")
        return cls(
            session_id=str(data["session_id"]),
            amount=amount,
            status=HoldStatus(data.get("status", HoldStatus.ACTIVE.value)),
            placed_at=_parse_datetime(data.get("placed_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
            expires_at=_parse_datetime(data.get("expires_at")),
        )


@dataclass
class UserQuota:
    """Mutable ledger state embedded in a profile.

    Stored hold records that cannot be parsed are kept verbatim in
    ``malformed``: they are written back unchanged, but never looked up,
    swept, committed or released.
    """
    total_allocated: int = 0
    remaining: int = 0
    on_hold: int = 0
    holds: dict[str, TokenHold] = field(default_factory=dict)
    malformed: dict[str, Any] = field(default_factory=dict)

    def active_hold(self, session_id: str) -> TokenHold | None:
        hold = self.holds.get(session_id)
        if hold is None or not hold.is_active:
            return None
        return hold

    def summary(self) -> dict[str, int]:
        """Display projection (no holds)."""
        return {
            "total_allocated": self.total_allocated,
            "remaining": self.remaining,
            "on_hold": self.on_hold,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "holds": {
                **self.malformed,
                **{key: hold.to_dict() for key, hold in self.holds.items()},
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UserQuota:
        data = data or {}
        holds: dict[str, TokenHold] = {}
        malformed: dict[str, Any] = {}
        for key, raw in (data.get("holds") or {}).items():
            try:
                holds[key] = TokenHold.from_dict(raw)
            except (KeyError, TypeError, ValueError, OverflowError) as exc:
                logger.warning(
                    "Skipping malformed hold record",
                    session_id=key,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                malformed[key] = raw
        return cls(
            total_allocated=int(data.get("total_allocated", 0)),
            remaining=int(data.get("remaining", 0)),
            on_hold=int(data.get("on_hold", 0)),
            holds=holds,
            malformed=malformed,
        )


@dataclass
class AllocationEntry:
    """Audit record of a credit grant. Entries are only ever appended."""
    amount: int
    timestamp: datetime
    reason: str | None = None
    updated_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "reason": self.reason,
            "updated_by": self.updated_by,
            "timestamp": _format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AllocationEntry:
        return cls(
            amount=int(data["amount"]),
            reason=data.get("reason"),
            updated_by=data.get("updated_by"),
            timestamp=_parse_datetime(data.get("timestamp")),
        )


@dataclass
class UserProfile:
    """Persistent ledger document for one authenticated user."""
    # Identity
    uid: str
    email: str

    # Timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    # Descriptive
    display_name: str | None = None
    photo_url: str | None = None

    # Ledger
    quota: UserQuota = field(default_factory=UserQuota)
    allocations: list[AllocationEntry] = field(default_factory=list)

    def touch(self, now: datetime) -> None:
        self.updated_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "display_name": self.display_name,
            "photo_url": self.photo_url,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
            "quota": self.quota.to_dict(),
            "allocations": [entry.to_dict() for entry in self.allocations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserProfile:
        return cls(
            uid=data["uid"],
            email=data.get("email") or "",
            display_name=data.get("display_name"),
            photo_url=data.get("photo_url"),
            created_at=_parse_datetime(data.get("created_at")) or utc_now(),
            updated_at=_parse_datetime(data.get("updated_at")) or utc_now(),
            quota=UserQuota.from_dict(data.get("quota")),
            allocations=[
                AllocationEntry.from_dict(entry)
                for entry in (data.get("allocations") or [])
            ],
        )


@dataclass(frozen=True)
class QuotaSnapshot:
    """Read-only projection returned by ``QuotaService.get_quota``."""
    uid: str
    quota: UserQuota

    def summary(self) -> dict[str, Any]:
        return {"uid": self.uid, **self.quota.summary()}


@dataclass(frozen=True)
class HoldPlacement:
    """Result of ``QuotaService.place_hold``."""
    hold: TokenHold
    quota: UserQuota
