"""
Profile store implementations.

This module provides the ProfileStore interface and an in-memory
implementation. Every store offers an optimistic read-modify-write
transaction scoped to one profile document:

    async def fn(tx: ProfileTransaction):
        profile = tx.get()
        ...
        tx.set(profile)
        return profile

    await store.transact(uid, fn)

Writes issued through ``tx.set`` are buffered and committed atomically
after ``fn`` returns. If another writer changed the document in the
meantime the store re-runs ``fn`` against the fresh state, up to
``max_attempts`` times, then raises ``TransactionConflictError``. An
exception raised by ``fn`` aborts the transaction without writing.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..errors import ErrorContext, TransactionConflictError
from ..logging import get_logger
from .types import UserProfile

T = TypeVar("T")

logger = get_logger("quota_ledger.store")


class WriteConflict(Exception):
    """Raised by a store attempt when the document changed underneath it."""

    def __init__(self, uid: str, reason: str = "version_mismatch") -> None:
        super().__init__(f"Write conflict on profile {uid}: {reason}")
        self.uid = uid
        self.reason = reason


class ProfileTransaction:
    """Handle passed to a transaction function.

    ``get`` returns the profile as read at the start of the attempt (or None),
    ``set`` buffers the document that will be written on commit.
    """

    def __init__(self, uid: str, profile: UserProfile | None) -> None:
        self.uid = uid
        self._profile = profile
        self._pending: UserProfile | None = None

    @property
    def exists(self) -> bool:
        return self._profile is not None

    @property
    def pending(self) -> UserProfile | None:
        return self._pending

    def get(self) -> UserProfile | None:
        return self._profile

    def set(self, profile: UserProfile) -> None:
        if profile.uid != self.uid:
            raise ValueError(f"Transaction for {self.uid} cannot write profile {profile.uid}")
        self._pending = profile


TransactionFn = Callable[[ProfileTransaction], Awaitable[T]]


class ProfileStore(ABC):
    """Abstract interface for profile persistence.

    Subclasses implement ``get``, ``set`` and a single transaction attempt;
    the retry loop lives here so every backend shares the same budget and
    backoff.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        retry_base_delay: float = 0.02,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if retry_base_delay < 0:
            raise ValueError("retry_base_delay cannot be negative")
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay

    @abstractmethod
    async def get(self, uid: str) -> UserProfile | None:
        """Get a profile by uid (outside any transaction)."""
        ...

    @abstractmethod
    async def set(self, profile: UserProfile) -> None:
        """Unconditionally write a profile (outside any transaction)."""
        ...

    @abstractmethod
    async def _attempt(self, uid: str, fn: TransactionFn[T]) -> T:
        """Run ``fn`` once and commit its buffered write.

        Raises:
            WriteConflict: If the document changed since it was read
        """
        ...

    async def transact(self, uid: str, fn: TransactionFn[T]) -> T:
        """Run ``fn`` as an atomic read-modify-write of the profile ``uid``."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._attempt(uid, fn)
            except WriteConflict as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Transaction retries exhausted",
                        uid=uid,
                        attempts=attempt,
                        reason=exc.reason,
                    )
                    raise TransactionConflictError(
                        attempts=attempt,
                        context=ErrorContext(uid=uid, operation="transact", attempt=attempt),
                        cause=exc,
                    ) from exc
                logger.debug("Transaction conflict; retrying", uid=uid, attempt=attempt, reason=exc.reason)
                await asyncio.sleep(self._retry_delay(attempt))
        raise AssertionError("unreachable")

    def _retry_delay(self, attempt: int) -> float:
        if self.retry_base_delay <= 0:
            return 0.0
        base = self.retry_base_delay * (2 ** min(6, attempt - 1))
        return base + random.uniform(0, self.retry_base_delay)


class InMemoryProfileStore(ProfileStore):
    """In-memory profile store with versioned compare-and-swap commits.

    Suitable for testing and single-process deployments. Documents are kept
    as dicts so callers never share mutable objects with the store.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._docs: dict[str, tuple[int, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, uid: str) -> UserProfile | None:
        async with self._lock:
            entry = self._docs.get(uid)
        if entry is None:
            return None
        return UserProfile.from_dict(entry[1])

    async def set(self, profile: UserProfile) -> None:
        async with self._lock:
            version = self._docs.get(profile.uid, (0, {}))[0]
            self._docs[profile.uid] = (version + 1, profile.to_dict())

    def version(self, uid: str) -> int:
        return self._docs.get(uid, (0, {}))[0]

    async def _attempt(self, uid: str, fn: TransactionFn[T]) -> T:
        async with self._lock:
            entry = self._docs.get(uid)
        read_version = entry[0] if entry else 0
        tx = ProfileTransaction(uid, UserProfile.from_dict(entry[1]) if entry else None)

        # Yield between read and commit so concurrent transactions interleave.
        await asyncio.sleep(0)
        result = await fn(tx)
        if tx.pending is None:
            return result

        async with self._lock:
            if self.version(uid) != read_version:
                raise WriteConflict(uid)
            self._docs[uid] = (read_version + 1, tx.pending.to_dict())
        return result
