"""
PostgreSQL storage adapters for the quota ledger.

This module provides:
- PostgresProfileStore: profile documents with row-locked transactions
- PostgresPolicySource: access-policy config row with bootstrap

Profiles are stored as one JSONB document per uid. A transaction attempt
locks the row with ``SELECT ... FOR UPDATE`` for its whole read-modify-write,
so same-uid writers queue on the row lock; serialization failures,
deadlocks and racing first inserts are reported to the retry loop in
``ProfileStore.transact``.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, TypeVar

import asyncpg

from ..errors import ErrorContext, StoreError
from ..logging import get_logger
from ..policy import DEFAULT_ACCESS_POLICY, AccessPolicy, AccessPolicySource
from ..profiles.store import ProfileStore, ProfileTransaction, TransactionFn, WriteConflict
from ..profiles.types import UserProfile

T = TypeVar("T")

logger = get_logger("quota_ledger.storage.postgres")

_RETRYABLE_PG_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


def _sanitize_table_name(name: str) -> str:
    """Ensure the table name is safe for SQL interpolation."""
    if not name:
        raise ValueError("table_name cannot be empty")
    if not re.fullmatch(r"[a-zA-Z0-9_]+", name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def _unavailable(uid: str, operation: str, exc: Exception) -> StoreError:
    logger.error(
        "Profile store unavailable",
        uid=uid,
        operation=operation,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    return StoreError(
        "Profile store unavailable",
        context=ErrorContext(uid=uid, operation=operation),
        cause=exc,
    )


def _load_doc(raw: Any) -> dict[str, Any]:
    """JSONB columns come back as text unless a codec is registered."""
    if isinstance(raw, str):
        return json.loads(raw)
    if isinstance(raw, dict):
        return dict(raw)
    raise TypeError(f"Unexpected JSONB payload type: {type(raw).__name__}")


# =============================================================================
# PostgresProfileStore
# =============================================================================


class PostgresProfileStore(ProfileStore):
    """PostgreSQL implementation of ProfileStore.

    Table schema:
    - uid (TEXT PRIMARY KEY)
    - doc (JSONB) serialized UserProfile
    - version (BIGINT) bumped on every write
    - created_at, updated_at (TIMESTAMPTZ)
    """

    TABLE_NAME = "user_profiles"

    def __init__(
        self,
        pool: Any,  # asyncpg.Pool
        table_name: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._pool = pool
        self._table = _sanitize_table_name(table_name or self.TABLE_NAME)
        self._ensured = False
        self._lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        """Create the profiles table if it doesn't exist."""
        async with self._lock:
            if self._ensured:
                return
            async with self._pool.acquire() as conn:
                await conn.execute(
                    f'''
                    CREATE TABLE IF NOT EXISTS "{self._table}" (
                        uid TEXT PRIMARY KEY,
                        doc JSONB NOT NULL,
                        version BIGINT NOT NULL DEFAULT 1,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    );
                    '''
                )
            self._ensured = True

    async def get(self, uid: str) -> UserProfile | None:
        await self.ensure_schema()
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    f'SELECT doc FROM "{self._table}" WHERE uid=$1;',
                    uid,
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise _unavailable(uid, "get", exc) from exc
        if row is None:
            return None
        return UserProfile.from_dict(_load_doc(row["doc"]))

    async def set(self, profile: UserProfile) -> None:
        await self.ensure_schema()
        async with self._pool.acquire() as conn:
            await conn.execute(
                f'''
                INSERT INTO "{self._table}" (uid, doc, version, created_at, updated_at)
                VALUES ($1, $2::jsonb, 1, NOW(), NOW())
                ON CONFLICT (uid) DO UPDATE
                SET doc=EXCLUDED.doc,
                    version="{self._table}".version + 1,
                    updated_at=NOW();
                ''',
                profile.uid,
                json.dumps(profile.to_dict()),
            )

    async def _attempt(self, uid: str, fn: TransactionFn[T]) -> T:
        await self.ensure_schema()
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f'SELECT doc, version FROM "{self._table}" WHERE uid=$1 FOR UPDATE;',
                        uid,
                    )
                    profile = UserProfile.from_dict(_load_doc(row["doc"])) if row is not None else None
                    tx = ProfileTransaction(uid, profile)

                    result = await fn(tx)
                    if tx.pending is None:
                        return result

                    doc = json.dumps(tx.pending.to_dict())
                    if row is None:
                        inserted = await conn.fetchval(
                            f'''
                            INSERT INTO "{self._table}" (uid, doc, version, created_at, updated_at)
                            VALUES ($1, $2::jsonb, 1, NOW(), NOW())
                            ON CONFLICT (uid) DO NOTHING
                            RETURNING version;
                            ''',
                            uid,
                            doc,
                        )
                        if inserted is None:
                            # Another transaction created the row after our SELECT.
                            raise WriteConflict(uid, "concurrent_insert")
                    else:
                        await conn.execute(
                            f'''
                            UPDATE "{self._table}"
                            SET doc=$2::jsonb, version=version + 1, updated_at=NOW()
                            WHERE uid=$1;
                            ''',
                            uid,
                            doc,
                        )
                    return result
        except _RETRYABLE_PG_ERRORS as exc:
            raise WriteConflict(uid, type(exc).__name__) from exc
        except (asyncpg.PostgresError, OSError) as exc:
            raise _unavailable(uid, "transact", exc) from exc


# =============================================================================
# PostgresPolicySource
# =============================================================================


class PostgresPolicySource(AccessPolicySource):
    """Access policy stored as a JSONB row of a key/value config table.

    The row is created with ``bootstrap_policy`` the first time it is found
    missing so operators have a document to edit.
    """

    TABLE_NAME = "app_config"
    CONFIG_KEY = "access_control"

    def __init__(
        self,
        pool: Any,  # asyncpg.Pool
        *,
        bootstrap_policy: AccessPolicy = DEFAULT_ACCESS_POLICY,
        table_name: str | None = None,
        config_key: str | None = None,
    ):
        self._pool = pool
        self._bootstrap_policy = bootstrap_policy
        self._table = _sanitize_table_name(table_name or self.TABLE_NAME)
        self._key = config_key or self.CONFIG_KEY
        self._ensured = False
        self._lock = asyncio.Lock()

    async def ensure_schema(self) -> None:
        async with self._lock:
            if self._ensured:
                return
            async with self._pool.acquire() as conn:
                await conn.execute(
                    f'''
                    CREATE TABLE IF NOT EXISTS "{self._table}" (
                        key TEXT PRIMARY KEY,
                        value JSONB NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    );
                    '''
                )
            self._ensured = True

    async def load(self) -> AccessPolicy | None:
        await self.ensure_schema()
        select_sql = f'SELECT value FROM "{self._table}" WHERE key=$1;'
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(select_sql, self._key)
            if row is None:
                created = await conn.fetchval(
                    f'''
                    INSERT INTO "{self._table}" (key, value, updated_at)
                    VALUES ($1, $2::jsonb, NOW())
                    ON CONFLICT (key) DO NOTHING
                    RETURNING key;
                    ''',
                    self._key,
                    json.dumps(self._bootstrap_policy.to_dict()),
                )
                if created is not None:
                    logger.warning(
                        "Auto-created access-control config; review it",
                        table=self._table,
                        key=self._key,
                    )
                row = await conn.fetchrow(select_sql, self._key)
        if row is None:
            return None
        return AccessPolicy.from_dict(_load_doc(row["value"]))


__all__ = ["PostgresProfileStore", "PostgresPolicySource"]
