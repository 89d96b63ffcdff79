"""
Quota Ledger - per-user usage credits with reservation holds.

This package tracks a credit allocation per authenticated user and lets a
billable unit of work (one generation session) reserve credits up front:

- Profiles are created on first login with the configured default grant
- ``place_hold`` moves credits from ``remaining`` to ``on_hold``
- ``commit_hold`` consumes them, ``release_hold`` refunds them
- Holds left behind by crashed workers expire and are reclaimed lazily

Every mutation is one atomic read-modify-write of the user's profile
document, so concurrent reservations can never overdraw a user.

Example:
    ```python
    from quota_ledger import (
        AccessPolicyProvider,
        InMemoryProfileStore,
        QuotaService,
        StaticPolicySource,
    )

    service = QuotaService(
        store=InMemoryProfileStore(),
        policy_provider=AccessPolicyProvider(StaticPolicySource()),
    )
    await service.ensure_profile(uid="u1", email="a@example.com")

    async with service.hold(uid="u1", session_id="chat-1:req-1"):
        await generate()
    ```
"""

from .errors import (
    ErrorCode,
    ErrorContext,
    InvalidArgumentError,
    LedgerError,
    ProfileNotFoundError,
    QuotaExceededError,
    QuotaLedgerError,
    StoreError,
    TransactionConflictError,
    is_retryable,
)
from .logging import (
    HoldLog,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from .policy import (
    DEFAULT_ACCESS_POLICY,
    AccessPolicy,
    AccessPolicyProvider,
    AccessPolicySource,
    StaticPolicySource,
)
from .profiles import (
    AllocationEntry,
    HoldPlacement,
    HoldStatus,
    InMemoryProfileStore,
    ProfileStore,
    ProfileTransaction,
    QuotaSnapshot,
    TokenHold,
    UserProfile,
    UserQuota,
)
from .service import QuotaService

__version__ = "0.1.0"

__all__ = [
    # Service
    "QuotaService",
    # Profiles
    "AllocationEntry",
    "HoldPlacement",
    "HoldStatus",
    "QuotaSnapshot",
    "TokenHold",
    "UserProfile",
    "UserQuota",
    # Stores
    "ProfileStore",
    "ProfileTransaction",
    "InMemoryProfileStore",
    # Policy
    "AccessPolicy",
    "AccessPolicyProvider",
    "AccessPolicySource",
    "StaticPolicySource",
    "DEFAULT_ACCESS_POLICY",
    # Errors
    "ErrorCode",
    "ErrorContext",
    "QuotaLedgerError",
    "LedgerError",
    "ProfileNotFoundError",
    "QuotaExceededError",
    "InvalidArgumentError",
    "StoreError",
    "TransactionConflictError",
    "is_retryable",
    # Logging
    "HoldLog",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
]
