"""
User profiles: ledger document types and the stores that persist them.
"""

from .store import (
    InMemoryProfileStore,
    ProfileStore,
    ProfileTransaction,
    TransactionFn,
    WriteConflict,
)
from .types import (
    AllocationEntry,
    HoldPlacement,
    HoldStatus,
    QuotaSnapshot,
    TokenHold,
    UserProfile,
    UserQuota,
    utc_now,
)

__all__ = [
    # Types
    "AllocationEntry",
    "HoldPlacement",
    "HoldStatus",
    "QuotaSnapshot",
    "TokenHold",
    "UserProfile",
    "UserQuota",
    "utc_now",
    # Stores
    "InMemoryProfileStore",
    "ProfileStore",
    "ProfileTransaction",
    "TransactionFn",
    "WriteConflict",
]
