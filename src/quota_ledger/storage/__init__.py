"""
Storage adapters for the quota ledger.

This module provides persistent implementations for:
- Profiles (PostgresProfileStore)
- Access policy config (PostgresPolicySource)

Requires asyncpg.
"""

from .postgres import PostgresPolicySource, PostgresProfileStore

__all__ = [
    "PostgresProfileStore",
    "PostgresPolicySource",
]
