"""
hr-authz data layer.

Provides the RuleStore / SessionProvider contracts and their backends:
- memory: local development and tests
- supabase: deployments (PostgREST reads/writes, Realtime notifications)

Usage:
    from hr_authz.db import get_rule_store

    store = get_rule_store()
"""

from .base import WATCHED_TABLES, ChangeEvent, RuleStore, SessionProvider
from .database import get_rule_store

__all__ = [
    "WATCHED_TABLES",
    "ChangeEvent",
    "RuleStore",
    "SessionProvider",
    "get_rule_store",
]
