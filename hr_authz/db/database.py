"""
Rule store router - selects the configured backend.

Usage:
    from hr_authz.db import get_rule_store

    store = get_rule_store()
    store.list_policies()

Configuration:
    RULE_STORE_BACKEND = 'memory' | 'supabase'
    For Supabase, set DEV_SUPABASE_URL / PROD_SUPABASE_URL and the
    matching *_SUPABASE_SERVICE_ROLE_KEY.
"""

import logging
from functools import lru_cache

from ..config import settings
from .backends.memory import MemoryRuleStore
from .backends.supabase import SupabaseRuleStore
from .base import RuleStore

logger = logging.getLogger("hr-authz")


def _get_backend(backend: str) -> RuleStore:
    """
    Build the configured rule store backend.

    Unknown backend names fall back to memory with a warning.
    """
    if backend == "supabase":
        logger.info("[DB] Using Supabase backend")
        return SupabaseRuleStore()
    if backend != "memory":
        logger.warning(f"[DB] Unknown RULE_STORE_BACKEND '{backend}', using memory")
    logger.info("[DB] Using memory backend")
    return MemoryRuleStore()


@lru_cache
def get_rule_store() -> RuleStore:
    """Get the cached, initialized rule store."""
    store = _get_backend(settings.RULE_STORE_BACKEND)
    store.init_db()
    return store
