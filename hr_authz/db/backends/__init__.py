"""
Rule store backends.

Available backends:
- MemoryRuleStore: in-process dicts with change fan-out
- SupabaseRuleStore: Supabase tables + Realtime postgres_changes
"""

from .memory import MemoryRuleStore
from .supabase import SupabaseRuleStore

__all__ = ["MemoryRuleStore", "SupabaseRuleStore"]
