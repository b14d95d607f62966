"""
Abstract contracts for the rule store and the session provider.

Each backend implements its own storage-specific syntax. Reads return plain
row dicts; an empty result means "no record". Any storage fault is raised
as RuleStoreError so each decision path can pick fail-open or fail-closed.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any


# Tables whose changes invalidate the evaluation snapshot
WATCHED_TABLES = (
    "role_permission_matrix",
    "user_permission_overrides",
    "role_permissions",
    "system_policies",
    "policy_conflicts",
)


@dataclass(frozen=True)
class ChangeEvent:
    """A single insert/update/delete notification from the store."""
    table: str
    event_type: str  # 'INSERT', 'UPDATE', 'DELETE'
    record_id: str | None = None


class RuleStore(ABC):
    """
    Durable record store for permission rules, policies and conflicts.

    Backends (memory, Supabase) implement this interface with their own
    storage-specific syntax.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'supabase')."""
        pass

    @abstractmethod
    def init_db(self) -> None:
        """Initialize connections."""
        pass

    # =========================================================================
    # PERMISSION MATRIX
    # =========================================================================

    @abstractmethod
    def list_matrix_entries(self, role: str | None = None) -> list[dict[str, Any]]:
        """Fetch matrix entries, optionally for a single role."""
        pass

    @abstractmethod
    def upsert_matrix_entry(self, row: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace the entry for (role, module_name)."""
        pass

    # =========================================================================
    # USER OVERRIDES
    # =========================================================================

    @abstractmethod
    def list_user_overrides(
        self,
        user_id: str,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch a user's overrides that have not expired at `now`."""
        pass

    @abstractmethod
    def upsert_user_override(self, row: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace the override for (user, module, action, scope)."""
        pass

    @abstractmethod
    def delete_user_override(self, override_id: str) -> bool:
        """Delete an override. Returns False if it did not exist."""
        pass

    # =========================================================================
    # LEGACY ROLE PERMISSIONS
    # =========================================================================

    @abstractmethod
    def list_role_permissions(self, role: str | None = None) -> list[dict[str, Any]]:
        """Fetch legacy role permission records."""
        pass

    # =========================================================================
    # POLICIES
    # =========================================================================

    @abstractmethod
    def list_policies(self, active_only: bool = True) -> list[dict[str, Any]]:
        """Fetch policies ordered by priority descending."""
        pass

    @abstractmethod
    def get_policy(self, policy_id: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def get_policy_by_key(self, policy_key: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def create_policy(self, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a policy and return the stored row (with id)."""
        pass

    @abstractmethod
    def update_policy(self, policy_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        """Apply a partial update. Returns None if the policy does not exist."""
        pass

    @abstractmethod
    def delete_policy(self, policy_id: str) -> bool:
        pass

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    @abstractmethod
    def list_conflicts(self, unresolved_only: bool = True) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    def get_conflict(self, conflict_id: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def create_conflict(self, row: dict[str, Any]) -> dict[str, Any]:
        pass

    @abstractmethod
    def resolve_conflict(
        self,
        conflict_id: str,
        notes: str,
        resolved_by: str | None = None,
    ) -> dict[str, Any] | None:
        """Mark a conflict resolved. Returns None if it does not exist."""
        pass

    # =========================================================================
    # CHANGE NOTIFICATIONS
    # =========================================================================

    @abstractmethod
    def watch(self, tables: tuple[str, ...] = WATCHED_TABLES) -> AsyncIterator[ChangeEvent]:
        """
        Stream change events for the given tables.

        The iterator runs until the consuming task is cancelled; backends
        release their subscription on cancellation.
        """
        pass


class SessionProvider(ABC):
    """
    Identity and session records: base role assignments, role previews and
    tenant impersonation sessions.
    """

    @abstractmethod
    def list_role_assignments(self, user_id: str) -> list[dict[str, Any]]:
        """All base role assignments for a user, across tenants."""
        pass

    @abstractmethod
    def get_role_preview(self, user_id: str) -> dict[str, Any] | None:
        """The user's preview record, active or not."""
        pass

    @abstractmethod
    def set_role_preview(
        self,
        user_id: str,
        preview_role: str,
        expires_at: datetime | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        pass

    @abstractmethod
    def clear_role_preview(self, user_id: str) -> None:
        pass

    @abstractmethod
    def get_impersonation(self, user_id: str) -> dict[str, Any] | None:
        """The user's tenant impersonation record, active or not."""
        pass

    @abstractmethod
    def set_impersonation(
        self,
        user_id: str,
        tenant_id: str,
        home_tenant_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> dict[str, Any]:
        pass

    @abstractmethod
    def clear_impersonation(self, user_id: str) -> None:
        pass
