"""
In-memory rule store and session provider.

Features:
- Full RuleStore + SessionProvider contract
- Change notifications fanned out to every `watch()` subscriber
- Thread-safe via a single lock (writes may come from worker threads)

Good for local development and tests. Data is lost on restart.
"""

import asyncio
import copy
import logging
import threading
import uuid
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from ...models.roles import normalize_action_key, normalize_module_key, normalize_scope
from ...models.rules import parse_timestamp, utcnow
from ..base import WATCHED_TABLES, ChangeEvent, RuleStore, SessionProvider

logger = logging.getLogger("hr-authz")


class MemoryRuleStore(RuleStore, SessionProvider):
    """Dict-backed store holding every table the engine reads."""

    def __init__(self, seed: dict[str, list[dict[str, Any]]] | None = None):
        self._lock = threading.Lock()
        self._matrix: dict[tuple[str, str], dict[str, Any]] = {}
        self._overrides: dict[str, dict[str, Any]] = {}
        self._role_permissions: list[dict[str, Any]] = []
        self._policies: dict[str, dict[str, Any]] = {}
        self._conflicts: dict[str, dict[str, Any]] = {}
        self._assignments: list[dict[str, Any]] = []
        self._previews: dict[str, dict[str, Any]] = {}
        self._impersonations: dict[str, dict[str, Any]] = {}
        self._subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue, frozenset[str]]] = []
        if seed:
            self.load_fixture(seed)

    @property
    def name(self) -> str:
        return "memory"

    def init_db(self) -> None:
        logger.info("[STORE] Memory store ready")

    def load_fixture(self, seed: dict[str, list[dict[str, Any]]]) -> None:
        """Bulk-load rows keyed by table name."""
        for row in seed.get("role_permission_matrix", []):
            self.upsert_matrix_entry(row)
        for row in seed.get("user_permission_overrides", []):
            self.upsert_user_override(row)
        for row in seed.get("role_permissions", []):
            self.add_role_permission(row)
        for row in seed.get("system_policies", []):
            self.create_policy(row)
        for row in seed.get("user_roles", []):
            self.add_role_assignment(row)

    # =========================================================================
    # CHANGE NOTIFICATIONS
    # =========================================================================

    def _publish(self, table: str, event_type: str, record_id: str | None = None) -> None:
        event = ChangeEvent(table=table, event_type=event_type, record_id=record_id)
        with self._lock:
            subscribers = list(self._subscribers)
        for loop, queue, tables in subscribers:
            if table not in tables or loop.is_closed():
                continue
            loop.call_soon_threadsafe(queue.put_nowait, event)

    async def watch(self, tables: tuple[str, ...] = WATCHED_TABLES) -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        subscriber = (asyncio.get_running_loop(), queue, frozenset(tables))
        with self._lock:
            self._subscribers.append(subscriber)
        logger.debug(f"[STORE] Watch subscribed to {', '.join(tables)}")
        try:
            while True:
                yield await queue.get()
        finally:
            with self._lock:
                self._subscribers.remove(subscriber)
            logger.debug("[STORE] Watch unsubscribed")

    # =========================================================================
    # PERMISSION MATRIX
    # =========================================================================

    def list_matrix_entries(self, role: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(self._matrix.values())
        if role is not None:
            rows = [r for r in rows if r.get("role") == role]
        return copy.deepcopy(rows)

    def upsert_matrix_entry(self, row: dict[str, Any]) -> dict[str, Any]:
        module = row.get("module_name") or row.get("module")
        key = (str(row.get("role")), normalize_module_key(module))
        stored = {**row, "module_name": module}
        with self._lock:
            self._matrix[key] = stored
        self._publish("role_permission_matrix", "UPDATE")
        return copy.deepcopy(stored)

    # =========================================================================
    # USER OVERRIDES
    # =========================================================================

    def list_user_overrides(self, user_id: str, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utcnow()
        with self._lock:
            rows = [r for r in self._overrides.values() if str(r.get("user_id")) == str(user_id)]
        live = []
        for row in rows:
            expires_at = parse_timestamp(row.get("expires_at"))
            if expires_at is None or expires_at > now:
                live.append(row)
        return copy.deepcopy(live)

    def upsert_user_override(self, row: dict[str, Any]) -> dict[str, Any]:
        key = (
            str(row.get("user_id")),
            normalize_module_key(row.get("module_name") or row.get("module")),
            normalize_action_key(row.get("action")),
            normalize_scope(row.get("scope")),
        )
        with self._lock:
            existing = next(
                (r for r in self._overrides.values() if self._override_key(r) == key),
                None,
            )
            override_id = str(row.get("id") or (existing or {}).get("id") or uuid.uuid4())
            stored = {**row, "id": override_id}
            self._overrides[override_id] = stored
        self._publish("user_permission_overrides", "UPDATE", override_id)
        return copy.deepcopy(stored)

    @staticmethod
    def _override_key(row: dict[str, Any]) -> tuple[str, str, str, str]:
        return (
            str(row.get("user_id")),
            normalize_module_key(row.get("module_name") or row.get("module")),
            normalize_action_key(row.get("action")),
            normalize_scope(row.get("scope")),
        )

    def delete_user_override(self, override_id: str) -> bool:
        with self._lock:
            removed = self._overrides.pop(str(override_id), None)
        if removed is None:
            return False
        self._publish("user_permission_overrides", "DELETE", str(override_id))
        return True

    # =========================================================================
    # LEGACY ROLE PERMISSIONS
    # =========================================================================

    def list_role_permissions(self, role: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(self._role_permissions)
        if role is not None:
            rows = [r for r in rows if r.get("role") == role]
        return copy.deepcopy(rows)

    def add_role_permission(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._role_permissions.append(dict(row))
        self._publish("role_permissions", "INSERT")
        return dict(row)

    # =========================================================================
    # POLICIES
    # =========================================================================

    def list_policies(self, active_only: bool = True) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(self._policies.values())
        if active_only:
            rows = [r for r in rows if r.get("is_active", True)]
        rows.sort(key=lambda r: int(r.get("priority") or 0), reverse=True)
        return copy.deepcopy(rows)

    def get_policy(self, policy_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._policies.get(str(policy_id))
        return copy.deepcopy(row) if row else None

    def get_policy_by_key(self, policy_key: str) -> dict[str, Any] | None:
        with self._lock:
            row = next((r for r in self._policies.values() if r.get("policy_key") == policy_key), None)
        return copy.deepcopy(row) if row else None

    def create_policy(self, row: dict[str, Any]) -> dict[str, Any]:
        now = utcnow().isoformat()
        policy_id = str(row.get("id") or uuid.uuid4())
        stored = {**row, "id": policy_id, "created_at": now, "updated_at": now}
        with self._lock:
            self._policies[policy_id] = stored
        self._publish("system_policies", "INSERT", policy_id)
        return copy.deepcopy(stored)

    def update_policy(self, policy_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            existing = self._policies.get(str(policy_id))
            if existing is None:
                return None
            stored = {**existing, **patch, "id": existing["id"], "updated_at": utcnow().isoformat()}
            self._policies[existing["id"]] = stored
        self._publish("system_policies", "UPDATE", str(policy_id))
        return copy.deepcopy(stored)

    def delete_policy(self, policy_id: str) -> bool:
        with self._lock:
            removed = self._policies.pop(str(policy_id), None)
        if removed is None:
            return False
        self._publish("system_policies", "DELETE", str(policy_id))
        return True

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    def list_conflicts(self, unresolved_only: bool = True) -> list[dict[str, Any]]:
        with self._lock:
            rows = list(self._conflicts.values())
        if unresolved_only:
            rows = [r for r in rows if not r.get("is_resolved")]
        rows.sort(key=lambda r: r.get("detected_at") or "")
        return copy.deepcopy(rows)

    def get_conflict(self, conflict_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conflicts.get(str(conflict_id))
        return copy.deepcopy(row) if row else None

    def create_conflict(self, row: dict[str, Any]) -> dict[str, Any]:
        conflict_id = str(row.get("id") or uuid.uuid4())
        stored = {
            "is_resolved": False,
            "detected_at": utcnow().isoformat(),
            **row,
            "id": conflict_id,
        }
        with self._lock:
            self._conflicts[conflict_id] = stored
        self._publish("policy_conflicts", "INSERT", conflict_id)
        return copy.deepcopy(stored)

    def resolve_conflict(
        self,
        conflict_id: str,
        notes: str,
        resolved_by: str | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            existing = self._conflicts.get(str(conflict_id))
            if existing is None:
                return None
            existing.update({
                "is_resolved": True,
                "resolution_notes": notes,
                "resolved_by": resolved_by,
                "resolved_at": utcnow().isoformat(),
            })
            stored = copy.deepcopy(existing)
        self._publish("policy_conflicts", "UPDATE", str(conflict_id))
        return stored

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def add_role_assignment(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._assignments.append(dict(row))
        return dict(row)

    def list_role_assignments(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._assignments if str(r.get("user_id")) == str(user_id)]

    def get_role_preview(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._previews.get(str(user_id))
        return dict(row) if row else None

    def set_role_preview(
        self,
        user_id: str,
        preview_role: str,
        expires_at: datetime | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        row = {
            "user_id": str(user_id),
            "preview_role": preview_role,
            "is_preview_active": True,
            "company_id": tenant_id,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }
        with self._lock:
            self._previews[str(user_id)] = row
        return dict(row)

    def clear_role_preview(self, user_id: str) -> None:
        with self._lock:
            row = self._previews.get(str(user_id))
            if row:
                row["is_preview_active"] = False

    def get_impersonation(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._impersonations.get(str(user_id))
        return dict(row) if row else None

    def set_impersonation(
        self,
        user_id: str,
        tenant_id: str,
        home_tenant_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> dict[str, Any]:
        row = {
            "session_user_id": str(user_id),
            "impersonated_company_id": str(tenant_id),
            "original_company_id": home_tenant_id,
            "is_active": True,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }
        with self._lock:
            self._impersonations[str(user_id)] = row
        return dict(row)

    def clear_impersonation(self, user_id: str) -> None:
        with self._lock:
            row = self._impersonations.get(str(user_id))
            if row:
                row["is_active"] = False
