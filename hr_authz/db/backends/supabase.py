"""
Supabase rule store implementation.

Tables:
- role_permission_matrix, user_permission_overrides, role_permissions
- system_policies, policy_conflicts
- user_roles, user_role_preview_sessions, active_tenant_sessions

Reads and writes go through the synchronous PostgREST client. Change
notifications use a separate async client subscribed to Realtime
postgres_changes.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from ...exceptions import RuleStoreError
from ...models.rules import utcnow
from ..base import WATCHED_TABLES, ChangeEvent, RuleStore, SessionProvider

logger = logging.getLogger("hr-authz")


class SupabaseRuleStore(RuleStore, SessionProvider):
    """
    Supabase-backed rule store and session provider.

    The client is created lazily on first use. Every failed query raises
    RuleStoreError; empty results are returned as empty lists / None.
    """

    def __init__(
        self,
        url: str | None = None,
        key: str | None = None,
        timeout: int | None = None,
    ):
        self._url = url
        self._key = key
        self._timeout = timeout
        self._client = None

    @property
    def name(self) -> str:
        return "supabase"

    def _credentials(self) -> tuple[str, str, int]:
        from ...config import settings

        url = self._url or settings.supabase_url
        key = self._key or settings.supabase_key
        if not url or not key:
            raise RuleStoreError("Supabase credentials not configured")
        return url, key, self._timeout or settings.SUPABASE_TIMEOUT_SECONDS

    def _get_client(self):
        """Get or create the Supabase client (lazy initialization)."""
        if self._client is not None:
            return self._client

        url, key, timeout = self._credentials()
        try:
            from supabase import create_client
            from supabase.lib.client_options import ClientOptions

            options = ClientOptions(postgrest_client_timeout=timeout)
            self._client = create_client(url, key, options=options)
            logger.info("[SUPABASE] Client initialized successfully")
            return self._client
        except Exception as e:
            logger.error(f"[SUPABASE] Failed to initialize: {e}")
            raise RuleStoreError(f"Supabase client unavailable: {e}") from e

    def init_db(self) -> None:
        """
        Initialize the Supabase connection.

        Note: Schema is managed through SQL migrations, not here.
        """
        try:
            self._get_client()
            logger.info("[SUPABASE] Connected - tables: " + ", ".join(WATCHED_TABLES))
        except RuleStoreError as e:
            logger.warning(f"[SUPABASE] Not connected - running in degraded mode ({e})")

    def _execute(self, operation: str, build: Callable[[Any], Any]) -> list[dict[str, Any]]:
        """Build and execute a query, translating any failure into RuleStoreError."""
        client = self._get_client()
        try:
            response = build(client).execute()
        except Exception as e:
            logger.error(f"[STORE] {operation} failed: {e}")
            raise RuleStoreError(f"{operation} failed: {e}") from e
        return response.data or []

    def _now(self) -> str:
        return utcnow().isoformat()

    # =========================================================================
    # PERMISSION MATRIX
    # =========================================================================

    def list_matrix_entries(self, role: str | None = None) -> list[dict[str, Any]]:
        def build(client):
            query = client.table("role_permission_matrix").select("*")
            if role is not None:
                query = query.eq("role", role)
            return query

        return self._execute("list_matrix_entries", build)

    def upsert_matrix_entry(self, row: dict[str, Any]) -> dict[str, Any]:
        data = self._execute(
            "upsert_matrix_entry",
            lambda c: c.table("role_permission_matrix").upsert(row, on_conflict="role,module_name"),
        )
        return data[0] if data else dict(row)

    # =========================================================================
    # USER OVERRIDES
    # =========================================================================

    def list_user_overrides(self, user_id: str, now: datetime | None = None) -> list[dict[str, Any]]:
        cutoff = (now or utcnow()).isoformat()
        return self._execute(
            "list_user_overrides",
            lambda c: (
                c.table("user_permission_overrides")
                .select("*")
                .eq("user_id", user_id)
                .or_(f"expires_at.is.null,expires_at.gt.{cutoff}")
            ),
        )

    def upsert_user_override(self, row: dict[str, Any]) -> dict[str, Any]:
        data = self._execute(
            "upsert_user_override",
            lambda c: c.table("user_permission_overrides").upsert(
                row, on_conflict="user_id,module_name,action,scope"
            ),
        )
        return data[0] if data else dict(row)

    def delete_user_override(self, override_id: str) -> bool:
        data = self._execute(
            "delete_user_override",
            lambda c: c.table("user_permission_overrides").delete().eq("id", override_id),
        )
        return bool(data)

    # =========================================================================
    # LEGACY ROLE PERMISSIONS
    # =========================================================================

    def list_role_permissions(self, role: str | None = None) -> list[dict[str, Any]]:
        def build(client):
            query = client.table("role_permissions").select("*")
            if role is not None:
                query = query.eq("role", role)
            return query

        return self._execute("list_role_permissions", build)

    # =========================================================================
    # POLICIES
    # =========================================================================

    def list_policies(self, active_only: bool = True) -> list[dict[str, Any]]:
        def build(client):
            query = client.table("system_policies").select("*")
            if active_only:
                query = query.eq("is_active", True)
            return query.order("priority", desc=True)

        return self._execute("list_policies", build)

    def get_policy(self, policy_id: str) -> dict[str, Any] | None:
        data = self._execute(
            "get_policy",
            lambda c: c.table("system_policies").select("*").eq("id", policy_id),
        )
        return data[0] if data else None

    def get_policy_by_key(self, policy_key: str) -> dict[str, Any] | None:
        data = self._execute(
            "get_policy_by_key",
            lambda c: c.table("system_policies").select("*").eq("policy_key", policy_key),
        )
        return data[0] if data else None

    def create_policy(self, row: dict[str, Any]) -> dict[str, Any]:
        payload = {**row, "created_at": self._now(), "updated_at": self._now()}
        data = self._execute(
            "create_policy",
            lambda c: c.table("system_policies").insert(_serialize(payload)),
        )
        if not data:
            raise RuleStoreError("create_policy returned no row")
        return data[0]

    def update_policy(self, policy_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        payload = {**patch, "updated_at": self._now()}
        data = self._execute(
            "update_policy",
            lambda c: c.table("system_policies").update(_serialize(payload)).eq("id", policy_id),
        )
        return data[0] if data else None

    def delete_policy(self, policy_id: str) -> bool:
        data = self._execute(
            "delete_policy",
            lambda c: c.table("system_policies").delete().eq("id", policy_id),
        )
        return bool(data)

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    def list_conflicts(self, unresolved_only: bool = True) -> list[dict[str, Any]]:
        def build(client):
            query = client.table("policy_conflicts").select("*")
            if unresolved_only:
                query = query.eq("is_resolved", False)
            return query.order("detected_at")

        return self._execute("list_conflicts", build)

    def get_conflict(self, conflict_id: str) -> dict[str, Any] | None:
        data = self._execute(
            "get_conflict",
            lambda c: c.table("policy_conflicts").select("*").eq("id", conflict_id),
        )
        return data[0] if data else None

    def create_conflict(self, row: dict[str, Any]) -> dict[str, Any]:
        payload = {"is_resolved": False, "detected_at": self._now(), **row}
        data = self._execute(
            "create_conflict",
            lambda c: c.table("policy_conflicts").insert(payload),
        )
        if not data:
            raise RuleStoreError("create_conflict returned no row")
        return data[0]

    def resolve_conflict(
        self,
        conflict_id: str,
        notes: str,
        resolved_by: str | None = None,
    ) -> dict[str, Any] | None:
        data = self._execute(
            "resolve_conflict",
            lambda c: c.table("policy_conflicts").update({
                "is_resolved": True,
                "resolution_notes": notes,
                "resolved_by": resolved_by,
                "resolved_at": self._now(),
            }).eq("id", conflict_id),
        )
        return data[0] if data else None

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def list_role_assignments(self, user_id: str) -> list[dict[str, Any]]:
        return self._execute(
            "list_role_assignments",
            lambda c: c.table("user_roles").select("user_id, role, company_id").eq("user_id", user_id),
        )

    def get_role_preview(self, user_id: str) -> dict[str, Any] | None:
        data = self._execute(
            "get_role_preview",
            lambda c: c.table("user_role_preview_sessions").select("*").eq("user_id", user_id),
        )
        return data[0] if data else None

    def set_role_preview(
        self,
        user_id: str,
        preview_role: str,
        expires_at: datetime | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        row = {
            "user_id": user_id,
            "preview_role": preview_role,
            "is_preview_active": True,
            "company_id": tenant_id,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "updated_at": self._now(),
        }
        data = self._execute(
            "set_role_preview",
            lambda c: c.table("user_role_preview_sessions").upsert(row, on_conflict="user_id"),
        )
        return data[0] if data else row

    def clear_role_preview(self, user_id: str) -> None:
        self._execute(
            "clear_role_preview",
            lambda c: c.table("user_role_preview_sessions")
            .update({"is_preview_active": False, "updated_at": self._now()})
            .eq("user_id", user_id),
        )

    def get_impersonation(self, user_id: str) -> dict[str, Any] | None:
        data = self._execute(
            "get_impersonation",
            lambda c: c.table("active_tenant_sessions").select("*").eq("session_user_id", user_id),
        )
        return data[0] if data else None

    def set_impersonation(
        self,
        user_id: str,
        tenant_id: str,
        home_tenant_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> dict[str, Any]:
        row = {
            "session_user_id": user_id,
            "impersonated_company_id": tenant_id,
            "original_company_id": home_tenant_id,
            "is_active": True,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "updated_at": self._now(),
        }
        data = self._execute(
            "set_impersonation",
            lambda c: c.table("active_tenant_sessions").upsert(row, on_conflict="session_user_id"),
        )
        return data[0] if data else row

    def clear_impersonation(self, user_id: str) -> None:
        self._execute(
            "clear_impersonation",
            lambda c: c.table("active_tenant_sessions")
            .update({"is_active": False, "updated_at": self._now()})
            .eq("session_user_id", user_id),
        )

    # =========================================================================
    # CHANGE NOTIFICATIONS
    # =========================================================================

    async def watch(self, tables: tuple[str, ...] = WATCHED_TABLES) -> AsyncIterator[ChangeEvent]:
        """Subscribe to Realtime postgres_changes and yield one event per change."""
        from supabase import acreate_client

        url, key, _ = self._credentials()
        try:
            client = await acreate_client(url, key)
        except Exception as e:
            logger.error(f"[SUPABASE] Realtime client failed: {e}")
            raise RuleStoreError(f"Realtime unavailable: {e}") from e

        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

        def on_change(payload: dict[str, Any]) -> None:
            queue.put_nowait(_to_change_event(payload))

        channel = client.channel("hr-authz-rules")
        for table in tables:
            channel.on_postgres_changes("*", schema="public", table=table, callback=on_change)
        await channel.subscribe()
        logger.info(f"[SUPABASE] Realtime subscribed to {len(tables)} tables")

        try:
            while True:
                yield await queue.get()
        finally:
            await client.remove_channel(channel)
            logger.info("[SUPABASE] Realtime subscription removed")


def _serialize(row: dict[str, Any]) -> dict[str, Any]:
    """Convert datetimes to ISO strings for PostgREST."""
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in row.items()}


def _to_change_event(payload: dict[str, Any]) -> ChangeEvent:
    data = payload.get("data", payload)
    record = data.get("record") or data.get("old_record") or {}
    return ChangeEvent(
        table=str(data.get("table", "")),
        event_type=str(data.get("type") or data.get("eventType") or ""),
        record_id=str(record["id"]) if record.get("id") is not None else None,
    )
