"""
Authorization Engine.

Single entry point wiring the Role Resolver, Permission Evaluator, Policy
Engine, Conflict Detector and Enforcement Facade over one rule store and
one snapshot.

Usage:
    engine = get_engine()
    await engine.start()

    acting = await engine.open_session("user-1", tenant_id="acme")
    engine.check_guard("can_clock_in", acting)
"""

import asyncio
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any

from ..config import settings
from ..db.base import RuleStore, SessionProvider
from ..exceptions import IdentityError, PreviewNotAllowedError
from ..models.policies import (
    PolicyConflict,
    PolicyCreate,
    PolicyEnforcementResult,
    PolicyTemplate,
    PolicyUpdate,
    SystemPolicy,
)
from ..models.roles import OPERATOR_ROLES, Role, normalize_role
from ..models.rules import ActingContext
from .conflicts import ConflictDetector
from .enforcement import DEFAULT_GUARDS, DenialSink, EnforcementFacade, GuardDecision
from .permissions import PermissionDecision, PermissionEvaluator
from .policy_engine import PolicyEngine
from .policy_service import PolicyService
from .roles import RoleResolver
from .snapshot import SnapshotManager

logger = logging.getLogger("hr-authz")


class AuthorizationEngine:
    """
    Authorization resolution and policy enforcement over a rule store.

    Decisions are synchronous reads of the current snapshot. Loading the
    snapshot and opening a session are the only awaited steps.
    """

    def __init__(
        self,
        store: RuleStore,
        sessions: SessionProvider | None = None,
        denial_sink: DenialSink | None = None,
        guard_fallbacks: dict[str, bool] | None = None,
        conflict_detection_enabled: bool | None = None,
        debounce_ms: int | None = None,
    ):
        if sessions is None:
            if not isinstance(store, SessionProvider):
                raise TypeError("store does not provide sessions; pass a SessionProvider")
            sessions = store

        self.store = store
        self.sessions = sessions
        self.snapshots = SnapshotManager(
            store,
            debounce_ms=settings.SNAPSHOT_RELOAD_DEBOUNCE_MS if debounce_ms is None else debounce_ms,
        )
        self.roles = RoleResolver(sessions)
        self.permissions = PermissionEvaluator(lambda: self.snapshots.current)
        self.policy_engine = PolicyEngine(lambda: self.snapshots.current)
        self.policies = PolicyService(
            store,
            self.snapshots,
            ConflictDetector(),
            conflict_detection_enabled=(
                settings.CONFLICT_DETECTION_ENABLED
                if conflict_detection_enabled is None
                else conflict_detection_enabled
            ),
        )
        self.enforcement = EnforcementFacade(
            self.permissions,
            self.policy_engine,
            DEFAULT_GUARDS,
            fallback_overrides=settings.GUARD_FALLBACKS if guard_fallbacks is None else guard_fallbacks,
            denial_sink=denial_sink,
        )
        self._contexts: dict[str, ActingContext] = {}

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, watch: bool | None = None) -> bool:
        """Load the snapshot and optionally subscribe to change notifications."""
        loaded = await self.snapshots.load()
        if settings.SNAPSHOT_WATCH_ENABLED if watch is None else watch:
            self.snapshots.start_watch()
        return loaded

    async def stop(self) -> None:
        await self.snapshots.stop_watch()
        await self.policies.wait_for_analysis()
        self._contexts.clear()

    @property
    def ready(self) -> bool:
        return self.snapshots.current.loaded

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def open_session(self, actor_id: str, tenant_id: str | None = None) -> ActingContext:
        """Load rules (first time only), the actor's overrides, and resolve the acting context."""
        if not actor_id or not actor_id.strip():
            raise IdentityError("Cannot open a session without an actor id")
        if not self.snapshots.current.loaded:
            await self.snapshots.load()
        await asyncio.to_thread(self.snapshots.track_user, actor_id)
        acting = await asyncio.to_thread(self.roles.resolve, actor_id, tenant_id)
        self._contexts[actor_id] = acting
        logger.info(f"[ROLE] Session opened for {actor_id} as {acting.effective_role.value}")
        return acting

    def refresh_session(self, actor_id: str, tenant_id: str | None = None) -> ActingContext:
        """Re-resolve after a preview or impersonation change."""
        if tenant_id is None and actor_id in self._contexts:
            tenant_id = self._contexts[actor_id].tenant_id
        acting = self.roles.resolve(actor_id, tenant_id)
        self._contexts[actor_id] = acting
        return acting

    def close_session(self, actor_id: str) -> None:
        self._contexts.pop(actor_id, None)
        self.snapshots.untrack_user(actor_id)
        logger.info(f"[ROLE] Session closed for {actor_id}")

    def acting_context(self, actor_id: str, tenant_id: str | None = None) -> ActingContext:
        """The open session's context, or a freshly resolved one."""
        acting = self._contexts.get(actor_id)
        if acting is not None and (tenant_id is None or acting.tenant_id == tenant_id):
            return acting
        return self.roles.resolve(actor_id, tenant_id)

    def _require_operator(self, actor_id: str, tenant_id: str | None, what: str) -> Role:
        real = self.roles.real_role(actor_id, tenant_id)
        if real not in OPERATOR_ROLES:
            logger.warning(f"[ROLE] {actor_id} ({real.value}) may not start {what}")
            raise PreviewNotAllowedError(f"Role {real.value} may not start {what}")
        return real

    def start_role_preview(
        self,
        actor_id: str,
        role: "Role | str",
        tenant_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> ActingContext:
        """Act as `role` for testing. Operators only, and never above their real role."""
        real = self._require_operator(actor_id, tenant_id, "a role preview")
        preview_role = normalize_role(role)
        if preview_role.rank > real.rank:
            logger.warning(f"[ROLE] {actor_id} ({real.value}) may not preview higher role {preview_role.value}")
            raise PreviewNotAllowedError(f"Role {real.value} may not preview as {preview_role.value}")
        self.sessions.set_role_preview(actor_id, preview_role.value, expires_at=expires_at, tenant_id=tenant_id)
        logger.info(f"[ROLE] {actor_id} started preview as {preview_role.value}")
        return self.refresh_session(actor_id, tenant_id)

    def stop_role_preview(self, actor_id: str, tenant_id: str | None = None) -> ActingContext:
        self.sessions.clear_role_preview(actor_id)
        logger.info(f"[ROLE] {actor_id} stopped preview")
        return self.refresh_session(actor_id, tenant_id)

    def start_impersonation(
        self,
        actor_id: str,
        tenant_id: str,
        home_tenant_id: str | None = None,
        expires_at: datetime | None = None,
    ) -> ActingContext:
        """Act inside another tenant's scope. Operators only."""
        self._require_operator(actor_id, home_tenant_id, "an impersonation")
        self.sessions.set_impersonation(actor_id, tenant_id, home_tenant_id=home_tenant_id, expires_at=expires_at)
        logger.info(f"[ROLE] {actor_id} impersonating tenant {tenant_id}")
        return self.refresh_session(actor_id, home_tenant_id)

    def stop_impersonation(self, actor_id: str, tenant_id: str | None = None) -> ActingContext:
        self.sessions.clear_impersonation(actor_id)
        logger.info(f"[ROLE] {actor_id} stopped impersonation")
        return self.refresh_session(actor_id, tenant_id)

    # =========================================================================
    # DECISIONS
    # =========================================================================

    def resolve_effective_role(self, actor_id: str, tenant_id: str | None = None) -> Role:
        return self.roles.resolve_role(actor_id, tenant_id)

    def explain_permission(
        self,
        role: "Role | str",
        module: str,
        action: str,
        scope: str | None = "own",
        user_id: str | None = None,
        preview_active: bool = False,
    ) -> PermissionDecision:
        return self.permissions.explain(role, module, action, scope, user_id=user_id, preview_active=preview_active)

    def has_permission(self, role: "Role | str", module: str, action: str, scope: str | None = "own") -> bool:
        return self.permissions.has_permission(role, module, action, scope)

    def check_permission(
        self,
        acting: ActingContext,
        module: str,
        action: str,
        scope: str | None = "own",
    ) -> PermissionDecision:
        """Permission check for a resolved acting context, overrides included."""
        return self.permissions.explain(
            acting.effective_role,
            module,
            action,
            scope,
            user_id=acting.real_actor_id,
            preview_active=acting.preview_active,
        )

    def check_policy_enforcement(
        self,
        actor_id: str,
        module: str,
        action: str,
        context: dict[str, Any] | None = None,
        tenant_id: str | None = None,
    ) -> PolicyEnforcementResult:
        acting = self.acting_context(actor_id, tenant_id)
        return self.policy_engine.check(acting, module, action, context)

    def check_guard(
        self,
        name: str,
        acting: ActingContext | None,
        context: dict[str, Any] | None = None,
    ) -> GuardDecision:
        return self.enforcement.check(name, acting, context)

    # =========================================================================
    # POLICY ADMINISTRATION
    # =========================================================================

    def create_policy(self, policy: PolicyCreate | dict[str, Any]) -> SystemPolicy:
        return self.policies.create_policy(policy)

    def update_policy(self, policy_id: str, patch: PolicyUpdate | dict[str, Any]) -> SystemPolicy:
        return self.policies.update_policy(policy_id, patch)

    def delete_policy(self, policy_id: str, force: bool = False) -> None:
        self.policies.delete_policy(policy_id, force=force)

    def apply_policy_template(self, template: PolicyTemplate | dict[str, Any]) -> tuple[list[str], list[str]]:
        if isinstance(template, dict):
            template = PolicyTemplate.model_validate(template)
        return self.policies.apply_template(template)

    def list_unresolved_conflicts(self) -> list[PolicyConflict]:
        return self.policies.list_unresolved_conflicts()

    def resolve_conflict(self, conflict_id: str, notes: str, resolved_by: str | None = None) -> PolicyConflict:
        return self.policies.resolve_conflict(conflict_id, notes, resolved_by)


@lru_cache
def get_engine() -> AuthorizationEngine:
    """Get the cached engine bound to the configured rule store."""
    from ..db.database import get_rule_store

    return AuthorizationEngine(get_rule_store())
