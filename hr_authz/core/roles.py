"""
Role Resolver.

Determines the single effective role of an actor for a request:
1. active role preview
2. base role inside an impersonated tenant
3. base role in the current tenant
4. employee
"""

import logging
from datetime import datetime

from ..db.base import SessionProvider
from ..exceptions import IdentityError, RuleStoreError
from ..models.roles import Role
from ..models.rules import (
    ActingContext,
    RoleAssignment,
    RolePreviewSession,
    TenantImpersonation,
    utcnow,
)

logger = logging.getLogger("hr-authz")


class RoleResolver:
    """Resolves acting contexts from the session provider. Fails closed to employee."""

    def __init__(self, sessions: SessionProvider):
        self._sessions = sessions

    # =========================================================================
    # SESSION LOOKUPS
    # =========================================================================

    def active_preview(self, actor_id: str, now: datetime | None = None) -> RolePreviewSession | None:
        row = self._sessions.get_role_preview(actor_id)
        if not row:
            return None
        preview = RolePreviewSession.from_row(row)
        return preview if preview.is_current(now or utcnow()) else None

    def active_impersonation(self, actor_id: str, now: datetime | None = None) -> TenantImpersonation | None:
        row = self._sessions.get_impersonation(actor_id)
        if not row:
            return None
        session = TenantImpersonation.from_row(row)
        return session if session.is_current(now or utcnow()) else None

    def base_role(self, actor_id: str, tenant_id: str | None) -> Role | None:
        """
        Highest-ranked assignment in `tenant_id`, platform-wide assignments
        included. None when the actor has no assignment there.
        """
        assignments = [RoleAssignment.from_row(r) for r in self._sessions.list_role_assignments(actor_id)]
        candidates = [a.role for a in assignments if a.tenant_id is None or a.tenant_id == tenant_id]
        if not candidates:
            return None
        return max(candidates, key=lambda role: role.rank)

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def resolve(
        self,
        actor_id: str | None,
        tenant_id: str | None = None,
        now: datetime | None = None,
    ) -> ActingContext:
        """Resolve the acting context for a request."""
        now = now or utcnow()
        if not actor_id:
            logger.warning("[ROLE] No actor id, resolving to employee")
            return ActingContext(real_actor_id="", effective_role=Role.EMPLOYEE, tenant_id=tenant_id)

        try:
            preview = self.active_preview(actor_id, now)
            if preview is not None:
                logger.debug(f"[ROLE] {actor_id} previewing as {preview.preview_role.value}")
                return ActingContext(
                    real_actor_id=actor_id,
                    effective_role=preview.preview_role,
                    tenant_id=tenant_id,
                    preview_active=True,
                )

            impersonation = self.active_impersonation(actor_id, now)
            if impersonation is not None:
                role = self.base_role(actor_id, impersonation.tenant_id) or Role.EMPLOYEE
                logger.debug(f"[ROLE] {actor_id} impersonating tenant {impersonation.tenant_id} as {role.value}")
                return ActingContext(
                    real_actor_id=actor_id,
                    effective_role=role,
                    tenant_id=tenant_id,
                    impersonated_tenant_id=impersonation.tenant_id,
                )

            role = self.base_role(actor_id, tenant_id)
        except RuleStoreError as e:
            logger.warning(f"[ROLE] Session lookup failed for {actor_id}, failing closed to employee: {e}")
            return ActingContext(real_actor_id=actor_id, effective_role=Role.EMPLOYEE, tenant_id=tenant_id)

        if role is None:
            logger.debug(f"[ROLE] {actor_id} has no assignment in tenant {tenant_id}, using employee")
            role = Role.EMPLOYEE
        return ActingContext(real_actor_id=actor_id, effective_role=role, tenant_id=tenant_id)

    def resolve_role(self, actor_id: str | None, tenant_id: str | None = None) -> Role:
        return self.resolve(actor_id, tenant_id).effective_role

    def real_role(self, actor_id: str | None, tenant_id: str | None = None) -> Role:
        """
        Base role ignoring preview and impersonation.

        Raises IdentityError without an actor id; store errors propagate.
        """
        if not actor_id or not actor_id.strip():
            raise IdentityError("No actor id to resolve a real role for")
        return self.base_role(actor_id, tenant_id) or Role.EMPLOYEE
