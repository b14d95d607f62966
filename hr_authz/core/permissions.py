"""
Permission Evaluator.

Walks an ordered list of resolver strategies over a snapshot. Each resolver
either returns a PermissionDecision (decisive) or None (silent, ask the next
layer). The first decisive answer wins; if every layer is silent the
request is denied.

Layers:
1. superadmin      - superadmin without an active preview is always allowed
2. snapshot        - never-loaded snapshot means the store is down: deny
3. matrix          - (role, module) entry: visibility gates, then actions
4. override        - non-expired per-user override decides via is_granted
5. legacy          - legacy role permission can only grant
6. static          - static fallback map
7. default         - deny
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from ..models.roles import (
    Role,
    normalize_action_key,
    normalize_module_key,
    normalize_role,
    normalize_scope,
)
from ..models.rules import utcnow
from .snapshot import Snapshot
from .static_policy import static_allows

logger = logging.getLogger("hr-authz")


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a permission check and the layer that produced it."""
    allowed: bool
    layer: str
    reason: str | None = None

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "layer": self.layer, "reason": self.reason}


@dataclass(frozen=True)
class PermissionQuery:
    """A fully normalized permission question."""
    role: Role
    module: str
    action: str
    scope: str
    user_id: str | None
    preview_active: bool
    now: datetime

    def describe(self) -> str:
        return f"{self.action} on {self.module} ({self.scope}) for {self.role.value}"


Resolver = Callable[[PermissionQuery, Snapshot], "PermissionDecision | None"]


# =============================================================================
# RESOLVERS
# =============================================================================

def resolve_superadmin(query: PermissionQuery, snapshot: Snapshot) -> PermissionDecision | None:
    # While previewing, the previewed role's rules apply even to a superadmin
    if query.role == Role.SUPERADMIN and not query.preview_active:
        return PermissionDecision(True, "superadmin", "Superadmin has full access")
    return None


def resolve_snapshot_state(query: PermissionQuery, snapshot: Snapshot) -> PermissionDecision | None:
    if not snapshot.loaded:
        return PermissionDecision(False, "store_unavailable", "Permission rules are unavailable")
    return None


def resolve_matrix(query: PermissionQuery, snapshot: Snapshot) -> PermissionDecision | None:
    entry = snapshot.matrix_entry(query.role, query.module)
    if entry is None:
        return None
    if not entry.is_visible:
        return PermissionDecision(False, "matrix", f"Module {query.module} is not visible for {query.role.value}")
    if entry.allows(query.action):
        return PermissionDecision(True, "matrix", f"Matrix allows {query.describe()}")
    return PermissionDecision(False, "matrix", f"Matrix does not allow {query.describe()}")


def resolve_override(query: PermissionQuery, snapshot: Snapshot) -> PermissionDecision | None:
    if not query.user_id:
        return None
    if query.user_id in snapshot.unavailable_overrides:
        return PermissionDecision(False, "override", f"Overrides for {query.user_id} are unavailable")
    override = snapshot.user_override(query.user_id, query.module, query.action, query.scope)
    if override is None or override.is_expired(query.now):
        return None
    if override.is_granted:
        return PermissionDecision(True, "override", f"User override grants {query.action} on {query.module}")
    return PermissionDecision(False, "override", f"User override revokes {query.action} on {query.module}")


def resolve_legacy(query: PermissionQuery, snapshot: Snapshot) -> PermissionDecision | None:
    record = snapshot.role_permission(query.role, query.module, query.action, query.scope)
    if record is not None and record.is_granted:
        return PermissionDecision(True, "legacy", f"Role permission grants {query.describe()}")
    # A non-granted legacy record is not a deny; it falls through like a
    # missing record. Legacy grants are additive only.
    return None


def resolve_static(query: PermissionQuery, snapshot: Snapshot) -> PermissionDecision | None:
    if static_allows(query.role, query.module, query.action):
        return PermissionDecision(True, "static", f"Static policy allows {query.describe()}")
    return None


DEFAULT_RESOLVERS: tuple[Resolver, ...] = (
    resolve_superadmin,
    resolve_snapshot_state,
    resolve_matrix,
    resolve_override,
    resolve_legacy,
    resolve_static,
)


# =============================================================================
# EVALUATOR
# =============================================================================

class PermissionEvaluator:
    """Pure permission checks against the snapshot supplied by `snapshot_source`."""

    def __init__(
        self,
        snapshot_source: Callable[[], Snapshot],
        resolvers: tuple[Resolver, ...] = DEFAULT_RESOLVERS,
    ):
        self._snapshot_source = snapshot_source
        self._resolvers = resolvers

    def explain(
        self,
        role: "Role | str",
        module: str,
        action: str,
        scope: str | None = "own",
        user_id: str | None = None,
        preview_active: bool = False,
        now: datetime | None = None,
        snapshot: Snapshot | None = None,
    ) -> PermissionDecision:
        """Evaluate a permission and report which layer decided."""
        query = PermissionQuery(
            role=normalize_role(role),
            module=normalize_module_key(module),
            action=normalize_action_key(action),
            scope=normalize_scope(scope),
            user_id=str(user_id) if user_id else None,
            preview_active=preview_active,
            now=now or utcnow(),
        )
        snapshot = snapshot or self._snapshot_source()

        for resolver in self._resolvers:
            decision = resolver(query, snapshot)
            if decision is not None:
                break
        else:
            decision = PermissionDecision(False, "default", f"No rule grants {query.describe()}")

        if decision.allowed:
            logger.debug(f"[PERM] Allowed {query.describe()} via {decision.layer}")
        elif decision.layer == "store_unavailable":
            logger.warning(f"[PERM] Store unavailable, denying {query.describe()}")
        else:
            logger.debug(f"[PERM] Denied {query.describe()} via {decision.layer}: {decision.reason}")
        return decision

    def has_permission(
        self,
        role: "Role | str",
        module: str,
        action: str,
        scope: str | None = "own",
        user_id: str | None = None,
        preview_active: bool = False,
    ) -> bool:
        return self.explain(role, module, action, scope, user_id=user_id, preview_active=preview_active).allowed
