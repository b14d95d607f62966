"""
hr-authz core logic.

Usage:
    from hr_authz.core import get_engine

    engine = get_engine()
    role = engine.resolve_effective_role("user-1", tenant_id="acme")
    allowed = engine.has_permission(role, "absence", "approve_request")
    result = engine.check_policy_enforcement("user-1", "absence", "approve_request", {"subject_user_id": "user-1"})
"""

from .conflicts import ConflictDetector, ConflictFinding
from .enforcement import DEFAULT_GUARDS, EnforcementFacade, GuardDecision, GuardSpec
from .engine import AuthorizationEngine, get_engine
from .permissions import PermissionDecision, PermissionEvaluator
from .policy_engine import PolicyEngine, evaluate_rule
from .policy_service import PolicyService
from .roles import RoleResolver
from .snapshot import Snapshot, SnapshotManager, build_snapshot

__all__ = [
    # Engine
    "AuthorizationEngine",
    "get_engine",
    # Components
    "ConflictDetector",
    "EnforcementFacade",
    "PermissionEvaluator",
    "PolicyEngine",
    "PolicyService",
    "RoleResolver",
    "SnapshotManager",
    # Values
    "ConflictFinding",
    "DEFAULT_GUARDS",
    "GuardDecision",
    "GuardSpec",
    "PermissionDecision",
    "Snapshot",
    # Functions
    "build_snapshot",
    "evaluate_rule",
]
