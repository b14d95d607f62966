"""
Static fallback policy map.

Compiled from the settings visibility/edit table. Consulted only when no
matrix entry, override or legacy grant decides; it keeps UI guards complete
and is never the basis for a security-critical grant.
"""

from collections.abc import Mapping
from types import MappingProxyType

from ..models.roles import Role

E, T, H, A, S = Role.EMPLOYEE, Role.TEAM_LEAD, Role.HR_ADMIN, Role.ADMIN, Role.SUPERADMIN

ALL_ROLES = frozenset({E, T, H, A, S})
TEAM_UP = frozenset({T, H, A, S})
HR_UP = frozenset({H, A, S})
ADMIN_UP = frozenset({A, S})

VIEW_ACTIONS = frozenset({"view"})
EDIT_ACTIONS = frozenset({"create", "update"})

# module -> (roles that may view, roles that may edit)
_MODULE_TIERS: dict[str, tuple[frozenset[Role], frozenset[Role]]] = {
    # Organisation & structure
    "company_info": (HR_UP, ADMIN_UP),
    "orgchart": (HR_UP, HR_UP),
    "users_roles": (HR_UP, ADMIN_UP),
    # Time & attendance
    "time_tracking": (TEAM_UP, HR_UP),
    "absence": (ALL_ROLES, HR_UP),
    "calendar": (ALL_ROLES, HR_UP),
    "shift_planning": (TEAM_UP, HR_UP),
    # Projects & tasks
    "tasks": (ALL_ROLES, TEAM_UP),
    "projects": (TEAM_UP, TEAM_UP),
    "workflow": (ADMIN_UP, ADMIN_UP),
    # HR & employees
    "recruiting": (HR_UP, HR_UP),
    "onboarding": (HR_UP, HR_UP),
    "offboarding": (HR_UP, HR_UP),
    "performance": (TEAM_UP, HR_UP),
    "training": (TEAM_UP, HR_UP),
    "workforce_planning": (HR_UP, HR_UP),
    # Finance & travel
    "payroll": (HR_UP, ADMIN_UP),
    "expenses": (HR_UP, HR_UP),
    "business_travel": (HR_UP, HR_UP),
    "assets": (HR_UP, HR_UP),
    # System & integration
    "dashboard": (ALL_ROLES, ALL_ROLES),
    "integrations": (ADMIN_UP, ADMIN_UP),
    "security": (ADMIN_UP, ADMIN_UP),
    "ai_automation": (ADMIN_UP, ADMIN_UP),
    # Knowledge & innovation
    "knowledge_hub": (HR_UP, HR_UP),
    "innovation": (HR_UP, HR_UP),
    "helpdesk": (HR_UP, HR_UP),
    "rewards": (HR_UP, HR_UP),
    "documents": (HR_UP, HR_UP),
    "notifications": (ALL_ROLES, ALL_ROLES),
    "compliance": (HR_UP, HR_UP),
    "global_mobility": (HR_UP, HR_UP),
}

# Self-service actions every role performs on its own records
_SELF_SERVICE: dict[str, frozenset[str]] = {
    "absence": frozenset({"create_request"}),
    "time_tracking": frozenset({"view", "time_check_in", "time_check_out"}),
    "business_travel": frozenset({"create"}),
    "expenses": frozenset({"create"}),
    "profile": frozenset({"view", "update"}),
}

# Actions a role may perform on every module
ROLE_ACTIONS: Mapping[Role, frozenset[str]] = MappingProxyType({
    A: VIEW_ACTIONS,
    S: VIEW_ACTIONS | EDIT_ACTIONS,
})


def _compile() -> Mapping[tuple[str, Role], frozenset[str]]:
    compiled: dict[tuple[str, Role], frozenset[str]] = {}
    for module, (viewers, editors) in _MODULE_TIERS.items():
        for role in ALL_ROLES:
            actions: frozenset[str] = frozenset()
            if role in viewers:
                actions |= VIEW_ACTIONS
            if role in editors:
                actions |= EDIT_ACTIONS
            if actions:
                compiled[(module, role)] = actions
    for module, actions in _SELF_SERVICE.items():
        for role in ALL_ROLES:
            compiled[(module, role)] = compiled.get((module, role), frozenset()) | actions
    return MappingProxyType(compiled)


MODULE_ROLE_ACTIONS = _compile()


def static_allows(role: Role, module: str, action: str) -> bool:
    """Role, module and action must already be normalized."""
    if action in ROLE_ACTIONS.get(role, frozenset()):
        return True
    return action in MODULE_ROLE_ACTIONS.get((module, role), frozenset())
