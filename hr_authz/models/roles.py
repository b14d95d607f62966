"""
Canonical roles and key normalization.

Every raw role, module and action string is mapped onto a canonical key
before it touches the rule data. The same functions are applied to caller
input and to records read from the store, so both sides always agree.
"""

import logging
import re
from enum import Enum

logger = logging.getLogger("hr-authz")


# =============================================================================
# ROLES
# =============================================================================

class Role(str, Enum):
    """Canonical platform roles, lowest privilege first."""
    EMPLOYEE = "employee"
    TEAM_LEAD = "team_lead"
    HR_ADMIN = "hr_admin"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)


_ROLE_ORDER = [Role.EMPLOYEE, Role.TEAM_LEAD, Role.HR_ADMIN, Role.ADMIN, Role.SUPERADMIN]

# Roles allowed to start a role preview
OPERATOR_ROLES = frozenset({Role.SUPERADMIN, Role.ADMIN})

_ROLE_ALIASES: dict[str, Role] = {
    "superadmin": Role.SUPERADMIN,
    "super_admin": Role.SUPERADMIN,
    "admin": Role.ADMIN,
    "administrator": Role.ADMIN,
    "hr_admin": Role.HR_ADMIN,
    "hr_manager": Role.HR_ADMIN,
    "hr": Role.HR_ADMIN,
    "personalabteilung": Role.HR_ADMIN,
    "team_lead": Role.TEAM_LEAD,
    "teamlead": Role.TEAM_LEAD,
    "team_leader": Role.TEAM_LEAD,
    "teamleiter": Role.TEAM_LEAD,
    "manager": Role.TEAM_LEAD,
    "employee": Role.EMPLOYEE,
    "mitarbeiter": Role.EMPLOYEE,
    "user": Role.EMPLOYEE,
}

_SEPARATORS = re.compile(r"[\s\-./]+")


def _canonical_token(raw: str) -> str:
    return _SEPARATORS.sub("_", raw.strip().lower()).strip("_")


def normalize_role(raw: "str | Role | None") -> Role:
    """
    Map an arbitrary role string onto the canonical role set.

    Unknown or empty roles become EMPLOYEE. Nothing unknown is ever
    escalated.

    Examples:
        "hr-manager" -> hr_admin
        "Teamleiter" -> team_lead
        "tenant_admin" -> admin
        "hr_administrator" -> employee
    """
    if isinstance(raw, Role):
        return raw
    if not raw:
        return Role.EMPLOYEE

    token = _canonical_token(str(raw))
    if token in _ROLE_ALIASES:
        return _ROLE_ALIASES[token]

    compact = token.replace("_", "")
    if "superadmin" in compact:
        return Role.SUPERADMIN
    if "personal" in compact:
        return Role.HR_ADMIN
    if "lead" in compact or "leiter" in compact:
        return Role.TEAM_LEAD
    if "admin" in compact and "hr" not in compact:
        return Role.ADMIN

    logger.warning(f"[ROLE] Unknown role '{raw}' treated as employee")
    return Role.EMPLOYEE


# =============================================================================
# MODULES
# =============================================================================

# Display names and legacy spellings found in stored matrix rows
_MODULE_ALIASES: dict[str, str] = {
    "mitarbeiter": "employees",
    "abwesenheit": "absence",
    "absences": "absence",
    "zeiterfassung": "time_tracking",
    "timetracking": "time_tracking",
    "lohn_&_gehalt": "payroll",
    "lohn_gehalt": "payroll",
    "payroll_settings": "payroll",
    "ziele": "goals",
    "kalender": "calendar",
    "aufgaben": "tasks",
    "projekte": "projects",
    "dokumente": "documents",
    "berichte": "reports",
    "einstellungen": "settings",
    "heute": "today",
    "benachrichtigungen": "notifications",
    "profil": "profile",
    "workforce": "workforce_planning",
    "organisationsdesign": "hr_organization_design",
    "umfragen": "pulse_surveys",
    "employee_surveys": "pulse_surveys",
    "surveys": "pulse_surveys",
    "wissensdatenbank": "knowledge_hub",
    "knowledge": "knowledge_hub",
    "schulungen": "training",
    "ausgaben": "expenses",
    "geschäftsreisen": "business_travel",
    "geschaeftsreisen": "business_travel",
    "travel": "business_travel",
    "krankmeldungen": "sick_leave",
    "schichtplanung": "shift_planning",
    "ki_funktionen": "ai",
    "ai_hub": "ai",
    "nachhaltigkeit": "environment",
    "innovation_hub": "innovation",
    "compliance_dashboard": "compliance",
}

WILDCARD = "*"


def normalize_module_key(raw: str | None) -> str:
    """
    Normalize a module key or display name.

    Lowercases, folds separators to underscores and resolves known aliases,
    so "Time-Tracking", "time_tracking", "timetracking" and "Zeiterfassung"
    all become "time_tracking". The wildcard "*" is preserved.
    """
    if raw is None:
        return ""
    if raw.strip() == WILDCARD:
        return WILDCARD
    token = _canonical_token(raw)
    return _MODULE_ALIASES.get(token, token)


# =============================================================================
# ACTIONS
# =============================================================================

_ACTION_ALIASES: dict[str, str] = {
    "read": "view",
    "show": "view",
    "list": "view",
    "get": "view",
    "edit": "update",
    "modify": "update",
    "write": "update",
    "add": "create",
    "new": "create",
    "insert": "create",
    "remove": "delete",
    "destroy": "delete",
    "clock_in": "time_check_in",
    "check_in": "time_check_in",
    "clock_out": "time_check_out",
    "check_out": "time_check_out",
}


def normalize_action_key(raw: str | None) -> str:
    """
    Normalize an action name across naming schemes.

    "read" == "view", "edit" == "update", "clock-in" == "time_check_in".
    """
    if raw is None:
        return ""
    if raw.strip() == WILDCARD:
        return WILDCARD
    token = _canonical_token(raw)
    return _ACTION_ALIASES.get(token, token)


def normalize_scope(raw: str | None) -> str:
    """Normalize a permission scope; missing scope means 'own'."""
    if not raw:
        return "own"
    return _canonical_token(raw)


# Module keys the platform knows about; policy writes naming anything else are rejected
KNOWN_MODULES = frozenset({
    "dashboard", "today", "employees", "absence", "time_tracking", "payroll",
    "recruiting", "performance", "goals", "calendar", "chat", "tasks", "projects",
    "documents", "helpdesk", "reports", "settings", "notifications", "profile",
    "onboarding", "offboarding", "compliance", "budget", "workforce_planning",
    "hr_organization_design", "pulse_surveys", "knowledge_hub", "roadmap",
    "training", "benefits", "rewards", "workflow", "expenses", "global_mobility",
    "innovation", "environment", "business_travel", "sick_leave", "voicemail",
    "shift_planning", "ai", "orgchart", "company_info", "users_roles",
    "security", "integrations", "assets", "ai_automation",
})


def is_known_module(raw: str) -> bool:
    key = normalize_module_key(raw)
    return key == WILDCARD or key in KNOWN_MODULES
