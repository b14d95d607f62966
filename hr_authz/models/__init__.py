"""
hr-authz models.

Exports roles, rule records, policy types and API models.
"""

# Roles & normalization
from .roles import (
    KNOWN_MODULES,
    OPERATOR_ROLES,
    WILDCARD,
    Role,
    is_known_module,
    normalize_action_key,
    normalize_module_key,
    normalize_role,
    normalize_scope,
)

# Rule records
from .rules import (
    ActingContext,
    PermissionMatrixEntry,
    RoleAssignment,
    RolePermission,
    RolePreviewSession,
    TenantImpersonation,
    UserPermissionOverride,
    parse_timestamp,
    utcnow,
)

# Policies
from .policies import (
    # Enums
    ConflictSeverity,
    ConflictType,
    PolicyCategory,
    PolicyScope,
    RuleKind,
    # Values
    BlockedBy,
    PolicyConflict,
    PolicyEnforcementResult,
    PolicyRule,
    SystemPolicy,
    # Write models
    PolicyCreate,
    PolicyTemplate,
    PolicyTemplateEntry,
    PolicyUpdate,
    # Functions
    parse_policy_rule,
    validate_policy_row,
)

# API
from .api import (
    ActingContextResponse,
    BlockedByResponse,
    ConflictResolveRequest,
    ConflictResponse,
    GuardCheckRequest,
    GuardDecisionResponse,
    GuardInfo,
    ImpersonationRequest,
    PermissionCheckRequest,
    PermissionDecisionResponse,
    PolicyCheckRequest,
    PolicyCheckResponse,
    PolicyResponse,
    ResolveRoleRequest,
    RolePreviewRequest,
    TemplateApplyResponse,
)

__all__ = [
    # Roles
    "KNOWN_MODULES",
    "OPERATOR_ROLES",
    "WILDCARD",
    "Role",
    "is_known_module",
    "normalize_action_key",
    "normalize_module_key",
    "normalize_role",
    "normalize_scope",
    # Rules
    "ActingContext",
    "PermissionMatrixEntry",
    "RoleAssignment",
    "RolePermission",
    "RolePreviewSession",
    "TenantImpersonation",
    "UserPermissionOverride",
    "parse_timestamp",
    "utcnow",
    # Policies
    "ConflictSeverity",
    "ConflictType",
    "PolicyCategory",
    "PolicyScope",
    "RuleKind",
    "BlockedBy",
    "PolicyConflict",
    "PolicyEnforcementResult",
    "PolicyRule",
    "SystemPolicy",
    "PolicyCreate",
    "PolicyTemplate",
    "PolicyTemplateEntry",
    "PolicyUpdate",
    "parse_policy_rule",
    "validate_policy_row",
    # API
    "ActingContextResponse",
    "BlockedByResponse",
    "ConflictResolveRequest",
    "ConflictResponse",
    "GuardCheckRequest",
    "GuardDecisionResponse",
    "GuardInfo",
    "ImpersonationRequest",
    "PermissionCheckRequest",
    "PermissionDecisionResponse",
    "PolicyCheckRequest",
    "PolicyCheckResponse",
    "PolicyResponse",
    "ResolveRoleRequest",
    "RolePreviewRequest",
    "TemplateApplyResponse",
]
