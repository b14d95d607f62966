"""
System policy, conflict and enforcement models.

Policies are business rules evaluated independently of role
authorization. Their `value` is validated at write time into a PolicyRule;
nothing malformed ever reaches the evaluation path.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..exceptions import PolicyValidationError
from .roles import (
    WILDCARD,
    Role,
    is_known_module,
    normalize_action_key,
    normalize_module_key,
    normalize_role,
)
from .rules import parse_timestamp


# =============================================================================
# ENUMS
# =============================================================================

class PolicyCategory(str, Enum):
    """Policy categories."""
    SECURITY = "security"
    TIMETRACKING = "timetracking"
    ABSENCE = "absence"
    DOCUMENTS = "documents"
    GENERAL = "general"


class PolicyScope(str, Enum):
    """Where a policy applies."""
    TENANT = "tenant"
    GLOBAL = "global"


class RuleKind(str, Enum):
    """Predicate kinds a policy value can encode."""
    BLOCK_SELF_APPROVAL = "block_self_approval"
    ALLOW_SELF_APPROVAL = "allow_self_approval"
    REQUIRE_MFA = "require_mfa"
    REQUIRE_FIELD = "require_field"
    FORBID_FIELD = "forbid_field"
    MAX_VALUE = "max_value"
    MIN_VALUE = "min_value"
    BLOCK_ACTION = "block_action"
    ALLOW_ACTION = "allow_action"


EXEMPTION_RULES = frozenset({RuleKind.ALLOW_SELF_APPROVAL, RuleKind.ALLOW_ACTION})


class ConflictType(str, Enum):
    """Kinds of policy conflicts."""
    CONTRADICTION = "contradiction"
    INCOMPATIBLE = "incompatible"
    CIRCULAR = "circular"


class ConflictSeverity(str, Enum):
    """Conflict severity, lowest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = [
    ConflictSeverity.LOW,
    ConflictSeverity.MEDIUM,
    ConflictSeverity.HIGH,
    ConflictSeverity.CRITICAL,
]


# =============================================================================
# POLICY VALUE
# =============================================================================

class PolicyRule(BaseModel):
    """
    Parsed policy value.

    `actions` empty means the rule applies to every action. `sets` lists
    context facts the policy establishes when it passes.
    """
    rule: RuleKind
    actions: list[str] = Field(default_factory=list)
    field: str | None = None
    equals: Any = True
    limit: float | None = None
    sets: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None

    @field_validator("actions")
    @classmethod
    def _normalize_actions(cls, value: list[str]) -> list[str]:
        return sorted({normalize_action_key(a) for a in value if a and a.strip()})

    @model_validator(mode="after")
    def _check_parameters(self) -> "PolicyRule":
        needs_field = {
            RuleKind.REQUIRE_FIELD,
            RuleKind.FORBID_FIELD,
            RuleKind.MAX_VALUE,
            RuleKind.MIN_VALUE,
        }
        if self.rule in needs_field and not self.field:
            raise ValueError(f"rule '{self.rule.value}' requires 'field'")
        if self.rule in (RuleKind.MAX_VALUE, RuleKind.MIN_VALUE) and self.limit is None:
            raise ValueError(f"rule '{self.rule.value}' requires numeric 'limit'")
        if self.rule in (RuleKind.BLOCK_ACTION, RuleKind.ALLOW_ACTION) and not self.actions:
            raise ValueError(f"rule '{self.rule.value}' requires at least one action")
        return self

    @property
    def is_exemption(self) -> bool:
        return self.rule in EXEMPTION_RULES

    def covers_action(self, action: str) -> bool:
        return not self.actions or WILDCARD in self.actions or normalize_action_key(action) in self.actions

    def preconditions(self) -> dict[str, Any]:
        """Context facts that must hold for this rule to pass."""
        if self.rule == RuleKind.REQUIRE_FIELD:
            return {self.field: self.equals}
        if self.rule == RuleKind.REQUIRE_MFA:
            return {"mfa_verified": True}
        return {}


def parse_policy_rule(value: Any) -> PolicyRule:
    """Validate a raw policy value, raising PolicyValidationError."""
    if not isinstance(value, dict):
        raise PolicyValidationError("Policy value must be an object")
    try:
        return PolicyRule.model_validate(value)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}" for err in e.errors()]
        raise PolicyValidationError("Invalid policy value", errors) from e


# =============================================================================
# POLICY RECORD
# =============================================================================

@dataclass(frozen=True)
class SystemPolicy:
    """An active-or-inactive business rule as stored."""
    id: str
    key: str
    name: str
    category: PolicyCategory
    rule: PolicyRule
    value: dict[str, Any]
    is_active: bool = True
    description: str | None = None
    affected_modules: frozenset[str] = field(default_factory=frozenset)
    required_roles: frozenset[Role] = field(default_factory=frozenset)
    priority: int = 1
    effective_from: datetime | None = None
    effective_until: datetime | None = None
    scope: PolicyScope = PolicyScope.GLOBAL
    tenant_id: str | None = None

    def applies_to_module(self, module: str) -> bool:
        if not self.affected_modules or WILDCARD in self.affected_modules:
            return True
        return normalize_module_key(module) in self.affected_modules

    def applies_to_role(self, role: Role) -> bool:
        return not self.required_roles or role in self.required_roles

    def applies_to_tenant(self, tenant_id: str | None) -> bool:
        if self.scope == PolicyScope.GLOBAL:
            return True
        return tenant_id is not None and tenant_id == self.tenant_id

    def is_in_effect(self, now: datetime) -> bool:
        if self.effective_from is not None and now < self.effective_from:
            return False
        if self.effective_until is not None and now > self.effective_until:
            return False
        return True

    @property
    def all_modules(self) -> bool:
        return not self.affected_modules or WILDCARD in self.affected_modules

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "policy_key": self.key,
            "policy_name": self.name,
            "policy_description": self.description,
            "policy_category": self.category.value,
            "is_active": self.is_active,
            "policy_value": dict(self.value),
            "affected_modules": sorted(self.affected_modules),
            "required_roles": sorted(r.value for r in self.required_roles),
            "priority": self.priority,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "effective_until": self.effective_until.isoformat() if self.effective_until else None,
            "scope": self.scope.value,
            "tenant_id": self.tenant_id,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SystemPolicy":
        value = row.get("policy_value") or row.get("value") or {}
        return cls(
            id=str(row["id"]),
            key=str(row.get("policy_key") or row.get("key")),
            name=str(row.get("policy_name") or row.get("name") or row.get("policy_key") or ""),
            category=PolicyCategory(row.get("policy_category") or row.get("category") or "general"),
            rule=parse_policy_rule(value),
            value=dict(value),
            is_active=bool(row.get("is_active", True)),
            description=row.get("policy_description") or row.get("description"),
            affected_modules=frozenset(normalize_module_key(m) for m in row.get("affected_modules") or []),
            required_roles=frozenset(normalize_role(r) for r in row.get("required_roles") or []),
            priority=int(row.get("priority") or 0),
            effective_from=parse_timestamp(row.get("effective_from")),
            effective_until=parse_timestamp(row.get("effective_until")),
            scope=PolicyScope(row.get("scope") or "global"),
            tenant_id=row.get("tenant_id") or row.get("company_id"),
        )


# =============================================================================
# CONFLICTS
# =============================================================================

@dataclass(frozen=True)
class PolicyConflict:
    """A detected inconsistency between two policies."""
    id: str
    conflict_type: ConflictType
    primary_policy_id: str
    conflicting_policy_id: str
    severity: ConflictSeverity
    description: str = ""
    is_resolved: bool = False
    resolution_notes: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    detected_at: datetime | None = None

    @property
    def pair(self) -> frozenset[str]:
        return frozenset({self.primary_policy_id, self.conflicting_policy_id})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conflict_type": self.conflict_type.value,
            "primary_policy_id": self.primary_policy_id,
            "conflicting_policy_id": self.conflicting_policy_id,
            "severity": self.severity.value,
            "conflict_description": self.description,
            "is_resolved": self.is_resolved,
            "resolution_notes": self.resolution_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PolicyConflict":
        return cls(
            id=str(row["id"]),
            conflict_type=ConflictType(row["conflict_type"]),
            primary_policy_id=str(row["primary_policy_id"]),
            conflicting_policy_id=str(row["conflicting_policy_id"]),
            severity=ConflictSeverity(row.get("severity") or "medium"),
            description=row.get("conflict_description") or "",
            is_resolved=bool(row.get("is_resolved", False)),
            resolution_notes=row.get("resolution_notes"),
            resolved_by=row.get("resolved_by"),
            resolved_at=parse_timestamp(row.get("resolved_at")),
            detected_at=parse_timestamp(row.get("detected_at") or row.get("created_at")),
        )


# =============================================================================
# ENFORCEMENT RESULT
# =============================================================================

@dataclass(frozen=True)
class BlockedBy:
    policy: str
    reason: str


@dataclass(frozen=True)
class PolicyEnforcementResult:
    """Aggregate outcome of evaluating every applicable policy."""
    allowed: bool
    policies_applied: tuple[dict[str, str], ...] = ()
    blocked_by: tuple[BlockedBy, ...] = ()
    fail_open: bool = False

    @property
    def reason(self) -> str | None:
        if not self.blocked_by:
            return None
        return "; ".join(b.reason for b in self.blocked_by)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "allowed": self.allowed,
            "policies_applied": [dict(p) for p in self.policies_applied],
        }
        if self.blocked_by:
            data["blocked_by"] = [{"policy": b.policy, "reason": b.reason} for b in self.blocked_by]
        return data


# =============================================================================
# WRITE MODELS
# =============================================================================

class PolicyCreate(BaseModel):
    """Payload for creating a policy."""
    policy_key: str = Field(min_length=1)
    policy_name: str = ""
    policy_description: str | None = None
    policy_category: PolicyCategory = PolicyCategory.GENERAL
    is_active: bool = True
    policy_value: dict[str, Any]
    affected_modules: list[str] = Field(default_factory=list)
    required_roles: list[str] = Field(default_factory=list)
    priority: int = 1
    effective_from: datetime | None = None
    effective_until: datetime | None = None
    scope: PolicyScope = PolicyScope.GLOBAL
    tenant_id: str | None = None


class PolicyUpdate(BaseModel):
    """Partial update for a policy; unset fields are left untouched."""
    policy_name: str | None = None
    policy_description: str | None = None
    policy_category: PolicyCategory | None = None
    is_active: bool | None = None
    policy_value: dict[str, Any] | None = None
    affected_modules: list[str] | None = None
    required_roles: list[str] | None = None
    priority: int | None = None
    effective_from: datetime | None = None
    effective_until: datetime | None = None
    scope: PolicyScope | None = None
    tenant_id: str | None = None


class PolicyTemplateEntry(BaseModel):
    key: str
    active: bool


class PolicyTemplate(BaseModel):
    """A named bundle of policy activation switches."""
    name: str
    policies: list[PolicyTemplateEntry] = Field(default_factory=list)


def validate_policy_row(row: dict[str, Any]) -> dict[str, Any]:
    """
    Validate and normalize a complete policy row before it is written.

    Raises PolicyValidationError listing every problem found.
    """
    errors: list[str] = []

    if not str(row.get("policy_key") or "").strip():
        errors.append("policy_key: must not be empty")

    try:
        parse_policy_rule(row.get("policy_value"))
    except PolicyValidationError as e:
        errors.extend(e.errors)

    modules = row.get("affected_modules") or []
    unknown = [m for m in modules if not is_known_module(m)]
    if unknown:
        errors.append(f"affected_modules: unknown module key(s) {', '.join(unknown)}")

    roles = row.get("required_roles") or []
    bad_roles = [r for r in roles if normalize_role(r).value != str(r).strip().lower()]
    if bad_roles:
        errors.append(f"required_roles: not canonical role(s) {', '.join(map(str, bad_roles))}")

    start = parse_timestamp(row.get("effective_from"))
    end = parse_timestamp(row.get("effective_until"))
    if start and end and end < start:
        errors.append("effective_until: must not be before effective_from")

    if row.get("scope") == PolicyScope.TENANT.value and not row.get("tenant_id"):
        errors.append("tenant_id: required for tenant-scoped policies")

    if errors:
        raise PolicyValidationError("Policy rejected", errors)

    normalized = dict(row)
    normalized["affected_modules"] = sorted({normalize_module_key(m) for m in modules})
    normalized["required_roles"] = sorted({normalize_role(r).value for r in roles})
    normalized["policy_key"] = str(row["policy_key"]).strip()
    return normalized
