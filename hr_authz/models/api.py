"""
Request and response models for the HTTP API.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# =============================================================================
# ROLE RESOLUTION
# =============================================================================

class ResolveRoleRequest(BaseModel):
    """Request to resolve an actor's acting context."""
    actor_id: str
    tenant_id: str | None = None


class ActingContextResponse(BaseModel):
    """Resolved acting context."""
    real_actor_id: str
    effective_role: str
    tenant_id: str | None = None
    impersonated_tenant_id: str | None = None
    preview_active: bool = False


# =============================================================================
# PERMISSIONS
# =============================================================================

class PermissionCheckRequest(BaseModel):
    """
    Permission check.

    Either `role` is given directly, or `actor_id` (and optionally
    `tenant_id`) is resolved to an acting context first.
    """
    module: str
    action: str
    scope: str = "own"
    role: str | None = None
    actor_id: str | None = None
    tenant_id: str | None = None


class PermissionDecisionResponse(BaseModel):
    """Outcome of a permission check with the deciding layer."""
    allowed: bool
    layer: str
    reason: str | None = None
    effective_role: str | None = None


# =============================================================================
# POLICIES
# =============================================================================

class PolicyCheckRequest(BaseModel):
    """Policy enforcement check for an actor."""
    actor_id: str
    module: str
    action: str
    tenant_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class BlockedByResponse(BaseModel):
    policy: str
    reason: str


class PolicyCheckResponse(BaseModel):
    """Aggregate policy enforcement result."""
    allowed: bool
    policies_applied: list[dict[str, str]] = Field(default_factory=list)
    blocked_by: list[BlockedByResponse] | None = None


class PolicyResponse(BaseModel):
    """A stored policy."""
    id: str
    policy_key: str
    policy_name: str
    policy_description: str | None = None
    policy_category: str
    is_active: bool
    policy_value: dict[str, Any]
    affected_modules: list[str] = Field(default_factory=list)
    required_roles: list[str] = Field(default_factory=list)
    priority: int
    effective_from: datetime | None = None
    effective_until: datetime | None = None
    scope: str
    tenant_id: str | None = None


class TemplateApplyResponse(BaseModel):
    """Result of applying a policy template."""
    template: str
    updated: list[str] = Field(default_factory=list)
    unknown: list[str] = Field(default_factory=list)


# =============================================================================
# CONFLICTS
# =============================================================================

class ConflictResponse(BaseModel):
    """A detected policy conflict."""
    id: str
    conflict_type: str
    primary_policy_id: str
    conflicting_policy_id: str
    severity: str
    conflict_description: str = ""
    is_resolved: bool = False
    resolution_notes: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    detected_at: datetime | None = None


class ConflictResolveRequest(BaseModel):
    notes: str = ""
    resolved_by: str | None = None


# =============================================================================
# GUARDS & SESSIONS
# =============================================================================

class GuardCheckRequest(BaseModel):
    """
    Guard evaluation.

    Without `actor_id` no acting context can be established and the guard's
    fallback decision applies.
    """
    actor_id: str | None = None
    tenant_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class GuardDecisionResponse(BaseModel):
    """Merged permission + policy decision for a named guard."""
    guard: str
    allowed: bool
    reason: str | None = None
    layer: str | None = None
    fallback_used: bool = False
    blocked_by: list[BlockedByResponse] | None = None


class GuardInfo(BaseModel):
    name: str
    module: str
    action: str
    scope: str
    fallback_allowed: bool
    description: str = ""


class RolePreviewRequest(BaseModel):
    """Start a role preview for an operator."""
    role: str
    tenant_id: str | None = None
    expires_at: datetime | None = None


class ImpersonationRequest(BaseModel):
    """Start acting inside another tenant."""
    tenant_id: str
    home_tenant_id: str | None = None
    expires_at: datetime | None = None
