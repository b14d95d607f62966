"""
Authorization API endpoints.

Role resolution, permission and policy checks, named guards and the
role-preview / impersonation session switches.
"""

from fastapi import APIRouter, Depends, Request

from ...core.engine import AuthorizationEngine
from ...models import (
    ActingContextResponse,
    GuardCheckRequest,
    GuardDecisionResponse,
    GuardInfo,
    ImpersonationRequest,
    PermissionCheckRequest,
    PermissionDecisionResponse,
    PolicyCheckRequest,
    PolicyCheckResponse,
    ResolveRoleRequest,
    RolePreviewRequest,
)
from ..dependencies import get_authz_engine, record_decision, require_service_auth

router = APIRouter(prefix="/api/authz", tags=["authz"])


# =============================================================================
# ROLE RESOLUTION
# =============================================================================

@router.post("/resolve-role", response_model=ActingContextResponse)
async def resolve_role(
    request: ResolveRoleRequest,
    http_request: Request,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """
    Resolve an actor's acting context.

    Preview beats impersonation beats the base assignment; anything
    unresolvable is employee.
    """
    record_decision(http_request, request.actor_id)
    acting = engine.acting_context(request.actor_id, request.tenant_id)
    return acting.to_dict()


# =============================================================================
# CHECKS
# =============================================================================

@router.post("/check-permission", response_model=PermissionDecisionResponse)
async def check_permission(
    request: PermissionCheckRequest,
    http_request: Request,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """
    Check a permission and report the deciding layer.

    With `actor_id` the actor's acting context (preview, impersonation and
    overrides) is used; otherwise `role` is checked directly.
    """
    if request.actor_id:
        acting = engine.acting_context(request.actor_id, request.tenant_id)
        decision = engine.check_permission(acting, request.module, request.action, request.scope)
        role = acting.effective_role.value
    else:
        decision = engine.explain_permission(request.role, request.module, request.action, request.scope)
        role = request.role
    record_decision(http_request, request.actor_id, decision.allowed)
    return {**decision.to_dict(), "effective_role": role}


@router.post("/check-policy", response_model=PolicyCheckResponse, response_model_exclude_none=True)
async def check_policy(
    request: PolicyCheckRequest,
    http_request: Request,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Evaluate system policies for an action."""
    result = engine.check_policy_enforcement(
        request.actor_id,
        request.module,
        request.action,
        request.context,
        tenant_id=request.tenant_id,
    )
    record_decision(http_request, request.actor_id, result.allowed)
    return result.to_dict()


# =============================================================================
# GUARDS
# =============================================================================

@router.get("/guards", response_model=list[GuardInfo])
async def list_guards(
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """List registered guards with their effective fallback."""
    return [g.to_dict() for g in engine.enforcement.guards()]


@router.post("/guards/{name}", response_model=GuardDecisionResponse, response_model_exclude_none=True)
async def check_guard(
    name: str,
    request: GuardCheckRequest,
    http_request: Request,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Evaluate a named guard. Unknown guards return 404."""
    acting = engine.acting_context(request.actor_id, request.tenant_id) if request.actor_id else None
    decision = engine.check_guard(name, acting, request.context)
    record_decision(http_request, request.actor_id, decision.allowed)
    return decision.to_dict()


# =============================================================================
# SESSIONS
# =============================================================================

@router.post("/sessions/{actor_id}/preview", response_model=ActingContextResponse)
async def start_preview(
    actor_id: str,
    request: RolePreviewRequest,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Start a role preview. Only superadmins and admins may preview."""
    acting = engine.start_role_preview(actor_id, request.role, request.tenant_id, request.expires_at)
    return acting.to_dict()


@router.delete("/sessions/{actor_id}/preview", response_model=ActingContextResponse)
async def stop_preview(
    actor_id: str,
    tenant_id: str | None = None,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    acting = engine.stop_role_preview(actor_id, tenant_id)
    return acting.to_dict()


@router.post("/sessions/{actor_id}/impersonation", response_model=ActingContextResponse)
async def start_impersonation(
    actor_id: str,
    request: ImpersonationRequest,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Start acting inside another tenant."""
    acting = engine.start_impersonation(
        actor_id,
        request.tenant_id,
        home_tenant_id=request.home_tenant_id,
        expires_at=request.expires_at,
    )
    return acting.to_dict()


@router.delete("/sessions/{actor_id}/impersonation", response_model=ActingContextResponse)
async def stop_impersonation(
    actor_id: str,
    tenant_id: str | None = None,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    acting = engine.stop_impersonation(actor_id, tenant_id)
    return acting.to_dict()
