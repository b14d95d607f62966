"""
Policy administration endpoints.
"""

from fastapi import APIRouter, Depends, Query, status

from ...core.engine import AuthorizationEngine
from ...models import (
    PolicyCreate,
    PolicyResponse,
    PolicyTemplate,
    PolicyUpdate,
    TemplateApplyResponse,
)
from ..dependencies import get_authz_engine, require_service_auth

router = APIRouter(prefix="/api/policies", tags=["policies"])


@router.get("", response_model=list[PolicyResponse])
async def list_policies(
    active_only: bool = Query(False),
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """List policies, highest priority first."""
    return [p.to_dict() for p in engine.policies.list_policies(active_only=active_only)]


@router.post("", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_policy(
    request: PolicyCreate,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """
    Create a policy.

    The policy is active for evaluation as soon as this returns; conflict
    analysis continues in the background.
    """
    return engine.create_policy(request).to_dict()


@router.post("/templates/apply", response_model=TemplateApplyResponse)
async def apply_template(
    template: PolicyTemplate,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Toggle existing policies on or off by key."""
    updated, unknown = engine.apply_policy_template(template)
    return {"template": template.name, "updated": updated, "unknown": unknown}


@router.get("/{policy_id}", response_model=PolicyResponse)
async def get_policy(
    policy_id: str,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    return engine.policies.get_policy(policy_id).to_dict()


@router.patch("/{policy_id}", response_model=PolicyResponse)
async def update_policy(
    policy_id: str,
    patch: PolicyUpdate,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Partially update a policy; the result is re-validated and re-analyzed."""
    return engine.update_policy(policy_id, patch).to_dict()


@router.delete("/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy(
    policy_id: str,
    force: bool = Query(False),
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Delete a policy. 409 while an unresolved conflict references it, unless forced."""
    engine.delete_policy(policy_id, force=force)
