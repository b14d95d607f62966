"""
Policy conflict review endpoints.
"""

from fastapi import APIRouter, Depends

from ...core.engine import AuthorizationEngine
from ...models import ConflictResolveRequest, ConflictResponse
from ..dependencies import get_authz_engine, require_service_auth

router = APIRouter(prefix="/api/conflicts", tags=["conflicts"])


@router.get("", response_model=list[ConflictResponse])
async def list_conflicts(
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """List unresolved conflicts."""
    return [c.to_dict() for c in engine.list_unresolved_conflicts()]


@router.post("/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve_conflict(
    conflict_id: str,
    request: ConflictResolveRequest,
    service: str = Depends(require_service_auth),
    engine: AuthorizationEngine = Depends(get_authz_engine),
):
    """Mark a conflict resolved with operator notes."""
    return engine.resolve_conflict(conflict_id, request.notes, request.resolved_by).to_dict()
