"""
FastAPI dependencies for hr-authz.

Calling HR services authenticate with a shared secret; the engine is
injected per request so tests can swap it out.
"""

import hmac
import logging

from fastapi import Depends, HTTPException, Request, status

from ..config import settings
from ..core.engine import AuthorizationEngine, get_engine

logger = logging.getLogger("hr-authz")


# =============================================================================
# CALLER AUTHENTICATION
# =============================================================================

def _reject(caller: str, path: str, detail: str) -> HTTPException:
    logger.warning(f"[AUTH] {detail} from caller={caller} on {path}")
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def verify_service_secret(request: Request) -> str:
    """
    Authenticate the HR service asking for an authorization decision.

    The caller sends X-Service-Secret (compared in constant time against
    INTER_SERVICE_SECRET) and names itself in X-Service-Name. With no
    secret configured every caller is accepted, which only makes sense
    outside production.

    Returns:
        The caller name, also stored on request.state.caller for logging.

    Raises:
        HTTPException: 401 if the secret is missing or wrong.
    """
    caller = request.headers.get("X-Service-Name", "unknown")
    expected = settings.INTER_SERVICE_SECRET

    if expected:
        presented = request.headers.get("X-Service-Secret")
        if not presented:
            raise _reject(caller, request.url.path, "Missing service secret")
        if not hmac.compare_digest(presented.encode(), expected.encode()):
            raise _reject(caller, request.url.path, "Invalid service secret")

    request.state.caller = caller
    return caller


async def require_service_auth(
    service: str = Depends(verify_service_secret),
) -> str:
    """Dependency for every /api endpoint."""
    return service


def record_decision(request: Request, actor_id: str | None, allowed: bool | None = None) -> None:
    """Attach the actor and verdict to the request for the access log and headers."""
    if actor_id:
        request.state.authz_actor = actor_id
    if allowed is not None:
        request.state.authz_decision = "allow" if allowed else "deny"


# =============================================================================
# ENGINE
# =============================================================================

def get_authz_engine() -> AuthorizationEngine:
    """The process-wide engine. Overridden in tests."""
    return get_engine()
