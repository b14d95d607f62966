"""
API routers for hr-authz.
"""

from .health import router as health_router
from .authz import router as authz_router
from .policies import router as policies_router
from .conflicts import router as conflicts_router

__all__ = [
    "health_router",
    "authz_router",
    "policies_router",
    "conflicts_router",
]
