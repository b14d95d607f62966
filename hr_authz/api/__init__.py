"""
hr-authz API layer.
"""

from .routers import (
    health_router,
    authz_router,
    policies_router,
    conflicts_router,
)

__all__ = [
    "health_router",
    "authz_router",
    "policies_router",
    "conflicts_router",
]
