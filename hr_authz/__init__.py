"""
hr-authz: authorization resolution and policy enforcement.

Decides, for an actor, module, action and context, whether an operation is
permitted, and runs system-wide business policies with conflict detection.
"""

from .core import AuthorizationEngine, get_engine
from .exceptions import AuthzError
from .models import ActingContext, Role

__version__ = "0.1.0"

__all__ = [
    "ActingContext",
    "AuthorizationEngine",
    "AuthzError",
    "Role",
    "get_engine",
]
