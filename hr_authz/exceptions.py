"""
Error taxonomy for the authorization engine.

Store errors propagate from the backends; each decision path decides
whether it fails open or closed.
"""


class AuthzError(Exception):
    """Base exception for authorization engine errors."""


class RuleStoreError(AuthzError):
    """Raised when the rule store cannot be read or written."""


class IdentityError(AuthzError):
    """Raised when an actor or session cannot be established."""


class PolicyValidationError(AuthzError):
    """Raised when a policy is rejected at write time."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class PolicyNotFoundError(AuthzError):
    """Raised when a policy id does not exist."""


class ConflictNotFoundError(AuthzError):
    """Raised when a conflict id does not exist."""


class PolicyInUseError(AuthzError):
    """Raised when deleting a policy that an unresolved conflict references."""

    def __init__(self, policy_id: str, conflict_ids: list[str]):
        super().__init__(
            f"Policy {policy_id} is referenced by unresolved conflicts: {', '.join(conflict_ids)}"
        )
        self.policy_id = policy_id
        self.conflict_ids = conflict_ids


class UnknownGuardError(AuthzError):
    """Raised when a guard name is not registered."""


class PreviewNotAllowedError(AuthzError):
    """Raised when a non-operator tries to start a role preview or impersonation."""
