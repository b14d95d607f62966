"""
Rule record models.

Rows come from the rule store as plain dicts; `from_row` turns them into
frozen dataclasses with normalized keys so lookups on the query side and the
storage side use identical keys.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .roles import (
    WILDCARD,
    Role,
    normalize_action_key,
    normalize_module_key,
    normalize_role,
    normalize_scope,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _is_expired(expires_at: datetime | None, now: datetime) -> bool:
    return expires_at is not None and expires_at <= now


def _as_frozenset(values: Any, normalizer=None) -> frozenset[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    if normalizer is None:
        return frozenset(str(v) for v in values)
    return frozenset(normalizer(str(v)) for v in values)


# =============================================================================
# IDENTITY & SESSIONS
# =============================================================================

@dataclass(frozen=True)
class RoleAssignment:
    """A base role assignment. tenant_id None means platform-wide."""
    user_id: str
    role: Role
    raw_role: str
    tenant_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RoleAssignment":
        raw = str(row.get("role") or "")
        return cls(
            user_id=str(row.get("user_id")),
            role=normalize_role(raw),
            raw_role=raw,
            tenant_id=row.get("company_id") or row.get("tenant_id"),
        )


@dataclass(frozen=True)
class RolePreviewSession:
    """An operator testing the platform as another role."""
    user_id: str
    preview_role: Role
    is_active: bool = True
    expires_at: datetime | None = None

    def is_current(self, now: datetime) -> bool:
        return self.is_active and not _is_expired(self.expires_at, now)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RolePreviewSession":
        return cls(
            user_id=str(row.get("user_id")),
            preview_role=normalize_role(row.get("preview_role")),
            is_active=bool(row.get("is_preview_active", row.get("is_active", True))),
            expires_at=parse_timestamp(row.get("expires_at")),
        )


@dataclass(frozen=True)
class TenantImpersonation:
    """An actor working inside another tenant's scope."""
    user_id: str
    tenant_id: str
    is_active: bool = True
    expires_at: datetime | None = None

    def is_current(self, now: datetime) -> bool:
        return self.is_active and not _is_expired(self.expires_at, now)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TenantImpersonation":
        return cls(
            user_id=str(row.get("session_user_id") or row.get("user_id")),
            tenant_id=str(row.get("impersonated_company_id") or row.get("tenant_id")),
            is_active=bool(row.get("is_active", True)),
            expires_at=parse_timestamp(row.get("expires_at")),
        )


@dataclass(frozen=True)
class ActingContext:
    """
    Who is acting, as which role, inside which tenant.

    Resolved once per request and passed explicitly to every check.
    """
    real_actor_id: str
    effective_role: Role
    tenant_id: str | None = None
    impersonated_tenant_id: str | None = None
    preview_active: bool = False

    @property
    def effective_tenant_id(self) -> str | None:
        return self.impersonated_tenant_id or self.tenant_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "real_actor_id": self.real_actor_id,
            "effective_role": self.effective_role.value,
            "tenant_id": self.tenant_id,
            "impersonated_tenant_id": self.impersonated_tenant_id,
            "preview_active": self.preview_active,
        }


# =============================================================================
# PERMISSION RULES
# =============================================================================

@dataclass(frozen=True)
class PermissionMatrixEntry:
    """Per-role, per-module visibility plus action allowlist."""
    role: Role
    module: str
    is_visible: bool = True
    allowed_actions: frozenset[str] = field(default_factory=frozenset)
    visible_fields: frozenset[str] = field(default_factory=frozenset)
    editable_fields: frozenset[str] = field(default_factory=frozenset)
    allowed_notifications: frozenset[str] = field(default_factory=frozenset)
    workflow_triggers: frozenset[str] = field(default_factory=frozenset)

    def allows(self, action: str) -> bool:
        if not self.is_visible:
            return False
        return WILDCARD in self.allowed_actions or normalize_action_key(action) in self.allowed_actions

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PermissionMatrixEntry":
        return cls(
            role=normalize_role(row.get("role")),
            module=normalize_module_key(row.get("module_name") or row.get("module")),
            is_visible=bool(row.get("is_visible", True)),
            allowed_actions=_as_frozenset(row.get("allowed_actions"), normalize_action_key),
            visible_fields=_as_frozenset(row.get("visible_fields")),
            editable_fields=_as_frozenset(row.get("editable_fields")),
            allowed_notifications=_as_frozenset(row.get("allowed_notifications")),
            workflow_triggers=_as_frozenset(row.get("workflow_triggers")),
        )


@dataclass(frozen=True)
class UserPermissionOverride:
    """A time-bound, per-user exception to role-based rules."""
    user_id: str
    module: str
    action: str
    scope: str = "own"
    is_granted: bool = True
    expires_at: datetime | None = None
    id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return _is_expired(self.expires_at, now)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.module, self.action, self.scope)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "UserPermissionOverride":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            user_id=str(row.get("user_id")),
            module=normalize_module_key(row.get("module_name") or row.get("module")),
            action=normalize_action_key(row.get("action")),
            scope=normalize_scope(row.get("scope")),
            is_granted=bool(row.get("is_granted", True)),
            expires_at=parse_timestamp(row.get("expires_at")),
        )


@dataclass(frozen=True)
class RolePermission:
    """Legacy (role, module, action, scope) grant record."""
    role: Role
    module: str
    action: str
    scope: str = "own"
    is_granted: bool = True

    @property
    def key(self) -> tuple[Role, str, str, str]:
        return (self.role, self.module, self.action, self.scope)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RolePermission":
        return cls(
            role=normalize_role(row.get("role")),
            module=normalize_module_key(row.get("module_name") or row.get("module")),
            action=normalize_action_key(row.get("action")),
            scope=normalize_scope(row.get("scope")),
            is_granted=bool(row.get("is_granted", True)),
        )
