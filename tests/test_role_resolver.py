"""
Tests for role resolution and the session lifecycle.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from hr_authz.core.roles import RoleResolver
from hr_authz.exceptions import IdentityError, PreviewNotAllowedError, RuleStoreError
from hr_authz.models import Role, utcnow


class TestResolutionOrder:
    """Preview, then impersonation, then base assignment, then employee."""

    def test_base_role_in_current_tenant(self, store):
        """The assignment for the current tenant is used and normalized."""
        resolver = RoleResolver(store)
        assert resolver.resolve_role("u-lead", "acme") == Role.TEAM_LEAD
        assert resolver.resolve_role("u-hr", "acme") == Role.HR_ADMIN

    def test_assignment_in_other_tenant_is_ignored(self, store):
        """An assignment in another tenant does not apply."""
        resolver = RoleResolver(store)
        assert resolver.resolve_role("u-admin", "globex") == Role.EMPLOYEE

    def test_platform_wide_assignment_applies_everywhere(self, store):
        """A tenant-less assignment applies in every tenant."""
        resolver = RoleResolver(store)
        assert resolver.resolve_role("u-super", "acme") == Role.SUPERADMIN
        assert resolver.resolve_role("u-super", None) == Role.SUPERADMIN

    def test_unknown_actor_is_employee(self, store):
        """No assignment at all resolves to employee, never None."""
        acting = RoleResolver(store).resolve("nobody", "acme")
        assert acting.effective_role == Role.EMPLOYEE
        assert acting.preview_active is False

    def test_missing_actor_id_is_employee(self, store):
        """An empty actor id resolves to employee."""
        assert RoleResolver(store).resolve(None, "acme").effective_role == Role.EMPLOYEE

    def test_active_preview_wins(self, store):
        """An active preview overrides the real role."""
        store.set_role_preview("u-super", "hr-manager")
        acting = RoleResolver(store).resolve("u-super", "acme")
        assert acting.effective_role == Role.HR_ADMIN
        assert acting.preview_active is True

    def test_expired_preview_is_ignored(self, store):
        """A preview past its expiry is treated as absent."""
        store.set_role_preview("u-super", "employee", expires_at=utcnow() - timedelta(minutes=1))
        acting = RoleResolver(store).resolve("u-super", "acme")
        assert acting.effective_role == Role.SUPERADMIN
        assert acting.preview_active is False

    def test_inactive_preview_is_ignored(self, store):
        """A cleared preview no longer applies."""
        store.set_role_preview("u-super", "employee")
        store.clear_role_preview("u-super")
        assert RoleResolver(store).resolve_role("u-super", "acme") == Role.SUPERADMIN

    def test_impersonation_uses_impersonated_tenant(self, store):
        """While impersonating, the role comes from the impersonated tenant."""
        store.set_impersonation("u-multi", "globex", home_tenant_id="acme")
        acting = RoleResolver(store).resolve("u-multi", "acme")
        assert acting.effective_role == Role.ADMIN
        assert acting.impersonated_tenant_id == "globex"
        assert acting.effective_tenant_id == "globex"

    def test_preview_beats_impersonation(self, store):
        """Preview is checked before impersonation."""
        store.set_impersonation("u-multi", "globex")
        store.set_role_preview("u-multi", "team_lead")
        acting = RoleResolver(store).resolve("u-multi", "acme")
        assert acting.effective_role == Role.TEAM_LEAD
        assert acting.impersonated_tenant_id is None

    def test_highest_assignment_wins(self, store):
        """With several assignments in one tenant the highest role is used."""
        store.add_role_assignment({"user_id": "u-emp", "role": "hr_admin", "company_id": "acme"})
        assert RoleResolver(store).resolve_role("u-emp", "acme") == Role.HR_ADMIN


class TestFailClosed:
    """Store errors resolve to employee."""

    def test_store_error_resolves_to_employee(self):
        """Any session lookup failure falls back to employee."""
        sessions = MagicMock()
        sessions.get_role_preview.side_effect = RuleStoreError("down")
        acting = RoleResolver(sessions).resolve("u-super", "acme")
        assert acting.effective_role == Role.EMPLOYEE
        assert acting.real_actor_id == "u-super"

    def test_assignment_lookup_error_resolves_to_employee(self):
        """A failing assignment lookup does not escalate."""
        sessions = MagicMock()
        sessions.get_role_preview.return_value = None
        sessions.get_impersonation.return_value = None
        sessions.list_role_assignments.side_effect = RuleStoreError("down")
        assert RoleResolver(sessions).resolve_role("u-admin", "acme") == Role.EMPLOYEE


class TestSessionLifecycle:
    """Preview and impersonation switches on the engine."""

    async def test_open_session_resolves_once(self, engine):
        """Opening a session caches the acting context."""
        acting = await engine.open_session("u-lead", "acme")
        assert acting.effective_role == Role.TEAM_LEAD
        assert engine.acting_context("u-lead") is acting

    def test_operator_can_preview(self, engine):
        """Superadmins may preview a lower role."""
        acting = engine.start_role_preview("u-super", "employee")
        assert acting.effective_role == Role.EMPLOYEE
        assert acting.preview_active is True

        restored = engine.stop_role_preview("u-super")
        assert restored.effective_role == Role.SUPERADMIN
        assert restored.preview_active is False

    def test_admin_can_preview(self, engine):
        """Admins are operators too."""
        acting = engine.start_role_preview("u-admin", "team_lead", tenant_id="acme")
        assert acting.effective_role == Role.TEAM_LEAD

    def test_admin_cannot_preview_superadmin(self, engine, store):
        """A preview never lifts an operator above their real role."""
        with pytest.raises(PreviewNotAllowedError):
            engine.start_role_preview("u-admin", "superadmin", tenant_id="acme")

        assert store.get_role_preview("u-admin") is None
        acting = engine.acting_context("u-admin", "acme")
        assert acting.effective_role == Role.ADMIN

    def test_preview_at_own_rank_allowed(self, engine):
        assert engine.start_role_preview("u-admin", "admin", tenant_id="acme").effective_role == Role.ADMIN
        assert engine.start_role_preview("u-super", "superadmin").effective_role == Role.SUPERADMIN

    def test_non_operator_cannot_preview(self, engine):
        """Employees and HR admins may not start a preview."""
        with pytest.raises(PreviewNotAllowedError):
            engine.start_role_preview("u-emp", "admin", tenant_id="acme")
        with pytest.raises(PreviewNotAllowedError):
            engine.start_role_preview("u-hr", "employee", tenant_id="acme")

    def test_non_operator_cannot_impersonate(self, engine):
        """Impersonation is operator-only."""
        with pytest.raises(PreviewNotAllowedError):
            engine.start_impersonation("u-emp", "globex", home_tenant_id="acme")

    def test_impersonation_round_trip(self, engine):
        """Starting and stopping impersonation re-resolves the context."""
        acting = engine.start_impersonation("u-super", "globex")
        assert acting.impersonated_tenant_id == "globex"
        assert engine.stop_impersonation("u-super").impersonated_tenant_id is None

    def test_close_session_forgets_context(self, engine):
        """Closing a session drops the cached context."""
        engine.refresh_session("u-lead", "acme")
        engine.close_session("u-lead")
        assert "u-lead" not in engine.snapshots.current.overrides


class TestMissingIdentity:
    """Operations that need an actor refuse to run without one."""

    async def test_open_session_without_actor(self, engine):
        with pytest.raises(IdentityError):
            await engine.open_session("")

    @pytest.mark.parametrize("actor_id", ["", "   "])
    def test_preview_without_actor(self, engine, actor_id):
        with pytest.raises(IdentityError):
            engine.start_role_preview(actor_id, "employee")

    def test_impersonation_without_actor(self, engine):
        with pytest.raises(IdentityError):
            engine.start_impersonation("", "globex")

