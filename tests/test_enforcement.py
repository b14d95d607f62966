"""
Tests for named guards.
"""

from unittest.mock import MagicMock

import pytest

from hr_authz.core.engine import AuthorizationEngine
from hr_authz.core.enforcement import DEFAULT_GUARDS, GuardSpec
from hr_authz.exceptions import UnknownGuardError
from hr_authz.models import ActingContext, Role


class TestGuardDecisions:
    """Guards combine permission and policy checks."""

    def test_self_service_guard_allows(self, engine):
        acting = engine.refresh_session("u-emp", "acme")
        decision = engine.check_guard("can_clock_in", acting)
        assert decision.allowed is True
        assert decision.layer == "matrix"
        assert decision.fallback_used is False

    def test_team_scope_approval_via_legacy_grant(self, engine):
        acting = engine.refresh_session("u-lead", "acme")
        decision = engine.check_guard("can_approve_absence", acting)
        assert decision.allowed is True
        assert decision.layer == "legacy"

    def test_permission_deny_has_reason(self, engine):
        acting = engine.refresh_session("u-emp", "acme")
        decision = engine.check_guard("can_approve_absence", acting)
        assert decision.allowed is False
        assert decision.reason

    def test_policy_block(self, engine, make_policy):
        """A permitted action can still be blocked by a policy."""
        make_policy(
            "no_absence_self_approval",
            {"rule": "block_self_approval", "actions": ["approve_request"]},
            affected_modules=["absence"],
        )
        acting = engine.refresh_session("u-lead", "acme")

        own = engine.check_guard("can_approve_absence", acting, {"subject_user_id": "u-lead"})
        assert own.allowed is False
        assert own.layer == "policy"
        assert own.blocked_by[0].policy == "no_absence_self_approval"
        assert own.to_dict()["blocked_by"][0]["reason"]

        other = engine.check_guard("can_approve_absence", acting, {"subject_user_id": "u-emp"})
        assert other.allowed is True

    def test_previewing_superadmin_is_limited(self, engine):
        acting = engine.start_role_preview("u-super", "employee")
        assert engine.check_guard("can_delete_document", acting).allowed is False
        assert engine.check_guard("can_clock_in", acting).allowed is True

    def test_unknown_guard(self, engine):
        with pytest.raises(UnknownGuardError):
            engine.check_guard("can_fly", None)


class TestFallbacks:
    """Fallback verdicts when identity or rules are unavailable."""

    def test_no_acting_context(self, engine):
        routine = engine.check_guard("can_clock_in", None)
        assert routine.allowed is True
        assert routine.fallback_used is True

        destructive = engine.check_guard("can_delete_document", None)
        assert destructive.allowed is False
        assert destructive.fallback_used is True
        assert destructive.reason

    def test_default_fallbacks_by_kind(self):
        """Approval and destructive guards fall back to deny."""
        fallbacks = {g.name: g.fallback_allowed for g in DEFAULT_GUARDS}
        assert fallbacks["can_approve_absence"] is False
        assert fallbacks["can_delete_document"] is False
        assert fallbacks["can_clock_in"] is True
        assert fallbacks["can_request_absence"] is True

    def test_configured_override(self, store):
        engine = AuthorizationEngine(
            store,
            guard_fallbacks={"can_clock_in": False, "can_delete_document": True, "not_a_guard": True},
            debounce_ms=0,
        )
        assert engine.check_guard("can_clock_in", None).allowed is False
        assert engine.check_guard("can_delete_document", None).allowed is True

    def test_store_unavailable_uses_fallback(self, failing_engine):
        acting = ActingContext(real_actor_id="u-emp", effective_role=Role.EMPLOYEE, tenant_id="acme")

        routine = failing_engine.check_guard("can_clock_in", acting)
        assert routine.allowed is True
        assert routine.fallback_used is True

        approval = failing_engine.check_guard("can_approve_absence", acting)
        assert approval.allowed is False
        assert approval.layer == "fallback"


class TestDenialSink:
    """Denials are reported to an optional sink."""

    def test_sink_receives_denials(self, store):
        sink = MagicMock()
        engine = AuthorizationEngine(store, denial_sink=sink, guard_fallbacks={}, debounce_ms=0)
        engine.snapshots.reload()
        acting = engine.refresh_session("u-emp", "acme")

        engine.check_guard("can_clock_in", acting)
        sink.assert_not_called()

        decision = engine.check_guard("can_delete_document", acting)
        sink.assert_called_once_with(decision, acting)
        assert decision.reason

    def test_failing_sink_does_not_break_guard(self, store):
        sink = MagicMock(side_effect=RuntimeError("audit down"))
        engine = AuthorizationEngine(store, denial_sink=sink, guard_fallbacks={}, debounce_ms=0)
        engine.snapshots.reload()
        acting = engine.refresh_session("u-emp", "acme")

        decision = engine.check_guard("can_delete_document", acting)
        assert decision.allowed is False


class TestRegistry:
    """Guards can be listed and registered."""

    def test_list_guards(self, engine):
        names = [g.name for g in engine.enforcement.guards()]
        assert names == sorted(names)
        assert "can_clock_in" in names

    def test_register_normalizes_keys(self, engine):
        engine.enforcement.register(GuardSpec("can_view_docs", "Dokumente", "read", fallback_allowed=True))
        spec = engine.enforcement.get_guard("can_view_docs")
        assert (spec.module, spec.action) == ("documents", "view")

        acting = engine.refresh_session("u-hr", "acme")
        assert engine.check_guard("can_view_docs", acting).allowed is True
