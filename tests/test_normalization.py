"""
Tests for role, module and action normalization.
"""

import pytest

from hr_authz.core.permissions import PermissionEvaluator
from hr_authz.core.snapshot import build_snapshot
from hr_authz.models import (
    Role,
    normalize_action_key,
    normalize_module_key,
    normalize_role,
    normalize_scope,
)


class TestRoleNormalization:
    """Raw role strings map onto the canonical five roles."""

    @pytest.mark.parametrize("role", [r.value for r in Role])
    def test_canonical_role_is_noop(self, role):
        """Normalizing a canonical role returns it unchanged."""
        assert normalize_role(role).value == role
        assert normalize_role(normalize_role(role)) == normalize_role(role)

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("hr_manager", Role.HR_ADMIN),
            ("hr-manager", Role.HR_ADMIN),
            ("HR Manager", Role.HR_ADMIN),
            ("Teamleiter", Role.TEAM_LEAD),
            ("team-lead", Role.TEAM_LEAD),
            ("Super Admin", Role.SUPERADMIN),
            ("Mitarbeiter", Role.EMPLOYEE),
        ],
    )
    def test_aliases(self, raw, expected):
        """Known spellings resolve case-insensitively."""
        assert normalize_role(raw) == expected

    def test_spellings_of_same_role_agree(self):
        """Two spellings of one concept yield the same role."""
        assert normalize_role("hr_manager") == normalize_role("hr-manager")

    def test_admin_substring_maps_to_admin(self):
        """Unlisted strings containing 'admin' become admin."""
        assert normalize_role("tenant_admin") == Role.ADMIN
        assert normalize_role("company-administrator") == Role.ADMIN

    def test_hr_qualified_admin_is_not_escalated(self):
        """An hr-qualified unknown admin string is not mapped to admin."""
        assert normalize_role("hr_administrator_x") == Role.EMPLOYEE

    @pytest.mark.parametrize("raw", [None, "", "ceo", "guest"])
    def test_unknown_roles_become_employee(self, raw):
        """Unknown or empty roles never escalate."""
        assert normalize_role(raw) == Role.EMPLOYEE

    def test_role_rank_orders_privilege(self):
        """Rank increases with privilege."""
        assert Role.EMPLOYEE.rank < Role.TEAM_LEAD.rank < Role.HR_ADMIN.rank < Role.ADMIN.rank < Role.SUPERADMIN.rank


class TestModuleAndActionNormalization:
    """Module and action keys are normalized identically everywhere."""

    @pytest.mark.parametrize("raw", ["time_tracking", "Time-Tracking", "timetracking", "Zeiterfassung", " time tracking "])
    def test_module_spellings(self, raw):
        """All spellings of time tracking share one key."""
        assert normalize_module_key(raw) == "time_tracking"

    def test_module_normalization_is_idempotent(self):
        """Normalizing a normalized key is a no-op."""
        for raw in ["Business Travel", "Dokumente", "absence", "*"]:
            once = normalize_module_key(raw)
            assert normalize_module_key(once) == once

    @pytest.mark.parametrize(
        "raw,expected",
        [("read", "view"), ("VIEW", "view"), ("edit", "update"), ("clock-in", "time_check_in"), ("approve_request", "approve_request")],
    )
    def test_action_aliases(self, raw, expected):
        """Action naming schemes converge."""
        assert normalize_action_key(raw) == expected

    def test_scope_defaults_to_own(self):
        """A missing scope means 'own'."""
        assert normalize_scope(None) == "own"
        assert normalize_scope("Team") == "team"


class TestQueryStorageEquivalence:
    """A matrix row stored under one spelling is found under another."""

    def test_stored_display_name_matches_query_key(self):
        """Rows stored with display names decide queries using canonical keys."""
        snapshot = build_snapshot(
            matrix_rows=[{
                "role": "Teamleiter",
                "module_name": "Time-Tracking",
                "is_visible": True,
                "allowed_actions": ["Read", "Edit"],
            }],
            legacy_rows=[],
            policy_rows=[],
        )
        evaluator = PermissionEvaluator(lambda: snapshot)

        for module in ["timetracking", "time_tracking", "Zeiterfassung"]:
            decision = evaluator.explain("team-lead", module, "view")
            assert decision.allowed is True
            assert decision.layer == "matrix"

        denied = evaluator.explain("team_lead", "timetracking", "delete")
        assert denied.allowed is False
        assert denied.layer == "matrix"
