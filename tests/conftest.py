"""
Pytest configuration and fixtures.

This module provides:
- A seeded in-memory rule store per test
- An engine wired to it with a loaded snapshot
- A failing store / engine for outage simulation
- Sync and async API clients bound to the test engine
"""

import os
from collections.abc import Generator
from typing import Any

import pytest

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["RULE_STORE_BACKEND"] = "memory"
os.environ["SNAPSHOT_WATCH_ENABLED"] = "false"
os.environ["SNAPSHOT_RELOAD_DEBOUNCE_MS"] = "0"
os.environ.pop("INTER_SERVICE_SECRET", None)

from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from hr_authz.api.dependencies import get_authz_engine
from hr_authz.api.server import app
from hr_authz.core.engine import AuthorizationEngine
from hr_authz.db.backends.memory import MemoryRuleStore
from hr_authz.exceptions import RuleStoreError


# =============================================================================
# SEED DATA
# =============================================================================


def seed_rows() -> dict[str, list[dict[str, Any]]]:
    """A small tenant setup used across the suite."""
    return {
        "user_roles": [
            {"user_id": "u-emp", "role": "employee", "company_id": "acme"},
            {"user_id": "u-lead", "role": "Teamleiter", "company_id": "acme"},
            {"user_id": "u-hr", "role": "hr_manager", "company_id": "acme"},
            {"user_id": "u-admin", "role": "admin", "company_id": "acme"},
            {"user_id": "u-super", "role": "superadmin", "company_id": None},
            {"user_id": "u-multi", "role": "employee", "company_id": "acme"},
            {"user_id": "u-multi", "role": "tenant_admin", "company_id": "globex"},
        ],
        "role_permission_matrix": [
            {
                "role": "employee",
                "module_name": "Zeiterfassung",
                "is_visible": True,
                "allowed_actions": ["read", "clock-in", "clock-out"],
            },
            {
                "role": "employee",
                "module_name": "payroll",
                "is_visible": False,
                "allowed_actions": ["view", "update"],
            },
            {
                "role": "employee",
                "module_name": "documents",
                "is_visible": True,
                "allowed_actions": ["view"],
            },
            {
                "role": "hr_manager",
                "module_name": "Dokumente",
                "is_visible": True,
                "allowed_actions": ["read", "edit", "delete"],
            },
        ],
        "role_permissions": [
            {"role": "team_lead", "module_name": "absence", "action": "approve_request", "scope": "own", "is_granted": True},
            {"role": "team_lead", "module_name": "absence", "action": "approve_request", "scope": "team", "is_granted": True},
            {"role": "employee", "module_name": "absence", "action": "create_request", "scope": "own", "is_granted": False},
        ],
    }


def policy_row(key: str, rule: dict[str, Any], **fields: Any) -> dict[str, Any]:
    """Build a policy payload with sensible defaults."""
    row = {
        "policy_key": key,
        "policy_name": key.replace("_", " ").title(),
        "policy_category": "general",
        "policy_value": rule,
        "affected_modules": [],
        "required_roles": [],
        "priority": 1,
    }
    row.update(fields)
    return row


class FailingRuleStore(MemoryRuleStore):
    """Memory store whose every read raises, simulating an outage."""

    def _fail(self, *args, **kwargs):
        raise RuleStoreError("simulated outage")

    list_matrix_entries = _fail
    list_user_overrides = _fail
    list_role_permissions = _fail
    list_policies = _fail
    get_policy = _fail
    get_policy_by_key = _fail
    list_conflicts = _fail
    get_conflict = _fail
    list_role_assignments = _fail
    get_role_preview = _fail
    get_impersonation = _fail


# =============================================================================
# STORE & ENGINE FIXTURES
# =============================================================================


@pytest.fixture
def store() -> MemoryRuleStore:
    """Seeded in-memory store."""
    return MemoryRuleStore(seed_rows())


@pytest.fixture
def engine(store: MemoryRuleStore) -> AuthorizationEngine:
    """Engine over the seeded store with a loaded snapshot."""
    engine = AuthorizationEngine(
        store,
        guard_fallbacks={},
        conflict_detection_enabled=True,
        debounce_ms=0,
    )
    engine.snapshots.reload()
    return engine


@pytest.fixture
def make_policy(engine: AuthorizationEngine):
    """Create a policy through the engine's validated write path."""
    def _make(key: str, rule: dict[str, Any], **fields: Any):
        return engine.create_policy(policy_row(key, rule, **fields))
    return _make


@pytest.fixture
def failing_store() -> FailingRuleStore:
    return FailingRuleStore()


@pytest.fixture
def failing_engine(failing_store: FailingRuleStore) -> AuthorizationEngine:
    """Engine whose store has been unreachable since startup."""
    engine = AuthorizationEngine(
        failing_store,
        guard_fallbacks={},
        conflict_detection_enabled=True,
        debounce_ms=0,
    )
    engine.snapshots.reload()
    return engine


# =============================================================================
# API CLIENT FIXTURES
# =============================================================================


@pytest.fixture
def client(engine: AuthorizationEngine) -> Generator[TestClient, None, None]:
    """Synchronous test client bound to the test engine."""
    app.dependency_overrides[get_authz_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def failing_client(failing_engine: AuthorizationEngine) -> Generator[TestClient, None, None]:
    """Test client whose engine cannot reach the rule store."""
    app.dependency_overrides[get_authz_engine] = lambda: failing_engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(engine: AuthorizationEngine) -> AsyncClient:
    """Async test client sharing the test's event loop (no lifespan)."""
    app.dependency_overrides[get_authz_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
