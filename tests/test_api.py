"""
Tests for the HTTP API.
"""

import logging

import hr_authz.api.dependencies as dependencies


class TestHealthEndpoints:
    """Tests for /health and /ready."""

    def test_health_returns_healthy(self, client):
        """Test /health returns service info."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["rule_store"] == "memory"

    def test_ready_after_load(self, client):
        """Test /ready reports a loaded snapshot."""
        data = client.get("/ready").json()
        assert data["ready"] is True
        assert data["checks"]["snapshot_loaded"] is True
        assert data["snapshot_version"] >= 1

    def test_not_ready_during_outage(self, failing_client):
        data = failing_client.get("/ready").json()
        assert data["ready"] is False

    def test_security_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"] == "req-42"
        assert "Cache-Control" not in response.headers

    def test_decision_headers(self, client):
        """Decisions are uncacheable and echo their verdict."""
        response = client.post("/api/authz/guards/can_delete_document", json={"actor_id": "u-emp", "tenant_id": "acme"})
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Authz-Decision"] == "deny"

        listed = client.get("/api/authz/guards")
        assert listed.headers["Cache-Control"] == "no-store"
        assert "X-Authz-Decision" not in listed.headers

    def test_access_log_names_caller_and_actor(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="hr-authz"):
            client.post(
                "/api/authz/guards/can_clock_in",
                json={"actor_id": "u-emp", "tenant_id": "acme"},
                headers={"X-Service-Name": "hr-web"},
            )
        line = next(r.getMessage() for r in caplog.records if r.getMessage().startswith("[HTTP] POST"))
        assert "/api/authz/guards/can_clock_in -> 200" in line
        assert "caller=hr-web" in line
        assert "actor=u-emp" in line
        assert "decision=allow" in line


class TestServiceAuth:
    """Inter-service secret on /api routes."""

    def test_missing_secret_rejected(self, client, monkeypatch):
        monkeypatch.setattr(dependencies.settings, "INTER_SERVICE_SECRET", "s3cret")
        response = client.get("/api/authz/guards")
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing service secret"

    def test_wrong_secret_rejected(self, client, monkeypatch):
        monkeypatch.setattr(dependencies.settings, "INTER_SERVICE_SECRET", "s3cret")
        response = client.get("/api/authz/guards", headers={"X-Service-Secret": "nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid service secret"

    def test_valid_secret_accepted(self, client, monkeypatch):
        monkeypatch.setattr(dependencies.settings, "INTER_SERVICE_SECRET", "s3cret")
        response = client.get(
            "/api/authz/guards",
            headers={"X-Service-Secret": "s3cret", "X-Service-Name": "hr-web"},
        )
        assert response.status_code == 200

    def test_health_needs_no_secret(self, client, monkeypatch):
        monkeypatch.setattr(dependencies.settings, "INTER_SERVICE_SECRET", "s3cret")
        assert client.get("/health").status_code == 200


class TestAuthzEndpoints:
    """Role resolution, permission, policy and guard checks."""

    def test_resolve_role(self, client):
        response = client.post("/api/authz/resolve-role", json={"actor_id": "u-lead", "tenant_id": "acme"})
        assert response.status_code == 200
        assert response.json()["effective_role"] == "team_lead"

    def test_check_permission_by_role(self, client):
        response = client.post(
            "/api/authz/check-permission",
            json={"role": "team_lead", "module": "absence", "action": "approve_request"},
        )
        data = response.json()
        assert data["allowed"] is True
        assert data["layer"] == "legacy"

    def test_check_permission_by_actor(self, client):
        response = client.post(
            "/api/authz/check-permission",
            json={"actor_id": "u-emp", "tenant_id": "acme", "module": "payroll", "action": "view"},
        )
        data = response.json()
        assert data["allowed"] is False
        assert data["layer"] == "matrix"
        assert data["effective_role"] == "employee"
        assert data["reason"]

    def test_check_policy(self, client, make_policy):
        make_policy(
            "geo_check_in",
            {"rule": "require_field", "field": "location_verified", "actions": ["time_check_in"]},
            affected_modules=["time_tracking"],
        )
        response = client.post(
            "/api/authz/check-policy",
            json={
                "actor_id": "u-emp",
                "tenant_id": "acme",
                "module": "time_tracking",
                "action": "clock-in",
                "context": {"location_verified": False},
            },
        )
        data = response.json()
        assert data["allowed"] is False
        assert data["blocked_by"][0]["policy"] == "geo_check_in"

    def test_check_policy_allowed_omits_blocked_by(self, client):
        response = client.post(
            "/api/authz/check-policy",
            json={"actor_id": "u-emp", "module": "absence", "action": "create_request"},
        )
        assert response.json() == {"allowed": True, "policies_applied": []}

    def test_list_guards(self, client):
        guards = client.get("/api/authz/guards").json()
        names = {g["name"] for g in guards}
        assert {"can_clock_in", "can_approve_absence"} <= names

    def test_guard_check(self, client):
        response = client.post("/api/authz/guards/can_clock_in", json={"actor_id": "u-emp", "tenant_id": "acme"})
        assert response.json()["allowed"] is True

    def test_guard_fallback_without_actor(self, client):
        data = client.post("/api/authz/guards/can_delete_document", json={}).json()
        assert data["allowed"] is False
        assert data["fallback_used"] is True

    def test_unknown_guard_404(self, client):
        response = client.post("/api/authz/guards/can_fly", json={"actor_id": "u-emp"})
        assert response.status_code == 404


class TestSessionEndpoints:
    """Role preview and impersonation switches."""

    def test_preview_round_trip(self, client):
        response = client.post("/api/authz/sessions/u-super/preview", json={"role": "employee"})
        assert response.status_code == 200
        assert response.json()["preview_active"] is True

        check = client.post(
            "/api/authz/check-permission",
            json={"actor_id": "u-super", "module": "payroll", "action": "view"},
        )
        assert check.json()["allowed"] is False

        stopped = client.delete("/api/authz/sessions/u-super/preview")
        assert stopped.json()["effective_role"] == "superadmin"

    def test_preview_forbidden_for_non_operator(self, client):
        response = client.post(
            "/api/authz/sessions/u-emp/preview",
            json={"role": "admin", "tenant_id": "acme"},
        )
        assert response.status_code == 403

    def test_preview_above_own_role_forbidden(self, client):
        response = client.post(
            "/api/authz/sessions/u-admin/preview",
            json={"role": "superadmin", "tenant_id": "acme"},
        )
        assert response.status_code == 403

    def test_blank_actor_rejected(self, client):
        response = client.post("/api/authz/sessions/%20/preview", json={"role": "employee"})
        assert response.status_code == 400
        assert response.json()["detail"]

    def test_impersonation(self, client):
        response = client.post("/api/authz/sessions/u-super/impersonation", json={"tenant_id": "globex"})
        assert response.json()["impersonated_tenant_id"] == "globex"

        stopped = client.delete("/api/authz/sessions/u-super/impersonation")
        assert stopped.json()["impersonated_tenant_id"] is None


class TestPolicyEndpoints:
    """Policy CRUD and templates."""

    PAYLOAD = {
        "policy_key": "no_self_approval",
        "policy_category": "absence",
        "policy_value": {"rule": "block_self_approval", "actions": ["approve_request"]},
        "affected_modules": ["absence"],
        "priority": 5,
    }

    def test_create_get_list(self, client):
        created = client.post("/api/policies", json=self.PAYLOAD)
        assert created.status_code == 201
        policy = created.json()
        assert policy["policy_name"] == "no_self_approval"

        fetched = client.get(f"/api/policies/{policy['id']}")
        assert fetched.json()["policy_key"] == "no_self_approval"

        listed = client.get("/api/policies").json()
        assert [p["id"] for p in listed] == [policy["id"]]

    def test_invalid_policy_422(self, client):
        response = client.post(
            "/api/policies",
            json={**self.PAYLOAD, "affected_modules": ["teleportation"]},
        )
        assert response.status_code == 422
        assert any("affected_modules" in e for e in response.json()["errors"])

    def test_unknown_policy_404(self, client):
        assert client.get("/api/policies/missing").status_code == 404

    def test_patch(self, client):
        policy = client.post("/api/policies", json=self.PAYLOAD).json()
        response = client.patch(f"/api/policies/{policy['id']}", json={"priority": 9})
        assert response.status_code == 200
        assert response.json()["priority"] == 9

    def test_delete(self, client):
        policy = client.post("/api/policies", json=self.PAYLOAD).json()
        assert client.delete(f"/api/policies/{policy['id']}").status_code == 204
        assert client.get(f"/api/policies/{policy['id']}").status_code == 404

    def test_delete_in_use_409(self, client, store):
        first = client.post("/api/policies", json=self.PAYLOAD).json()
        second = client.post("/api/policies", json={**self.PAYLOAD, "policy_key": "other", "priority": 1}).json()
        conflict = store.create_conflict({
            "conflict_type": "contradiction",
            "primary_policy_id": first["id"],
            "conflicting_policy_id": second["id"],
            "severity": "high",
        })

        response = client.delete(f"/api/policies/{first['id']}")
        assert response.status_code == 409
        assert conflict["id"] in response.json()["conflict_ids"]

        assert client.delete(f"/api/policies/{first['id']}", params={"force": True}).status_code == 204

    def test_apply_template(self, client):
        client.post("/api/policies", json=self.PAYLOAD)
        response = client.post(
            "/api/policies/templates/apply",
            json={"name": "relaxed", "policies": [{"key": "no_self_approval", "active": False}, {"key": "ghost", "active": True}]},
        )
        assert response.json() == {"template": "relaxed", "updated": ["no_self_approval"], "unknown": ["ghost"]}

    def test_store_outage_503(self, failing_client):
        assert failing_client.get("/api/policies").status_code == 503


class TestConflictEndpoints:
    """Conflict listing and resolution."""

    async def test_list_and_resolve(self, async_client, engine):
        await async_client.post("/api/policies", json={
            "policy_key": "no_self_approval",
            "policy_value": {"rule": "block_self_approval"},
            "affected_modules": ["absence"],
            "priority": 5,
        })
        await async_client.post("/api/policies", json={
            "policy_key": "allow_self_approval",
            "policy_value": {"rule": "allow_self_approval"},
            "affected_modules": ["absence"],
            "priority": 5,
        })
        await engine.policies.wait_for_analysis()

        conflicts = (await async_client.get("/api/conflicts")).json()
        assert len(conflicts) == 1
        assert conflicts[0]["conflict_type"] == "contradiction"

        resolved = await async_client.post(
            f"/api/conflicts/{conflicts[0]['id']}/resolve",
            json={"notes": "HR may self-approve", "resolved_by": "u-admin"},
        )
        assert resolved.status_code == 200
        assert resolved.json()["is_resolved"] is True
        assert (await async_client.get("/api/conflicts")).json() == []

    async def test_resolve_unknown_404(self, async_client):
        response = await async_client.post("/api/conflicts/missing/resolve", json={"notes": "n/a"})
        assert response.status_code == 404
