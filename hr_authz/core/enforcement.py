"""
Enforcement Facade.

Named guards combining the Permission Evaluator and the Policy Engine:

    guard(acting, context) = has_permission(...) AND policies(...).allowed

Each guard carries a `fallback_allowed` decision used when no acting context
can be established or the rule store has never been readable. Destructive
and approval guards fall back to deny; routine self-service guards fall
back to allow. Fallbacks are overridable per guard through configuration.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from ..exceptions import UnknownGuardError
from ..models.policies import BlockedBy, PolicyEnforcementResult
from ..models.roles import normalize_action_key, normalize_module_key
from ..models.rules import ActingContext
from .permissions import PermissionDecision, PermissionEvaluator
from .policy_engine import PolicyEngine

logger = logging.getLogger("hr-authz")


@dataclass(frozen=True)
class GuardSpec:
    """A named check on one module action."""
    name: str
    module: str
    action: str
    scope: str = "own"
    fallback_allowed: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "module": self.module,
            "action": self.action,
            "scope": self.scope,
            "fallback_allowed": self.fallback_allowed,
            "description": self.description,
        }


@dataclass(frozen=True)
class GuardDecision:
    """Merged outcome of a guard. Every deny carries a reason."""
    guard: str
    allowed: bool
    reason: str | None = None
    layer: str | None = None
    fallback_used: bool = False
    blocked_by: tuple[BlockedBy, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "guard": self.guard,
            "allowed": self.allowed,
            "reason": self.reason,
            "layer": self.layer,
            "fallback_used": self.fallback_used,
        }
        if self.blocked_by:
            data["blocked_by"] = [{"policy": b.policy, "reason": b.reason} for b in self.blocked_by]
        return data


DenialSink = Callable[[GuardDecision, "ActingContext | None"], None]


DEFAULT_GUARDS: tuple[GuardSpec, ...] = (
    GuardSpec("can_approve_absence", "absence", "approve_request", "team", False,
              "Approve or reject absence requests"),
    GuardSpec("can_request_absence", "absence", "create_request", "own", True,
              "Submit an absence request"),
    GuardSpec("can_clock_in", "time_tracking", "time_check_in", "own", True,
              "Start a time tracking entry"),
    GuardSpec("can_clock_out", "time_tracking", "time_check_out", "own", True,
              "Stop a time tracking entry"),
    GuardSpec("can_edit_time_entry", "time_tracking", "update", "team", False,
              "Correct a recorded time entry"),
    GuardSpec("can_delete_document", "documents", "delete", "own", False,
              "Delete a stored document"),
    GuardSpec("can_approve_expense", "expenses", "approve_request", "team", False,
              "Approve expense claims"),
    GuardSpec("can_create_trip", "business_travel", "create", "own", True,
              "Plan a business trip"),
    GuardSpec("can_manage_policies", "security", "update", "global", False,
              "Create, change or delete system policies"),
)


class EnforcementFacade:
    """Registry and evaluator of named guards."""

    def __init__(
        self,
        permissions: PermissionEvaluator,
        policies: PolicyEngine,
        guards: Iterable[GuardSpec] = DEFAULT_GUARDS,
        fallback_overrides: Mapping[str, bool] | None = None,
        denial_sink: DenialSink | None = None,
    ):
        self._permissions = permissions
        self._policies = policies
        self._guards: dict[str, GuardSpec] = {}
        self._denial_sink = denial_sink
        for spec in guards:
            self.register(spec)
        for name, allowed in (fallback_overrides or {}).items():
            if name not in self._guards:
                logger.warning(f"[GUARD] Fallback override for unknown guard '{name}' ignored")
                continue
            self._guards[name] = replace(self._guards[name], fallback_allowed=bool(allowed))

    def register(self, spec: GuardSpec) -> None:
        self._guards[spec.name] = replace(
            spec,
            module=normalize_module_key(spec.module),
            action=normalize_action_key(spec.action),
        )

    def guards(self) -> list[GuardSpec]:
        return sorted(self._guards.values(), key=lambda g: g.name)

    def get_guard(self, name: str) -> GuardSpec:
        spec = self._guards.get(name)
        if spec is None:
            raise UnknownGuardError(f"Unknown guard '{name}'")
        return spec

    # =========================================================================
    # EVALUATION
    # =========================================================================

    def check(
        self,
        name: str,
        acting: ActingContext | None,
        context: dict[str, Any] | None = None,
    ) -> GuardDecision:
        """Evaluate a guard for an acting context."""
        spec = self.get_guard(name)

        if acting is None or not acting.real_actor_id:
            return self._finish(self._fallback(spec, "no acting context could be established"), acting)

        permission: PermissionDecision = self._permissions.explain(
            acting.effective_role,
            spec.module,
            spec.action,
            spec.scope,
            user_id=acting.real_actor_id,
            preview_active=acting.preview_active,
        )
        if permission.layer == "store_unavailable":
            return self._finish(self._fallback(spec, "permission rules are unavailable"), acting)
        if not permission.allowed:
            return self._finish(
                GuardDecision(spec.name, False, permission.reason, permission.layer),
                acting,
            )

        policy: PolicyEnforcementResult = self._policies.check(acting, spec.module, spec.action, context)
        if not policy.allowed:
            return self._finish(
                GuardDecision(spec.name, False, policy.reason, "policy", blocked_by=policy.blocked_by),
                acting,
            )
        return self._finish(GuardDecision(spec.name, True, permission.reason, permission.layer), acting)

    def _fallback(self, spec: GuardSpec, why: str) -> GuardDecision:
        verdict = "allowing" if spec.fallback_allowed else "denying"
        logger.warning(f"[GUARD] {spec.name}: {why}, {verdict} by fallback")
        return GuardDecision(
            spec.name,
            spec.fallback_allowed,
            reason=f"Fallback for {spec.name}: {why}",
            layer="fallback",
            fallback_used=True,
        )

    def _finish(self, decision: GuardDecision, acting: ActingContext | None) -> GuardDecision:
        if decision.allowed:
            return decision
        if not decision.reason:
            decision = replace(decision, reason=f"{decision.guard} denied")
        actor = acting.real_actor_id if acting else "-"
        logger.debug(f"[GUARD] {decision.guard} denied for {actor}: {decision.reason}")
        if self._denial_sink is not None:
            try:
                self._denial_sink(decision, acting)
            except Exception as e:
                logger.warning(f"[GUARD] Denial sink failed: {e}")
        return decision
