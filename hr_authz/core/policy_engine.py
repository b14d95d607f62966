"""
Policy Engine.

Evaluates business-rule policies, independently of role authorization,
against an action and its context. Policies are taken from the snapshot in
priority-descending order. Any applicable policy that blocks makes the
aggregate result a deny; every evaluated policy is listed for audit.

If the rule store has never been readable the engine fails open.
"""

import logging
from datetime import datetime
from typing import Any

from ..models.policies import (
    BlockedBy,
    PolicyEnforcementResult,
    PolicyRule,
    RuleKind,
    SystemPolicy,
)
from ..models.roles import normalize_action_key, normalize_module_key
from ..models.rules import ActingContext, utcnow
from .snapshot import Snapshot

logger = logging.getLogger("hr-authz")


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_rule(rule: PolicyRule, actor_id: str, context: dict[str, Any]) -> str | None:
    """
    Evaluate one policy rule.

    Returns a block reason, or None when the rule passes.
    """
    kind = rule.rule

    if kind == RuleKind.BLOCK_SELF_APPROVAL:
        subject = context.get("subject_user_id", context.get("requester_id"))
        if subject is not None and str(subject) == str(actor_id):
            return rule.message or "Approving your own request is not allowed"
        return None

    if kind == RuleKind.REQUIRE_MFA:
        if not context.get("mfa_verified"):
            return rule.message or "Multi-factor authentication is required"
        return None

    if kind == RuleKind.REQUIRE_FIELD:
        if context.get(rule.field) != rule.equals:
            return rule.message or f"'{rule.field}' must be {rule.equals!r}"
        return None

    if kind == RuleKind.FORBID_FIELD:
        if context.get(rule.field) == rule.equals:
            return rule.message or f"'{rule.field}' must not be {rule.equals!r}"
        return None

    if kind in (RuleKind.MAX_VALUE, RuleKind.MIN_VALUE):
        value = _number(context.get(rule.field))
        if value is None:
            return None
        if kind == RuleKind.MAX_VALUE and value >= rule.limit:
            return rule.message or f"'{rule.field}' limit of {rule.limit:g} reached"
        if kind == RuleKind.MIN_VALUE and value < rule.limit:
            return rule.message or f"'{rule.field}' must be at least {rule.limit:g}"
        return None

    if kind == RuleKind.BLOCK_ACTION:
        return rule.message or "Action is blocked by policy"

    # allow_self_approval / allow_action are exemptions
    return None


def _subject(rule: PolicyRule) -> str | None:
    """The subject an exemption and a block rule share, if any."""
    if rule.rule in (RuleKind.BLOCK_SELF_APPROVAL, RuleKind.ALLOW_SELF_APPROVAL):
        return "self_approval"
    if rule.rule in (RuleKind.BLOCK_ACTION, RuleKind.ALLOW_ACTION):
        return "action"
    return None


class PolicyEngine:
    """Applies the snapshot's active policies to an acting context."""

    def __init__(self, snapshot_source):
        self._snapshot_source = snapshot_source

    def applicable_policies(
        self,
        acting: ActingContext,
        module: str,
        action: str,
        snapshot: Snapshot,
        now: datetime,
    ) -> list[SystemPolicy]:
        module = normalize_module_key(module)
        action = normalize_action_key(action)
        return [
            p for p in snapshot.policies
            if p.is_active
            and p.applies_to_module(module)
            and p.applies_to_role(acting.effective_role)
            and p.applies_to_tenant(acting.effective_tenant_id)
            and p.is_in_effect(now)
            and p.rule.covers_action(action)
        ]

    def check(
        self,
        acting: ActingContext,
        module: str,
        action: str,
        context: dict[str, Any] | None = None,
        now: datetime | None = None,
        snapshot: Snapshot | None = None,
    ) -> PolicyEnforcementResult:
        """Evaluate every applicable policy and aggregate the verdict."""
        snapshot = snapshot or self._snapshot_source()
        if not snapshot.loaded:
            logger.warning(f"[POLICY] Policies unavailable, failing open for {action} on {module}")
            return PolicyEnforcementResult(allowed=True, fail_open=True)

        now = now or utcnow()
        context = context or {}
        applied: list[dict[str, str]] = []
        blocked: list[BlockedBy] = []
        exemptions: dict[str, int] = {}

        for policy in self.applicable_policies(acting, module, action, snapshot, now):
            applied.append({"key": policy.key, "name": policy.name})
            subject = _subject(policy.rule)

            if policy.rule.is_exemption:
                if subject is not None:
                    exemptions[subject] = max(exemptions.get(subject, policy.priority), policy.priority)
                continue

            reason = evaluate_rule(policy.rule, acting.real_actor_id, context)
            if reason is None:
                continue
            if subject is not None and exemptions.get(subject, policy.priority) > policy.priority:
                logger.debug(f"[POLICY] {policy.key} overridden by a higher-priority exemption")
                continue
            blocked.append(BlockedBy(policy=policy.key, reason=reason))

        result = PolicyEnforcementResult(
            allowed=not blocked,
            policies_applied=tuple(applied),
            blocked_by=tuple(blocked),
        )
        if blocked:
            logger.debug(
                f"[POLICY] Blocked {action} on {module} for {acting.real_actor_id}: "
                f"{', '.join(b.policy for b in blocked)}"
            )
        return result
