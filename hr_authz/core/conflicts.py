"""
Conflict Detector.

Pairwise analysis of active policies. Two policies are compared only when
their module, role and action sets overlap. Findings are operator-visible
signals; they never gate evaluation.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..models.policies import (
    SEVERITY_ORDER,
    ConflictSeverity,
    ConflictType,
    PolicyCategory,
    PolicyRule,
    RuleKind,
    SystemPolicy,
)
from ..models.roles import WILDCARD

logger = logging.getLogger("hr-authz")

_OPPOSITES = {
    frozenset({RuleKind.BLOCK_SELF_APPROVAL, RuleKind.ALLOW_SELF_APPROVAL}),
    frozenset({RuleKind.BLOCK_ACTION, RuleKind.ALLOW_ACTION}),
}

_BASE_SEVERITY = {
    ConflictType.CONTRADICTION: ConflictSeverity.HIGH,
    ConflictType.CIRCULAR: ConflictSeverity.HIGH,
    ConflictType.INCOMPATIBLE: ConflictSeverity.MEDIUM,
}


@dataclass(frozen=True)
class ConflictFinding:
    """A conflict found between two policies, not yet persisted."""
    conflict_type: ConflictType
    primary: SystemPolicy
    conflicting: SystemPolicy
    severity: ConflictSeverity
    description: str

    @property
    def pair(self) -> frozenset[str]:
        return frozenset({self.primary.id, self.conflicting.id})

    def to_row(self) -> dict[str, Any]:
        return {
            "conflict_type": self.conflict_type.value,
            "primary_policy_id": self.primary.id,
            "conflicting_policy_id": self.conflicting.id,
            "severity": self.severity.value,
            "conflict_description": self.description,
        }


# =============================================================================
# OVERLAP
# =============================================================================

def _sets_overlap(a: frozenset, b: frozenset) -> bool:
    """Empty or wildcard means 'everything'."""
    if not a or not b or WILDCARD in a or WILDCARD in b:
        return True
    return bool(a & b)


def policies_overlap(a: SystemPolicy, b: SystemPolicy) -> bool:
    return (
        _sets_overlap(a.affected_modules, b.affected_modules)
        and _sets_overlap(a.required_roles, b.required_roles)
        and _sets_overlap(frozenset(a.rule.actions), frozenset(b.rule.actions))
    )


# =============================================================================
# RULES
# =============================================================================

def _contradicts(a: PolicyRule, b: PolicyRule) -> bool:
    return frozenset({a.rule, b.rule}) in _OPPOSITES


def _incompatible(a: PolicyRule, b: PolicyRule) -> str | None:
    if a.field is None or a.field != b.field:
        return None
    kinds = (a.rule, b.rule)

    if kinds == (RuleKind.REQUIRE_FIELD, RuleKind.REQUIRE_FIELD) and a.equals != b.equals:
        return f"'{a.field}' is required to be both {a.equals!r} and {b.equals!r}"

    if set(kinds) == {RuleKind.REQUIRE_FIELD, RuleKind.FORBID_FIELD} and a.equals == b.equals:
        return f"'{a.field}' is both required and forbidden to be {a.equals!r}"

    if set(kinds) == {RuleKind.MIN_VALUE, RuleKind.MAX_VALUE}:
        low = a if a.rule == RuleKind.MIN_VALUE else b
        high = b if low is a else a
        if low.limit >= high.limit:
            return f"'{a.field}' must be at least {low.limit:g} and below {high.limit:g}"
    return None


def _negates(sets: dict[str, Any], rule: PolicyRule) -> bool:
    preconditions = rule.preconditions()
    return any(k in sets and sets[k] != v for k, v in preconditions.items())


def _circular(a: PolicyRule, b: PolicyRule) -> bool:
    return _negates(a.sets, b) and _negates(b.sets, a)


# =============================================================================
# SEVERITY & ORDERING
# =============================================================================

def conflict_severity(conflict_type: ConflictType, a: SystemPolicy, b: SystemPolicy) -> ConflictSeverity:
    level = SEVERITY_ORDER.index(_BASE_SEVERITY[conflict_type])
    if a.priority == b.priority:
        level += 1
    if PolicyCategory.SECURITY in (a.category, b.category):
        level += 1
    if abs(a.priority - b.priority) >= 5:
        level -= 1
    return SEVERITY_ORDER[max(0, min(level, len(SEVERITY_ORDER) - 1))]


def order_pair(a: SystemPolicy, b: SystemPolicy) -> tuple[SystemPolicy, SystemPolicy]:
    """(primary, conflicting): higher priority first, lower id on ties."""
    if a.priority != b.priority:
        return (a, b) if a.priority > b.priority else (b, a)
    return (a, b) if a.id <= b.id else (b, a)


class ConflictDetector:
    """Finds contradictions, incompatibilities and circular dependencies."""

    def analyze_pair(self, a: SystemPolicy, b: SystemPolicy) -> ConflictFinding | None:
        if a.id == b.id or not (a.is_active and b.is_active):
            return None
        if not policies_overlap(a, b):
            return None

        # Described from the primary's side so the record is independent of write order
        primary, conflicting = order_pair(a, b)
        p, c = primary.rule, conflicting.rule

        conflict_type: ConflictType | None = None
        description = ""
        if _contradicts(p, c):
            conflict_type = ConflictType.CONTRADICTION
            subject = p.rule.value.split("_", 1)[1]
            description = f"'{primary.key}' and '{conflicting.key}' give opposite verdicts for {subject}"
        elif (detail := _incompatible(p, c)) is not None:
            conflict_type = ConflictType.INCOMPATIBLE
            description = f"'{primary.key}' and '{conflicting.key}' cannot both be satisfied: {detail}"
        elif _circular(p, c):
            conflict_type = ConflictType.CIRCULAR
            description = f"'{primary.key}' and '{conflicting.key}' each negate the other's precondition"

        if conflict_type is None:
            return None

        return ConflictFinding(
            conflict_type=conflict_type,
            primary=primary,
            conflicting=conflicting,
            severity=conflict_severity(conflict_type, a, b),
            description=description,
        )

    def detect(self, changed: SystemPolicy, others: Iterable[SystemPolicy]) -> list[ConflictFinding]:
        """Compare a changed policy against every other policy."""
        findings = []
        for other in others:
            finding = self.analyze_pair(changed, other)
            if finding is not None:
                logger.info(
                    f"[CONFLICT] {finding.conflict_type.value} ({finding.severity.value}) "
                    f"between {finding.primary.key} and {finding.conflicting.key}"
                )
                findings.append(finding)
        return findings
