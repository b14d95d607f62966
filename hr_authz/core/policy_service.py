"""
Policy administration.

Validated CRUD over system policies, template application and the conflict
review workflow. Every write is pushed into the snapshot immediately, then
conflict analysis runs in the background; analysis failures are logged and
never reach the writer.
"""

import asyncio
import logging
import threading
from typing import Any

from pydantic import ValidationError

from ..db.base import RuleStore
from ..exceptions import (
    ConflictNotFoundError,
    PolicyInUseError,
    PolicyNotFoundError,
    PolicyValidationError,
)
from ..models.policies import (
    PolicyConflict,
    PolicyCreate,
    PolicyTemplate,
    PolicyUpdate,
    SystemPolicy,
    validate_policy_row,
)
from .conflicts import ConflictDetector
from .snapshot import SnapshotManager

logger = logging.getLogger("hr-authz")


def _validation_errors(e: ValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]


class PolicyService:
    """CRUD, templates and conflict review for system policies."""

    def __init__(
        self,
        store: RuleStore,
        snapshots: SnapshotManager,
        detector: ConflictDetector | None = None,
        conflict_detection_enabled: bool = True,
    ):
        self._store = store
        self._snapshots = snapshots
        self._detector = detector or ConflictDetector()
        self._conflict_detection_enabled = conflict_detection_enabled
        self._analysis_lock = threading.Lock()
        self._pending: set[asyncio.Task] = set()

    # =========================================================================
    # READS
    # =========================================================================

    def list_policies(self, active_only: bool = False) -> list[SystemPolicy]:
        return [SystemPolicy.from_row(r) for r in self._store.list_policies(active_only=active_only)]

    def get_policy(self, policy_id: str) -> SystemPolicy:
        row = self._store.get_policy(policy_id)
        if row is None:
            raise PolicyNotFoundError(f"Policy {policy_id} not found")
        return SystemPolicy.from_row(row)

    # =========================================================================
    # WRITES
    # =========================================================================

    def create_policy(self, data: PolicyCreate | dict[str, Any]) -> SystemPolicy:
        """Validate, store and activate a new policy."""
        if isinstance(data, dict):
            try:
                data = PolicyCreate.model_validate(data)
            except ValidationError as e:
                raise PolicyValidationError("Policy rejected", _validation_errors(e)) from e

        row = validate_policy_row(data.model_dump(mode="json"))
        if self._store.get_policy_by_key(row["policy_key"]) is not None:
            raise PolicyValidationError("Policy rejected", [f"policy_key: '{row['policy_key']}' already exists"])
        if not row.get("policy_name"):
            row["policy_name"] = row["policy_key"]

        stored = self._store.create_policy(row)
        policy = SystemPolicy.from_row(stored)
        self._snapshots.put_policy(policy)
        logger.info(f"[POLICY] Created {policy.key} (priority {policy.priority})")

        self._schedule_conflict_analysis(policy)
        return policy

    def update_policy(self, policy_id: str, patch: PolicyUpdate | dict[str, Any]) -> SystemPolicy:
        """Apply a partial update; the merged policy is validated as a whole."""
        if isinstance(patch, dict):
            try:
                patch = PolicyUpdate.model_validate(patch)
            except ValidationError as e:
                raise PolicyValidationError("Policy rejected", _validation_errors(e)) from e

        existing = self._store.get_policy(policy_id)
        if existing is None:
            raise PolicyNotFoundError(f"Policy {policy_id} not found")

        changes = patch.model_dump(mode="json", exclude_unset=True)
        merged = validate_policy_row({**existing, **changes})
        normalized = {k: merged[k] for k in changes if k in merged}

        stored = self._store.update_policy(policy_id, normalized)
        if stored is None:
            raise PolicyNotFoundError(f"Policy {policy_id} not found")
        policy = SystemPolicy.from_row(stored)
        self._snapshots.put_policy(policy)
        logger.info(f"[POLICY] Updated {policy.key}: {', '.join(sorted(changes)) or 'no changes'}")

        self._schedule_conflict_analysis(policy)
        return policy

    def delete_policy(self, policy_id: str, force: bool = False) -> None:
        """
        Delete a policy.

        Refused while an unresolved conflict references it, unless `force`
        is set, in which case those conflicts are resolved first.
        """
        if self._store.get_policy(policy_id) is None:
            raise PolicyNotFoundError(f"Policy {policy_id} not found")

        referencing = [
            c for c in self.list_unresolved_conflicts()
            if policy_id in (c.primary_policy_id, c.conflicting_policy_id)
        ]
        if referencing and not force:
            raise PolicyInUseError(policy_id, [c.id for c in referencing])
        for conflict in referencing:
            self._store.resolve_conflict(conflict.id, f"Policy {policy_id} deleted")

        self._store.delete_policy(policy_id)
        self._snapshots.drop_policy(policy_id)
        logger.info(f"[POLICY] Deleted {policy_id}")

    def apply_template(self, template: PolicyTemplate) -> tuple[list[str], list[str]]:
        """
        Toggle `is_active` on existing policies by key.

        Returns (updated keys, unknown keys). Unknown keys are not created.
        """
        updated: list[str] = []
        unknown: list[str] = []
        for entry in template.policies:
            row = self._store.get_policy_by_key(entry.key)
            if row is None:
                unknown.append(entry.key)
                continue
            stored = self._store.update_policy(str(row["id"]), {"is_active": entry.active})
            if stored is None:
                unknown.append(entry.key)
                continue
            policy = SystemPolicy.from_row(stored)
            self._snapshots.put_policy(policy)
            updated.append(entry.key)
            self._schedule_conflict_analysis(policy)

        if unknown:
            logger.warning(f"[POLICY] Template '{template.name}' references unknown policies: {', '.join(unknown)}")
        logger.info(f"[POLICY] Applied template '{template.name}' to {len(updated)} policies")
        return updated, unknown

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    def list_unresolved_conflicts(self) -> list[PolicyConflict]:
        return [PolicyConflict.from_row(r) for r in self._store.list_conflicts(unresolved_only=True)]

    def resolve_conflict(self, conflict_id: str, notes: str, resolved_by: str | None = None) -> PolicyConflict:
        row = self._store.resolve_conflict(conflict_id, notes, resolved_by)
        if row is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        logger.info(f"[CONFLICT] Resolved {conflict_id}")
        return PolicyConflict.from_row(row)

    def analyze_conflicts(self, policy: SystemPolicy) -> list[PolicyConflict]:
        """
        Compare `policy` with every other active policy and record new
        conflicts. At most one unresolved record exists per policy pair.
        """
        if not policy.is_active:
            return []
        try:
            with self._analysis_lock:
                others = [p for p in self._active_policies() if p.id != policy.id]
                findings = self._detector.detect(policy, others)
                if not findings:
                    return []

                known = {c.pair for c in self.list_unresolved_conflicts()}
                created = []
                for finding in findings:
                    if finding.pair in known:
                        continue
                    created.append(PolicyConflict.from_row(self._store.create_conflict(finding.to_row())))
                    known.add(finding.pair)
                return created
        except Exception as e:
            logger.error(f"[CONFLICT] Analysis for {policy.key} failed: {e}")
            return []

    def _active_policies(self) -> list[SystemPolicy]:
        policies = []
        for row in self._store.list_policies(active_only=True):
            try:
                policies.append(SystemPolicy.from_row(row))
            except PolicyValidationError as e:
                logger.warning(f"[CONFLICT] Skipping malformed policy {row.get('policy_key')}: {e}")
        return policies

    def _schedule_conflict_analysis(self, policy: SystemPolicy) -> None:
        """Run analysis off the write path; inline when no event loop is running."""
        if not self._conflict_detection_enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.analyze_conflicts(policy)
            return
        task = loop.create_task(asyncio.to_thread(self.analyze_conflicts, policy))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_for_analysis(self) -> None:
        """Wait for in-flight conflict analysis to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
