"""
Evaluation snapshot.

All permission and policy decisions read a single immutable Snapshot. The
SnapshotManager builds a fresh snapshot from the rule store and swaps the
reference atomically; a snapshot is never mutated after it is published,
so concurrent evaluations need no locking.
"""

import asyncio
import contextlib
import dataclasses
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from ..db.base import ChangeEvent, RuleStore
from ..exceptions import PolicyValidationError, RuleStoreError
from ..models.policies import SystemPolicy
from ..models.roles import Role
from ..models.rules import (
    PermissionMatrixEntry,
    RolePermission,
    UserPermissionOverride,
    utcnow,
)

logger = logging.getLogger("hr-authz")

OverrideKey = tuple[str, str, str]
LegacyKey = tuple[Role, str, str, str]


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class Snapshot:
    """
    A consistent, read-only view of every rule the engine evaluates.

    `loaded` is False until the first successful load; evaluators treat an
    unloaded snapshot as a store outage.
    """
    version: int = 0
    loaded: bool = False
    loaded_at: datetime | None = None
    matrix: Mapping[tuple[Role, str], PermissionMatrixEntry] = field(default_factory=lambda: _frozen({}))
    role_permissions: Mapping[LegacyKey, RolePermission] = field(default_factory=lambda: _frozen({}))
    overrides: Mapping[str, Mapping[OverrideKey, UserPermissionOverride]] = field(default_factory=lambda: _frozen({}))
    unavailable_overrides: frozenset[str] = frozenset()
    policies: tuple[SystemPolicy, ...] = ()

    def matrix_entry(self, role: Role, module: str) -> PermissionMatrixEntry | None:
        return self.matrix.get((role, module))

    def user_override(self, user_id: str, module: str, action: str, scope: str) -> UserPermissionOverride | None:
        per_user = self.overrides.get(str(user_id))
        if not per_user:
            return None
        return per_user.get((module, action, scope))

    def role_permission(self, role: Role, module: str, action: str, scope: str) -> RolePermission | None:
        return self.role_permissions.get((role, module, action, scope))

    def get_policy(self, policy_id: str) -> SystemPolicy | None:
        return next((p for p in self.policies if p.id == policy_id), None)

    # =========================================================================
    # DERIVATION (returns new snapshots)
    # =========================================================================

    def with_user_overrides(self, user_id: str, overrides: Iterable[UserPermissionOverride]) -> "Snapshot":
        per_user = dict(self.overrides)
        per_user[str(user_id)] = _frozen({o.key: o for o in overrides})
        return dataclasses.replace(
            self,
            overrides=_frozen(per_user),
            unavailable_overrides=self.unavailable_overrides - {str(user_id)},
        )

    def with_overrides_unavailable(self, user_id: str) -> "Snapshot":
        per_user = {k: v for k, v in self.overrides.items() if k != str(user_id)}
        return dataclasses.replace(
            self,
            overrides=_frozen(per_user),
            unavailable_overrides=self.unavailable_overrides | {str(user_id)},
        )

    def without_user(self, user_id: str) -> "Snapshot":
        per_user = {k: v for k, v in self.overrides.items() if k != str(user_id)}
        return dataclasses.replace(
            self,
            overrides=_frozen(per_user),
            unavailable_overrides=self.unavailable_overrides - {str(user_id)},
        )

    def with_policy(self, policy: SystemPolicy) -> "Snapshot":
        others = [p for p in self.policies if p.id != policy.id]
        if policy.is_active:
            others.append(policy)
        return dataclasses.replace(self, policies=sort_policies(others))

    def without_policy(self, policy_id: str) -> "Snapshot":
        return dataclasses.replace(self, policies=tuple(p for p in self.policies if p.id != policy_id))


def sort_policies(policies: Iterable[SystemPolicy]) -> tuple[SystemPolicy, ...]:
    """Priority descending; ties broken by key for a stable order."""
    return tuple(sorted(policies, key=lambda p: (-p.priority, p.key)))


def _merge_matrix(entries: Iterable[PermissionMatrixEntry]) -> dict[tuple[Role, str], PermissionMatrixEntry]:
    """
    Index matrix entries by (role, module).

    Raw rows that normalize to the same key are merged: any hidden row hides
    the module, allowed actions are unioned.
    """
    merged: dict[tuple[Role, str], PermissionMatrixEntry] = {}
    for entry in entries:
        key = (entry.role, entry.module)
        existing = merged.get(key)
        if existing is None:
            merged[key] = entry
            continue
        logger.debug(f"[SNAPSHOT] Merging duplicate matrix rows for {entry.role.value}/{entry.module}")
        merged[key] = dataclasses.replace(
            existing,
            is_visible=existing.is_visible and entry.is_visible,
            allowed_actions=existing.allowed_actions | entry.allowed_actions,
            visible_fields=existing.visible_fields | entry.visible_fields,
            editable_fields=existing.editable_fields | entry.editable_fields,
            allowed_notifications=existing.allowed_notifications | entry.allowed_notifications,
            workflow_triggers=existing.workflow_triggers | entry.workflow_triggers,
        )
    return merged


def _index_role_permissions(records: Iterable[RolePermission]) -> dict[LegacyKey, RolePermission]:
    # A granted record wins over a non-granted duplicate
    indexed: dict[LegacyKey, RolePermission] = {}
    for record in records:
        existing = indexed.get(record.key)
        if existing is None or (record.is_granted and not existing.is_granted):
            indexed[record.key] = record
    return indexed


def _parse_policies(rows: Iterable[dict[str, Any]]) -> list[SystemPolicy]:
    policies = []
    for row in rows:
        try:
            policies.append(SystemPolicy.from_row(row))
        except (PolicyValidationError, KeyError, ValueError) as e:
            logger.error(f"[SNAPSHOT] Skipping malformed policy {row.get('policy_key') or row.get('id')}: {e}")
    return policies


def build_snapshot(
    matrix_rows: Iterable[dict[str, Any]],
    legacy_rows: Iterable[dict[str, Any]],
    policy_rows: Iterable[dict[str, Any]],
    overrides: Mapping[str, Iterable[UserPermissionOverride]] | None = None,
    version: int = 1,
) -> Snapshot:
    """Build a loaded snapshot from raw store rows."""
    per_user = {
        user_id: _frozen({o.key: o for o in items})
        for user_id, items in (overrides or {}).items()
    }
    return Snapshot(
        version=version,
        loaded=True,
        loaded_at=utcnow(),
        matrix=_frozen(_merge_matrix(PermissionMatrixEntry.from_row(r) for r in matrix_rows)),
        role_permissions=_frozen(_index_role_permissions(RolePermission.from_row(r) for r in legacy_rows)),
        overrides=_frozen(per_user),
        policies=sort_policies(p for p in _parse_policies(policy_rows) if p.is_active),
    )


class SnapshotManager:
    """
    Owns the current snapshot reference.

    Readers call `current` and get a consistent snapshot. Writers build a
    new snapshot and swap it in under a lock; the lock only serializes
    writers, readers never take it.
    """

    def __init__(self, store: RuleStore, debounce_ms: int = 250):
        self._store = store
        self._debounce = max(debounce_ms, 0) / 1000
        self._current = Snapshot()
        self._swap_lock = threading.Lock()
        self._tracked_users: set[str] = set()
        self._watch_task: asyncio.Task | None = None

    @property
    def current(self) -> Snapshot:
        return self._current

    @property
    def watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def _swap(self, derive: Callable[[Snapshot], Snapshot]) -> Snapshot:
        with self._swap_lock:
            new = derive(self._current)
            self._current = dataclasses.replace(new, version=self._current.version + 1)
            return self._current

    def _load_overrides(self, user_id: str) -> list[UserPermissionOverride]:
        rows = self._store.list_user_overrides(user_id, now=utcnow())
        return [UserPermissionOverride.from_row(r) for r in rows]

    # =========================================================================
    # LOADING
    # =========================================================================

    def reload(self) -> bool:
        """
        Re-read every table and publish a new snapshot.

        On a store error the previous snapshot stays current and False is
        returned.
        """
        with self._swap_lock:
            tracked = set(self._tracked_users)
        try:
            matrix_rows = self._store.list_matrix_entries()
            legacy_rows = self._store.list_role_permissions()
            policy_rows = self._store.list_policies(active_only=True)
            overrides = {user_id: self._load_overrides(user_id) for user_id in tracked}
        except RuleStoreError as e:
            logger.warning(f"[SNAPSHOT] Reload failed, keeping version {self._current.version}: {e}")
            return False

        built = build_snapshot(matrix_rows, legacy_rows, policy_rows, overrides)
        snapshot = self._swap(lambda _: built)
        logger.info(
            f"[SNAPSHOT] Loaded version {snapshot.version}: "
            f"{len(snapshot.matrix)} matrix entries, {len(snapshot.role_permissions)} legacy grants, "
            f"{len(snapshot.policies)} active policies"
        )
        return True

    async def load(self) -> bool:
        """Load the snapshot off the event loop."""
        return await asyncio.to_thread(self.reload)

    def track_user(self, user_id: str) -> bool:
        """
        Load a user's overrides into the snapshot.

        If they cannot be read the user is marked unavailable, which makes
        permission checks for that user fail closed.
        """
        with self._swap_lock:
            self._tracked_users.add(str(user_id))
        try:
            overrides = self._load_overrides(user_id)
        except RuleStoreError as e:
            logger.warning(f"[SNAPSHOT] Overrides for {user_id} unavailable: {e}")
            self._swap(lambda s: s.with_overrides_unavailable(user_id))
            return False
        self._swap(lambda s: s.with_user_overrides(user_id, overrides))
        logger.debug(f"[SNAPSHOT] Tracking {user_id} with {len(overrides)} overrides")
        return True

    def untrack_user(self, user_id: str) -> None:
        with self._swap_lock:
            self._tracked_users.discard(str(user_id))
        self._swap(lambda s: s.without_user(user_id))

    def put_policy(self, policy: SystemPolicy) -> None:
        """Make a written policy visible to evaluation immediately."""
        self._swap(lambda s: s.with_policy(policy))

    def drop_policy(self, policy_id: str) -> None:
        self._swap(lambda s: s.without_policy(policy_id))

    # =========================================================================
    # CHANGE NOTIFICATIONS
    # =========================================================================

    def start_watch(self) -> None:
        """Start the background watch task on the running loop."""
        if self.watching:
            return
        self._watch_task = asyncio.get_running_loop().create_task(self._watch_loop())
        logger.info("[SNAPSHOT] Watching rule store for changes")

    async def stop_watch(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("[SNAPSHOT] Watch stopped")

    async def _pump(self, queue: "asyncio.Queue[ChangeEvent | None]") -> None:
        """Forward store events to the queue; None marks the end of the stream."""
        try:
            async for event in self._store.watch():
                queue.put_nowait(event)
            logger.warning("[SNAPSHOT] Change notification stream ended")
        except RuleStoreError as e:
            logger.error(f"[SNAPSHOT] Change notifications unavailable: {e}")
        except Exception as e:
            logger.error(f"[SNAPSHOT] Change notification stream failed: {e!r}")
        queue.put_nowait(None)

    async def _watch_loop(self) -> None:
        queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        pump = asyncio.create_task(self._pump(queue))
        try:
            while True:
                first = await queue.get()
                if first is None:
                    break
                if self._debounce:
                    await asyncio.sleep(self._debounce)
                tables = {first.table}
                ended = False
                while not queue.empty():
                    event = queue.get_nowait()
                    if event is None:
                        ended = True
                    else:
                        tables.add(event.table)
                logger.debug(f"[SNAPSHOT] Change on {', '.join(sorted(tables))}, reloading")
                await asyncio.to_thread(self.reload)
                if ended:
                    break
        finally:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        logger.warning("[SNAPSHOT] Watch stopped without notifications; snapshot reloads only on demand")
