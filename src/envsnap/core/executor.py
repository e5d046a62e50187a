"""Restore execution.

Actions are grouped into one lane per domain. A lane runs its actions one
after another in plan order; lanes run concurrently on a bounded thread pool
once the lanes they depend on have finished.

For every action the executor:

1. takes an exclusive lock on the resource it touches (destination file,
   package manager, preference domain),
2. re-reads the live state and re-classifies the action if the machine
   changed since planning,
3. applies it (atomic file writes, package install, preference import),
4. appends the outcome to the resumability log before moving on.

A failed action does not stop the run. Actions that depend on a failed
blocking action (a package install) are marked ``skipped-dependency``.
"""

from __future__ import annotations

import logging
import os
import plistlib
import shutil
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .blobstore import BlobStore
from .errors import ActionFailure, CommandError, CorruptSnapshot
from .fileops import atomic_write, exclusive_lock
from .journal import ResumabilityLog
from .live import LiveStateView
from .models import (
    COMPLETED_STATUSES,
    INSTALLABLE_KINDS,
    ActionKind,
    ActionOutcome,
    ActionStatus,
    ConflictPolicy,
    ItemKind,
    RestoreAction,
    RestoreResult,
)
from .packages import DefaultsStore, PackageManager
from .snapshot import item_payload

logger = logging.getLogger(__name__)

FILE_KINDS = frozenset({ItemKind.FILE, ItemKind.CREDENTIAL})
BLOCKED_STATUSES = frozenset({ActionStatus.FAILED, ActionStatus.SKIPPED_DEPENDENCY})


class RestoreExecutor:
    """Applies planned restore actions.

    Attributes:
        live: Live state view used to re-check items before mutating them.
        blob_store: Blob store holding the snapshot payloads.
        journal: Resumability log of this run.
        home: Directory file targets are relative to.
        lock_dir: Directory for resource lock files.
        managers: Package managers by name.
        defaults: Preference store collaborator.
        domain_dependencies: Domains each domain must wait for.
        max_workers: Upper bound on concurrently running lanes.
        conflict_suffix: Suffix of side-by-side files.
    """

    def __init__(
        self,
        live: LiveStateView,
        blob_store: BlobStore,
        journal: ResumabilityLog,
        home: Path,
        lock_dir: Path,
        managers: Optional[Dict[str, PackageManager]] = None,
        defaults: Optional[DefaultsStore] = None,
        domain_dependencies: Optional[Dict[str, List[str]]] = None,
        max_workers: int = 4,
        conflict_suffix: str = ".envsnap",
    ) -> None:
        self.live = live
        self.blob_store = blob_store
        self.journal = journal
        self.home = Path(home).expanduser()
        self.lock_dir = Path(lock_dir)
        self.managers = managers or {}
        self.defaults = defaults or DefaultsStore()
        self.domain_dependencies = domain_dependencies or {}
        self.max_workers = max(1, max_workers)
        self.conflict_suffix = conflict_suffix
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop dispatching new actions. Actions already running finish."""
        logger.warning("Cancellation requested; finishing in-flight actions")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def execute(self, actions: List[RestoreAction], resume: bool = False) -> RestoreResult:
        """Apply ``actions`` in order and return their outcomes.

        Args:
            actions: Planned actions, in plan order.
            resume: Skip actions the log records as applied or skipped.
        """
        if resume:
            done = {
                action_id: status
                for action_id, status in self.journal.entries().items()
                if status in COMPLETED_STATUSES
            }
            logger.info("Resuming restore; %d actions already completed", len(done))
        else:
            done = {}
            self.journal.start()

        outcomes = {action.action_id: ActionOutcome(action) for action in actions}
        lanes: Dict[str, List[RestoreAction]] = {}
        for action in actions:
            lanes.setdefault(action.domain, []).append(action)

        self._run_lanes(lanes, outcomes, done)

        result = RestoreResult(
            outcomes=[outcomes[action.action_id] for action in actions],
            cancelled=self.cancelled
            and any(o.status == ActionStatus.PENDING for o in outcomes.values()),
        )
        if not result.cancelled and not any(
            o.status in BLOCKED_STATUSES for o in result.outcomes
        ):
            self.journal.discard()
        else:
            logger.info("Keeping resumability log %s for --resume", self.journal.path)
        return result

    def _lane_dependencies(self, lanes: Dict[str, List[RestoreAction]]) -> Dict[str, Set[str]]:
        deps: Dict[str, Set[str]] = {}
        for domain, actions in lanes.items():
            wanted = set(self.domain_dependencies.get(domain, []))
            for action in actions:
                wanted.update(dep.split("/", 1)[0] for dep in action.depends_on)
            wanted.discard(domain)
            deps[domain] = wanted & set(lanes)
        return deps

    def _run_lanes(
        self,
        lanes: Dict[str, List[RestoreAction]],
        outcomes: Dict[str, ActionOutcome],
        done: Dict[str, ActionStatus],
    ) -> None:
        deps = self._lane_dependencies(lanes)
        pending = list(lanes)
        finished: Set[str] = set()
        running: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="restore") as pool:
            while pending or running:
                ready = [domain for domain in pending if deps[domain] <= finished]
                if not ready and not running:
                    logger.warning(
                        "Circular domain dependencies among %s; starting %s",
                        ", ".join(pending),
                        pending[0],
                    )
                    ready = [pending[0]]
                for domain in ready:
                    pending.remove(domain)
                    future = pool.submit(self._run_lane, lanes[domain], outcomes, done)
                    running[future] = domain

                completed, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in completed:
                    domain = running.pop(future)
                    future.result()
                    finished.add(domain)
                    logger.debug("Finished restoring %s", domain)

    def _run_lane(
        self,
        actions: List[RestoreAction],
        outcomes: Dict[str, ActionOutcome],
        done: Dict[str, ActionStatus],
    ) -> None:
        for action in actions:
            outcome = outcomes[action.action_id]
            if self.cancelled:
                outcome.reason = "not started; restore was cancelled"
                continue

            if action.action_id in done:
                outcome.status = done[action.action_id]
                outcome.reason = "completed in an earlier run"
                continue

            blocked = [
                dep
                for dep in action.depends_on
                if dep in outcomes
                and (
                    outcomes[dep].status == ActionStatus.SKIPPED_DEPENDENCY
                    or (outcomes[dep].status == ActionStatus.FAILED and outcomes[dep].action.blocking)
                )
            ]
            if blocked:
                outcome.status = ActionStatus.SKIPPED_DEPENDENCY
                outcome.reason = f"prerequisite {blocked[0]} did not complete"
            else:
                try:
                    outcome.status, outcome.reason = self._apply(action)
                except ActionFailure as e:
                    outcome.status, outcome.reason = ActionStatus.FAILED, e.reason
                except (CommandError, CorruptSnapshot, OSError) as e:
                    outcome.status, outcome.reason = ActionStatus.FAILED, str(e)

            if outcome.status == ActionStatus.FAILED:
                logger.error("%s failed: %s", action.action_id, outcome.reason)
            else:
                logger.info("%s: %s (%s)", action.action_id, outcome.status.value, outcome.reason)
            self.journal.append(outcome)

    def _resource(self, action: RestoreAction) -> str:
        item = action.item
        if item.kind in INSTALLABLE_KINDS:
            name = item.metadata.get("manager", "")
            manager = self.managers.get(name)
            return f"package-manager:{manager.lock_group if manager is not None else name}"
        if item.kind == ItemKind.PREFERENCE:
            return f"preference:{item.identity}"
        return f"file:{self._target(action)}"

    def _target(self, action: RestoreAction) -> Path:
        relative = action.item.metadata.get("target", action.item.identity)
        # Containment is checked on the lexical path; writes follow symlinks
        home = Path(os.path.normpath(os.path.abspath(self.home)))
        target = Path(os.path.normpath(home / relative))
        if target == home or home not in target.parents:
            raise ActionFailure(action.action_id, f"target {relative} is outside {home}")
        return target.resolve()

    def _apply(self, action: RestoreAction) -> Tuple[ActionStatus, str]:
        if action.kind == ActionKind.SKIP_IDENTICAL:
            return ActionStatus.SKIPPED, action.justification

        item = action.item
        with exclusive_lock(self.lock_dir, self._resource(action)):
            fresh = item.kind not in INSTALLABLE_KINDS
            live_digest = self.live.probe(action.domain, item, fresh=fresh)
            if live_digest == item.digest:
                return ActionStatus.SKIPPED, "already identical"

            kind = action.kind
            if kind in (ActionKind.INSTALL, ActionKind.WRITE) and live_digest is not None:
                logger.warning("%s appeared since planning; treating as conflict", action.action_id)
                kind = ActionKind.MERGE if action.policy == ConflictPolicy.MERGE else ActionKind.CONFLICT
            elif kind in (ActionKind.CONFLICT, ActionKind.MERGE) and live_digest is None:
                kind = ActionKind.INSTALL if item.kind in INSTALLABLE_KINDS else ActionKind.WRITE

            if kind == ActionKind.INSTALL:
                result = self._install(action)
                self.live.invalidate(action.domain)
                return result
            if kind == ActionKind.WRITE:
                return self._write(action)
            if kind == ActionKind.MERGE:
                return self._merge(action)
            return self._resolve_conflict(action)

    def _install(self, action: RestoreAction) -> Tuple[ActionStatus, str]:
        meta = action.item.metadata
        manager_name = meta.get("manager", "")
        if manager_name == "manual":
            raise ActionFailure(
                action.action_id, f"{meta.get('name')} was installed manually; install it by hand"
            )
        manager = self.managers.get(manager_name)
        if manager is None:
            raise ActionFailure(action.action_id, f"package manager '{manager_name}' is not available")
        manager.install(meta["name"], meta.get("version") or None)
        return ActionStatus.APPLIED, f"installed with {manager_name}"

    def _payload(self, action: RestoreAction) -> bytes:
        return item_payload(action.item, self.blob_store)

    def _write_file(self, action: RestoreAction, path: Path) -> None:
        item = action.item
        mode = item.metadata.get("mode")
        if item.kind == ItemKind.CREDENTIAL:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            if mode is None:
                mode = 0o600
        atomic_write(path, self._payload(action), mode=mode, mtime=item.metadata.get("mtime"))

    def _write(self, action: RestoreAction) -> Tuple[ActionStatus, str]:
        if action.item.kind == ItemKind.PREFERENCE:
            self.defaults.import_(action.item.identity, self._payload(action))
            return ActionStatus.APPLIED, "preferences imported"
        if action.item.kind not in FILE_KINDS:
            raise ActionFailure(action.action_id, f"cannot write items of kind {action.item.kind.value}")
        target = self._target(action)
        self._write_file(action, target)
        return ActionStatus.APPLIED, f"written to {target}"

    def _merge(self, action: RestoreAction) -> Tuple[ActionStatus, str]:
        item = action.item
        if item.kind != ItemKind.PREFERENCE:
            return self._side_by_side(action)
        try:
            live = plistlib.loads(self.defaults.export(item.identity))
            wanted = plistlib.loads(self._payload(action))
        except (plistlib.InvalidFileException, ValueError) as e:
            raise ActionFailure(action.action_id, f"cannot merge preferences: {e}") from e
        if not isinstance(live, dict) or not isinstance(wanted, dict):
            raise ActionFailure(action.action_id, "cannot merge preferences that are not dictionaries")
        live.update(wanted)
        self.defaults.import_(item.identity, plistlib.dumps(live))
        return ActionStatus.APPLIED, f"merged {len(wanted)} keys into live preferences"

    def _side_by_side(self, action: RestoreAction) -> Tuple[ActionStatus, str]:
        target = self._target(action)
        side = target.with_name(target.name + self.conflict_suffix)
        self._write_file(action, side)
        return ActionStatus.APPLIED, f"snapshot version written to {side.name}; merge manually"

    def _resolve_conflict(self, action: RestoreAction) -> Tuple[ActionStatus, str]:
        item = action.item
        policy = action.policy

        if item.kind in INSTALLABLE_KINDS:
            version = item.metadata.get("version") or "unknown"
            return ActionStatus.SKIPPED, f"kept installed version (snapshot has {version})"

        if policy == ConflictPolicy.SIDE_BY_SIDE and item.kind in FILE_KINDS:
            return self._side_by_side(action)

        if policy == ConflictPolicy.OVERWRITE:
            stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
            if item.kind == ItemKind.PREFERENCE:
                backup = self.lock_dir.parent / "preference-backups" / f"{item.identity}.{stamp}.plist"
                atomic_write(backup, self.defaults.export(item.identity))
                self.defaults.import_(item.identity, self._payload(action))
                return ActionStatus.APPLIED, f"previous preferences saved to {backup}"
            target = self._target(action)
            backup = target.with_name(f"{target.name}.{stamp}.bak")
            shutil.copy2(target, backup)
            self._write_file(action, target)
            return ActionStatus.APPLIED, f"previous version saved to {backup.name}"

        logger.warning("Keeping live %s; it differs from the snapshot", action.action_id)
        return ActionStatus.SKIPPED, "kept live version; differs from snapshot"
