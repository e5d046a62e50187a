"""Restore functionality for envsnap."""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from .collectors import Collector, build_collectors
from .config import Config
from .executor import RestoreExecutor
from .journal import ResumabilityLog
from .live import LiveStateView
from .models import ActionKind, ActionStatus, RestoreAction, RestoreResult, Snapshot
from .packages import DefaultsStore, PackageManager, build_package_managers
from .planner import RestorePlanner
from .storage import LocalStorage, Location, StorageBackend, get_storage
from .zip_export import extract_archive

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    ActionStatus.APPLIED: "green",
    ActionStatus.SKIPPED: "blue",
    ActionStatus.FAILED: "red",
    ActionStatus.SKIPPED_DEPENDENCY: "yellow",
    ActionStatus.PENDING: "dim",
}


class RestoreManager:
    """Manage restoring a machine from a snapshot."""

    def __init__(
        self,
        config: Config,
        console: Optional[Console] = None,
        collectors: Optional[Dict[str, Collector]] = None,
        managers: Optional[Dict[str, PackageManager]] = None,
        defaults: Optional[DefaultsStore] = None,
    ) -> None:
        """Initialize restore manager.

        Args:
            config: Program configuration.
            console: Rich console for output.
            collectors: Collectors to probe live state with instead of the configured ones.
            managers: Package managers to install with instead of the configured ones.
            defaults: Preference store to use instead of the ``defaults`` tool.
        """
        self.config = config
        self.console = console or Console()
        self.managers = managers if managers is not None else build_package_managers(config)
        self.defaults = defaults or DefaultsStore(timeout=config.collector_timeout("preferences"))
        self.collectors = (
            collectors if collectors is not None else build_collectors(config, self.managers, self.defaults)
        )
        self.executor: Optional[RestoreExecutor] = None

    def open(
        self,
        ref: str = "latest",
        storage_kind: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Tuple[StorageBackend, Location]:
        """Find the snapshot ``ref`` refers to.

        ``ref`` is ``latest``, a snapshot name or name prefix, a snapshot
        directory, or an exported ``.zip`` archive.
        """
        archive = Path(ref).expanduser()
        if archive.suffix == ".zip" and archive.is_file():
            target = self.config.state_dir / "imported" / archive.stem
            snapshot_dir = extract_archive(archive, target)
            storage: StorageBackend = LocalStorage(target)
            return storage, storage.resolve(snapshot_dir.name)

        storage = get_storage(self.config, storage_kind, location)
        return storage, storage.resolve(ref)

    def plan(self, snapshot: Snapshot) -> Tuple[List[RestoreAction], LiveStateView]:
        """Plan the restore of ``snapshot`` against the current machine."""
        live = LiveStateView(self.collectors)
        planner = RestorePlanner(self.config.policies(), self.config.domain_order)
        return planner.plan(snapshot, live), live

    def restore(
        self,
        ref: str = "latest",
        storage_kind: Optional[str] = None,
        location: Optional[str] = None,
        resume: bool = False,
        dry_run: bool = False,
    ) -> Optional[RestoreResult]:
        """Restore the machine from a snapshot.

        Args:
            ref: Snapshot reference, see ``open``.
            storage_kind: Storage backend kind; defaults to the configured one.
            location: Storage path or remote overriding the configured one.
            resume: Continue an interrupted restore of the same snapshot.
            dry_run: Only show the plan.

        Returns:
            The restore result, or None in dry-run mode.

        Raises:
            StorageUnavailable: If the snapshot cannot be reached.
            CorruptSnapshot: If the snapshot fails verification.
            UnsupportedFormat: If the snapshot was written by a newer version.
        """
        storage, stored = self.open(ref, storage_kind, location)
        self.console.print(f"[bold]Restoring from snapshot {stored.name}")
        snapshot = storage.read(stored)
        for record in snapshot.records:
            if record.partial:
                self.console.print(
                    f"[yellow]Snapshot domain {record.domain} was captured partially: "
                    f"{'; '.join(record.warnings)}[/yellow]"
                )

        actions, live = self.plan(snapshot)
        if dry_run:
            self.display_plan(actions)
            return None

        journal = ResumabilityLog(self.config.state_dir, snapshot.content_hash)
        if resume and not journal.exists():
            self.console.print("[yellow]No interrupted restore of this snapshot; starting over[/yellow]")
            resume = False

        self.executor = RestoreExecutor(
            live,
            storage.blobs(stored),
            journal,
            home=self.config.home,
            lock_dir=self.config.state_dir / "locks",
            managers=self.managers,
            defaults=self.defaults,
            domain_dependencies=self.config.domain_dependencies,
            max_workers=self.config.max_workers,
            conflict_suffix=self.config.get("conflict_suffix", ".envsnap"),
        )
        with self._cancel_on_interrupt(self.executor):
            result = self.executor.execute(actions, resume=resume)

        self.display_report(result)
        return result

    @contextmanager
    def _cancel_on_interrupt(self, executor: RestoreExecutor) -> Iterator[None]:
        """Turn Ctrl-C into a graceful cancellation for the duration of a run."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum: int, frame: object) -> None:
            self.console.print("\n[yellow]Interrupted; finishing running actions...[/yellow]")
            executor.cancel()

        previous = signal.signal(signal.SIGINT, handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    def display_plan(self, actions: List[RestoreAction]) -> None:
        """Display the planned actions.

        Args:
            actions: Actions in plan order.
        """
        table = Table(title="Restore Plan")
        table.add_column("Action", style="cyan")
        table.add_column("Kind")
        table.add_column("Policy")
        table.add_column("Reason")

        for action in actions:
            style = "green" if action.kind == ActionKind.SKIP_IDENTICAL else ""
            if action.kind in (ActionKind.CONFLICT, ActionKind.MERGE):
                style = "yellow"
            table.add_row(
                action.action_id,
                f"[{style}]{action.kind.value}[/{style}]" if style else action.kind.value,
                action.policy.value if action.kind == ActionKind.CONFLICT else "",
                action.justification,
            )

        self.console.print(table)

    def display_report(self, result: RestoreResult) -> None:
        """Display the outcome of a restore run.

        Identical items are summarised rather than listed one by one.

        Args:
            result: Result of the run.
        """
        table = Table(title="Restore Results")
        table.add_column("Action", style="cyan")
        table.add_column("Status")
        table.add_column("Details")

        identical = 0
        for outcome in result.outcomes:
            if outcome.action.kind == ActionKind.SKIP_IDENTICAL and outcome.status == ActionStatus.SKIPPED:
                identical += 1
                continue
            style = STATUS_STYLES[outcome.status]
            table.add_row(
                outcome.action_id,
                f"[{style}]{outcome.status.value}[/{style}]",
                outcome.reason,
            )

        self.console.print(table)
        summary = result.summary()
        self.console.print(
            f"{identical} identical, {summary['applied']} applied, {summary['failed']} failed, "
            f"{summary['skipped-dependency']} skipped for dependencies, "
            f"{summary['conflicts']} conflicts"
        )
        if result.cancelled:
            self.console.print("[yellow]Restore cancelled; run again with --resume to continue[/yellow]")
        elif result.with_status(ActionStatus.FAILED):
            self.console.print("[red]Some actions failed; fix them and run again with --resume[/red]")
        elif result.ok:
            self.console.print("[green]Restore completed successfully")
