"""Backup of machine state into a snapshot.

This module ties the backup pipeline together: collectors enumerate each
domain, the snapshot builder turns their records into a hashed snapshot, and
a storage backend persists it.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from .blobstore import BlobStore
from .collectors import Collector, build_collectors, run_collectors
from .config import Config
from .errors import CorruptSnapshot, StorageUnavailable, UnsupportedFormat
from .models import Snapshot
from .packages import DefaultsStore, PackageManager, build_package_managers
from .snapshot import SnapshotBuilder
from .storage import Location, StorageBackend, get_storage
from .zip_export import ZipExporter

logger = logging.getLogger(__name__)


class BackupManager:
    """Manages backups of machine state.

    This class handles the backup process, including:
    - Running the domain collectors concurrently with per-domain timeouts
    - Building a content-hashed snapshot and storing payload blobs
    - Writing the snapshot to the selected storage backend
    - Exporting a self-contained zip of the snapshot on request
    - Supporting dry-run mode to preview what would be captured

    Attributes:
        config (Config): Configuration object containing backup settings
        console (Console): Rich console for output formatting
        blob_store (BlobStore): Local blob store the builder writes to
    """

    def __init__(
        self,
        config: Config,
        console: Optional[Console] = None,
        collectors: Optional[Dict[str, Collector]] = None,
        managers: Optional[Dict[str, PackageManager]] = None,
        defaults: Optional[DefaultsStore] = None,
    ):
        """Initialize the backup manager.

        Args:
            config (Config): Configuration object containing backup settings
            console (Optional[Console]): Rich console for output. If None, creates
                                      a new console.
            collectors: Collectors to use instead of the configured ones.
            managers: Package managers to use instead of the configured ones.
            defaults: Preference store to use instead of the ``defaults`` tool.
        """
        self.config = config
        self.console = console or Console()
        self.blob_store = BlobStore(config.blob_dir)
        if collectors is None:
            if managers is None:
                managers = build_package_managers(config)
            collectors = build_collectors(config, managers, defaults)
        self.collectors = collectors

    def storage(self, kind: Optional[str] = None, location: Optional[str] = None) -> StorageBackend:
        """Get the storage backend for ``kind`` and ``location`` (configured defaults otherwise)."""
        return get_storage(self.config, kind, location, self.blob_store)

    def snapshot(self) -> Snapshot:
        """Collect every domain and build a snapshot without storing it."""
        records = run_collectors(self.collectors, self.config.collector_timeout)
        for record in records:
            for warning in record.warnings:
                logger.warning("%s: %s", record.domain, warning)
                self.console.print(f"[yellow]Warning ({record.domain}): {warning}[/yellow]")

        builder = SnapshotBuilder(
            self.blob_store,
            inline_limit=self.config.inline_limit,
            chunk_size=self.config.chunk_size,
        )
        return builder.build(records, machine_id=self.config.machine_id)

    def backup(
        self,
        storage_kind: Optional[str] = None,
        location: Optional[str] = None,
        dry_run: bool = False,
        zip_export: Optional[Path] = None,
    ) -> Tuple[Snapshot, Optional[Location]]:
        """Back up the machine.

        Main entry point for backing up. Collects, builds and stores a snapshot.

        Args:
            storage_kind: Storage backend kind; defaults to the configured one.
            location: Storage path or remote overriding the configured one.
            dry_run: If True, build the snapshot but do not store it.
            zip_export: If set, also export the stored snapshot to this zip file.

        Returns:
            Tuple[Snapshot, Optional[Location]]: The snapshot and where it was
            stored (None in dry-run mode).

        Raises:
            BuildError: If the collected records are inconsistent.
            StorageUnavailable: If the snapshot cannot be stored.

        Example:
            ```python
            manager = BackupManager(config)
            snapshot, location = manager.backup(storage_kind="git", location=remote_url)
            ```
        """
        self.console.print(f"[bold]Collecting {', '.join(sorted(self.collectors))}...")
        snapshot = self.snapshot()
        self.display_summary(snapshot)

        if dry_run:
            self.console.print(f"[blue]Dry run: snapshot {snapshot.content_hash[:12]} not stored")
            return snapshot, None

        storage = self.storage(storage_kind, location)
        stored = storage.write(snapshot)
        self.console.print(f"\n[green]Snapshot {stored.name} stored in {storage!r}")

        if zip_export:
            self.console.print(f"\n[bold]Creating zip archive: {zip_export}")
            exporter = ZipExporter(stored.path, Path(zip_export), storage.blobs(stored))
            with Progress(console=self.console, transient=True) as progress:
                exporter.export(progress)
            self.console.print(f"[green]Successfully created zip archive: {zip_export}")

        return snapshot, stored

    def display_summary(self, snapshot: Snapshot) -> None:
        """Print one row per domain with its item count and warnings."""
        table = Table(title=f"Snapshot {snapshot.content_hash[:12]}")
        table.add_column("Domain", style="cyan")
        table.add_column("Items", justify="right", style="green")
        table.add_column("Warnings", style="yellow")
        for record in snapshot.records:
            table.add_row(record.domain, str(len(record.items)), str(len(record.warnings)))
        self.console.print(table)

    def list_backups(
        self, storage_kind: Optional[str] = None, location: Optional[str] = None
    ) -> List[Tuple[Location, Snapshot]]:
        """List stored snapshots, newest first, with their parsed content.

        Snapshots that fail verification are reported and left out.
        """
        storage = self.storage(storage_kind, location)
        backups = []
        for stored in storage.list():
            try:
                backups.append((stored, storage.read(stored)))
            except (CorruptSnapshot, UnsupportedFormat, StorageUnavailable) as e:
                logger.warning("Cannot read snapshot %s: %s", stored.name, e)
                self.console.print(f"[red]{stored.name}: {e}[/red]")
        return backups
