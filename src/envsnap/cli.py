"""Command line interface for envsnap."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .core.backup import BackupManager
from .core.config import STORAGE_KINDS, Config
from .core.errors import EnvsnapError
from .core.logging import setup_logging
from .core.restore import RestoreManager

console = Console()

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2

storage_option = click.option(
    "--storage",
    "storage_kind",
    type=click.Choice(STORAGE_KINDS),
    help="Storage backend (defaults to the configured one)",
)
location_option = click.option(
    "--location", help="Storage directory, or remote URL for git storage"
)


def fail(message: str) -> None:
    """Print ``message`` and exit with the fatal exit code."""
    console.print(f"[red]Error: {message}")
    sys.exit(EXIT_FATAL)


@click.group()
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file (defaults to ~/.config/envsnap/config.yaml)",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--log-file", help="Also write a detailed log to this file")
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[Path], debug: bool, log_file: Optional[str]) -> None:
    """Machine state snapshot tool.

    envsnap captures the state of a developer machine (packages, applications,
    dotfiles, SSH keys and preferences) into a content-hashed snapshot and
    restores it on another machine, safely and resumably.

    Main commands:

      backup    Capture the machine into a snapshot
      restore   Converge the machine to a snapshot
      list      List stored snapshots

    Run 'envsnap COMMAND --help' for more information on a specific command.
    """
    setup_logging(debug=debug, log_file=log_file)
    try:
        config = Config(config_file)
    except ValueError as e:
        fail(f"Invalid configuration: {e}")
    errors = config.validate()
    if errors:
        fail("Invalid configuration: " + "; ".join(errors))
    ctx.obj = config


@cli.command()
@storage_option
@location_option
@click.option("--dry-run", is_flag=True, help="Show what would be captured without storing it")
@click.option(
    "--zip-export",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also export the snapshot as a self-contained zip file",
)
@click.pass_obj
def backup(
    config: Config,
    storage_kind: Optional[str],
    location: Optional[str],
    dry_run: bool,
    zip_export: Optional[Path],
) -> None:
    """Capture the machine into a snapshot.

    The backup command will:
    1. Run every configured collector concurrently
    2. Build a content-hashed snapshot, storing large payloads as blobs
    3. Write the snapshot to the storage backend
    4. Optionally create a zip archive of the snapshot (if --zip-export is used)

    Examples:

      # Back up to the configured storage
      envsnap backup

      # Back up to a git remote
      envsnap backup --storage git --location git@github.com:me/machine-state.git

      # Show what would be captured without storing anything
      envsnap backup --dry-run

      # Back up and export a zip file
      envsnap backup --zip-export ~/Desktop/machine.zip
    """
    try:
        manager = BackupManager(config, console=console)
        snapshot, _ = manager.backup(
            storage_kind=storage_kind, location=location, dry_run=dry_run, zip_export=zip_export
        )
    except (EnvsnapError, OSError, ValueError) as e:
        fail(str(e))

    if any(record.partial for record in snapshot.records):
        console.print("[yellow]Backup finished with warnings; some domains are incomplete")
        sys.exit(EXIT_PARTIAL)


@cli.command()
@click.argument("location_ref", metavar="LOCATION", default="latest")
@storage_option
@location_option
@click.option("--resume", is_flag=True, help="Continue an interrupted restore of the same snapshot")
@click.option("--dry-run", is_flag=True, help="Show the restore plan without changing anything")
@click.pass_obj
def restore(
    config: Config,
    location_ref: str,
    storage_kind: Optional[str],
    location: Optional[str],
    resume: bool,
    dry_run: bool,
) -> None:
    """Converge the machine to a snapshot.

    LOCATION is a snapshot name (or unique prefix), a snapshot directory,
    'latest', or a zip file created with 'backup --zip-export'.

    Items that differ from the machine are handled by the conflict policy of
    their domain; existing files are never overwritten unless the policy of
    their domain is 'overwrite'.

    Examples:

      # Restore the latest snapshot
      envsnap restore

      # Preview the plan for a specific snapshot
      envsnap restore 20261019-101500 --dry-run

      # Restore from a zip export
      envsnap restore ~/Desktop/machine.zip

      # Continue after an interruption
      envsnap restore latest --resume
    """
    try:
        manager = RestoreManager(config, console=console)
        result = manager.restore(
            location_ref,
            storage_kind=storage_kind,
            location=location,
            resume=resume,
            dry_run=dry_run,
        )
    except (EnvsnapError, OSError, ValueError) as e:
        fail(str(e))

    if result is not None:
        sys.exit(result.exit_code)


@cli.command(name="list")
@storage_option
@location_option
@click.pass_obj
def list_snapshots(config: Config, storage_kind: Optional[str], location: Optional[str]) -> None:
    """List stored snapshots, newest first.

    Examples:

      # List snapshots in the configured storage
      envsnap list

      # List snapshots in another folder
      envsnap list --location /Volumes/Backup/envsnap
    """
    try:
        manager = BackupManager(config, console=console, collectors={})
        backups = manager.list_backups(storage_kind, location)
    except (EnvsnapError, OSError, ValueError) as e:
        fail(str(e))

    if not backups:
        console.print("[yellow]No snapshots found.")
        return

    table = Table(title="Available Snapshots")
    table.add_column("Snapshot", style="cyan")
    table.add_column("Created", style="yellow")
    table.add_column("Machine", style="green")
    table.add_column("Contents", style="magenta")
    table.add_column("Restore Command", style="blue")

    for stored, snapshot in backups:
        contents = ", ".join(
            f"{record.domain} ({len(record.items)}{'!' if record.partial else ''})"
            for record in snapshot.records
        )
        table.add_row(
            stored.name,
            snapshot.created_at,
            snapshot.machine_id,
            contents,
            f"envsnap restore {stored.name}",
        )

    console.print(table)


def main() -> None:
    """Entry point for the envsnap CLI."""
    cli()


if __name__ == "__main__":
    main()
