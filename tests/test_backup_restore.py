"""End-to-end tests of backup and restore."""

import zipfile
from pathlib import Path
from typing import Any, Dict

import pytest
from conftest import FakeDefaultsStore, FakePackageManager
from rich.console import Console

from envsnap.core.backup import BackupManager
from envsnap.core.config import Config
from envsnap.core.errors import CorruptSnapshot, StorageUnavailable
from envsnap.core.models import ActionStatus
from envsnap.core.restore import RestoreManager
from envsnap.core.storage import SNAPSHOT_FILE
from envsnap.core.zip_export import extract_archive


class Machine:
    """A second, empty machine sharing the snapshot store of the first."""

    def __init__(self, tmp_path: Path, config_file: Path, console: Console) -> None:
        self.home = tmp_path / "new-home"
        self.home.mkdir()
        self.config = Config(config_file, use_env=False)
        self.config._merge_config(
            {
                "home": str(self.home),
                "machine_id": "new-machine",
                "state_dir": str(tmp_path / "new-state"),
                "blob_dir": str(tmp_path / "new-state" / "blobs"),
            }
        )
        self.managers: Dict[str, Any] = {
            "brew": FakePackageManager("brew", {}),
            "cask": FakePackageManager("cask", {}, domain="applications"),
        }
        self.defaults = FakeDefaultsStore()
        self.console = console

    def restore_manager(self) -> RestoreManager:
        return RestoreManager(
            self.config, console=self.console, managers=self.managers, defaults=self.defaults
        )

    def backup_manager(self) -> BackupManager:
        return BackupManager(
            self.config, console=self.console, managers=self.managers, defaults=self.defaults
        )


@pytest.fixture
def machine(tmp_path: Path, config_file: Path, console: Console) -> Machine:
    return Machine(tmp_path, config_file, console)


def test_backup(backup_manager: BackupManager, tmp_path: Path) -> None:
    """Test a backup of every domain."""
    snapshot, location = backup_manager.backup()

    assert location is not None
    assert (location.path / SNAPSHOT_FILE).is_file()
    assert location.path.parent.parent == tmp_path / "store"
    assert [r.domain for r in snapshot.records] == [
        "applications",
        "dotfiles",
        "packages",
        "preferences",
        "ssh-keys",
    ]
    assert [i.identity for i in snapshot.record("packages").items] == ["brew:git", "brew:starship"]
    assert [i.identity for i in snapshot.record("applications").items] == ["cask:iterm2"]
    assert [i.identity for i in snapshot.record("dotfiles").items] == [
        ".config/starship/starship.toml",
        ".gitconfig",
        ".zshrc",
    ]
    assert snapshot.machine_id == "test-machine"


def test_backup_is_idempotent(backup_manager: BackupManager, tmp_path: Path) -> None:
    """Two backups of an unchanged machine hash the same and add no blobs."""
    first, _ = backup_manager.backup()
    blobs = sorted(p.name for p in (tmp_path / "store" / "blobs").rglob("*") if p.is_file())
    second, _ = backup_manager.backup()
    assert first.content_hash == second.content_hash
    assert sorted(p.name for p in (tmp_path / "store" / "blobs").rglob("*") if p.is_file()) == blobs


def test_backup_dry_run_stores_nothing(backup_manager: BackupManager, tmp_path: Path) -> None:
    snapshot, location = backup_manager.backup(dry_run=True)
    assert location is None
    assert snapshot.content_hash
    assert not (tmp_path / "store").exists()


def test_backup_reports_partial_domains(
    backup_manager: BackupManager, defaults: FakeDefaultsStore, console: Console
) -> None:
    defaults.domains.clear()
    snapshot, _ = backup_manager.backup()
    assert snapshot.record("preferences").partial
    assert "com.example.editor" in console.export_text()


def test_restore_of_own_backup_changes_nothing(
    backup_manager: BackupManager, restore_manager: RestoreManager, home: Path
) -> None:
    """Restoring onto the machine that was backed up is all skip-identical."""
    backup_manager.backup()
    before = (home / ".zshrc").stat().st_mtime_ns

    result = restore_manager.restore("latest")

    assert result is not None
    assert result.ok
    assert result.exit_code == 0
    assert result.summary()["applied"] == 0
    assert all(o.status == ActionStatus.SKIPPED for o in result.outcomes)
    assert (home / ".zshrc").stat().st_mtime_ns == before


def test_restore_onto_new_machine_converges(backup_manager: BackupManager, machine: Machine) -> None:
    """After a restore, a backup of the new machine has the same content hash."""
    original, _ = backup_manager.backup()

    result = machine.restore_manager().restore("latest")

    assert result is not None
    assert result.ok
    assert machine.managers["brew"].installed() == {"git": "2.44.0", "starship": "1.17.1"}
    assert machine.managers["cask"].installed() == {"iterm2": "3.4.23"}
    assert (machine.home / ".zshrc").read_text() == "export PATH=$HOME/bin:$PATH\n"
    assert (machine.home / ".ssh" / "id_ed25519").stat().st_mode & 0o777 == 0o600
    assert machine.defaults.values("com.example.editor") == {"fontSize": 13, "theme": "dark"}

    rebuilt, _ = machine.backup_manager().backup(dry_run=True)
    assert rebuilt.content_hash == original.content_hash


def test_restore_dry_run_changes_nothing(backup_manager: BackupManager, machine: Machine) -> None:
    backup_manager.backup()
    assert machine.restore_manager().restore("latest", dry_run=True) is None
    assert list(machine.home.iterdir()) == []
    assert machine.managers["brew"].installs == []
    assert "Restore Plan" in machine.console.export_text()


def test_restore_refuses_corrupt_snapshot(backup_manager: BackupManager, machine: Machine) -> None:
    """An integrity error aborts before any action runs."""
    _, location = backup_manager.backup()
    target = location.path / SNAPSHOT_FILE
    target.write_text(target.read_text().replace("2.44.0", "2.45.0"))

    with pytest.raises(CorruptSnapshot):
        machine.restore_manager().restore(location.name)
    assert list(machine.home.iterdir()) == []
    assert machine.managers["brew"].installs == []


def test_restore_unknown_snapshot(restore_manager: RestoreManager) -> None:
    with pytest.raises(StorageUnavailable):
        restore_manager.restore("20000101-000000")


def test_zip_export_and_restore(
    backup_manager: BackupManager, machine: Machine, tmp_path: Path
) -> None:
    """Test restoring on a machine that only has the zip file."""
    archive = tmp_path / "export" / "machine.zip"
    snapshot, location = backup_manager.backup(zip_export=archive)

    with zipfile.ZipFile(archive) as zf:
        names = zf.namelist()
    assert f"snapshots/{location.name}/{SNAPSHOT_FILE}" in names
    assert len([n for n in names if n.startswith("blobs/")]) == len(snapshot.chunk_digests())

    machine.config._merge_config({"storage": {"path": str(tmp_path / "elsewhere")}})
    result = machine.restore_manager().restore(str(archive))

    assert result is not None
    assert result.ok
    assert (machine.home / ".gitconfig").read_text() == "[user]\n\tname = Test User\n"


def test_extract_archive_rejects_unsafe_entries(tmp_path: Path) -> None:
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("snapshots/x/snapshot.json", "{}")
        zf.writestr("../outside", "boom")
    with pytest.raises(CorruptSnapshot):
        extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "outside").exists()


def test_extract_archive_rejects_non_zip(tmp_path: Path) -> None:
    archive = tmp_path / "notes.zip"
    archive.write_text("not a zip")
    with pytest.raises(CorruptSnapshot):
        extract_archive(archive, tmp_path / "out")


def test_list_backups(backup_manager: BackupManager) -> None:
    _, location = backup_manager.backup()
    backups = backup_manager.list_backups()
    assert [stored.name for stored, _ in backups] == [location.name]
    assert backups[0][1].machine_id == "test-machine"
