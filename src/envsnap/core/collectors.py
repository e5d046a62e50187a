"""Inventory collectors.

Each collector owns one domain of machine state and turns it into a
``DomainRecord``. Collectors only read: they list packages, read files and
export preferences, but never change anything on the machine.

A collector that cannot see part of its domain records a warning and returns
what it could read. When a whole domain is out of reach it raises
``CollectorPartialFailure``; ``run_collectors`` turns that into a partial
record so that one broken domain never aborts the backup.

Example:
    ```python
    config = Config()
    collectors = build_collectors(config)
    records = run_collectors(collectors, config.collector_timeout)
    ```
"""

from __future__ import annotations

import fnmatch
import glob
import logging
import plistlib
import stat
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .config import Config
from .errors import CollectorPartialFailure, CommandError
from .models import DomainRecord, Item, ItemKind, digest_bytes, digest_json
from .packages import DefaultsStore, PackageManager, build_package_managers

logger = logging.getLogger(__name__)

DotfileEntry = Union[str, Dict[str, Any]]


class Collector:
    """Base class for domain collectors."""

    domain = ""
    schema_version = 1

    def __init__(self) -> None:
        self._index: Optional[Dict[str, str]] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.domain})"

    def collect(self) -> DomainRecord:
        """Enumerate the domain. Must not modify the machine."""
        raise NotImplementedError("collect() not implemented")

    def probe(self, item: Item) -> Optional[str]:
        """Return the digest of the live counterpart of ``item``, or None if absent."""
        if self._index is None:
            self._index = {live.identity: live.digest for live in self.collect().items}
        return self._index.get(item.identity)

    def invalidate(self) -> None:
        """Forget cached live state so the next probe reads the machine again."""
        self._index = None

    def new_record(self) -> DomainRecord:
        return DomainRecord(domain=self.domain, schema_version=self.schema_version)


def package_item(manager: str, name: str, version: str, kind: ItemKind) -> Item:
    """Build the item describing one installed package."""
    descriptor = {"manager": manager, "name": name, "version": version}
    return Item(
        identity=f"{manager}:{name}",
        kind=kind,
        digest=digest_json(descriptor),
        metadata=descriptor,
    )


class PackageCollector(Collector):
    """Collects packages from every manager assigned to its domain."""

    kind = ItemKind.PACKAGE

    def __init__(self, managers: Dict[str, PackageManager], domain: str = "packages") -> None:
        super().__init__()
        self.domain = domain
        self.managers = {
            name: manager for name, manager in managers.items() if manager.domain == domain
        }

    def collect(self) -> DomainRecord:
        record = self.new_record()
        for name in sorted(self.managers):
            try:
                installed = self.managers[name].installed()
            except CommandError as e:
                logger.warning("Could not list %s packages: %s", name, e)
                record.warnings.append(f"{name}: {e}")
                continue
            for package, version in sorted(installed.items()):
                record.items.append(package_item(name, package, version, self.kind))
        return record


def _bundle_version(bundle: Path) -> str:
    info = bundle / "Contents" / "Info.plist"
    try:
        with open(info, "rb") as f:
            data = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError):
        return ""
    return str(data.get("CFBundleShortVersionString") or data.get("CFBundleVersion") or "")


class ApplicationCollector(PackageCollector):
    """Collects applications from app managers and application directories.

    Bundles found in the application directories are recorded with the
    ``manual`` manager. They document what was installed by hand; restore
    reports them as needing manual installation.
    """

    kind = ItemKind.APPLICATION

    def __init__(
        self,
        managers: Dict[str, PackageManager],
        app_dirs: Iterable[Path] = (),
        domain: str = "applications",
    ) -> None:
        super().__init__(managers, domain=domain)
        self.app_dirs = [Path(d).expanduser() for d in app_dirs]

    def collect(self) -> DomainRecord:
        record = super().collect()
        seen = set()
        for app_dir in self.app_dirs:
            if not app_dir.is_dir():
                continue
            try:
                bundles = sorted(app_dir.glob("*.app"))
            except OSError as e:
                record.warnings.append(f"{app_dir}: {e}")
                continue
            for bundle in bundles:
                if bundle.stem in seen:
                    continue
                seen.add(bundle.stem)
                item = package_item("manual", bundle.stem, _bundle_version(bundle), self.kind)
                item.metadata["path"] = str(bundle)
                record.items.append(item)
        return record


class FileCollector(Collector):
    """Shared logic for domains made of files under the home directory."""

    kind = ItemKind.FILE

    def __init__(self, home: Path) -> None:
        super().__init__()
        self.home = Path(home).expanduser()

    def read_item(self, path: Path, identity: str, **metadata: Any) -> Item:
        """Read ``path`` into an item. Raises OSError when unreadable."""
        data = path.read_bytes()
        st = path.stat()
        meta: Dict[str, Any] = {
            "target": path.relative_to(self.home).as_posix(),
            "mode": stat.S_IMODE(st.st_mode),
            "mtime": int(st.st_mtime),
        }
        meta.update(metadata)
        return Item(
            identity=identity,
            kind=self.kind,
            digest=digest_bytes(data),
            metadata=meta,
            content=data,
        )

    def probe(self, item: Item) -> Optional[str]:
        target = self.home / item.metadata.get("target", item.identity)
        if not target.exists() and not target.is_symlink():
            return None
        if not target.is_file():
            return f"not-a-file:{target}"
        try:
            return digest_bytes(target.read_bytes())
        except OSError as e:
            # Present but unreadable must never look absent.
            return f"unreadable:{e.errno}"


class DotfileCollector(FileCollector):
    """Collects configured dotfiles and dotfile directories.

    Entries are paths relative to the home directory. A trailing slash or an
    existing directory means "everything below"; ``*`` patterns are expanded.
    Dict entries may declare ``requires``: package identities (such as
    ``brew:starship``) that must be installed before the file is restored.
    """

    domain = "dotfiles"

    def __init__(
        self,
        home: Path,
        entries: Iterable[DotfileEntry],
        excludes: Iterable[str] = (),
    ) -> None:
        super().__init__(home)
        self.entries = list(entries)
        self.excludes = list(excludes)

    def _excluded(self, path: Path) -> bool:
        return any(
            fnmatch.fnmatch(part, pattern)
            for part in path.relative_to(self.home).parts
            for pattern in self.excludes
        )

    def _expand(self, pattern: str) -> List[Path]:
        if "*" in pattern:
            matches = [Path(p) for p in glob.glob(str(self.home / pattern))]
        else:
            matches = [self.home / pattern.rstrip("/")]

        # Empty files are only kept when named explicitly
        explicit = "*" not in pattern
        paths: List[Path] = []
        for path in matches:
            if path.is_file() and (explicit or path.stat().st_size):
                paths.append(path)
            elif path.is_dir():
                paths.extend(p for p in path.rglob("*") if p.is_file() and p.stat().st_size)
        return paths

    def collect(self) -> DomainRecord:
        record = self.new_record()
        items: Dict[str, Item] = {}
        for entry in self.entries:
            if isinstance(entry, dict):
                pattern, requires = entry["path"], sorted(entry.get("requires", []))
            else:
                pattern, requires = entry, []
            try:
                paths = self._expand(pattern)
            except OSError as e:
                record.warnings.append(f"{pattern}: {e}")
                continue

            for path in sorted(paths):
                if self._excluded(path):
                    continue
                identity = path.relative_to(self.home).as_posix()
                if identity in items:
                    continue
                try:
                    extra = {"requires": requires} if requires else {}
                    items[identity] = self.read_item(path, identity, **extra)
                except OSError as e:
                    logger.warning("Skipping unreadable dotfile %s: %s", path, e)
                    record.warnings.append(f"{identity}: {e}")
        record.items = [items[key] for key in sorted(items)]
        return record


class SSHKeyCollector(FileCollector):
    """Collects SSH keys and client configuration, preserving permissions."""

    domain = "ssh-keys"
    kind = ItemKind.CREDENTIAL

    def __init__(
        self,
        home: Path,
        ssh_dir: str = ".ssh",
        include: Iterable[str] = ("id_*", "*.pub", "config"),
        exclude: Iterable[str] = ("known_hosts", "known_hosts.old"),
    ) -> None:
        super().__init__(home)
        self.ssh_dir = ssh_dir
        self.include = list(include)
        self.exclude = list(exclude)

    def _wanted(self, name: str) -> bool:
        if any(fnmatch.fnmatch(name, pattern) for pattern in self.exclude):
            return False
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.include)

    def collect(self) -> DomainRecord:
        record = self.new_record()
        directory = self.home / self.ssh_dir
        if not directory.is_dir():
            return record
        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            raise CollectorPartialFailure(self.domain, str(e), record) from e

        for path in entries:
            if not path.is_file() or not self._wanted(path.name):
                continue
            try:
                record.items.append(self.read_item(path, path.name))
            except OSError as e:
                logger.warning("Cannot read SSH file %s: %s", path, e)
                record.warnings.append(f"{path.name}: {e}")
        return record


class PreferenceCollector(Collector):
    """Exports preference domains through the ``defaults`` collaborator."""

    domain = "preferences"

    def __init__(self, domains: Iterable[str], store: Optional[DefaultsStore] = None) -> None:
        super().__init__()
        self.domains = list(domains)
        self.store = store or DefaultsStore()

    def _item(self, name: str, data: bytes) -> Item:
        return Item(
            identity=name,
            kind=ItemKind.PREFERENCE,
            digest=digest_bytes(data),
            metadata={"domain": name},
            content=data,
        )

    def collect(self) -> DomainRecord:
        record = self.new_record()
        if not self.domains:
            return record
        if not self.store.available():
            raise CollectorPartialFailure(self.domain, "defaults tool is not available", record)
        for name in sorted(set(self.domains)):
            try:
                record.items.append(self._item(name, self.store.export(name)))
            except CommandError as e:
                record.warnings.append(f"{name}: {e}")
        return record

    def probe(self, item: Item) -> Optional[str]:
        try:
            return digest_bytes(self.store.export(item.identity))
        except CommandError:
            return None


def build_collectors(
    config: Config,
    managers: Optional[Dict[str, PackageManager]] = None,
    defaults: Optional[DefaultsStore] = None,
) -> Dict[str, Collector]:
    """Create the collectors for every enabled domain."""
    if managers is None:
        managers = build_package_managers(config)

    collectors: Dict[str, Collector] = {}
    for domain in config.domains:
        collector: Collector
        if domain == "packages":
            collector = PackageCollector(managers)
        elif domain == "applications":
            collector = ApplicationCollector(managers, config.get("application_dirs", []))
        elif domain == "dotfiles":
            collector = DotfileCollector(
                config.home, config.get("dotfiles", []), config.get("dotfile_excludes", [])
            )
        elif domain == "ssh-keys":
            ssh = config.get("ssh", {})
            collector = SSHKeyCollector(
                config.home,
                ssh.get("dir", ".ssh"),
                ssh.get("include", ["id_*", "*.pub", "config"]),
                ssh.get("exclude", []),
            )
        elif domain == "preferences":
            collector = PreferenceCollector(
                config.get("preferences", []),
                defaults or DefaultsStore(timeout=config.collector_timeout(domain)),
            )
        else:
            raise ValueError(f"Unknown domain '{domain}'")
        collectors[domain] = collector
    return collectors


def _run_collector(collector: Collector, future: Future, slots: threading.BoundedSemaphore) -> None:
    with slots:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(collector.collect())
        except Exception as e:
            future.set_exception(e)


def run_collectors(
    collectors: Dict[str, Collector],
    timeout_for: Callable[[str], float],
    max_workers: Optional[int] = None,
) -> List[DomainRecord]:
    """Run collectors concurrently and return their records sorted by domain.

    Waits for every collector until its own timeout, measured from the start
    of the run. A collector that times out or fails yields a partial record.
    Collectors run on daemon threads so a hung one cannot keep the process
    alive after its timeout.
    """
    slots = threading.BoundedSemaphore(max_workers or max(1, len(collectors)))
    start = time.monotonic()
    futures: Dict[str, Future] = {}
    for domain, collector in collectors.items():
        futures[domain] = Future()
        threading.Thread(
            target=_run_collector,
            args=(collector, futures[domain], slots),
            name=f"collector-{domain}",
            daemon=True,
        ).start()

    records: List[DomainRecord] = []
    for domain in sorted(futures):
        timeout = timeout_for(domain)
        remaining = max(0.0, start + timeout - time.monotonic())
        try:
            record = futures[domain].result(timeout=remaining)
        except FutureTimeout:
            futures[domain].cancel()
            logger.warning("Collector for %s timed out after %ss", domain, timeout)
            record = DomainRecord(domain=domain, warnings=[f"collector timed out after {timeout}s"])
        except CollectorPartialFailure as e:
            logger.warning("Partial collection for %s: %s", domain, e.message)
            record = e.record or DomainRecord(domain=domain)
            record.warnings.append(e.message)
        except (OSError, CommandError) as e:
            logger.warning("Collector for %s failed: %s", domain, e)
            record = DomainRecord(domain=domain, warnings=[str(e)])
        records.append(record)
    return records
