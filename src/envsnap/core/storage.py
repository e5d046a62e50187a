"""Storage backends for snapshots.

Every backend stores snapshots with the same layout below its root::

    <root>/
        snapshots/<YYYYmmdd-HHMMSS>-<hash12>/snapshot.json
        blobs/<ab>/<cdef...>

Blobs are shared by all snapshots of a store. ``snapshot.json`` is written
last and atomically, so a snapshot directory without it is incomplete and is
never listed.

Reading always verifies the artifact: format version, content hash, and the
presence and integrity of every referenced blob chunk.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .blobstore import BlobStore
from .config import Config
from .errors import BuildError, CorruptSnapshot, StorageUnavailable
from .fileops import atomic_write
from .models import Snapshot
from .repository import GitError, GitRepository
from .snapshot import dump_snapshot, load_snapshot

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "snapshot.json"


@dataclass(frozen=True)
class Location:
    """Where a snapshot is stored."""

    name: str
    path: Path
    backend: str = "local"

    def __str__(self) -> str:
        return self.name


def snapshot_name(snapshot: Snapshot) -> str:
    """Directory name for a snapshot: creation time plus a hash prefix."""
    stamp = snapshot.created_at.replace("-", "").replace(":", "").replace("T", "-").rstrip("Z")
    return f"{stamp}-{snapshot.content_hash[:12]}"


class StorageBackend:
    """Capabilities every storage backend provides."""

    kind = ""

    def write(self, snapshot: Snapshot) -> Location:
        raise NotImplementedError("write() not implemented")

    def read(self, location: Location) -> Snapshot:
        raise NotImplementedError("read() not implemented")

    def list(self) -> List[Location]:
        """Return stored snapshots, newest first."""
        raise NotImplementedError("list() not implemented")

    def resolve(self, ref: str) -> Location:
        """Turn a snapshot name, name prefix, path or ``latest`` into a location."""
        raise NotImplementedError("resolve() not implemented")

    def blobs(self, location: Location) -> BlobStore:
        """Blob store holding the payload chunks of ``location``."""
        raise NotImplementedError("blobs() not implemented")


class LocalStorage(StorageBackend):
    """Snapshots in a local directory.

    Attributes:
        root: Storage root directory.
        blob_store: Blob store the builder wrote chunks to; chunks referenced
            by a written snapshot are copied from it into the storage root.
    """

    kind = "local"

    def __init__(self, root: Path, blob_store: Optional[BlobStore] = None) -> None:
        self.root = Path(root).expanduser()
        self.blob_store = blob_store

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.root})"

    @property
    def snapshots_dir(self) -> Path:
        return self.root / "snapshots"

    def _location(self, path: Path) -> Location:
        return Location(path.name, path, self.kind)

    def write(self, snapshot: Snapshot) -> Location:
        name = snapshot_name(snapshot)
        path = self.snapshots_dir / name
        target = path / SNAPSHOT_FILE
        if target.is_file():
            logger.info("Snapshot %s already stored", name)
            return self._location(path)

        chunks = snapshot.chunk_digests()
        try:
            path.mkdir(parents=True, exist_ok=True)
            if chunks:
                if self.blob_store is None:
                    raise BuildError("Snapshot references blobs but no blob store was given")
                self.blob_store.copy_to(BlobStore(self.root / "blobs"), chunks)
            atomic_write(target, dump_snapshot(snapshot))
        except (KeyError, ValueError) as e:
            raise BuildError(f"Blob store is missing snapshot content: {e}") from e
        except OSError as e:
            raise StorageUnavailable(f"Cannot write to {self.root}: {e}") from e

        logger.info("Stored snapshot %s in %s", name, self.root)
        return self._location(path)

    def read(self, location: Location) -> Snapshot:
        target = location.path / SNAPSHOT_FILE
        try:
            data = target.read_bytes()
        except OSError as e:
            raise StorageUnavailable(f"Cannot read snapshot {location.name}: {e}") from e

        snapshot = load_snapshot(data)
        bad = self.blobs(location).verify(snapshot.chunk_digests())
        if bad:
            raise CorruptSnapshot(
                f"Snapshot {location.name} has {len(bad)} missing or corrupt blobs "
                f"(first: {bad[0][:12]})"
            )
        return snapshot

    def list(self) -> List[Location]:
        if not self.snapshots_dir.is_dir():
            return []
        try:
            paths = [p for p in self.snapshots_dir.iterdir() if (p / SNAPSHOT_FILE).is_file()]
        except OSError as e:
            raise StorageUnavailable(f"Cannot list {self.snapshots_dir}: {e}") from e
        return [self._location(p) for p in sorted(paths, key=lambda p: p.name, reverse=True)]

    def resolve(self, ref: str) -> Location:
        if ref == "latest":
            locations = self.list()
            if not locations:
                raise StorageUnavailable(f"No snapshots found in {self.root}")
            return locations[0]

        candidate = Path(ref).expanduser()
        if (candidate / SNAPSHOT_FILE).is_file():
            return Location(candidate.name, candidate.resolve(), self.kind)

        path = self.snapshots_dir / ref
        if (path / SNAPSHOT_FILE).is_file():
            return self._location(path)

        matches = [loc for loc in self.list() if loc.name.startswith(ref)]
        if matches:
            return matches[0]
        raise StorageUnavailable(f"Snapshot '{ref}' not found in {self.root}")

    def blobs(self, location: Location) -> BlobStore:
        return BlobStore(location.path.parent.parent / "blobs")


class CloudFolderStorage(LocalStorage):
    """Snapshots in a folder kept in sync by a cloud client (iCloud, Dropbox, ...).

    Same layout as ``LocalStorage``. Before reading, waits until the sync
    client has finished propagating the snapshot: no placeholder files, a
    snapshot file whose size is stable between two polls, and every referenced
    blob present.
    """

    kind = "cloud"

    def __init__(
        self,
        root: Path,
        blob_store: Optional[BlobStore] = None,
        sync_timeout: float = 60.0,
        poll_interval: float = 1.0,
        placeholder_patterns: Iterable[str] = ("*.icloud", ".*.icloud", "*.tmp", "*.partial"),
    ) -> None:
        super().__init__(root, blob_store)
        self.sync_timeout = sync_timeout
        self.poll_interval = poll_interval
        self.placeholder_patterns = list(placeholder_patterns)

    def _placeholders(self, directory: Path) -> List[Path]:
        if not directory.is_dir():
            return []
        return [
            path
            for path in directory.rglob("*")
            if any(fnmatch.fnmatch(path.name, pattern) for pattern in self.placeholder_patterns)
        ]

    def _sync_status(
        self, location: Location, previous_size: Optional[int]
    ) -> Tuple[Optional[str], Optional[int]]:
        placeholders = self._placeholders(location.path)
        if placeholders:
            return f"placeholder {placeholders[0].name} present", previous_size

        target = location.path / SNAPSHOT_FILE
        try:
            size = target.stat().st_size
        except OSError:
            return "snapshot file not present yet", None
        if size != previous_size:
            return "snapshot file still changing", size

        snapshot = load_snapshot(target.read_bytes())
        blobs = self.blobs(location)
        missing = [d for d in snapshot.chunk_digests() if not blobs.has(d)]
        if missing:
            return f"{len(missing)} blobs not downloaded yet", size
        return None, size

    def wait_until_synced(self, location: Location) -> None:
        """Block until ``location`` is fully propagated.

        Raises:
            StorageUnavailable: If the folder is still syncing after ``sync_timeout``.
        """
        deadline = time.monotonic() + self.sync_timeout
        size: Optional[int] = None
        while True:
            reason, size = self._sync_status(location, size)
            if reason is None:
                return
            if time.monotonic() >= deadline:
                raise StorageUnavailable(
                    f"Cloud folder still syncing after {self.sync_timeout}s: {reason}"
                )
            logger.debug("Waiting for %s to sync: %s", location.name, reason)
            time.sleep(self.poll_interval)

    def read(self, location: Location) -> Snapshot:
        self.wait_until_synced(location)
        return super().read(location)

    def list(self) -> List[Location]:
        """Return stored snapshots once no snapshot directory is still syncing.

        A newer snapshot that is only partly downloaded would otherwise be
        skipped and ``latest`` would silently name an older one.

        Raises:
            StorageUnavailable: If placeholders remain after ``sync_timeout``.
        """
        deadline = time.monotonic() + self.sync_timeout
        while True:
            placeholders = self._placeholders(self.snapshots_dir)
            if not placeholders:
                return super().list()
            pending = placeholders[0].relative_to(self.snapshots_dir).as_posix()
            if time.monotonic() >= deadline:
                raise StorageUnavailable(
                    f"Cloud folder still syncing after {self.sync_timeout}s: placeholder {pending} present"
                )
            logger.debug("Waiting for %s to sync before listing", pending)
            time.sleep(self.poll_interval)


class GitStorage(StorageBackend):
    """Snapshots committed to a remote Git repository.

    A cached checkout of the remote holds the usual layout. ``write`` commits
    and pushes the new snapshot; ``read`` and ``list`` pull first.
    """

    kind = "git"

    def __init__(
        self,
        remote: str,
        checkout_dir: Path,
        blob_store: Optional[BlobStore] = None,
        branch: str = "main",
        user_name: str = "envsnap",
        user_email: str = "envsnap@localhost",
    ) -> None:
        self.remote = remote
        self.checkout_dir = Path(checkout_dir).expanduser()
        self.branch = branch
        self.user_name = user_name
        self.user_email = user_email
        self.local = LocalStorage(self.checkout_dir, blob_store)

    def __repr__(self) -> str:
        return f"GitStorage({self.remote})"

    def _sync(self) -> GitRepository:
        try:
            repo = GitRepository(self.checkout_dir)
            if not repo.exists():
                logger.info("Cloning %s", self.remote)
                repo = GitRepository.clone(self.remote, self.checkout_dir)
                repo.configure_identity(self.user_name, self.user_email)
            if repo.remote_has_branch(self.branch):
                repo.pull(self.branch)
        except GitError as e:
            raise StorageUnavailable(f"Git remote {self.remote} is unavailable: {e}") from e
        return repo

    def _own(self, location: Location) -> Location:
        return Location(location.name, location.path, self.kind)

    def write(self, snapshot: Snapshot) -> Location:
        repo = self._sync()
        location = self.local.write(snapshot)
        try:
            if repo.has_changes():
                repo.add(".")
                repo.commit(f"Snapshot {location.name}")
            repo.push(self.branch)
        except GitError as e:
            raise StorageUnavailable(f"Could not push snapshot to {self.remote}: {e}") from e
        return self._own(location)

    def read(self, location: Location) -> Snapshot:
        self._sync()
        return self.local.read(location)

    def list(self) -> List[Location]:
        self._sync()
        return [self._own(location) for location in self.local.list()]

    def resolve(self, ref: str) -> Location:
        self._sync()
        return self._own(self.local.resolve(ref))

    def blobs(self, location: Location) -> BlobStore:
        return self.local.blobs(location)


def get_storage(
    config: Config,
    kind: Optional[str] = None,
    location: Optional[str] = None,
    blob_store: Optional[BlobStore] = None,
) -> StorageBackend:
    """Create the storage backend selected by options or configuration.

    Args:
        config: Configuration with a ``storage`` section.
        kind: ``local``, ``cloud`` or ``git``; defaults to the configured kind.
        location: Storage path (or remote URL for git) overriding configuration.
        blob_store: Blob store the snapshot builder writes to.
    """
    storage = config.storage
    kind = kind or storage.get("kind", "local")

    if kind == "git":
        remote = location or storage.get("remote")
        if not remote:
            raise StorageUnavailable("Git storage needs a remote URL")
        key = hashlib.sha256(remote.encode("utf-8")).hexdigest()[:12]
        return GitStorage(
            remote,
            config.state_dir / "git" / key,
            blob_store,
            branch=storage.get("branch", "main"),
            user_name=storage.get("git_user_name", "envsnap"),
            user_email=storage.get("git_user_email", "envsnap@localhost"),
        )

    root = Path(location or storage["path"]).expanduser()
    if kind == "cloud":
        return CloudFolderStorage(
            root,
            blob_store,
            sync_timeout=float(storage.get("sync_timeout", 60.0)),
            poll_interval=float(storage.get("poll_interval", 1.0)),
            placeholder_patterns=storage.get("placeholder_patterns", ["*.icloud", "*.tmp"]),
        )
    if kind == "local":
        return LocalStorage(root, blob_store)
    raise ValueError(f"Unknown storage kind '{kind}'")
