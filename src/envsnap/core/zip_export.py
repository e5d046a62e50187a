"""
Module for handling zip file exports of snapshots.

An exported archive uses the storage layout of a local store, holding one
snapshot and only the blobs it references::

    snapshots/<name>/snapshot.json
    blobs/<ab>/<cdef...>

so an extracted archive can be read with ``LocalStorage`` directly.
"""

import logging
import zipfile
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

from rich.progress import Progress, TaskID

from .blobstore import BlobStore
from .errors import CorruptSnapshot
from .snapshot import load_snapshot

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "snapshot.json"


class ZipExporter:
    """Handles the export of a stored snapshot to a zip archive."""

    def __init__(self, snapshot_dir: Path, output_path: Path, blob_store: BlobStore):
        """
        Initialize the ZipExporter.

        Args:
            snapshot_dir: Directory holding ``snapshot.json``
            output_path: Path where the zip file should be created
            blob_store: Blob store holding the snapshot's chunks
        """
        self.snapshot_dir = Path(snapshot_dir)
        self.output_path = Path(output_path).expanduser()
        self.blob_store = blob_store

    def export(self, progress: Optional[Progress] = None) -> None:
        """
        Export the snapshot and its blobs to a zip archive.

        Args:
            progress: Optional Progress instance for progress tracking

        Raises:
            OSError: If there are file permission or disk space issues
            ValueError: If the snapshot doesn't exist or misses blobs
        """
        snapshot_file = self.snapshot_dir / SNAPSHOT_FILE
        if not snapshot_file.is_file():
            raise ValueError(f"Snapshot {self.snapshot_dir} does not exist")

        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        files_to_zip = self._get_files_to_zip(snapshot_file)

        task_id: Optional[TaskID] = None
        if progress:
            task_id = progress.add_task(
                f"Creating zip archive: {self.output_path.name}", total=len(files_to_zip)
            )

        try:
            with zipfile.ZipFile(self.output_path, "w", zipfile.ZIP_DEFLATED) as zf:
                for file_path, arcname in files_to_zip:
                    zf.write(file_path, arcname)

                    if progress and task_id is not None:
                        progress.advance(task_id)

        except OSError as e:
            if self.output_path.exists():
                self.output_path.unlink()
            raise OSError(f"Failed to create zip archive: {e}") from e

        logger.info("Exported %d files to %s", len(files_to_zip), self.output_path)

    def _get_files_to_zip(self, snapshot_file: Path) -> List[Tuple[Path, str]]:
        """
        Get the files to include in the archive with their archive names.

        Returns:
            List of (path, archive name) pairs
        """
        name = self.snapshot_dir.name
        files = [(snapshot_file, f"snapshots/{name}/{SNAPSHOT_FILE}")]

        snapshot = load_snapshot(snapshot_file.read_bytes())
        for digest in snapshot.chunk_digests():
            path = self.blob_store.path_for(digest)
            if not path.is_file():
                raise ValueError(f"Blob {digest[:12]} of snapshot {name} is missing")
            files.append((path, f"blobs/{digest[:2]}/{digest[2:]}"))
        return files


def extract_archive(archive: Path, target_dir: Path) -> Path:
    """Extract an exported archive into ``target_dir``.

    Returns:
        The extracted snapshot directory.

    Raises:
        CorruptSnapshot: If the file is not a snapshot archive.
    """
    archive = Path(archive).expanduser()
    try:
        with zipfile.ZipFile(archive) as zf:
            names = zf.namelist()
            for name in names:
                parts = PurePosixPath(name).parts
                if name.startswith("/") or ".." in parts or parts[0] not in ("snapshots", "blobs"):
                    raise CorruptSnapshot(f"Unexpected entry {name!r} in {archive.name}")
            snapshots = sorted(
                {PurePosixPath(n).parts[1] for n in names if n.endswith(f"/{SNAPSHOT_FILE}")}
            )
            if len(snapshots) != 1:
                raise CorruptSnapshot(f"{archive.name} holds {len(snapshots)} snapshots, expected 1")
            target_dir.mkdir(parents=True, exist_ok=True)
            zf.extractall(target_dir)
    except zipfile.BadZipFile as e:
        raise CorruptSnapshot(f"{archive.name} is not a zip archive: {e}") from e

    logger.info("Extracted %s into %s", archive, target_dir)
    return target_dir / "snapshots" / snapshots[0]
