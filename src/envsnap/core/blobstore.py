"""Content-addressed blob store for large item payloads.

Blobs live at ``<root>/<first two hex digits>/<rest of digest>``. Identical
chunks are stored once, so repeated snapshots of an unchanged machine add no
new blobs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Tuple

from .fileops import atomic_write
from .models import digest_bytes

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class BlobStore:
    """Stores byte chunks by their sha256 digest."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"BlobStore({self.root})"

    def path_for(self, digest: str) -> Path:
        return self.root / digest[:2] / digest[2:]

    def has(self, digest: str) -> bool:
        return self.path_for(digest).is_file()

    def put(self, data: bytes) -> str:
        """Store ``data`` and return its digest."""
        digest = digest_bytes(data)
        path = self.path_for(digest)
        if path.is_file():
            return digest
        atomic_write(path, data)
        return digest

    def get(self, digest: str) -> bytes:
        """Return the chunk stored under ``digest``.

        Raises:
            KeyError: If the chunk is missing.
            ValueError: If the stored bytes no longer match the digest.
        """
        path = self.path_for(digest)
        if not path.is_file():
            raise KeyError(digest)
        data = path.read_bytes()
        if digest_bytes(data) != digest:
            raise ValueError(f"Blob {digest} is corrupt")
        return data

    def put_chunked(self, data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Tuple[str, ...]:
        """Split ``data`` into chunks, store them, and return their digests in order."""
        if not data:
            return (self.put(b""),)
        return tuple(
            self.put(data[offset : offset + chunk_size])
            for offset in range(0, len(data), chunk_size)
        )

    def read_chunks(self, digests: Iterable[str]) -> bytes:
        return b"".join(self.get(digest) for digest in digests)

    def verify(self, digests: Iterable[str]) -> List[str]:
        """Return the digests that are missing or corrupt."""
        bad = []
        for digest in digests:
            try:
                self.get(digest)
            except (KeyError, ValueError):
                bad.append(digest)
        return bad

    def copy_to(self, other: "BlobStore", digests: Iterable[str]) -> int:
        """Copy chunks missing from ``other``; return how many were copied."""
        copied = 0
        for digest in digests:
            if other.has(digest):
                continue
            other.put(self.get(digest))
            copied += 1
        logger.debug("Copied %d blobs from %s to %s", copied, self.root, other.root)
        return copied
