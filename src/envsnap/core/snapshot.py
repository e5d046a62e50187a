"""Snapshot building and (de)serialization.

The content hash covers the canonical form of the captured state: the format
version plus every record sorted by domain, every item sorted by identity,
serialized as JSON with sorted keys. Creation time, machine id and collector
warnings are left out, so two backups of an unchanged machine hash the same
no matter in which order the collectors finished.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .blobstore import DEFAULT_CHUNK_SIZE, BlobStore
from .errors import BuildError, CorruptSnapshot, UnsupportedFormat
from .models import (
    FORMAT_VERSION,
    DomainRecord,
    Item,
    Snapshot,
    canonical_json,
    digest_bytes,
)

logger = logging.getLogger(__name__)


def canonical_bytes(records: Iterable[DomainRecord], format_version: int = FORMAT_VERSION) -> bytes:
    """Return the bytes the content hash is computed over."""
    ordered = sorted(records, key=lambda record: record.domain)
    return canonical_json(
        {
            "format_version": format_version,
            "records": [record.to_dict(include_warnings=False) for record in ordered],
        }
    )


def content_hash(records: Iterable[DomainRecord], format_version: int = FORMAT_VERSION) -> str:
    return digest_bytes(canonical_bytes(records, format_version))


class SnapshotBuilder:
    """Aggregates domain records into a snapshot.

    Payloads of at most ``inline_limit`` bytes that are valid UTF-8 are kept
    inline in the snapshot. Larger or binary payloads are split into chunks
    and stored in the blob store; the item keeps only their digests.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        inline_limit: int = 2048,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.blob_store = blob_store
        self.inline_limit = inline_limit
        self.chunk_size = chunk_size

    def _externalize(self, item: Item) -> Item:
        if item.content is None:
            return item
        data = item.content
        digest = digest_bytes(data)
        if len(data) <= self.inline_limit:
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError:
                pass
            else:
                return dataclasses.replace(item, digest=digest, inline=text, chunks=(), content=None)
        chunks = self.blob_store.put_chunked(data, self.chunk_size)
        return dataclasses.replace(item, digest=digest, inline=None, chunks=chunks, content=None)

    def build(
        self,
        records: Iterable[DomainRecord],
        machine_id: str = "unknown",
        created_at: Optional[datetime] = None,
    ) -> Snapshot:
        """Build a snapshot from collector records.

        Raises:
            BuildError: If two records share a domain or two items in one
                record share an identity.
        """
        records = list(records)
        seen_domains = set()
        for record in records:
            if record.domain in seen_domains:
                raise BuildError(f"Duplicate domain record '{record.domain}'")
            seen_domains.add(record.domain)

            identities = set()
            for item in record.items:
                if item.identity in identities:
                    raise BuildError(
                        f"Duplicate item '{item.identity}' in domain '{record.domain}'"
                    )
                identities.add(item.identity)

        built: List[DomainRecord] = []
        for record in sorted(records, key=lambda r: r.domain):
            items = [self._externalize(item) for item in record.sorted_items()]
            built.append(
                DomainRecord(
                    domain=record.domain,
                    items=items,
                    schema_version=record.schema_version,
                    warnings=list(record.warnings),
                )
            )

        timestamp = (created_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
        snapshot = Snapshot(
            format_version=FORMAT_VERSION,
            created_at=timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            machine_id=machine_id,
            records=tuple(built),
            content_hash=content_hash(built),
        )
        logger.info(
            "Built snapshot %s with %d items in %d domains",
            snapshot.content_hash[:12],
            sum(len(r.items) for r in built),
            len(built),
        )
        return snapshot


def dump_snapshot(snapshot: Snapshot) -> bytes:
    """Serialize a snapshot as stable, diffable JSON."""
    return (json.dumps(snapshot.to_dict(), indent=2, sort_keys=True) + "\n").encode("utf-8")


def load_snapshot(data: bytes) -> Snapshot:
    """Parse and verify a serialized snapshot.

    The format version is checked before anything else is interpreted.

    Raises:
        UnsupportedFormat: Missing, malformed or future format version.
        CorruptSnapshot: Unparseable content or content hash mismatch.
    """
    try:
        document: Dict[str, Any] = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptSnapshot(f"Snapshot is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise CorruptSnapshot("Snapshot document must be an object")

    version = document.get("format_version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise UnsupportedFormat(f"Snapshot has no usable format version: {version!r}")
    if version > FORMAT_VERSION or version < 1:
        raise UnsupportedFormat(
            f"Snapshot format version {version} is not supported (max {FORMAT_VERSION})"
        )

    try:
        records = tuple(DomainRecord.from_dict(r) for r in document["records"])
        stored_hash = document["content_hash"]
        snapshot = Snapshot(
            format_version=version,
            created_at=document.get("created_at", ""),
            machine_id=document.get("machine_id", "unknown"),
            records=records,
            content_hash=stored_hash,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CorruptSnapshot(f"Snapshot structure is invalid: {e}") from e

    actual = content_hash(records, version)
    if actual != stored_hash:
        raise CorruptSnapshot(
            f"Content hash mismatch: recorded {stored_hash[:12]}, computed {actual[:12]}"
        )
    return snapshot


def item_payload(item: Item, blob_store: BlobStore) -> bytes:
    """Return the payload of a built item.

    Raises:
        CorruptSnapshot: If a chunk is missing or the payload does not match
            the item digest.
    """
    if item.inline is not None:
        data = item.inline.encode("utf-8")
    else:
        try:
            data = blob_store.read_chunks(item.chunks)
        except (KeyError, ValueError) as e:
            raise CorruptSnapshot(f"Payload of {item.identity} is unavailable: {e}") from e
    if digest_bytes(data) != item.digest:
        raise CorruptSnapshot(f"Payload of {item.identity} does not match its digest")
    return data
