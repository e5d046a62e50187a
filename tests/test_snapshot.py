"""Tests for snapshot building, serialization and the blob store."""

import json
from datetime import datetime, timezone

import pytest
from conftest import file_item, record

from envsnap.core.blobstore import BlobStore
from envsnap.core.errors import BuildError, CorruptSnapshot, UnsupportedFormat
from envsnap.core.models import Item, ItemKind, digest_bytes, digest_json
from envsnap.core.snapshot import SnapshotBuilder, dump_snapshot, item_payload, load_snapshot


def package(name: str, version: str) -> Item:
    descriptor = {"manager": "brew", "name": name, "version": version}
    return Item(f"brew:{name}", ItemKind.PACKAGE, digest_json(descriptor), metadata=descriptor)


def sample_records():
    return [
        record("packages", package("jq", "1.7"), package("git", "2.44.0")),
        record("dotfiles", file_item(".zshrc", b"export EDITOR=vim\n")),
    ]


def test_hash_is_independent_of_collector_order(blob_store: BlobStore) -> None:
    """Test that record and item order do not change the content hash."""
    builder = SnapshotBuilder(blob_store)
    first = builder.build(sample_records())
    reordered = [record("dotfiles", *sample_records()[1].items)] + [
        record("packages", *reversed(sample_records()[0].items))
    ]
    second = builder.build(reordered)
    assert first.content_hash == second.content_hash
    assert [r.domain for r in second.records] == ["dotfiles", "packages"]
    assert [i.identity for i in second.records[1].items] == ["brew:git", "brew:jq"]


def test_hash_ignores_time_machine_and_warnings(blob_store: BlobStore) -> None:
    builder = SnapshotBuilder(blob_store)
    first = builder.build(
        sample_records(), machine_id="a", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc)
    )
    records = sample_records()
    records[0].warnings.append("npm: Command not found: npm")
    second = builder.build(records, machine_id="b")
    assert first.content_hash == second.content_hash
    assert first.created_at == "2026-01-01T00:00:00Z"


def test_hash_changes_with_content(blob_store: BlobStore) -> None:
    builder = SnapshotBuilder(blob_store)
    base = builder.build(sample_records())
    changed = builder.build(
        [record("packages", package("jq", "1.8"), package("git", "2.44.0")), sample_records()[1]]
    )
    assert base.content_hash != changed.content_hash


def test_small_text_inline_large_or_binary_chunked(blob_store: BlobStore) -> None:
    """Test the inline limit and chunking of payloads."""
    big = b"x" * 250
    binary = b"\xff\xfe\x00"
    builder = SnapshotBuilder(blob_store, inline_limit=64, chunk_size=100)
    snapshot = builder.build(
        [
            record(
                "dotfiles",
                file_item(".small", b"hello\n"),
                file_item(".big", big),
                file_item(".binary", binary),
            )
        ]
    )
    items = {item.identity: item for item in snapshot.records[0].items}
    assert items[".small"].inline == "hello\n"
    assert items[".small"].chunks == ()
    assert items[".big"].inline is None
    assert len(items[".big"].chunks) == 3
    assert items[".binary"].inline is None
    assert item_payload(items[".big"], blob_store) == big
    assert item_payload(items[".binary"], blob_store) == binary
    assert all(item.content is None for item in items.values())


def test_duplicate_domain_rejected(blob_store: BlobStore) -> None:
    with pytest.raises(BuildError):
        SnapshotBuilder(blob_store).build([record("dotfiles"), record("dotfiles")])


def test_duplicate_identity_rejected(blob_store: BlobStore) -> None:
    item = file_item(".zshrc", b"a")
    with pytest.raises(BuildError):
        SnapshotBuilder(blob_store).build([record("dotfiles", item, item)])


def test_load_verifies_round_trip(blob_store: BlobStore) -> None:
    snapshot = SnapshotBuilder(blob_store).build(sample_records(), machine_id="laptop")
    loaded = load_snapshot(dump_snapshot(snapshot))
    assert loaded.content_hash == snapshot.content_hash
    assert loaded.machine_id == "laptop"
    assert loaded.record("packages").items[1].metadata["version"] == "1.7"


def test_tampered_snapshot_is_corrupt(blob_store: BlobStore) -> None:
    """Test that edited content no longer matches the recorded hash."""
    document = json.loads(dump_snapshot(SnapshotBuilder(blob_store).build(sample_records())))
    document["records"][1]["items"][1]["metadata"]["version"] = "9.9"
    with pytest.raises(CorruptSnapshot):
        load_snapshot(json.dumps(document).encode())


@pytest.mark.parametrize("data", [b"{not json", b"[]", b'{"format_version": 1}'])
def test_malformed_snapshot_is_corrupt(data: bytes) -> None:
    with pytest.raises(CorruptSnapshot):
        load_snapshot(data)


@pytest.mark.parametrize("version", [None, "1", 0, 2, True])
def test_unsupported_format_checked_first(version) -> None:
    """Test that the version is checked before the rest of the document."""
    document = {"records": "garbage", "content_hash": "nope"}
    if version is not None:
        document["format_version"] = version
    with pytest.raises(UnsupportedFormat):
        load_snapshot(json.dumps(document).encode())


def test_item_payload_detects_corrupt_blob(blob_store: BlobStore) -> None:
    snapshot = SnapshotBuilder(blob_store, inline_limit=0).build(
        [record("dotfiles", file_item(".zshrc", b"export A=1\n"))]
    )
    item = snapshot.records[0].items[0]
    blob_store.path_for(item.chunks[0]).write_bytes(b"export A=2\n")
    with pytest.raises(CorruptSnapshot):
        item_payload(item, blob_store)


def test_blob_store(blob_store: BlobStore) -> None:
    """Test storage, deduplication and verification of blobs."""
    digest = blob_store.put(b"payload")
    assert digest == digest_bytes(b"payload")
    assert blob_store.put(b"payload") == digest
    assert blob_store.get(digest) == b"payload"
    assert blob_store.verify([digest]) == []

    with pytest.raises(KeyError):
        blob_store.get(digest_bytes(b"missing"))

    blob_store.path_for(digest).write_bytes(b"tampered")
    with pytest.raises(ValueError):
        blob_store.get(digest)
    assert blob_store.verify([digest]) == [digest]


def test_empty_payload_chunked(blob_store: BlobStore) -> None:
    chunks = blob_store.put_chunked(b"", 16)
    assert len(chunks) == 1
    assert blob_store.read_chunks(chunks) == b""
